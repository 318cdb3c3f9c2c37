"""
SCM Tool Factory.

Maps a declared tool name onto the PlatformAdapter that speaks its API. The
registry is built once at import; unknown names are rejected with
UnsupportedPlatformException.
"""

from enum import Enum
from typing import Callable, Dict, Optional

from adapters.azure_adapter import AzureReposAdapter
from adapters.base import PlatformAdapter
from adapters.bitbucket_adapter import BitbucketCloudAdapter, BitbucketServerAdapter
from adapters.github_adapter import GitHubAdapter
from adapters.gitlab_adapter import GitLabAdapter
from scanner.exceptions import UnsupportedPlatformException
from scanner.url_parser import is_bitbucket_cloud


class ScmTool(str, Enum):
    GITHUB = "GITHUB"
    GITLAB = "GITLAB"
    BITBUCKET = "BITBUCKET"
    AZUREREPO = "AZUREREPO"

    @classmethod
    def from_name(cls, name: Optional[str]) -> "ScmTool":
        """
        Resolve a tool name, ignoring case and surrounding whitespace.

        Raises:
            UnsupportedPlatformException: If the name is blank or unknown
        """
        normalized = (name or "").strip().upper()
        try:
            return cls(normalized)
        except ValueError:
            raise UnsupportedPlatformException(name or "") from None


def _bitbucket(repository_url: Optional[str], **kwargs) -> PlatformAdapter:
    if is_bitbucket_cloud(repository_url):
        return BitbucketCloudAdapter(**kwargs)
    return BitbucketServerAdapter(**kwargs)


_REGISTRY: Dict[ScmTool, Callable[..., PlatformAdapter]] = {
    ScmTool.GITHUB: lambda repository_url, **kwargs: GitHubAdapter(**kwargs),
    ScmTool.GITLAB: lambda repository_url, **kwargs: GitLabAdapter(**kwargs),
    ScmTool.BITBUCKET: _bitbucket,
    ScmTool.AZUREREPO: lambda repository_url, **kwargs: AzureReposAdapter(**kwargs),
}


class ScmToolFactory:
    """Creates a fresh adapter for each scan."""

    def __init__(
        self, registry: Optional[Dict[ScmTool, Callable[..., PlatformAdapter]]] = None
    ):
        self.registry = dict(registry or _REGISTRY)

    def supported_tools(self):
        return sorted(tool.value for tool in self.registry)

    def get_adapter(
        self, tool_type: Optional[str], repository_url: Optional[str] = None, **kwargs
    ) -> PlatformAdapter:
        """
        Build the adapter for a tool name.

        Args:
            tool_type (Optional[str]): Declared tool name, e.g. "GITHUB"
            repository_url (Optional[str]): Used to tell Bitbucket Cloud from Server
            **kwargs: Passed to the adapter constructor (page_size, timeout, ...)

        Returns:
            PlatformAdapter: New adapter instance

        Raises:
            UnsupportedPlatformException: If the tool name is not supported
        """
        tool = ScmTool.from_name(tool_type)
        builder = self.registry.get(tool)
        if builder is None:
            raise UnsupportedPlatformException(tool.value)
        return builder(repository_url, **kwargs)
