"""
Repository URL Parser.

Extracts owner, project and repository names from the clone/browse URLs of
every supported platform.
"""

import re
from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel

from scanner.exceptions import InvalidRepositoryUrlException

GITHUB = "GitHub"
GITLAB = "GitLab"
BITBUCKET_CLOUD = "Bitbucket Cloud"
BITBUCKET_SERVER = "Bitbucket Server"
AZURE_DEVOPS = "Azure DevOps"

_GITHUB_RE = re.compile(r"^https?://(?:www\.)?github\.com/([^/]+)/([^/]+?)(?:\.git)?/?$")
_GITHUB_SSH_RE = re.compile(r"^git@github\.com:([^/]+)/([^/]+?)(?:\.git)?$")
_AZURE_RE = re.compile(
    r"^https?://(?:[\w.-]+@)?dev\.azure\.com/([^/]+)/([^/]+)/_git/([^/]+?)/?$"
)
_AZURE_LEGACY_RE = re.compile(
    r"^https?://([\w-]+)\.visualstudio\.com/(?:DefaultCollection/)?([^/]+)/_git/([^/]+?)/?$"
)
_BITBUCKET_CLOUD_RE = re.compile(
    r"^https?://(?:[\w.-]+@)?bitbucket\.org/([^/]+)/([^/]+?)(?:\.git)?/?$"
)
_BITBUCKET_SERVER_SCM_RE = re.compile(
    r"^(https?://[^/]+(?:/[^/]+)*?)/scm/([^/]+)/([^/]+?)(?:\.git)?/?$"
)
_BITBUCKET_SERVER_BROWSE_RE = re.compile(
    r"^(https?://[^/]+(?:/[^/]+)*?)/projects/([^/]+)/repos/([^/]+?)(?:/browse)?/?$"
)
_GITLAB_RE = re.compile(r"^(https?://[^/]+)/(.+)/([^/]+?)(?:\.git)?/?$")


class GitUrlInfo(BaseModel):
    """Components of a repository URL."""

    platform: str
    owner: str  # user, group path, workspace, project key or organization
    repository: str
    organization: Optional[str] = None
    project: Optional[str] = None
    host: Optional[str] = None
    base_url: Optional[str] = None
    original_url: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repository}"


def parse_repository_url(url: Optional[str]) -> GitUrlInfo:
    """
    Parse a repository URL of any supported platform.

    Args:
        url (Optional[str]): Repository URL

    Returns:
        GitUrlInfo: Parsed components

    Raises:
        InvalidRepositoryUrlException: If the URL is blank or not recognized
    """
    if not url or not url.strip():
        raise InvalidRepositoryUrlException(url)
    url = url.strip()
    host = urlparse(url).hostname

    match = _GITHUB_RE.match(url) or _GITHUB_SSH_RE.match(url)
    if match:
        return GitUrlInfo(
            platform=GITHUB,
            owner=match.group(1),
            repository=match.group(2),
            host="github.com",
            base_url="https://api.github.com",
            original_url=url,
        )

    match = _AZURE_RE.match(url)
    if match:
        organization, project, repository = match.groups()
        return GitUrlInfo(
            platform=AZURE_DEVOPS,
            owner=organization,
            repository=repository,
            organization=organization,
            project=project,
            host="dev.azure.com",
            base_url=f"https://dev.azure.com/{organization}",
            original_url=url,
        )

    match = _AZURE_LEGACY_RE.match(url)
    if match:
        organization, project, repository = match.groups()
        return GitUrlInfo(
            platform=AZURE_DEVOPS,
            owner=organization,
            repository=repository,
            organization=organization,
            project=project,
            host=host,
            base_url=f"https://dev.azure.com/{organization}",
            original_url=url,
        )

    match = _BITBUCKET_CLOUD_RE.match(url)
    if match:
        return GitUrlInfo(
            platform=BITBUCKET_CLOUD,
            owner=match.group(1),
            repository=match.group(2),
            host="bitbucket.org",
            base_url="https://api.bitbucket.org/2.0",
            original_url=url,
        )

    match = _BITBUCKET_SERVER_SCM_RE.match(url) or _BITBUCKET_SERVER_BROWSE_RE.match(url)
    if match:
        base_url, project, repository = match.groups()
        return GitUrlInfo(
            platform=BITBUCKET_SERVER,
            owner=project,
            repository=repository,
            project=project,
            host=host,
            base_url=base_url,
            original_url=url,
        )

    # Anything else with a namespace path is treated as a (self-hosted) GitLab
    match = _GITLAB_RE.match(url)
    if match and host:
        base_url, namespace, repository = match.groups()
        return GitUrlInfo(
            platform=GITLAB,
            owner=namespace,
            repository=repository,
            host=host,
            base_url=base_url,
            original_url=url,
        )

    raise InvalidRepositoryUrlException(url)


def is_bitbucket_cloud(url: Optional[str]) -> bool:
    return bool(url) and "bitbucket.org" in url
