"""
Tests for platform selection.

Covers ScmToolFactory dispatch and repository URL parsing for every
supported platform.
"""

import pytest

from adapters.azure_adapter import AzureReposAdapter
from adapters.bitbucket_adapter import BitbucketCloudAdapter, BitbucketServerAdapter
from adapters.factory import ScmTool, ScmToolFactory
from adapters.github_adapter import GitHubAdapter
from adapters.gitlab_adapter import GitLabAdapter
from scanner.exceptions import (
    InvalidRepositoryUrlException,
    UnsupportedPlatformException,
)
from scanner.url_parser import parse_repository_url


@pytest.fixture
def factory():
    """Create factory with the default registry."""
    return ScmToolFactory()


@pytest.mark.parametrize(
    "tool, url, expected",
    [
        ("GITHUB", "https://github.com/acme/api", GitHubAdapter),
        ("gitlab", "https://gitlab.com/acme/api", GitLabAdapter),
        ("AZUREREPO", "https://dev.azure.com/acme/proj/_git/api", AzureReposAdapter),
        ("BITBUCKET", "https://bitbucket.org/acme/api", BitbucketCloudAdapter),
        (
            " bitbucket ",
            "https://git.example.com/scm/PROJ/api.git",
            BitbucketServerAdapter,
        ),
    ],
)
def test_get_adapter(factory, tool, url, expected):
    """Tool names resolve to their adapter, ignoring case and whitespace."""
    adapter = factory.get_adapter(tool, url)

    assert isinstance(adapter, expected)


@pytest.mark.parametrize("tool", ["PERFORCE", "", None])
def test_unknown_tool_rejected(factory, tool):
    """Unknown or blank names raise a typed error."""
    with pytest.raises(UnsupportedPlatformException) as exc_info:
        factory.get_adapter(tool)

    assert exc_info.value.error_code == "UNSUPPORTED_PLATFORM"


def test_registry_without_tool_rejects_it():
    """A tool missing from a custom registry is unsupported."""
    factory = ScmToolFactory({ScmTool.GITHUB: lambda repository_url, **kwargs: None})

    assert factory.supported_tools() == ["GITHUB"]
    with pytest.raises(UnsupportedPlatformException):
        factory.get_adapter("GITLAB")


def test_parse_github_urls():
    """HTTPS and SSH GitHub URLs give owner and repository."""
    https = parse_repository_url("https://github.com/acme/api.git")
    ssh = parse_repository_url("git@github.com:acme/api.git")

    assert https.full_name == ssh.full_name == "acme/api"
    assert https.platform == "GitHub"


def test_parse_azure_urls():
    """Modern and legacy Azure URLs give organization and project."""
    modern = parse_repository_url("https://dev.azure.com/contoso/Web/_git/portal")
    legacy = parse_repository_url("https://contoso.visualstudio.com/Web/_git/portal")

    for info in (modern, legacy):
        assert info.organization == "contoso"
        assert info.project == "Web"
        assert info.repository == "portal"
        assert info.base_url == "https://dev.azure.com/contoso"


def test_parse_bitbucket_server_urls():
    """Clone and browse URLs of Bitbucket Server keep the context path."""
    clone = parse_repository_url("https://git.example.com/bitbucket/scm/PROJ/api.git")
    browse = parse_repository_url(
        "https://git.example.com/bitbucket/projects/PROJ/repos/api/browse"
    )

    for info in (clone, browse):
        assert info.platform == "Bitbucket Server"
        assert info.project == "PROJ"
        assert info.repository == "api"
        assert info.base_url == "https://git.example.com/bitbucket"


def test_parse_gitlab_subgroups():
    """Self-hosted GitLab keeps nested group paths."""
    info = parse_repository_url("https://gitlab.example.com/platform/backend/api.git")

    assert info.platform == "GitLab"
    assert info.owner == "platform/backend"
    assert info.repository == "api"
    assert info.base_url == "https://gitlab.example.com"


@pytest.mark.parametrize("url", ["", "   ", None, "not a url"])
def test_parse_invalid_urls(url):
    """Blank or unrecognized URLs raise InvalidRepositoryUrlException."""
    with pytest.raises(InvalidRepositoryUrlException):
        parse_repository_url(url)
