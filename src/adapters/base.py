"""
Abstract Base Class for Platform Adapters.

Defines the interface every source control platform implements. Adapters
translate a vendor API into normalized Commit and MergeRequest pages; the
platform-agnostic fetchers drive pagination, rate limiting and cancellation.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncIterator, List, Optional

import httpx
from pydantic import BaseModel

from scanner.exceptions import (
    PlatformApiException,
    RepositoryAccessDeniedException,
    RepositoryAuthenticationException,
    RepositoryNotFoundException,
)
from scanner.models import Commit, MergeRequest, MergeRequestState, ScanRequest

BINARY_EXTENSIONS = {
    ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".svg", ".webp",
    ".pdf", ".zip", ".gz", ".tar", ".tgz", ".7z", ".rar", ".jar", ".war",
    ".exe", ".dll", ".so", ".dylib", ".class", ".pyc", ".bin", ".dat",
    ".woff", ".woff2", ".ttf", ".eot", ".mp3", ".mp4", ".mov", ".avi",
    ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
}


def is_binary_path(path: Optional[str]) -> bool:
    if not path or "." not in path:
        return False
    return path[path.rfind(".") :].lower() in BINARY_EXTENSIONS


class RepositoryInfo(BaseModel):
    """Minimal repository metadata returned by every adapter."""

    id: str
    name: str
    full_name: str
    default_branch: Optional[str] = None
    url: Optional[str] = None


class PlatformAdapter(ABC):
    """
    Abstract base class for platform adapters.

    Implementations should handle:
    - Authentication with the platform
    - Platform native pagination, one page per iteration
    - Conversion of vendor payloads into Commit and MergeRequest records
    - Diff retrieval and normalization through a DiffParser
    """

    # Must match the platform name of the corresponding rate limit monitor
    platform_name: str = ""

    def api_base_url(self, request: ScanRequest) -> Optional[str]:
        """Base URL handed to the rate limit monitor."""
        return None

    def rate_limit_token(self, request: ScanRequest) -> Optional[str]:
        """Token whose quota is checked before each page."""
        return request.token_value

    @abstractmethod
    async def fetch_repository(self, request: ScanRequest) -> RepositoryInfo:
        """
        Fetch repository metadata.

        Args:
            request (ScanRequest): Scan being executed

        Returns:
            RepositoryInfo: Repository id, names and default branch

        Raises:
            RepositoryException: If the repository cannot be accessed
        """
        pass

    @abstractmethod
    def iter_commit_pages(
        self,
        request: ScanRequest,
        branch: Optional[str],
        since: Optional[datetime],
        until: Optional[datetime],
    ) -> AsyncIterator[List[Commit]]:
        """
        Yield commits of a branch one page at a time, newest first.

        Args:
            request (ScanRequest): Scan being executed
            branch (Optional[str]): Branch to read, platform default when None
            since (Optional[datetime]): Oldest commit time to include
            until (Optional[datetime]): Newest commit time to include

        Yields:
            List[Commit]: One page of normalized commits
        """
        pass

    @abstractmethod
    def iter_merge_request_pages(
        self,
        request: ScanRequest,
        since: Optional[datetime],
        until: Optional[datetime],
    ) -> AsyncIterator[List[MergeRequest]]:
        """
        Yield merge requests updated since a point in time, one page at a time.

        Yields:
            List[MergeRequest]: One page of normalized merge requests
        """
        pass

    async def close(self) -> None:
        """Release network resources held by the adapter."""
        pass


def raise_for_platform_status(platform: str, response: httpx.Response) -> None:
    """
    Translate an HTTP error response into a typed scanner exception.

    Raises:
        RepositoryAuthenticationException: On 401
        RepositoryAccessDeniedException: On 403
        RepositoryNotFoundException: On 404
        PlatformApiException: On any other 4xx/5xx status
    """
    status = response.status_code
    if status < 400:
        return
    target = str(response.request.url)
    if status == 401:
        raise RepositoryAuthenticationException(
            f"{platform} rejected credentials for {target}"
        )
    if status == 403:
        raise RepositoryAccessDeniedException(f"{platform} denied access to {target}")
    if status == 404:
        raise RepositoryNotFoundException(f"{platform} resource not found: {target}")
    raise PlatformApiException(platform, f"{response.reason_phrase} for {target}", status)


def merge_request_state(
    state: Optional[str], merged: bool = False
) -> MergeRequestState:
    """Map a vendor state string onto MergeRequestState."""
    if merged:
        return MergeRequestState.MERGED
    normalized = (state or "").strip().lower()
    if normalized in ("merged", "completed"):
        return MergeRequestState.MERGED
    if normalized in ("closed", "declined", "superseded", "abandoned", "locked"):
        return MergeRequestState.CLOSED
    return MergeRequestState.OPEN
