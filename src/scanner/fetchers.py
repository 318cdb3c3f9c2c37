"""
Commit and Merge Request Fetchers.

Platform agnostic facades over a PlatformAdapter. They own the pagination
loop: before each page is pulled from the adapter, the scan is checked for
cancellation and the platform quota is checked through RateLimitService.

Features:
- Incremental window: last scan time, then requested start, then a default
- Result caps with configured defaults
- Merge request deduplication by external id
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Dict, List, Optional, TypeVar

from adapters.base import PlatformAdapter
from config import settings, logger
from ratelimit.service import RateLimitService
from scanner.exceptions import (
    DataProcessingException,
    GitScannerException,
    ScanCancelledException,
)
from scanner.models import Commit, MergeRequest, ScanRequest

REST_API_STRATEGY = "restapi"

T = TypeVar("T")


def resolve_since(
    request: ScanRequest, now: Optional[datetime] = None, months: Optional[int] = None
) -> datetime:
    """
    Start of the scan window.

    Uses last_scan_from (epoch millis) when set and non-zero, else the
    requested since, else `months` (default first_scan_from_months) ago.
    """
    if request.last_scan_from:
        return datetime.fromtimestamp(request.last_scan_from / 1000, timezone.utc)
    if request.since:
        since = request.since
        return since if since.tzinfo else since.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    months = settings.first_scan_from_months if months is None else months
    return now - timedelta(days=30 * months)


def _aware(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


class _PagedFetcher:
    """Shared pagination loop."""

    def __init__(
        self,
        adapter: PlatformAdapter,
        rate_limit_service: Optional[RateLimitService] = None,
    ):
        self.adapter = adapter
        self.rate_limit_service = rate_limit_service

    async def _before_page(
        self, request: ScanRequest, cancel_event: Optional[asyncio.Event]
    ) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise ScanCancelledException(
                f"Scan of {request.repository_name} cancelled",
                repository_name=request.repository_name,
                repository_url=request.repository_url,
            )
        if self.rate_limit_service is not None:
            await self.rate_limit_service.check_rate_limit(
                self.adapter.platform_name,
                self.adapter.rate_limit_token(request),
                request.repository_name,
                self.adapter.api_base_url(request),
                cancel_event=cancel_event,
            )

    async def _collect(
        self,
        pages: AsyncIterator[List[T]],
        request: ScanRequest,
        limit: int,
        cancel_event: Optional[asyncio.Event],
    ) -> List[T]:
        collected: List[T] = []
        try:
            while len(collected) < limit:
                await self._before_page(request, cancel_event)
                try:
                    page = await anext(pages)
                except StopAsyncIteration:
                    break
                collected.extend(page)
        finally:
            aclose = getattr(pages, "aclose", None)
            if aclose is not None:
                await aclose()
        return collected[:limit]


class CommitFetcher(_PagedFetcher):
    """Fetches the commits of one branch within the scan window."""

    async def fetch_commits(
        self, request: ScanRequest, cancel_event: Optional[asyncio.Event] = None
    ) -> List[Commit]:
        """
        Fetch commits for a scan.

        Args:
            request (ScanRequest): Scan being executed
            cancel_event (Optional[asyncio.Event]): Set to abort at the next page

        Returns:
            List[Commit]: Commits, newest first, deduplicated by sha

        Raises:
            ScanCancelledException: If cancellation was requested
            RateLimitExceededException: If the quota guard aborts the scan
            DataProcessingException: If the strategy is unknown or fetching fails
        """
        strategy = (request.commit_fetch_strategy or REST_API_STRATEGY).strip().lower()
        if strategy != REST_API_STRATEGY:
            raise DataProcessingException(
                f"No suitable commit fetch strategy '{request.commit_fetch_strategy}' "
                f"for {request.repository_name}",
                repository_name=request.repository_name,
                repository_url=request.repository_url,
            )

        since = resolve_since(request)
        until = _aware(request.until)
        limit = request.limit or settings.default_commit_limit
        logger.info(
            {
                "message": "Fetching commits",
                "repository": request.repository_name,
                "platform": self.adapter.platform_name,
                "since": since.isoformat(),
                "limit": limit,
            }
        )

        try:
            branch = request.branch_name
            if not branch:
                branch = (await self.adapter.fetch_repository(request)).default_branch
            pages = self.adapter.iter_commit_pages(request, branch, since, until)
            commits = await self._collect(pages, request, limit, cancel_event)
        except GitScannerException:
            raise
        except Exception as e:
            logger.error(
                {
                    "message": "Commit fetch failed",
                    "repository": request.repository_name,
                    "error": str(e),
                }
            )
            raise DataProcessingException(
                f"Failed to fetch commits for {request.repository_name}: {e}",
                repository_name=request.repository_name,
                repository_url=request.repository_url,
            ) from e

        unique: Dict[str, Commit] = {}
        for commit in commits:
            if until and commit.timestamp and _aware(commit.timestamp) > until:
                continue
            unique.setdefault(commit.sha, commit)

        logger.info(
            {
                "message": "Commits fetched",
                "repository": request.repository_name,
                "count": len(unique),
            }
        )
        return list(unique.values())


class MergeRequestFetcher(_PagedFetcher):
    """Fetches merge requests updated within the scan window."""

    async def fetch_merge_requests(
        self, request: ScanRequest, cancel_event: Optional[asyncio.Event] = None
    ) -> List[MergeRequest]:
        """
        Fetch merge requests for a scan.

        Args:
            request (ScanRequest): Scan being executed
            cancel_event (Optional[asyncio.Event]): Set to abort at the next page

        Returns:
            List[MergeRequest]: Merge requests deduplicated by external id;
                a later page replaces an earlier copy

        Raises:
            ScanCancelledException: If cancellation was requested
            RateLimitExceededException: If the quota guard aborts the scan
            DataProcessingException: If fetching fails
        """
        since = resolve_since(request)
        until = _aware(request.until)
        limit = min(
            request.limit or settings.default_merge_request_limit,
            settings.max_merge_requests_per_scan,
        )
        logger.info(
            {
                "message": "Fetching merge requests",
                "repository": request.repository_name,
                "platform": self.adapter.platform_name,
                "since": since.isoformat(),
                "limit": limit,
            }
        )

        try:
            pages = self.adapter.iter_merge_request_pages(request, since, until)
            merge_requests = await self._collect(pages, request, limit, cancel_event)
        except GitScannerException:
            raise
        except Exception as e:
            logger.error(
                {
                    "message": "Merge request fetch failed",
                    "repository": request.repository_name,
                    "error": str(e),
                }
            )
            raise DataProcessingException(
                f"Failed to fetch merge requests for {request.repository_name}: {e}",
                repository_name=request.repository_name,
                repository_url=request.repository_url,
            ) from e

        unique: Dict[str, MergeRequest] = {}
        for merge_request in merge_requests:
            created_at = _aware(merge_request.created_at)
            if until and created_at and created_at > until:
                continue
            unique[merge_request.external_id] = merge_request

        logger.info(
            {
                "message": "Merge requests fetched",
                "repository": request.repository_name,
                "count": len(unique),
            }
        )
        return list(unique.values())
