"""
Scan Command Executor.

Runs one repository scan end to end:

    fetch commits -> fetch merge requests -> process users
    -> update references -> validate -> persist

Nothing is persisted until every earlier stage has succeeded. Failures are
wrapped in DataProcessingException and reported through ScanResult rather
than raised, so callers check ScanResult.success.
"""

import asyncio
from typing import List, Optional

from adapters.factory import ScmToolFactory
from config import logger
from ratelimit.service import RateLimitService
from scanner.exceptions import (
    DataProcessingException,
    DataValidationException,
    ScanCancelledException,
)
from scanner.fetchers import CommitFetcher, MergeRequestFetcher
from scanner.models import (
    Commit,
    MergeRequest,
    RepositoryStatus,
    ScanRequest,
    ScanResult,
    epoch_millis,
)
from scanner.reference_updater import DataReferenceUpdater
from scanner.user_processor import UserProcessor
from storage.persistence import PersistenceService


class ScanCommandExecutor:
    """
    Orchestrates a single repository scan.

    Attributes:
        commit_fetcher (CommitFetcher): Commit source
        merge_request_fetcher (MergeRequestFetcher): Merge request source
        user_processor (UserProcessor): Identity deduplication and persistence
        reference_updater (DataReferenceUpdater): Identity resolution
        persistence (PersistenceService): Storage for commits and merge requests
    """

    def __init__(
        self,
        commit_fetcher: CommitFetcher,
        merge_request_fetcher: MergeRequestFetcher,
        user_processor: UserProcessor,
        reference_updater: DataReferenceUpdater,
        persistence: PersistenceService,
    ):
        self.commit_fetcher = commit_fetcher
        self.merge_request_fetcher = merge_request_fetcher
        self.user_processor = user_processor
        self.reference_updater = reference_updater
        self.persistence = persistence

    async def execute(
        self, scan_request: ScanRequest, cancel_event: Optional[asyncio.Event] = None
    ) -> ScanResult:
        """
        Execute a scan and summarize it.

        Args:
            scan_request (ScanRequest): Scan to execute
            cancel_event (Optional[asyncio.Event]): Set to abort at the next page
                or during a rate limit cooldown

        Returns:
            ScanResult: Counts and timings on success; success=False with an
                error message and FAILED or CANCELLED status otherwise
        """
        result = ScanResult(
            repository_url=scan_request.repository_url,
            repository_name=scan_request.repository_name,
            start_time=epoch_millis(),
            status=RepositoryStatus.IN_PROGRESS,
        )
        logger.info(
            {
                "message": "Starting repository scan",
                "repository": scan_request.repository_name,
                "url": scan_request.repository_url,
                "tool": scan_request.tool_type,
            }
        )

        try:
            await self._run(scan_request, result, cancel_event)
            result.success = True
            result.status = RepositoryStatus.COMPLETED
        except ScanCancelledException as e:
            result.status = RepositoryStatus.CANCELLED
            result.error_message = e.message
            logger.warning(
                {
                    "message": "Repository scan cancelled",
                    "repository": scan_request.repository_name,
                }
            )
        except DataProcessingException as e:
            result.status = RepositoryStatus.FAILED
            result.error_message = e.message
            logger.error(
                {
                    "message": "Repository scan failed",
                    "repository": scan_request.repository_name,
                    "url": scan_request.repository_url,
                    "error": e.message,
                }
            )
        finally:
            result.end_time = epoch_millis()
            result.duration_ms = result.end_time - result.start_time

        if result.success:
            logger.info(
                {
                    "message": "Repository scan completed",
                    "repository": scan_request.repository_name,
                    "commits_found": result.commits_found,
                    "merge_requests_found": result.merge_requests_found,
                    "users_found": result.users_found,
                    "duration_ms": result.duration_ms,
                }
            )
        return result

    async def _run(
        self,
        scan_request: ScanRequest,
        result: ScanResult,
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        name = scan_request.repository_name
        try:
            commits = await self.commit_fetcher.fetch_commits(scan_request, cancel_event)
            merge_requests = await self.merge_request_fetcher.fetch_merge_requests(
                scan_request, cancel_event
            )
            self._check_cancelled(scan_request, cancel_event)

            users = await self.user_processor.process_users(
                commits, merge_requests, scan_request
            )
            self.reference_updater.update_commits_with_user_references(
                commits, users.user_map, name
            )
            await self.reference_updater.update_merge_requests_with_user_references(
                merge_requests, users.user_map, name, scan_request.tool_config_id
            )
            self._check_cancelled(scan_request, cancel_event)

            self._validate(commits, merge_requests)
            await self._persist(scan_request, commits, merge_requests)
        except ScanCancelledException:
            raise
        except Exception as e:
            raise DataProcessingException(
                f"Repository scan failed for {name} ({scan_request.repository_url}): {e}",
                repository_name=name,
                repository_url=scan_request.repository_url,
            ) from e

        result.commits_found = len(commits)
        result.merge_requests_found = len(merge_requests)
        result.users_found = len(users.all_users)

    @staticmethod
    def _check_cancelled(
        scan_request: ScanRequest, cancel_event: Optional[asyncio.Event]
    ) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise ScanCancelledException(
                f"Scan of {scan_request.repository_name} cancelled",
                repository_name=scan_request.repository_name,
                repository_url=scan_request.repository_url,
            )

    @staticmethod
    def _validate(commits: List[Commit], merge_requests: List[MergeRequest]) -> None:
        for commit in commits:
            if not commit.repository_name:
                raise DataValidationException(
                    "repository_name", commit.repository_name, f"commit {commit.sha}"
                )
        for merge_request in merge_requests:
            if not merge_request.repository_name:
                raise DataValidationException(
                    "repository_name",
                    merge_request.repository_name,
                    f"merge request {merge_request.external_id}",
                )

    async def _persist(
        self,
        scan_request: ScanRequest,
        commits: List[Commit],
        merge_requests: List[MergeRequest],
    ) -> None:
        if commits:
            for commit in commits:
                commit.tool_config_id = scan_request.tool_config_id
            await self.persistence.save_commits(commits)
        if merge_requests:
            for merge_request in merge_requests:
                merge_request.tool_config_id = scan_request.tool_config_id
            await self.persistence.save_merge_requests(merge_requests)


async def scan_repository(
    scan_request: ScanRequest,
    persistence: PersistenceService,
    rate_limit_service: Optional[RateLimitService] = None,
    factory: Optional[ScmToolFactory] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> ScanResult:
    """
    Resolve the adapter for a request, run the scan and release the adapter.

    Raises:
        UnsupportedPlatformException: If the request's tool type is unknown
    """
    factory = factory or ScmToolFactory()
    adapter = factory.get_adapter(scan_request.tool_type, scan_request.repository_url)
    executor = ScanCommandExecutor(
        CommitFetcher(adapter, rate_limit_service),
        MergeRequestFetcher(adapter, rate_limit_service),
        UserProcessor(persistence),
        DataReferenceUpdater(persistence),
        persistence,
    )
    try:
        return await executor.execute(scan_request, cancel_event)
    finally:
        await adapter.close()
