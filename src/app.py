"""
Main Application Entry Point.

This module serves as the primary entry point for the repository scanner.
It orchestrates the scan workflow, including:
- Building scan requests for the configured repositories
- Rate limit guard and persistence initialization
- Concurrent scan execution, bounded by max_concurrent_scans
- Error handling and logging

The application can be run directly to scan the configured repositories
into the JSON data directory.
"""

import asyncio
from typing import List

from adapters.factory import ScmToolFactory
from config import settings, logger
from ratelimit.models import RateLimitConfig
from ratelimit.monitors import default_monitors
from ratelimit.service import RateLimitService
from scanner.exceptions import GitScannerException
from scanner.executor import scan_repository
from scanner.models import ScanRequest, ScanResult
from scanner.url_parser import parse_repository_url
from storage.repository_store import JsonPersistenceService


def build_scan_requests() -> List[ScanRequest]:
    """
    Build one ScanRequest per configured repository URL.

    Returns:
        List[ScanRequest]: Requests for every parseable URL; invalid URLs are logged
    """
    requests = []
    for url in settings.repository_urls:
        try:
            info = parse_repository_url(url)
        except GitScannerException as e:
            logger.error({"message": "Skipping repository", "url": url, "error": str(e)})
            continue
        requests.append(
            ScanRequest(
                repository_url=url,
                repository_name=info.full_name,
                branch_name=settings.scm_branch or None,
                username=settings.scm_username,
                token=settings.scm_token,
                tool_type=settings.scm_tool_type,
                tool_config_id=settings.tool_config_id,
            )
        )
    return requests


async def main() -> List[ScanResult]:
    """
    Execute the main application workflow.

    Performs the following steps:
    1. Builds scan requests from settings
    2. Initializes rate limit guard, persistence and adapter factory
    3. Runs all scans concurrently, at most max_concurrent_scans at a time
    4. Logs a summary per repository

    Returns:
        List[ScanResult]: One result per scanned repository

    Note:
        - Failed scans are logged but don't stop execution
    """
    logger.info("Starting repository scans...")

    scan_requests = build_scan_requests()
    if not scan_requests:
        logger.warning("No repositories configured, set SCM_REPO_URLS")
        return []

    rate_limit_config = RateLimitConfig.from_settings(settings)
    rate_limit_service = RateLimitService(
        rate_limit_config, default_monitors(rate_limit_config)
    )
    persistence = JsonPersistenceService(settings.data_dir)
    factory = ScmToolFactory()
    semaphore = asyncio.Semaphore(settings.max_concurrent_scans)

    async def run(scan_request: ScanRequest) -> ScanResult:
        async with semaphore:
            return await scan_repository(
                scan_request, persistence, rate_limit_service, factory
            )

    outcomes = await asyncio.gather(
        *(run(scan_request) for scan_request in scan_requests), return_exceptions=True
    )

    results: List[ScanResult] = []
    for scan_request, outcome in zip(scan_requests, outcomes):
        if isinstance(outcome, Exception):
            logger.error(
                {
                    "message": "Repository scan could not start",
                    "repository": scan_request.repository_name,
                    "error": str(outcome),
                }
            )
            continue
        results.append(outcome)
        logger.info(
            {
                "message": "Scan summary",
                "repository": outcome.repository_name,
                "status": outcome.status.value,
                "commits_found": outcome.commits_found,
                "merge_requests_found": outcome.merge_requests_found,
                "users_found": outcome.users_found,
                "duration_ms": outcome.duration_ms,
                "error": outcome.error_message,
            }
        )

    logger.info("application finished")
    return results


if __name__ == "__main__":
    logger.info("Starting application ...")
    asyncio.run(main())
