"""
Tests for the scan pipeline.

Covers the paging fetchers (scan window, limits, rate limit checks,
cancellation) and ScanCommandExecutor end to end with in-memory adapters
and mocked persistence.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from adapters.base import PlatformAdapter, RepositoryInfo
from adapters.factory import ScmToolFactory, ScmTool
from scanner.exceptions import (
    DataProcessingException,
    RateLimitExceededException,
    ScanCancelledException,
    UnsupportedPlatformException,
)
from scanner.executor import ScanCommandExecutor, scan_repository
from scanner.fetchers import CommitFetcher, MergeRequestFetcher, resolve_since
from scanner.models import (
    Commit,
    MergeRequest,
    RepositoryStatus,
    ScanRequest,
    ScanResult,
    User,
)
from scanner.reference_updater import DataReferenceUpdater
from scanner.user_processor import UserProcessor


class InMemoryAdapter(PlatformAdapter):
    """Adapter serving fixed pages."""

    platform_name = "GitHub"

    def __init__(self, commit_pages=None, merge_request_pages=None, error=None):
        self.commit_pages = commit_pages or []
        self.merge_request_pages = merge_request_pages or []
        self.error = error
        self.branches = []
        self.windows = []
        self.closed = False

    async def fetch_repository(self, request):
        return RepositoryInfo(id="1", name="api", full_name="acme/api", default_branch="trunk")

    async def iter_commit_pages(self, request, branch, since, until):
        self.branches.append(branch)
        self.windows.append((since, until))
        if self.error:
            raise self.error
        for page in self.commit_pages:
            yield page

    async def iter_merge_request_pages(self, request, since, until):
        for page in self.merge_request_pages:
            yield page

    async def close(self):
        self.closed = True


def commit(sha, author="alice", timestamp=None):
    return Commit(
        sha=sha,
        author_name=author,
        committer_name=author,
        timestamp=timestamp,
        author=User(username=author, display_name=author),
    )


def merge_request(external_id, author="bob", title=None):
    return MergeRequest(
        external_id=external_id,
        title=title,
        author=User(username=author, display_name=author),
        author_user_id=author,
    )


@pytest.fixture
def scan_request():
    """Create a scan request with a token."""
    return ScanRequest(
        repository_url="https://github.com/acme/api",
        repository_name="acme/api",
        branch_name="main",
        token="ghp_token",
        tool_type="GITHUB",
        tool_config_id="cfg-1",
    )


@pytest.fixture
def persistence():
    """Create mock persistence."""
    service = Mock()
    service.save_commits = AsyncMock()
    service.save_merge_requests = AsyncMock()
    service.save_user = AsyncMock(side_effect=lambda user: user)
    service.find_or_create_user = AsyncMock(
        side_effect=lambda repo, username, email, name, cfg: User(
            username=username, repository_name=repo
        )
    )
    return service


@pytest.fixture
def rate_limit_service():
    """Create a mock rate limit guard."""
    service = Mock()
    service.check_rate_limit = AsyncMock()
    return service


def build_executor(adapter, persistence, rate_limit_service=None):
    return ScanCommandExecutor(
        CommitFetcher(adapter, rate_limit_service),
        MergeRequestFetcher(adapter, rate_limit_service),
        UserProcessor(persistence),
        DataReferenceUpdater(persistence),
        persistence,
    )


def test_resolve_since_prefers_last_scan():
    """last_scan_from wins over since, since over the default window."""
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    base = dict(repository_url="u", repository_name="r", tool_type="GITHUB")

    last = ScanRequest(
        **base, since=datetime(2020, 1, 1), last_scan_from=1_700_000_000_000
    )
    explicit = ScanRequest(**base, since=datetime(2024, 1, 1))
    default = ScanRequest(**base)

    assert resolve_since(last, now) == datetime.fromtimestamp(1_700_000_000, timezone.utc)
    assert resolve_since(explicit, now) == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert resolve_since(default, now, months=6) == now - timedelta(days=180)


@pytest.mark.asyncio
async def test_commit_fetcher_checks_rate_limit_before_each_page(
    scan_request, rate_limit_service
):
    """The guard runs before every page, including the final empty pull."""
    adapter = InMemoryAdapter(commit_pages=[[commit("a")], [commit("b")]])
    fetcher = CommitFetcher(adapter, rate_limit_service)

    commits = await fetcher.fetch_commits(scan_request)

    assert [c.sha for c in commits] == ["a", "b"]
    assert rate_limit_service.check_rate_limit.await_count == 3
    rate_limit_service.check_rate_limit.assert_awaited_with(
        "GitHub", "ghp_token", "acme/api", None, cancel_event=None
    )


@pytest.mark.asyncio
async def test_commit_fetcher_applies_limit_and_dedup(scan_request):
    """Duplicates collapse by sha and the limit caps the result."""
    adapter = InMemoryAdapter(
        commit_pages=[[commit("a"), commit("a"), commit("b")], [commit("c")]]
    )
    request = scan_request.model_copy(update={"limit": 3})

    commits = await CommitFetcher(adapter).fetch_commits(request)

    assert [c.sha for c in commits] == ["a", "b"]


@pytest.mark.asyncio
async def test_commit_fetcher_filters_until(scan_request):
    """Commits newer than until are dropped."""
    until = datetime(2024, 5, 1, tzinfo=timezone.utc)
    adapter = InMemoryAdapter(
        commit_pages=[
            [
                commit("new", timestamp=until + timedelta(days=1)),
                commit("old", timestamp=until - timedelta(days=1)),
            ]
        ]
    )
    request = scan_request.model_copy(update={"until": until})

    commits = await CommitFetcher(adapter).fetch_commits(request)

    assert [c.sha for c in commits] == ["old"]


@pytest.mark.asyncio
async def test_commit_fetcher_uses_default_branch(scan_request):
    """A request without branch reads the repository default branch."""
    adapter = InMemoryAdapter(commit_pages=[[commit("a")]])
    request = scan_request.model_copy(update={"branch_name": None})

    await CommitFetcher(adapter).fetch_commits(request)

    assert adapter.branches == ["trunk"]


@pytest.mark.asyncio
async def test_commit_fetcher_rejects_unknown_strategy(scan_request):
    """Only the REST API strategy is available."""
    request = scan_request.model_copy(update={"commit_fetch_strategy": "clone"})

    with pytest.raises(DataProcessingException) as exc_info:
        await CommitFetcher(InMemoryAdapter()).fetch_commits(request)

    assert "No suitable commit fetch strategy" in str(exc_info.value)


@pytest.mark.asyncio
async def test_commit_fetcher_wraps_adapter_errors(scan_request):
    """Unexpected adapter errors surface as DataProcessingException."""
    adapter = InMemoryAdapter(error=RuntimeError("socket closed"))

    with pytest.raises(DataProcessingException):
        await CommitFetcher(adapter).fetch_commits(scan_request)


@pytest.mark.asyncio
async def test_fetcher_honors_cancellation(scan_request):
    """A set cancel event stops before the first page."""
    cancel_event = asyncio.Event()
    cancel_event.set()

    with pytest.raises(ScanCancelledException):
        await CommitFetcher(InMemoryAdapter(commit_pages=[[commit("a")]])).fetch_commits(
            scan_request, cancel_event
        )


@pytest.mark.asyncio
async def test_fetcher_hands_cancel_event_to_rate_limit_guard(
    scan_request, rate_limit_service
):
    """The guard receives the scan's cancel event so a cooldown can be interrupted."""
    cancel_event = asyncio.Event()
    adapter = InMemoryAdapter(merge_request_pages=[[merge_request("1")]])

    await MergeRequestFetcher(adapter, rate_limit_service).fetch_merge_requests(
        scan_request, cancel_event
    )

    assert (
        rate_limit_service.check_rate_limit.await_args.kwargs["cancel_event"]
        is cancel_event
    )


@pytest.mark.asyncio
async def test_cancel_during_cooldown_reports_cancelled(
    scan_request, persistence, rate_limit_service
):
    """A cooldown interrupted by cancellation ends the scan as CANCELLED."""
    rate_limit_service.check_rate_limit.side_effect = ScanCancelledException(
        "Scan of acme/api cancelled during rate limit cooldown"
    )
    executor = build_executor(
        InMemoryAdapter(commit_pages=[[commit("a")]]), persistence, rate_limit_service
    )

    result = await executor.execute(scan_request, asyncio.Event())

    assert result.status == RepositoryStatus.CANCELLED
    persistence.save_commits.assert_not_called()


@pytest.mark.asyncio
async def test_merge_request_fetcher_later_copy_wins(scan_request):
    """Merge requests are deduplicated by external id, last copy kept."""
    adapter = InMemoryAdapter(
        merge_request_pages=[
            [merge_request("1", title="first"), merge_request("2")],
            [merge_request("1", title="second")],
        ]
    )

    merge_requests = await MergeRequestFetcher(adapter).fetch_merge_requests(scan_request)

    assert len(merge_requests) == 2
    titles = {mr.external_id: mr.title for mr in merge_requests}
    assert titles["1"] == "second"


@pytest.mark.asyncio
async def test_empty_scan_succeeds_without_persisting(scan_request, persistence):
    """No commits and no merge requests: success and no storage calls."""
    executor = build_executor(InMemoryAdapter(), persistence)

    result = await executor.execute(scan_request)

    assert result.success is True
    assert result.status == RepositoryStatus.COMPLETED
    assert result.commits_found == 0
    assert result.merge_requests_found == 0
    persistence.save_commits.assert_not_called()
    persistence.save_merge_requests.assert_not_called()
    persistence.save_user.assert_not_called()
    persistence.find_or_create_user.assert_not_called()


@pytest.mark.asyncio
async def test_full_scan_persists_resolved_records(scan_request, persistence):
    """Commits and merge requests are stored with references and config id."""
    adapter = InMemoryAdapter(
        commit_pages=[[commit("a"), commit("b", author="carol")]],
        merge_request_pages=[[merge_request("10")]],
    )
    executor = build_executor(adapter, persistence)

    result = await executor.execute(scan_request)

    assert result.success is True
    assert (result.commits_found, result.merge_requests_found) == (2, 1)
    assert result.users_found == 3
    assert result.end_time >= result.start_time

    saved_commits = persistence.save_commits.await_args.args[0]
    assert all(c.repository_name == "acme/api" for c in saved_commits)
    assert all(c.tool_config_id == "cfg-1" for c in saved_commits)
    assert saved_commits[0].resolved_author.username == "alice"

    saved_mrs = persistence.save_merge_requests.await_args.args[0]
    assert saved_mrs[0].resolved_author.username == "bob"


@pytest.mark.asyncio
async def test_fetch_failure_reports_failed_result(scan_request, persistence):
    """Adapter failures give success=False and nothing is stored."""
    adapter = InMemoryAdapter(error=RuntimeError("boom"))
    executor = build_executor(adapter, persistence)

    result = await executor.execute(scan_request)

    assert result.success is False
    assert result.status == RepositoryStatus.FAILED
    assert "acme/api" in result.error_message
    persistence.save_commits.assert_not_called()


@pytest.mark.asyncio
async def test_rate_limit_abort_fails_scan(scan_request, persistence, rate_limit_service):
    """Quota exhaustion beyond the cooldown aborts the scan."""
    rate_limit_service.check_rate_limit.side_effect = RateLimitExceededException(
        "GitHub", 4999, 5000, 0.8, datetime.now(timezone.utc) + timedelta(days=2)
    )
    adapter = InMemoryAdapter(commit_pages=[[commit("a")]])
    executor = build_executor(adapter, persistence, rate_limit_service)

    result = await executor.execute(scan_request)

    assert result.success is False
    assert result.status == RepositoryStatus.FAILED
    assert "Rate limit threshold" in result.error_message
    persistence.save_commits.assert_not_called()


@pytest.mark.asyncio
async def test_cancelled_scan(scan_request, persistence):
    """Cancellation is reported as CANCELLED."""
    cancel_event = asyncio.Event()
    cancel_event.set()
    executor = build_executor(InMemoryAdapter(commit_pages=[[commit("a")]]), persistence)

    result = await executor.execute(scan_request, cancel_event)

    assert result.success is False
    assert result.status == RepositoryStatus.CANCELLED
    persistence.save_commits.assert_not_called()


@pytest.mark.asyncio
async def test_persistence_failure_reports_failed_result(scan_request, persistence):
    """Storage errors fail the scan."""
    persistence.save_commits.side_effect = OSError("read-only file system")
    executor = build_executor(InMemoryAdapter(commit_pages=[[commit("a")]]), persistence)

    result = await executor.execute(scan_request)

    assert result.success is False
    assert "read-only file system" in result.error_message


@pytest.mark.asyncio
async def test_scan_failure_carries_repository(scan_request, persistence):
    """Wrapped scan errors expose the repository name and URL as attributes."""
    persistence.save_commits.side_effect = OSError("disk full")
    executor = build_executor(InMemoryAdapter(commit_pages=[[commit("a")]]), persistence)
    result = ScanResult(
        repository_url=scan_request.repository_url,
        repository_name=scan_request.repository_name,
        start_time=0,
    )

    with pytest.raises(DataProcessingException) as exc_info:
        await executor._run(scan_request, result, None)

    error = exc_info.value
    assert error.repository_name == "acme/api"
    assert error.repository_url == "https://github.com/acme/api"
    assert isinstance(error.__cause__, OSError)


@pytest.mark.asyncio
async def test_fetch_error_carries_repository(scan_request):
    """Fetcher failures name the repository they were scanning."""
    adapter = InMemoryAdapter(error=RuntimeError("socket closed"))

    with pytest.raises(DataProcessingException) as exc_info:
        await CommitFetcher(adapter).fetch_commits(scan_request)

    assert exc_info.value.repository_name == "acme/api"
    assert exc_info.value.repository_url == "https://github.com/acme/api"


@pytest.mark.asyncio
async def test_scan_repository_closes_adapter(scan_request, persistence):
    """The adapter built by the factory is always closed."""
    adapter = InMemoryAdapter()
    factory = ScmToolFactory({ScmTool.GITHUB: lambda repository_url, **kwargs: adapter})

    result = await scan_repository(scan_request, persistence, factory=factory)

    assert result.success is True
    assert adapter.closed is True


@pytest.mark.asyncio
async def test_scan_repository_rejects_unknown_tool(scan_request, persistence):
    """Unknown tool names fail before any adapter is built."""
    request = scan_request.model_copy(update={"tool_type": "PERFORCE"})

    with pytest.raises(UnsupportedPlatformException):
        await scan_repository(request, persistence)
