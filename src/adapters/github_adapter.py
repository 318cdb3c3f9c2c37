"""
GitHub Platform Adapter.

Reads commits and pull requests through PyGithub. PyGithub is synchronous, so
every call that may hit the network runs in a worker thread. Repository ids
are cached per full name and shared by every adapter instance.
"""

import asyncio
import threading
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional

from github import Auth, Github
from github.Commit import Commit as GithubCommit
from github.File import File
from github.PaginatedList import PaginatedList
from github.PullRequest import PullRequest
from github.Repository import Repository

from adapters.base import (
    PlatformAdapter,
    RepositoryInfo,
    is_binary_path,
    merge_request_state,
)
from config import settings, logger
from parsers.unified import extract_changed_line_numbers
from scanner.models import (
    ChangeType,
    Commit,
    FileChange,
    MergeRequest,
    PullRequestStats,
    ScanRequest,
    User,
)
from scanner.url_parser import parse_repository_url

_FILE_STATUS = {
    "added": ChangeType.ADDED,
    "removed": ChangeType.DELETED,
    "renamed": ChangeType.RENAMED,
}

# Review states that count as a reviewer picking up the pull request
_PICKUP_REVIEW_STATES = {"APPROVED", "COMMENTED", "CHANGES_REQUESTED", "DISMISSED"}


class GitHubAdapter(PlatformAdapter):
    """
    PyGithub backed adapter.

    Attributes:
        page_size (int): Records requested per page
        timeout (float): HTTP timeout handed to PyGithub
    """

    platform_name = "GitHub"

    # full name -> repository id, shared by concurrent scans
    _repository_ids: Dict[str, int] = {}
    _cache_lock = threading.Lock()

    def __init__(
        self,
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
        github_factory=None,
    ):
        """
        Args:
            page_size (Optional[int]): Records requested per page.
            timeout (Optional[float]): HTTP timeout in seconds.
            github_factory (Optional[Callable]): Builds a Github client from a
                ScanRequest; defaults to token authentication.
        """
        self.page_size = page_size or settings.page_size
        self.timeout = timeout or settings.http_timeout_seconds
        self._github_factory = github_factory or self._default_github
        self._clients: Dict[Optional[str], Github] = {}

    def _default_github(self, request: ScanRequest) -> Github:
        token = request.token_value
        return Github(
            auth=Auth.Token(token) if token else None,
            base_url=settings.github_api_url,
            per_page=self.page_size,
            timeout=int(self.timeout),
        )

    def _github(self, request: ScanRequest) -> Github:
        token = request.token_value
        if token not in self._clients:
            self._clients[token] = self._github_factory(request)
        return self._clients[token]

    def api_base_url(self, request: ScanRequest) -> Optional[str]:
        return settings.github_api_url

    @classmethod
    def cached_repository_id(cls, full_name: str) -> Optional[int]:
        with cls._cache_lock:
            return cls._repository_ids.get(full_name.lower())

    @classmethod
    def clear_cache(cls) -> None:
        with cls._cache_lock:
            cls._repository_ids.clear()

    def _get_repo(self, request: ScanRequest) -> Repository:
        full_name = parse_repository_url(request.repository_url).full_name
        github = self._github(request)
        repository_id = self.cached_repository_id(full_name)
        if repository_id is not None:
            return github.get_repo(repository_id)

        repo = github.get_repo(full_name)
        with self._cache_lock:
            self._repository_ids[full_name.lower()] = repo.id
        return repo

    async def fetch_repository(self, request: ScanRequest) -> RepositoryInfo:
        repo = await asyncio.to_thread(self._get_repo, request)
        return RepositoryInfo(
            id=str(repo.id),
            name=repo.name,
            full_name=repo.full_name,
            default_branch=repo.default_branch,
            url=repo.html_url,
        )

    async def _pages(self, paginated: PaginatedList) -> AsyncIterator[list]:
        page = 0
        while True:
            items = await asyncio.to_thread(paginated.get_page, page)
            if not items:
                return
            yield items
            page += 1

    async def iter_commit_pages(
        self,
        request: ScanRequest,
        branch: Optional[str],
        since: Optional[datetime],
        until: Optional[datetime],
    ) -> AsyncIterator[List[Commit]]:
        repo = await asyncio.to_thread(self._get_repo, request)
        kwargs = {}
        if branch:
            kwargs["sha"] = branch
        if since:
            kwargs["since"] = since
        if until:
            kwargs["until"] = until

        async for items in self._pages(repo.get_commits(**kwargs)):
            yield await asyncio.to_thread(
                lambda: [self._to_commit(request, c, branch) for c in items]
            )

    def _to_file_change(self, file: File) -> FileChange:
        change_type = _FILE_STATUS.get(file.status)
        if change_type is None:
            change_type = ChangeType.from_counts(file.additions, file.deletions)
            if change_type in (ChangeType.ADDED, ChangeType.DELETED):
                change_type = ChangeType.MODIFIED
        return FileChange(
            file_path=file.filename,
            previous_path=file.previous_filename,
            added_lines=file.additions,
            removed_lines=file.deletions,
            change_type=change_type,
            changed_line_numbers=extract_changed_line_numbers(file.patch),
            is_binary=is_binary_path(file.filename)
            or (file.patch is None and file.changes == 0),
        )

    def _to_commit(
        self, request: ScanRequest, commit: GithubCommit, branch: Optional[str]
    ) -> Commit:
        git_author = commit.commit.author
        git_committer = commit.commit.committer
        login = commit.author.login if commit.author else None
        committer_login = commit.committer.login if commit.committer else None
        file_changes = [self._to_file_change(f) for f in commit.files]
        parents = [p.sha for p in commit.parents]

        return Commit(
            sha=commit.sha,
            author_name=login or (git_author.name if git_author else None),
            author_email=git_author.email if git_author else None,
            committer_name=committer_login
            or (git_committer.name if git_committer else None),
            committer_email=git_committer.email if git_committer else None,
            message=commit.commit.message,
            timestamp=git_author.date if git_author else None,
            branch_name=branch,
            repository_name=request.repository_name,
            file_changes=file_changes,
            added_lines=commit.stats.additions,
            removed_lines=commit.stats.deletions,
            parent_shas=parents,
            is_merge_commit=len(parents) > 1,
            author=User(
                username=login,
                display_name=git_author.name if git_author else login,
                email=git_author.email if git_author else None,
                repository_name=request.repository_name,
            ),
        )

    async def iter_merge_request_pages(
        self,
        request: ScanRequest,
        since: Optional[datetime],
        until: Optional[datetime],
    ) -> AsyncIterator[List[MergeRequest]]:
        repo = await asyncio.to_thread(self._get_repo, request)
        pulls = repo.get_pulls(state="all", sort="updated", direction="desc")

        async for items in self._pages(pulls):
            recent = [pr for pr in items if not since or pr.updated_at >= since]
            if recent:
                yield await asyncio.to_thread(
                    lambda: [self._to_merge_request(request, pr) for pr in recent]
                )
            # Sorted by update time, so an older entry ends the window
            if len(recent) < len(items):
                logger.debug(
                    {
                        "message": "Reached pull requests older than scan window",
                        "repository": request.repository_name,
                    }
                )
                return

    def _to_merge_request(self, request: ScanRequest, pr: PullRequest) -> MergeRequest:
        login = pr.user.login if pr.user else None
        reviewers: List[str] = []
        picked_for_review_on: Optional[datetime] = None
        for review in pr.get_reviews():
            if review.user and review.user.login not in reviewers:
                reviewers.append(review.user.login)
            submitted_at = review.submitted_at
            if review.state in _PICKUP_REVIEW_STATES and submitted_at is not None:
                if picked_for_review_on is None or submitted_at < picked_for_review_on:
                    picked_for_review_on = submitted_at

        return MergeRequest(
            external_id=str(pr.number),
            number=pr.number,
            title=pr.title,
            state=merge_request_state(pr.state, merged=pr.merged_at is not None),
            created_at=pr.created_at,
            updated_at=pr.updated_at,
            merged_at=pr.merged_at,
            closed_at=pr.closed_at,
            source_branch=pr.head.ref,
            target_branch=pr.base.ref,
            url=pr.html_url,
            author=User(
                username=login,
                display_name=login,
                repository_name=request.repository_name,
            )
            if login
            else None,
            author_user_id=login,
            reviewers=reviewers,
            picked_for_review_on=picked_for_review_on,
            stats=PullRequestStats(
                added_lines=pr.additions,
                removed_lines=pr.deletions,
                changed_files=pr.changed_files,
            ),
            repository_name=request.repository_name,
        )

    async def close(self) -> None:
        for github in self._clients.values():
            github.close()
        self._clients.clear()
