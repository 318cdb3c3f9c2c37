"""
Azure Repos Platform Adapter.

Reads commits and pull requests from Azure DevOps Services through the Git
REST API (api-version 7.0) with $top/$skip pagination. Azure does not return
line counts without fetching blobs, so file changes carry the change type
reported by the API and zero line counts.
"""

from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from adapters.base import RepositoryInfo, is_binary_path, merge_request_state
from adapters.http_adapter import HttpPlatformAdapter, parse_timestamp
from config import settings, logger
from scanner.exceptions import GitScannerException
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

API_VERSION = "7.0"

_CHANGE_TYPES = {
    "add": ChangeType.ADDED,
    "delete": ChangeType.DELETED,
    "edit": ChangeType.MODIFIED,
    "rename": ChangeType.RENAMED,
}


def _branch_name(ref: Optional[str]) -> Optional[str]:
    if ref and ref.startswith("refs/heads/"):
        return ref[len("refs/heads/") :]
    return ref


def _change_type(value: Optional[str]) -> ChangeType:
    # Azure reports combinations such as "edit, rename"
    for part in (value or "").replace(" ", "").split(","):
        if part in _CHANGE_TYPES:
            return _CHANGE_TYPES[part]
    return ChangeType.MODIFIED


class AzureReposAdapter(HttpPlatformAdapter):
    platform_name = "Azure DevOps"

    def request_credentials(self, request: ScanRequest) -> Dict[str, Any]:
        token = request.token_value
        if not token:
            return {}
        # Personal access tokens are sent as the password of basic auth
        return {"auth": httpx.BasicAuth(request.username or "", token)}

    def api_base_url(self, request: ScanRequest) -> Optional[str]:
        return parse_repository_url(request.repository_url).base_url

    def _repository_url(self, request: ScanRequest) -> str:
        info = parse_repository_url(request.repository_url)
        base = settings.azure_devops_api_url.rstrip("/")
        return (
            f"{base}/{info.organization}/{info.project}"
            f"/_apis/git/repositories/{info.repository}"
        )

    async def fetch_repository(self, request: ScanRequest) -> RepositoryInfo:
        data = await self.get_json(
            request, self._repository_url(request), {"api-version": API_VERSION}
        )
        return RepositoryInfo(
            id=data["id"],
            name=data["name"],
            full_name=f"{(data.get('project') or {}).get('name')}/{data['name']}",
            default_branch=_branch_name(data.get("defaultBranch")),
            url=data.get("webUrl"),
        )

    async def _paginate(
        self, request: ScanRequest, url: str, params: Dict[str, Any], prefix: str = ""
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        skip = 0
        while True:
            page_params = {
                **params,
                f"{prefix}$top": self.page_size,
                f"{prefix}$skip": skip,
                "api-version": API_VERSION,
            }
            data = await self.get_json(request, url, page_params)
            values = data.get("value") or []
            if not values:
                return
            yield values
            if len(values) < self.page_size:
                return
            skip += len(values)

    async def iter_commit_pages(
        self,
        request: ScanRequest,
        branch: Optional[str],
        since: Optional[datetime],
        until: Optional[datetime],
    ) -> AsyncIterator[List[Commit]]:
        params: Dict[str, Any] = {}
        if branch:
            params["searchCriteria.itemVersion.version"] = branch
        if since:
            params["searchCriteria.fromDate"] = since.isoformat()
        if until:
            params["searchCriteria.toDate"] = until.isoformat()

        url = f"{self._repository_url(request)}/commits"
        async for values in self._paginate(request, url, params, "searchCriteria."):
            commits = []
            for item in values:
                commits.append(await self._to_commit(request, item, branch))
            yield commits

    async def _to_commit(
        self, request: ScanRequest, item: Dict[str, Any], branch: Optional[str]
    ) -> Commit:
        sha = item["commitId"]
        data = await self.get_json(
            request,
            f"{self._repository_url(request)}/commits/{sha}/changes",
            {"api-version": API_VERSION},
        )
        file_changes = [
            FileChange(
                file_path=change["item"]["path"].lstrip("/"),
                change_type=_change_type(change.get("changeType")),
                previous_path=(change.get("sourceServerItem") or "").lstrip("/") or None,
                is_binary=is_binary_path(change["item"]["path"]),
            )
            for change in data.get("changes") or []
            if not (change.get("item") or {}).get("isFolder")
            and (change.get("item") or {}).get("path")
        ]

        author = item.get("author") or {}
        committer = item.get("committer") or {}
        parents = item.get("parents") or []
        return Commit(
            sha=sha,
            author_name=author.get("email") or author.get("name"),
            author_email=author.get("email"),
            committer_name=committer.get("email") or committer.get("name"),
            committer_email=committer.get("email"),
            message=item.get("comment"),
            timestamp=parse_timestamp(author.get("date")),
            branch_name=branch,
            repository_name=request.repository_name,
            file_changes=file_changes,
            parent_shas=parents,
            is_merge_commit=len(parents) > 1,
            author=User(
                username=author.get("email") or author.get("name"),
                display_name=author.get("name"),
                email=author.get("email"),
                repository_name=request.repository_name,
            )
            if author
            else None,
        )

    async def iter_merge_request_pages(
        self,
        request: ScanRequest,
        since: Optional[datetime],
        until: Optional[datetime],
    ) -> AsyncIterator[List[MergeRequest]]:
        url = f"{self._repository_url(request)}/pullrequests"
        params = {"searchCriteria.status": "all"}
        async for values in self._paginate(request, url, params):
            merge_requests = []
            reached_since = False
            for item in values:
                created_at = parse_timestamp(item.get("creationDate"))
                if since and created_at and created_at < since:
                    reached_since = True
                    break
                merge_requests.append(await self._to_merge_request(request, item))
            if merge_requests:
                yield merge_requests
            if reached_since:
                return

    async def _merge_request_stats(
        self, request: ScanRequest, pull_request_id: int
    ) -> PullRequestStats:
        """
        Count the files changed by the latest pull request iteration.

        Iteration changes list paths without line statistics, so the returned
        added_lines and removed_lines are always 0. Only changed_files is
        populated.
        """
        url = f"{self._repository_url(request)}/pullrequests/{pull_request_id}/iterations"
        iterations = await self.get_json(request, url, {"api-version": API_VERSION})
        values = iterations.get("value") or []
        if not values:
            return PullRequestStats()
        changes = await self.get_json(
            request,
            f"{url}/{values[-1]['id']}/changes",
            {"api-version": API_VERSION},
        )
        return PullRequestStats(changed_files=len(changes.get("changeEntries") or []))

    async def _picked_for_review_on(
        self,
        request: ScanRequest,
        pull_request_id: int,
        created_at: Optional[datetime],
    ) -> Optional[datetime]:
        """
        Find the first thread comment published after the pull request opened.

        Failures to fetch the threads are logged and yield None.
        """
        if created_at is None:
            return None
        url = f"{self._repository_url(request)}/pullrequests/{pull_request_id}/threads"
        try:
            data = await self.get_json(request, url, {"api-version": API_VERSION})
        except (GitScannerException, httpx.HTTPError) as e:
            logger.warning(
                {
                    "message": "Failed to fetch pull request threads",
                    "repository": request.repository_name,
                    "pull_request": pull_request_id,
                    "error": str(e),
                }
            )
            return None

        first: Optional[datetime] = None
        for thread in data.get("value") or []:
            for comment in thread.get("comments") or []:
                published = parse_timestamp(comment.get("publishedDate"))
                if published is None or published <= created_at:
                    continue
                if first is None or published < first:
                    first = published
        return first

    async def _to_merge_request(
        self, request: ScanRequest, item: Dict[str, Any]
    ) -> MergeRequest:
        created_by = item.get("createdBy") or {}
        username = created_by.get("uniqueName")
        state = merge_request_state(item.get("status"))
        closed_at = parse_timestamp(item.get("closedDate"))
        created_at = parse_timestamp(item.get("creationDate"))
        return MergeRequest(
            external_id=str(item["pullRequestId"]),
            number=item["pullRequestId"],
            title=item.get("title"),
            state=state,
            created_at=created_at,
            updated_at=closed_at or created_at,
            merged_at=closed_at if item.get("status") == "completed" else None,
            closed_at=closed_at,
            source_branch=_branch_name(item.get("sourceRefName")),
            target_branch=_branch_name(item.get("targetRefName")),
            url=item.get("url"),
            author=User(
                username=username,
                display_name=created_by.get("displayName"),
                email=username if username and "@" in username else None,
                repository_name=request.repository_name,
            )
            if created_by
            else None,
            author_user_id=username,
            reviewers=[
                r["uniqueName"]
                for r in item.get("reviewers") or []
                if r.get("uniqueName")
            ],
            picked_for_review_on=await self._picked_for_review_on(
                request, item["pullRequestId"], created_at
            ),
            stats=await self._merge_request_stats(request, item["pullRequestId"]),
            repository_name=request.repository_name,
        )
