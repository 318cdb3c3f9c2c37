"""
GitLab Platform Adapter.

Reads commits and merge requests through the GitLab REST API v4. Per-file
diffs are joined into unified diff text and normalized by GitLabDiffParser.
"""

from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import quote

from adapters.base import RepositoryInfo, is_binary_path, merge_request_state
from adapters.http_adapter import HttpPlatformAdapter, parse_timestamp
from parsers.unified import GitLabDiffParser, with_git_header
from scanner.models import (
    Commit,
    MergeRequest,
    PullRequestStats,
    ScanRequest,
    User,
)
from scanner.url_parser import parse_repository_url

# System note fragments written when a reviewer acts on a merge request
_REVIEWER_ACTIONS = (
    "approved this merge request",
    "unapproved this merge request",
    "requested changes",
    "started a review",
    "requested review from",
    "assigned to",
    "unassigned",
    "marked as draft",
    "marked as ready",
    "closed",
    "reopened",
)

MIN_REVIEWER_COMMENT_LENGTH = 3


def is_reviewer_note(note: Dict[str, Any], author_username: Optional[str]) -> bool:
    """
    Check whether a merge request note records reviewer activity.

    Notes by the merge request author never count. System notes count when
    they describe a review action, user comments when they are not trivially
    short.
    """
    body = (note.get("body") or "").strip()
    if not body:
        return False
    if author_username and (note.get("author") or {}).get("username") == author_username:
        return False
    if note.get("system"):
        lowered = body.lower()
        return any(action in lowered for action in _REVIEWER_ACTIONS)
    return len(body) >= MIN_REVIEWER_COMMENT_LENGTH


class GitLabAdapter(HttpPlatformAdapter):
    platform_name = "GitLab"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.diff_parser = GitLabDiffParser()

    def request_credentials(self, request: ScanRequest) -> Dict[str, Any]:
        token = request.token_value
        return {"headers": {"PRIVATE-TOKEN": token}} if token else {}

    def api_base_url(self, request: ScanRequest) -> Optional[str]:
        return parse_repository_url(request.repository_url).base_url

    def _project_url(self, request: ScanRequest) -> str:
        info = parse_repository_url(request.repository_url)
        project_id = quote(info.full_name, safe="")
        return f"{info.base_url}/api/v4/projects/{project_id}"

    async def fetch_repository(self, request: ScanRequest) -> RepositoryInfo:
        data = await self.get_json(request, self._project_url(request))
        return RepositoryInfo(
            id=str(data["id"]),
            name=data.get("path") or data.get("name"),
            full_name=data.get("path_with_namespace") or data.get("name"),
            default_branch=data.get("default_branch"),
            url=data.get("web_url"),
        )

    async def _paginate(
        self, request: ScanRequest, url: str, params: Dict[str, Any]
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        page: Optional[str] = "1"
        while page:
            response = await self._get(
                request, url, {**params, "page": page, "per_page": self.page_size}
            )
            items = response.json()
            if not items:
                return
            yield items
            page = response.headers.get("X-Next-Page")

    async def iter_commit_pages(
        self,
        request: ScanRequest,
        branch: Optional[str],
        since: Optional[datetime],
        until: Optional[datetime],
    ) -> AsyncIterator[List[Commit]]:
        params: Dict[str, Any] = {"with_stats": "true"}
        if branch:
            params["ref_name"] = branch
        if since:
            params["since"] = since.isoformat()
        if until:
            params["until"] = until.isoformat()

        url = f"{self._project_url(request)}/repository/commits"
        async for items in self._paginate(request, url, params):
            commits = []
            for item in items:
                commits.append(await self._to_commit(request, item, branch))
            yield commits

    async def _to_commit(
        self, request: ScanRequest, item: Dict[str, Any], branch: Optional[str]
    ) -> Commit:
        sha = item["id"]
        diffs = await self.get_json(
            request, f"{self._project_url(request)}/repository/commits/{sha}/diff"
        )
        raw = "\n".join(
            with_git_header(d.get("new_path"), d.get("old_path"), d.get("diff") or "")
            for d in diffs
        )
        file_changes = self.diff_parser.parse_diff_to_file_changes(raw)
        for change in file_changes:
            change.is_binary = change.is_binary or is_binary_path(change.file_path)

        stats = item.get("stats") or {}
        parents = item.get("parent_ids") or []
        author_name = item.get("author_name")
        return Commit(
            sha=sha,
            author_name=author_name,
            author_email=item.get("author_email"),
            committer_name=item.get("committer_name"),
            committer_email=item.get("committer_email"),
            message=item.get("message"),
            timestamp=parse_timestamp(
                item.get("committed_date") or item.get("created_at")
            ),
            branch_name=branch,
            repository_name=request.repository_name,
            file_changes=file_changes,
            added_lines=stats.get("additions", sum(f.added_lines for f in file_changes)),
            removed_lines=stats.get(
                "deletions", sum(f.removed_lines for f in file_changes)
            ),
            parent_shas=parents,
            is_merge_commit=len(parents) > 1,
            author=User(
                username=author_name,
                display_name=author_name,
                email=item.get("author_email"),
                repository_name=request.repository_name,
            )
            if author_name
            else None,
        )

    async def iter_merge_request_pages(
        self,
        request: ScanRequest,
        since: Optional[datetime],
        until: Optional[datetime],
    ) -> AsyncIterator[List[MergeRequest]]:
        params: Dict[str, Any] = {
            "state": "all",
            "order_by": "updated_at",
            "sort": "desc",
        }
        if since:
            params["updated_after"] = since.isoformat()
        if until:
            params["updated_before"] = until.isoformat()

        url = f"{self._project_url(request)}/merge_requests"
        async for items in self._paginate(request, url, params):
            merge_requests = []
            for item in items:
                merge_requests.append(await self._to_merge_request(request, item))
            yield merge_requests

    async def _merge_request_stats(
        self, request: ScanRequest, iid: int
    ) -> PullRequestStats:
        data = await self.get_json(
            request, f"{self._project_url(request)}/merge_requests/{iid}/changes"
        )
        changes = data.get("changes") or []
        raw = "\n".join(
            with_git_header(c.get("new_path"), c.get("old_path"), c.get("diff") or "")
            for c in changes
        )
        return self.diff_parser.parse_pr_diff_to_file_changes(raw)

    async def _picked_for_review_on(
        self,
        request: ScanRequest,
        iid: int,
        created_at: Optional[datetime],
        author_username: Optional[str],
    ) -> Optional[datetime]:
        """Return the time of the first reviewer note after the merge request opened."""
        url = f"{self._project_url(request)}/merge_requests/{iid}/notes"
        notes: List[Dict[str, Any]] = []
        async for items in self._paginate(
            request, url, {"sort": "asc", "order_by": "created_at"}
        ):
            notes.extend(items)

        timed = [
            (parse_timestamp(note.get("created_at")), note)
            for note in notes
            if note.get("created_at")
        ]
        for noted_at, note in sorted(timed, key=lambda pair: pair[0]):
            if created_at is not None and noted_at <= created_at:
                continue
            if is_reviewer_note(note, author_username):
                return noted_at
        return None

    async def _to_merge_request(
        self, request: ScanRequest, item: Dict[str, Any]
    ) -> MergeRequest:
        author = item.get("author") or {}
        username = author.get("username")
        created_at = parse_timestamp(item.get("created_at"))
        return MergeRequest(
            external_id=str(item["iid"]),
            number=item["iid"],
            title=item.get("title"),
            state=merge_request_state(item.get("state")),
            created_at=created_at,
            updated_at=parse_timestamp(item.get("updated_at")),
            merged_at=parse_timestamp(item.get("merged_at")),
            closed_at=parse_timestamp(item.get("closed_at")),
            source_branch=item.get("source_branch"),
            target_branch=item.get("target_branch"),
            url=item.get("web_url"),
            author=User(
                username=username,
                display_name=author.get("name"),
                email=author.get("email"),
                repository_name=request.repository_name,
            )
            if author
            else None,
            author_user_id=username,
            reviewers=[
                r["username"] for r in item.get("reviewers") or [] if r.get("username")
            ],
            picked_for_review_on=await self._picked_for_review_on(
                request, item["iid"], created_at, username
            ),
            stats=await self._merge_request_stats(request, item["iid"]),
            repository_name=request.repository_name,
        )
