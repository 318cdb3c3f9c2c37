"""
Bitbucket Platform Adapters.

Bitbucket Cloud (api.bitbucket.org 2.0, cursor pagination, unified diff text)
and Bitbucket Server / Data Center (REST 1.0, start/limit pagination, JSON
diffs) share the same normalized output.
"""

from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional
import re

from adapters.base import RepositoryInfo, is_binary_path, merge_request_state
from adapters.http_adapter import HttpPlatformAdapter, parse_timestamp
from config import settings
from parsers.bitbucket_server import BitbucketServerDiffParser
from parsers.unified import BitbucketCloudDiffParser
from scanner.exceptions import RepositoryNotFoundException
from scanner.models import Commit, MergeRequest, MergeRequestState, ScanRequest, User
from scanner.url_parser import parse_repository_url

_RAW_AUTHOR_RE = re.compile(r"^\s*(.*?)\s*<([^>]*)>\s*$")


def split_raw_author(raw: Optional[str]):
    """Split `Name <email>` into (name, email)."""
    if not raw:
        return None, None
    match = _RAW_AUTHOR_RE.match(raw)
    if match:
        return match.group(1) or None, match.group(2) or None
    return raw.strip(), None


class BitbucketCloudAdapter(HttpPlatformAdapter):
    platform_name = "Bitbucket"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.diff_parser = BitbucketCloudDiffParser()

    def api_base_url(self, request: ScanRequest) -> Optional[str]:
        return settings.bitbucket_api_url

    def _repository_url(self, request: ScanRequest) -> str:
        info = parse_repository_url(request.repository_url)
        api = settings.bitbucket_api_url.rstrip("/")
        return f"{api}/repositories/{info.owner}/{info.repository}"

    async def fetch_repository(self, request: ScanRequest) -> RepositoryInfo:
        data = await self.get_json(request, self._repository_url(request))
        return RepositoryInfo(
            id=data.get("uuid") or data["full_name"],
            name=data.get("slug") or data.get("name"),
            full_name=data["full_name"],
            default_branch=(data.get("mainbranch") or {}).get("name"),
            url=((data.get("links") or {}).get("html") or {}).get("href"),
        )

    async def _paginate(
        self, request: ScanRequest, url: str, params: Any
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        next_url: Optional[str] = url
        while next_url:
            data = await self.get_json(
                request, next_url, params if next_url == url else None
            )
            values = data.get("values") or []
            if not values:
                return
            yield values
            next_url = data.get("next")

    async def iter_commit_pages(
        self,
        request: ScanRequest,
        branch: Optional[str],
        since: Optional[datetime],
        until: Optional[datetime],
    ) -> AsyncIterator[List[Commit]]:
        url = f"{self._repository_url(request)}/commits"
        if branch:
            url = f"{url}/{branch}"

        async for values in self._paginate(request, url, {"pagelen": self.page_size}):
            commits = []
            reached_since = False
            for item in values:
                timestamp = parse_timestamp(item.get("date"))
                if since and timestamp and timestamp < since:
                    reached_since = True
                    break
                commits.append(await self._to_commit(request, item, branch, timestamp))
            if commits:
                yield commits
            if reached_since:
                return

    async def _to_commit(
        self,
        request: ScanRequest,
        item: Dict[str, Any],
        branch: Optional[str],
        timestamp: Optional[datetime],
    ) -> Commit:
        sha = item["hash"]
        raw_diff = await self.get_text(
            request, f"{self._repository_url(request)}/diff/{sha}"
        )
        file_changes = self.diff_parser.parse_diff_to_file_changes(raw_diff)
        for change in file_changes:
            change.is_binary = change.is_binary or is_binary_path(change.file_path)

        author = item.get("author") or {}
        account = author.get("user") or {}
        name, email = split_raw_author(author.get("raw"))
        username = account.get("nickname") or account.get("username")
        parents = [p["hash"] for p in item.get("parents") or []]
        return Commit(
            sha=sha,
            author_name=username or name,
            author_email=email,
            committer_name=username or name,
            committer_email=email,
            message=item.get("message"),
            timestamp=timestamp,
            branch_name=branch,
            repository_name=request.repository_name,
            file_changes=file_changes,
            added_lines=sum(f.added_lines for f in file_changes),
            removed_lines=sum(f.removed_lines for f in file_changes),
            parent_shas=parents,
            is_merge_commit=len(parents) > 1,
            author=User(
                username=username,
                display_name=account.get("display_name") or name,
                email=email,
                repository_name=request.repository_name,
            ),
        )

    async def iter_merge_request_pages(
        self,
        request: ScanRequest,
        since: Optional[datetime],
        until: Optional[datetime],
    ) -> AsyncIterator[List[MergeRequest]]:
        params = [
            ("state", "OPEN"),
            ("state", "MERGED"),
            ("state", "DECLINED"),
            ("state", "SUPERSEDED"),
            ("sort", "-updated_on"),
            ("pagelen", min(self.page_size, 50)),
        ]
        url = f"{self._repository_url(request)}/pullrequests"
        async for values in self._paginate(request, url, params):
            merge_requests = []
            reached_since = False
            for item in values:
                updated_at = parse_timestamp(item.get("updated_on"))
                if since and updated_at and updated_at < since:
                    reached_since = True
                    break
                merge_requests.append(await self._to_merge_request(request, item))
            if merge_requests:
                yield merge_requests
            if reached_since:
                return

    async def _to_merge_request(
        self, request: ScanRequest, item: Dict[str, Any]
    ) -> MergeRequest:
        pr_url = f"{self._repository_url(request)}/pullrequests/{item['id']}"
        detail = await self.get_json(request, pr_url)
        raw_diff = await self.get_text(request, f"{pr_url}/diff")

        author = item.get("author") or {}
        username = author.get("nickname") or author.get("username")
        state = merge_request_state(item.get("state"))
        updated_at = parse_timestamp(item.get("updated_on"))
        reviewers = [
            r.get("nickname") or r.get("display_name")
            for r in detail.get("reviewers") or []
        ]
        return MergeRequest(
            external_id=str(item["id"]),
            number=item["id"],
            title=item.get("title"),
            state=state,
            created_at=parse_timestamp(item.get("created_on")),
            updated_at=updated_at,
            merged_at=updated_at if state == MergeRequestState.MERGED else None,
            closed_at=updated_at if state != MergeRequestState.OPEN else None,
            source_branch=((item.get("source") or {}).get("branch") or {}).get("name"),
            target_branch=((item.get("destination") or {}).get("branch") or {}).get(
                "name"
            ),
            url=((item.get("links") or {}).get("html") or {}).get("href"),
            author=User(
                username=username,
                display_name=author.get("display_name"),
                repository_name=request.repository_name,
            )
            if author
            else None,
            author_user_id=username,
            reviewers=[r for r in reviewers if r],
            stats=self.diff_parser.parse_pr_diff_to_file_changes(raw_diff),
            repository_name=request.repository_name,
        )


class BitbucketServerAdapter(HttpPlatformAdapter):
    platform_name = "Bitbucket"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.diff_parser = BitbucketServerDiffParser()

    def api_base_url(self, request: ScanRequest) -> Optional[str]:
        return parse_repository_url(request.repository_url).base_url

    def _repository_url(self, request: ScanRequest) -> str:
        info = parse_repository_url(request.repository_url)
        return (
            f"{info.base_url}/rest/api/1.0/projects/{info.project}"
            f"/repos/{info.repository}"
        )

    async def fetch_repository(self, request: ScanRequest) -> RepositoryInfo:
        data = await self.get_json(request, self._repository_url(request))
        project = (data.get("project") or {}).get("key")
        default_branch = None
        try:
            branch = await self.get_json(
                request, f"{self._repository_url(request)}/default-branch"
            )
            default_branch = branch.get("displayId")
        except RepositoryNotFoundException:
            # Older servers do not expose default-branch; let the API pick
            default_branch = None
        return RepositoryInfo(
            id=str(data["id"]),
            name=data.get("slug") or data.get("name"),
            full_name=f"{project}/{data.get('slug')}",
            default_branch=default_branch,
        )

    async def _paginate(
        self, request: ScanRequest, url: str, params: Dict[str, Any]
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        start = 0
        while True:
            data = await self.get_json(
                request, url, {**params, "start": start, "limit": self.page_size}
            )
            values = data.get("values") or []
            if values:
                yield values
            if data.get("isLastPage", True) or not values:
                return
            start = data.get("nextPageStart", start + len(values))

    async def iter_commit_pages(
        self,
        request: ScanRequest,
        branch: Optional[str],
        since: Optional[datetime],
        until: Optional[datetime],
    ) -> AsyncIterator[List[Commit]]:
        params: Dict[str, Any] = {}
        if branch:
            params["until"] = branch

        url = f"{self._repository_url(request)}/commits"
        async for values in self._paginate(request, url, params):
            commits = []
            reached_since = False
            for item in values:
                timestamp = parse_timestamp(
                    item.get("committerTimestamp") or item.get("authorTimestamp")
                )
                if since and timestamp and timestamp < since:
                    reached_since = True
                    break
                commits.append(await self._to_commit(request, item, branch, timestamp))
            if commits:
                yield commits
            if reached_since:
                return

    async def _to_commit(
        self,
        request: ScanRequest,
        item: Dict[str, Any],
        branch: Optional[str],
        timestamp: Optional[datetime],
    ) -> Commit:
        sha = item["id"]
        raw_diff = await self.get_text(
            request, f"{self._repository_url(request)}/commits/{sha}/diff"
        )
        file_changes = self.diff_parser.parse_diff_to_file_changes(raw_diff)
        for change in file_changes:
            change.is_binary = change.is_binary or is_binary_path(change.file_path)

        author = item.get("author") or {}
        committer = item.get("committer") or author
        parents = [p["id"] for p in item.get("parents") or []]
        return Commit(
            sha=sha,
            author_name=author.get("name"),
            author_email=author.get("emailAddress"),
            committer_name=committer.get("name"),
            committer_email=committer.get("emailAddress"),
            message=item.get("message"),
            timestamp=timestamp,
            branch_name=branch,
            repository_name=request.repository_name,
            file_changes=file_changes,
            added_lines=sum(f.added_lines for f in file_changes),
            removed_lines=sum(f.removed_lines for f in file_changes),
            parent_shas=parents,
            is_merge_commit=len(parents) > 1,
            author=User(
                username=author.get("name"),
                display_name=author.get("displayName") or author.get("name"),
                email=author.get("emailAddress"),
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
        params = {"state": "ALL", "order": "NEWEST"}
        url = f"{self._repository_url(request)}/pull-requests"
        async for values in self._paginate(request, url, params):
            merge_requests = []
            reached_since = False
            for item in values:
                updated_at = parse_timestamp(item.get("updatedDate"))
                if since and updated_at and updated_at < since:
                    reached_since = True
                    break
                merge_requests.append(await self._to_merge_request(request, item))
            if merge_requests:
                yield merge_requests
            if reached_since:
                return

    async def _to_merge_request(
        self, request: ScanRequest, item: Dict[str, Any]
    ) -> MergeRequest:
        raw_diff = await self.get_text(
            request, f"{self._repository_url(request)}/pull-requests/{item['id']}/diff"
        )
        user = (item.get("author") or {}).get("user") or {}
        username = user.get("name") or user.get("slug")
        state = merge_request_state(item.get("state"))
        links = (item.get("links") or {}).get("self") or [{}]
        return MergeRequest(
            external_id=str(item["id"]),
            number=item["id"],
            title=item.get("title"),
            state=state,
            created_at=parse_timestamp(item.get("createdDate")),
            updated_at=parse_timestamp(item.get("updatedDate")),
            merged_at=parse_timestamp(item.get("closedDate"))
            if state == MergeRequestState.MERGED
            else None,
            closed_at=parse_timestamp(item.get("closedDate")),
            source_branch=(item.get("fromRef") or {}).get("displayId"),
            target_branch=(item.get("toRef") or {}).get("displayId"),
            url=links[0].get("href"),
            author=User(
                username=username,
                display_name=user.get("displayName"),
                email=user.get("emailAddress"),
                repository_name=request.repository_name,
            )
            if user
            else None,
            author_user_id=username,
            reviewers=[
                (r.get("user") or {}).get("name")
                for r in item.get("reviewers") or []
                if (r.get("user") or {}).get("name")
            ],
            stats=self.diff_parser.parse_pr_diff_to_file_changes(raw_diff),
            repository_name=request.repository_name,
        )
