"""
Scan Data Models.

Defines the normalized records shared by every platform adapter and the scan
pipeline. Uses Pydantic for validation and serialization.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


class ChangeType(str, Enum):
    """Per-file change classification derived from line counts."""

    ADDED = "ADDED"
    DELETED = "DELETED"
    MODIFIED = "MODIFIED"
    UNCHANGED = "UNCHANGED"
    RENAMED = "RENAMED"

    @classmethod
    def from_counts(cls, added: int, removed: int) -> "ChangeType":
        if added > 0 and removed > 0:
            return cls.MODIFIED
        if added > 0:
            return cls.ADDED
        if removed > 0:
            return cls.DELETED
        return cls.UNCHANGED


class MergeRequestState(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    MERGED = "MERGED"


class RepositoryStatus(str, Enum):
    """
    Lifecycle of a repository scan.

    PENDING -> QUEUED -> IN_PROGRESS -> {COMPLETED | FAILED | CANCELLED}, with
    IN_PROGRESS able to move to RETRYING and back, and QUEUED or IN_PROGRESS
    able to pause and resume.
    """

    PENDING = "PENDING"
    QUEUED = "QUEUED"
    IN_PROGRESS = "IN_PROGRESS"
    RETRYING = "RETRYING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (
            RepositoryStatus.COMPLETED,
            RepositoryStatus.FAILED,
            RepositoryStatus.CANCELLED,
        )

    @property
    def is_active(self) -> bool:
        return self in (RepositoryStatus.IN_PROGRESS, RepositoryStatus.RETRYING)

    @property
    def is_waiting(self) -> bool:
        return self in (RepositoryStatus.QUEUED, RepositoryStatus.PAUSED)

    def can_transition_to(self, target: "RepositoryStatus") -> bool:
        """Check whether the lifecycle allows moving from this status to target."""
        return target in _TRANSITIONS.get(self, set())


_TRANSITIONS = {
    RepositoryStatus.PENDING: {
        RepositoryStatus.QUEUED,
        RepositoryStatus.IN_PROGRESS,
        RepositoryStatus.CANCELLED,
    },
    RepositoryStatus.QUEUED: {
        RepositoryStatus.IN_PROGRESS,
        RepositoryStatus.PAUSED,
        RepositoryStatus.CANCELLED,
    },
    RepositoryStatus.IN_PROGRESS: {
        RepositoryStatus.COMPLETED,
        RepositoryStatus.FAILED,
        RepositoryStatus.CANCELLED,
        RepositoryStatus.RETRYING,
        RepositoryStatus.PAUSED,
    },
    RepositoryStatus.RETRYING: {
        RepositoryStatus.IN_PROGRESS,
        RepositoryStatus.FAILED,
        RepositoryStatus.CANCELLED,
    },
    RepositoryStatus.PAUSED: {
        RepositoryStatus.QUEUED,
        RepositoryStatus.IN_PROGRESS,
        RepositoryStatus.CANCELLED,
    },
}


class ScanRequest(BaseModel):
    """Immutable description of one repository scan."""

    model_config = ConfigDict(frozen=True)

    repository_url: str
    repository_name: str
    branch_name: Optional[str] = None
    username: Optional[str] = None
    token: Optional[SecretStr] = None
    tool_type: str
    tool_config_id: Optional[str] = None
    clone_enabled: bool = False
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: int = Field(default=0, ge=0)
    commit_fetch_strategy: str = "restapi"
    last_scan_from: Optional[int] = None  # epoch millis

    @property
    def token_value(self) -> Optional[str]:
        return self.token.get_secret_value() if self.token else None


class User(BaseModel):
    """Contributor identity as seen by one repository."""

    id: Optional[str] = None
    username: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None
    repository_name: Optional[str] = None
    active: bool = True
    tool_config_id: Optional[str] = None

    @property
    def identity_key(self) -> Optional[Tuple[str, Optional[str], Optional[str]]]:
        """Key used for deduplication; None when the username is unknown."""
        if self.username is None:
            return None
        return (self.username, self.display_name, self.repository_name)


class FileChange(BaseModel):
    """Line statistics for one file touched by a commit or merge request."""

    model_config = ConfigDict(validate_assignment=True)

    file_path: str
    added_lines: int = Field(default=0, ge=0)
    removed_lines: int = Field(default=0, ge=0)
    change_type: ChangeType = ChangeType.UNCHANGED
    changed_line_numbers: List[int] = Field(default_factory=list)
    previous_path: Optional[str] = None
    is_binary: bool = False

    @field_validator("changed_line_numbers", mode="before")
    def normalize_line_numbers(cls, v) -> List[int]:
        """Deduplicate, sort and drop negative line numbers."""
        if v is None:
            return []
        numbers: Set[int] = {int(n) for n in v}
        return sorted(n for n in numbers if n >= 0)


class PullRequestStats(BaseModel):
    added_lines: int = Field(default=0, ge=0)
    removed_lines: int = Field(default=0, ge=0)
    changed_files: int = Field(default=0, ge=0)


class Commit(BaseModel):
    """Normalized commit record."""

    sha: str
    author_name: Optional[str] = None  # platform username, used as lookup key
    author_email: Optional[str] = None
    committer_name: Optional[str] = None
    committer_email: Optional[str] = None
    message: Optional[str] = None
    timestamp: Optional[datetime] = None
    branch_name: Optional[str] = None
    repository_name: Optional[str] = None
    file_changes: List[FileChange] = Field(default_factory=list)
    added_lines: int = Field(default=0, ge=0)
    removed_lines: int = Field(default=0, ge=0)
    parent_shas: List[str] = Field(default_factory=list)
    is_merge_commit: bool = False
    author: Optional[User] = None  # identity as fetched
    resolved_author: Optional[User] = None
    resolved_committer: Optional[User] = None
    tool_config_id: Optional[str] = None


class MergeRequest(BaseModel):
    """Normalized merge/pull request record."""

    external_id: str
    number: Optional[int] = None
    title: Optional[str] = None
    state: MergeRequestState = MergeRequestState.OPEN
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    merged_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    source_branch: Optional[str] = None
    target_branch: Optional[str] = None
    url: Optional[str] = None
    author: Optional[User] = None  # identity as fetched
    author_user_id: Optional[str] = None  # platform username, used as lookup key
    reviewers: List[str] = Field(default_factory=list)
    resolved_author: Optional[User] = None
    resolved_reviewers: List[User] = Field(default_factory=list)
    stats: PullRequestStats = Field(default_factory=PullRequestStats)
    picked_for_review_on: Optional[datetime] = None  # first reviewer activity
    repository_name: Optional[str] = None
    tool_config_id: Optional[str] = None


class ScanResult(BaseModel):
    """Summary of one scan."""

    repository_url: str
    repository_name: str
    start_time: int  # epoch millis
    end_time: int = 0
    duration_ms: int = 0
    commits_found: int = 0
    merge_requests_found: int = 0
    users_found: int = 0
    success: bool = False
    status: RepositoryStatus = RepositoryStatus.PENDING
    error_message: Optional[str] = None


def epoch_millis(moment: Optional[datetime] = None) -> int:
    """Convert an aware datetime (default: now) to epoch milliseconds."""
    moment = moment or datetime.now(timezone.utc)
    return int(moment.timestamp() * 1000)
