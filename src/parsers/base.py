"""
Diff Parser Contract.

Every platform diff format is reduced to the same FileChange list and
PullRequestStats. Parsers report malformed entries as DiffParseError values
inside a DiffParseResult so the caller decides whether to skip or abort.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from pydantic import BaseModel, Field

from config import logger
from scanner.exceptions import DataTransformationException
from scanner.models import FileChange, PullRequestStats


class DiffParseError(BaseModel):
    """A diff entry that could not be parsed."""

    entry_index: int  # -1 for document level failures
    file_path: Optional[str] = None
    reason: str


class DiffParseResult(BaseModel):
    """Outcome of parsing one diff payload."""

    file_changes: List[FileChange] = Field(default_factory=list)
    errors: List[DiffParseError] = Field(default_factory=list)
    total_entries: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        """Raise DataTransformationException when any entry failed."""
        if self.errors:
            first = self.errors[0]
            raise DataTransformationException(
                f"Failed to parse {len(self.errors)} diff entries; first: "
                f"entry {first.entry_index} ({first.file_path}): {first.reason}"
            )

    def to_stats(self) -> PullRequestStats:
        return PullRequestStats(
            added_lines=sum(fc.added_lines for fc in self.file_changes),
            removed_lines=sum(fc.removed_lines for fc in self.file_changes),
            changed_files=self.total_entries,
        )


class DiffParser(ABC):
    """Base class for platform diff parsers."""

    @abstractmethod
    def parse_diff(self, raw: Optional[str]) -> DiffParseResult:
        """
        Parse a raw diff payload into per-file results.

        Args:
            raw (Optional[str]): Diff payload as returned by the platform

        Returns:
            DiffParseResult: Parsed file changes plus per-entry errors
        """
        pass

    def parse_diff_to_file_changes(self, raw: Optional[str]) -> List[FileChange]:
        """Parse a commit diff, logging and skipping malformed entries."""
        result = self.parse_diff(raw)
        self._log_errors(result)
        return result.file_changes

    def parse_pr_diff_to_file_changes(self, raw: Optional[str]) -> PullRequestStats:
        """Aggregate a merge request diff into PullRequestStats."""
        result = self.parse_diff(raw)
        self._log_errors(result)
        return result.to_stats()

    def _log_errors(self, result: DiffParseResult) -> None:
        for error in result.errors:
            logger.warning(
                {
                    "message": "Skipping malformed diff entry",
                    "parser": type(self).__name__,
                    "entry_index": error.entry_index,
                    "file_path": error.file_path,
                    "error": error.reason,
                }
            )
