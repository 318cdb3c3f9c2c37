"""
Unified Diff Parser.

Parses git's unified diff text, the format returned by Bitbucket Cloud's diff
endpoints and, once a `diff --git` header is prepended, by GitLab's per-file
diffs. GitHub patch snippets reuse the hunk header handling.
"""

import re
from typing import List, Optional, Set, Tuple

from parsers.base import DiffParseError, DiffParseResult, DiffParser
from scanner.models import ChangeType, FileChange

UNKNOWN_FILE = "Unknown File"

_GIT_HEADER_RE = re.compile(r"^diff --git a/(.+?) b/(.+)$")


class _FileBlock:
    """Mutable accumulator for the file currently being parsed."""

    def __init__(self, path: str, previous_path: Optional[str] = None):
        self.path = path
        self.previous_path = previous_path
        self.added = 0
        self.removed = 0
        self.line_numbers: Set[int] = set()
        self.is_binary = False

    def to_file_change(self) -> FileChange:
        change_type = ChangeType.from_counts(self.added, self.removed)
        renamed = self.previous_path and self.previous_path != self.path
        if renamed and change_type == ChangeType.UNCHANGED:
            change_type = ChangeType.RENAMED
        return FileChange(
            file_path=self.path,
            previous_path=self.previous_path if self.previous_path != self.path else None,
            added_lines=self.added,
            removed_lines=self.removed,
            change_type=change_type,
            changed_line_numbers=self.line_numbers,
            is_binary=self.is_binary,
        )


def parse_git_header(line: str) -> Tuple[str, Optional[str]]:
    """
    Extract the new and old path from a `diff --git a/x b/y` line.

    Returns:
        Tuple[str, Optional[str]]: (new path, old path)
    """
    match = _GIT_HEADER_RE.match(line.rstrip())
    if match:
        return match.group(2), match.group(1)
    parts = line.split()
    if len(parts) >= 4:
        path = parts[3][2:] if parts[3].startswith("b/") else parts[3]
        return path, None
    return UNKNOWN_FILE, None


def parse_hunk_header(line: str) -> List[int]:
    """
    Expand the ranges of a `@@ -a,b +c,d @@` header into line numbers.

    Both the old and the new range contribute; a missing count means one line.

    Raises:
        ValueError: If a range is not numeric
    """
    first = line.find("@@")
    last = line.find("@@", first + 2)
    if first == -1 or last == -1:
        raise ValueError(f"Malformed hunk header: {line.strip()}")

    numbers: List[int] = []
    for token in line[first + 2 : last].split():
        if token[0] not in "+-":
            continue
        start_text, _, count_text = token[1:].partition(",")
        start = int(start_text)
        count = int(count_text) if count_text else 1
        numbers.extend(range(start, start + count))
    return numbers


def extract_changed_line_numbers(patch: Optional[str]) -> List[int]:
    """Collect line numbers from every hunk header of a patch snippet."""
    if not patch:
        return []
    numbers: Set[int] = set()
    for line in patch.splitlines():
        if line.startswith("@@"):
            try:
                numbers.update(parse_hunk_header(line))
            except ValueError:
                continue
    return sorted(n for n in numbers if n >= 0)


def with_git_header(new_path: str, old_path: Optional[str], diff: str) -> str:
    """Prepend a `diff --git` header to a headerless per-file diff."""
    return f"diff --git a/{old_path or new_path} b/{new_path}\n{diff}"


class UnifiedDiffParser(DiffParser):
    """
    Line oriented parser for unified diff text.

    A `diff --git` line starts a new file block and flushes the previous one.
    `+`/`-` lines, excluding the `+++`/`---` headers, are counted. Hunk headers
    contribute their line ranges. A malformed hunk header is reported as an
    error for its file and its range is dropped; the file's counts are kept.
    Lines seen before any `diff --git` header are attributed to "Unknown File".
    """

    def parse_diff(self, raw: Optional[str]) -> DiffParseResult:
        result = DiffParseResult()
        if not raw or not raw.strip():
            return result

        current: Optional[_FileBlock] = None
        entry_index = -1

        def flush() -> None:
            if current is not None:
                result.file_changes.append(current.to_file_change())

        for line in raw.splitlines():
            if line.startswith("diff --git"):
                flush()
                entry_index += 1
                result.total_entries += 1
                path, previous_path = parse_git_header(line)
                current = _FileBlock(path, previous_path)
                continue

            if line.startswith("+++") or line.startswith("---"):
                continue

            if line.startswith("@@"):
                if current is None:
                    current = _FileBlock(UNKNOWN_FILE)
                try:
                    current.line_numbers.update(parse_hunk_header(line))
                except ValueError as e:
                    result.errors.append(
                        DiffParseError(
                            entry_index=entry_index,
                            file_path=current.path,
                            reason=str(e),
                        )
                    )
                continue

            if line.startswith("Binary files") and current is not None:
                current.is_binary = True
                continue

            if line.startswith("+") or line.startswith("-"):
                if current is None:
                    current = _FileBlock(UNKNOWN_FILE)
                if line.startswith("+"):
                    current.added += 1
                else:
                    current.removed += 1

        flush()
        return result


class BitbucketCloudDiffParser(UnifiedDiffParser):
    """Bitbucket Cloud returns plain unified diff text."""


class GitLabDiffParser(UnifiedDiffParser):
    """GitLab per-file diffs, joined with synthesized `diff --git` headers."""
