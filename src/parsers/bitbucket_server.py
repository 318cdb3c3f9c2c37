"""
Bitbucket Server Diff Parser.

Parses the structured JSON diff document returned by Bitbucket Server:
diffs[].hunks[].segments[].lines[] with source/destination line numbers.
"""

import json
from typing import Any, Dict, Optional, Set

from parsers.base import DiffParseError, DiffParseResult, DiffParser
from parsers.unified import UNKNOWN_FILE
from scanner.models import ChangeType, FileChange


def _path_of(node: Optional[Dict[str, Any]]) -> Optional[str]:
    if not node:
        return None
    return node.get("toString") or node.get("name")


def _line_number(line: Dict[str, Any], primary: str, fallback: str) -> Optional[int]:
    number = line.get(primary)
    if number is None:
        number = line.get(fallback)
    return None if number is None else int(number)


class BitbucketServerDiffParser(DiffParser):
    """
    Parser for Bitbucket Server JSON diffs.

    The file path is the source path. Entries without a source (new files)
    use the destination path, and entries with neither are recorded as
    UNKNOWN_FILE.

    CONTEXT segments are skipped. ADDED lines take their destination line
    number, falling back to source when destination is missing or null.
    REMOVED lines take their source line number with the same fallback to
    destination. Negative line numbers are dropped.

    Each diffs[] entry is parsed independently; a malformed entry is reported
    and skipped, but still counts as a changed file in merge request stats.
    """

    def parse_diff(self, raw: Optional[str]) -> DiffParseResult:
        result = DiffParseResult()
        if not raw or not raw.strip():
            return result

        try:
            document = json.loads(raw)
        except json.JSONDecodeError as e:
            result.errors.append(
                DiffParseError(entry_index=-1, reason=f"Invalid diff JSON: {e}")
            )
            return result

        diffs = document.get("diffs") if isinstance(document, dict) else None
        if not isinstance(diffs, list):
            result.errors.append(
                DiffParseError(entry_index=-1, reason="Diff document has no 'diffs' list")
            )
            return result

        result.total_entries = len(diffs)
        for index, entry in enumerate(diffs):
            try:
                result.file_changes.append(self._parse_entry(entry))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                path = None
                if isinstance(entry, dict):
                    path = _path_of(entry.get("source")) or _path_of(
                        entry.get("destination")
                    )
                result.errors.append(
                    DiffParseError(entry_index=index, file_path=path, reason=str(e))
                )

        return result

    def _parse_entry(self, entry: Dict[str, Any]) -> FileChange:
        source_path = _path_of(entry.get("source"))
        destination_path = _path_of(entry.get("destination"))
        file_path = source_path or destination_path or UNKNOWN_FILE

        added = 0
        removed = 0
        line_numbers: Set[int] = set()

        for hunk in entry.get("hunks") or []:
            for segment in hunk.get("segments") or []:
                segment_type = str(segment.get("type", "")).upper()
                if segment_type == "CONTEXT":
                    continue
                for line in segment.get("lines") or []:
                    if segment_type == "ADDED":
                        added += 1
                        number = _line_number(line, "destination", "source")
                    elif segment_type == "REMOVED":
                        removed += 1
                        number = _line_number(line, "source", "destination")
                    else:
                        continue
                    if number is not None and number >= 0:
                        line_numbers.add(number)

        return FileChange(
            file_path=file_path,
            added_lines=added,
            removed_lines=removed,
            change_type=ChangeType.from_counts(added, removed),
            changed_line_numbers=line_numbers,
            is_binary=bool(entry.get("binary", False)),
        )
