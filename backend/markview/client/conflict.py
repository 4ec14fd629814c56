"""Conflict resolution choices and helpers for recorded sync conflicts."""

import re
from dataclasses import dataclass
from datetime import UTC, date, datetime
from enum import Enum

_CONFLICT_SUFFIX = re.compile(r"\s*\(conflict.*\)$", re.IGNORECASE)


class ConflictResolution(str, Enum):
    LOCAL = "local"  # push the discarded copy over the server copy
    SERVER = "server"  # keep the server copy already applied
    BOTH = "both"  # keep the server copy and save the discarded one as a new document


class ConflictNotFoundError(KeyError):
    def __init__(self, doc_id: str):
        super().__init__(f"No conflict recorded for document: {doc_id}")
        self.doc_id = doc_id


@dataclass(frozen=True)
class DiffStats:
    local_lines: int
    server_lines: int
    added_lines: int
    removed_lines: int
    changed_percentage: int


def generate_conflict_copy_name(name: str, today: date | None = None) -> str:
    """Name for the copy kept by a keep-both resolution.

    A previous ``(conflict ...)`` suffix is replaced rather than stacked.
    """
    stamp = (today or datetime.now(UTC).date()).isoformat()
    base = _CONFLICT_SUFFIX.sub("", name)
    return f"{base} (conflict {stamp})"


def calculate_diff(local_content: str, server_content: str) -> DiffStats:
    """Line-level summary of how far two copies of a document diverge."""
    local_lines = local_content.split("\n")
    server_lines = server_content.split("\n")
    local_set = set(local_lines)
    server_set = set(server_lines)

    added = sum(1 for line in local_lines if line not in server_set)
    removed = sum(1 for line in server_lines if line not in local_set)
    total = max(len(local_lines), len(server_lines))

    return DiffStats(
        local_lines=len(local_lines),
        server_lines=len(server_lines),
        added_lines=added,
        removed_lines=removed,
        changed_percentage=round((added + removed) / total * 100) if total else 0,
    )
