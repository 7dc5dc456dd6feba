"""
Sequential task id allocation for the local backend.

Ids are derived from the filesystem rather than a counter file: the next
id is one past the highest numeric filename prefix found in any status
directory. Moving a task between directories therefore never frees or
reuses its number, and deleting the highest-numbered task does.
"""

from __future__ import annotations

import re
from pathlib import Path

from backlog.core.tasks.models import TaskStatus

from .taskfile import filename_matches_id

ID_WIDTH = 3

_NUMERIC_PREFIX_RE = re.compile(r"^(\d+)")


def format_id(number: int) -> str:
    """Zero-pad a task number to the id width (``7`` -> ``"007"``)."""
    return f"{number:0{ID_WIDTH}d}"


def parse_id_prefix(filename: str) -> int | None:
    """
    Return the numeric prefix of a task filename, or None.

    Example:
        >>> parse_id_prefix("012-fix-login.md")
        12
        >>> parse_id_prefix("notes.md") is None
        True
    """
    match = _NUMERIC_PREFIX_RE.match(filename)
    if not match:
        return None
    return int(match.group(1))


def max_task_number(root: Path) -> int:
    """Highest numeric prefix of any ``*.md`` file under the status directories (0 if none)."""
    highest = 0
    for status in TaskStatus:
        status_dir = root / status.value
        if not status_dir.is_dir():
            continue
        for path in status_dir.glob("*.md"):
            number = parse_id_prefix(path.name)
            if number is not None and number > highest:
                highest = number
    return highest


def next_task_id(root: Path) -> str:
    """
    Allocate the next task id.

    Example:
        >>> next_task_id(Path("/empty/backlog"))  # doctest: +SKIP
        '001'
    """
    return format_id(max_task_number(root) + 1)


def find_task_file(root: Path, task_id: str) -> tuple[Path, TaskStatus] | None:
    """
    Locate the file holding *task_id* in any status directory.

    Accepts both ``<id>.md`` and ``<id>-<slug>.md``.

    Returns:
        (path, status) or None if no file matches
    """
    for status in TaskStatus:
        status_dir = root / status.value
        if not status_dir.is_dir():
            continue
        for path in sorted(status_dir.glob("*.md")):
            if filename_matches_id(path.name, task_id):
                return path, status
    return None
