"""
Task file codec: Markdown with a YAML frontmatter header.

A task file looks like::

    ---
    id: '001'
    title: Fix login bug
    priority: high
    assignee: agent-a
    labels:
    - bug
    - agent:agent-a
    blocked_by:
    - '002'
    created: '2025-01-15T09:00:00Z'
    updated: '2025-01-18T14:30:00Z'
    ---

    ## Description

    Users cannot log in.

    ## Comments

    ### 2025-01-16 @alex

    Reproduced on staging.

The status is not stored in the header: it is the name of the directory
the file lives in.

Uses python-frontmatter for the header, so hand-edited files get the
same YAML handling as the ones we write.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Any

import frontmatter
import yaml
from pydantic import ValidationError

from backlog.core.tasks.errors import TaskFileError
from backlog.core.tasks.models import (
    META_BLOCKED_BY,
    META_BLOCKS,
    META_COMMENTS,
    Comment,
    Task,
    TaskPriority,
    TaskStatus,
)

DELIMITER = "---"
DESCRIPTION_HEADING = "## Description"
COMMENTS_HEADING = "## Comments"
MAX_SLUG_LENGTH = 50

# Matches comment headers: ### 2025-01-16 @alex
COMMENT_HEADER_RE = re.compile(r"###\s+(\d{4}-\d{2}-\d{2})\s+@(\S+)")
COMMENTS_SECTION_RE = re.compile(r"^## Comments[ \t]*$", re.MULTILINE)
DESCRIPTION_HEADING_RE = re.compile(r"\A## Description[ \t]*\n?")


# ==============================================================================
# Filenames
# ==============================================================================


def slugify(text: str, max_length: int = MAX_SLUG_LENGTH) -> str:
    """
    Convert a title to a filename-safe slug.

    Lowercases, collapses every run of non-alphanumeric characters to a
    single hyphen, trims hyphens and bounds the length.

    Example:
        >>> slugify("Task with Special!@# Characters")
        'task-with-special-characters'
    """
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_length].strip("-")


def task_filename(task_id: str, title: str) -> str:
    """
    Build the filename for a task: ``<id>-<slug>.md``, or ``<id>.md``
    when the title yields no slug.
    """
    slug = slugify(title)
    if not slug:
        return f"{task_id}.md"
    return f"{task_id}-{slug}.md"


def filename_matches_id(filename: str, task_id: str) -> bool:
    """True if *filename* belongs to *task_id*, whatever its slug suffix."""
    if not filename.endswith(".md"):
        return False
    stem = filename[: -len(".md")]
    return stem == task_id or stem.startswith(f"{task_id}-")


# ==============================================================================
# Timestamps
# ==============================================================================


def format_timestamp(value: datetime) -> str:
    """Format a datetime as RFC 3339 in UTC (microseconds kept when present)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any, field: str) -> datetime:
    """
    Parse a header timestamp. YAML may already have produced a datetime
    (or a date) for unquoted values; naive values are treated as UTC.

    Raises:
        TaskFileError: If the value is not a timestamp
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise TaskFileError(f"invalid {field!r} timestamp: {value}") from e
    else:
        raise TaskFileError(f"invalid {field!r} timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ==============================================================================
# Encoding
# ==============================================================================


def _comment_author(author: str) -> str:
    # The heading token cannot contain whitespace
    token = re.sub(r"\s+", "-", author.strip())
    return token or "unknown"


def to_frontmatter_dict(task: Task) -> dict[str, Any]:
    """
    Convert a task to the header mapping.

    Optional fields are only written when they carry a value.
    """
    metadata: dict[str, Any] = {
        "id": task.id,
        "title": task.title,
        "priority": task.priority.value,
    }
    if task.assignee:
        metadata["assignee"] = task.assignee
    if task.labels:
        metadata["labels"] = list(task.labels)
    if task.blocks:
        metadata["blocks"] = task.blocks
    if task.blocked_by:
        metadata["blocked_by"] = task.blocked_by
    if task.sort_order:
        metadata["sort_order"] = float(task.sort_order)
    if task.url:
        metadata["url"] = task.url
    metadata["created"] = format_timestamp(task.created)
    metadata["updated"] = format_timestamp(task.updated)
    return metadata


def _render_body(task: Task) -> str:
    sections: list[str] = []

    if task.description:
        sections.append(f"{DESCRIPTION_HEADING}\n\n{task.description.strip()}")

    comments = task.comments
    if comments:
        lines = [COMMENTS_HEADING]
        for comment in comments:
            created = comment.created.astimezone(timezone.utc).strftime("%Y-%m-%d")
            lines.append(f"\n### {created} @{_comment_author(comment.author)}\n")
            lines.append(comment.body.strip())
        sections.append("\n".join(lines))

    return "\n\n".join(sections)


def encode_task(task: Task) -> str:
    """
    Serialize a task to file content.

    ``decode_task(encode_task(task), task.status)`` reproduces every
    header field, the description and the comments (at date precision).
    """
    post = frontmatter.Post(_render_body(task))
    post.metadata = to_frontmatter_dict(task)
    return frontmatter.dumps(post, sort_keys=False) + "\n"


# ==============================================================================
# Decoding
# ==============================================================================


def split_frontmatter(content: str) -> tuple[str, str]:
    """
    Split file content into (header, body).

    Line endings are normalized and leading whitespace before the
    opening delimiter is ignored.

    Raises:
        TaskFileError: If the content is empty, does not start with the
            delimiter, or the header is never closed
    """
    text = content.replace("\r\n", "\n").replace("\r", "\n")
    if not text:
        raise TaskFileError("empty file")

    lines = text.lstrip().split("\n")
    if lines[0].strip() != DELIMITER:
        raise TaskFileError("file does not start with frontmatter delimiter")

    for index in range(1, len(lines)):
        # Indented "---" lines belong to multi-line YAML values
        if lines[index].rstrip() == DELIMITER:
            header = "\n".join(lines[1:index])
            body = "\n".join(lines[index + 1 :])
            return header, body

    raise TaskFileError("frontmatter not closed")


def parse_comments(section: str) -> list[Comment]:
    """
    Parse the body of a ``## Comments`` section.

    Text that does not follow the ``### YYYY-MM-DD @author`` pattern is
    ignored, so a malformed section yields fewer (or zero) comments
    rather than an error.
    """
    comments: list[Comment] = []
    matches = list(COMMENT_HEADER_RE.finditer(section))

    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(section)
        body = section[match.end() : end].strip()
        try:
            day = date.fromisoformat(match.group(1))
        except ValueError:
            continue
        comments.append(
            Comment(
                id=f"c{len(comments) + 1}",
                author=match.group(2),
                body=body,
                created=datetime.combine(day, time.min, tzinfo=timezone.utc),
            )
        )

    return comments


def parse_body(body: str) -> tuple[str, list[Comment]]:
    """Split a task body into (description, comments)."""
    text = body.strip()
    comments: list[Comment] = []

    match = COMMENTS_SECTION_RE.search(text)
    if match:
        comments = parse_comments(text[match.end() :])
        text = text[: match.start()].strip()

    description = DESCRIPTION_HEADING_RE.sub("", text, count=1).strip()
    return description, comments


def _string_list(value: Any, field: str) -> list[str]:
    # An explicit empty list and an absent key both mean "none"
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(item) for item in value if item is not None]
    raise TaskFileError(f"{field!r} must be a list, got {type(value).__name__}")


def from_frontmatter_dict(
    metadata: dict[str, Any], status: TaskStatus, description: str = "", comments: list[Comment] | None = None
) -> Task:
    """
    Build a Task from a header mapping plus the parsed body.

    Raises:
        TaskFileError: If required fields are missing or invalid
    """
    raw_id = metadata.get("id")
    if raw_id is None or raw_id == "":
        raise TaskFileError("missing 'id' field")
    if not isinstance(raw_id, str):
        # YAML reads unquoted ids such as 010 as numbers; converting them
        # back would silently change the id
        raise TaskFileError(f"'id' must be a string, got {type(raw_id).__name__}: {raw_id!r}")

    raw_priority = metadata.get("priority") or TaskPriority.NONE.value
    try:
        priority = TaskPriority(str(raw_priority))
    except ValueError as e:
        raise TaskFileError(f"invalid 'priority' value: {raw_priority}") from e

    if "created" not in metadata:
        raise TaskFileError("missing 'created' field")
    created = parse_timestamp(metadata["created"], "created")
    updated = parse_timestamp(metadata.get("updated", created), "updated")

    raw_sort_order = metadata.get("sort_order") or 0.0
    try:
        sort_order = float(raw_sort_order)
    except (TypeError, ValueError) as e:
        raise TaskFileError(f"invalid 'sort_order' value: {raw_sort_order}") from e

    meta: dict[str, Any] = {}
    if comments:
        meta[META_COMMENTS] = comments
    blocks = _string_list(metadata.get("blocks"), "blocks")
    if blocks:
        meta[META_BLOCKS] = blocks
    blocked_by = _string_list(metadata.get("blocked_by"), "blocked_by")
    if blocked_by:
        meta[META_BLOCKED_BY] = blocked_by

    url = metadata.get("url")

    return Task(
        id=raw_id,
        title=str(metadata.get("title") or ""),
        description=description,
        status=status,
        priority=priority,
        assignee=str(metadata.get("assignee") or ""),
        labels=_string_list(metadata.get("labels"), "labels"),
        created=created,
        updated=updated,
        url=str(url) if url else None,
        sort_order=sort_order,
        meta=meta,
    )


def decode_task(content: str, status: TaskStatus) -> Task:
    """
    Parse task file content.

    Args:
        content: Full file content
        status: Status implied by the file's directory

    Returns:
        Decoded Task

    Raises:
        TaskFileError: If the content is not a valid task file
    """
    header, body = split_frontmatter(content)

    try:
        post = frontmatter.loads(f"{DELIMITER}\n{header}\n{DELIMITER}\n{body}")
    except yaml.YAMLError as e:
        raise TaskFileError(f"invalid frontmatter: {e}") from e

    description, comments = parse_body(post.content)
    try:
        return from_frontmatter_dict(dict(post.metadata), status, description, comments)
    except ValidationError as e:
        raise TaskFileError(f"invalid task fields: {e}") from e


def read_task_file(path: Path, status: TaskStatus) -> Task:
    """
    Read and decode a task file.

    Raises:
        TaskFileError: If the file is malformed or not UTF-8 (carries the path)
        OSError: If the file cannot be read
    """
    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise TaskFileError(f"file is not valid UTF-8: {e}", path=path) from e
    try:
        return decode_task(content, status)
    except TaskFileError as e:
        raise TaskFileError(str(e), path=path) from e


def write_task_file(path: Path, task: Task) -> None:
    """Write a task file, creating its directory if needed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(encode_task(task))
