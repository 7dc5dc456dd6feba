"""
Advisory claim locks stored as three-line YAML files.

Each claimed task has ``.locks/<id>.lock``::

    agent: agent-a
    claimed_at: 2025-01-18T14:30:00Z
    expires_at: 2025-01-18T15:00:00Z

Locks are advisory: nothing stops a process from ignoring them, and an
expired lock is simply overwritten by the next claimer. No OS-level file
locking is involved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

import yaml

from backlog.core.tasks.errors import LockFileError, TaskFileError
from backlog.core.tasks.models import utc_now

from .taskfile import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL = timedelta(minutes=30)
LOCKS_DIR = ".locks"
LOCK_SUFFIX = ".lock"


@dataclass(frozen=True)
class LockRecord:
    """A claim held by one agent until ``expires_at``."""

    agent: str
    claimed_at: datetime
    expires_at: datetime

    @classmethod
    def new(
        cls, agent: str, now: datetime | None = None, ttl: timedelta = DEFAULT_LOCK_TTL
    ) -> LockRecord:
        """Build a fresh lock for *agent* starting at *now*."""
        claimed_at = now or utc_now()
        return cls(agent=agent, claimed_at=claimed_at, expires_at=claimed_at + ttl)

    def is_active(self, now: datetime | None = None) -> bool:
        """True until the lock's expiry time has been reached."""
        return (now or utc_now()) < self.expires_at

    def format(self) -> str:
        """Serialize to lock file content: three unquoted ``key: value`` lines."""
        return (
            f"agent: {self.agent}\n"
            f"claimed_at: {format_timestamp(self.claimed_at)}\n"
            f"expires_at: {format_timestamp(self.expires_at)}\n"
        )

    @classmethod
    def parse(cls, content: str, path: Path | None = None) -> LockRecord:
        """
        Parse lock file content.

        Raises:
            LockFileError: If the content is not a valid lock record
        """
        # BaseLoader keeps every scalar a string, so agent ids such as
        # "123" or "yes" read back verbatim
        try:
            data = yaml.load(content, Loader=yaml.BaseLoader)
        except yaml.YAMLError as e:
            raise LockFileError(f"invalid lock file: {e}", path=path) from e

        if not isinstance(data, dict):
            raise LockFileError("invalid lock file: expected a mapping", path=path)

        agent = data.get("agent")
        if not agent:
            raise LockFileError("invalid lock file: missing agent", path=path)

        try:
            claimed_at = parse_timestamp(data.get("claimed_at"), "claimed_at")
            expires_at = parse_timestamp(data.get("expires_at"), "expires_at")
        except TaskFileError as e:
            raise LockFileError(f"invalid lock file: {e}", path=path) from e

        return cls(agent=str(agent), claimed_at=claimed_at, expires_at=expires_at)


class LockCoordinator:
    """
    Reads and writes lock files under a workspace's ``.locks`` directory.

    Example:
        >>> locks = LockCoordinator(Path(".backlog/.locks"))
        >>> locks.write("001", LockRecord.new("agent-a"))
        >>> locks.read("001").agent
        'agent-a'
    """

    def __init__(self, locks_dir: Path):
        self.locks_dir = locks_dir

    def lock_path(self, task_id: str) -> Path:
        return self.locks_dir / f"{task_id}{LOCK_SUFFIX}"

    def read(self, task_id: str) -> LockRecord | None:
        """
        Read the lock for a task.

        Returns:
            The lock record, or None when the task has no lock file

        Raises:
            LockFileError: If the lock file exists but cannot be parsed
        """
        path = self.lock_path(task_id)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return LockRecord.parse(content, path=path)

    def write(self, task_id: str, record: LockRecord) -> None:
        """Write (or overwrite) the lock for a task."""
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        path = self.lock_path(task_id)
        path.write_text(record.format(), encoding="utf-8")
        logger.debug("Wrote lock %s for agent %s", path, record.agent)

    def remove(self, task_id: str) -> None:
        """Remove the lock for a task. A missing lock is not an error."""
        path = self.lock_path(task_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        logger.debug("Removed lock %s", path)
