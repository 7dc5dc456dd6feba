"""
Tests for lock records and the lock coordinator.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from backlog.core.local.locks import DEFAULT_LOCK_TTL, LockCoordinator, LockRecord
from backlog.core.tasks.errors import LockFileError

NOW = datetime(2025, 1, 18, 14, 30, tzinfo=timezone.utc)


class TestLockRecord:
    """Tests for LockRecord."""

    def test_default_ttl_is_thirty_minutes(self) -> None:
        """A new lock expires thirty minutes after it was claimed."""
        record = LockRecord.new("agent-a", NOW)

        assert DEFAULT_LOCK_TTL == timedelta(minutes=30)
        assert record.claimed_at == NOW
        assert record.expires_at == NOW + timedelta(minutes=30)

    def test_is_active_until_expiry(self) -> None:
        """A lock is active strictly before its expiry time."""
        record = LockRecord.new("agent-a", NOW)

        assert record.is_active(NOW + timedelta(minutes=29))
        assert not record.is_active(NOW + timedelta(minutes=30))
        assert not record.is_active(NOW + timedelta(hours=2))

    def test_format_and_parse(self) -> None:
        """A formatted record parses back to the same record."""
        record = LockRecord.new("agent-a", NOW)

        content = record.format()

        assert LockRecord.parse(content) == record

    def test_format_is_three_plain_lines(self) -> None:
        """Lock files hold unquoted agent and RFC 3339 timestamp lines."""
        record = LockRecord.new("agent-a", NOW)

        assert record.format() == (
            "agent: agent-a\n"
            "claimed_at: 2025-01-18T14:30:00Z\n"
            "expires_at: 2025-01-18T15:00:00Z\n"
        )

    @pytest.mark.parametrize("agent", ["123", "yes", "null", "0x1f"])
    def test_agent_ids_read_back_verbatim(self, agent: str) -> None:
        """Agent ids that look like other YAML types stay strings."""
        record = LockRecord.new(agent, NOW)

        content = record.format()

        assert content.splitlines()[0] == f"agent: {agent}"
        assert LockRecord.parse(content).agent == agent

    def test_parse_quoted_timestamps(self) -> None:
        """Lock files with quoted timestamps still parse."""
        content = (
            "agent: agent-a\n"
            "claimed_at: '2025-01-18T14:30:00Z'\n"
            "expires_at: '2025-01-18T15:00:00Z'\n"
        )

        assert LockRecord.parse(content) == LockRecord.new("agent-a", NOW)

    def test_parse_unquoted_timestamps(self) -> None:
        """Hand-written lock files with bare RFC 3339 timestamps parse."""
        content = (
            "agent: agent-b\n"
            "claimed_at: 2025-01-18T14:30:00Z\n"
            "expires_at: 2025-01-18T15:00:00Z\n"
        )

        record = LockRecord.parse(content)

        assert record.agent == "agent-b"
        assert record.expires_at == NOW + timedelta(minutes=30)

    def test_parse_invalid_timestamp(self) -> None:
        """Unparsable timestamps raise LockFileError."""
        content = "agent: agent-a\nclaimed_at: yesterday\nexpires_at: tomorrow\n"

        with pytest.raises(LockFileError):
            LockRecord.parse(content)

    def test_parse_missing_agent(self) -> None:
        """A lock without an agent is invalid."""
        content = "claimed_at: 2025-01-18T14:30:00Z\nexpires_at: 2025-01-18T15:00:00Z\n"

        with pytest.raises(LockFileError, match="agent"):
            LockRecord.parse(content)

    def test_parse_not_a_mapping(self) -> None:
        """Content that is not a mapping is invalid."""
        with pytest.raises(LockFileError):
            LockRecord.parse("- just\n- a list\n")


class TestLockCoordinator:
    """Tests for LockCoordinator."""

    def test_read_missing_lock(self, tmp_path: Path) -> None:
        """No lock file means no lock."""
        locks = LockCoordinator(tmp_path / ".locks")

        assert locks.read("001") is None

    def test_write_then_read(self, tmp_path: Path) -> None:
        """A written lock is read back from .locks/<id>.lock."""
        locks = LockCoordinator(tmp_path / ".locks")
        record = LockRecord.new("agent-a", NOW)

        locks.write("001", record)

        assert (tmp_path / ".locks" / "001.lock").read_text() == record.format()
        assert locks.read("001") == record

    def test_write_replaces_existing(self, tmp_path: Path) -> None:
        """Writing a lock overwrites a previous one."""
        locks = LockCoordinator(tmp_path / ".locks")
        locks.write("001", LockRecord.new("agent-a", NOW))

        locks.write("001", LockRecord.new("agent-b", NOW + timedelta(hours=1)))

        assert locks.read("001").agent == "agent-b"

    def test_remove(self, tmp_path: Path) -> None:
        """Removing a lock deletes its file; removing twice is fine."""
        locks = LockCoordinator(tmp_path / ".locks")
        locks.write("001", LockRecord.new("agent-a", NOW))

        locks.remove("001")
        locks.remove("001")

        assert locks.read("001") is None

    def test_read_corrupt_lock(self, tmp_path: Path) -> None:
        """A corrupt lock file raises LockFileError carrying the path."""
        locks_dir = tmp_path / ".locks"
        locks_dir.mkdir()
        (locks_dir / "001.lock").write_text("agent: a\nclaimed_at: nope\nexpires_at: nope\n")
        locks = LockCoordinator(locks_dir)

        with pytest.raises(LockFileError) as exc_info:
            locks.read("001")

        assert exc_info.value.path == locks_dir / "001.lock"
