"""
Tests for the claim/release protocol with file locks.

Tests cover:
- Claim exclusivity and the already-owned case
- Takeover of expired locks
- Release ownership checks and claim/release symmetry
- Compensation when a claim fails half way
- The end-to-end multi-agent scenario
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from pathlib import Path

import pytest

from backlog.core.config import BackendConfig, LocalWorkspaceConfig
from backlog.core.local.backend import LocalBackend
from backlog.core.local.locks import LockRecord
from backlog.core.tasks.errors import (
    ClaimConflictError,
    ConfigError,
    LockFileError,
    NotFoundError,
    PartialClaimError,
    ReleaseConflictError,
)
from backlog.core.tasks.models import Task, TaskInput, TaskPriority, TaskStatus, utc_now


@pytest.fixture
def todo_task(backend: LocalBackend) -> Task:
    """An unclaimed task in todo with an ordinary label."""
    return backend.create_task(TaskInput(title="Fix bug", status=TaskStatus.TODO, labels=["bug"]))


class TestClaim:
    """Tests for claiming tasks."""

    def test_claim_sets_owner_state(self, backend: LocalBackend, todo_task: Task) -> None:
        """Claiming moves to in-progress, labels and assigns the task, and writes a lock."""
        result = backend.claim_task(todo_task.id, "agent-a")

        assert not result.already_owned
        assert result.task.status == TaskStatus.IN_PROGRESS
        assert result.task.assignee == "agent-a"
        assert result.task.labels == ["bug", "agent:agent-a"]

        stored = backend.get_task(todo_task.id)
        assert stored.status == TaskStatus.IN_PROGRESS
        assert stored.labels == ["bug", "agent:agent-a"]

        lock = backend.locks.read(todo_task.id)
        assert lock is not None
        assert lock.agent == "agent-a"
        assert lock.expires_at - lock.claimed_at == timedelta(minutes=30)

    def test_claim_defaults_to_configured_agent(self, backend: LocalBackend, todo_task: Task) -> None:
        """Without an explicit agent the configured agent id is used."""
        result = backend.claim_task(todo_task.id)

        assert result.task.assignee == "agent-a"

    def test_explicit_agent_overrides_configured(self, backend: LocalBackend, todo_task: Task) -> None:
        """An explicit agent id wins over the configured one."""
        result = backend.claim_task(todo_task.id, "agent-z")

        assert result.task.labels == ["bug", "agent:agent-z"]
        assert backend.locks.read(todo_task.id).agent == "agent-z"

    def test_claim_requires_an_agent(self, make_backend: Callable[..., LocalBackend]) -> None:
        """Claiming with no agent at all is a configuration error."""
        anonymous = make_backend("")
        task = anonymous.create_task(TaskInput(title="x"))

        with pytest.raises(ConfigError):
            anonymous.claim_task(task.id)

    def test_claim_missing_task(self, backend: LocalBackend) -> None:
        """Claiming an unknown task raises NotFoundError and writes no lock."""
        with pytest.raises(NotFoundError):
            backend.claim_task("404", "agent-a")

        assert backend.locks.read("404") is None

    def test_claim_conflict(
        self, backend: LocalBackend, other_backend: LocalBackend, todo_task: Task
    ) -> None:
        """A second agent cannot claim an actively claimed task."""
        backend.claim_task(todo_task.id)

        with pytest.raises(ClaimConflictError) as exc_info:
            other_backend.claim_task(todo_task.id)

        error = exc_info.value
        assert error.claimed_by == "agent-a"
        assert error.current_agent == "agent-b"
        assert error.exit_code == 2
        assert backend.get_task(todo_task.id).assignee == "agent-a"

    def test_reclaim_is_already_owned(self, backend: LocalBackend, todo_task: Task) -> None:
        """Claiming again as the holder reports ownership without rewriting anything."""
        first = backend.claim_task(todo_task.id)

        second = backend.claim_task(todo_task.id)

        assert second.already_owned
        assert second.task == first.task
        assert backend.get_task(todo_task.id).updated == first.task.updated

    def test_expired_lock_is_taken_over(
        self, backend: LocalBackend, other_backend: LocalBackend, todo_task: Task
    ) -> None:
        """Once the holder's lock expires another agent may claim the task."""
        backend.claim_task(todo_task.id)
        stale = LockRecord.new("agent-a", utc_now() - timedelta(hours=1))
        backend.locks.write(todo_task.id, stale)

        result = other_backend.claim_task(todo_task.id)

        assert not result.already_owned
        assert result.task.assignee == "agent-b"
        assert result.task.labels == ["bug", "agent:agent-b"]
        assert backend.locks.read(todo_task.id).agent == "agent-b"

    def test_custom_label_prefix(self, backlog_dir: Path) -> None:
        """Agent labels use the configured prefix."""
        backend = LocalBackend()
        backend.connect(
            BackendConfig(
                agent_id="worker-1",
                agent_label_prefix="bot",
                workspace=LocalWorkspaceConfig(path=backlog_dir),
            )
        )
        task = backend.create_task(TaskInput(title="x", labels=["agent:someone"]))

        result = backend.claim_task(task.id)

        assert result.task.labels == ["agent:someone", "bot:worker-1"]

    def test_corrupt_lock_surfaces(self, backend: LocalBackend, todo_task: Task) -> None:
        """An unreadable lock file stops the claim."""
        backend.locks.lock_path(todo_task.id).write_text("agent: x\nclaimed_at: nope\nexpires_at: nope\n")

        with pytest.raises(LockFileError):
            backend.claim_task(todo_task.id)

    def test_failed_mutation_removes_lock(
        self, backend: LocalBackend, todo_task: Task, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """If the task cannot be rewritten the lock is removed and a PartialClaimError raised."""

        def fail_rewrite(*args: object, **kwargs: object) -> Task:
            raise OSError("disk full")

        monkeypatch.setattr(backend, "rewrite_task", fail_rewrite)

        with pytest.raises(PartialClaimError) as exc_info:
            backend.claim_task(todo_task.id)

        error = exc_info.value
        assert error.lock_removed
        assert isinstance(error.cause, OSError)
        assert backend.locks.read(todo_task.id) is None
        assert backend.get_task(todo_task.id).status == TaskStatus.TODO


class TestRelease:
    """Tests for releasing tasks."""

    def test_release_reverses_claim(self, backend: LocalBackend, todo_task: Task) -> None:
        """Release by the holder undoes every effect of the claim."""
        backend.claim_task(todo_task.id)

        released = backend.release_task(todo_task.id)

        assert released.status == TaskStatus.TODO
        assert released.assignee == ""
        assert released.labels == ["bug"]
        assert backend.locks.read(todo_task.id) is None
        assert backend.get_task(todo_task.id) == released

    def test_release_unclaimed(self, backend: LocalBackend, todo_task: Task) -> None:
        """Releasing a task nobody holds is a conflict marked not-claimed."""
        with pytest.raises(ReleaseConflictError) as exc_info:
            backend.release_task(todo_task.id)

        assert exc_info.value.not_claimed
        assert "not claimed" in str(exc_info.value)

    def test_release_by_other_agent(
        self, backend: LocalBackend, other_backend: LocalBackend, todo_task: Task
    ) -> None:
        """Only the holder may release; the error names the holder."""
        backend.claim_task(todo_task.id)

        with pytest.raises(ReleaseConflictError) as exc_info:
            other_backend.release_task(todo_task.id)

        assert not exc_info.value.not_claimed
        assert exc_info.value.claimed_by == "agent-a"
        assert backend.get_task(todo_task.id).status == TaskStatus.IN_PROGRESS

    def test_release_with_explicit_agent(self, other_backend: LocalBackend, backend: LocalBackend, todo_task: Task) -> None:
        """A caller may release on behalf of a named agent."""
        backend.claim_task(todo_task.id)

        released = other_backend.release_task(todo_task.id, "agent-a")

        assert released.status == TaskStatus.TODO

    def test_claim_after_release(
        self, backend: LocalBackend, other_backend: LocalBackend, todo_task: Task
    ) -> None:
        """A released task can be claimed by another agent."""
        backend.claim_task(todo_task.id)
        backend.release_task(todo_task.id)

        result = other_backend.claim_task(todo_task.id)

        assert result.task.assignee == "agent-b"
        assert result.task.labels == ["bug", "agent:agent-b"]


class TestScenario:
    """End-to-end flow with two agents sharing a backlog."""

    def test_two_agents(self, make_backend: Callable[..., LocalBackend]) -> None:
        """Create, move, claim, conflict and release."""
        agent_a = make_backend("agent-A")
        agent_b = make_backend("agent-B")

        task = agent_a.create_task(TaskInput(title="Fix bug", priority=TaskPriority.HIGH))
        assert task.id == "001"
        assert task.status == TaskStatus.BACKLOG

        agent_a.move_task("001", TaskStatus.TODO)
        assert agent_b.get_task("001").status == TaskStatus.TODO

        claimed = agent_a.claim_task("001", "agent-A").task
        assert claimed.status == TaskStatus.IN_PROGRESS
        assert "agent:agent-A" in claimed.labels

        with pytest.raises(ClaimConflictError) as exc_info:
            agent_b.claim_task("001", "agent-B")
        assert exc_info.value.claimed_by == "agent-A"

        released = agent_a.release_task("001")
        assert released.status == TaskStatus.TODO
        assert "agent:agent-A" not in released.labels
        assert agent_b.get_task("001").assignee == ""
