"""
Tests for git-backed sync and git lock mode.

Tests cover:
- Commit messages for mutations, claims and releases
- Sync with and without a remote
- Move prechecks (dirty tree, remote ahead)
- Claim conflicts between clones in git lock mode

Every test drives a real git binary against temporary repositories.
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from backlog.core.config import BackendConfig, LocalWorkspaceConfig, LockMode
from backlog.core.local.backend import LocalBackend
from backlog.core.local.git import GitTransport
from backlog.core.tasks.errors import (
    ClaimConflictError,
    ConfigError,
    ReleaseConflictError,
    SyncConflictError,
    UncommittedChangesError,
)
from backlog.core.tasks.models import SyncResult, TaskInput, TaskStatus

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


def _configure_user(repo: Path) -> None:
    _git(repo, "config", "user.email", "test@example.com")
    _git(repo, "config", "user.name", "Test User")
    _git(repo, "config", "commit.gpgsign", "false")


def _last_subject(repo: Path) -> str:
    return _git(repo, "log", "-1", "--format=%s")


def _connect(repo: Path, agent_id: str, **workspace: object) -> LocalBackend:
    backend = LocalBackend()
    backend.connect(
        BackendConfig(
            agent_id=agent_id,
            workspace=LocalWorkspaceConfig(path=repo / ".backlog", git_sync=True, **workspace),
        )
    )
    return backend


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a temporary git repository with an initial commit and no remote."""
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-b", "main")
    _configure_user(repo)
    (repo / "README.md").write_text("# Test Repo\n")
    _git(repo, "add", "README.md")
    _git(repo, "commit", "-m", "Initial commit")
    return repo


@pytest.fixture
def clones(tmp_path: Path) -> tuple[Path, Path]:
    """
    Create a bare remote and two clones of it.

    Returns:
        Tuple of (alice_repo, bob_repo), both tracking origin/main.
    """
    remote = tmp_path / "remote.git"
    _git(tmp_path, "init", "--bare", "-b", "main", str(remote))

    alice = tmp_path / "alice"
    alice.mkdir()
    _git(alice, "init", "-b", "main")
    _configure_user(alice)
    _git(alice, "remote", "add", "origin", str(remote))
    (alice / "README.md").write_text("# Shared\n")
    _git(alice, "add", "README.md")
    _git(alice, "commit", "-m", "Initial commit")
    _git(alice, "push", "-u", "origin", "main")

    bob = tmp_path / "bob"
    _git(tmp_path, "clone", str(remote), str(bob))
    _configure_user(bob)

    return alice, bob


class TestCommitMessages:
    """Tests for commit message formatting and per-mutation commits."""

    def test_message_format(self) -> None:
        """Claims and releases name the agent; other actions do not."""
        assert GitTransport.commit_message("move", "001") == "move: 001"
        assert GitTransport.commit_message("claim", "001", "agent-a") == "claim: 001 [agent:agent-a]"
        assert GitTransport.commit_message("release", "002", "bot") == "release: 002 [agent:bot]"

    def test_mutations_are_committed(self, git_repo: Path) -> None:
        """Each mutation produces one commit and leaves a clean tree."""
        backend = _connect(git_repo, "agent-a")

        task = backend.create_task(TaskInput(title="Fix bug"))
        assert _last_subject(git_repo) == "add: 001"

        backend.move_task(task.id, TaskStatus.TODO)
        assert _last_subject(git_repo) == "move: 001"

        backend.claim_task(task.id)
        assert _last_subject(git_repo) == "claim: 001 [agent:agent-a]"

        backend.release_task(task.id)
        assert _last_subject(git_repo) == "release: 001 [agent:agent-a]"

        assert _git(git_repo, "status", "--porcelain") == ""

    def test_without_git_sync_nothing_is_committed(self, git_repo: Path) -> None:
        """With git sync off the repository history is untouched."""
        backend = LocalBackend()
        backend.connect({"agent_id": "agent-a", "workspace": {"path": str(git_repo / ".backlog")}})

        backend.create_task(TaskInput(title="Fix bug"))

        assert _last_subject(git_repo) == "Initial commit"


class TestSync:
    """Tests for LocalBackend.sync."""

    def test_sync_without_remote(self, git_repo: Path) -> None:
        """A repository without a remote syncs as a no-op."""
        backend = _connect(git_repo, "agent-a")
        backend.create_task(TaskInput(title="Fix bug"))

        assert backend.sync() == SyncResult()

    def test_sync_outside_repository(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Sync needs a git repository."""
        monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
        plain = tmp_path / "plain"
        plain.mkdir()
        backend = LocalBackend()
        backend.connect({"workspace": {"path": str(plain / ".backlog")}})

        with pytest.raises(ConfigError, match="not inside a git repository"):
            backend.sync()

    def test_sync_between_clones(self, clones: tuple[Path, Path]) -> None:
        """Tasks created in one clone appear in the other after syncing both."""
        alice_repo, bob_repo = clones
        alice = _connect(alice_repo, "alice")
        bob = _connect(bob_repo, "bob")

        task = alice.create_task(TaskInput(title="Shared work"))
        assert alice.sync() == SyncResult(pushed=1)

        assert bob.sync() == SyncResult(updated=1)
        assert bob.get_task(task.id).title == "Shared work"


class TestMovePrechecks:
    """Tests for the git checks performed before a move."""

    def test_dirty_tree_blocks_move(self, git_repo: Path) -> None:
        """Uncommitted changes anywhere in the repository stop a move."""
        backend = _connect(git_repo, "agent-a")
        task = backend.create_task(TaskInput(title="Fix bug"))
        (git_repo / "notes.txt").write_text("scratch\n")

        with pytest.raises(UncommittedChangesError):
            backend.move_task(task.id, TaskStatus.TODO)

        assert backend.get_task(task.id).status == TaskStatus.BACKLOG

    def test_remote_ahead_blocks_move(self, clones: tuple[Path, Path]) -> None:
        """A move is refused until the clone has synced the remote's changes."""
        alice_repo, bob_repo = clones
        alice = _connect(alice_repo, "alice")
        bob = _connect(bob_repo, "bob")
        task = alice.create_task(TaskInput(title="Shared work"))
        alice.sync()
        bob.sync()

        alice.move_task(task.id, TaskStatus.TODO)

        with pytest.raises(SyncConflictError) as exc_info:
            bob.move_task(task.id, TaskStatus.REVIEW)
        assert exc_info.value.operation == "sync"

        bob.sync()
        moved = bob.move_task(task.id, TaskStatus.REVIEW)
        assert moved.status == TaskStatus.REVIEW


class TestGitLockMode:
    """Tests for claims recorded as agent labels in git history."""

    def test_claim_conflict_between_clones(self, clones: tuple[Path, Path]) -> None:
        """The second clone sees the first clone's claim after its pull."""
        alice_repo, bob_repo = clones
        alice = _connect(alice_repo, "alice", lock_mode=LockMode.GIT)
        bob = _connect(bob_repo, "bob", lock_mode=LockMode.GIT)
        task = alice.create_task(TaskInput(title="Shared work", status=TaskStatus.TODO))
        alice.sync()

        claimed = alice.claim_task(task.id).task
        assert claimed.labels == ["agent:alice"]
        assert _last_subject(alice_repo) == "claim: 001 [agent:alice]"
        assert not (alice_repo / ".backlog" / ".locks" / "001.lock").exists()

        with pytest.raises(ClaimConflictError) as exc_info:
            bob.claim_task(task.id)
        assert exc_info.value.claimed_by == "alice"

        with pytest.raises(ReleaseConflictError):
            bob.release_task(task.id)

    def test_release_then_claim(self, clones: tuple[Path, Path]) -> None:
        """A released task can be claimed from the other clone."""
        alice_repo, bob_repo = clones
        alice = _connect(alice_repo, "alice", lock_mode=LockMode.GIT)
        bob = _connect(bob_repo, "bob", lock_mode=LockMode.GIT)
        task = alice.create_task(TaskInput(title="Shared work", status=TaskStatus.TODO))
        alice.claim_task(task.id)

        assert alice.claim_task(task.id).already_owned

        released = alice.release_task(task.id)
        assert released.labels == []
        assert released.status == TaskStatus.TODO

        result = bob.claim_task(task.id)
        assert result.task.assignee == "bob"
        assert _last_subject(bob_repo) == "claim: 001 [agent:bob]"
