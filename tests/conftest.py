"""
Pytest configuration and shared fixtures.

Provides temporary backlog directories, connected local backends for one
or more agents, and sample tasks used across the test suite.
"""

from collections.abc import Callable, Iterator
from datetime import datetime, timezone
from pathlib import Path

import pytest

from backlog.core.config import BackendConfig, LocalWorkspaceConfig
from backlog.core.local.backend import LocalBackend
from backlog.core.tasks.models import Comment, Task, TaskPriority, TaskStatus

# ==============================================================================
# Directory Fixtures
# ==============================================================================


@pytest.fixture
def backlog_dir(tmp_path: Path) -> Path:
    """Path of a (not yet created) backlog root inside a temp directory."""
    return tmp_path / ".backlog"


# ==============================================================================
# Backend Fixtures
# ==============================================================================


@pytest.fixture
def make_backend(backlog_dir: Path) -> Iterator[Callable[..., LocalBackend]]:
    """
    Factory for backends connected to the shared backlog directory.

    Each call returns a new connection, so two calls with different agent
    ids simulate two agents working on the same backlog.
    """
    created: list[LocalBackend] = []

    def _make(agent_id: str = "agent-a", **workspace: object) -> LocalBackend:
        backend = LocalBackend()
        backend.connect(
            BackendConfig(
                agent_id=agent_id,
                workspace=LocalWorkspaceConfig(path=backlog_dir, **workspace),
            )
        )
        created.append(backend)
        return backend

    yield _make

    for backend in created:
        backend.disconnect()


@pytest.fixture
def backend(make_backend: Callable[..., LocalBackend]) -> LocalBackend:
    """A local backend connected as agent-a."""
    return make_backend("agent-a")


@pytest.fixture
def other_backend(make_backend: Callable[..., LocalBackend]) -> LocalBackend:
    """A second connection to the same backlog, as agent-b."""
    return make_backend("agent-b")


# ==============================================================================
# Sample Data Fixtures
# ==============================================================================


@pytest.fixture
def sample_task() -> Task:
    """A fully populated task, as it would be read from disk."""
    return Task(
        id="001",
        title="Fix login bug",
        description="Users cannot log in with SSO.\n\nSteps:\n- open /login",
        status=TaskStatus.TODO,
        priority=TaskPriority.HIGH,
        assignee="agent-a",
        labels=["bug", "auth", "agent:agent-a"],
        created=datetime(2025, 1, 15, 9, 0, 0, 123456, tzinfo=timezone.utc),
        updated=datetime(2025, 1, 18, 14, 30, 0, tzinfo=timezone.utc),
        url="https://example.com/tasks/001",
        sort_order=65536.5,
        meta={
            "comments": [
                Comment(
                    id="c1",
                    author="alex",
                    body="Reproduced on staging.",
                    created=datetime(2025, 1, 16, tzinfo=timezone.utc),
                ),
                Comment(
                    id="c2",
                    author="agent-a",
                    body="Root cause is the token refresh.\n\nFix incoming.",
                    created=datetime(2025, 1, 17, tzinfo=timezone.utc),
                ),
            ],
            "blocks": ["003"],
            "blocked_by": ["002"],
        },
    )
