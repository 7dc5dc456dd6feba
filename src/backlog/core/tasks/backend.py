"""
Task backend protocol, optional capabilities, and registry.

This module defines the TaskBackend protocol that every backend must
implement, plus four narrow capability protocols a backend may
additionally satisfy:

- Claimer: agent claim/release coordination
- Syncer: synchronisation with a remote transport
- Reorderer: explicit sort positions
- Relater: blocks / blocked-by relations

Callers probe for capabilities at runtime (``supports`` /
``require_capability``) instead of assuming them. A missing capability
surfaces as UnsupportedOperationError, never as a silent no-op.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, TypeVar, runtime_checkable

from .errors import UnsupportedOperationError
from .models import (
    ClaimResult,
    Comment,
    HealthStatus,
    Relation,
    RelationType,
    ReorderPosition,
    SyncResult,
    Task,
    TaskChanges,
    TaskFilters,
    TaskInput,
    TaskList,
    TaskStatus,
)


@runtime_checkable
class TaskBackend(Protocol):
    """
    Protocol for task backend implementations.

    Backends are stateful connections with the lifecycle
    ``connect(config)`` → operations → ``disconnect()``. A backend must
    be reconnected before being reused with an unrelated configuration.

    Backends are responsible for:
    - Mapping their native states onto the canonical status/priority enums
    - Filtering and ordering tasks for ``list_tasks``
    - Managing the task lifecycle (create, update, move, delete)
    - Keeping comments append-only and creation-ordered
    """

    @property
    def name(self) -> str:
        """Backend name (e.g., 'local')."""
        ...

    @property
    def version(self) -> str:
        """Version of the backend implementation."""
        ...

    def connect(self, config: Any) -> None:
        """
        Initialize the backend with the given configuration.

        Raises:
            ConfigError: If the configuration is malformed or incomplete
        """
        ...

    def disconnect(self) -> None:
        """Close the connection. Calling it twice is harmless."""
        ...

    def health_check(self) -> HealthStatus:
        """
        Check that the backend is reachable.

        Ordinary connectivity failures are reported through
        ``HealthStatus.ok``; only unexpected internal errors raise.
        """
        ...

    def list_tasks(self, filters: TaskFilters | None = None) -> TaskList:
        """
        List tasks matching every filter dimension.

        Done tasks are excluded unless ``include_done`` is set or the
        status filter names them. Results are ordered by priority
        (urgent first) then creation time unless the backend defines a
        native ordering.
        """
        ...

    def get_task(self, task_id: str) -> Task:
        """
        Get a task by id.

        Raises:
            NotFoundError: If the task does not exist
        """
        ...

    def create_task(self, task_input: TaskInput) -> Task:
        """Create a task (status defaults to backlog, priority to none)."""
        ...

    def update_task(self, task_id: str, changes: TaskChanges) -> Task:
        """Apply the non-None fields of a sparse change set."""
        ...

    def delete_task(self, task_id: str) -> None:
        """
        Delete a task.

        Raises:
            NotFoundError: If the task does not exist
        """
        ...

    def move_task(self, task_id: str, status: TaskStatus | str) -> Task:
        """
        Transition a task to a new status.

        Raises:
            InvalidStatusError: If status is not canonical
        """
        ...

    def assign_task(self, task_id: str, assignee: str) -> Task: ...

    def unassign_task(self, task_id: str) -> Task: ...

    def list_comments(self, task_id: str) -> list[Comment]: ...

    def add_comment(self, task_id: str, body: str) -> Comment: ...


@runtime_checkable
class Claimer(Protocol):
    """Optional capability: exclusive, TTL-bounded claims by agents."""

    def claim_task(self, task_id: str, agent_id: str = "") -> ClaimResult:
        """
        Claim a task for an agent.

        Raises:
            ClaimConflictError: If another agent holds an active claim
        """
        ...

    def release_task(self, task_id: str, agent_id: str = "") -> Task:
        """
        Release a claimed task back to todo.

        Raises:
            ReleaseConflictError: If the task is not claimed, or is
                claimed by a different agent
        """
        ...


@runtime_checkable
class Syncer(Protocol):
    """Optional capability: synchronise local state with a remote."""

    def sync(self, force: bool = False) -> SyncResult: ...


@runtime_checkable
class Reorderer(Protocol):
    """Optional capability: explicit sort positions within a priority group."""

    def reorder_task(self, task_id: str, position: ReorderPosition) -> Task: ...


@runtime_checkable
class Relater(Protocol):
    """Optional capability: blocks / blocked-by relations between tasks."""

    def link_tasks(
        self, source_id: str, target_id: str, relation_type: RelationType
    ) -> Relation: ...

    def unlink_tasks(self, source_id: str, target_id: str, relation_type: RelationType) -> None: ...

    def list_relations(self, task_id: str) -> list[Relation]: ...


CAPABILITIES: dict[type, str] = {
    Claimer: "claim/release",
    Syncer: "sync",
    Reorderer: "reorder",
    Relater: "relations",
}

C = TypeVar("C")


def supports(backend: object, capability: type) -> bool:
    """Return True if *backend* implements the *capability* protocol."""
    return isinstance(backend, capability)


def require_capability(backend: object, capability: type[C]) -> C:
    """
    Return *backend* typed as *capability*, or raise if it lacks it.

    Example:
        >>> claimer = require_capability(backend, Claimer)
        >>> claimer.claim_task("001", "agent-a")

    Raises:
        UnsupportedOperationError: If the backend does not implement it
    """
    if not isinstance(backend, capability):
        backend_name = getattr(backend, "name", type(backend).__name__)
        label = CAPABILITIES.get(capability, capability.__name__)
        raise UnsupportedOperationError(str(backend_name), label)
    return backend


def backend_capabilities(backend: object) -> list[str]:
    """List the names of the optional capabilities *backend* implements."""
    return [label for cap, label in CAPABILITIES.items() if isinstance(backend, cap)]


BackendFactory = Callable[[], TaskBackend]


class BackendRegistry:
    """
    Registry mapping backend names to factories.

    The registry is an explicit object owned by the process entry point,
    so tests can build isolated registries.

    Example:
        >>> registry = BackendRegistry()
        >>> registry.register("local", LocalBackend)
        >>> backend = registry.create("local")
        >>> backend.connect(config)
    """

    def __init__(self) -> None:
        self._factories: dict[str, BackendFactory] = {}

    def register(
        self, name: str, factory: BackendFactory | None = None
    ) -> Any:
        """
        Register a backend factory under *name*.

        Can be used directly or as a class decorator:

            @registry.register("memory")
            class MemoryBackend:
                ...

        Raises:
            ValueError: If the name is empty or already registered
        """
        if not name:
            raise ValueError("backend name must not be empty")

        def decorator(target: BackendFactory) -> BackendFactory:
            if target is None:
                raise ValueError(f"factory for backend {name!r} is None")
            if name in self._factories:
                raise ValueError(f"backend {name!r} is already registered")
            self._factories[name] = target
            return target

        if factory is None:
            return decorator
        return decorator(factory)

    def create(self, name: str) -> TaskBackend:
        """
        Return a new, unconnected backend instance.

        Raises:
            ValueError: If no backend is registered under *name*
        """
        factory = self._factories.get(name)
        if factory is None:
            available = ", ".join(sorted(self._factories)) or "none"
            raise ValueError(f"Backend '{name}' not registered. Available backends: {available}")
        return factory()

    def list_backends(self) -> list[str]:
        """Registered backend names, sorted."""
        return sorted(self._factories)

    def is_registered(self, name: str) -> bool:
        return name in self._factories

    def unregister(self, name: str) -> None:
        """Remove a backend; unknown names are ignored."""
        self._factories.pop(name, None)


def default_registry() -> BackendRegistry:
    """Build a registry containing the built-in backends."""
    # Imported here to keep the protocol module free of storage imports
    from backlog.core.local.backend import LocalBackend

    registry = BackendRegistry()
    registry.register("local", LocalBackend)
    return registry
