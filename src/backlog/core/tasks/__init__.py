"""
Canonical task models and the backend contract.

This package provides the status/priority vocabulary, the Task model,
the TaskBackend protocol with its optional capability protocols, the
backend registry, and backend-independent helpers (ordering, relation
graph, next-task selection).
"""

from .backend import (
    BackendRegistry,
    Claimer,
    Relater,
    Reorderer,
    Syncer,
    TaskBackend,
    backend_capabilities,
    default_registry,
    require_capability,
    supports,
)
from .errors import (
    BacklogError,
    ClaimConflictError,
    ConfigError,
    ConflictError,
    NotFoundError,
    PartialClaimError,
    ReleaseConflictError,
    UnsupportedOperationError,
)
from .graph import DependencyGraph, is_blocked, select_next_task
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
    TaskPriority,
    TaskStatus,
)

__all__ = [
    # Models
    "Task",
    "TaskStatus",
    "TaskPriority",
    "Comment",
    "TaskList",
    "TaskFilters",
    "TaskInput",
    "TaskChanges",
    "HealthStatus",
    "ClaimResult",
    "SyncResult",
    "Relation",
    "RelationType",
    "ReorderPosition",
    # Backend protocol, capabilities and registry
    "TaskBackend",
    "Claimer",
    "Syncer",
    "Reorderer",
    "Relater",
    "supports",
    "require_capability",
    "backend_capabilities",
    "BackendRegistry",
    "default_registry",
    # Errors
    "BacklogError",
    "NotFoundError",
    "ConflictError",
    "ClaimConflictError",
    "ReleaseConflictError",
    "PartialClaimError",
    "ConfigError",
    "UnsupportedOperationError",
    # Relations
    "DependencyGraph",
    "is_blocked",
    "select_next_task",
]
