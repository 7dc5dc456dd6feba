"""
Error taxonomy shared by every task backend.

All errors raised by backends derive from BacklogError so callers can
catch the whole family at the boundary. Each class carries the exit
code a command-line front end should use when the error escapes:

    1  general / operational error
    2  conflict (claim held by another agent, sync conflict)
    3  not found
    4  configuration error

Remote adapters map their protocol errors onto this same taxonomy.
"""

from __future__ import annotations

from pathlib import Path


class BacklogError(Exception):
    """Base exception for backlog backend errors."""

    exit_code: int = 1


class NotFoundError(BacklogError):
    """Raised when a task (or a referenced task) does not exist."""

    exit_code = 3

    def __init__(self, task_id: str, message: str | None = None):
        self.task_id = task_id
        super().__init__(message or f"task not found: {task_id}")


class ConfigError(BacklogError):
    """Raised for malformed configuration or on-disk structure."""

    exit_code = 4


class UnsupportedOperationError(BacklogError):
    """Raised when a backend lacks an optional capability."""

    def __init__(self, backend_name: str, capability: str):
        self.backend_name = backend_name
        self.capability = capability
        super().__init__(f"backend {backend_name!r} does not support {capability}")


class BackendNotConnectedError(BacklogError):
    """Raised when an operation is issued before connect() or after disconnect()."""

    def __init__(self, backend_name: str):
        self.backend_name = backend_name
        super().__init__(f"backend {backend_name!r} is not connected")


class InvalidStatusError(BacklogError, ValueError):
    """Raised when a value is not one of the canonical statuses."""

    def __init__(self, value: object):
        self.value = value
        super().__init__(f"invalid status: {value}")


class ConflictError(BacklogError):
    """Base class for coordination conflicts between agents."""

    exit_code = 2


class ClaimConflictError(ConflictError):
    """Raised when a task is already claimed by a different agent."""

    def __init__(self, task_id: str, claimed_by: str, current_agent: str):
        self.task_id = task_id
        self.claimed_by = claimed_by
        self.current_agent = current_agent
        super().__init__(f"conflict: task {task_id} is already claimed by agent {claimed_by}")


class ReleaseConflictError(ConflictError):
    """
    Raised when a release is attempted by someone who does not hold the claim.

    ``not_claimed`` distinguishes a task nobody holds from a task held
    by another agent (in which case ``claimed_by`` names the holder).
    """

    def __init__(
        self,
        task_id: str,
        current_agent: str,
        claimed_by: str = "",
        not_claimed: bool = False,
    ):
        self.task_id = task_id
        self.current_agent = current_agent
        self.claimed_by = claimed_by
        self.not_claimed = not_claimed
        if not_claimed:
            message = f"task {task_id} is not claimed"
        else:
            message = f"task {task_id} is claimed by different agent {claimed_by}"
        super().__init__(message)


class SyncConflictError(ConflictError):
    """Raised when a pull or push cannot be reconciled with the remote."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        self.detail = message
        super().__init__(f"sync conflict during {operation}: {message}")


class PartialClaimError(BacklogError):
    """
    Raised when a claim wrote its lock but failed to update the task.

    The lock is removed on a best-effort basis before this is raised
    (``lock_removed`` records whether that worked). The task file may
    still be in its pre-claim state; callers can simply retry the claim.
    """

    def __init__(self, task_id: str, agent_id: str, cause: BaseException, lock_removed: bool):
        self.task_id = task_id
        self.agent_id = agent_id
        self.cause = cause
        self.lock_removed = lock_removed
        super().__init__(f"claim of task {task_id} by {agent_id} did not complete: {cause}")


class TaskFileError(BacklogError):
    """Raised when a task file cannot be decoded."""

    def __init__(self, message: str, path: Path | None = None):
        self.path = path
        if path is not None:
            message = f"{path}: {message}"
        super().__init__(message)


class LockFileError(BacklogError):
    """Raised when a lock file exists but cannot be parsed."""

    def __init__(self, message: str, path: Path | None = None):
        self.path = path
        super().__init__(message)


class UncommittedChangesError(BacklogError):
    """Raised when git sync is enabled and the working tree is dirty."""

    def __init__(self, message: str):
        super().__init__(f"uncommitted changes: {message}")


class GitError(BacklogError):
    """Exception raised when a git operation fails."""

    def __init__(self, message: str, command: list[str] | None = None, stderr: str = ""):
        super().__init__(message)
        self.command = command
        self.stderr = stderr
