"""
Backend configuration models.

Every backend is connected with a BackendConfig: the agent identity, the
prefix used for agent claim labels, and a backend-specific workspace
payload. For the local backend the payload is a LocalWorkspaceConfig.

Configuration precedence:
    explicit values < environment variables (BACKLOG_*)

Locating and reading configuration files is left to the caller; this
module validates an already-loaded mapping.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from backlog.core.tasks.errors import ConfigError

DEFAULT_AGENT_LABEL_PREFIX = "agent"
DEFAULT_BACKLOG_DIR = ".backlog"

ENV_AGENT_ID = "BACKLOG_AGENT_ID"
ENV_AGENT_LABEL_PREFIX = "BACKLOG_AGENT_LABEL_PREFIX"


class LockMode(str, Enum):
    """How claims are coordinated by the local backend."""

    FILE = "file"  # advisory lock files under .locks/
    GIT = "git"  # agent labels, coordinated through git pull/push


class LocalWorkspaceConfig(BaseModel):
    """
    Workspace payload for the local filesystem backend.

    Example:
        >>> ws = LocalWorkspaceConfig(path=Path(".backlog"), lock_mode="git", git_sync=True)
        >>> ws.lock_mode
        <LockMode.GIT: 'git'>
    """

    path: Path = Field(
        default=Path(DEFAULT_BACKLOG_DIR),
        description="Root directory holding the status subdirectories",
    )
    lock_mode: LockMode = Field(
        default=LockMode.FILE,
        description="Claim coordination strategy: 'file' (default) or 'git'",
    )
    git_sync: bool = Field(
        default=False,
        description="Commit (and push, when a remote exists) after each mutation",
    )

    model_config = ConfigDict(extra="forbid")

    @field_validator("lock_mode", mode="before")
    @classmethod
    def empty_lock_mode_is_file(cls, v: Any) -> Any:
        if v in (None, ""):
            return LockMode.FILE
        return v


class BackendConfig(BaseModel):
    """
    Configuration passed to ``TaskBackend.connect``.

    ``workspace`` is opaque at this level; each backend validates its
    own payload when connecting.
    """

    agent_id: str = Field(default="", description="Identifier of the acting agent")
    agent_label_prefix: str = Field(
        default=DEFAULT_AGENT_LABEL_PREFIX,
        description="Prefix for claim labels, e.g. 'agent' gives 'agent:<id>'",
    )
    workspace: Any = Field(default=None, description="Backend-specific workspace payload")

    @field_validator("agent_label_prefix", mode="before")
    @classmethod
    def default_prefix(cls, v: Any) -> Any:
        if v in (None, ""):
            return DEFAULT_AGENT_LABEL_PREFIX
        return v

    @field_validator("agent_label_prefix")
    @classmethod
    def prefix_has_no_colon(cls, v: str) -> str:
        if ":" in v:
            raise ValueError("agent_label_prefix must not contain ':'")
        return v


def apply_env_overrides(
    data: dict[str, Any], environ: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """
    Apply environment variable overrides to a configuration mapping.

    Supported env vars:
        BACKLOG_AGENT_ID - overrides agent_id
        BACKLOG_AGENT_LABEL_PREFIX - overrides agent_label_prefix

    Args:
        data: Configuration mapping to override
        environ: Environment to read (defaults to os.environ)

    Returns:
        New mapping with the overrides applied
    """
    if environ is None:
        environ = os.environ
    result = dict(data)

    if agent_id := environ.get(ENV_AGENT_ID):
        result["agent_id"] = agent_id
    if prefix := environ.get(ENV_AGENT_LABEL_PREFIX):
        result["agent_label_prefix"] = prefix

    return result


def load_backend_config(
    data: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> BackendConfig:
    """
    Validate a configuration mapping into a BackendConfig.

    Example:
        >>> cfg = load_backend_config({"agent_id": "a1", "workspace": {"path": ".backlog"}})
        >>> cfg.agent_label_prefix
        'agent'

    Raises:
        ConfigError: If the mapping fails validation
    """
    merged = apply_env_overrides(dict(data or {}), environ)
    try:
        return BackendConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"invalid backend configuration: {e}") from e


def parse_local_workspace(workspace: Any) -> LocalWorkspaceConfig:
    """
    Coerce a workspace payload into a LocalWorkspaceConfig.

    Accepts a LocalWorkspaceConfig, a mapping, or a bare path.

    Raises:
        ConfigError: If the payload is missing or malformed
    """
    if workspace is None:
        raise ConfigError("local backend requires a workspace configuration")
    if isinstance(workspace, LocalWorkspaceConfig):
        return workspace
    if isinstance(workspace, (str, Path)):
        workspace = {"path": workspace}
    if not isinstance(workspace, Mapping):
        raise ConfigError(
            f"invalid workspace configuration for local backend: {type(workspace).__name__}"
        )
    try:
        return LocalWorkspaceConfig(**workspace)
    except ValidationError as e:
        raise ConfigError(f"invalid workspace configuration for local backend: {e}") from e
