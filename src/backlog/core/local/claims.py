"""
Claim/release coordination for the local backend.

Two lock modes are supported:

file (default)
    A lock file under ``.locks/`` records the holder and an expiry time.
    Claim checks the lock, writes a fresh one, then labels, assigns and
    moves the task. Expired locks are taken over silently.

git
    The agent label on the task is the claim record. Claim pulls, checks
    the labels, mutates the task, commits and pushes. The push is the
    coordination point: a rejected push means another agent claimed
    first.

In both modes a claim leaves the task in-progress, assigned to the agent
and carrying exactly one ``<prefix>:<agent>`` label; a release by the
same agent reverses all three and moves the task to todo.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from backlog.core.config import LockMode
from backlog.core.tasks.errors import (
    BacklogError,
    ClaimConflictError,
    ConfigError,
    PartialClaimError,
    ReleaseConflictError,
    SyncConflictError,
)
from backlog.core.tasks.models import ClaimResult, Task, TaskChanges, TaskStatus, utc_now

from .locks import DEFAULT_LOCK_TTL, LockRecord

if TYPE_CHECKING:
    from .backend import LocalBackend

logger = logging.getLogger(__name__)

PUSH_CONFLICT_HOLDER = "another agent (push conflict)"


class ClaimProtocol:
    """
    Claim and release tasks on behalf of agents.

    Operates on a connected LocalBackend: reads go through the backend,
    and the claim mutation is a single rewrite of the task file.
    """

    def __init__(self, backend: LocalBackend, lock_ttl: timedelta = DEFAULT_LOCK_TTL):
        self.backend = backend
        self.lock_ttl = lock_ttl

    @property
    def prefix(self) -> str:
        return self.backend.agent_label_prefix

    def resolve_agent(self, agent_id: str = "") -> str:
        """
        Return the acting agent: the explicit id, else the configured one.

        Raises:
            ConfigError: If neither is set
        """
        agent = agent_id or self.backend.agent_id
        if not agent:
            raise ConfigError("an agent id is required to claim or release tasks")
        return agent

    def agent_label(self, agent: str) -> str:
        return f"{self.prefix}:{agent}"

    def label_holder(self, task: Task) -> str | None:
        """Agent named by the task's first agent label, if any."""
        labels = task.agent_labels(self.prefix)
        if not labels:
            return None
        return labels[0][len(self.prefix) + 1 :]

    def _claim_changes(self, task: Task, agent: str) -> TaskChanges:
        return TaskChanges(
            remove_labels=task.agent_labels(self.prefix),
            add_labels=[self.agent_label(agent)],
            assignee=agent,
        )

    def _release_changes(self, task: Task) -> TaskChanges:
        return TaskChanges(remove_labels=task.agent_labels(self.prefix), assignee="")

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    def claim(self, task_id: str, agent_id: str = "") -> ClaimResult:
        """
        Claim a task for an agent.

        Returns:
            ClaimResult; ``already_owned`` is True (and nothing is
            written) when the agent already holds an active claim

        Raises:
            NotFoundError: If the task does not exist
            ClaimConflictError: If another agent holds the claim
            PartialClaimError: If the lock was written but the task
                could not be updated (file mode)
        """
        agent = self.resolve_agent(agent_id)
        if self.backend.lock_mode == LockMode.GIT:
            return self._claim_with_git(task_id, agent)
        return self._claim_with_lock_file(task_id, agent)

    def _claim_with_lock_file(self, task_id: str, agent: str) -> ClaimResult:
        task = self.backend.get_task(task_id)
        locks = self.backend.locks

        now = utc_now()
        existing = locks.read(task_id)
        if existing is not None and existing.is_active(now):
            if existing.agent == agent:
                logger.debug("Task %s already claimed by %s", task_id, agent)
                return ClaimResult(task=task, already_owned=True)
            raise ClaimConflictError(task_id, claimed_by=existing.agent, current_agent=agent)

        if existing is not None:
            logger.info(
                "Taking over expired claim on %s (held by %s until %s)",
                task_id,
                existing.agent,
                existing.expires_at.isoformat(),
            )

        locks.write(task_id, LockRecord.new(agent, now, self.lock_ttl))

        try:
            claimed = self.backend.rewrite_task(
                task_id, self._claim_changes(task, agent), status=TaskStatus.IN_PROGRESS
            )
        except (OSError, BacklogError) as e:
            lock_removed = True
            try:
                locks.remove(task_id)
            except OSError as cleanup_error:
                lock_removed = False
                logger.warning("Failed to remove lock for %s after failed claim: %s", task_id, cleanup_error)
            raise PartialClaimError(task_id, agent, e, lock_removed) from e

        logger.info("Agent %s claimed task %s", agent, task_id)

        if self.backend.git_sync:
            self.backend.commit("claim", task_id, agent)
            self.backend.push()

        return ClaimResult(task=claimed, already_owned=False)

    def _claim_with_git(self, task_id: str, agent: str) -> ClaimResult:
        git = self.backend.require_git()
        git.pull()

        # Re-read after the pull so we see other agents' claims
        task = self.backend.get_task(task_id)
        holder = self.label_holder(task)
        if holder is not None:
            if holder == agent:
                return ClaimResult(task=task, already_owned=True)
            raise ClaimConflictError(task_id, claimed_by=holder, current_agent=agent)

        # Lock files are not used in git mode; clear any leftovers
        self.backend.locks.remove(task_id)

        claimed = self.backend.rewrite_task(
            task_id, self._claim_changes(task, agent), status=TaskStatus.IN_PROGRESS
        )
        git.commit("claim", task_id, agent)

        try:
            git.push()
        except SyncConflictError as e:
            raise ClaimConflictError(
                task_id, claimed_by=PUSH_CONFLICT_HOLDER, current_agent=agent
            ) from e

        logger.info("Agent %s claimed task %s", agent, task_id)
        return ClaimResult(task=claimed, already_owned=False)

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def release(self, task_id: str, agent_id: str = "") -> Task:
        """
        Release a task claimed by the agent back to todo.

        Returns:
            The released task

        Raises:
            NotFoundError: If the task does not exist
            ReleaseConflictError: If the task is not claimed, or is
                claimed by another agent
        """
        agent = self.resolve_agent(agent_id)
        if self.backend.lock_mode == LockMode.GIT:
            return self._release_with_git(task_id, agent)
        return self._release_with_lock_file(task_id, agent)

    def _release_with_lock_file(self, task_id: str, agent: str) -> Task:
        task = self.backend.get_task(task_id)
        locks = self.backend.locks

        lock = locks.read(task_id)
        if lock is None:
            raise ReleaseConflictError(task_id, current_agent=agent, not_claimed=True)
        if lock.agent != agent:
            raise ReleaseConflictError(task_id, current_agent=agent, claimed_by=lock.agent)

        released = self.backend.rewrite_task(
            task_id, self._release_changes(task), status=TaskStatus.TODO
        )
        locks.remove(task_id)

        logger.info("Agent %s released task %s", agent, task_id)

        if self.backend.git_sync:
            self.backend.commit("release", task_id, agent)
            self.backend.push()

        return released

    def _release_with_git(self, task_id: str, agent: str) -> Task:
        git = self.backend.require_git()
        git.pull()

        task = self.backend.get_task(task_id)
        holder = self.label_holder(task)
        if holder is None:
            raise ReleaseConflictError(task_id, current_agent=agent, not_claimed=True)
        if holder != agent:
            raise ReleaseConflictError(task_id, current_agent=agent, claimed_by=holder)

        self.backend.locks.remove(task_id)

        released = self.backend.rewrite_task(
            task_id, self._release_changes(task), status=TaskStatus.TODO
        )
        git.commit("release", task_id, agent)
        git.push()

        logger.info("Agent %s released task %s", agent, task_id)
        return released
