"""
Local filesystem task backend.

Stores each task as a Markdown file with a YAML header, in one
directory per status::

    .backlog/
        backlog/
        todo/
            001-fix-login-bug.md
        in-progress/
        review/
        done/
        .locks/
            001.lock

The status of a task is the directory its file lives in, so a move is a
file relocation. There is no index and no cache: every call reads the
current state of the disk, which is what lets several agents (or an
agent and a human with an editor) share one backlog.

Supports every optional capability: Claimer, Syncer, Reorderer and
Relater.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from datetime import timedelta
from pathlib import Path
from typing import Any

from backlog.core.config import (
    BackendConfig,
    LockMode,
    load_backend_config,
    parse_local_workspace,
)
from backlog.core.tasks.errors import (
    BackendNotConnectedError,
    ConfigError,
    NotFoundError,
    SyncConflictError,
    TaskFileError,
    UncommittedChangesError,
)
from backlog.core.tasks.models import (
    META_COMMENTS,
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
    utc_now,
)
from backlog.core.tasks.ordering import calculate_sort_order, ensure_sort_orders, sort_tasks

from .claims import ClaimProtocol
from .git import GitTransport
from .ids import find_task_file, next_task_id
from .locks import LOCKS_DIR, LockCoordinator
from .taskfile import read_task_file, task_filename, write_task_file

logger = logging.getLogger(__name__)

# Statuses listed by default; done is opt-in
ACTIVE_STATUSES = [
    TaskStatus.BACKLOG,
    TaskStatus.TODO,
    TaskStatus.IN_PROGRESS,
    TaskStatus.REVIEW,
]

ASSIGNEE_ME = "@me"
ASSIGNEE_UNASSIGNED = "unassigned"


class LocalBackend:
    """
    Task backend backed by a directory of Markdown task files.

    Example:
        >>> backend = LocalBackend()
        >>> backend.connect({"agent_id": "agent-a", "workspace": {"path": ".backlog"}})
        >>> task = backend.create_task(TaskInput(title="Fix login bug"))
        >>> task.id
        '001'
    """

    NAME = "local"
    VERSION = "0.1.0"

    def __init__(self) -> None:
        self._root: Path | None = None
        self.agent_id = ""
        self.agent_label_prefix = ""
        self.lock_mode = LockMode.FILE
        self.git_sync = False
        self._locks: LockCoordinator | None = None
        self._git: GitTransport | None = None
        self.claims = ClaimProtocol(self)

    @property
    def name(self) -> str:
        return self.NAME

    @property
    def version(self) -> str:
        return self.VERSION

    @property
    def root(self) -> Path:
        """Absolute backlog root. Raises BackendNotConnectedError when disconnected."""
        if self._root is None:
            raise BackendNotConnectedError(self.NAME)
        return self._root

    @property
    def locks(self) -> LockCoordinator:
        if self._locks is None:
            raise BackendNotConnectedError(self.NAME)
        return self._locks

    @property
    def is_connected(self) -> bool:
        return self._root is not None

    def _require_connected(self) -> None:
        if self._root is None:
            raise BackendNotConnectedError(self.NAME)

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    def connect(self, config: BackendConfig | Mapping[str, Any]) -> None:
        """
        Connect to a backlog directory, creating its structure if missing.

        Args:
            config: BackendConfig (or a mapping accepted by
                ``load_backend_config``) whose workspace is a
                LocalWorkspaceConfig, a mapping, or a path

        Raises:
            ConfigError: If the configuration is invalid, or the root
                exists but is not a directory
        """
        if not isinstance(config, BackendConfig):
            config = load_backend_config(config)
        workspace = parse_local_workspace(config.workspace)

        root = workspace.path.expanduser().resolve()
        if root.exists() and not root.is_dir():
            raise ConfigError(f"backlog path is not a directory: {root}")

        self._init_directory(root)

        self._root = root
        self.agent_id = config.agent_id
        self.agent_label_prefix = config.agent_label_prefix
        self.lock_mode = workspace.lock_mode
        self.git_sync = workspace.git_sync
        self._locks = LockCoordinator(root / LOCKS_DIR)
        self._git = None
        if self.git_sync or self.lock_mode == LockMode.GIT:
            self._git = GitTransport(root, agent_id=self.agent_id)

        logger.debug(
            "Connected local backend at %s (lock_mode=%s, git_sync=%s)",
            root,
            self.lock_mode.value,
            self.git_sync,
        )

    def _init_directory(self, root: Path) -> None:
        for status in TaskStatus:
            (root / status.value).mkdir(parents=True, exist_ok=True)
        (root / LOCKS_DIR).mkdir(parents=True, exist_ok=True)

    def disconnect(self) -> None:
        """Disconnect. Safe to call more than once."""
        self._root = None
        self._locks = None
        self._git = None

    def health_check(self) -> HealthStatus:
        """Report whether the backlog directory is reachable. Never raises for I/O problems."""
        start = time.monotonic()

        def _status(ok: bool, message: str) -> HealthStatus:
            latency = timedelta(seconds=time.monotonic() - start)
            return HealthStatus(ok=ok, message=message, latency=latency)

        if self._root is None:
            return _status(False, "not connected")
        try:
            if not self._root.is_dir():
                return _status(False, f"cannot access directory: {self._root}")
        except OSError as e:
            return _status(False, f"cannot access directory: {e}")
        return _status(True, "ok")

    # ==========================================================================
    # Internal storage helpers
    # ==========================================================================

    def _locate(self, task_id: str) -> tuple[Path, TaskStatus]:
        found = find_task_file(self.root, task_id)
        if found is None:
            raise NotFoundError(task_id)
        return found

    def _load(self, task_id: str) -> tuple[Task, Path]:
        path, status = self._locate(task_id)
        return read_task_file(path, status), path

    def _task_path(self, task: Task) -> Path:
        return self.root / task.status.value / task_filename(task.id, task.title)

    def _save(self, task: Task, previous: Path | None = None) -> Task:
        """
        Write a task to its canonical path and bump ``updated``.

        The new file is written before the previous one is removed, so a
        failure in between leaves a duplicate rather than a lost task.
        """
        task.updated = utc_now()
        path = self._task_path(task)
        write_task_file(path, task)
        if previous is not None and previous != path:
            previous.unlink(missing_ok=True)
        logger.debug("Wrote task %s to %s", task.id, path)
        return task

    def rewrite_task(
        self,
        task_id: str,
        changes: TaskChanges | None = None,
        status: TaskStatus | None = None,
    ) -> Task:
        """
        Apply changes and/or a status change to a task in one write.

        Does not commit; callers decide how the mutation is recorded.
        """
        task, path = self._load(task_id)
        if changes is not None:
            task = changes.apply(task)
        if status is not None:
            task.status = status
        return self._save(task, path)

    def require_git(self) -> GitTransport:
        """
        Return the git transport, creating one on demand.

        Raises:
            ConfigError: If the backlog is not inside a git repository
        """
        if self._git is None:
            self._git = GitTransport(self.root, agent_id=self.agent_id)
        if not self._git.is_repo():
            raise ConfigError(f"backlog directory is not inside a git repository: {self.root}")
        return self._git

    def commit(self, action: str, task_id: str, agent_id: str | None = None) -> None:
        """Commit the backlog directory when git sync is enabled."""
        if not self.git_sync:
            return
        self.require_git().commit(action, task_id, agent_id)

    def push(self) -> None:
        """Push when git sync is enabled."""
        if not self.git_sync:
            return
        self.require_git().push()

    # ==========================================================================
    # Queries
    # ==========================================================================

    def _matches(self, task: Task, filters: TaskFilters) -> bool:
        if filters.priority and task.priority not in filters.priority:
            return False

        if filters.assignee:
            if filters.assignee == ASSIGNEE_UNASSIGNED:
                if task.assignee:
                    return False
            elif filters.assignee == ASSIGNEE_ME:
                if task.assignee != self.agent_id:
                    return False
            elif task.assignee != filters.assignee:
                return False

        if filters.labels and not set(filters.labels).issubset(task.labels):
            return False

        return True

    def _scan(self, status: TaskStatus) -> list[Task]:
        status_dir = self.root / status.value
        if not status_dir.is_dir():
            return []

        tasks: list[Task] = []
        for path in sorted(status_dir.glob("*.md")):
            if not path.is_file():
                continue
            try:
                tasks.append(read_task_file(path, status))
            except TaskFileError as e:
                logger.warning("Skipping unreadable task file %s: %s", path, e)
        return tasks

    def list_tasks(self, filters: TaskFilters | None = None) -> TaskList:
        """
        List tasks matching all filter dimensions, in canonical order.

        Done tasks are only scanned when ``include_done`` is set or done
        is named in the status filter. Files that fail to decode are
        skipped with a warning.
        """
        filters = filters or TaskFilters()

        if filters.status:
            statuses = list(dict.fromkeys(filters.status))
        else:
            statuses = list(ACTIVE_STATUSES)
            if filters.include_done:
                statuses.append(TaskStatus.DONE)

        tasks = [
            task
            for status in statuses
            for task in self._scan(status)
            if self._matches(task, filters)
        ]
        tasks = sort_tasks(tasks)

        has_more = False
        if filters.limit and len(tasks) > filters.limit:
            tasks = tasks[: filters.limit]
            has_more = True

        return TaskList(tasks=tasks, count=len(tasks), has_more=has_more)

    def get_task(self, task_id: str) -> Task:
        """
        Get a task by id.

        Raises:
            NotFoundError: If no file matches the id
            TaskFileError: If the file cannot be decoded
        """
        task, _ = self._load(task_id)
        return task

    # ==========================================================================
    # Mutations
    # ==========================================================================

    def create_task(self, task_input: TaskInput) -> Task:
        """Create a task with the next sequential id."""
        root = self.root
        now = utc_now()
        task = Task(
            id=next_task_id(root),
            title=task_input.title,
            description=task_input.description,
            status=task_input.status or TaskStatus.BACKLOG,
            priority=task_input.priority or TaskPriority.NONE,
            assignee=task_input.assignee,
            labels=list(task_input.labels),
            created=now,
            updated=now,
        )
        path = self._task_path(task)
        write_task_file(path, task)
        logger.info("Created task %s at %s", task.id, path)

        self.commit("add", task.id)
        return task

    def update_task(self, task_id: str, changes: TaskChanges) -> Task:
        """Apply a sparse change set. A title change renames the file."""
        task = self.rewrite_task(task_id, changes)
        self.commit("edit", task_id)
        return task

    def delete_task(self, task_id: str) -> None:
        """Delete a task's file (and any lock it still holds)."""
        path, _ = self._locate(task_id)
        path.unlink()
        self.locks.remove(task_id)
        logger.info("Deleted task %s", task_id)
        self.commit("delete", task_id)

    def move_task(self, task_id: str, status: TaskStatus | str) -> Task:
        """
        Move a task to another status directory.

        With git sync enabled the working tree must be clean and the
        remote must not be ahead; the move is committed and pushed.

        Raises:
            InvalidStatusError: If status is not canonical
            UncommittedChangesError: If git sync is on and the tree is dirty
            SyncConflictError: If git sync is on and the remote is ahead
        """
        target = TaskStatus.parse(status)

        if self.git_sync:
            git = self.require_git()
            if git.has_uncommitted_changes():
                raise UncommittedChangesError(
                    "please commit or stash your changes before moving tasks"
                )
            if git.is_remote_ahead():
                raise SyncConflictError("sync", "remote has changes - sync before moving tasks")

        task = self.rewrite_task(task_id, status=target)
        logger.info("Moved task %s to %s", task_id, target.value)

        self.commit("move", task_id)
        self.push()
        return task

    def assign_task(self, task_id: str, assignee: str) -> Task:
        return self.update_task(task_id, TaskChanges(assignee=assignee))

    def unassign_task(self, task_id: str) -> Task:
        return self.update_task(task_id, TaskChanges(assignee=""))

    def list_comments(self, task_id: str) -> list[Comment]:
        return self.get_task(task_id).comments

    def add_comment(self, task_id: str, body: str) -> Comment:
        """Append a comment authored by the configured agent."""
        task, path = self._load(task_id)
        comments = task.comments
        comment = Comment(
            id=f"c{len(comments) + 1}",
            author=self.agent_id,
            body=body,
            created=utc_now(),
        )
        task.meta[META_COMMENTS] = [*comments, comment]
        self._save(task, path)

        self.commit("comment", task_id)
        return comment

    # ==========================================================================
    # Claimer
    # ==========================================================================

    def claim_task(self, task_id: str, agent_id: str = "") -> ClaimResult:
        """Claim a task. See ClaimProtocol.claim."""
        self._require_connected()
        return self.claims.claim(task_id, agent_id)

    def release_task(self, task_id: str, agent_id: str = "") -> Task:
        """Release a claimed task back to todo. See ClaimProtocol.release."""
        self._require_connected()
        return self.claims.release(task_id, agent_id)

    # ==========================================================================
    # Syncer
    # ==========================================================================

    def sync(self, force: bool = False) -> SyncResult:
        """
        Pull then push the repository holding the backlog.

        Raises:
            ConfigError: If the backlog is not inside a git repository
            SyncConflictError: On merge conflicts or a rejected push
        """
        git = self.require_git()
        pulled, pushed = git.sync(force=force)
        return SyncResult(updated=1 if pulled else 0, pushed=1 if pushed else 0)

    # ==========================================================================
    # Reorderer
    # ==========================================================================

    def reorder_task(self, task_id: str, position: ReorderPosition) -> Task:
        """
        Move a task within its (status, priority) group.

        Unset sort orders in the group are materialised and persisted
        first, so the group keeps its current order around the move.

        Raises:
            NotFoundError: If the task or the reference task does not exist
            ValueError: If the position is empty, refers to the task
                itself, or refers to a task in another group
        """
        task = self.get_task(task_id)

        if not (position.first or position.last or position.reference_id):
            raise ValueError("no position specified")

        group = self.list_tasks(
            TaskFilters(status=[task.status], priority=[task.priority])
        ).tasks

        reference_id = position.reference_id
        if reference_id is not None:
            if reference_id == task_id:
                raise ValueError("cannot reorder task relative to itself")
            if not any(member.id == reference_id for member in group):
                # Raises NotFoundError if the reference does not exist at all
                self.get_task(reference_id)
                raise ValueError(
                    f"reference task {reference_id} has different status or priority than task {task_id}"
                )

        materialised = ensure_sort_orders(group)
        new_order = calculate_sort_order(task_id, group, position)

        for member in materialised:
            if member.id == task_id:
                continue
            peer, path = self._load(member.id)
            peer.sort_order = member.sort_order
            self._save(peer, path)

        target, path = self._load(task_id)
        target.sort_order = new_order
        self._save(target, path)
        logger.debug("Reordered task %s to %s", task_id, new_order)

        self.commit("reorder", task_id)
        return target

    # ==========================================================================
    # Relater
    # ==========================================================================

    def link_tasks(self, source_id: str, target_id: str, relation_type: RelationType) -> Relation:
        """
        Record a relation on both tasks. Linking twice is a no-op.

        Raises:
            NotFoundError: If either task does not exist
            ValueError: If a task is linked to itself
        """
        if source_id == target_id:
            raise ValueError("cannot link a task to itself")

        source, source_path = self._load(source_id)
        target, target_path = self._load(target_id)

        source_key = relation_type.meta_key
        target_key = relation_type.inverse.meta_key

        source_edges = list(source.meta.get(source_key) or [])
        if target_id not in source_edges:
            source.meta[source_key] = [*source_edges, target_id]
        target_edges = list(target.meta.get(target_key) or [])
        if source_id not in target_edges:
            target.meta[target_key] = [*target_edges, source_id]

        self._save(source, source_path)
        self._save(target, target_path)

        self.commit("link", source_id)
        return Relation(
            type=relation_type,
            task_id=target_id,
            task_title=target.title,
            task_status=target.status,
        )

    def unlink_tasks(self, source_id: str, target_id: str, relation_type: RelationType) -> None:
        """Remove a relation from both tasks. Removing a missing relation is a no-op."""
        source, source_path = self._load(source_id)
        target, target_path = self._load(target_id)

        _drop_edge(source, relation_type.meta_key, target_id)
        _drop_edge(target, relation_type.inverse.meta_key, source_id)

        self._save(source, source_path)
        self._save(target, target_path)

        self.commit("unlink", source_id)

    def list_relations(self, task_id: str) -> list[Relation]:
        """Resolve a task's relations. Edges to deleted tasks are skipped."""
        task = self.get_task(task_id)

        relations: list[Relation] = []
        edges = [(RelationType.BLOCKS, task.blocks), (RelationType.BLOCKED_BY, task.blocked_by)]
        for relation_type, related_ids in edges:
            for related_id in related_ids:
                try:
                    related = self.get_task(related_id)
                except NotFoundError:
                    continue
                relations.append(
                    Relation(
                        type=relation_type,
                        task_id=related_id,
                        task_title=related.title,
                        task_status=related.status,
                    )
                )
        return relations


def _drop_edge(task: Task, key: str, related_id: str) -> None:
    remaining = [edge for edge in (task.meta.get(key) or []) if edge != related_id]
    if remaining:
        task.meta[key] = remaining
    else:
        task.meta.pop(key, None)
