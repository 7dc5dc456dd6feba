"""
Relation graph queries and next-task selection.

Relations are stored as two edge lists in each task's meta bag
(``blocks`` and ``blocked_by``). A task is blocked while any of its
blocked-by tasks is not done.

Two entry points:

* ``select_next_task`` walks a backend's priority-ordered candidates and
  returns the first one that is not blocked, resolving relations lazily
  per candidate.
* ``DependencyGraph`` is a pure query object built from a task snapshot,
  for impact analysis (what does finishing X unblock?).
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable

from .backend import Relater, TaskBackend
from .errors import BacklogError
from .models import RelationType, Task, TaskFilters, TaskStatus

logger = logging.getLogger(__name__)

# Default candidate filter for next-task selection: unclaimed open work
NEXT_TASK_STATUSES = [TaskStatus.TODO, TaskStatus.BACKLOG]


def is_blocked(task: Task, lookup: Callable[[str], Task]) -> bool:
    """
    Return True if any task in *task*'s blocked-by list is not done.

    Args:
        task: Task to inspect
        lookup: Resolves a task id to a Task; may raise NotFoundError

    A blocker that no longer exists does not block.
    """
    for blocker_id in task.blocked_by:
        try:
            blocker = lookup(blocker_id)
        except BacklogError:
            logger.debug("Blocker %s of %s not found, ignoring", blocker_id, task.id)
            continue
        if blocker.status != TaskStatus.DONE:
            return True
    return False


def _blocked_via_relations(backend: Relater, task_id: str) -> bool:
    relations = backend.list_relations(task_id)
    return any(
        rel.type == RelationType.BLOCKED_BY and rel.task_status != TaskStatus.DONE
        for rel in relations
    )


def select_next_task(
    backend: TaskBackend,
    filters: TaskFilters | None = None,
) -> Task | None:
    """
    Return the highest-priority candidate that is not blocked.

    Candidates come from ``backend.list_tasks`` (by default todo and
    backlog tasks with no assignee), already in priority order. Relations
    are resolved one candidate at a time. A relation lookup that fails
    counts as "unblocked" so that selection never stalls on optional
    relation support; backends without the Relater capability treat every
    candidate as unblocked.

    Returns:
        The selected task, or None if there are no unblocked candidates
    """
    if filters is None:
        filters = TaskFilters(status=list(NEXT_TASK_STATUSES), assignee="unassigned")

    candidates = backend.list_tasks(filters).tasks
    if not isinstance(backend, Relater):
        return candidates[0] if candidates else None

    for candidate in candidates:
        try:
            blocked = _blocked_via_relations(backend, candidate.id)
        except BacklogError as e:
            logger.warning("Relation lookup failed for %s, treating as unblocked: %s", candidate.id, e)
            blocked = False
        if not blocked:
            return candidate
        logger.debug("Skipping blocked candidate %s", candidate.id)

    return None


class DependencyGraph:
    """Immutable dependency graph built from a snapshot of tasks.

    The graph models two kinds of edges:

    * **forward edge** (``blocked_by``): A is blocked by B  →  A cannot
      start until B is done.
    * **reverse edge** (``blocks``): finishing B *unblocks* A.

    Edges declared on either side are merged, so a snapshot in which
    only one side was written still resolves consistently.

    Example::

        graph = DependencyGraph(backend.list_tasks(TaskFilters(include_done=True)).tasks)
        graph.would_become_ready("003")
    """

    __slots__ = ("_tasks", "_forward", "_reverse", "_done", "_all_ids")

    def __init__(self, tasks: list[Task]) -> None:
        self._tasks: dict[str, Task] = {t.id: t for t in tasks}
        self._all_ids: frozenset[str] = frozenset(self._tasks)

        # forward[A] = {B, C} means A is blocked by B and C
        self._forward: dict[str, set[str]] = {tid: set() for tid in self._all_ids}
        # reverse[B] = {A} means finishing B unblocks A
        self._reverse: dict[str, set[str]] = {}

        self._done: frozenset[str] = frozenset(
            t.id for t in tasks if t.status == TaskStatus.DONE
        )

        for task in tasks:
            for blocker in task.blocked_by:
                self._add_edge(task.id, blocker)
            for blocked in task.blocks:
                self._add_edge(blocked, task.id)

    def _add_edge(self, blocked: str, blocker: str) -> None:
        if blocked not in self._all_ids or blocker not in self._all_ids:
            return  # ignore dangling refs
        self._forward[blocked].add(blocker)
        self._reverse.setdefault(blocker, set()).add(blocked)

    def blockers(self, task_id: str) -> list[str]:
        """Ids of tasks directly blocking *task_id*."""
        return sorted(self._forward.get(task_id, set()))

    def is_blocked(self, task_id: str) -> bool:
        """True if any direct blocker of *task_id* is not done."""
        return bool(self._forward.get(task_id, set()) - self._done)

    def blocked_ids(self) -> list[str]:
        """Ids of open tasks that have at least one unfinished blocker."""
        return sorted(
            tid for tid in self._all_ids if tid not in self._done and self.is_blocked(tid)
        )

    def direct_unblocks(self, task_id: str) -> list[str]:
        """Return task ids that *task_id* directly blocks."""
        return sorted(self._reverse.get(task_id, set()))

    def transitive_unblocks(self, task_id: str) -> set[str]:
        """BFS through reverse edges to find all transitively blocked tasks."""
        visited: set[str] = set()
        queue: deque[str] = deque(self._reverse.get(task_id, set()))
        visited.update(queue)

        while queue:
            current = queue.popleft()
            for neighbour in self._reverse.get(current, set()):
                if neighbour not in visited:
                    visited.add(neighbour)
                    queue.append(neighbour)

        visited.discard(task_id)
        return visited

    def would_become_ready(self, task_id: str) -> list[str]:
        """Tasks that would become unblocked if *task_id* were done.

        Only considers tasks that are not already done.
        """
        hypothetical_done = self._done | {task_id}
        ready: list[str] = []
        for dependent in self._reverse.get(task_id, set()):
            if dependent in self._done:
                continue
            if self._forward.get(dependent, set()) <= hypothetical_done:
                ready.append(dependent)
        return sorted(ready)

    def has_cycle(self) -> bool:
        """Detect cycles using three-color DFS (white / gray / black)."""
        WHITE, GRAY, BLACK = 0, 1, 2  # noqa: N806
        color: dict[str, int] = {tid: WHITE for tid in self._all_ids}

        def _visit(node: str) -> bool:
            color[node] = GRAY
            for dep in self._forward.get(node, set()):
                if color[dep] == GRAY:
                    return True
                if color[dep] == WHITE and _visit(dep):
                    return True
            color[node] = BLACK
            return False

        for tid in sorted(self._all_ids):
            if color[tid] == WHITE and _visit(tid):
                return True
        return False
