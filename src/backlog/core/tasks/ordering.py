"""
Canonical task ordering and sort-position arithmetic.

Lists are ordered by priority (urgent first), then by explicit
sort_order within a priority (tasks with an explicit order before those
without), then by creation time, then by id for determinism.

Reordering works on fractional positions: a task moved between two
neighbours takes the midpoint of their sort orders, so only the moved
task needs rewriting once a group has explicit orders.
"""

from __future__ import annotations

from collections.abc import Iterable

from .models import ReorderPosition, Task

# Spacing between default sort_order values
SORT_ORDER_GAP = 1024.0

# Starting offset for default sort_order values. High enough that repeated
# "first" moves do not reach 0, which means "unset".
SORT_ORDER_BASE = 65536.0


def sort_key(task: Task) -> tuple[int, int, float, object, str]:
    """Key implementing the canonical list order."""
    has_order = task.sort_order != 0
    return (
        task.priority.rank,
        0 if has_order else 1,
        task.sort_order if has_order else 0.0,
        task.created,
        task.id,
    )


def sort_tasks(tasks: Iterable[Task]) -> list[Task]:
    """Return *tasks* in canonical order."""
    return sorted(tasks, key=sort_key)


def ensure_sort_orders(tasks: list[Task]) -> list[Task]:
    """
    Assign default sort_order values to tasks in a group that lack one.

    Tasks are assumed to be in their current display order. Mutates the
    tasks in place and returns the ones that were changed (these must be
    persisted so the ordering survives).
    """
    if all(task.sort_order != 0 for task in tasks):
        return []

    changed: list[Task] = []
    for i, task in enumerate(tasks):
        if task.sort_order == 0:
            task.sort_order = SORT_ORDER_BASE + i * SORT_ORDER_GAP
            changed.append(task)
    return changed


def calculate_sort_order(target_id: str, ordered: list[Task], position: ReorderPosition) -> float:
    """
    Compute the new sort_order for *target_id* within an ordered group.

    Args:
        target_id: Task being moved
        ordered: Group members in display order, all with explicit sort orders
        position: Where to place the task

    Returns:
        The new sort_order value

    Raises:
        ValueError: If no position is given or the reference task is not
            in the group
    """
    others = [task for task in ordered if task.id != target_id]

    if position.first:
        if not others:
            return SORT_ORDER_GAP
        return others[0].sort_order - SORT_ORDER_GAP

    if position.last:
        if not others:
            return SORT_ORDER_GAP
        return others[-1].sort_order + SORT_ORDER_GAP

    if position.before_id is not None:
        for i, task in enumerate(others):
            if task.id == position.before_id:
                if i == 0:
                    return task.sort_order - SORT_ORDER_GAP
                return (others[i - 1].sort_order + task.sort_order) / 2
        raise ValueError(f"reference task not found: {position.before_id}")

    if position.after_id is not None:
        for i, task in enumerate(others):
            if task.id == position.after_id:
                if i == len(others) - 1:
                    return task.sort_order + SORT_ORDER_GAP
                return (task.sort_order + others[i + 1].sort_order) / 2
        raise ValueError(f"reference task not found: {position.after_id}")

    raise ValueError("no position specified")
