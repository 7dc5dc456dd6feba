"""
Backlog - task management for humans and agents

Unifies task management across backends under one canonical vocabulary
of status, priority, assignee and dependency, with a claim/release
protocol that lets several agents share a backlog without a server.
"""

__version__ = "0.1.0"

# Re-export core models for convenience
from backlog.core.tasks.models import Task, TaskPriority, TaskStatus

__all__ = ["Task", "TaskStatus", "TaskPriority", "__version__"]
