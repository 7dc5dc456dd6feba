"""
Local filesystem backend: Markdown task files, advisory lock files and
optional git synchronisation.
"""

from .backend import LocalBackend
from .claims import ClaimProtocol
from .git import GitTransport
from .locks import DEFAULT_LOCK_TTL, LockCoordinator, LockRecord
from .taskfile import decode_task, encode_task, slugify, task_filename

__all__ = [
    "LocalBackend",
    "ClaimProtocol",
    "GitTransport",
    "LockCoordinator",
    "LockRecord",
    "DEFAULT_LOCK_TTL",
    "encode_task",
    "decode_task",
    "slugify",
    "task_filename",
]
