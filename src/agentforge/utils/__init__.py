"""Utility exports for filesystem and concurrency helpers."""

from agentforge.utils.concurrency import (
    CancellationToken,
    ReadWriteLock,
    ThreadReadWriteLock,
    cancellable_sleep,
    run_with_timeout,
)
from agentforge.utils.fs import (
    atomic_write,
    atomic_write_json,
    copy_file,
    is_within,
    make_private_directory,
    safe_delete,
)

__all__ = [
    "CancellationToken",
    "ReadWriteLock",
    "ThreadReadWriteLock",
    "atomic_write",
    "atomic_write_json",
    "cancellable_sleep",
    "copy_file",
    "is_within",
    "make_private_directory",
    "run_with_timeout",
    "safe_delete",
]
