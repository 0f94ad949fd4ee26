"""
agentforge — filesystem helpers

File: src/agentforge/utils/fs.py

Purpose
- Crash-safe writes for the credential store and build metadata, owner-only
  scratch directories for TEEs, and deletion that cannot leave its root.
"""

from __future__ import annotations

import contextlib
import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

PathLike = str | os.PathLike[str]

_POSIX = os.name == "posix"


def atomic_write(
    path: PathLike,
    data: bytes | str,
    *,
    encoding: str = "utf-8",
    mode: int | None = None,
) -> None:
    """Replace ``path`` with ``data`` so readers never observe a partial file.

    ``mode`` is applied before the rename, so a secret file is never briefly
    world-readable.
    """

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = data.encode(encoding) if isinstance(data, str) else data
    with _staged_file(target) as (handle, staged):
        handle.write(payload)
        handle.flush()
        os.fsync(handle.fileno())
        handle.close()
        if mode is not None and _POSIX:
            staged.chmod(mode)
        staged.replace(target)
    _sync_dir(target.parent)


def atomic_write_json(
    path: PathLike, payload: Mapping[str, object], *, mode: int | None = None
) -> None:
    document = json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)
    atomic_write(path, document + "\n", mode=mode)


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Whether ``child`` resolves inside the existing directory ``parent``.

    ``child`` itself may be missing (a copy destination); its parent may not.
    """

    root = _resolved(Path(parent))
    if root is None or not root.is_dir():
        return False
    candidate = Path(child)
    resolved = _resolved(candidate)
    if resolved is None:
        base = _resolved(candidate.parent)
        if base is None:
            return False
        resolved = base / candidate.name
    return resolved == root or root in resolved.parents


def make_private_directory(prefix: str, *, base_dir: PathLike | None = None) -> Path:
    """``mkdtemp`` under ``base_dir`` (created on demand), restricted to the owner."""

    if base_dir is not None:
        Path(base_dir).mkdir(parents=True, exist_ok=True)
    created = Path(tempfile.mkdtemp(prefix=prefix, dir=base_dir)).resolve(strict=True)
    if _POSIX:
        created.chmod(0o700)
    return created


def copy_file(src: PathLike, dest: PathLike) -> Path:
    source, destination = Path(src), Path(dest)
    if not source.is_file():
        raise FileNotFoundError(f"source is not a regular file: {source}")
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, destination)
    return destination


def safe_delete(path: PathLike, root: PathLike) -> None:
    """Remove ``path`` (file, tree or symlink) provided it is ``root`` or below it.

    A symlink is removed itself; its target is never followed.
    """

    root_dir = Path(root).resolve(strict=True)
    if not root_dir.is_dir():
        raise NotADirectoryError(f"{root_dir!s} is not a directory")
    target = Path(path)
    located = target.parent.resolve(strict=True) / target.name
    if located != root_dir and root_dir not in located.parents:
        raise ValueError(f"refusing to delete path outside root: {target!s}")
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    else:
        target.unlink()


@contextlib.contextmanager
def _staged_file(target: Path) -> Iterator[tuple[BinaryIO, Path]]:
    fd, name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    staged = Path(name)
    handle = os.fdopen(fd, "wb")
    try:
        yield handle, staged
    except BaseException:
        handle.close()
        staged.unlink(missing_ok=True)
        raise


def _resolved(path: Path) -> Path | None:
    try:
        return path.resolve(strict=True)
    except FileNotFoundError:
        return None


def _sync_dir(directory: Path) -> None:
    # Persists the rename; best effort where directories cannot be opened.
    if not _POSIX:
        return
    try:
        fd = os.open(directory, os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
    except OSError:
        return
    try:
        with contextlib.suppress(OSError):
            os.fsync(fd)
    finally:
        os.close(fd)


__all__ = [
    "PathLike",
    "atomic_write",
    "atomic_write_json",
    "copy_file",
    "is_within",
    "make_private_directory",
    "safe_delete",
]
