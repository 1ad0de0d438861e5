"""
tenant-sandbox — filesystem utilities

File: src/tenant_sandbox/utils/fs.py
Last updated: 2026-10-17

Purpose
- Atomic writes for files the sandbox reads (env export, snapshots).
- Idempotent directory creation and lexical containment checks on resolved paths.

Functional requirements
- Atomic writes use temp files in the destination directory and replace in a single step.
- Containment checks resolve symlinks first so a link cannot smuggle a path across a boundary.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "ensure_directory",
    "is_within",
    "paths_overlap",
    "resolve_path",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    The write strategy is:
    1. create temp file in the same directory,
    2. write + flush + fsync file data,
    3. replace target via ``os.replace``.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        payload = data if isinstance(data, bytes) else data.encode(encoding)
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())
        os.chmod(temp_path, 0o644)
        os.replace(temp_path, target)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def ensure_directory(path: PathLike) -> Path:
    """Create ``path`` (and parents) if missing; safe to call repeatedly."""

    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def resolve_path(path: PathLike) -> Path:
    """Expand ``~`` and resolve symlinks without requiring the path to exist."""

    return Path(path).expanduser().resolve(strict=False)


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if resolved ``child`` equals or is nested under resolved ``parent``."""

    return _is_relative_to(resolve_path(child), resolve_path(parent))


def paths_overlap(first: PathLike, second: PathLike) -> bool:
    """Return ``True`` when either path equals or contains the other."""

    left = resolve_path(first)
    right = resolve_path(second)
    return _is_relative_to(left, right) or _is_relative_to(right, left)


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True
