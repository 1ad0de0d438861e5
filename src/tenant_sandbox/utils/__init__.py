"""Utility exports for filesystem and concurrency helpers."""

from tenant_sandbox.utils.concurrency import RunCapacity, TenantLockRegistry, run_with_timeout
from tenant_sandbox.utils.fs import (
    atomic_write,
    ensure_directory,
    is_within,
    paths_overlap,
    resolve_path,
)

__all__ = [
    "RunCapacity",
    "TenantLockRegistry",
    "atomic_write",
    "ensure_directory",
    "is_within",
    "paths_overlap",
    "resolve_path",
    "run_with_timeout",
]
