"""Read-only state snapshots placed in each tenant's IPC directory.

The sandbox reads these instead of querying the host; visibility is filtered here so a
non-privileged tenant never learns about another tenant's tasks or chats.
"""

from __future__ import annotations

import contextlib
import json
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path

from tenant_sandbox.constants import (
    AVAILABLE_GROUPS_SNAPSHOT_FILENAME,
    IPC_DIR,
    TASKS_SNAPSHOT_FILENAME,
)
from tenant_sandbox.domain.models import AvailableTenant, TaskSnapshotEntry, Tenant
from tenant_sandbox.utils.fs import atomic_write, ensure_directory


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def visible_tasks(tenant: Tenant, tasks: Iterable[TaskSnapshotEntry]) -> list[TaskSnapshotEntry]:
    if tenant.is_privileged:
        return list(tasks)
    return [task for task in tasks if task.group_folder == tenant.folder]


class SnapshotWriter:
    def __init__(self, data_dir: Path, *, clock: Callable[[], datetime] = _utc_now) -> None:
        self._data_dir = data_dir
        self._clock = clock

    def snapshot_dir(self, tenant: Tenant) -> Path:
        return self._data_dir / IPC_DIR / tenant.folder

    def write_tasks_snapshot(self, tenant: Tenant, tasks: Iterable[TaskSnapshotEntry]) -> Path:
        payload = [task.to_payload() for task in visible_tasks(tenant, tasks)]
        return self._write(tenant, TASKS_SNAPSHOT_FILENAME, payload)

    def write_available_tenants_snapshot(
        self,
        tenant: Tenant,
        tenants: Iterable[AvailableTenant],
    ) -> Path:
        """Only the privileged tenant sees the chat list; everyone else gets ``[]``."""

        groups = [item.to_payload() for item in tenants] if tenant.is_privileged else []
        payload = {
            "groups": groups,
            "lastSync": self._clock().isoformat().replace("+00:00", "Z"),
        }
        return self._write(tenant, AVAILABLE_GROUPS_SNAPSHOT_FILENAME, payload)

    def discard(self, tenant: Tenant) -> list[Path]:
        """Remove ``tenant``'s snapshot files; returns the paths that were removed."""

        removed: list[Path] = []
        for filename in (TASKS_SNAPSHOT_FILENAME, AVAILABLE_GROUPS_SNAPSHOT_FILENAME):
            path = self.snapshot_dir(tenant) / filename
            with contextlib.suppress(FileNotFoundError):
                path.unlink()
                removed.append(path)
        return removed

    def _write(self, tenant: Tenant, filename: str, payload: object) -> Path:
        target = ensure_directory(self.snapshot_dir(tenant)) / filename
        atomic_write(target, json.dumps(payload, indent=2, ensure_ascii=False) + "\n")
        return target


__all__ = ["SnapshotWriter", "visible_tasks"]
