"""Per-invocation mount planning.

Every tenant gets its own group folder, session-state directory, and IPC directory;
only the privileged tenant sees the project root. Extra mounts pass through
:class:`MountSecurityValidator` and are appended last. No writable mapping may
contain the operator allowlist.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from tenant_sandbox.constants import (
    ENV_CONTAINER_PATH,
    ENV_DIR,
    GLOBAL_CONTAINER_PATH,
    GLOBAL_FOLDER,
    GROUP_CONTAINER_PATH,
    IPC_CONTAINER_PATH,
    IPC_DIR,
    IPC_MESSAGES_DIR,
    IPC_TASKS_DIR,
    LOGS_DIR,
    PROJECT_CONTAINER_PATH,
    SESSION_STATE_DIR,
    SESSIONS_DIR,
)
from tenant_sandbox.domain.models import MountMapping, Tenant
from tenant_sandbox.sandbox.errors import MountCollisionError, MountExposureError
from tenant_sandbox.utils.fs import ensure_directory, is_within

if TYPE_CHECKING:
    from collections.abc import Sequence

    from tenant_sandbox.config.loader import RuntimeSettings
    from tenant_sandbox.sandbox.mount_security import MountSecurityValidator

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TenantLayout:
    """Host directories owned by one tenant folder."""

    group_dir: Path
    logs_dir: Path
    session_dir: Path
    ipc_dir: Path

    @classmethod
    def for_folder(cls, folder: str, *, groups_dir: Path, data_dir: Path) -> TenantLayout:
        group_dir = groups_dir / folder
        return cls(
            group_dir=group_dir,
            logs_dir=group_dir / LOGS_DIR,
            session_dir=data_dir / SESSIONS_DIR / folder / SESSION_STATE_DIR,
            ipc_dir=data_dir / IPC_DIR / folder,
        )

    def ensure(self) -> None:
        ensure_directory(self.logs_dir)
        ensure_directory(self.session_dir)
        ensure_directory(self.ipc_dir / IPC_MESSAGES_DIR)
        ensure_directory(self.ipc_dir / IPC_TASKS_DIR)


class MountPlanner:
    """Build the ordered mapping list for one invocation."""

    def __init__(self, settings: RuntimeSettings, validator: MountSecurityValidator) -> None:
        self._settings = settings
        self._validator = validator

    @property
    def env_dir(self) -> Path:
        return self._settings.data_dir / ENV_DIR

    def layout(self, tenant: Tenant) -> TenantLayout:
        return TenantLayout.for_folder(
            tenant.folder,
            groups_dir=self._settings.groups_dir,
            data_dir=self._settings.data_dir,
        )

    def plan(self, tenant: Tenant) -> tuple[MountMapping, ...]:
        settings = self._settings
        layout = self.layout(tenant)
        layout.ensure()

        mounts: list[MountMapping] = []
        if tenant.is_privileged:
            mounts.append(
                MountMapping(settings.project_root, str(PROJECT_CONTAINER_PATH), readonly=False)
            )
            mounts.append(MountMapping(layout.group_dir, str(GROUP_CONTAINER_PATH), readonly=False))
        else:
            mounts.append(MountMapping(layout.group_dir, str(GROUP_CONTAINER_PATH), readonly=False))
            global_dir = settings.groups_dir / GLOBAL_FOLDER
            if global_dir.is_dir():
                mounts.append(MountMapping(global_dir, str(GLOBAL_CONTAINER_PATH), readonly=True))

        mounts.append(
            MountMapping(layout.session_dir, settings.session_container_path, readonly=False)
        )
        mounts.append(MountMapping(layout.ipc_dir, str(IPC_CONTAINER_PATH), readonly=False))
        mounts.append(MountMapping(ensure_directory(self.env_dir), str(ENV_CONTAINER_PATH), True))
        mounts.extend(self._validator.validate(tenant.additional_mounts, tenant))

        check_collisions(mounts)
        check_allowlist_hidden(mounts, settings.mount_allowlist)
        logger.debug(
            "mount plan computed",
            extra={
                "group_folder": tenant.folder,
                "mounts": [mount.describe() for mount in mounts],
            },
        )
        return tuple(mounts)


def check_collisions(mounts: Sequence[MountMapping]) -> None:
    """Raise ``MountCollisionError`` when two mappings claim the same sandbox path."""

    claimed: dict[str, MountMapping] = {}
    for mount in mounts:
        key = mount.container_path.rstrip("/") or "/"
        previous = claimed.get(key)
        if previous is not None:
            raise MountCollisionError(key, str(previous.host_path), str(mount.host_path))
        claimed[key] = mount


def check_allowlist_hidden(mounts: Sequence[MountMapping], allowlist: Path) -> None:
    """Raise ``MountExposureError`` when a writable mapping contains ``allowlist``."""

    for mount in mounts:
        if not mount.readonly and is_within(allowlist, mount.host_path):
            raise MountExposureError(mount.container_path, str(mount.host_path), str(allowlist))


__all__ = ["MountPlanner", "TenantLayout", "check_allowlist_hidden", "check_collisions"]
