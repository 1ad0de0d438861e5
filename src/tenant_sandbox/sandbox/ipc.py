"""File-drop IPC from sandboxes back to the host.

A sandbox writes one JSON file per request into ``/workspace/ipc/messages`` or
``/workspace/ipc/tasks``. The host collects them with :meth:`IpcChannel.collect`,
which validates each file, applies the tenant's authority, and consumes it.
"""

from __future__ import annotations

import contextlib
import json
import logging
import shutil
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final

from tenant_sandbox.constants import IPC_DIR, IPC_ERRORS_DIR, IPC_MESSAGES_DIR, IPC_TASKS_DIR
from tenant_sandbox.domain.models import (
    OutboundMessage,
    ScheduleType,
    TaskCommand,
    Tenant,
    validate_folder,
)
from tenant_sandbox.utils.fs import ensure_directory

logger = logging.getLogger(__name__)

TASK_ACTIONS: Final[frozenset[str]] = frozenset(
    {"schedule_task", "pause_task", "resume_task", "cancel_task"}
)


class IpcRejected(ValueError):
    """A dropped file that is malformed or exceeds the tenant's authority."""


@dataclass(slots=True)
class IpcBatch:
    messages: list[OutboundMessage] = field(default_factory=list)
    task_commands: list[TaskCommand] = field(default_factory=list)
    rejected: list[Path] = field(default_factory=list)


class IpcChannel:
    def __init__(self, data_dir: Path) -> None:
        self._root = data_dir / IPC_DIR

    @property
    def errors_dir(self) -> Path:
        return self._root / IPC_ERRORS_DIR

    def tenant_dir(self, folder: str) -> Path:
        return self._root / validate_folder(folder)

    def ensure(self, folder: str) -> Path:
        base = self.tenant_dir(folder)
        ensure_directory(base / IPC_MESSAGES_DIR)
        ensure_directory(base / IPC_TASKS_DIR)
        return base

    def collect(self, tenant: Tenant, registered: Mapping[str, Tenant]) -> IpcBatch:
        """Consume pending files for ``tenant``.

        ``registered`` maps chat JIDs to the tenant registered for that chat. Accepted
        files are deleted; rejected ones are moved to the shared errors directory, or
        deleted when that move fails.
        """

        batch = IpcBatch()
        base = self.tenant_dir(tenant.folder)
        for path in _pending(base / IPC_MESSAGES_DIR):
            try:
                batch.messages.append(parse_message(_load(path), tenant, registered))
            except IpcRejected as exc:
                self._reject(path, tenant, str(exc), batch)
                continue
            path.unlink(missing_ok=True)

        for path in _pending(base / IPC_TASKS_DIR):
            try:
                batch.task_commands.append(parse_task_command(_load(path), tenant))
            except IpcRejected as exc:
                self._reject(path, tenant, str(exc), batch)
                continue
            path.unlink(missing_ok=True)

        if batch.messages or batch.task_commands or batch.rejected:
            logger.info(
                "ipc files collected",
                extra={
                    "group_folder": tenant.folder,
                    "messages": len(batch.messages),
                    "task_commands": len(batch.task_commands),
                    "rejected": len(batch.rejected),
                },
            )
        return batch

    def _reject(self, path: Path, tenant: Tenant, reason: str, batch: IpcBatch) -> None:
        logger.warning(
            "ipc file rejected",
            extra={"group_folder": tenant.folder, "file": path.name, "reason": reason},
        )
        try:
            target = ensure_directory(self.errors_dir) / f"{tenant.folder}-{path.name}"
            shutil.move(str(path), target)
        except OSError as exc:
            logger.warning(
                "unable to quarantine ipc file; discarding it",
                extra={"group_folder": tenant.folder, "file": path.name, "error": str(exc)},
            )
            with contextlib.suppress(OSError):
                path.unlink(missing_ok=True)
            return
        batch.rejected.append(target)


def parse_message(
    payload: Mapping[str, object],
    tenant: Tenant,
    registered: Mapping[str, Tenant],
) -> OutboundMessage:
    if payload.get("type") != "message":
        raise IpcRejected(f"unsupported message type {payload.get('type')!r}")
    chat_jid = _required_str(payload, "chatJid")
    text = _required_str(payload, "text")
    if not tenant.is_privileged:
        target = registered.get(chat_jid)
        if target is None or target.folder != tenant.folder:
            raise IpcRejected(f"not authorized to message {chat_jid}")
    return OutboundMessage(source_folder=tenant.folder, chat_jid=chat_jid, text=text)


def parse_task_command(payload: Mapping[str, object], tenant: Tenant) -> TaskCommand:
    action = payload.get("type")
    if not isinstance(action, str) or action not in TASK_ACTIONS:
        raise IpcRejected(f"unsupported task type {action!r}")

    if action != "schedule_task":
        return TaskCommand(
            source_folder=tenant.folder,
            action=action,
            task_id=_required_str(payload, "taskId"),
        )

    raw_folder = payload.get("groupFolder", tenant.folder)
    try:
        target_folder = validate_folder(raw_folder, "groupFolder")
    except ValueError as exc:
        raise IpcRejected(str(exc)) from exc
    if not tenant.is_privileged and target_folder != tenant.folder:
        raise IpcRejected(f"not authorized to schedule tasks for {target_folder}")
    try:
        schedule_type = ScheduleType(_required_str(payload, "schedule_type"))
    except ValueError as exc:
        raise IpcRejected(f"unsupported schedule_type: {exc}") from exc
    return TaskCommand(
        source_folder=tenant.folder,
        action=action,
        group_folder=target_folder,
        prompt=_required_str(payload, "prompt"),
        schedule_type=schedule_type,
        schedule_value=_required_str(payload, "schedule_value"),
    )


def _pending(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(path for path in directory.glob("*.json") if path.is_file())


def _load(path: Path) -> Mapping[str, object]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, RecursionError) as exc:
        raise IpcRejected(f"unreadable ipc file: {exc}") from exc
    if not isinstance(payload, dict):
        raise IpcRejected("ipc file must contain a JSON object")
    return payload


def _required_str(payload: Mapping[str, object], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise IpcRejected(f"{key} must be a non-empty string")
    return value


__all__ = [
    "IpcBatch",
    "IpcChannel",
    "IpcRejected",
    "TASK_ACTIONS",
    "parse_message",
    "parse_task_command",
]
