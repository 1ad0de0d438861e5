"""Dataclass domain models with strict validation and wire serialization."""

from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import NoReturn

from tenant_sandbox.constants import GLOBAL_FOLDER

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_FOLDER_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")
_MAX_TEXT = 1_000_000


class JobStatus(StrEnum):
    SUCCESS = "success"
    ERROR = "error"


class FailureKind(StrEnum):
    """Host-side classification of an error result."""

    TIMEOUT = "timeout"
    NON_ZERO_EXIT = "non_zero_exit"
    OUTPUT_PARSE = "output_parse"
    SPAWN_FAILURE = "spawn_failure"
    CONFIGURATION = "configuration"


class ScheduleType(StrEnum):
    CRON = "cron"
    INTERVAL = "interval"
    ONCE = "once"


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _as_str(value: object, path: str, *, allow_empty: bool = False) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    if not allow_empty and not value.strip():
        _fail(path, "must not be empty")
    if len(value) > _MAX_TEXT:
        _fail(path, f"must be <= {_MAX_TEXT} characters")
    return value


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, path)


def _as_bool(value: object, path: str) -> bool:
    if not isinstance(value, bool):
        _fail(path, f"expected boolean, got {type(value).__name__}")
    return value


def validate_folder(value: object, path: str = "Tenant.folder") -> str:
    """Return ``value`` when it is a safe tenant folder name."""

    folder = _as_str(value, path)
    if not _FOLDER_RE.fullmatch(folder):
        _fail(path, "must match [a-z0-9][a-z0-9_-]{0,63}")
    return folder


@dataclass(frozen=True, slots=True)
class MountRequest:
    """A tenant-requested extra host directory."""

    host_path: str
    container_path: str | None = None
    readonly: bool = True

    def __post_init__(self) -> None:
        _as_str(self.host_path, "MountRequest.host_path")
        _as_optional_str(self.container_path, "MountRequest.container_path")
        _as_bool(self.readonly, "MountRequest.readonly")

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> MountRequest:
        host_path = payload.get("hostPath", payload.get("host_path"))
        container_path = payload.get("containerPath", payload.get("container_path"))
        readonly = payload.get("readonly", True)
        return cls(
            host_path=_as_str(host_path, "MountRequest.host_path"),
            container_path=_as_optional_str(container_path, "MountRequest.container_path"),
            readonly=_as_bool(readonly, "MountRequest.readonly"),
        )


@dataclass(frozen=True, slots=True)
class TenantRuntimeConfig:
    """Optional per-tenant overrides."""

    timeout_seconds: float | None = None
    additional_mounts: tuple[MountRequest, ...] = ()

    def __post_init__(self) -> None:
        if self.timeout_seconds is not None:
            if isinstance(self.timeout_seconds, bool) or not isinstance(
                self.timeout_seconds, (int, float)
            ):
                _fail("TenantRuntimeConfig.timeout_seconds", "expected a number")
            if not math.isfinite(self.timeout_seconds) or self.timeout_seconds <= 0:
                _fail("TenantRuntimeConfig.timeout_seconds", "must be finite and > 0")
            object.__setattr__(self, "timeout_seconds", float(self.timeout_seconds))
        object.__setattr__(self, "additional_mounts", tuple(self.additional_mounts))
        for item in self.additional_mounts:
            if not isinstance(item, MountRequest):
                _fail("TenantRuntimeConfig.additional_mounts", "items must be MountRequest")

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> TenantRuntimeConfig:
        timeout = payload.get("timeout_seconds", payload.get("timeoutSeconds"))
        raw_mounts = payload.get("additional_mounts", payload.get("additionalMounts", ()))
        if not isinstance(raw_mounts, (list, tuple)):
            _fail("TenantRuntimeConfig.additional_mounts", "expected a list")
        mounts: list[MountRequest] = []
        for index, item in enumerate(raw_mounts):
            if not isinstance(item, Mapping):
                _fail(f"TenantRuntimeConfig.additional_mounts[{index}]", "expected an object")
            mounts.append(MountRequest.from_dict(item))
        return cls(
            timeout_seconds=timeout,  # type: ignore[arg-type]
            additional_mounts=tuple(mounts),
        )


@dataclass(frozen=True, slots=True)
class Tenant:
    """A registered group. Read-only to the sandbox core."""

    tenant_id: str
    name: str
    folder: str
    is_privileged: bool = False
    runtime: TenantRuntimeConfig | None = None

    def __post_init__(self) -> None:
        _as_str(self.tenant_id, "Tenant.tenant_id")
        _as_str(self.name, "Tenant.name")
        validate_folder(self.folder)
        if self.folder == GLOBAL_FOLDER:
            _fail("Tenant.folder", f"{GLOBAL_FOLDER!r} is reserved for shared data")
        _as_bool(self.is_privileged, "Tenant.is_privileged")
        if self.runtime is not None and not isinstance(self.runtime, TenantRuntimeConfig):
            _fail("Tenant.runtime", "must be a TenantRuntimeConfig")

    @property
    def timeout_seconds(self) -> float | None:
        return None if self.runtime is None else self.runtime.timeout_seconds

    @property
    def additional_mounts(self) -> tuple[MountRequest, ...]:
        return () if self.runtime is None else self.runtime.additional_mounts

    @classmethod
    def from_dict(cls, tenant_id: str, payload: Mapping[str, object]) -> Tenant:
        raw_runtime = payload.get("runtime", payload.get("containerConfig"))
        runtime: TenantRuntimeConfig | None = None
        if raw_runtime is not None:
            if not isinstance(raw_runtime, Mapping):
                _fail("Tenant.runtime", "expected an object")
            runtime = TenantRuntimeConfig.from_dict(raw_runtime)
        return cls(
            tenant_id=tenant_id,
            name=_as_str(payload.get("name"), "Tenant.name"),
            folder=validate_folder(payload.get("folder")),
            is_privileged=_as_bool(payload.get("is_privileged", False), "Tenant.is_privileged"),
            runtime=runtime,
        )


@dataclass(frozen=True, slots=True)
class MountMapping:
    """One host directory bound into the sandbox."""

    host_path: Path
    container_path: str
    readonly: bool

    def __post_init__(self) -> None:
        object.__setattr__(self, "host_path", Path(self.host_path))
        if not self.container_path.startswith("/"):
            _fail("MountMapping.container_path", "must be absolute")

    def describe(self, *, include_host: bool = True) -> str:
        suffix = " (ro)" if self.readonly else ""
        if include_host:
            return f"{self.host_path} -> {self.container_path}{suffix}"
        return f"{self.container_path}{suffix}"


@dataclass(frozen=True, slots=True)
class JobInput:
    """The single job blob written to a sandbox's stdin."""

    prompt: str
    group_folder: str
    chat_jid: str
    current_time: str
    is_main: bool
    session_id: str | None = None
    is_scheduled_task: bool = False

    def __post_init__(self) -> None:
        _as_str(self.prompt, "JobInput.prompt", allow_empty=True)
        validate_folder(self.group_folder, "JobInput.group_folder")
        _as_str(self.chat_jid, "JobInput.chat_jid")
        _as_str(self.current_time, "JobInput.current_time")
        _as_bool(self.is_main, "JobInput.is_main")
        _as_optional_str(self.session_id, "JobInput.session_id")
        _as_bool(self.is_scheduled_task, "JobInput.is_scheduled_task")

    def to_payload(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "prompt": self.prompt,
            "groupFolder": self.group_folder,
            "chatJid": self.chat_jid,
            "isMain": self.is_main,
            "currentTime": self.current_time,
        }
        if self.session_id is not None:
            payload["sessionId"] = self.session_id
        if self.is_scheduled_task:
            payload["isScheduledTask"] = True
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), ensure_ascii=False, separators=(",", ":"))


@dataclass(frozen=True, slots=True)
class JobResult:
    """Structured outcome of one invocation."""

    status: JobStatus
    result: str | None = None
    new_session_id: str | None = None
    error: str | None = None
    failure_kind: FailureKind | None = None

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "status", JobStatus(self.status))
        except ValueError:
            _fail("JobResult.status", f"unsupported status {self.status!r}")
        _as_optional_str(self.new_session_id, "JobResult.new_session_id")
        if self.result is not None:
            _as_str(self.result, "JobResult.result", allow_empty=True)
        if self.status is JobStatus.ERROR:
            if self.error is None or not self.error.strip():
                object.__setattr__(self, "error", "sandbox reported an error without a message")
        elif self.failure_kind is not None:
            _fail("JobResult.failure_kind", "only error results carry a failure kind")

    @property
    def ok(self) -> bool:
        return self.status is JobStatus.SUCCESS

    @classmethod
    def success(cls, result: str | None, *, new_session_id: str | None = None) -> JobResult:
        return cls(status=JobStatus.SUCCESS, result=result, new_session_id=new_session_id)

    @classmethod
    def failure(cls, message: str, kind: FailureKind | None = None) -> JobResult:
        return cls(status=JobStatus.ERROR, result=None, error=message, failure_kind=kind)

    @classmethod
    def from_payload(cls, payload: object) -> JobResult:
        """Validate a result object emitted by the sandboxed workload."""

        if not isinstance(payload, Mapping):
            _fail("JobResult", "result must be a JSON object")
        status = payload.get("status")
        if status not in (JobStatus.SUCCESS.value, JobStatus.ERROR.value):
            _fail("JobResult.status", f"expected 'success' or 'error', got {status!r}")
        result = payload.get("result")
        if result is not None and not isinstance(result, str):
            _fail("JobResult.result", "expected string or null")
        error = payload.get("error")
        if error is not None and not isinstance(error, str):
            _fail("JobResult.error", "expected string or null")
        return cls(
            status=JobStatus(status),
            result=result,
            new_session_id=_as_optional_str(
                payload.get("newSessionId"), "JobResult.new_session_id"
            ),
            error=error,
        )

    def to_payload(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {"status": self.status.value, "result": self.result}
        if self.new_session_id is not None:
            payload["newSessionId"] = self.new_session_id
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True, slots=True)
class AllowlistEntry:
    """Operator-maintained host root that tenants may request as an extra mount."""

    path: Path
    allow_read_write: bool = False
    tenants: tuple[str, ...] = ()
    description: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", Path(self.path))
        _as_bool(self.allow_read_write, "AllowlistEntry.allow_read_write")
        object.__setattr__(self, "tenants", tuple(self.tenants))
        for scoped in self.tenants:
            _as_str(scoped, "AllowlistEntry.tenants")

    def admits(self, tenant: Tenant) -> bool:
        if not self.tenants:
            return True
        return tenant.folder in self.tenants or tenant.tenant_id in self.tenants


@dataclass(frozen=True, slots=True)
class TaskSnapshotEntry:
    id: str
    group_folder: str
    prompt: str
    schedule_type: ScheduleType
    schedule_value: str
    status: str
    next_run: str | None = None

    def __post_init__(self) -> None:
        _as_str(self.id, "TaskSnapshotEntry.id")
        validate_folder(self.group_folder, "TaskSnapshotEntry.group_folder")
        try:
            object.__setattr__(self, "schedule_type", ScheduleType(self.schedule_type))
        except ValueError:
            _fail("TaskSnapshotEntry.schedule_type", f"unsupported {self.schedule_type!r}")

    def to_payload(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "groupFolder": self.group_folder,
            "prompt": self.prompt,
            "schedule_type": self.schedule_type.value,
            "schedule_value": self.schedule_value,
            "status": self.status,
            "next_run": self.next_run,
        }


@dataclass(frozen=True, slots=True)
class AvailableTenant:
    """A chat the host can see and could register as a tenant."""

    jid: str
    name: str
    last_activity: str
    is_registered: bool = False

    def to_payload(self) -> dict[str, JSONValue]:
        return {
            "jid": self.jid,
            "name": self.name,
            "lastActivity": self.last_activity,
            "isRegistered": self.is_registered,
        }


@dataclass(frozen=True, slots=True)
class OutboundMessage:
    """A message a sandbox asked the host to deliver."""

    source_folder: str
    chat_jid: str
    text: str


@dataclass(frozen=True, slots=True)
class TaskCommand:
    """A task-scheduling command a sandbox asked the host to apply."""

    source_folder: str
    action: str
    task_id: str | None = None
    group_folder: str | None = None
    prompt: str | None = None
    schedule_type: ScheduleType | None = None
    schedule_value: str | None = None


__all__ = [
    "AllowlistEntry",
    "AvailableTenant",
    "FailureKind",
    "JSONScalar",
    "JSONValue",
    "JobInput",
    "JobResult",
    "JobStatus",
    "MountMapping",
    "MountRequest",
    "OutboundMessage",
    "ScheduleType",
    "TaskCommand",
    "TaskSnapshotEntry",
    "Tenant",
    "TenantRuntimeConfig",
    "validate_folder",
]
