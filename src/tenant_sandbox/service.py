"""
tenant-sandbox — job submission façade

File: src/tenant_sandbox/service.py
Last updated: 2026-10-17

Purpose
- Single entry point for the host: check a job against its tenant, serialize per tenant,
  bound global concurrency, refresh the tenant's snapshots, then run the sandbox.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Protocol
from zoneinfo import ZoneInfo

from tenant_sandbox.config.loader import RuntimeSettings
from tenant_sandbox.domain.models import (
    AvailableTenant,
    FailureKind,
    JobInput,
    JobResult,
    TaskSnapshotEntry,
    Tenant,
)
from tenant_sandbox.observability.logging import correlation_scope
from tenant_sandbox.sandbox.runner import SandboxRunner
from tenant_sandbox.sandbox.snapshots import SnapshotWriter
from tenant_sandbox.utils.concurrency import RunCapacity, TenantLockRegistry

logger = logging.getLogger(__name__)


class StateProvider(Protocol):
    """Read access to the host's durable task and chat state."""

    def list_tasks(self) -> Sequence[TaskSnapshotEntry]: ...

    def list_available_tenants(self) -> Sequence[AvailableTenant]: ...


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def build_job_input(
    tenant: Tenant,
    prompt: str,
    chat_jid: str,
    *,
    timezone: str = "UTC",
    session_id: str | None = None,
    is_scheduled_task: bool = False,
    clock: Callable[[], datetime] = _utc_now,
) -> JobInput:
    """Create the job blob for ``tenant`` with ``current_time`` in ``timezone``."""

    current_time = clock().astimezone(ZoneInfo(timezone)).isoformat()
    return JobInput(
        prompt=prompt,
        group_folder=tenant.folder,
        chat_jid=chat_jid,
        current_time=current_time,
        is_main=tenant.is_privileged,
        session_id=session_id,
        is_scheduled_task=is_scheduled_task,
    )


class SandboxService:
    def __init__(
        self,
        settings: RuntimeSettings,
        *,
        state: StateProvider | None = None,
        runner: SandboxRunner | None = None,
        snapshot_writer: SnapshotWriter | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._settings = settings
        self._state = state
        self._runner = runner or SandboxRunner(settings)
        self._snapshots = snapshot_writer or SnapshotWriter(settings.data_dir, clock=clock)
        self._clock = clock
        self._locks = TenantLockRegistry()
        self._capacity = RunCapacity(settings.max_concurrent_runs)

    @property
    def capacity(self) -> RunCapacity:
        return self._capacity

    def is_busy(self, tenant: Tenant) -> bool:
        return self._locks.is_locked(tenant.folder)

    def build_job_input(
        self,
        tenant: Tenant,
        prompt: str,
        chat_jid: str,
        *,
        session_id: str | None = None,
        is_scheduled_task: bool = False,
    ) -> JobInput:
        return build_job_input(
            tenant,
            prompt,
            chat_jid,
            timezone=self._settings.timezone,
            session_id=session_id,
            is_scheduled_task=is_scheduled_task,
            clock=self._clock,
        )

    async def submit(self, tenant: Tenant, job_input: JobInput) -> JobResult:
        invocation_id = uuid.uuid4().hex
        with correlation_scope(
            invocation_id=invocation_id,
            tenant=tenant.name,
            group_folder=tenant.folder,
            chat_jid=job_input.chat_jid,
        ):
            mismatch = _job_mismatch(tenant, job_input)
            if mismatch is not None:
                logger.error("job rejected", extra={"reason": mismatch})
                return JobResult.failure(mismatch, FailureKind.CONFIGURATION)

            async with self._locks.hold(tenant.folder):
                if self._capacity.is_saturated():
                    logger.info("sandbox run queued", extra=self._capacity.snapshot())
                async with self._capacity.slot():
                    self._write_snapshots(tenant)
                    return await self._runner.run(tenant, job_input)

    def _write_snapshots(self, tenant: Tenant) -> None:
        if self._state is None:
            return
        try:
            self._snapshots.write_tasks_snapshot(tenant, self._state.list_tasks())
            self._snapshots.write_available_tenants_snapshot(
                tenant, self._state.list_available_tenants()
            )
        except OSError as exc:
            logger.warning(
                "unable to write state snapshots; removing stale copies",
                extra={"group_folder": tenant.folder, "error": str(exc)},
            )
            try:
                self._snapshots.discard(tenant)
            except OSError as discard_exc:
                logger.error(
                    "stale state snapshots left in place",
                    extra={"group_folder": tenant.folder, "error": str(discard_exc)},
                )


def _job_mismatch(tenant: Tenant, job_input: JobInput) -> str | None:
    if job_input.group_folder != tenant.folder:
        return (
            f"job targets folder {job_input.group_folder!r} "
            f"but tenant {tenant.name!r} owns {tenant.folder!r}"
        )
    if job_input.is_main != tenant.is_privileged:
        return f"job privilege flag does not match tenant {tenant.name!r}"
    return None


__all__ = ["SandboxService", "StateProvider", "build_job_input"]
