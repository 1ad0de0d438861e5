"""Integration tests for the job submission façade."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections import Counter
from datetime import UTC, datetime
from pathlib import Path

import pytest

from tenant_sandbox.config.loader import RuntimeSettings
from tenant_sandbox.domain.models import (
    AvailableTenant,
    FailureKind,
    JobInput,
    JobResult,
    TaskSnapshotEntry,
    Tenant,
)
from tenant_sandbox.observability.logging import get_correlation_context
from tenant_sandbox.sandbox.runner import SandboxRunner
from tenant_sandbox.sandbox.snapshots import SnapshotWriter
from tenant_sandbox.service import SandboxService, build_job_input

_NOW = datetime(2026, 10, 17, 9, 30, tzinfo=UTC)

MAIN = Tenant("main@g.us", "Main", "main", is_privileged=True)
FAMILY = Tenant("family@g.us", "Family", "family")
WORK = Tenant("work@g.us", "Work", "work")


class _State:
    def list_tasks(self) -> list[TaskSnapshotEntry]:
        return [
            TaskSnapshotEntry("t1", "family", "bins", "cron", "0 19 * * 2", "active"),
            TaskSnapshotEntry("t2", "work", "standup", "cron", "0 9 * * 1-5", "active"),
        ]

    def list_available_tenants(self) -> list[AvailableTenant]:
        return [AvailableTenant("new@g.us", "New chat", "2026-10-17T08:00:00Z")]


class _RecordingRunner:
    """Stands in for ``SandboxRunner`` and tracks overlap."""

    def __init__(self, delay: float = 0.05) -> None:
        self.delay = delay
        self.calls: list[tuple[str, dict[str, str]]] = []
        self.active: Counter[str] = Counter()
        self.max_per_folder: Counter[str] = Counter()
        self.total_active = 0
        self.max_total = 0

    async def run(self, tenant: Tenant, job_input: JobInput) -> JobResult:
        self.calls.append((tenant.folder, get_correlation_context()))
        self.active[tenant.folder] += 1
        self.total_active += 1
        self.max_per_folder[tenant.folder] = max(
            self.max_per_folder[tenant.folder], self.active[tenant.folder]
        )
        self.max_total = max(self.max_total, self.total_active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active[tenant.folder] -= 1
            self.total_active -= 1
        return JobResult.success(f"{tenant.folder}:{job_input.prompt}")


def _settings(root: Path, **overrides: object) -> RuntimeSettings:
    return RuntimeSettings.rooted_at(root, log_to_stdout=False, timezone="UTC", **overrides)


def _service(root: Path, runner: object, **overrides: object) -> SandboxService:
    return SandboxService(
        _settings(root, **overrides),
        state=_State(),
        runner=runner,  # type: ignore[arg-type]
        clock=lambda: _NOW,
    )


@pytest.mark.asyncio
async def test_mismatched_job_is_rejected_before_running(tmp_path: Path) -> None:
    runner = _RecordingRunner()
    service = _service(tmp_path, runner)

    wrong_folder = build_job_input(WORK, "hi", WORK.tenant_id)
    wrong_privilege = JobInput(
        prompt="hi",
        group_folder="family",
        chat_jid=FAMILY.tenant_id,
        current_time=_NOW.isoformat(),
        is_main=True,
    )

    for job in (wrong_folder, wrong_privilege):
        result = await service.submit(FAMILY, job)
        assert result.failure_kind is FailureKind.CONFIGURATION
    assert runner.calls == []


@pytest.mark.asyncio
async def test_snapshots_are_written_with_tenant_visibility(tmp_path: Path) -> None:
    service = _service(tmp_path, _RecordingRunner(delay=0))

    await service.submit(FAMILY, service.build_job_input(FAMILY, "hi", FAMILY.tenant_id))
    await service.submit(MAIN, service.build_job_input(MAIN, "hi", MAIN.tenant_id))

    ipc = tmp_path / "data" / "ipc"
    family_tasks = json.loads((ipc / "family" / "current_tasks.json").read_text("utf-8"))
    main_tasks = json.loads((ipc / "main" / "current_tasks.json").read_text("utf-8"))
    family_groups = json.loads((ipc / "family" / "available_groups.json").read_text("utf-8"))
    main_groups = json.loads((ipc / "main" / "available_groups.json").read_text("utf-8"))

    assert [task["id"] for task in family_tasks] == ["t1"]
    assert [task["id"] for task in main_tasks] == ["t1", "t2"]
    assert family_groups["groups"] == []
    assert [group["jid"] for group in main_groups["groups"]] == ["new@g.us"]


@pytest.mark.asyncio
async def test_same_tenant_runs_are_serialized(tmp_path: Path) -> None:
    runner = _RecordingRunner()
    service = _service(tmp_path, runner, max_concurrent_runs=8)
    jobs = [service.build_job_input(FAMILY, f"job-{i}", FAMILY.tenant_id) for i in range(4)]

    results = await asyncio.gather(*(service.submit(FAMILY, job) for job in jobs))

    assert all(result.ok for result in results)
    assert runner.max_per_folder["family"] == 1
    assert not service.is_busy(FAMILY)


@pytest.mark.asyncio
async def test_global_capacity_bounds_parallel_runs(tmp_path: Path) -> None:
    runner = _RecordingRunner()
    service = _service(tmp_path, runner, max_concurrent_runs=2)
    tenants = [Tenant(f"t{i}@g.us", f"T{i}", f"t{i}") for i in range(5)]

    await asyncio.gather(
        *(service.submit(t, service.build_job_input(t, "go", t.tenant_id)) for t in tenants)
    )

    assert runner.max_total == 2
    assert service.capacity.snapshot() == {"limit": 2, "running": 0, "waiting": 0}


@pytest.mark.asyncio
async def test_saturated_capacity_logs_queued_runs(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    service = _service(tmp_path, _RecordingRunner(), max_concurrent_runs=1)

    with caplog.at_level(logging.INFO, logger="tenant_sandbox.service"):
        jobs = [(t, service.build_job_input(t, "go", t.tenant_id)) for t in (FAMILY, WORK)]
        await asyncio.gather(*(service.submit(t, job) for t, job in jobs))

    queued = [r for r in caplog.records if r.getMessage() == "sandbox run queued"]
    assert len(queued) == 1
    assert queued[0].running == 1  # type: ignore[attr-defined]
    assert queued[0].limit == 1  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_correlation_fields_are_bound_during_run(tmp_path: Path) -> None:
    runner = _RecordingRunner(delay=0)
    service = _service(tmp_path, runner)

    await service.submit(FAMILY, service.build_job_input(FAMILY, "hi", FAMILY.tenant_id))

    ((folder, context),) = runner.calls
    assert folder == "family"
    assert context["tenant"] == "Family"
    assert context["group_folder"] == "family"
    assert context["chat_jid"] == "family@g.us"
    assert len(context["invocation_id"]) == 32
    assert "invocation_id" not in get_correlation_context()


class _FailingChatListWriter(SnapshotWriter):
    def __init__(self, data_dir: Path) -> None:
        super().__init__(data_dir, clock=lambda: _NOW)
        self.fail = False

    def write_available_tenants_snapshot(self, tenant, tenants):  # type: ignore[no-untyped-def]
        if self.fail:
            raise OSError("disk full")
        return super().write_available_tenants_snapshot(tenant, tenants)


@pytest.mark.asyncio
async def test_failed_snapshot_refresh_removes_stale_copies(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    settings = _settings(tmp_path)
    runner = _RecordingRunner(delay=0)
    writer = _FailingChatListWriter(settings.data_dir)
    service = SandboxService(
        settings,
        state=_State(),
        runner=runner,  # type: ignore[arg-type]
        snapshot_writer=writer,
        clock=lambda: _NOW,
    )
    job = service.build_job_input(FAMILY, "hi", FAMILY.tenant_id)
    await service.submit(FAMILY, job)
    snapshot_dir = writer.snapshot_dir(FAMILY)
    assert (snapshot_dir / "available_groups.json").exists()

    writer.fail = True
    with caplog.at_level(logging.WARNING, logger="tenant_sandbox.service"):
        result = await service.submit(FAMILY, job)

    assert result.ok
    assert len(runner.calls) == 2
    assert not (snapshot_dir / "current_tasks.json").exists()
    assert not (snapshot_dir / "available_groups.json").exists()
    (warning,) = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert warning.group_folder == "family"  # type: ignore[attr-defined]
    assert warning.error == "disk full"  # type: ignore[attr-defined]


def test_build_job_input_uses_configured_timezone() -> None:
    job = build_job_input(
        FAMILY,
        "hi",
        FAMILY.tenant_id,
        timezone="Europe/Berlin",
        session_id="s-1",
        is_scheduled_task=True,
        clock=lambda: _NOW,
    )

    assert job.current_time == "2026-10-17T11:30:00+02:00"
    assert job.is_main is False
    assert job.to_payload()["isScheduledTask"] is True
    assert job.to_payload()["sessionId"] == "s-1"


@pytest.mark.asyncio
async def test_end_to_end_with_real_child(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    script = (
        "import json, sys\n"
        "job = json.load(sys.stdin)\n"
        "print(json.dumps({'status': 'success', 'result': job['currentTime']}))\n"
    )
    runner = SandboxRunner(
        settings, command_factory=lambda mounts, name: [sys.executable, "-c", script]
    )
    service = SandboxService(settings, state=_State(), runner=runner, clock=lambda: _NOW)

    result = await service.submit(
        FAMILY, service.build_job_input(FAMILY, "hi", FAMILY.tenant_id)
    )

    assert result.ok
    assert result.result == "2026-10-17T09:30:00+00:00"
