"""
tenant-sandbox — integration tests for the sandbox runner

File: tests/integration/test_sandbox_runner.py
Last updated: 2026-10-17

Purpose
- Drive ``SandboxRunner`` end to end against real child processes. The container runtime is
  replaced by ``sys.executable -c <script>`` so no container engine is needed.

What this test file should cover
- stdin job delivery and delimited result extraction.
- Timeout kill, non-zero exit, spawn failure, and output truncation.
- One run log per invocation, including failures.
"""

from __future__ import annotations

import logging
import os
import sys
import textwrap
from collections.abc import Sequence
from pathlib import Path

import pytest
import yaml

from tenant_sandbox.config.loader import RuntimeSettings
from tenant_sandbox.domain.models import (
    FailureKind,
    JobInput,
    JobStatus,
    MountMapping,
    MountRequest,
    Tenant,
    TenantRuntimeConfig,
)
from tenant_sandbox.sandbox.runner import SandboxRunner

ECHO_JOB = textwrap.dedent(
    """
    import json, sys
    job = json.load(sys.stdin)
    print("warming up", flush=True)
    print("starting tools", file=sys.stderr, flush=True)
    print("---TENANT_SANDBOX_OUTPUT_START---")
    print(json.dumps({
        "status": "success",
        "result": job["groupFolder"] + ":" + job["prompt"],
        "newSessionId": "s-1",
    }))
    print("---TENANT_SANDBOX_OUTPUT_END---")
    """
)


def _settings(root: Path, **overrides: object) -> RuntimeSettings:
    return RuntimeSettings.rooted_at(root, log_to_stdout=False, timezone="UTC", **overrides)


def _python(script: str):
    def factory(mounts: Sequence[MountMapping], name: str) -> list[str]:
        return [sys.executable, "-c", script]

    return factory


def _tenant(folder: str = "family", *, timeout: float | None = None, mounts=()) -> Tenant:
    return Tenant(
        tenant_id=f"{folder}@g.us",
        name=folder.title(),
        folder=folder,
        runtime=TenantRuntimeConfig(timeout_seconds=timeout, additional_mounts=tuple(mounts)),
    )


def _job(tenant: Tenant, prompt: str = "hello") -> JobInput:
    return JobInput(
        prompt=prompt,
        group_folder=tenant.folder,
        chat_jid=tenant.tenant_id,
        current_time="2026-10-17T09:30:00+00:00",
        is_main=tenant.is_privileged,
    )


def _run_logs(settings: RuntimeSettings, folder: str) -> list[Path]:
    return sorted((settings.groups_dir / folder / "logs").glob("run-*.log"))


@pytest.mark.asyncio
async def test_job_is_fed_on_stdin_and_result_extracted(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    runner = SandboxRunner(settings, command_factory=_python(ECHO_JOB))
    tenant = _tenant()

    result = await runner.run(tenant, _job(tenant, "what's up"))

    assert result.status is JobStatus.SUCCESS
    assert result.result == "family:what's up"
    assert result.new_session_id == "s-1"
    assert len(_run_logs(settings, "family")) == 1
    assert (settings.data_dir / "env" / "env").read_text(encoding="utf-8") == "TZ=UTC\n"


@pytest.mark.asyncio
async def test_timeout_kills_the_process(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    pid_file = tmp_path / "child.pid"
    script = textwrap.dedent(
        f"""
        import os, time
        with open({str(pid_file)!r}, "w") as handle:
            handle.write(str(os.getpid()))
        time.sleep(60)
        """
    )
    runner = SandboxRunner(settings, command_factory=_python(script))
    tenant = _tenant(timeout=1.5)

    result = await runner.run(tenant, _job(tenant))

    assert result.status is JobStatus.ERROR
    assert result.failure_kind is FailureKind.TIMEOUT
    assert result.error == "Sandbox timed out after 1.5s"
    pid = int(pid_file.read_text(encoding="utf-8"))
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
    (log_path,) = _run_logs(settings, "family")
    assert "Timed Out: True" in log_path.read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_non_zero_exit_reports_code_and_stderr_tail(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    settings = _settings(tmp_path)
    script = "import sys\nprint('boom: model unavailable', file=sys.stderr)\nsys.exit(3)\n"
    runner = SandboxRunner(settings, command_factory=_python(script))
    tenant = _tenant()

    with caplog.at_level(logging.DEBUG, logger="tenant_sandbox.sandbox.runner"):
        result = await runner.run(tenant, _job(tenant))

    assert result.failure_kind is FailureKind.NON_ZERO_EXIT
    assert result.error is not None
    assert result.error.startswith("Sandbox exited with code 3:")
    assert "boom: model unavailable" in result.error
    echoed = [r for r in caplog.records if r.getMessage() == "sandbox stderr"]
    assert [r.line for r in echoed] == ["boom: model unavailable"]  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_unparseable_output_is_an_error_result(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    runner = SandboxRunner(settings, command_factory=_python("print('all done, no json')"))
    tenant = _tenant()

    result = await runner.run(tenant, _job(tenant))

    assert result.failure_kind is FailureKind.OUTPUT_PARSE
    assert "all done, no json" in (result.error or "")


@pytest.mark.asyncio
async def test_deeply_nested_output_is_an_error_result(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    script = "import sys\nsys.stdout.write('[' * 200_000)\n"
    runner = SandboxRunner(settings, command_factory=_python(script))
    tenant = _tenant(timeout=20)

    result = await runner.run(tenant, _job(tenant))

    assert result.status is JobStatus.ERROR
    assert result.failure_kind is FailureKind.OUTPUT_PARSE
    assert len(_run_logs(settings, "family")) == 1


@pytest.mark.asyncio
async def test_output_beyond_cap_is_truncated_but_drained(tmp_path: Path) -> None:
    settings = _settings(tmp_path, max_output_bytes=1024)
    script = textwrap.dedent(
        """
        import json, sys
        sys.stdout.write(json.dumps({"status": "success", "result": "early"}) + "\\n")
        sys.stdout.write("x" * 200_000)
        sys.stderr.write("y" * 200_000)
        """
    )
    runner = SandboxRunner(settings, command_factory=_python(script))
    tenant = _tenant(timeout=20)

    result = await runner.run(tenant, _job(tenant))

    assert result.failure_kind is FailureKind.OUTPUT_PARSE
    (log_path,) = _run_logs(settings, "family")
    text = log_path.read_text(encoding="utf-8")
    assert "Stdout Truncated: True" in text
    assert "Stderr Truncated: True" in text


@pytest.mark.asyncio
async def test_child_ignoring_stdin_still_succeeds(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    script = 'print(\'{"status": "success", "result": null}\')'
    runner = SandboxRunner(settings, command_factory=_python(script))
    tenant = _tenant()

    result = await runner.run(tenant, _job(tenant, "x" * 500_000))

    assert result.ok
    assert result.result is None


@pytest.mark.asyncio
async def test_spawn_failure_is_reported_not_raised(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    missing = str(tmp_path / "no-such-runtime")
    runner = SandboxRunner(settings, command_factory=lambda mounts, name: [missing, "run"])
    tenant = _tenant()

    result = await runner.run(tenant, _job(tenant))

    assert result.failure_kind is FailureKind.SPAWN_FAILURE
    assert (result.error or "").startswith("Failed to start sandbox:")
    assert len(_run_logs(settings, "family")) == 1


@pytest.mark.asyncio
async def test_extra_mount_collision_is_a_configuration_error(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    first = tmp_path / "shared" / "a" / "docs"
    second = tmp_path / "shared" / "b" / "docs"
    first.mkdir(parents=True)
    second.mkdir(parents=True)
    settings.mount_allowlist.parent.mkdir(parents=True)
    settings.mount_allowlist.write_text(
        yaml.safe_dump({"allowed_roots": [{"path": str(tmp_path / "shared")}]}),
        encoding="utf-8",
    )
    runner = SandboxRunner(settings, command_factory=_python(ECHO_JOB))
    tenant = _tenant(mounts=(MountRequest(str(first)), MountRequest(str(second))))

    result = await runner.run(tenant, _job(tenant))

    assert result.failure_kind is FailureKind.CONFIGURATION
    assert "/workspace/extra/docs" in (result.error or "")
    assert len(_run_logs(settings, "family")) == 1


@pytest.mark.asyncio
async def test_writable_project_root_over_allowlist_is_a_configuration_error(
    tmp_path: Path,
) -> None:
    settings = _settings(tmp_path, project_root=tmp_path)
    runner = SandboxRunner(settings, command_factory=_python(ECHO_JOB))
    tenant = Tenant(tenant_id="main@g.us", name="Main", folder="main", is_privileged=True)

    result = await runner.run(tenant, _job(tenant))

    assert result.failure_kind is FailureKind.CONFIGURATION
    assert "mount allowlist" in (result.error or "")
    assert len(_run_logs(settings, "main")) == 1


def test_tenant_timeout_overrides_default(tmp_path: Path) -> None:
    runner = SandboxRunner(_settings(tmp_path, timeout_seconds=42.0))
    assert runner.timeout_for(_tenant()) == 42.0
    assert runner.timeout_for(_tenant(timeout=5)) == 5.0
