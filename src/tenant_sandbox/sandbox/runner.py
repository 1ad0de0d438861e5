"""
tenant-sandbox — sandbox process runner

File: src/tenant_sandbox/sandbox/runner.py
Last updated: 2026-10-17

Purpose
- Launch one isolated sandbox per job, feed it the job blob on stdin, and turn what it
  prints into a JobResult.

Behavior
- stdin feeding and both output drains run concurrently under one deadline that also
  covers the exit wait.
- Each stream is capped at ``max_output_bytes``; surplus bytes are discarded while the
  drain continues so the child never blocks on a full pipe.
- Every failure mode (spawn error, timeout, non-zero exit, unparseable output, mount
  collision) becomes an error result; nothing is raised to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from contextlib import suppress
from enum import StrEnum
from typing import TYPE_CHECKING

from tenant_sandbox.constants import ERROR_TAIL_CHARS
from tenant_sandbox.domain.models import FailureKind, JobInput, JobResult, MountMapping, Tenant
from tenant_sandbox.sandbox.env_projector import EnvironmentProjector
from tenant_sandbox.sandbox.errors import MountCollisionError, MountExposureError
from tenant_sandbox.sandbox.mount_planner import MountPlanner
from tenant_sandbox.sandbox.mount_security import MountSecurityValidator
from tenant_sandbox.sandbox.output_extractor import extract_job_result
from tenant_sandbox.sandbox.run_logger import RunLogger, RunRecord
from tenant_sandbox.utils.concurrency import run_with_timeout

if TYPE_CHECKING:
    from tenant_sandbox.config.loader import RuntimeSettings

logger = logging.getLogger(__name__)

CommandFactory = Callable[[Sequence[MountMapping], str], list[str]]
Launcher = Callable[[Sequence[str]], Awaitable[asyncio.subprocess.Process]]

_READ_CHUNK = 64 * 1024
_STOP_TIMEOUT_SECONDS = 15.0


class ContainerRuntime(StrEnum):
    CONTAINER = "container"
    DOCKER = "docker"
    PODMAN = "podman"

    @classmethod
    def _coerce(cls, value: ContainerRuntime | str) -> ContainerRuntime:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            allowed = ", ".join(item.value for item in cls)
            raise ValueError(
                f"unsupported container runtime {value!r}; expected one of {allowed}"
            ) from exc


def build_container_args(
    mounts: Sequence[MountMapping],
    *,
    runtime: ContainerRuntime | str,
    image: str,
    name: str,
) -> list[str]:
    """Full argv for ``<runtime> run``: rw mappings use ``-v``, ro mappings ``--mount``."""

    binary = ContainerRuntime._coerce(runtime).value
    args = [binary, "run", "-i", "--rm", "--name", name]
    for mount in mounts:
        if mount.readonly:
            args.extend(
                [
                    "--mount",
                    f"type=bind,source={mount.host_path},target={mount.container_path},readonly",
                ]
            )
        else:
            args.extend(["-v", f"{mount.host_path}:{mount.container_path}"])
    args.append(image)
    return args


def build_stop_args(runtime: ContainerRuntime | str, name: str) -> list[str]:
    return [ContainerRuntime._coerce(runtime).value, "stop", name]


async def spawn_process(argv: Sequence[str]) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )


class _StreamCapture:
    """Accumulate up to ``limit`` bytes from a stream, discarding (and flagging) the rest."""

    def __init__(self, limit: int, *, echo: Callable[[str], None] | None = None) -> None:
        self._limit = limit
        self._chunks: list[bytes] = []
        self._size = 0
        self._echo = echo
        self._pending = b""
        self.truncated = False

    @property
    def size(self) -> int:
        return self._size

    def feed(self, chunk: bytes) -> None:
        if not chunk:
            return
        if self._echo is not None:
            self._echo_lines(chunk)
        remaining = self._limit - self._size
        if remaining <= 0:
            self.truncated = True
            return
        if len(chunk) > remaining:
            chunk = chunk[:remaining]
            self.truncated = True
        self._chunks.append(chunk)
        self._size += len(chunk)

    async def drain(self, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            self.feed(chunk)
        if self._echo is not None and self._pending:
            self._echo(_decode(self._pending))
            self._pending = b""

    def text(self) -> str:
        return _decode(b"".join(self._chunks))

    def _echo_lines(self, chunk: bytes) -> None:
        echo = self._echo
        if echo is None:
            return
        *lines, self._pending = (self._pending + chunk).split(b"\n")
        for line in lines:
            if line.strip():
                echo(_decode(line.rstrip(b"\r")))
        if len(self._pending) > _READ_CHUNK:
            echo(_decode(self._pending))
            self._pending = b""


class SandboxRunner:
    """Run a tenant's job inside a freshly launched sandbox process."""

    def __init__(
        self,
        settings: RuntimeSettings,
        *,
        planner: MountPlanner | None = None,
        env_projector: EnvironmentProjector | None = None,
        run_logger: RunLogger | None = None,
        command_factory: CommandFactory | None = None,
        launcher: Launcher = spawn_process,
    ) -> None:
        self._settings = settings
        self._planner = planner or MountPlanner(
            settings,
            MountSecurityValidator(
                settings.mount_allowlist,
                protected_roots=(settings.data_dir, settings.groups_dir),
            ),
        )
        self._env_projector = env_projector or EnvironmentProjector(settings)
        self._run_logger = run_logger or RunLogger(
            settings.groups_dir, verbose=settings.verbose_run_logs
        )
        self._stop_on_timeout = command_factory is None
        self._command_factory = command_factory or self._container_command
        self._launcher = launcher

    def timeout_for(self, tenant: Tenant) -> float:
        override = tenant.timeout_seconds
        return override if override is not None else self._settings.timeout_seconds

    async def run(self, tenant: Tenant, job_input: JobInput) -> JobResult:
        started_ns = time.monotonic_ns()
        container_name = f"tenant-sandbox-{tenant.folder}-{time.time_ns() // 1_000_000}"
        timeout = self.timeout_for(tenant)

        try:
            self._env_projector.write()
            mounts = self._planner.plan(tenant)
        except (MountCollisionError, MountExposureError) as exc:
            logger.error(
                "mount plan rejected", extra={"group_folder": tenant.folder, "error": str(exc)}
            )
            result = JobResult.failure(str(exc), FailureKind.CONFIGURATION)
            self._record(tenant, job_input, container_name, (), (), started_ns, result)
            return result
        except OSError as exc:
            logger.error(
                "unable to prepare tenant layout",
                extra={"group_folder": tenant.folder, "error": str(exc)},
            )
            result = JobResult.failure(
                f"Failed to prepare sandbox: {exc}", FailureKind.CONFIGURATION
            )
            self._record(tenant, job_input, container_name, (), (), started_ns, result)
            return result

        argv = self._command_factory(mounts, container_name)
        logger.info(
            "spawning sandbox",
            extra={
                "group_folder": tenant.folder,
                "container_name": container_name,
                "mount_count": len(mounts),
                "privileged": tenant.is_privileged,
                "timeout_seconds": timeout,
            },
        )

        try:
            process = await self._launcher(argv)
        except OSError as exc:
            logger.error(
                "failed to spawn sandbox",
                extra={"group_folder": tenant.folder, "error": str(exc)},
            )
            result = JobResult.failure(f"Failed to start sandbox: {exc}", FailureKind.SPAWN_FAILURE)
            self._record(tenant, job_input, container_name, argv, mounts, started_ns, result)
            return result

        limit = self._settings.max_output_bytes
        stdout = _StreamCapture(limit)
        stderr = _StreamCapture(limit, echo=lambda line: _echo_stderr(tenant.folder, line))
        payload = job_input.to_json().encode("utf-8")

        timed_out = False
        try:
            exit_code: int | None = await run_with_timeout(
                _communicate(process, payload, stdout, stderr), timeout
            )
        except TimeoutError:
            timed_out = True
            await self._terminate(process, container_name)
            exit_code = process.returncode
        except asyncio.CancelledError:
            await self._terminate(process, container_name)
            raise

        if stdout.truncated or stderr.truncated:
            logger.warning(
                "sandbox output truncated",
                extra={
                    "group_folder": tenant.folder,
                    "stdout_truncated": stdout.truncated,
                    "stderr_truncated": stderr.truncated,
                    "limit_bytes": limit,
                },
            )

        stdout_text = stdout.text()
        stderr_text = stderr.text()
        if timed_out:
            result = JobResult.failure(
                f"Sandbox timed out after {timeout:g}s", FailureKind.TIMEOUT
            )
        elif exit_code != 0:
            tail = stderr_text[-ERROR_TAIL_CHARS:]
            result = JobResult.failure(
                f"Sandbox exited with code {exit_code}: {tail}", FailureKind.NON_ZERO_EXIT
            )
        else:
            result = extract_job_result(
                stdout_text,
                start_marker=self._settings.output_start_marker,
                end_marker=self._settings.output_end_marker,
            )

        record = self._record(
            tenant,
            job_input,
            container_name,
            argv,
            mounts,
            started_ns,
            result,
            exit_code=exit_code,
            timed_out=timed_out,
            stdout=stdout,
            stderr=stderr,
        )
        log = logger.info if result.ok else logger.warning
        log(
            "sandbox finished",
            extra={
                "group_folder": tenant.folder,
                "status": result.status.value,
                "failure_kind": result.failure_kind.value if result.failure_kind else None,
                "exit_code": exit_code,
                "duration_ms": record.duration_ms,
            },
        )
        return result

    def _container_command(self, mounts: Sequence[MountMapping], name: str) -> list[str]:
        return build_container_args(
            mounts,
            runtime=self._settings.runtime,
            image=self._settings.image,
            name=name,
        )

    async def _terminate(self, process: asyncio.subprocess.Process, container_name: str) -> None:
        with suppress(ProcessLookupError):
            process.kill()
        await process.wait()
        if self._stop_on_timeout:
            await self._stop_container(container_name)

    async def _stop_container(self, container_name: str) -> None:
        argv = build_stop_args(self._settings.runtime, container_name)
        try:
            stopper = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            logger.warning(
                "unable to stop timed out container",
                extra={"container_name": container_name, "error": str(exc)},
            )
            return
        try:
            await run_with_timeout(stopper.wait(), _STOP_TIMEOUT_SECONDS)
        except TimeoutError:
            with suppress(ProcessLookupError):
                stopper.kill()
            await stopper.wait()
            logger.warning("container stop timed out", extra={"container_name": container_name})

    def _record(
        self,
        tenant: Tenant,
        job_input: JobInput,
        container_name: str,
        argv: Sequence[str],
        mounts: Sequence[MountMapping],
        started_ns: int,
        result: JobResult,
        *,
        exit_code: int | None = None,
        timed_out: bool = False,
        stdout: _StreamCapture | None = None,
        stderr: _StreamCapture | None = None,
    ) -> RunRecord:
        record = RunRecord(
            tenant_name=tenant.name,
            group_folder=tenant.folder,
            job_input=job_input,
            container_name=container_name,
            args=tuple(argv),
            mounts=tuple(mounts),
            duration_ms=_elapsed_ms(started_ns),
            exit_code=exit_code,
            timed_out=timed_out,
            stdout=stdout.text() if stdout is not None else "",
            stderr=stderr.text() if stderr is not None else "",
            stdout_truncated=stdout.truncated if stdout is not None else False,
            stderr_truncated=stderr.truncated if stderr is not None else False,
            result=result,
        )
        self._run_logger.write(record)
        return record


async def _communicate(
    process: asyncio.subprocess.Process,
    payload: bytes,
    stdout: _StreamCapture,
    stderr: _StreamCapture,
) -> int:
    await asyncio.gather(
        _feed_stdin(process.stdin, payload),
        stdout.drain(process.stdout),
        stderr.drain(process.stderr),
    )
    return await process.wait()


async def _feed_stdin(stream: asyncio.StreamWriter | None, payload: bytes) -> None:
    if stream is None:
        return
    # The child may exit without reading its input; the exit code reports that.
    with suppress(BrokenPipeError, ConnectionResetError):
        stream.write(payload)
        await stream.drain()
    stream.close()
    with suppress(BrokenPipeError, ConnectionResetError):
        await stream.wait_closed()


def _echo_stderr(group_folder: str, line: str) -> None:
    logger.debug("sandbox stderr", extra={"group_folder": group_folder, "line": line})


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


def _elapsed_ms(started_ns: int) -> int:
    delta_ns = time.monotonic_ns() - started_ns
    if delta_ns < 0:
        return 0
    return delta_ns // 1_000_000


__all__ = [
    "CommandFactory",
    "ContainerRuntime",
    "Launcher",
    "SandboxRunner",
    "build_container_args",
    "build_stop_args",
    "spawn_process",
]
