"""Human-readable per-invocation run logs under ``<groups>/<folder>/logs/``."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from tenant_sandbox.constants import LOG_TAIL_CHARS, LOGS_DIR
from tenant_sandbox.domain.models import JobInput, JobResult, MountMapping
from tenant_sandbox.observability.logging import redact_text
from tenant_sandbox.utils.fs import ensure_directory

logger = logging.getLogger(__name__)

_RULE: Final[str] = "=" * 24


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True, slots=True)
class RunRecord:
    """Everything worth keeping about one finished invocation."""

    tenant_name: str
    group_folder: str
    job_input: JobInput
    container_name: str
    args: tuple[str, ...]
    mounts: tuple[MountMapping, ...]
    duration_ms: int
    exit_code: int | None
    timed_out: bool
    stdout: str
    stderr: str
    stdout_truncated: bool
    stderr_truncated: bool
    result: JobResult

    @property
    def failed(self) -> bool:
        return not self.result.ok


class RunLogger:
    """Write one ``run-<timestamp>.log`` per invocation; write errors never propagate."""

    def __init__(
        self,
        groups_dir: Path,
        *,
        verbose: bool = False,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._groups_dir = groups_dir
        self._verbose = verbose
        self._clock = clock

    def log_path_for(self, group_folder: str, when: datetime) -> Path:
        stamp = when.astimezone(UTC).strftime("%Y-%m-%dT%H-%M-%S-%f")[:-3] + "Z"
        return self._groups_dir / group_folder / LOGS_DIR / f"run-{stamp}.log"

    def render(self, record: RunRecord, when: datetime) -> str:
        lines = [
            f"{_RULE} Sandbox Run Log {_RULE}",
            f"Timestamp: {when.isoformat()}",
            f"Tenant: {record.tenant_name}",
            f"Folder: {record.group_folder}",
            f"Privileged: {record.job_input.is_main}",
            f"Container: {record.container_name}",
            f"Duration: {record.duration_ms}ms",
            f"Exit Code: {record.exit_code if record.exit_code is not None else 'n/a'}",
            f"Timed Out: {record.timed_out}",
            f"Stdout Truncated: {record.stdout_truncated}",
            f"Stderr Truncated: {record.stderr_truncated}",
            f"Status: {record.result.status.value}",
        ]
        if record.result.failure_kind is not None:
            lines.append(f"Failure Kind: {record.result.failure_kind.value}")
        if record.result.error:
            lines.append(f"Error: {record.result.error}")
        lines.append("")

        if self._verbose:
            lines.extend(self._verbose_sections(record))
        else:
            lines.extend(self._summary_sections(record))
        return redact_text("\n".join(lines)) + "\n"

    def write(self, record: RunRecord) -> Path | None:
        when = self._clock()
        path = self.log_path_for(record.group_folder, when)
        try:
            ensure_directory(path.parent)
            path = _unique(path)
            path.write_text(self.render(record, when), encoding="utf-8")
        except OSError as exc:
            logger.warning(
                "unable to write run log",
                extra={"group_folder": record.group_folder, "path": str(path), "error": str(exc)},
            )
            return None
        return path

    @staticmethod
    def _verbose_sections(record: RunRecord) -> list[str]:
        return [
            "=== Input ===",
            record.job_input.to_json(),
            "",
            "=== Container Args ===",
            " ".join(record.args),
            "",
            "=== Mounts ===",
            *_mount_lines(record.mounts, include_host=True),
            "",
            f"=== Stderr{' (TRUNCATED)' if record.stderr_truncated else ''} ===",
            record.stderr,
            "",
            f"=== Stdout{' (TRUNCATED)' if record.stdout_truncated else ''} ===",
            record.stdout,
        ]

    @staticmethod
    def _summary_sections(record: RunRecord) -> list[str]:
        job = record.job_input
        lines = [
            "=== Input Summary ===",
            f"Prompt length: {len(job.prompt)} chars",
            f"Session ID: {job.session_id or 'new'}",
            f"Scheduled: {job.is_scheduled_task}",
            "",
            "=== Mounts ===",
            *_mount_lines(record.mounts, include_host=False),
        ]
        if record.failed and record.stderr:
            lines.extend(["", "=== Stderr (tail) ===", record.stderr[-LOG_TAIL_CHARS:]])
        return lines


def _mount_lines(mounts: Sequence[MountMapping], *, include_host: bool) -> list[str]:
    return [mount.describe(include_host=include_host) for mount in mounts]


def _unique(path: Path) -> Path:
    if not path.exists():
        return path
    counter = 1
    while True:
        candidate = path.with_name(f"{path.stem}-{counter}{path.suffix}")
        if not candidate.exists():
            return candidate
        counter += 1


__all__ = ["RunLogger", "RunRecord"]
