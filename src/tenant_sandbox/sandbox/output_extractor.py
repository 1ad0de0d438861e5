"""Locate and validate the structured result in sandbox stdout."""

from __future__ import annotations

import json

from tenant_sandbox.constants import ERROR_TAIL_CHARS, OUTPUT_END_MARKER, OUTPUT_START_MARKER
from tenant_sandbox.domain.models import FailureKind, JobResult


def select_candidate(stdout: str, *, start_marker: str, end_marker: str) -> str:
    """Return the text that should hold the result object.

    The text strictly between the first start marker and the next end marker wins;
    without a well-ordered marker pair the last non-blank line is used.
    """

    start = stdout.find(start_marker)
    if start != -1:
        body_start = start + len(start_marker)
        end = stdout.find(end_marker, body_start)
        if end != -1:
            return stdout[body_start:end].strip()

    for line in reversed(stdout.strip().splitlines()):
        if line.strip():
            return line.strip()
    return ""


def extract_job_result(
    stdout: str,
    *,
    start_marker: str = OUTPUT_START_MARKER,
    end_marker: str = OUTPUT_END_MARKER,
) -> JobResult:
    candidate = select_candidate(stdout, start_marker=start_marker, end_marker=end_marker)
    if not candidate:
        return _parse_failure("sandbox produced no output", stdout)

    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError as exc:
        return _parse_failure(f"sandbox output is not valid JSON ({exc.msg})", stdout)
    except RecursionError:
        return _parse_failure("sandbox output is nested too deeply", stdout)

    try:
        return JobResult.from_payload(payload)
    except ValueError as exc:
        return _parse_failure(f"sandbox output is not a valid result ({exc})", stdout)


def _parse_failure(reason: str, stdout: str) -> JobResult:
    tail = stdout.strip()[-ERROR_TAIL_CHARS:]
    message = f"Failed to parse sandbox output: {reason}"
    if tail:
        message = f"{message}; output tail: {tail!r}"
    return JobResult.failure(message, FailureKind.OUTPUT_PARSE)


__all__ = ["extract_job_result", "select_candidate"]
