"""Unit tests for locating and validating the sandbox result object."""

from __future__ import annotations

import json

from hypothesis import given
from hypothesis import strategies as st

from tenant_sandbox.domain.models import FailureKind, JobStatus
from tenant_sandbox.sandbox.output_extractor import extract_job_result, select_candidate

START = "---START---"
END = "---END---"


def test_delimited_result_is_extracted_from_noise() -> None:
    stdout = f'noise\n{START}\n{{"status":"success","result":"ok"}}\n{END}\nmore noise'

    result = extract_job_result(stdout, start_marker=START, end_marker=END)

    assert result.status is JobStatus.SUCCESS
    assert result.result == "ok"
    assert result.failure_kind is None


def test_last_non_blank_line_is_used_without_markers() -> None:
    stdout = 'booting\nwarming cache\n{"status":"success","result":"x"}\n\n   \n'

    result = extract_job_result(stdout, start_marker=START, end_marker=END)

    assert result.ok
    assert result.result == "x"


def test_end_marker_before_start_falls_back_to_last_line() -> None:
    stdout = (
        f'{END}\n{{"status":"error","error":"wrong"}}\n'
        f'{START}\n{{"status":"success","result":"tail"}}'
    )

    assert select_candidate(stdout, start_marker=START, end_marker=END) == (
        '{"status":"success","result":"tail"}'
    )


def test_session_id_and_error_are_carried_through() -> None:
    stdout = json.dumps(
        {"status": "error", "result": None, "error": "tool crashed", "newSessionId": "s-2"}
    )

    result = extract_job_result(stdout, start_marker=START, end_marker=END)

    assert result.status is JobStatus.ERROR
    assert result.error == "tool crashed"
    assert result.new_session_id == "s-2"
    assert result.failure_kind is None


def test_default_markers_are_recognised() -> None:
    stdout = (
        "---TENANT_SANDBOX_OUTPUT_START---\n"
        '{"status":"success","result":"hi"}\n'
        "---TENANT_SANDBOX_OUTPUT_END---\n"
    )
    assert extract_job_result(stdout).result == "hi"


def test_invalid_json_becomes_parse_failure_with_tail() -> None:
    stdout = "x" * 500 + "\nnot json at all"

    result = extract_job_result(stdout, start_marker=START, end_marker=END)

    assert result.status is JobStatus.ERROR
    assert result.failure_kind is FailureKind.OUTPUT_PARSE
    assert result.error is not None
    assert "not valid JSON" in result.error
    assert "not json at all" in result.error
    assert "x" * 300 not in result.error


def test_wrong_shape_becomes_parse_failure() -> None:
    for stdout in ('["status","success"]', '{"status":"done"}', '{"status":"success","result":3}'):
        result = extract_job_result(stdout, start_marker=START, end_marker=END)
        assert result.failure_kind is FailureKind.OUTPUT_PARSE, stdout
        assert result.error


def test_empty_output_becomes_parse_failure() -> None:
    result = extract_job_result("   \n", start_marker=START, end_marker=END)
    assert result.failure_kind is FailureKind.OUTPUT_PARSE
    assert result.error == "Failed to parse sandbox output: sandbox produced no output"


def test_deeply_nested_candidate_becomes_parse_failure() -> None:
    for stdout in ("[" * 200_000, f"{START}\n" + '{"a":' * 100_000 + f"\n{END}"):
        result = extract_job_result(stdout, start_marker=START, end_marker=END)
        assert result.status is JobStatus.ERROR
        assert result.failure_kind is FailureKind.OUTPUT_PARSE
        assert result.error is not None
        assert "nested too deeply" in result.error


@given(st.text(max_size=400))
def test_arbitrary_output_never_raises(stdout: str) -> None:
    result = extract_job_result(stdout, start_marker=START, end_marker=END)
    if result.status is JobStatus.ERROR:
        assert result.error
