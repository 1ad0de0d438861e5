"""Regression tests for concurrency utility edge cases."""

from __future__ import annotations

import asyncio
import gc
import sys
import warnings
from contextlib import contextmanager
from types import SimpleNamespace
from typing import TYPE_CHECKING

import pytest

from tenant_sandbox.utils.concurrency import RunCapacity, TenantLockRegistry, run_with_timeout

if TYPE_CHECKING:
    from collections.abc import Iterator


@contextmanager
def _capture_unraisable() -> Iterator[list[SimpleNamespace]]:
    captured: list[SimpleNamespace] = []
    original = sys.unraisablehook

    def hook(unraisable: object) -> None:
        captured.append(
            SimpleNamespace(
                exc_type=getattr(unraisable, "exc_type", None),
                err_msg=getattr(unraisable, "err_msg", None),
            )
        )

    sys.unraisablehook = hook
    try:
        yield captured
    finally:
        sys.unraisablehook = original


async def _slow() -> int:
    await asyncio.sleep(0.01)
    return 1


async def _slower() -> int:
    await asyncio.sleep(0.05)
    return 1


async def test_run_with_timeout_returns_result() -> None:
    assert await run_with_timeout(_slow(), 1.0) == 1


async def test_run_with_timeout_timeout_path_does_not_leak_coroutine() -> None:
    with _capture_unraisable() as leaked, warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        with pytest.raises(TimeoutError):
            await run_with_timeout(_slower(), 0.001)
        gc.collect()

    assert leaked == []


async def test_run_with_timeout_rejects_non_positive_timeout_without_leak() -> None:
    with _capture_unraisable() as leaked, warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        with pytest.raises(ValueError):
            await run_with_timeout(_slow(), 0)
        gc.collect()

    assert leaked == []


async def test_run_with_timeout_cancels_inner_work_on_timeout() -> None:
    cancelled = asyncio.Event()

    async def worker() -> None:
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    with pytest.raises(TimeoutError):
        await run_with_timeout(worker(), 0.01)
    assert cancelled.is_set()


async def test_run_capacity_counts_running_and_waiting() -> None:
    capacity = RunCapacity(1)
    entered = asyncio.Event()
    release = asyncio.Event()

    async def holder() -> None:
        async with capacity.slot():
            entered.set()
            await release.wait()

    async def queued() -> None:
        async with capacity.slot():
            assert capacity.running == 1

    first = asyncio.create_task(holder())
    await entered.wait()
    second = asyncio.create_task(queued())
    await asyncio.sleep(0)

    assert capacity.is_saturated()
    assert capacity.snapshot() == {"limit": 1, "running": 1, "waiting": 1}

    release.set()
    await asyncio.gather(first, second)
    assert capacity.snapshot() == {"limit": 1, "running": 0, "waiting": 0}


async def test_cancelled_waiter_leaves_no_trace() -> None:
    capacity = RunCapacity(1)

    async def wait_for_slot() -> None:
        async with capacity.slot():
            pass

    async with capacity.slot():
        waiter = asyncio.create_task(wait_for_slot())
        await asyncio.sleep(0)
        assert capacity.waiting == 1
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert capacity.waiting == 0
    assert capacity.snapshot() == {"limit": 1, "running": 0, "waiting": 0}


def test_run_capacity_rejects_non_positive_limit() -> None:
    with pytest.raises(ValueError):
        RunCapacity(0)


async def test_tenant_lock_registry_serializes_same_key_only() -> None:
    registry = TenantLockRegistry()
    order: list[str] = []

    async def job(key: str, label: str, delay: float) -> None:
        async with registry.hold(key):
            order.append(f"{label}-start")
            await asyncio.sleep(delay)
            order.append(f"{label}-end")

    await asyncio.gather(
        job("family", "a", 0.03),
        job("family", "b", 0.0),
        job("work", "c", 0.0),
    )

    assert order.index("a-end") < order.index("b-start")
    assert order.index("c-end") < order.index("a-end")
    assert not registry.is_locked("family")


async def test_tenant_lock_registry_reports_held_lock() -> None:
    registry = TenantLockRegistry()
    async with registry.hold("family"):
        assert registry.is_locked("family")
        assert not registry.is_locked("work")
    assert not registry.is_locked("family")
