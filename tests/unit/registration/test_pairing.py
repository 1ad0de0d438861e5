"""Unit tests for pairing code issue, verification, and expiry."""

from __future__ import annotations

import itertools
import threading

import pytest

from tenant_sandbox.domain.models import validate_folder
from tenant_sandbox.registration.pairing import (
    PairingCodeStore,
    folder_for_chat_title,
    generate_code,
)


class _Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _codes(*values: str):
    iterator = iter(values)
    return lambda: next(iterator)


def test_generated_codes_are_six_digits() -> None:
    for _ in range(50):
        code = generate_code()
        assert len(code) == 6
        assert code.isdigit()


def test_issue_then_verify_is_one_shot() -> None:
    store = PairingCodeStore(clock=_Clock(), code_factory=_codes("123456"))

    pairing = store.issue("tg:42", "42", "Book Club")

    assert pairing.code == "123456"
    assert store.verify("123456") == pairing
    assert store.verify("123456") is None
    assert store.pending() == ()


def test_live_code_is_reused_for_same_chat() -> None:
    store = PairingCodeStore(clock=_Clock(), code_factory=_codes("111111", "222222"))

    first = store.issue("tg:42", "42", "Book Club")
    second = store.issue("tg:42", "42", "Book Club")
    other = store.issue("tg:7", "7", "Chess")

    assert first is second
    assert other.code == "222222"


def test_colliding_codes_are_redrawn() -> None:
    store = PairingCodeStore(clock=_Clock(), code_factory=_codes("111111", "111111", "333333"))
    store.issue("tg:1", "1", "One")
    assert store.issue("tg:2", "2", "Two").code == "333333"


def test_expired_codes_are_rejected_and_purged() -> None:
    clock = _Clock()
    counter = itertools.count(100000)
    store = PairingCodeStore(ttl_seconds=60, clock=clock, code_factory=lambda: str(next(counter)))
    old = store.issue("tg:1", "1", "One")
    clock.now += 30
    fresh = store.issue("tg:2", "2", "Two")

    clock.now += 45
    assert store.verify(old.code) is None
    assert [p.code for p in store.pending()] == [fresh.code]
    assert fresh.expires_in(clock.now) == pytest.approx(15)

    clock.now += 60
    assert store.purge_expired() == 1
    assert store.pending() == ()


def test_expired_code_is_replaced_on_reissue() -> None:
    clock = _Clock()
    store = PairingCodeStore(ttl_seconds=10, clock=clock, code_factory=_codes("111111", "222222"))
    store.issue("tg:1", "1", "One")
    clock.now += 11
    assert store.issue("tg:1", "1", "One").code == "222222"


def test_invalid_ttl_is_rejected() -> None:
    with pytest.raises(ValueError):
        PairingCodeStore(ttl_seconds=0)


def test_concurrent_issue_yields_one_code_per_chat() -> None:
    store = PairingCodeStore()
    results: list[str] = []
    lock = threading.Lock()

    def worker() -> None:
        code = store.issue("tg:99", "99", "Busy chat").code
        with lock:
            results.append(code)

    threads = [threading.Thread(target=worker) for _ in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(set(results)) == 1
    assert len(store.pending()) == 1


@pytest.mark.parametrize(
    ("title", "expected"),
    [
        ("Book Club", "tg-book-club"),
        ("  Ünïcode!! Chat  ", "tg-n-code-chat"),
        ("A very long chat title that keeps going", "tg-a-very-long-chat-tit"),
        ("!!!", "tg-chat"),
    ],
)
def test_folder_for_chat_title(title: str, expected: str) -> None:
    folder = folder_for_chat_title(title)
    assert folder == expected
    assert validate_folder(folder) == folder
