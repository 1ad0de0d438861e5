"""Short-lived pairing codes used to register a new chat as a tenant.

A chat asks for a code; the operator confirms it from the privileged tenant; the code
is then consumed. Codes expire after ``ttl_seconds``.
"""

from __future__ import annotations

import logging
import re
import secrets
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Final

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS: Final[float] = 3600.0
_CODE_DIGITS: Final[int] = 6
_SLUG_RE: Final[re.Pattern[str]] = re.compile(r"[^a-z0-9]+")
_SLUG_MAX: Final[int] = 20


def generate_code() -> str:
    return f"{secrets.randbelow(10**_CODE_DIGITS):0{_CODE_DIGITS}d}"


def folder_for_chat_title(title: str, prefix: str = "tg-") -> str:
    """Derive a tenant folder such as ``tg-family-chat`` from a chat title."""

    slug = _SLUG_RE.sub("-", title.lower())[:_SLUG_MAX].strip("-")
    return f"{prefix}{slug or 'chat'}"


@dataclass(frozen=True, slots=True)
class PendingPairing:
    code: str
    jid: str
    chat_id: str
    chat_title: str
    expires_at: float

    def expires_in(self, now: float) -> float:
        return max(0.0, self.expires_at - now)

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now


class PairingCodeStore:
    """In-memory pending pairings keyed by code; safe to share across threads."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.time,
        code_factory: Callable[[], str] = generate_code,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self._ttl = ttl_seconds
        self._clock = clock
        self._code_factory = code_factory
        self._pending: dict[str, PendingPairing] = {}
        self._lock = threading.Lock()

    def issue(self, jid: str, chat_id: str, chat_title: str) -> PendingPairing:
        """Return the live code for ``jid`` or mint a new one."""

        with self._lock:
            now = self._clock()
            self._purge_locked(now)
            for pairing in self._pending.values():
                if pairing.jid == jid:
                    return pairing

            code = self._code_factory()
            while code in self._pending:
                code = self._code_factory()
            pairing = PendingPairing(
                code=code,
                jid=jid,
                chat_id=chat_id,
                chat_title=chat_title,
                expires_at=now + self._ttl,
            )
            self._pending[code] = pairing
        logger.info("pairing code issued", extra={"chat_jid": jid, "chat_title": chat_title})
        return pairing

    def verify(self, code: str) -> PendingPairing | None:
        """Consume ``code``; unknown and expired codes yield ``None``."""

        with self._lock:
            now = self._clock()
            pairing = self._pending.pop(code.strip(), None)
            self._purge_locked(now)
        if pairing is None or pairing.is_expired(now):
            logger.info("pairing code rejected")
            return None
        logger.info("pairing code verified", extra={"chat_jid": pairing.jid})
        return pairing

    def pending(self) -> tuple[PendingPairing, ...]:
        with self._lock:
            self._purge_locked(self._clock())
            return tuple(self._pending.values())

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked(self._clock())

    def _purge_locked(self, now: float) -> int:
        expired = [code for code, pairing in self._pending.items() if pairing.is_expired(now)]
        for code in expired:
            del self._pending[code]
        return len(expired)


__all__ = [
    "DEFAULT_TTL_SECONDS",
    "PairingCodeStore",
    "PendingPairing",
    "folder_for_chat_title",
    "generate_code",
]
