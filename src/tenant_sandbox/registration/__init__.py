"""Chat registration helpers."""

from tenant_sandbox.registration.pairing import (
    DEFAULT_TTL_SECONDS,
    PairingCodeStore,
    PendingPairing,
    folder_for_chat_title,
    generate_code,
)

__all__ = [
    "DEFAULT_TTL_SECONDS",
    "PairingCodeStore",
    "PendingPairing",
    "folder_for_chat_title",
    "generate_code",
]
