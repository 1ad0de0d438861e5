"""Public observability primitives: structured logging and correlation scopes."""

from tenant_sandbox.observability.logging import (
    REDACTED,
    LoggingConfig,
    LoggingHandle,
    LogRedactor,
    correlation_scope,
    flush_logging,
    get_active_logging_handle,
    get_correlation_context,
    redact_fields,
    redact_text,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
    "REDACTED",
    "LogRedactor",
    "LoggingConfig",
    "LoggingHandle",
    "correlation_scope",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "redact_fields",
    "redact_text",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
