"""
tenant-sandbox config package public API.

File: src/tenant_sandbox/config/__init__.py
Last updated: 2026-10-17

Purpose
- Export config loading/validation entrypoints, ``RuntimeSettings``, and public error types.

Functional requirements
- Support loading from ``sandbox.toml`` + ``TENANT_SANDBOX_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from tenant_sandbox.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    RuntimeSettings,
    detect_host_timezone,
    dump_effective_config,
    load_config,
    load_settings,
    normalize_paths,
    settings_from_config,
)
from tenant_sandbox.config.schema import (
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)

__all__ = [
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PATH_FIELDS",
    "RuntimeSettings",
    "assert_valid_config",
    "default_config",
    "detect_host_timezone",
    "dump_effective_config",
    "load_config",
    "load_settings",
    "merge_config",
    "normalize_paths",
    "redact_config",
    "settings_from_config",
    "validate_config",
]
