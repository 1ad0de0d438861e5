"""
tenant-sandbox — configuration schema and validation.

File: src/tenant_sandbox/config/schema.py
Last updated: 2026-10-17

Purpose
- Built-in defaults for `sandbox.toml` and the rules every merged config must satisfy.

Behavior
- Validation never stops at the first problem: every issue is reported with its dotted
  path, in a stable order.
- Secret values may not live in the config file. A secret-looking key is reported as an
  embedded secret rather than an unknown field; secrets belong in the operator env file.
- `redact_config` masks secret-looking keys before a config is dumped or logged.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict, cast
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from tenant_sandbox.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_ALLOWED_SECRETS,
    DEFAULT_SESSION_CONTAINER_PATH,
    OUTPUT_END_MARKER,
    OUTPUT_START_MARKER,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
CONTAINER_RUNTIMES: Final[tuple[str, ...]] = ("container", "docker", "podman")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_WORD_BREAK = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|[^A-Za-z0-9]+")
# Matched against snake_cased keys; "allowed_secrets" and "redact_secrets" stay clear.
_SECRET_FIELD = re.compile(
    r"(?:^|_)(?:secret|token|passw(?:or)?d|api_?key|credentials?|private_key)(?:_|$)"
)

# Resolved against the config file directory by the loader.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "project_root"),
    ("paths", "groups_dir"),
    ("paths", "data_dir"),
    ("paths", "mount_allowlist"),
    ("paths", "env_file"),
    ("observability", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class PathsConfig(TypedDict):
    project_root: str
    groups_dir: str
    data_dir: str
    mount_allowlist: str
    env_file: str


class ContainerConfig(TypedDict):
    runtime: Literal["container", "docker", "podman"]
    image: str
    timeout_seconds: float
    max_output_bytes: int
    session_container_path: str
    output_start_marker: str
    output_end_marker: str


class EnvironmentConfig(TypedDict):
    allowed_secrets: list[str]
    timezone: str


class ConcurrencyConfig(TypedDict):
    max_concurrent_runs: int


class PairingConfig(TypedDict):
    code_ttl_seconds: float


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    redact_secrets: bool
    log_to_stdout: bool


class SandboxConfig(TypedDict):
    meta: MetaConfig
    paths: PathsConfig
    container: ContainerConfig
    environment: EnvironmentConfig
    concurrency: ConcurrencyConfig
    pairing: PairingConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[SandboxConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "paths": {
        "project_root": ".",
        "groups_dir": "groups/",
        "data_dir": "data/",
        "mount_allowlist": "~/.config/tenant-sandbox/mount-allowlist.yaml",
        "env_file": ".env",
    },
    "container": {
        "runtime": "container",
        "image": "tenant-sandbox-agent:latest",
        "timeout_seconds": 300.0,
        "max_output_bytes": 10 * 1024 * 1024,
        "session_container_path": DEFAULT_SESSION_CONTAINER_PATH,
        "output_start_marker": OUTPUT_START_MARKER,
        "output_end_marker": OUTPUT_END_MARKER,
    },
    "environment": {
        "allowed_secrets": list(DEFAULT_ALLOWED_SECRETS),
        "timezone": "",
    },
    "concurrency": {
        "max_concurrent_runs": 4,
    },
    "pairing": {
        "code_ttl_seconds": 3600.0,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs/",
        "redact_secrets": True,
        "log_to_stdout": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """One broken rule, located by dotted path (``container.timeout_seconds``)."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """``config`` is the normalized mapping, or ``None`` when ``issues`` is non-empty."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """The merged config broke one or more rules; ``issues`` lists them all."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _Issues(list[ConfigValidationIssue]):
    def add(self, path: str, message: str) -> None:
        self.append(ConfigValidationIssue(path, message))


_FieldParser = Callable[[object, str, _Issues], Any]


def default_config() -> SandboxConfig:
    """Fresh copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Tell the operator which side to upgrade when schema versions differ."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade sandbox.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the tenant-sandbox runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Recursive merge; ``overlay`` wins and neither input is mutated."""

    return _merged(base, overlay)


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Check every section and field, collecting all issues rather than the first."""

    issues = _Issues()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=tuple(issues))

    _reject_unknown_keys(root, set(_SECTIONS), "", issues)
    out: dict[str, Any] = {}
    for section_name in sorted(_SECTIONS):
        raw = root.get(section_name)
        if raw is None:
            issues.add(section_name, "missing required section")
            continue
        section = _as_object(raw, section_name, issues)
        if section is None:
            continue
        out[section_name] = _validate_section(section, section_name, issues)

    _validate_cross_fields(out, issues)

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=out, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Like ``validate_config`` but raising; returns the normalized mapping."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` with secret-looking keys masked, for dumps and logs."""

    if not isinstance(config, Mapping):
        return {}
    return cast("dict[str, Any]", _redact_value(config))


def _validate_section(
    payload: Mapping[str, object],
    path: str,
    issues: _Issues,
) -> dict[str, Any]:
    parsers = _SECTIONS[path]
    _reject_unknown_keys(payload, set(parsers), path, issues)
    _require_keys(payload, set(parsers), path, issues)

    out: dict[str, Any] = {}
    for key in sorted(parsers):
        if key not in payload:
            continue
        parsed = parsers[key](payload[key], _join(path, key), issues)
        if parsed is not None:
            out[key] = parsed
    return out


def _validate_cross_fields(config: Mapping[str, Any], issues: _Issues) -> None:
    meta = config.get("meta")
    if isinstance(meta, Mapping):
        version = meta.get("schema_version")
        if isinstance(version, int) and version != ConfigSchemaVersion:
            issues.add("meta.schema_version", migration_guidance(version))

    container = config.get("container")
    if isinstance(container, Mapping):
        start = container.get("output_start_marker")
        end = container.get("output_end_marker")
        if isinstance(start, str) and start == end:
            issues.add("container.output_end_marker", "must differ from output_start_marker")


def _parse_schema_version(value: object, path: str, issues: _Issues) -> int | None:
    return _as_number(value, path, issues, minimum=1, integral=True)


def _parse_runtime(value: object, path: str, issues: _Issues) -> str | None:
    return _as_enum(value, path, issues, allowed_values=CONTAINER_RUNTIMES)


def _parse_log_level(value: object, path: str, issues: _Issues) -> str | None:
    if isinstance(value, str):
        value = value.strip().upper()
    return _as_enum(value, path, issues, allowed_values=LOG_LEVELS)


def _parse_timeout(value: object, path: str, issues: _Issues) -> float | None:
    parsed = _as_number(value, path, issues, minimum=0.0)
    if parsed is not None and parsed == 0:
        issues.add(path, "must be > 0")
        return None
    return parsed


def _parse_output_bytes(value: object, path: str, issues: _Issues) -> int | None:
    return _as_number(value, path, issues, minimum=1024, integral=True)


def _parse_positive_int(value: object, path: str, issues: _Issues) -> int | None:
    return _as_number(value, path, issues, minimum=1, integral=True)


def _parse_container_path(value: object, path: str, issues: _Issues) -> str | None:
    parsed = _as_path_text(value, path, issues)
    if parsed is not None and not parsed.startswith("/"):
        issues.add(path, "must be an absolute sandbox path")
        return None
    return parsed


def _parse_allowed_secrets(value: object, path: str, issues: _Issues) -> list[str] | None:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected list, got {type(value).__name__}")
        return None
    out: list[str] = []
    for index, item in enumerate(value):
        parsed = _as_env_name(item, f"{path}[{index}]", issues)
        if parsed is not None and parsed not in out:
            out.append(parsed)
    return out


def _parse_timezone(value: object, path: str, issues: _Issues) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        # Empty means "detect from the host".
        return parsed
    try:
        ZoneInfo(parsed)
    except (ZoneInfoNotFoundError, ValueError):
        issues.add(path, f"unknown IANA timezone {parsed!r}")
        return None
    return parsed


_SECTIONS: Final[dict[str, dict[str, _FieldParser]]] = {
    "meta": {"schema_version": _parse_schema_version},
    "paths": {
        "project_root": lambda v, p, i: _as_path_text(v, p, i),
        "groups_dir": lambda v, p, i: _as_path_text(v, p, i),
        "data_dir": lambda v, p, i: _as_path_text(v, p, i),
        "mount_allowlist": lambda v, p, i: _as_path_text(v, p, i),
        "env_file": lambda v, p, i: _as_path_text(v, p, i),
    },
    "container": {
        "runtime": _parse_runtime,
        "image": lambda v, p, i: _as_str(v, p, i),
        "timeout_seconds": _parse_timeout,
        "max_output_bytes": _parse_output_bytes,
        "session_container_path": _parse_container_path,
        "output_start_marker": lambda v, p, i: _as_str(v, p, i),
        "output_end_marker": lambda v, p, i: _as_str(v, p, i),
    },
    "environment": {
        "allowed_secrets": _parse_allowed_secrets,
        "timezone": _parse_timezone,
    },
    "concurrency": {"max_concurrent_runs": _parse_positive_int},
    "pairing": {"code_ttl_seconds": _parse_timeout},
    "observability": {
        "log_level": _parse_log_level,
        "log_dir": lambda v, p, i: _as_path_text(v, p, i),
        "redact_secrets": lambda v, p, i: _as_bool(v, p, i),
        "log_to_stdout": lambda v, p, i: _as_bool(v, p, i),
    },
}


def _as_object(value: object, path: str, issues: _Issues) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _Issues) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _Issues) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_env_name(value: object, path: str, issues: _Issues) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not _ENV_NAME_PATTERN.fullmatch(parsed):
        issues.add(path, "must be an env var name (example: ANTHROPIC_API_KEY)")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _Issues) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_number(
    value: object,
    path: str,
    issues: _Issues,
    *,
    minimum: float,
    integral: bool = False,
) -> Any:
    kinds: tuple[type, ...] = (int,) if integral else (int, float)
    if isinstance(value, bool) or not isinstance(value, kinds):
        noun = "integer" if integral else "number"
        issues.add(path, f"expected {noun}, got {type(value).__name__}")
        return None
    if not math.isfinite(value):
        issues.add(path, "must be finite")
        return None
    if value < minimum:
        issues.add(path, f"must be >= {minimum:g}")
        return None
    return value if integral else float(value)


def _as_enum(
    value: object,
    path: str,
    issues: _Issues,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _Issues,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; put secrets in the env file",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _Issues,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    snake = _WORD_BREAK.sub("_", key.strip()).lower()
    return _SECRET_FIELD.search(snake) is not None


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merged(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in sorted(set(base) | set(overlay)):
        lower = base.get(key)
        upper = overlay[key] if key in overlay else lower
        if isinstance(upper, Mapping):
            out[key] = _merged(lower if isinstance(lower, Mapping) else {}, upper)
        else:
            out[key] = copy.deepcopy(upper)
    return out


def _redact_value(value: object) -> object:
    if isinstance(value, Mapping):
        return {
            key: "<redacted>" if _looks_sensitive_key(str(key)) else _redact_value(item)
            for key, item in sorted(value.items())
        }
    if isinstance(value, (list, tuple)):
        return [_redact_value(item) for item in value]
    return value


__all__ = [
    "CONTAINER_RUNTIMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "SandboxConfig",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
