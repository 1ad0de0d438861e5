"""
tenant-sandbox — runtime config loader.

File: src/tenant_sandbox/config/loader.py
Last updated: 2026-10-17

Purpose
- Produce the one immutable ``RuntimeSettings`` a host process runs with.

Behavior
- Layers, lowest first: built-in defaults, ``sandbox.toml``, ``TENANT_SANDBOX_*``
  environment variables, then dotted CLI overrides. The file layer is validated on its
  own so a bad file is reported before env or CLI values can mask it.
- Every scalar config leaf has an env name: ``container.timeout_seconds`` maps to
  ``TENANT_SANDBOX_CONTAINER_TIMEOUT_SECONDS`` and is coerced to the leaf's type.
- Relative paths resolve against the directory holding the config file.
- An empty ``environment.timezone`` falls back to the host zone (``TZ``,
  ``/etc/timezone``, then the ``/etc/localtime`` link).

Components never read ``os.environ`` themselves; they receive ``RuntimeSettings``.
"""

from __future__ import annotations

import dataclasses
import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from tenant_sandbox.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "sandbox.toml"
ENV_PREFIX: Final[str] = "TENANT_SANDBOX_"

_BOOLEAN_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_BOOLEAN_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})
_FALLBACK_TIMEZONE: Final[str] = "UTC"


class ConfigLoadError(ValueError):
    """The config file is missing or unreadable, or an override has the wrong type."""


@dataclass(frozen=True, slots=True)
class RuntimeSettings:
    """Resolved, immutable settings for one host process."""

    project_root: Path
    groups_dir: Path
    data_dir: Path
    mount_allowlist: Path
    env_file: Path
    log_dir: Path
    runtime: str = "container"
    image: str = "tenant-sandbox-agent:latest"
    timeout_seconds: float = 300.0
    max_output_bytes: int = 10 * 1024 * 1024
    session_container_path: str = "/home/node/.claude"
    output_start_marker: str = "---TENANT_SANDBOX_OUTPUT_START---"
    output_end_marker: str = "---TENANT_SANDBOX_OUTPUT_END---"
    allowed_secrets: tuple[str, ...] = ("CLAUDE_CODE_OAUTH_TOKEN", "ANTHROPIC_API_KEY")
    timezone: str = _FALLBACK_TIMEZONE
    max_concurrent_runs: int = 4
    pairing_ttl_seconds: float = 3600.0
    log_level: str = "INFO"
    redact_secrets: bool = True
    log_to_stdout: bool = True

    @property
    def verbose_run_logs(self) -> bool:
        return self.log_level == "DEBUG"

    @classmethod
    def rooted_at(cls, root: Path | str, **overrides: Any) -> RuntimeSettings:
        """Build settings whose host paths all live under ``root``.

        The project root is ``root/project`` so the allowlist under ``root/config``
        stays outside the privileged tenant's writable mapping.
        """

        base = Path(root)
        settings = cls(
            project_root=base / "project",
            groups_dir=base / "groups",
            data_dir=base / "data",
            mount_allowlist=base / "config" / "mount-allowlist.yaml",
            env_file=base / ".env",
            log_dir=base / "logs",
        )
        return dataclasses.replace(settings, **overrides)


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Merge every config layer and return the validated, path-normalized mapping."""

    resolved_path = _resolve_config_path(config_path)
    explicit_path = config_path is not None
    env_map = dict(os.environ if environ is None else environ)

    file_payload = _load_toml_file(resolved_path, required=explicit_path)
    merged = assert_valid_config(merge_config(default_config(), file_payload))

    merged = merge_config(merged, _collect_env_overrides(merged, env_map))
    merged = merge_config(merged, _materialize_cli_overrides(dict(cli_overrides or {})))
    merged = assert_valid_config(merged)

    return normalize_paths(merged, base_dir=resolved_path.parent)


def load_settings(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> RuntimeSettings:
    """Load config and resolve it into ``RuntimeSettings``."""

    env_map = dict(os.environ if environ is None else environ)
    config = load_config(config_path, cli_overrides=cli_overrides, environ=env_map)
    return settings_from_config(config, environ=env_map)


def settings_from_config(
    config: Mapping[str, Any],
    *,
    environ: Mapping[str, str] | None = None,
) -> RuntimeSettings:
    """Convert a validated config mapping into ``RuntimeSettings``."""

    paths = config["paths"]
    container = config["container"]
    environment = config["environment"]
    observability = config["observability"]

    timezone_name = str(environment["timezone"]).strip()
    if not timezone_name:
        timezone_name = detect_host_timezone(os.environ if environ is None else environ)

    return RuntimeSettings(
        project_root=Path(paths["project_root"]),
        groups_dir=Path(paths["groups_dir"]),
        data_dir=Path(paths["data_dir"]),
        mount_allowlist=Path(paths["mount_allowlist"]),
        env_file=Path(paths["env_file"]),
        log_dir=Path(observability["log_dir"]),
        runtime=container["runtime"],
        image=container["image"],
        timeout_seconds=float(container["timeout_seconds"]),
        max_output_bytes=int(container["max_output_bytes"]),
        session_container_path=container["session_container_path"],
        output_start_marker=container["output_start_marker"],
        output_end_marker=container["output_end_marker"],
        allowed_secrets=tuple(environment["allowed_secrets"]),
        timezone=timezone_name,
        max_concurrent_runs=int(config["concurrency"]["max_concurrent_runs"]),
        pairing_ttl_seconds=float(config["pairing"]["code_ttl_seconds"]),
        log_level=observability["log_level"],
        redact_secrets=bool(observability["redact_secrets"]),
        log_to_stdout=bool(observability["log_to_stdout"]),
    )


def detect_host_timezone(environ: Mapping[str, str]) -> str:
    """Return the host's IANA timezone name, falling back to UTC."""

    candidate = environ.get("TZ", "").strip().lstrip(":")
    if candidate and _is_known_zone(candidate):
        return candidate

    timezone_file = Path("/etc/timezone")
    try:
        candidate = timezone_file.read_text(encoding="utf-8").strip()
    except OSError:
        candidate = ""
    if candidate and _is_known_zone(candidate):
        return candidate

    localtime = Path("/etc/localtime")
    try:
        target = localtime.resolve(strict=True)
    except OSError:
        return _FALLBACK_TIMEZONE
    parts = target.parts
    if "zoneinfo" in parts:
        candidate = "/".join(parts[parts.index("zoneinfo") + 1 :])
        if candidate and _is_known_zone(candidate):
            return candidate
    return _FALLBACK_TIMEZONE


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Copy of ``config`` with every path field made absolute against ``base_dir``."""

    materialized = merge_config({}, config)
    for field_path in PATH_FIELDS:
        value = _get_nested(materialized, field_path)
        if isinstance(value, str):
            _set_nested(materialized, field_path, _normalize_one_path(value, base_dir))
    return materialized


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Compact, key-sorted JSON of ``config`` with secret-looking keys masked."""

    return json.dumps(
        redact_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def _is_known_zone(name: str) -> bool:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def _resolve_config_path(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _load_toml_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}

    try:
        with path.open("rb") as handle:
            parsed = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc

    return parsed


def _collect_env_overrides(
    config: Mapping[str, object], environ: Mapping[str, str]
) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for path, current in _scalar_leaves(config):
        env_name = ENV_PREFIX + "_".join(part.upper() for part in path)
        raw = environ.get(env_name)
        if raw is None:
            continue
        coerce = _ENV_COERCERS[type(current)]
        try:
            value = coerce(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} -> {'.'.join(path)}: {exc}") from exc
        _set_nested(overrides, path, value)
    return overrides


def _scalar_leaves(
    payload: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> Iterator[tuple[tuple[str, ...], object]]:
    """Yield ``(path, value)`` for every env-overridable leaf, in sorted order."""
    for key in sorted(payload):
        value = payload[key]
        if isinstance(value, Mapping):
            yield from _scalar_leaves(value, (*prefix, key))
        elif type(value) in _ENV_COERCERS:
            yield (*prefix, key), value


def _env_bool(text: str) -> bool:
    lowered = text.lower()
    if lowered in _BOOLEAN_TRUE:
        return True
    if lowered in _BOOLEAN_FALSE:
        return False
    raise ValueError("expected a boolean (true/false/1/0/yes/no/on/off)")


def _env_int(text: str) -> int:
    try:
        return int(text)
    except ValueError:
        raise ValueError(f"expected an integer, got {text!r}") from None


def _env_float(text: str) -> float:
    try:
        return float(text)
    except ValueError:
        raise ValueError(f"expected a number, got {text!r}") from None


_ENV_COERCERS: Final[dict[type, Callable[[str], object]]] = {
    bool: _env_bool,
    int: _env_int,
    float: _env_float,
    str: str,
}


def _materialize_cli_overrides(cli_overrides: Mapping[str, object]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for key in sorted(cli_overrides):
        value = cli_overrides[key]
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _set_nested(payload, path, value)
    return payload


def _set_nested(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    cursor = target
    for part in path[:-1]:
        next_node = cursor.get(part)
        if not isinstance(next_node, dict):
            next_node = {}
            cursor[part] = next_node
        cursor = next_node
    cursor[path[-1]] = value


def _get_nested(payload: Mapping[str, object], path: tuple[str, ...]) -> object | None:
    cursor: object = payload
    for part in path:
        if not isinstance(cursor, Mapping) or part not in cursor:
            return None
        cursor = cursor[part]
    return cursor


def _normalize_one_path(raw: str, base_dir: Path) -> str:
    expanded = os.path.expandvars(raw)
    candidate = Path(expanded).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(str(candidate))).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "RuntimeSettings",
    "detect_host_timezone",
    "dump_effective_config",
    "load_config",
    "load_settings",
    "normalize_paths",
    "settings_from_config",
]
