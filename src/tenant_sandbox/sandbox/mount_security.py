"""
tenant-sandbox — extra-mount security gate

File: src/tenant_sandbox/sandbox/mount_security.py
Last updated: 2026-10-17

Purpose
- Decide which tenant-requested extra host directories may be bound into a sandbox.

Policy (applied in order, first failure wins)
1. Sensitive paths (credential stores, key directories, secret manager config) are
   rejected when the request equals, sits under, or contains one.
2. The allowlist file's directory, the core's data directory, and the groups tree
   are never exposed through an extra mount.
3. The request must sit at or under an allowlisted root that admits the tenant.
4. Read-write is granted only when the request, the root, and the tenant's privilege
   all allow it; a read-only root is never upgraded.

Rejections are logged and dropped; ``validate`` never raises.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Final, cast

import yaml

from tenant_sandbox.constants import EXTRA_CONTAINER_ROOT
from tenant_sandbox.domain.models import AllowlistEntry, MountMapping, MountRequest, Tenant
from tenant_sandbox.sandbox.errors import AllowlistLoadError, MountSecurityError
from tenant_sandbox.utils.fs import is_within, paths_overlap, resolve_path

logger = logging.getLogger(__name__)

SENSITIVE_PATHS: Final[tuple[str, ...]] = (
    "~/.ssh",
    "~/.gnupg",
    "~/.aws",
    "~/.azure",
    "~/.config/gcloud",
    "~/.config/gh",
    "~/.config/op",
    "~/.kube",
    "~/.docker",
    "~/.password-store",
    "~/.netrc",
    "~/.npmrc",
    "~/.pypirc",
    "~/.git-credentials",
    "~/.vault-token",
    "/etc/ssh",
    "/etc/shadow",
    "/etc/sudoers.d",
    "/var/run/docker.sock",
)

BLOCKED_COMPONENTS: Final[frozenset[str]] = frozenset(
    {
        ".ssh",
        ".gnupg",
        ".gpg",
        ".aws",
        ".azure",
        ".gcloud",
        ".kube",
        ".docker",
        ".env",
        ".netrc",
        ".secrets",
        "credentials",
        "id_rsa",
        "id_ed25519",
        "private_key",
    }
)

_UNSAFE_ARG_CHARS: Final[frozenset[str]] = frozenset({":", ",", "\n", "\x00"})


@dataclass(frozen=True, slots=True)
class MountAllowlist:
    """Parsed operator allowlist."""

    entries: tuple[AllowlistEntry, ...] = ()
    blocked_patterns: tuple[str, ...] = ()
    non_privileged_read_only: bool = True


def load_allowlist(path: Path) -> MountAllowlist:
    """Load the operator allowlist; a missing file means no extra mounts are allowed.

    The file is YAML (JSON also parses, being a YAML subset)::

        allowed_roots:
          - path: ~/projects
            allow_read_write: true
            tenants: [family]
            description: shared source checkouts
        blocked_patterns: [secrets]
        non_privileged_read_only: true
    """

    if not path.exists():
        return MountAllowlist()

    try:
        with path.open("r", encoding="utf-8") as handle:
            loaded = cast("object", yaml.safe_load(handle))
    except yaml.YAMLError as exc:
        raise AllowlistLoadError(f"invalid allowlist YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise AllowlistLoadError(f"unable to read allowlist {path}: {exc}") from exc

    if loaded is None:
        return MountAllowlist()
    if not isinstance(loaded, Mapping):
        raise AllowlistLoadError(f"allowlist root must be a mapping: {path}")

    raw_roots = _first_present(loaded, "allowed_roots", "allowedRoots", default=[])
    if not isinstance(raw_roots, list):
        raise AllowlistLoadError("allowed_roots must be a list")
    entries = tuple(_parse_entry(item, index) for index, item in enumerate(raw_roots))

    raw_patterns = _first_present(loaded, "blocked_patterns", "blockedPatterns", default=[])
    if not isinstance(raw_patterns, list) or not all(isinstance(p, str) for p in raw_patterns):
        raise AllowlistLoadError("blocked_patterns must be a list of strings")

    read_only = _first_present(
        loaded, "non_privileged_read_only", "nonMainReadOnly", default=True
    )
    if not isinstance(read_only, bool):
        raise AllowlistLoadError("non_privileged_read_only must be a boolean")

    return MountAllowlist(
        entries=entries,
        blocked_patterns=tuple(pattern.strip().lower() for pattern in raw_patterns if pattern),
        non_privileged_read_only=read_only,
    )


class MountSecurityValidator:
    """Filter tenant-requested extra mounts against the operator allowlist."""

    def __init__(
        self,
        allowlist_path: Path | str,
        *,
        protected_roots: Sequence[Path | str] = (),
        sensitive_paths: Sequence[str] = SENSITIVE_PATHS,
    ) -> None:
        self._allowlist_path = resolve_path(allowlist_path)
        self._protected_roots = tuple(resolve_path(root) for root in protected_roots)
        self._sensitive_paths = tuple(resolve_path(item) for item in sensitive_paths)
        self._cache_key: tuple[int, int] | None = None
        self._cached = MountAllowlist()

    @property
    def allowlist_path(self) -> Path:
        return self._allowlist_path

    def current_allowlist(self) -> MountAllowlist:
        """Return the allowlist, re-reading the file when it changed on disk."""

        try:
            stat = self._allowlist_path.stat()
        except OSError:
            self._cache_key = None
            self._cached = MountAllowlist()
            return self._cached

        key = (stat.st_mtime_ns, stat.st_size)
        if key == self._cache_key:
            return self._cached

        try:
            self._cached = load_allowlist(self._allowlist_path)
        except AllowlistLoadError as exc:
            logger.error(
                "mount allowlist unusable; extra mounts disabled",
                extra={"allowlist": str(self._allowlist_path), "error": str(exc)},
            )
            self._cached = MountAllowlist()
        self._cache_key = key
        return self._cached

    def validate(
        self, requests: Sequence[MountRequest], tenant: Tenant
    ) -> tuple[MountMapping, ...]:
        if not requests:
            return ()

        allowlist = self.current_allowlist()
        accepted: list[MountMapping] = []
        for request in requests:
            try:
                accepted.append(self.check(request, tenant, allowlist))
            except MountSecurityError as exc:
                logger.warning(
                    "extra mount rejected",
                    extra={
                        "tenant": tenant.name,
                        "group_folder": tenant.folder,
                        "host_path": exc.host_path,
                        "reason": exc.reason,
                    },
                )
        return tuple(accepted)

    def check(
        self,
        request: MountRequest,
        tenant: Tenant,
        allowlist: MountAllowlist,
    ) -> MountMapping:
        """Return the mapping for ``request`` or raise ``MountSecurityError``."""

        raw = request.host_path
        if any(char in raw for char in _UNSAFE_ARG_CHARS):
            raise MountSecurityError(raw, "host path contains characters unsafe for mount args")
        container_name = _container_name(request)

        host = resolve_path(raw)
        if not host.is_dir():
            raise MountSecurityError(raw, "host path does not exist or is not a directory")

        for sensitive in self._sensitive_paths:
            if paths_overlap(host, sensitive):
                raise MountSecurityError(raw, f"overlaps sensitive path {sensitive}")
        blocked = BLOCKED_COMPONENTS | frozenset(allowlist.blocked_patterns)
        for part in host.parts:
            if part.lower() in blocked:
                raise MountSecurityError(raw, f"path component {part!r} is blocked")

        if paths_overlap(host, self._allowlist_path.parent):
            raise MountSecurityError(raw, "would expose the mount allowlist")
        for protected in self._protected_roots:
            if paths_overlap(host, protected):
                raise MountSecurityError(raw, f"overlaps protected directory {protected}")

        containing = [entry for entry in allowlist.entries if is_within(host, entry.path)]
        if not containing:
            raise MountSecurityError(raw, "not under any allowlisted root")
        admitted = [entry for entry in containing if entry.admits(tenant)]
        if not admitted:
            raise MountSecurityError(raw, "allowlisted root is scoped to other tenants")
        entry = max(admitted, key=lambda item: len(item.path.parts))

        readonly = (
            request.readonly
            or not entry.allow_read_write
            or (allowlist.non_privileged_read_only and not tenant.is_privileged)
        )
        return MountMapping(
            host_path=host,
            container_path=str(EXTRA_CONTAINER_ROOT / container_name),
            readonly=readonly,
        )


def _container_name(request: MountRequest) -> str:
    raw = request.container_path
    if raw is None:
        raw = Path(request.host_path.rstrip("/\\") or "/").name
    candidate = PurePosixPath(raw)
    if (
        not raw
        or candidate.is_absolute()
        or ".." in candidate.parts
        or any(char in raw for char in _UNSAFE_ARG_CHARS)
        or str(candidate) in {"", "."}
    ):
        raise MountSecurityError(
            request.host_path,
            f"container path {raw!r} must be a relative name without '..'",
        )
    return str(candidate)


def _parse_entry(item: object, index: int) -> AllowlistEntry:
    where = f"allowed_roots[{index}]"
    if not isinstance(item, Mapping):
        raise AllowlistLoadError(f"{where} must be a mapping")
    raw_path = item.get("path")
    if not isinstance(raw_path, str) or not raw_path.strip():
        raise AllowlistLoadError(f"{where}.path must be a non-empty string")
    allow_rw = _first_present(item, "allow_read_write", "allowReadWrite", default=False)
    if not isinstance(allow_rw, bool):
        raise AllowlistLoadError(f"{where}.allow_read_write must be a boolean")
    tenants = item.get("tenants", [])
    if not isinstance(tenants, list) or not all(isinstance(t, str) for t in tenants):
        raise AllowlistLoadError(f"{where}.tenants must be a list of strings")
    description = item.get("description")
    return AllowlistEntry(
        path=resolve_path(os.path.expandvars(raw_path)),
        allow_read_write=allow_rw,
        tenants=tuple(tenants),
        description=description if isinstance(description, str) else None,
    )


def _first_present(payload: Mapping[str, object], *keys: str, default: object) -> object:
    for key in keys:
        if key in payload:
            return payload[key]
    return default


__all__ = [
    "BLOCKED_COMPONENTS",
    "MountAllowlist",
    "MountSecurityValidator",
    "SENSITIVE_PATHS",
    "load_allowlist",
]
