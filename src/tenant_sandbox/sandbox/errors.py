"""Error types raised inside the sandbox core.

None of these cross :meth:`SandboxService.submit`; the invocation boundary turns
them into error-shaped :class:`~tenant_sandbox.domain.models.JobResult` values.
"""

from __future__ import annotations


class SandboxError(RuntimeError):
    """Base error for sandbox core failures."""


class MountCollisionError(SandboxError):
    """Raised when two mappings target the same sandbox path."""

    def __init__(self, container_path: str, first: str, second: str) -> None:
        self.container_path = container_path
        super().__init__(
            f"sandbox path {container_path} is claimed by both {first} and {second}"
        )


class MountExposureError(SandboxError):
    """Raised when a writable mapping would expose the operator allowlist."""

    def __init__(self, container_path: str, host_path: str, allowlist: str) -> None:
        self.container_path = container_path
        super().__init__(
            f"sandbox path {container_path} would expose mount allowlist {allowlist} "
            f"read-write through {host_path}"
        )


class MountSecurityError(SandboxError):
    """Raised for one extra mount that fails policy; never escapes the validator."""

    def __init__(self, host_path: str, reason: str) -> None:
        self.host_path = host_path
        self.reason = reason
        super().__init__(f"mount {host_path!r} rejected: {reason}")


class AllowlistLoadError(SandboxError):
    """Raised when the operator allowlist exists but cannot be parsed."""


__all__ = [
    "AllowlistLoadError",
    "MountCollisionError",
    "MountExposureError",
    "MountSecurityError",
    "SandboxError",
]
