"""Sandbox launching, mount policy, and result handling."""

from tenant_sandbox.sandbox.env_projector import EnvironmentProjector, filter_env_lines
from tenant_sandbox.sandbox.errors import (
    AllowlistLoadError,
    MountCollisionError,
    MountSecurityError,
    SandboxError,
)
from tenant_sandbox.sandbox.ipc import IpcBatch, IpcChannel, IpcRejected
from tenant_sandbox.sandbox.mount_planner import MountPlanner, TenantLayout, check_collisions
from tenant_sandbox.sandbox.mount_security import (
    MountAllowlist,
    MountSecurityValidator,
    load_allowlist,
)
from tenant_sandbox.sandbox.output_extractor import extract_job_result
from tenant_sandbox.sandbox.run_logger import RunLogger, RunRecord
from tenant_sandbox.sandbox.runner import ContainerRuntime, SandboxRunner, build_container_args
from tenant_sandbox.sandbox.snapshots import SnapshotWriter

__all__ = [
    "AllowlistLoadError",
    "ContainerRuntime",
    "EnvironmentProjector",
    "IpcBatch",
    "IpcChannel",
    "IpcRejected",
    "MountAllowlist",
    "MountCollisionError",
    "MountPlanner",
    "MountSecurityError",
    "MountSecurityValidator",
    "RunLogger",
    "RunRecord",
    "SandboxError",
    "SandboxRunner",
    "SnapshotWriter",
    "TenantLayout",
    "build_container_args",
    "check_collisions",
    "extract_job_result",
    "filter_env_lines",
    "load_allowlist",
]
