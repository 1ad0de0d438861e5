"""
tenant-sandbox — domain types

File: src/tenant_sandbox/domain/__init__.py
Last updated: 2026-10-17

Purpose
- Tenants, mount mappings, job input/result, and snapshot records shared by every component.
- The domain layer performs no IO.
"""

from tenant_sandbox.domain.models import (
    AllowlistEntry,
    AvailableTenant,
    FailureKind,
    JobInput,
    JobResult,
    JobStatus,
    MountMapping,
    MountRequest,
    OutboundMessage,
    ScheduleType,
    TaskCommand,
    TaskSnapshotEntry,
    Tenant,
    TenantRuntimeConfig,
    validate_folder,
)

__all__ = [
    "AllowlistEntry",
    "AvailableTenant",
    "FailureKind",
    "JobInput",
    "JobResult",
    "JobStatus",
    "MountMapping",
    "MountRequest",
    "OutboundMessage",
    "ScheduleType",
    "TaskCommand",
    "TaskSnapshotEntry",
    "Tenant",
    "TenantRuntimeConfig",
    "validate_folder",
]
