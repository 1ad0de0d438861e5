"""
tenant-sandbox — package root

File: src/tenant_sandbox/__init__.py
Last updated: 2026-10-17

Purpose
- Launch short-lived, isolated sandboxes on behalf of tenants ("groups"), each
  confined to its own filesystem namespace with bounded time and output.

Import boundary rules
- No side effects at import time (no config loading, no logging init).
- Heavy submodules are imported lazily by callers.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
