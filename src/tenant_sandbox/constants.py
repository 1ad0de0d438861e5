"""Stable constants shared by the sandbox core."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

CONFIG_SCHEMA_VERSION: Final[int] = 1

# Sandbox-visible mount points.
PROJECT_CONTAINER_PATH: Final[PurePosixPath] = PurePosixPath("/workspace/project")
GROUP_CONTAINER_PATH: Final[PurePosixPath] = PurePosixPath("/workspace/group")
GLOBAL_CONTAINER_PATH: Final[PurePosixPath] = PurePosixPath("/workspace/global")
IPC_CONTAINER_PATH: Final[PurePosixPath] = PurePosixPath("/workspace/ipc")
ENV_CONTAINER_PATH: Final[PurePosixPath] = PurePosixPath("/workspace/env-dir")
EXTRA_CONTAINER_ROOT: Final[PurePosixPath] = PurePosixPath("/workspace/extra")
DEFAULT_SESSION_CONTAINER_PATH: Final[str] = "/home/node/.claude"

# Host-side layout, relative to the configured data/groups directories.
GLOBAL_FOLDER: Final[str] = "global"
SESSIONS_DIR: Final[str] = "sessions"
SESSION_STATE_DIR: Final[str] = ".claude"
IPC_DIR: Final[str] = "ipc"
IPC_MESSAGES_DIR: Final[str] = "messages"
IPC_TASKS_DIR: Final[str] = "tasks"
IPC_ERRORS_DIR: Final[str] = "errors"
ENV_DIR: Final[str] = "env"
ENV_FILENAME: Final[str] = "env"
LOGS_DIR: Final[str] = "logs"
TASKS_SNAPSHOT_FILENAME: Final[str] = "current_tasks.json"
AVAILABLE_GROUPS_SNAPSHOT_FILENAME: Final[str] = "available_groups.json"

# Result delimiters agreed with the sandboxed workload.
OUTPUT_START_MARKER: Final[str] = "---TENANT_SANDBOX_OUTPUT_START---"
OUTPUT_END_MARKER: Final[str] = "---TENANT_SANDBOX_OUTPUT_END---"

# Secrets that may be projected into a sandbox.
DEFAULT_ALLOWED_SECRETS: Final[tuple[str, ...]] = (
    "CLAUDE_CODE_OAUTH_TOKEN",
    "ANTHROPIC_API_KEY",
)

# Bounded diagnostic tails.
ERROR_TAIL_CHARS: Final[int] = 200
LOG_TAIL_CHARS: Final[int] = 500

__all__ = [
    "AVAILABLE_GROUPS_SNAPSHOT_FILENAME",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_ALLOWED_SECRETS",
    "DEFAULT_SESSION_CONTAINER_PATH",
    "ENV_CONTAINER_PATH",
    "ENV_DIR",
    "ENV_FILENAME",
    "ERROR_TAIL_CHARS",
    "EXTRA_CONTAINER_ROOT",
    "GLOBAL_CONTAINER_PATH",
    "GLOBAL_FOLDER",
    "GROUP_CONTAINER_PATH",
    "IPC_CONTAINER_PATH",
    "IPC_DIR",
    "IPC_ERRORS_DIR",
    "IPC_MESSAGES_DIR",
    "IPC_TASKS_DIR",
    "LOGS_DIR",
    "LOG_TAIL_CHARS",
    "OUTPUT_END_MARKER",
    "OUTPUT_START_MARKER",
    "PROJECT_CONTAINER_PATH",
    "SESSIONS_DIR",
    "SESSION_STATE_DIR",
    "TASKS_SNAPSHOT_FILENAME",
]
