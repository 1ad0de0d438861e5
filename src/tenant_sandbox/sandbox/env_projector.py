"""Project a minimal environment export for the sandbox.

Only names in the allowed-secret set are copied out of the operator's env file, plus
the resolved ``TZ``. The host process environment is never consulted.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Final

from tenant_sandbox.constants import ENV_DIR, ENV_FILENAME
from tenant_sandbox.utils.fs import atomic_write, ensure_directory

if TYPE_CHECKING:
    from collections.abc import Iterable

    from tenant_sandbox.config.loader import RuntimeSettings

logger = logging.getLogger(__name__)

_ASSIGNMENT_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?:export\s+)?(?P<name>[A-Za-z_][A-Za-z0-9_]*)\s*=(?P<value>.*)$"
)


def filter_env_lines(lines: Iterable[str], allowed: frozenset[str]) -> list[str]:
    """Keep ``NAME=value`` lines whose name is allowed; drop blanks, comments, and the rest."""

    kept: list[str] = []
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        match = _ASSIGNMENT_RE.match(stripped)
        if match is None or match.group("name") not in allowed:
            continue
        kept.append(f"{match.group('name')}={match.group('value').strip()}")
    return kept


class EnvironmentProjector:
    """Rewrite ``<data>/env/env`` before each invocation."""

    def __init__(self, settings: RuntimeSettings) -> None:
        self._env_file = settings.env_file
        self._allowed = frozenset(settings.allowed_secrets)
        self._timezone = settings.timezone
        self._export_dir = settings.data_dir / ENV_DIR

    @property
    def export_path(self) -> Path:
        return self._export_dir / ENV_FILENAME

    def render(self) -> str:
        lines: list[str] = []
        try:
            source = self._env_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            source = ""
        except OSError as exc:
            logger.warning(
                "env file unreadable; exporting timezone only",
                extra={"env_file": str(self._env_file), "error": str(exc)},
            )
            source = ""
        lines.extend(filter_env_lines(source.splitlines(), self._allowed))
        lines = [line for line in lines if not line.startswith("TZ=")]
        lines.append(f"TZ={self._timezone}")
        return "\n".join(lines) + "\n"

    def write(self) -> Path:
        ensure_directory(self._export_dir)
        content = self.render()
        atomic_write(self.export_path, content)
        logger.debug(
            "environment export written",
            extra={"variables": [line.split("=", 1)[0] for line in content.splitlines()]},
        )
        return self.export_path


__all__ = ["EnvironmentProjector", "filter_env_lines"]
