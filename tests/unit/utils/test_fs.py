"""Unit tests for filesystem helpers."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from tenant_sandbox.utils.fs import (
    atomic_write,
    ensure_directory,
    is_within,
    paths_overlap,
    resolve_path,
)


def test_atomic_write_replaces_content_and_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "snapshot.json"
    atomic_write(target, "first")
    atomic_write(target, b"second")

    assert target.read_text(encoding="utf-8") == "second"
    assert [p.name for p in tmp_path.iterdir()] == ["snapshot.json"]
    assert target.stat().st_mode & 0o777 == 0o644


def test_atomic_write_requires_existing_parent(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        atomic_write(tmp_path / "missing" / "file.txt", "x")


def test_ensure_directory_is_idempotent(tmp_path: Path) -> None:
    target = tmp_path / "a" / "b"
    assert ensure_directory(target) == target
    assert ensure_directory(target) == target
    assert target.is_dir()


def test_containment_is_component_wise(tmp_path: Path) -> None:
    base = tmp_path / "data"
    assert is_within(base / "ipc" / "family", base)
    assert is_within(base, base)
    assert not is_within(tmp_path / "data-backup", base)
    assert paths_overlap(base, base / "ipc")
    assert paths_overlap(base / "ipc", base)
    assert not paths_overlap(base / "ipc", base / "sessions")


def test_containment_follows_symlinks(tmp_path: Path) -> None:
    secret = tmp_path / "secret"
    secret.mkdir()
    link = tmp_path / "innocent"
    os.symlink(secret, link)

    assert resolve_path(link) == secret.resolve()
    assert paths_overlap(link, secret)


def test_resolve_path_expands_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    assert resolve_path("~/projects") == (tmp_path / "projects").resolve()
