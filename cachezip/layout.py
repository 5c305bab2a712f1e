"""Cache-area table and the entry naming rules shared by backup and restore."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Sequence

from cachezip.errors import BackupError, UnsafeArchivePath
from cachezip.schemas import AreaStatus

DIRECTORY_MARKER = "/"


@dataclass(frozen=True, slots=True)
class CacheArea:
    """One optional subtree of the cache home that gets archived."""

    label: str
    relative_path: str

    def under(self, root: Path) -> Path:
        return root.joinpath(*PurePosixPath(self.relative_path).parts)


CACHE_AREAS: tuple[CacheArea, ...] = (
    CacheArea("git-db", "git/db"),
    CacheArea("registry-cache", "registry/cache"),
    CacheArea("registry-index", "registry/index"),
    CacheArea("bin", "bin"),
)


def archive_name(path: Path, root: Path) -> str:
    """Return the stored entry name for ``path``: relative to ``root``, ``/``-separated.

    The root must be a literal prefix of ``path``; nothing is resolved, so a
    path that only reaches the root through a symlink is rejected.
    """

    try:
        relative = path.relative_to(root)
    except ValueError as exc:
        raise BackupError(f"{path} is not inside backup root {root}") from exc
    # Undecodable bytes in file names become U+FFFD so every entry name is valid UTF-8.
    name = os.fsencode(relative.as_posix()).decode("utf-8", errors="replace")
    if name in {"", "."}:
        raise BackupError(f"{path} is the backup root itself, not an entry")
    return name


def is_directory_name(name: str) -> bool:
    return name.endswith(DIRECTORY_MARKER) or name.endswith("\\")


def normalize_entry_name(name: str) -> tuple[str, ...]:
    """Split a stored entry name into safe relative components.

    - Backslashes are treated as separators
    - Leading ``./`` and empty or ``.`` segments are dropped
    - Absolute paths, drive letters, NUL bytes and ``..`` are rejected
    """

    if not isinstance(name, str) or not name:
        raise UnsafeArchivePath("Empty entry name.")
    if "\x00" in name:
        raise UnsafeArchivePath("Entry name contains a NUL byte.")

    path = name.replace("\\", "/")
    if path.startswith("/"):
        raise UnsafeArchivePath("Absolute paths are not allowed.")
    # C:foo, C:/foo
    if len(path) >= 2 and path[1] == ":" and path[0].isalpha():
        raise UnsafeArchivePath("Drive-qualified paths are not allowed.")

    parts: list[str] = []
    for part in path.split("/"):
        if part in {"", "."}:
            continue
        if part == "..":
            raise UnsafeArchivePath("Path traversal is not allowed.")
        parts.append(part)

    if not parts:
        raise UnsafeArchivePath("Entry name has no path components.")
    return tuple(parts)


def enclosed_path(name: str, root: Path) -> Path | None:
    """Resolve ``name`` under ``root``, or ``None`` when it is not safely enclosed."""

    try:
        parts = normalize_entry_name(name)
    except UnsafeArchivePath:
        return None
    candidate = root.joinpath(*parts)
    base = os.path.abspath(root)
    if os.path.commonpath([base, os.path.abspath(candidate)]) != base:
        return None
    return candidate


def describe_areas(root: Path, areas: Sequence[CacheArea] = CACHE_AREAS) -> list[AreaStatus]:
    statuses: list[AreaStatus] = []
    for area in areas:
        path = area.under(root)
        statuses.append(
            AreaStatus(label=area.label, relative_path=area.relative_path, path=path, exists=path.is_dir())
        )
    return statuses
