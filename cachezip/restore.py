"""Materialize an archive back into a directory tree."""

from __future__ import annotations

import logging
import os
import shutil
import stat
from contextlib import closing
from pathlib import Path
from typing import IO

from cachezip.errors import ArchiveFormatError
from cachezip.formats import FORMAT_ERRORS, ArchiveEntry, EntryKind, iter_entries
from cachezip.layout import enclosed_path
from cachezip.schemas import RestoreReport

LOGGER = logging.getLogger(__name__)
SUPPORTS_MODES = os.name == "posix"


def restore_backup(archive: Path, root: Path) -> RestoreReport:
    """Recreate every entry of ``archive`` under ``root``.

    A missing ``archive`` is a no-op (``report.found`` is False). Entries whose
    names would land outside ``root`` are skipped and listed in
    ``report.skipped``. Existing files are overwritten. Any ``OSError`` aborts
    the restore; entries written before the failure stay on disk.
    """

    archive = Path(archive)
    root = Path(root)
    report = RestoreReport(archive=archive, root=root)
    if not archive.exists():
        LOGGER.warning("Archive not found, nothing to restore: %s", archive)
        report.found = False
        return report

    LOGGER.info("Restoring %s into %s", archive, root)
    directory_modes: list[tuple[Path, int]] = []
    try:
        with closing(iter_entries(archive)) as entries:
            for index, (entry, payload) in enumerate(entries):
                target = enclosed_path(entry.name, root)
                if target is None or entry.kind is EntryKind.OTHER:
                    LOGGER.warning("Skipping entry %d: %r", index, entry.name)
                    report.skipped.append(entry.name)
                    continue

                if entry.comment:
                    LOGGER.info("Entry %d comment: %s", index, entry.comment)
                    report.comments[entry.name] = entry.comment

                if entry.is_dir:
                    LOGGER.debug("Entry %d extracted to %s", index, target)
                    target.mkdir(parents=True, exist_ok=True)
                    report.directories += 1
                    if entry.mode is not None:
                        # A read-only mode from an earlier run must not block this one.
                        _make_owner_writable(target)
                        directory_modes.append((target, entry.mode))
                    continue

                LOGGER.debug("Entry %d extracted to %s (%d bytes)", index, target, entry.size)
                report.bytes += _write_file(target, entry, payload)
                report.files += 1
    except FORMAT_ERRORS as exc:
        raise ArchiveFormatError(f"{archive} is corrupt or truncated: {exc}") from exc

    # Deepest first so a read-only parent never blocks its children.
    for path, mode in sorted(directory_modes, key=lambda item: len(item[0].parts), reverse=True):
        _apply_mode(path, mode)

    LOGGER.info("Restore finished: %s (%d files, %d directories)", archive, report.files, report.directories)
    return report


def _write_file(target: Path, entry: ArchiveEntry, payload: IO[bytes] | None) -> int:
    target.parent.mkdir(parents=True, exist_ok=True)
    # Replace rather than truncate: read-only files and symlinks left behind
    # by earlier runs must not be written through.
    if target.is_symlink() or target.is_file():
        target.unlink()
    with target.open("wb") as handle:
        if payload is not None:
            shutil.copyfileobj(payload, handle)
        written = handle.tell()
    if entry.mode is not None:
        _apply_mode(target, entry.mode)
    return written


def _apply_mode(path: Path, mode: int) -> None:
    if SUPPORTS_MODES:
        os.chmod(path, mode)


def _make_owner_writable(path: Path) -> None:
    if SUPPORTS_MODES:
        os.chmod(path, stat.S_IMODE(path.stat().st_mode) | stat.S_IRWXU)
