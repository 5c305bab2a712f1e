"""Walk the cache areas under a root and write them into one archive."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterator, Sequence

from cachezip.formats import CompressionOptions, open_writer
from cachezip.layout import CACHE_AREAS, CacheArea, archive_name
from cachezip.schemas import BackupReport

LOGGER = logging.getLogger(__name__)


def create_backup(
    root: Path,
    destination: Path,
    *,
    areas: Sequence[CacheArea] = CACHE_AREAS,
    options: CompressionOptions | None = None,
) -> BackupReport:
    """Archive every regular file under the existing ``areas`` of ``root``.

    Parameters
    ----------
    root:
        Directory all entry names are made relative to.
    destination:
        Archive path; created or truncated.
    areas:
        Ordered cache-area table. Areas missing under ``root`` are skipped.
    options:
        Container and codec settings; defaults to deflated zip at the codec's
        default level.

    Any ``OSError`` aborts the backup. The archive written so far is left on
    disk but the call raises.
    """

    root = Path(root)
    destination = Path(destination)
    cfg = options or CompressionOptions()
    report = BackupReport(
        archive=destination,
        root=root,
        format=cfg.format.value,
        codec=cfg.codec,
        level=cfg.level,
    )

    with open_writer(destination, cfg) as writer:
        own_id = _file_id(destination)
        for area in areas:
            source = area.under(root)
            if not source.is_dir():
                LOGGER.info("Skipping %s: %s not found", area.label, source)
                report.missing_areas.append(area.label)
                continue
            LOGGER.info("Archiving %s from %s", area.label, source)
            report.included_areas.append(area.label)
            for path in iter_files(source):
                if _file_id(path) == own_id:
                    LOGGER.debug("Not archiving the archive itself: %s", path)
                    continue
                name = archive_name(path, root)
                LOGGER.debug("Writing %s", name)
                report.bytes += writer.add_file(path, name)
                report.files += 1

    LOGGER.info("Backup finished: %s (%d files, %d bytes)", destination, report.files, report.bytes)
    return report


def iter_files(top: Path) -> Iterator[Path]:
    """Yield regular files below ``top`` in sorted order, following symlinks.

    Directories reached twice through symlinks are only descended once.
    """

    seen: set[tuple[int, int]] = set()
    for dirpath, dirnames, filenames in os.walk(top, followlinks=True, onerror=_raise):
        key = _file_id(Path(dirpath))
        if key in seen:
            LOGGER.debug("Skipping already visited directory %s", dirpath)
            dirnames[:] = []
            continue
        seen.add(key)
        dirnames.sort()
        for filename in sorted(filenames):
            path = Path(dirpath, filename)
            if not path.is_file():
                LOGGER.debug("Skipping non-regular file %s", path)
                continue
            yield path


def _file_id(path: Path) -> tuple[int, int]:
    st = os.stat(path)
    return st.st_dev, st.st_ino


def _raise(error: OSError) -> None:
    raise error
