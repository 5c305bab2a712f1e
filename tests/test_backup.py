from __future__ import annotations

import errno
import os
import sys
import zipfile
from pathlib import Path

import pytest

from cachezip import formats
from cachezip.backup import create_backup, iter_files
from cachezip.formats import ArchiveFormat, CompressionOptions, ZipMethod, iter_entries
from cachezip.layout import CACHE_AREAS, CacheArea

posix_only = pytest.mark.skipif(os.name != "posix", reason="symlinks and modes need POSIX")


def _write(path: Path, data: bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def _cargo_home(root: Path) -> Path:
    _write(root / "registry" / "cache" / "index.crates.io-6f17d22bba15001f" / "serde-1.0.0.crate", b"serde" * 40)
    _write(root / "registry" / "index" / "index.crates.io-6f17d22bba15001f" / "config.json", b"{}")
    _write(root / "git" / "db" / "tokio-1a2b3c" / "HEAD", b"ref: refs/heads/master\n")
    _write(root / "bin" / "cargo-nextest", b"\x7fELF")
    _write(root / "registry" / "src" / "index.crates.io-6f17d22bba15001f" / "serde-1.0.0" / "lib.rs", b"// src")
    _write(root / "config.toml", b"[net]\n")
    return root


def test_example_crate_is_stored_relative_to_root(tmp_path: Path):
    root = tmp_path / "h"
    _write(root / "registry" / "cache" / "pkg-1.0.crate", bytes(range(100)))
    destination = tmp_path / "out.zip"

    report = create_backup(root, destination)

    with zipfile.ZipFile(destination) as archive:
        assert archive.namelist() == ["registry/cache/pkg-1.0.crate"]
        assert archive.read("registry/cache/pkg-1.0.crate") == bytes(range(100))
    assert report.files == 1
    assert report.bytes == 100
    assert report.included_areas == ["registry-cache"]
    assert report.missing_areas == ["git-db", "registry-index", "bin"]


def test_only_configured_areas_are_walked_in_table_order(tmp_path: Path):
    root = _cargo_home(tmp_path / "cargo")
    destination = tmp_path / "cargo_bak.zip"

    create_backup(root, destination)

    with zipfile.ZipFile(destination) as archive:
        names = archive.namelist()
    assert names == [
        "git/db/tokio-1a2b3c/HEAD",
        "registry/cache/index.crates.io-6f17d22bba15001f/serde-1.0.0.crate",
        "registry/index/index.crates.io-6f17d22bba15001f/config.json",
        "bin/cargo-nextest",
    ]


def test_custom_area_table(tmp_path: Path):
    root = _cargo_home(tmp_path / "cargo")
    destination = tmp_path / "src.zip"
    areas = [CacheArea("registry-src", "registry/src")]

    report = create_backup(root, destination, areas=areas)

    with zipfile.ZipFile(destination) as archive:
        assert archive.namelist() == ["registry/src/index.crates.io-6f17d22bba15001f/serde-1.0.0/lib.rs"]
    assert report.included_areas == ["registry-src"]


def test_missing_areas_still_produce_valid_archive(tmp_path: Path):
    root = tmp_path / "empty-home"
    root.mkdir()
    destination = tmp_path / "cargo_bak.zip"

    report = create_backup(root, destination)

    assert zipfile.is_zipfile(destination)
    with zipfile.ZipFile(destination) as archive:
        assert archive.namelist() == []
    assert report.files == 0
    assert report.missing_areas == [area.label for area in CACHE_AREAS]


def test_missing_areas_tar_zst_is_valid(tmp_path: Path):
    destination = tmp_path / "cargo_bak.tar.zst"

    report = create_backup(tmp_path / "nowhere", destination, options=CompressionOptions(format=ArchiveFormat.TAR_ZST))

    assert report.format == "tar.zst"
    assert report.codec == "zstd"
    assert list(iter_entries(destination)) == []


def test_compression_level_and_method_apply_to_every_entry(tmp_path: Path):
    root = _cargo_home(tmp_path / "cargo")
    destination = tmp_path / "cargo_bak.zip"

    report = create_backup(root, destination, options=CompressionOptions(method=ZipMethod.BZIP2, level=9))

    with zipfile.ZipFile(destination) as archive:
        assert {info.compress_type for info in archive.infolist()} == {zipfile.ZIP_BZIP2}
    assert report.codec == "bzip2"
    assert report.level == 9


def test_destination_inside_area_is_not_archived(tmp_path: Path):
    root = _cargo_home(tmp_path / "cargo")
    destination = root / "registry" / "cache" / "cargo_bak.zip"

    create_backup(root, destination)

    with zipfile.ZipFile(destination) as archive:
        assert "registry/cache/cargo_bak.zip" not in archive.namelist()


def test_io_failure_aborts_backup(monkeypatch, tmp_path: Path):
    root = _cargo_home(tmp_path / "cargo")

    def _disk_full(self, source, name):  # noqa: ANN001
        raise OSError(errno.ENOSPC, "No space left on device")

    monkeypatch.setattr(formats.ZipArchiveWriter, "add_file", _disk_full)

    with pytest.raises(OSError):
        create_backup(root, tmp_path / "cargo_bak.zip")


@posix_only
def test_symlinked_file_is_archived_with_target_bytes(tmp_path: Path):
    root = tmp_path / "cargo"
    target = _write(tmp_path / "shared" / "tool", b"#!/bin/sh\necho hi\n")
    (root / "bin").mkdir(parents=True)
    (root / "bin" / "tool").symlink_to(target)
    (root / "bin" / "dangling").symlink_to(tmp_path / "missing")
    destination = tmp_path / "cargo_bak.zip"

    create_backup(root, destination)

    with zipfile.ZipFile(destination) as archive:
        assert archive.namelist() == ["bin/tool"]
        assert archive.read("bin/tool") == b"#!/bin/sh\necho hi\n"


@posix_only
def test_symlink_cycles_are_walked_once(tmp_path: Path):
    area = tmp_path / "git" / "db"
    _write(area / "repo" / "HEAD", b"ref")
    (area / "repo" / "loop").symlink_to(area)

    files = [path.relative_to(tmp_path).as_posix() for path in iter_files(area)]

    assert files == ["git/db/repo/HEAD"]


@pytest.mark.skipif(sys.platform != "linux", reason="needs a filesystem that stores raw name bytes")
def test_undecodable_file_name_is_stored_lossily(tmp_path: Path):
    root = tmp_path / "cargo"
    cache = root / "registry" / "cache"
    cache.mkdir(parents=True)
    (cache / os.fsdecode(b"bad-\xff.crate")).write_bytes(b"crate")
    destination = tmp_path / "cargo_bak.zip"

    report = create_backup(root, destination)

    with zipfile.ZipFile(destination) as archive:
        assert archive.namelist() == ["registry/cache/bad-�.crate"]
        assert archive.read("registry/cache/bad-�.crate") == b"crate"
    assert report.files == 1
