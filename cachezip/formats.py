"""Archive containers: zip (stdlib, plus zstd entries) and tar inside a zstd frame."""

from __future__ import annotations

import logging
import lzma
import os
import stat
import struct
import tarfile
import zipfile
import zlib
from contextlib import ExitStack
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Iterator

import zstandard as zstd

from cachezip.errors import ArchiveFormatError
from cachezip.layout import DIRECTORY_MARKER, is_directory_name

LOGGER = logging.getLogger(__name__)

ZIP_MAGIC = (b"PK\x03\x04", b"PK\x05\x06", b"PK\x07\x08")
ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"
ZIP_UNIX_SYSTEM = 3
ZIP_ZSTD_METHOD = 93
ZIP_ENCRYPTED_FLAG = 0x1
ZIP_LOCAL_HEADER_SIZE = 30

# Raised by the container libraries on truncated or corrupt input.
FORMAT_ERRORS: tuple[type[BaseException], ...] = (
    zipfile.BadZipFile,
    tarfile.TarError,
    zstd.ZstdError,
    zlib.error,
    lzma.LZMAError,
    EOFError,
    NotImplementedError,
)


class ArchiveFormat(str, Enum):
    ZIP = "zip"
    TAR_ZST = "tar.zst"


class ZipMethod(str, Enum):
    DEFLATED = "deflated"
    STORED = "stored"
    BZIP2 = "bzip2"
    LZMA = "lzma"


class EntryKind(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"
    OTHER = "other"


_ZIP_COMPRESSION = {
    ZipMethod.DEFLATED: zipfile.ZIP_DEFLATED,
    ZipMethod.STORED: zipfile.ZIP_STORED,
    ZipMethod.BZIP2: zipfile.ZIP_BZIP2,
    ZipMethod.LZMA: zipfile.ZIP_LZMA,
}

# Inclusive level bounds per codec; codecs missing here only accept 0.
LEVEL_RANGES: dict[str, tuple[int, int]] = {
    "deflated": (1, 9),
    "bzip2": (1, 9),
    "zstd": (1, 22),
}


@dataclass(frozen=True, slots=True)
class CompressionOptions:
    """Container plus codec settings applied uniformly to every entry.

    ``level`` 0 selects the codec's own default. ``method`` only applies to
    zip; tar.zst always compresses with zstd.
    """

    format: ArchiveFormat = ArchiveFormat.ZIP
    method: ZipMethod = ZipMethod.DEFLATED
    level: int = 0

    def __post_init__(self) -> None:
        if self.level == 0:
            return
        bounds = LEVEL_RANGES.get(self.codec)
        if bounds is None:
            raise ValueError(f"{self.codec} has no compression levels; use 0")
        low, high = bounds
        if not low <= self.level <= high:
            raise ValueError(f"{self.codec} compression level must be between {low} and {high} (or 0)")

    @property
    def codec(self) -> str:
        if self.format is ArchiveFormat.TAR_ZST:
            return "zstd"
        return self.method.value

    @property
    def codec_level(self) -> int | None:
        return self.level or None


@dataclass(frozen=True, slots=True)
class ArchiveEntry:
    """One stored unit as read back from a container."""

    name: str
    kind: EntryKind
    size: int = 0
    mode: int | None = None
    comment: str = ""

    @property
    def is_dir(self) -> bool:
        return self.kind is EntryKind.DIRECTORY


def format_for_path(path: Path) -> ArchiveFormat:
    """Pick a container from the destination suffix; zip unless it says zstd."""

    name = path.name.lower()
    if name.endswith(".tar.zst") or name.endswith(".tzst"):
        return ArchiveFormat.TAR_ZST
    return ArchiveFormat.ZIP


def sniff_format(path: Path) -> ArchiveFormat:
    with path.open("rb") as handle:
        head = handle.read(4)
    if head in ZIP_MAGIC:
        return ArchiveFormat.ZIP
    if head == ZSTD_MAGIC:
        return ArchiveFormat.TAR_ZST
    raise ArchiveFormatError(f"{path} is neither a zip nor a zstd-compressed tar archive")


class ZipArchiveWriter:
    def __init__(self, path: Path, options: CompressionOptions) -> None:
        self.path = path
        self._zip = zipfile.ZipFile(
            path,
            "w",
            compression=_ZIP_COMPRESSION[options.method],
            compresslevel=options.codec_level,
            strict_timestamps=False,
        )

    def add_file(self, source: Path, name: str) -> int:
        """Stream ``source`` into a new entry; returns the stored byte count."""

        self._zip.write(source, arcname=name)
        return self._zip.getinfo(name).file_size

    def close(self) -> None:
        self._zip.close()

    def __enter__(self) -> ZipArchiveWriter:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class TarZstArchiveWriter:
    def __init__(self, path: Path, options: CompressionOptions) -> None:
        self.path = path
        level = options.codec_level
        compressor = zstd.ZstdCompressor(level=level) if level is not None else zstd.ZstdCompressor()
        self._stack = ExitStack()
        try:
            handle = self._stack.enter_context(path.open("wb"))
            stream = self._stack.enter_context(compressor.stream_writer(handle))
            self._tar = self._stack.enter_context(
                tarfile.open(fileobj=stream, mode="w|", format=tarfile.PAX_FORMAT)
            )
        except BaseException:
            self._stack.close()
            raise

    def add_file(self, source: Path, name: str) -> int:
        """Stream ``source`` into a new member; returns the stored byte count."""

        with source.open("rb") as handle:
            # fstat follows symlinks and never turns a second hard link into a LNKTYPE member.
            st = os.fstat(handle.fileno())
            info = tarfile.TarInfo(name)
            info.size = st.st_size
            info.mode = stat.S_IMODE(st.st_mode)
            info.mtime = st.st_mtime
            self._tar.addfile(info, handle)
        return info.size

    def close(self) -> None:
        self._stack.close()

    def __enter__(self) -> TarZstArchiveWriter:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


ArchiveWriter = ZipArchiveWriter | TarZstArchiveWriter


def open_writer(path: Path, options: CompressionOptions) -> ArchiveWriter:
    if options.format is ArchiveFormat.TAR_ZST:
        return TarZstArchiveWriter(path, options)
    return ZipArchiveWriter(path, options)


def _zip_mode(info: zipfile.ZipInfo) -> int | None:
    if info.create_system != ZIP_UNIX_SYSTEM:
        return None
    mode = info.external_attr >> 16
    if not mode:
        return None
    return stat.S_IMODE(mode)


def _zip_entry(info: zipfile.ZipInfo) -> ArchiveEntry:
    kind = EntryKind.DIRECTORY if is_directory_name(info.filename) else EntryKind.FILE
    return ArchiveEntry(
        name=info.filename,
        kind=kind,
        size=info.file_size,
        mode=_zip_mode(info),
        comment=info.comment.decode("utf-8", errors="replace"),
    )


def _tar_entry(member: tarfile.TarInfo) -> ArchiveEntry:
    if member.isdir():
        kind = EntryKind.DIRECTORY
        name = member.name.rstrip("/") + DIRECTORY_MARKER
    elif member.isfile():
        kind = EntryKind.FILE
        name = member.name
    else:
        kind = EntryKind.OTHER
        name = member.name
    return ArchiveEntry(
        name=name,
        kind=kind,
        size=member.size if kind is EntryKind.FILE else 0,
        mode=stat.S_IMODE(member.mode),
        comment=member.pax_headers.get("comment", ""),
    )


class ZstdZipMember:
    """Payload of a zip entry compressed with method 93 (zstd).

    ``zipfile`` cannot decode this method, so the member's local header is
    skipped by hand and its data is streamed through a zstd decompressor.
    Size and CRC are checked against the central directory at end of stream.
    """

    def __init__(self, path: Path, info: zipfile.ZipInfo) -> None:
        self._info = info
        self._crc = 0
        self._size = 0
        self._handle = path.open("rb")
        try:
            self._handle.seek(info.header_offset)
            header = self._handle.read(ZIP_LOCAL_HEADER_SIZE)
            if len(header) != ZIP_LOCAL_HEADER_SIZE or header[:4] != ZIP_MAGIC[0]:
                raise zipfile.BadZipFile(f"Bad local header for {info.filename!r}")
            name_length, extra_length = struct.unpack("<HH", header[26:30])
            self._handle.seek(name_length + extra_length, os.SEEK_CUR)
            self._stream = zstd.ZstdDecompressor().stream_reader(self._handle, closefd=False)
        except BaseException:
            self._handle.close()
            raise

    def read(self, size: int = -1) -> bytes:
        data = self._stream.read(size)
        if data:
            self._crc = zlib.crc32(data, self._crc)
            self._size += len(data)
        elif size != 0:
            self._verify()
        return data

    def _verify(self) -> None:
        if self._size != self._info.file_size:
            raise zipfile.BadZipFile(f"Size mismatch for {self._info.filename!r}")
        if self._crc != self._info.CRC:
            raise zipfile.BadZipFile(f"Bad CRC-32 for {self._info.filename!r}")

    def close(self) -> None:
        self._stream.close()
        self._handle.close()

    def __enter__(self) -> ZstdZipMember:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def iter_zip(path: Path) -> Iterator[tuple[ArchiveEntry, IO[bytes] | None]]:
    with zipfile.ZipFile(path) as archive:
        for info in archive.infolist():
            entry = _zip_entry(info)
            if entry.kind is not EntryKind.FILE:
                yield entry, None
                continue
            if info.flag_bits & ZIP_ENCRYPTED_FLAG:
                raise ArchiveFormatError(f"{path}: entry {info.filename!r} is encrypted")
            if info.compress_type == ZIP_ZSTD_METHOD:
                with ZstdZipMember(path, info) as payload:
                    yield entry, payload
                continue
            with archive.open(info) as payload:
                yield entry, payload


def iter_tar_zst(path: Path) -> Iterator[tuple[ArchiveEntry, IO[bytes] | None]]:
    decompressor = zstd.ZstdDecompressor()
    with path.open("rb") as handle, decompressor.stream_reader(handle) as stream:
        with tarfile.open(fileobj=stream, mode="r|") as archive:
            for member in archive:
                entry = _tar_entry(member)
                if entry.kind is not EntryKind.FILE:
                    yield entry, None
                    continue
                payload = archive.extractfile(member)
                if payload is None:
                    yield entry, None
                    continue
                with payload:
                    yield entry, payload


def iter_entries(path: Path) -> Iterator[tuple[ArchiveEntry, IO[bytes] | None]]:
    """Yield ``(entry, payload)`` pairs in stored order.

    ``payload`` is a readable binary stream for file entries and ``None``
    otherwise. It is only valid until the next pair is requested.
    """

    archive_format = sniff_format(path)
    LOGGER.debug("Reading %s as %s", path, archive_format.value)
    if archive_format is ArchiveFormat.TAR_ZST:
        return iter_tar_zst(path)
    return iter_zip(path)
