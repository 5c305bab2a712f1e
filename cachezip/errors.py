"""Exception hierarchy shared by the backup and restore pipelines."""

from __future__ import annotations


class CachezipError(RuntimeError):
    """Base class for failures raised by cachezip itself."""


class ConfigurationError(CachezipError):
    """Raised when required configuration is missing or invalid."""


class BackupError(CachezipError):
    """Raised when a walked file cannot be stored relative to the root."""


class ArchiveFormatError(CachezipError):
    """Raised when a restore input is not a readable archive."""


class UnsafeArchivePath(ValueError):
    """Raised when an archive entry name would escape the destination root."""
