"""Pydantic DTOs describing one backup or restore run."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field


class AreaStatus(BaseModel):
    """Where a cache area lives under a root and whether it is there."""

    label: str
    relative_path: str
    path: Path
    exists: bool


class BackupReport(BaseModel):
    """Summary returned by ``create_backup``."""

    archive: Path
    root: Path
    format: str = Field(description="Container written (zip or tar.zst)")
    codec: str = Field(description="Compression codec applied to every entry")
    level: int = Field(ge=0, description="Requested level; 0 means codec default")
    files: int = 0
    bytes: int = Field(default=0, ge=0, description="Uncompressed bytes stored")
    included_areas: list[str] = Field(default_factory=list)
    missing_areas: list[str] = Field(default_factory=list)


class RestoreReport(BaseModel):
    """Summary returned by ``restore_backup``."""

    archive: Path
    root: Path
    found: bool = Field(default=True, description="False when the archive path did not exist")
    files: int = 0
    directories: int = 0
    bytes: int = Field(default=0, ge=0, description="Decompressed bytes written")
    skipped: list[str] = Field(default_factory=list, description="Entry names that were not restored")
    comments: dict[str, str] = Field(default_factory=dict, description="Entry name to stored comment")
