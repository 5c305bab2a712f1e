#!/usr/bin/env python3
"""cachezip CLI: back up and restore the cargo cache directories."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, NoReturn, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from cachezip.backup import create_backup
from cachezip.errors import CachezipError, ConfigurationError
from cachezip.formats import ArchiveFormat, CompressionOptions, ZipMethod, format_for_path
from cachezip.layout import CACHE_AREAS, describe_areas
from cachezip.restore import restore_backup
from cachezip.schemas import BackupReport, RestoreReport
from cachezip.settings import ROOT_ENV, Settings, get_settings

console = Console()
err_console = Console(stderr=True)
cli = typer.Typer(help="Back up $CARGO_HOME caches into one archive and restore them.")


@cli.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every archived or restored entry."),
) -> None:
    ctx.obj = {"verbose": verbose}


def _load_settings(json_output: bool) -> Settings:
    try:
        return get_settings()
    except ConfigurationError as exc:
        _fail(str(exc), json_output)


def _configure_logging(ctx: typer.Context, settings: Settings, *, json_output: bool) -> None:
    level = settings.log_level
    if ctx.obj and ctx.obj.get("verbose"):
        level = "DEBUG"
    elif json_output:
        level = "WARNING"
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _fail(detail: str, json_output: bool) -> NoReturn:
    if json_output:
        console.print_json(data={"status": "error", "detail": detail})
    else:
        console.print(f"[red]{escape(detail)}[/]")
    raise typer.Exit(1)


def _print_report(title: str, payload: dict[str, Any]) -> None:
    table = Table("Field", "Value", title=title)
    for key, value in payload.items():
        if isinstance(value, list):
            value = ", ".join(str(item) for item in value) or "—"
        elif isinstance(value, dict):
            value = "\n".join(f"{name}: {text}" for name, text in value.items()) or "—"
        table.add_row(key, escape(str(value)))
    console.print(table)


def _print_backup(report: BackupReport) -> None:
    _print_report(
        "Backup",
        {
            "archive": report.archive,
            "format": f"{report.format} ({report.codec}, level {report.level})",
            "files": report.files,
            "bytes": report.bytes,
            "included": report.included_areas,
            "missing": report.missing_areas,
        },
    )


def _print_restore(report: RestoreReport) -> None:
    _print_report(
        "Restore",
        {
            "archive": report.archive,
            "root": report.root,
            "files": report.files,
            "directories": report.directories,
            "bytes": report.bytes,
            "skipped": report.skipped,
            "comments": report.comments,
        },
    )


@cli.command()
def bak(
    ctx: typer.Context,
    save_path: Optional[Path] = typer.Option(
        None,
        "--save-path",
        "-s",
        help="Archive to write (default ./cargo_bak.zip or CACHEZIP_SAVE_PATH).",
    ),
    compression_level: Optional[int] = typer.Option(
        None,
        "--compression-level",
        "-c",
        min=0,
        help="Codec level; 0 uses the codec default.",
    ),
    archive_format: Optional[ArchiveFormat] = typer.Option(
        None,
        "--format",
        "-f",
        help="Container to write; defaults to the save path suffix.",
    ),
    method: ZipMethod = typer.Option(ZipMethod.DEFLATED, "--method", "-m", help="Zip compression method."),
    json_output: bool = typer.Option(False, "--json/--no-json", help="Emit JSON instead of a table."),
) -> None:
    """Back up git/db, registry/cache, registry/index and bin into one archive."""

    settings = _load_settings(json_output)
    _configure_logging(ctx, settings, json_output=json_output)
    destination = save_path or settings.save_path
    level = settings.compression_level if compression_level is None else compression_level
    try:
        options = CompressionOptions(
            format=archive_format or format_for_path(destination),
            method=method,
            level=level,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--compression-level") from exc

    if not json_output:
        console.print(f"Start backup of ${ROOT_ENV}: {escape(str(settings.root))}")
    try:
        report = create_backup(settings.root, destination, areas=CACHE_AREAS, options=options)
    except (CachezipError, OSError) as exc:
        _fail(f"Backup failed: {exc}", json_output)

    if json_output:
        console.print_json(data={"status": "ok", **report.model_dump(mode="json")})
        return
    _print_backup(report)
    console.print(f"[green]Backup finished:[/] {escape(str(destination))}")


@cli.command()
def restore(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Backup archive to restore into $CARGO_HOME."),
    json_output: bool = typer.Option(False, "--json/--no-json", help="Emit JSON instead of a table."),
) -> None:
    """Restore a backup archive into $CARGO_HOME, overwriting existing files."""

    if not path.exists():
        if json_output:
            console.print_json(data={"status": "ok", "found": False, "archive": str(path)})
        else:
            console.print(f"[yellow]not found path: {escape(str(path))}[/]")
        return

    settings = _load_settings(json_output)
    _configure_logging(ctx, settings, json_output=json_output)
    try:
        report = restore_backup(path, settings.root)
    except (CachezipError, OSError) as exc:
        _fail(f"Restore failed: {exc}", json_output)

    if json_output:
        console.print_json(data={"status": "ok", **report.model_dump(mode="json")})
        return
    _print_restore(report)
    console.print(f"[green]Restore finished:[/] {escape(str(path))}")


@cli.command()
def areas(
    json_output: bool = typer.Option(False, "--json/--no-json", help="Emit JSON instead of a table."),
) -> None:
    """Show which cache areas exist under $CARGO_HOME."""

    settings = _load_settings(json_output)
    statuses = describe_areas(settings.root, CACHE_AREAS)
    if json_output:
        console.print_json(data={"root": str(settings.root), "areas": [item.model_dump(mode="json") for item in statuses]})
        return
    table = Table("Area", "Relative path", "Path", "Present", title=f"${ROOT_ENV} = {escape(str(settings.root))}")
    for item in statuses:
        present = "[green]yes[/]" if item.exists else "[dim]no[/]"
        table.add_row(item.label, item.relative_path, escape(str(item.path)), present)
    console.print(table)


if __name__ == "__main__":
    cli()
