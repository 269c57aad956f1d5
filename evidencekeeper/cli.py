# -*- coding: utf-8 -*-
"""EvidenceKeeper command line.

Thin glue over :mod:`evidencekeeper.logic`. Each core failure category maps
to its own exit code so scripts can tell a wrong password from a broken
file without parsing messages.
"""
from __future__ import annotations

from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar
import asyncio
import logging

import click

from . import __version__, logic
from .backup import (
    create_encrypted_backup,
    default_backup_filename,
    read_backup_file,
    restore_encrypted_backup,
    write_backup_file,
)
from .config import load_config
from .errors import (
    CorruptBackup,
    EvidenceKeeperError,
    IncorrectPasswordOrCorrupted,
    PasswordTooWeak,
    SchemaError,
    StorageUnavailable,
)
from .store import RecordStore
from .sync import merge

T = TypeVar("T")

EXIT_CODES = {
    StorageUnavailable: 3,
    SchemaError: 4,
    PasswordTooWeak: 5,
    IncorrectPasswordOrCorrupted: 6,
    CorruptBackup: 7,
}

MESSAGES = {
    StorageUnavailable: "Storage is unavailable",
    SchemaError: "The record store cannot be read by this version",
    PasswordTooWeak: "Password must be at least 6 characters",
    IncorrectPasswordOrCorrupted: "Incorrect password or corrupted backup file",
    CorruptBackup: "This is not a valid backup file",
}


class CoreError(click.ClickException):
    """Report a core failure by category, without internal detail."""

    def __init__(self, exc: EvidenceKeeperError) -> None:
        kind = next((k for k in EXIT_CODES if isinstance(exc, k)), None)
        super().__init__(MESSAGES.get(kind, "Operation failed"))
        self.exit_code = EXIT_CODES.get(kind, 1)


def _run(coro: Awaitable[T]) -> T:
    try:
        return asyncio.run(coro)
    except EvidenceKeeperError as exc:
        logging.getLogger("evidencekeeper.cli").debug("Command failed", exc_info=True)
        raise CoreError(exc) from exc


async def _with_store(ctx_obj: dict, fn: Callable[[RecordStore], Awaitable[T]]) -> T:
    store = await logic.open_store(ctx_obj["config"])
    try:
        return await fn(store)
    finally:
        await store.close()


password_option = click.option(
    "--password",
    prompt=True,
    hide_input=True,
    envvar="EVIDENCEKEEPER_PASSWORD",
    help="Backup password (prompted when omitted).",
)


@click.group()
@click.version_option(version=__version__, prog_name="evidencekeeper")
@click.option("--db", "db_path", type=click.Path(dir_okay=False), help="Path to the record store.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, db_path: Optional[str], verbose: bool) -> None:
    """EvidenceKeeper: encrypted evidence records with portable backups."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    cfg = load_config()
    if db_path:
        cfg["db_path"] = db_path
    ctx.obj = {"config": cfg}


@main.command("export")
@click.argument("path", type=click.Path(dir_okay=False), required=False)
@password_option
@click.pass_obj
def export_cmd(obj: dict, path: Optional[str], password: str) -> None:
    """Write an encrypted backup of every record."""
    cfg = obj["config"]
    target = Path(path or default_backup_filename())

    async def _export(store: RecordStore):
        return await logic.export_backup(
            store,
            password,
            settings_map=cfg["backup_settings"],
            version=str(cfg["backup_version"]),
        )

    envelope = _run(_with_store(obj, _export))
    write_backup_file(target, envelope)
    click.echo(f"Backup written to {target}")


@main.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@password_option
@click.option("--yes", is_flag=True, help="Replace local records without asking.")
@click.pass_obj
def import_cmd(obj: dict, path: str, password: str, yes: bool) -> None:
    """Restore a backup, replacing every local record."""
    cfg = obj["config"]
    if not yes:
        click.confirm("This replaces all local records. Continue?", abort=True)

    async def _import(store: RecordStore):
        envelope = read_backup_file(path)
        return await logic.import_backup(store, password, envelope, cfg["backup_settings"])

    snapshot = _run(_with_store(obj, _import))
    click.echo(f"Restored {len(snapshot.records)} records")


@main.command("verify")
@click.pass_context
def verify_cmd(ctx: click.Context) -> None:
    """List records whose integrity hash does not match their content."""
    bad = _run(_with_store(ctx.obj, logic.find_tampered))
    if not bad:
        click.echo("All records verified")
        return
    for record_id in bad:
        click.echo(f"FAILED {record_id}")
    ctx.exit(2)


@main.command("merge")
@click.argument("local", type=click.Path(exists=True, dir_okay=False))
@click.argument("remote", type=click.Path(exists=True, dir_okay=False))
@click.argument("out", type=click.Path(dir_okay=False))
@password_option
@click.option("--remote-password", default=None, help="Password of REMOTE, if different.")
def merge_cmd(local: str, remote: str, out: str, password: str, remote_password: Optional[str]) -> None:
    """Merge two backup files; records in LOCAL win on id collisions."""
    try:
        local_env = read_backup_file(local)
        local_snap = restore_encrypted_backup(password, local_env)
        remote_snap = restore_encrypted_backup(remote_password or password, read_backup_file(remote))
        merged = merge(local_snap, remote_snap)
        envelope = create_encrypted_backup(password, merged, version=local_env.version)
    except EvidenceKeeperError as exc:
        raise CoreError(exc) from exc
    write_backup_file(out, envelope)
    click.echo(f"Merged backup with {len(merged.records)} records written to {out}")


@main.command("import-legacy")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--yes", is_flag=True, help="Replace local records without asking.")
@click.pass_obj
def import_legacy_cmd(obj: dict, path: str, yes: bool) -> None:
    """Import a plaintext JSON export from an older app version."""
    cfg = obj["config"]
    if not yes:
        click.confirm("This replaces all local records. Continue?", abort=True)

    async def _import(store: RecordStore):
        return await logic.import_legacy_json(store, text, cfg["backup_settings"])

    try:
        text = Path(path).read_text(encoding="utf-8")
        count = _run(_with_store(obj, _import))
    except (KeyError, TypeError, ValueError) as exc:
        raise click.ClickException(f"Legacy export is invalid: {exc}") from exc
    click.echo(f"Imported {count} records")
