# -*- coding: utf-8 -*-
"""Versioned snapshot payloads and their migrations.

Each payload carries a ``major.minor`` version string. Readers accept any
minor of the current major: older minors go through the registered
migration chain, newer ones are read as-is with a warning. A different
major is unreadable.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, Tuple, Union
import copy
import json
import logging

from .errors import CorruptBackup
from .models import Record, Snapshot

logger = logging.getLogger("evidencekeeper.schema")

SNAPSHOT_VERSION = "1.1"

Payload = Dict[str, Any]


def _migrate_1_0(payload: Payload) -> Payload:
    """1.0 -> 1.1: every record carries ``tags`` and ``eventLog``; no null settings."""
    records = payload.get("records")
    if isinstance(records, list):
        for rec in records:
            if isinstance(rec, dict):
                rec.setdefault("tags", [])
                rec.setdefault("eventLog", [])
    settings = payload.get("settings")
    if isinstance(settings, dict):
        payload["settings"] = {k: v for k, v in settings.items() if v is not None}
    payload["version"] = "1.1"
    return payload


# source version -> migration producing the next version
MIGRATIONS: Dict[str, Callable[[Payload], Payload]] = {
    "1.0": _migrate_1_0,
}


def split_version(version: Any) -> Tuple[int, int]:
    """Parse ``"major.minor"``; raises CorruptBackup if unreadable."""
    if not isinstance(version, str):
        raise CorruptBackup("Backup payload has no version")
    major, _, minor = version.partition(".")
    try:
        return int(major), int(minor or 0)
    except ValueError:
        raise CorruptBackup(f"Unreadable payload version {version!r}") from None


def migrate(payload: Payload) -> Payload:
    """Bring *payload* up to :data:`SNAPSHOT_VERSION` where a migration exists."""
    version = payload.get("version")
    major, minor = split_version(version)
    cur_major, cur_minor = split_version(SNAPSHOT_VERSION)
    if major != cur_major:
        raise CorruptBackup(
            f"Unsupported payload version {version} (expected {cur_major}.x)"
        )
    if version == SNAPSHOT_VERSION:
        return payload

    logger.warning("Backup version mismatch: %s vs %s", version, SNAPSHOT_VERSION)
    if minor > cur_minor:
        # newer writer, same major: read what we understand
        return payload

    payload = copy.deepcopy(payload)
    while payload.get("version") in MIGRATIONS:
        src = payload["version"]
        payload = MIGRATIONS[src](payload)
        logger.info("Migrated snapshot payload %s -> %s", src, payload["version"])
    return payload


def parse_snapshot(raw: Union[bytes, str, Payload]) -> Snapshot:
    """Decode a plaintext payload into a :class:`Snapshot`.

    Raises :class:`CorruptBackup` for anything structurally unreadable.
    """
    if isinstance(raw, (bytes, str)):
        try:
            payload = json.loads(raw)
        except (UnicodeDecodeError, ValueError) as exc:
            raise CorruptBackup("Backup payload is not valid JSON") from exc
    else:
        payload = raw
    if not isinstance(payload, dict):
        raise CorruptBackup("Backup payload must be a JSON object")

    payload = migrate(payload)

    export_date = payload.get("exportDate")
    records = payload.get("records")
    settings = payload.get("settings", {})
    if not isinstance(export_date, str):
        raise CorruptBackup("Backup payload has no exportDate")
    if not isinstance(records, list):
        raise CorruptBackup("Backup payload has no record list")
    if not isinstance(settings, dict) or not all(
        isinstance(k, str) and (v is None or isinstance(v, str))
        for k, v in settings.items()
    ):
        raise CorruptBackup("Backup settings must map strings to strings")

    try:
        parsed = [Record.from_dict(r) for r in records]
    except (KeyError, TypeError, ValueError) as exc:
        raise CorruptBackup(f"Backup contains an invalid record: {exc}") from exc

    return Snapshot(
        version=payload["version"],
        export_date=export_date,
        records=parsed,
        settings=dict(settings),
    )
