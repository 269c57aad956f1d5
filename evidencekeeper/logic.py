# -*- coding: utf-8 -*-
"""Application logic that composes the store, hashing and backup layers.

This module provides the public API used by the CLI and by sync. It does not
contain any presentation code. All side effects (store I/O) are explicit
and go through the :class:`RecordStore` passed in.
"""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional
import json
import logging
import uuid

from . import hashing
from .backends import select_backend
from .backup import (
    BACKUP_VERSION,
    EnvelopeLike,
    create_encrypted_backup_async,
    restore_encrypted_backup_async,
)
from .config import DEFAULT_BACKUP_SETTINGS
from .models import Attachment, EncryptedEnvelope, EventLogEntry, Record, Snapshot
from .schema import SNAPSHOT_VERSION
from .store import RecordStore

logger = logging.getLogger("evidencekeeper.logic")

CONTENT_FIELDS = ("description", "tags", "severity", "people", "location", "files")
EDITABLE_FIELDS = CONTENT_FIELDS + ("date_time",)


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------
# Store bridge
# ---------------------------------------------------------------------

async def open_store(cfg: Mapping[str, object], at_rest_key: Optional[bytes] = None) -> RecordStore:
    """Select the backend once from *cfg* and return an initialized store."""
    backend = select_backend(
        storage=str(cfg.get("storage_backend", "sqlite")),
        db_path=str(cfg.get("db_path")),
        allow_memory_fallback=bool(cfg.get("allow_memory_fallback", False)),
    )
    store = RecordStore(backend, at_rest_key=at_rest_key)
    await store.init()
    return store


# ---------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------

def new_record(
    description: str,
    tags: Iterable[str] = (),
    *,
    severity: Optional[int] = None,
    people: Optional[List[str]] = None,
    location: Optional[str] = None,
    date_time: Optional[str] = None,
    files: Optional[List[Attachment]] = None,
) -> Record:
    """Build a sealed record with a fresh id and a ``created`` log entry."""
    created_at = utcnow_iso()
    record = Record(
        id=str(uuid.uuid4()),
        created_at=created_at,
        description=description,
        tags=list(tags),
        severity=severity,
        people=people,
        location=location,
        files=files,
        date_time=date_time or created_at,
        event_log=[EventLogEntry(timestamp=created_at, action="created")],
    )
    return hashing.seal(record)


async def add_record(store: RecordStore, description: str, tags: Iterable[str] = (), **fields) -> Record:
    """Create, seal and store a new record."""
    record = new_record(description, tags, **fields)
    await store.put(record)
    logger.info("Added record %s", record.id)
    return record


async def _require_record(store: RecordStore, record_id: str) -> Record:
    record = await store.get(record_id)
    if record is None:
        raise ValueError("Record not found")
    return record


def _log(record: Record, action: str, when: str) -> List[EventLogEntry]:
    return list(record.event_log) + [EventLogEntry(timestamp=when, action=action)]


async def update_record(store: RecordStore, record_id: str, **changes) -> Record:
    """Apply *changes* to a record, re-hash it and append to its event log."""
    unknown = set(changes) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValueError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
    record = await _require_record(store, record_id)

    when = utcnow_iso()
    updated = replace(record, **changes)
    updated = replace(updated, edited_at=when, event_log=_log(record, "edited", when))
    if any(getattr(record, f) != getattr(updated, f) for f in CONTENT_FIELDS):
        updated = hashing.seal(updated)
    await store.put(updated)
    logger.info("Updated record %s", record_id)
    return updated


async def delete_record(store: RecordStore, record_id: str) -> None:
    await store.delete(record_id)


async def add_attachment(
    store: RecordStore,
    record_id: str,
    *,
    name: str,
    url: str,
    type: str,
    source: str,
    content: Optional[bytes] = None,
    ocr_text: Optional[str] = None,
) -> Attachment:
    """Attach a file to a record; hashes *content* when given."""
    record = await _require_record(store, record_id)
    attachment = Attachment(
        id=str(uuid.uuid4()),
        name=name,
        url=url,
        type=type,
        source=source,
        file_hash=hashing.hash_bytes(content) if content is not None else None,
        ocr_text=ocr_text,
    )
    when = utcnow_iso()
    updated = replace(
        record,
        files=list(record.files or []) + [attachment],
        edited_at=when,
        event_log=_log(record, f"attachment added: {name}", when),
    )
    await store.put(hashing.seal(updated))
    return attachment


async def remove_attachment(store: RecordStore, record_id: str, attachment_id: str) -> None:
    record = await _require_record(store, record_id)
    files = list(record.files or [])
    match = [f for f in files if f.id == attachment_id]
    if not match:
        raise ValueError("Attachment not found")
    when = utcnow_iso()
    updated = replace(
        record,
        files=[f for f in files if f.id != attachment_id],
        edited_at=when,
        event_log=_log(record, f"attachment removed: {match[0].name}", when),
    )
    await store.put(hashing.seal(updated))


async def find_tampered(store: RecordStore) -> List[str]:
    """Return ids of records whose content hash does not verify."""
    return [r.id for r in await store.get_all() if not hashing.verify(r)]


# ---------------------------------------------------------------------
# Snapshots and backups
# ---------------------------------------------------------------------

async def build_snapshot(
    store: RecordStore,
    settings_map: Mapping[str, str] = DEFAULT_BACKUP_SETTINGS,
) -> Snapshot:
    """Copy every record and the backed-up settings into a new snapshot."""
    settings: Dict[str, Optional[str]] = {}
    for short, key in settings_map.items():
        value = await store.get_setting(key)
        if value is not None:
            settings[short] = value
    return Snapshot(
        version=SNAPSHOT_VERSION,
        export_date=utcnow_iso(),
        records=await store.get_all(),
        settings=settings,
    )


async def apply_snapshot(
    store: RecordStore,
    snapshot: Snapshot,
    settings_map: Mapping[str, str] = DEFAULT_BACKUP_SETTINGS,
) -> None:
    """Replace the record set with *snapshot* and import its known settings.

    Settings absent from the snapshot keep their local value.
    """
    await store.replace_all(snapshot.records)
    for short, key in settings_map.items():
        value = snapshot.settings.get(short)
        if value is not None:
            await store.put_setting(key, value)
    logger.info("Applied snapshot with %d records", len(snapshot.records))


async def export_backup(
    store: RecordStore,
    password: str,
    settings_map: Mapping[str, str] = DEFAULT_BACKUP_SETTINGS,
    version: str = BACKUP_VERSION,
) -> EncryptedEnvelope:
    snapshot = await build_snapshot(store, settings_map)
    return await create_encrypted_backup_async(password, snapshot, version)


async def import_backup(
    store: RecordStore,
    password: str,
    envelope: EnvelopeLike,
    settings_map: Mapping[str, str] = DEFAULT_BACKUP_SETTINGS,
) -> Snapshot:
    """Decrypt *envelope* and, only if that fully succeeds, apply it."""
    snapshot = await restore_encrypted_backup_async(password, envelope)
    await apply_snapshot(store, snapshot, settings_map)
    return snapshot


async def import_legacy_json(
    store: RecordStore,
    text: str,
    settings_map: Mapping[str, str] = DEFAULT_BACKUP_SETTINGS,
) -> int:
    """Import a plaintext legacy export and return the number of records.

    Accepts either a bare list of records or an object with ``records`` and
    optional ``settings`` keyed by store key (the layout the app used before
    it had a database).
    """
    data = json.loads(text)
    if isinstance(data, list):
        data = {"records": data, "settings": {}}
    if not isinstance(data, dict) or not isinstance(data.get("records"), list):
        raise ValueError("Legacy export must be a record list or an object with records")

    records = [Record.from_dict(r) for r in data["records"]]
    await store.replace_all(records)
    legacy_settings = data.get("settings") or {}
    for key in settings_map.values():
        value = legacy_settings.get(key)
        if isinstance(value, str):
            await store.put_setting(key, value)
    logger.info("Imported %d legacy records", len(records))
    return len(records)
