# -*- coding: utf-8 -*-
"""Snapshot reconciliation between devices.

The merge itself is pure: it takes two snapshots and returns a third.
Moving blobs to and from the remote side is the job of a
:class:`SyncTransport` supplied by the caller.

Merge policy: local wins by presence. If an id exists locally, the local
copy is kept untouched and any remote copy with that id is dropped; ids
only known remotely are appended. Remote edits to a shared id are therefore
lost.
"""
from __future__ import annotations

from typing import Any, Dict, Optional, Protocol, Union
import asyncio
import base64
import binascii
import json
import logging

from cryptography.exceptions import InvalidTag

from .crypto import (
    NONCE_LEN,
    SALT_LEN,
    TAG_LEN,
    aesgcm_decrypt,
    aesgcm_encrypt,
    derive_key,
    random_salt,
)
from .config import DEFAULT_BACKUP_SETTINGS
from .errors import CorruptBackup, IncorrectPasswordOrCorrupted
from .logic import build_snapshot
from .models import Snapshot
from .schema import parse_snapshot
from .store import RecordStore

logger = logging.getLogger("evidencekeeper.sync")

SnapshotLike = Union[Snapshot, Dict, bytes, str]


def _decode(side: str, snap: SnapshotLike) -> Snapshot:
    if isinstance(snap, Snapshot):
        return snap
    try:
        return parse_snapshot(snap)
    except CorruptBackup as exc:
        raise CorruptBackup(f"{side} snapshot could not be decoded: {exc}") from exc


def merge(local: SnapshotLike, remote: SnapshotLike) -> Snapshot:
    """Union of both record sets keyed by id, local copy winning on collision.

    Both sides are fully decoded before anything is merged, so a bad input
    raises :class:`CorruptBackup` without producing partial output. Neither
    input is modified. Settings are taken from *local*.
    """
    local_snap = _decode("local", local)
    remote_snap = _decode("remote", remote)

    merged = list(local_snap.records)
    seen = {r.id for r in merged}
    added = 0
    for record in remote_snap.records:
        if record.id in seen:
            continue
        seen.add(record.id)
        merged.append(record)
        added += 1

    logger.info(
        "Merged snapshots: %d local, %d remote, %d added from remote",
        len(local_snap.records),
        len(remote_snap.records),
        added,
    )
    return Snapshot(
        version=local_snap.version,
        export_date=local_snap.export_date,
        records=merged,
        settings=dict(local_snap.settings),
    )


# ---------------------------------------------------------------------
# Remote blob codec
# ---------------------------------------------------------------------

def _sync_payload(snapshot: Snapshot) -> bytes:
    # cloud clients read ``lastSynced`` where backups carry ``exportDate``
    payload = snapshot.to_dict()
    payload["lastSynced"] = snapshot.export_date
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _read_sync_payload(plaintext: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(plaintext)
    except (UnicodeDecodeError, ValueError) as exc:
        raise CorruptBackup("Sync payload is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise CorruptBackup("Sync payload must be a JSON object")
    last_synced = payload.pop("lastSynced", None)
    if "exportDate" not in payload and last_synced is not None:
        payload["exportDate"] = last_synced
    return payload


def seal_sync_blob(snapshot: Snapshot, user_id: str) -> str:
    """Encrypt *snapshot* for upload: base64(salt || iv || ciphertext+tag).

    The key is stretched from the authenticated user id, so only a session
    signed in as that user can open the blob.
    """
    salt = random_salt()
    key = derive_key(user_id, salt)
    iv, ct = aesgcm_encrypt(key, _sync_payload(snapshot))
    return base64.b64encode(salt + iv + ct).decode("ascii")


def open_sync_blob(blob: str, user_id: str) -> Snapshot:
    """Reverse :func:`seal_sync_blob`."""
    try:
        raw = base64.b64decode(blob.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, AttributeError) as exc:
        raise CorruptBackup("Sync blob is not valid base64") from exc
    if len(raw) < SALT_LEN + NONCE_LEN + TAG_LEN:
        raise CorruptBackup("Sync blob is truncated")

    salt, iv, ct = raw[:SALT_LEN], raw[SALT_LEN:SALT_LEN + NONCE_LEN], raw[SALT_LEN + NONCE_LEN:]
    key = derive_key(user_id, salt)
    try:
        plaintext = aesgcm_decrypt(key, iv, ct)
    except InvalidTag as exc:
        raise IncorrectPasswordOrCorrupted("Sync blob failed authentication") from exc
    return parse_snapshot(_read_sync_payload(plaintext))


# ---------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------

class SyncTransport(Protocol):
    """Moves opaque sync blobs to and from the remote side."""

    async def download(self) -> Optional[str]:
        """Return the stored blob, or None when nothing was uploaded yet."""
        ...

    async def upload(self, blob: str) -> None:
        ...


async def synchronize(
    store: RecordStore,
    transport: SyncTransport,
    user_id: str,
    settings_map: Optional[Dict[str, str]] = None,
) -> Snapshot:
    """Pull, merge, apply locally and push back the merged snapshot.

    Records are applied through ``store.replace_all``; settings are left to
    the caller. Transport errors propagate unchanged.
    """
    local = await build_snapshot(store, settings_map or DEFAULT_BACKUP_SETTINGS)
    blob = await transport.download()
    if blob:
        remote = await asyncio.to_thread(open_sync_blob, blob, user_id)
        merged = merge(local, remote)
        await store.replace_all(merged.records)
    else:
        merged = local
    await transport.upload(await asyncio.to_thread(seal_sync_blob, merged, user_id))
    logger.info("Sync complete (%d records)", len(merged.records))
    return merged
