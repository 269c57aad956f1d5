# -*- coding: utf-8 -*-
"""Password-protected portable backups.

A backup is a snapshot serialized to JSON, encrypted with AES-256-GCM under
a key stretched from the user's password, and wrapped in a small JSON
envelope::

    {"version": "1.0", "salt": "<b64>", "iv": "<b64>", "data": "<b64>"}

Nothing here touches the record store; callers apply a restored snapshot
themselves through ``RecordStore.replace_all``.
"""
from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Any, Dict, Optional, Union
import asyncio
import json
import logging
import os
import secrets
import tempfile

from cryptography.exceptions import InvalidTag

from .crypto import (
    KDF_PBKDF2,
    KDF_SCRYPT,
    NONCE_LEN,
    SALT_LEN,
    TAG_LEN,
    aesgcm_decrypt,
    aesgcm_encrypt,
    check_backup_password,
    derive_key,
)
from .errors import CorruptBackup, IncorrectPasswordOrCorrupted, PasswordTooWeak
from .models import EncryptedEnvelope, Snapshot
from .schema import parse_snapshot

logger = logging.getLogger("evidencekeeper.backup")

BACKUP_VERSION = "1.0"

# envelope major version -> KDF; the cipher is AES-256-GCM for all of them
ENVELOPE_KDFS: Dict[int, str] = {
    1: KDF_PBKDF2,
    2: KDF_SCRYPT,
}

EnvelopeLike = Union[EncryptedEnvelope, Dict[str, Any], str, bytes]


def kdf_for_version(version: str) -> str:
    """Return the KDF implied by an envelope version; CorruptBackup if unknown."""
    major, _, _ = str(version).partition(".")
    try:
        return ENVELOPE_KDFS[int(major)]
    except (KeyError, ValueError):
        raise CorruptBackup(f"Unsupported backup format version {version!r}") from None


# ---------------------------------------------------------------------
# Create / restore
# ---------------------------------------------------------------------

def create_encrypted_backup(
    password: str,
    snapshot: Snapshot,
    version: str = BACKUP_VERSION,
) -> EncryptedEnvelope:
    """Encrypt *snapshot* under *password* with a fresh salt and nonce."""
    check_backup_password(password)
    kdf = kdf_for_version(version)

    plaintext = snapshot.to_bytes()
    salt = secrets.token_bytes(SALT_LEN)
    key = derive_key(password, salt, kdf)
    iv, data = aesgcm_encrypt(key, plaintext)

    logger.info(
        "Created encrypted backup v%s (%d records, %d bytes)",
        version,
        len(snapshot.records),
        len(data),
    )
    return EncryptedEnvelope(version=version, salt=salt, iv=iv, data=data)


def load_envelope(envelope: EnvelopeLike) -> EncryptedEnvelope:
    """Coerce *envelope* into an :class:`EncryptedEnvelope`; CorruptBackup on bad input."""
    if isinstance(envelope, EncryptedEnvelope):
        env = envelope
    else:
        try:
            if isinstance(envelope, (str, bytes)):
                envelope = json.loads(envelope)
            env = EncryptedEnvelope.from_dict(envelope)
        except (KeyError, TypeError, ValueError) as exc:
            raise CorruptBackup("Not a valid backup file") from exc

    if len(env.salt) != SALT_LEN:
        raise CorruptBackup("Backup salt has the wrong length")
    if len(env.iv) != NONCE_LEN:
        raise CorruptBackup("Backup IV has the wrong length")
    if len(env.data) < TAG_LEN:
        raise CorruptBackup("Backup data is truncated")
    kdf_for_version(env.version)
    return env


def restore_encrypted_backup(password: str, envelope: EnvelopeLike) -> Snapshot:
    """Decrypt and verify *envelope*, returning the snapshot inside.

    A wrong password and a tampered ciphertext both raise
    :class:`IncorrectPasswordOrCorrupted`; no unverified plaintext escapes.
    """
    env = load_envelope(envelope)
    if not password:
        raise PasswordTooWeak("Password is required")

    key = derive_key(password, env.salt, kdf_for_version(env.version))
    try:
        plaintext = aesgcm_decrypt(key, env.iv, env.data)
    except InvalidTag as exc:
        raise IncorrectPasswordOrCorrupted(
            "Incorrect password or corrupted backup file"
        ) from exc

    snapshot = parse_snapshot(plaintext)
    logger.info("Restored backup with %d records", len(snapshot.records))
    return snapshot


async def create_encrypted_backup_async(
    password: str,
    snapshot: Snapshot,
    version: str = BACKUP_VERSION,
) -> EncryptedEnvelope:
    """Run :func:`create_encrypted_backup` off the event loop."""
    return await asyncio.to_thread(create_encrypted_backup, password, snapshot, version)


async def restore_encrypted_backup_async(password: str, envelope: EnvelopeLike) -> Snapshot:
    """Run :func:`restore_encrypted_backup` off the event loop.

    Cancelling the awaiting task discards the result; the worker thread
    finishes its computation but nothing is applied.
    """
    return await asyncio.to_thread(restore_encrypted_backup, password, envelope)


# ---------------------------------------------------------------------
# Backup files
# ---------------------------------------------------------------------

def default_backup_filename(today: Optional[date] = None) -> str:
    today = today or date.today()
    return f"herlaw-backup-{today.isoformat()}.encrypted"


def write_backup_file(path: Union[str, Path], envelope: EncryptedEnvelope) -> Path:
    """Write *envelope* as pretty JSON, replacing *path* atomically."""
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(envelope.to_json(indent=2))
        os.replace(tmp, target)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    logger.info("Wrote backup file %s", target)
    return target


def read_backup_file(path: Union[str, Path]) -> EncryptedEnvelope:
    """Read and structurally validate a backup file."""
    try:
        text = Path(path).expanduser().read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise CorruptBackup(f"{path} is not a backup file") from exc
    return load_envelope(text)
