# -*- coding: utf-8 -*-
"""The authoritative record and settings store.

:class:`RecordStore` is constructed explicitly and handed to whoever needs
it; there is no module-level instance. Rows may optionally be encrypted at
rest with row-level AES-GCM, the row's collection and key bound in as
associated data so rows cannot be swapped undetected.
"""
from __future__ import annotations

from typing import Iterable, Iterator, List, Optional
import asyncio
import base64
import binascii
import json
import logging

from cryptography.exceptions import InvalidTag

from .backends import Row, StorageBackend
from .crypto import KEY_LEN, NONCE_LEN, aesgcm_decrypt, aesgcm_encrypt
from .errors import SchemaError, StorageUnavailable
from .models import Record

logger = logging.getLogger("evidencekeeper.store")

RECORDS = "records"
SETTINGS = "settings"

KEY_CHECK_PLAINTEXT = b"evidencekeeper/at-rest-key-check"


class RecordStore:
    """Durable keyed storage of records and scalar settings."""

    def __init__(self, backend: StorageBackend, at_rest_key: Optional[bytes] = None) -> None:
        if at_rest_key is not None and len(at_rest_key) != KEY_LEN:
            raise ValueError(f"At-rest key must be {KEY_LEN} bytes")
        self.backend = backend
        self._key = at_rest_key
        # held by readers too: replace_all must never be seen half applied
        self._lock = asyncio.Lock()
        self._ready = False

    @property
    def persistent(self) -> bool:
        return self.backend.persistent

    @property
    def encrypted(self) -> bool:
        return self._key is not None

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def init(self) -> None:
        """Open the backend and check its encryption mode against our key."""
        await self.backend.open()
        try:
            await self._check_encryption_mode()
        except BaseException:
            await self.backend.close()
            raise
        self._ready = True
        logger.info(
            "Record store ready (backend=%s, encrypted=%s)",
            self.backend.name,
            self.encrypted,
        )

    async def _check_encryption_mode(self) -> None:
        mode = await self.backend.get_meta("encrypted")
        if mode is None:
            if await self.backend.load(RECORDS) or await self.backend.load(SETTINGS):
                raise SchemaError("Store has data but no encryption mode marker")
            await self.backend.set_meta("encrypted", "1" if self._key else "0")
            if self._key:
                nonce, ct = aesgcm_encrypt(self._key, KEY_CHECK_PLAINTEXT)
                await self.backend.set_meta(
                    "key_check", base64.b64encode(nonce + ct).decode("ascii")
                )
            return
        if mode not in ("0", "1"):
            raise SchemaError(f"Unknown store encryption mode {mode!r}")
        if mode == "1" and self._key is None:
            raise SchemaError("Store is encrypted at rest; a key is required")
        if mode == "0" and self._key is not None:
            raise SchemaError("Store is not encrypted at rest; refusing to mix modes")
        if mode == "1":
            check = await self.backend.get_meta("key_check")
            try:
                blob = base64.b64decode(check or "", validate=True)
                plain = aesgcm_decrypt(self._key, blob[:NONCE_LEN], blob[NONCE_LEN:])
            except (binascii.Error, InvalidTag, ValueError) as exc:
                raise StorageUnavailable("At-rest key was rejected") from exc
            if plain != KEY_CHECK_PLAINTEXT:
                raise StorageUnavailable("At-rest key was rejected")

    async def close(self) -> None:
        self._ready = False
        await self.backend.close()

    async def __aenter__(self) -> "RecordStore":
        await self.init()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _require_ready(self) -> None:
        if not self._ready:
            raise StorageUnavailable("Record store is not initialized")

    # -----------------------------------------------------------------
    # Row codec
    # -----------------------------------------------------------------

    def _encode(self, collection: str, key: str, plain: bytes) -> bytes:
        if self._key is None:
            return plain
        nonce, ct = aesgcm_encrypt(self._key, plain, aad=f"{collection}:{key}".encode())
        return nonce + ct

    def _decode(self, collection: str, key: str, value: bytes) -> bytes:
        if self._key is None:
            return value
        try:
            return aesgcm_decrypt(
                self._key,
                value[:NONCE_LEN],
                value[NONCE_LEN:],
                aad=f"{collection}:{key}".encode(),
            )
        except (InvalidTag, ValueError) as exc:
            raise SchemaError(f"Stored {collection} row {key!r} failed authentication") from exc

    def _record_from_row(self, key: str, value: bytes) -> Record:
        try:
            return Record.from_dict(json.loads(self._decode(RECORDS, key, value)))
        except SchemaError:
            raise
        except (KeyError, TypeError, ValueError) as exc:
            raise SchemaError(f"Stored record {key!r} is unreadable") from exc

    def _record_row(self, record: Record) -> Row:
        plain = record.to_json().encode("utf-8")
        return record.id, record.created_at, self._encode(RECORDS, record.id, plain)

    # -----------------------------------------------------------------
    # Records
    # -----------------------------------------------------------------

    async def put(self, record: Record) -> None:
        """Insert *record*, or overwrite the record with the same id."""
        self._require_ready()
        async with self._lock:
            existing = await self.backend.fetch(RECORDS, record.id)
            if existing is not None:
                old = self._record_from_row(record.id, existing)
                if old.created_at != record.created_at:
                    raise ValueError(f"createdAt of record {record.id} cannot change")
            key, sort_key, value = self._record_row(record)
            await self.backend.store(RECORDS, key, value, sort_key=sort_key)
        logger.debug("Stored record %s", record.id)

    async def get(self, record_id: str) -> Optional[Record]:
        self._require_ready()
        async with self._lock:
            value = await self.backend.fetch(RECORDS, record_id)
        if value is None:
            return None
        return self._record_from_row(record_id, value)

    async def get_all(self) -> List[Record]:
        """All records, newest ``createdAt`` first."""
        self._require_ready()
        async with self._lock:
            rows = await self.backend.load(RECORDS)
        return [self._record_from_row(k, v) for k, v in rows]

    async def get_by_tag(self, tag: str) -> List[Record]:
        return [r for r in await self.get_all() if tag in r.tags]

    async def count(self) -> int:
        self._require_ready()
        async with self._lock:
            return len(await self.backend.load(RECORDS))

    async def delete(self, record_id: str) -> None:
        """Remove a record; deleting an unknown id is a no-op."""
        self._require_ready()
        async with self._lock:
            await self.backend.remove(RECORDS, record_id)
        logger.debug("Deleted record %s", record_id)

    async def replace_all(self, records: Iterable[Record]) -> None:
        """Atomically replace every record with *records*.

        Either the complete new set becomes visible or, on any failure, the
        complete old set remains.
        """
        self._require_ready()

        written = 0

        def rows() -> Iterator[Row]:
            nonlocal written
            for record in records:
                yield self._record_row(record)
                written += 1

        async with self._lock:
            await self.backend.replace(RECORDS, rows())
        logger.info("Replaced record set (%d records written)", written)

    # -----------------------------------------------------------------
    # Settings
    # -----------------------------------------------------------------

    async def get_setting(self, key: str) -> Optional[str]:
        self._require_ready()
        async with self._lock:
            value = await self.backend.fetch(SETTINGS, key)
        if value is None:
            return None
        try:
            return self._decode(SETTINGS, key, value).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SchemaError(f"Stored setting {key!r} is unreadable") from exc

    async def put_setting(self, key: str, value: Optional[str]) -> None:
        """Write a setting; ``None`` deletes it."""
        self._require_ready()
        if value is not None and not isinstance(value, str):
            raise TypeError("Setting values must be strings or None")
        async with self._lock:
            if value is None:
                await self.backend.remove(SETTINGS, key)
            else:
                await self.backend.store(
                    SETTINGS, key, self._encode(SETTINGS, key, value.encode("utf-8"))
                )
