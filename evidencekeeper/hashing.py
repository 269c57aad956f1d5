# -*- coding: utf-8 -*-
"""Content hashing for tamper detection.

The digest covers only what a user would call the *content* of a record:
description, tags, severity, people, location and the identifying metadata
of attachments. Ids, timestamps and the event log are excluded, so appending
to the log or stamping ``editedAt`` never changes the hash, while any edit
to the content does.
"""
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Mapping, Union
import hmac
import json

from .crypto import sha256_hex
from .models import Record


def content_fields(record: Record) -> Dict[str, Any]:
    """Return the canonical content fields of *record*."""
    files = None
    if record.files is not None:
        files = [
            {
                "id": f.id,
                "name": f.name,
                "type": f.type,
                "source": f.source,
                "fileHash": f.file_hash,
            }
            for f in record.files
        ]
    return {
        "description": record.description,
        # tags behave as a set
        "tags": sorted(set(record.tags)),
        "severity": record.severity,
        "people": list(record.people) if record.people is not None else None,
        "location": record.location,
        "files": files,
    }


def compute_hash(fields: Union[Record, Mapping[str, Any]]) -> str:
    """SHA-256 hex digest over the canonical JSON of *fields*."""
    if isinstance(fields, Record):
        fields = content_fields(fields)
    canonical = json.dumps(
        fields, sort_keys=True, ensure_ascii=False, separators=(",", ":")
    )
    return sha256_hex(canonical.encode("utf-8"))


def verify(record: Record) -> bool:
    """True only if the stored hash equals a fresh computation, byte for byte."""
    if not record.content_hash:
        return False
    return hmac.compare_digest(
        record.content_hash.encode("utf-8"), compute_hash(record).encode("ascii")
    )


def seal(record: Record) -> Record:
    """Return a copy of *record* carrying a freshly computed content hash."""
    return replace(record, content_hash=compute_hash(record))


def hash_bytes(data: bytes) -> str:
    """Digest of raw attachment content, stored as ``Attachment.file_hash``."""
    return sha256_hex(data)
