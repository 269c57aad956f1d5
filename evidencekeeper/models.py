# -*- coding: utf-8 -*-
"""Record, attachment, snapshot and envelope data structures.

The JSON shape (camelCase keys, unset optionals omitted) matches backups
written by the HerLaw mobile app, so those files restore unchanged.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import base64
import binascii
import json

ATTACHMENT_TYPES = ("image", "pdf", "audio", "video", "document")
ATTACHMENT_SOURCES = ("scanner", "camera", "files")
SEVERITY_RANGE = range(1, 6)


# ---------------------------------------------------------------------
# Field validation helpers
# ---------------------------------------------------------------------

def _req_str(data: Dict[str, Any], key: str) -> str:
    value = data[key]
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    return value

def _opt_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    return value

def _str_list(data: Dict[str, Any], key: str, default: Optional[list] = None) -> Optional[List[str]]:
    value = data.get(key, default)
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise TypeError(f"{key} must be a list of strings")
    return list(value)

def validate_severity(value: Any) -> Optional[int]:
    if value is None:
        return None
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError("severity must be an integer")
    if value not in SEVERITY_RANGE:
        raise ValueError("severity must be between 1 and 5")
    return value


# ---------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------

@dataclass
class Attachment:
    """A file attached to a record at upload time."""

    id: str
    name: str
    url: str
    type: str
    source: str
    file_hash: Optional[str] = None
    ocr_text: Optional[str] = None

    def __post_init__(self) -> None:
        if self.type not in ATTACHMENT_TYPES:
            raise ValueError(f"Unknown attachment type: {self.type!r}")
        if self.source not in ATTACHMENT_SOURCES:
            raise ValueError(f"Unknown attachment source: {self.source!r}")

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "type": self.type,
            "source": self.source,
        }
        if self.file_hash is not None:
            out["fileHash"] = self.file_hash
        if self.ocr_text is not None:
            out["ocrText"] = self.ocr_text
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attachment":
        if not isinstance(data, dict):
            raise TypeError("attachment must be an object")
        return cls(
            id=_req_str(data, "id"),
            name=_req_str(data, "name"),
            url=_req_str(data, "url"),
            type=_req_str(data, "type"),
            source=_req_str(data, "source"),
            file_hash=_opt_str(data, "fileHash"),
            ocr_text=_opt_str(data, "ocrText"),
        )


@dataclass
class EventLogEntry:
    timestamp: str
    action: str

    def to_dict(self) -> Dict[str, str]:
        return {"timestamp": self.timestamp, "action": self.action}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventLogEntry":
        if not isinstance(data, dict):
            raise TypeError("event log entry must be an object")
        return cls(timestamp=_req_str(data, "timestamp"), action=_req_str(data, "action"))


@dataclass
class Record:
    """One documented incident.

    ``id`` and ``created_at`` are fixed at creation. ``content_hash`` covers
    only the content fields (see :mod:`evidencekeeper.hashing`).
    """

    id: str
    created_at: str
    description: str = ""
    tags: List[str] = field(default_factory=list)
    severity: Optional[int] = None
    people: Optional[List[str]] = None
    location: Optional[str] = None
    files: Optional[List[Attachment]] = None
    date_time: Optional[str] = None
    edited_at: Optional[str] = None
    content_hash: Optional[str] = None
    event_log: List[EventLogEntry] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Record id is required")
        if not self.created_at:
            raise ValueError("Record createdAt is required")
        validate_severity(self.severity)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"id": self.id}
        if self.date_time is not None:
            out["dateTime"] = self.date_time
        out["description"] = self.description
        out["tags"] = list(self.tags)
        if self.people is not None:
            out["people"] = list(self.people)
        if self.location is not None:
            out["location"] = self.location
        if self.severity is not None:
            out["severity"] = self.severity
        if self.files is not None:
            out["files"] = [f.to_dict() for f in self.files]
        out["createdAt"] = self.created_at
        if self.edited_at is not None:
            out["editedAt"] = self.edited_at
        if self.content_hash is not None:
            out["contentHash"] = self.content_hash
        out["eventLog"] = [e.to_dict() for e in self.event_log]
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Record":
        """Build a record from its JSON shape; raises TypeError/ValueError/KeyError."""
        if not isinstance(data, dict):
            raise TypeError("record must be an object")
        files = data.get("files")
        if files is not None and not isinstance(files, list):
            raise TypeError("files must be a list")
        events = data.get("eventLog", [])
        if not isinstance(events, list):
            raise TypeError("eventLog must be a list")
        return cls(
            id=_req_str(data, "id"),
            created_at=_req_str(data, "createdAt"),
            description=_req_str(data, "description"),
            tags=_str_list(data, "tags", default=[]) or [],
            severity=validate_severity(data.get("severity")),
            people=_str_list(data, "people"),
            location=_opt_str(data, "location"),
            files=[Attachment.from_dict(f) for f in files] if files is not None else None,
            date_time=_opt_str(data, "dateTime"),
            edited_at=_opt_str(data, "editedAt"),
            content_hash=_opt_str(data, "contentHash"),
            event_log=[EventLogEntry.from_dict(e) for e in events],
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))


# ---------------------------------------------------------------------
# Snapshot + envelope
# ---------------------------------------------------------------------

@dataclass
class Snapshot:
    """Point-in-time bundle of all records and the backed-up settings."""

    version: str
    export_date: str
    records: List[Record] = field(default_factory=list)
    settings: Dict[str, Optional[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "exportDate": self.export_date,
            "records": [r.to_dict() for r in self.records],
            "settings": dict(self.settings),
        }

    def to_bytes(self) -> bytes:
        """Canonical UTF-8 JSON used as the encryption plaintext."""
        return json.dumps(
            self.to_dict(), ensure_ascii=False, separators=(",", ":")
        ).encode("utf-8")

    def record_ids(self) -> List[str]:
        return [r.id for r in self.records]


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")

def b64decode(text: str) -> bytes:
    """Strict base64 decode; raises ``binascii.Error`` on bad input."""
    return base64.b64decode(text.encode("ascii"), validate=True)


@dataclass(frozen=True)
class EncryptedEnvelope:
    """Portable container for an encrypted snapshot.

    The algorithms are implied by ``version``: ``1.x`` is PBKDF2-SHA256 +
    AES-256-GCM, ``2.x`` is scrypt + AES-256-GCM.
    """

    version: str
    salt: bytes
    iv: bytes
    data: bytes

    def to_dict(self) -> Dict[str, str]:
        return {
            "version": self.version,
            "salt": b64encode(self.salt),
            "iv": b64encode(self.iv),
            "data": b64encode(self.data),
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptedEnvelope":
        """Decode base64 fields; raises KeyError/TypeError/ValueError on bad input."""
        if not isinstance(data, dict):
            raise TypeError("envelope must be a JSON object")
        fields = {}
        for key in ("version", "salt", "iv", "data"):
            value = data[key]
            if not isinstance(value, str):
                raise TypeError(f"envelope field {key} must be a string")
            fields[key] = value
        try:
            return cls(
                version=fields["version"],
                salt=b64decode(fields["salt"]),
                iv=b64decode(fields["iv"]),
                data=b64decode(fields["data"]),
            )
        except (binascii.Error, UnicodeEncodeError) as exc:
            raise ValueError("envelope field is not valid base64") from exc

    @classmethod
    def from_json(cls, text: str) -> "EncryptedEnvelope":
        return cls.from_dict(json.loads(text))
