# -*- coding: utf-8 -*-
"""EvidenceKeeper package.

Modules:
    errors:    Typed failure taxonomy.
    crypto:    KDFs, AES-GCM and digest helpers.
    models:    Record / Attachment / Snapshot / EncryptedEnvelope.
    hashing:   Content hashing for tamper detection.
    schema:    Versioned snapshot payloads and migrations.
    backends:  SQLite (aiosqlite) and in-memory storage backends.
    store:     RecordStore, the authoritative record + settings store.
    backup:    Password-protected portable backup/restore.
    sync:      Snapshot merge and remote blob codec.
    logic:     App logic that composes store + hashing + backup.
    config:    JSON config on disk.
    cli:       Click command line.
"""

__version__ = "0.3.0"

__all__ = [
    "errors",
    "crypto",
    "models",
    "hashing",
    "schema",
    "backends",
    "store",
    "backup",
    "sync",
    "logic",
    "config",
    "cli",
]
