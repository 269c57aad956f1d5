# -*- coding: utf-8 -*-
"""Typed failures raised by the EvidenceKeeper core.

Every error here propagates to the caller unchanged; nothing in the core
retries or auto-corrects. Messages never carry plaintext or key material.
"""
from __future__ import annotations


class EvidenceKeeperError(Exception):
    """Base class for all core errors."""


class StorageUnavailable(EvidenceKeeperError):
    """The storage backend is unreachable, uninitialized or closed."""


class SchemaError(EvidenceKeeperError):
    """On-disk state cannot be read by this version of the code."""


class PasswordTooWeak(EvidenceKeeperError, ValueError):
    """The password fails the minimum length policy."""


class IncorrectPasswordOrCorrupted(EvidenceKeeperError):
    """AEAD authentication failed.

    A wrong password and a tampered ciphertext are deliberately reported the
    same way.
    """


class CorruptBackup(EvidenceKeeperError):
    """The envelope or its decrypted payload is structurally invalid."""
