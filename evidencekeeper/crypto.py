# -*- coding: utf-8 -*-
"""Crypto helpers and key derivation for EvidenceKeeper.

This module encapsulates *stateless* cryptographic helpers: password based
key derivation, AES-GCM and SHA-256. It does **not** perform any storage I/O.
"""
from __future__ import annotations

from typing import Callable, Dict, Optional, Tuple
import hashlib
import secrets

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import PasswordTooWeak

# ---------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------

PBKDF2_ITERATIONS = 100_000

SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1

KEY_LEN = 32
SALT_LEN = 16
NONCE_LEN = 12
TAG_LEN = 16

MIN_BACKUP_PASSWORD_LEN = 6

KDF_PBKDF2 = "pbkdf2-sha256"
KDF_SCRYPT = "scrypt"


# ---------------------------------------------------------------------
# KDF helpers
# ---------------------------------------------------------------------

def pbkdf2_kdf(password: str, salt: bytes, length: int = KEY_LEN) -> bytes:
    """Derive a key from a password using PBKDF2-HMAC-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(password.encode("utf-8"))

def scrypt_kdf(password: str, salt: bytes, length: int = KEY_LEN) -> bytes:
    """Derive a key from a password using scrypt."""
    kdf = Scrypt(salt=salt, length=length, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(password.encode("utf-8"))


KDFS: Dict[str, Callable[[str, bytes, int], bytes]] = {
    KDF_PBKDF2: pbkdf2_kdf,
    KDF_SCRYPT: scrypt_kdf,
}


def derive_key(password: str, salt: bytes, kdf: str = KDF_PBKDF2) -> bytes:
    """Stretch *password* with *salt* into a 256-bit AES key.

    The same (password, salt) pair always yields the same key, which is what
    lets the restore side re-derive it. Salts must be fresh per encryption.
    """
    if not password:
        raise PasswordTooWeak("Password is required")
    if len(salt) < SALT_LEN:
        raise ValueError(f"Salt must be at least {SALT_LEN} bytes")
    try:
        fn = KDFS[kdf]
    except KeyError:
        raise ValueError(f"Unknown KDF: {kdf}") from None
    return fn(password, salt, KEY_LEN)


def check_backup_password(password: str) -> None:
    """Enforce the minimum length policy for new backups."""
    if not password or len(password) < MIN_BACKUP_PASSWORD_LEN:
        raise PasswordTooWeak(
            f"Password must be at least {MIN_BACKUP_PASSWORD_LEN} characters"
        )


# ---------------------------------------------------------------------
# AEAD helpers
# ---------------------------------------------------------------------

def random_salt() -> bytes:
    return secrets.token_bytes(SALT_LEN)

def aesgcm_encrypt(key: bytes, plaintext: bytes, aad: Optional[bytes] = None) -> Tuple[bytes, bytes]:
    """Encrypt *plaintext* with AES-GCM; return (nonce, ciphertext+tag)."""
    nonce = secrets.token_bytes(NONCE_LEN)
    ct = AESGCM(key).encrypt(nonce, plaintext, aad)
    return nonce, ct

def aesgcm_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, aad: Optional[bytes] = None) -> bytes:
    """Decrypt AES-GCM *ciphertext* with *nonce*; raises ``InvalidTag``."""
    return AESGCM(key).decrypt(nonce, ciphertext, aad)


# ---------------------------------------------------------------------
# Digests
# ---------------------------------------------------------------------

def sha256_hex(data: bytes) -> str:
    """Lower-case hex SHA-256 of *data*."""
    return hashlib.sha256(data).hexdigest()
