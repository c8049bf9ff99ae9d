"""Compression and encryption codecs for backup payloads."""

from __future__ import annotations

import base64
import bz2
import gzip
import lzma
import os
import zlib

from cryptography.exceptions import InvalidTag
from cryptography.fernet import Fernet
from cryptography.fernet import InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from trailguard.errors import EncryptionFailure

COMPRESSIONS = ("gzip", "bz2", "lzma", "none")
# Raised by corrupted compressed or JSON payloads.
DECODE_ERRORS = (OSError, EOFError, ValueError, lzma.LZMAError, zlib.error)
CIPHERS = ("aes-256-gcm", "fernet")

_NONCE_SIZE = 12
_SALT_SIZE = 16
_KDF_INFO = b"trailguard-backup-v1"
_AAD = b"trailguard-backup"


# ---------------------------------------------------------------------------
# Compression
# ---------------------------------------------------------------------------


def compress(data: bytes, algorithm: str) -> bytes:
    if algorithm == "gzip":
        return gzip.compress(data, mtime=0)
    if algorithm == "bz2":
        return bz2.compress(data)
    if algorithm == "lzma":
        return lzma.compress(data)
    if algorithm == "none":
        return data
    raise ValueError(f"Unsupported compression: {algorithm!r}")


def decompress(data: bytes, algorithm: str) -> bytes:
    if algorithm == "gzip":
        return gzip.decompress(data)
    if algorithm == "bz2":
        return bz2.decompress(data)
    if algorithm == "lzma":
        return lzma.decompress(data)
    if algorithm == "none":
        return data
    raise ValueError(f"Unsupported compression: {algorithm!r}")


def compression_ratio(original_size: int, compressed_size: int) -> float:
    """Percentage saved, e.g. ``75.0`` when the payload shrank to a quarter."""
    if original_size <= 0:
        return 0.0
    return round((1 - compressed_size / original_size) * 100, 2)


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------


def new_salt() -> bytes:
    return os.urandom(_SALT_SIZE)


def derive_key(secret: str, salt: bytes) -> bytes:
    """Derive a 256-bit key from *secret* with HKDF-SHA256."""
    if not secret:
        raise EncryptionFailure("Backup secret is not configured", stage="encrypting")
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=salt, info=_KDF_INFO)
    return hkdf.derive(secret.encode("utf-8"))


def encrypt(data: bytes, *, cipher: str, secret: str, salt: bytes) -> bytes:
    key = derive_key(secret, salt)
    if cipher == "aes-256-gcm":
        nonce = os.urandom(_NONCE_SIZE)
        return nonce + AESGCM(key).encrypt(nonce, data, _AAD)
    if cipher == "fernet":
        return Fernet(base64.urlsafe_b64encode(key)).encrypt(data)
    raise EncryptionFailure(f"Unsupported cipher: {cipher!r}", stage="encrypting")


def decrypt(data: bytes, *, cipher: str, secret: str, salt: bytes) -> bytes:
    key = derive_key(secret, salt)
    try:
        if cipher == "aes-256-gcm":
            if len(data) <= _NONCE_SIZE:
                raise EncryptionFailure("Ciphertext is truncated", stage="decrypting")
            nonce, body = data[:_NONCE_SIZE], data[_NONCE_SIZE:]
            return AESGCM(key).decrypt(nonce, body, _AAD)
        if cipher == "fernet":
            return Fernet(base64.urlsafe_b64encode(key)).decrypt(data)
    except (InvalidTag, InvalidToken) as exc:
        raise EncryptionFailure(
            "Backup decryption failed: wrong key or corrupted payload",
            stage="decrypting",
        ) from exc
    raise EncryptionFailure(f"Unsupported cipher: {cipher!r}", stage="decrypting")
