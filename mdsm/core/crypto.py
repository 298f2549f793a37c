from __future__ import annotations

import base64
import binascii
import hashlib
import re
import secrets
import threading
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from mdsm.core.errors import DecryptionError


WIRE_VERSION = 1
NONCE_BYTES = 12
TAG_BYTES = 16
COOKIE_AAD = b"mdsm.cookie.v1"

_B64URL = re.compile(r"[A-Za-z0-9_-]+")

_process_key: Optional[bytes] = None
_process_key_lock = threading.Lock()


def generate_cookie_key_bytes() -> bytes:
    # AES-256 key
    return secrets.token_bytes(32)


def process_cookie_key() -> bytes:
    """
    Key shared by every codec in this process that was not given its own.
    Generated once on first use; never persisted.
    """
    global _process_key
    with _process_key_lock:
        if _process_key is None:
            _process_key = generate_cookie_key_bytes()
        return _process_key


def cookie_fingerprint(value: str) -> str:
    h = hashlib.sha256(str(value or "").encode("utf-8")).hexdigest()
    return h[:16]


def _b64e(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def _b64d(s: str) -> bytes:
    """Strict inverse of _b64e: only the canonical encoding of some byte string is accepted."""
    if not _B64URL.fullmatch(s):
        raise ValueError("not urlsafe base64")
    padded = s + "=" * (-len(s) % 4)
    raw = base64.urlsafe_b64decode(padded.encode("ascii"))
    if _b64e(raw) != s:
        # non-zero trailing bits
        raise ValueError("non-canonical base64")
    return raw


class CookieCodec:
    """
    AES-256-GCM encryption of the small JSON record carried by the MDSM cookie.

    Wire format: urlsafe base64 (no padding) of
    version (1 byte) | nonce (12 bytes) | ciphertext + tag.
    """

    def __init__(self, key: Optional[bytes] = None, *, aad: bytes = COOKIE_AAD):
        key_bytes = key if key is not None else process_cookie_key()
        if len(key_bytes) != 32:
            raise ValueError("Cookie key must be 32 bytes (AES-256).")
        self._aes = AESGCM(key_bytes)
        self._aad = aad

    def __repr__(self) -> str:
        return "CookieCodec(key=***REDACTED***)"

    def encrypt(self, plaintext: str) -> str:
        nonce = secrets.token_bytes(NONCE_BYTES)
        ct = self._aes.encrypt(nonce, plaintext.encode("utf-8"), self._aad)
        return _b64e(bytes([WIRE_VERSION]) + nonce + ct)

    def decrypt(self, ciphertext: str) -> str:
        if not isinstance(ciphertext, str) or not ciphertext:
            raise DecryptionError(reason="empty")
        try:
            raw = _b64d(ciphertext)
        except (binascii.Error, ValueError, UnicodeEncodeError):
            raise DecryptionError(reason="encoding") from None
        if len(raw) < 1 + NONCE_BYTES + TAG_BYTES:
            raise DecryptionError(reason="truncated")
        if raw[0] != WIRE_VERSION:
            raise DecryptionError(reason="version")
        nonce = raw[1 : 1 + NONCE_BYTES]
        ct = raw[1 + NONCE_BYTES :]
        try:
            pt = self._aes.decrypt(nonce, ct, self._aad)
        except InvalidTag:
            raise DecryptionError(reason="tag") from None
        try:
            return pt.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError(reason="utf8") from None
