from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives import hashes

NONCE_SIZE = 12
KEY_SIZE = 32
TAG_SIZE = 16

# Leading byte of every framed pseudonym, identifying how it was produced.
FRAME_AES_GCM = 0x01
FRAME_HMAC_SHA256 = 0x02


def generate_key() -> bytes:
    """Return 32 bytes of fresh AES-256 key material."""
    return os.urandom(KEY_SIZE)


def derive_key(master_key: str, salt: bytes, iterations: int = 600_000) -> bytes:
    """Derive a 32-byte AES-256 key from a master key string and a salt.

    Uses PBKDF2-HMAC-SHA256; 600 000 iterations unless the caller lowers it
    (tests do).
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(master_key.encode("utf-8"))


def encrypt(plaintext: str, key: bytes) -> tuple[bytes, bytes]:
    """AES-256-GCM encrypt *plaintext* with *key*.

    Returns ``(ciphertext, nonce)`` where *nonce* is a random 12-byte value.
    """
    aesgcm = AESGCM(key)
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
    return ciphertext, nonce


def decrypt(ciphertext: bytes, key: bytes, nonce: bytes) -> str:
    """AES-256-GCM decrypt *ciphertext* with *key* and *nonce*.

    Raises ``cryptography.exceptions.InvalidTag`` on a wrong key or tampering.
    """
    aesgcm = AESGCM(key)
    plaintext_bytes = aesgcm.decrypt(nonce, ciphertext, None)
    return plaintext_bytes.decode("utf-8")


def keyed_hash(value: str, key: bytes) -> bytes:
    """HMAC-SHA256 of *value* under *key*."""
    return hmac.new(key, value.encode("utf-8"), hashlib.sha256).digest()


# ------------------------------------------------------------------
# Framing: the nonce travels with the ciphertext
# ------------------------------------------------------------------


def seal(plaintext: str, key: bytes) -> bytes:
    """Encrypt and frame as ``FRAME_AES_GCM || nonce || ciphertext``."""
    ciphertext, nonce = encrypt(plaintext, key)
    return bytes([FRAME_AES_GCM]) + nonce + ciphertext


def open_sealed(frame: bytes, key: bytes) -> str:
    """Inverse of :func:`seal`. Caller must have checked :func:`is_sealed`."""
    nonce = frame[1 : 1 + NONCE_SIZE]
    ciphertext = frame[1 + NONCE_SIZE :]
    return decrypt(ciphertext, key, nonce)


def is_sealed(frame: bytes) -> bool:
    return len(frame) >= 1 + NONCE_SIZE + TAG_SIZE and frame[0] == FRAME_AES_GCM


def hash_frame(value: str, key: bytes) -> bytes:
    return bytes([FRAME_HMAC_SHA256]) + keyed_hash(value, key)


def to_text(frame: bytes) -> str:
    return base64.urlsafe_b64encode(frame).decode("ascii")


def from_text(text: str) -> bytes | None:
    """Decode a framed pseudonym; ``None`` when *text* is not valid base64."""
    try:
        return base64.b64decode(text.encode("ascii"), altchars=b"-_", validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError):
        return None
