"""Low-level cryptographic primitives.

Pure functions with no domain knowledge, reusable building blocks for the
field encryption engine.
"""

from __future__ import annotations

import hashlib
import hmac
import os

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32


def derive_key_from_secret(secret: str) -> bytes:
    """Derive a 256-bit AES key from an operator secret via SHA-256.

    Unsalted on purpose: the same secret must yield the same key in every
    process so previously stored ciphertext stays readable.
    """
    return hashlib.sha256(secret.encode("utf-8")).digest()


def generate_nonce() -> bytes:
    """Return a fresh random 96-bit GCM nonce."""
    return os.urandom(NONCE_SIZE)


def aes_gcm_seal(key: bytes, plaintext: bytes, nonce: bytes | None = None) -> bytes:
    """Encrypt plaintext with AES-256-GCM.

    Returns nonce (12 bytes) || tag (16 bytes) || ciphertext.

    The cryptography library appends the tag after the ciphertext; it is
    moved in front so the layout matches the stored envelope format.
    """
    if nonce is None:
        nonce = generate_nonce()
    sealed = AESGCM(key).encrypt(nonce, plaintext, None)
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return nonce + tag + ciphertext


def aes_gcm_open(key: bytes, data: bytes) -> bytes:
    """Decrypt data produced by aes_gcm_seal.

    Raises ValueError if data is too short to hold nonce and tag.
    Raises cryptography.exceptions.InvalidTag on tampered data or wrong key.
    """
    if len(data) < NONCE_SIZE + TAG_SIZE:
        raise ValueError(
            f"Sealed payload too short: {len(data)} bytes, "
            f"need at least {NONCE_SIZE + TAG_SIZE}"
        )
    nonce = data[:NONCE_SIZE]
    tag = data[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
    ciphertext = data[NONCE_SIZE + TAG_SIZE:]
    return AESGCM(key).decrypt(nonce, ciphertext + tag, None)


def aes_gcm_open_parts(key: bytes, nonce: bytes, tag: bytes, ciphertext: bytes) -> bytes:
    """Decrypt AES-GCM given its separated components (any nonce length)."""
    return AESGCM(key).decrypt(nonce, ciphertext + tag, None)


def hmac_sha256(key: bytes, data: bytes) -> str:
    """Compute HMAC-SHA256(key, data). Returns hex-encoded digest."""
    return hmac.new(key, data, hashlib.sha256).hexdigest()

