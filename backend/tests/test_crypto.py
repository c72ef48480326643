"""Tests for backend/app/utils/crypto.py primitives."""

from __future__ import annotations

import hashlib
import os

import pytest
from cryptography.exceptions import InvalidTag

from app.utils.crypto import (
    KEY_SIZE,
    NONCE_SIZE,
    TAG_SIZE,
    aes_gcm_open,
    aes_gcm_open_parts,
    aes_gcm_seal,
    derive_key_from_secret,
    hmac_sha256,
)


class TestDeriveKeyFromSecret:
    def test_deterministic(self) -> None:
        """Same secret always yields the same key."""
        assert derive_key_from_secret("s3cr3t") == derive_key_from_secret("s3cr3t")

    def test_matches_plain_sha256(self) -> None:
        """Key is the unsalted SHA-256 digest of the UTF-8 secret."""
        assert derive_key_from_secret("s3cr3t") == hashlib.sha256(b"s3cr3t").digest()

    def test_length(self) -> None:
        assert len(derive_key_from_secret("x")) == KEY_SIZE

    def test_different_secrets(self) -> None:
        assert derive_key_from_secret("a") != derive_key_from_secret("b")


class TestAesGcmSeal:
    def test_roundtrip(self) -> None:
        key = os.urandom(32)
        sealed = aes_gcm_seal(key, b"Hello, agency!")
        assert aes_gcm_open(key, sealed) == b"Hello, agency!"

    def test_layout_nonce_tag_ciphertext(self) -> None:
        """Output is nonce || tag || ciphertext, ciphertext as long as the plaintext."""
        key = os.urandom(32)
        nonce = os.urandom(NONCE_SIZE)
        sealed = aes_gcm_seal(key, b"twelve bytes", nonce=nonce)
        assert sealed[:NONCE_SIZE] == nonce
        assert len(sealed) == NONCE_SIZE + TAG_SIZE + len(b"twelve bytes")

    def test_different_nonces(self) -> None:
        key = os.urandom(32)
        assert aes_gcm_seal(key, b"same") != aes_gcm_seal(key, b"same")

    def test_tampered_tag(self) -> None:
        key = os.urandom(32)
        sealed = bytearray(aes_gcm_seal(key, b"data"))
        sealed[NONCE_SIZE] ^= 0x01
        with pytest.raises(InvalidTag):
            aes_gcm_open(key, bytes(sealed))

    def test_tampered_ciphertext(self) -> None:
        key = os.urandom(32)
        sealed = bytearray(aes_gcm_seal(key, b"data"))
        sealed[-1] ^= 0xFF
        with pytest.raises(InvalidTag):
            aes_gcm_open(key, bytes(sealed))

    def test_wrong_key(self) -> None:
        sealed = aes_gcm_seal(os.urandom(32), b"secret")
        with pytest.raises(InvalidTag):
            aes_gcm_open(os.urandom(32), sealed)

    def test_too_short(self) -> None:
        """Payloads shorter than nonce + tag are rejected before decryption."""
        with pytest.raises(ValueError, match="too short"):
            aes_gcm_open(os.urandom(32), b"\x00" * (NONCE_SIZE + TAG_SIZE - 1))

    def test_open_parts_accepts_16_byte_iv(self) -> None:
        """Old storage used 16-byte IVs; the parts variant must still open them."""
        from cryptography.hazmat.primitives.ciphers.aead import AESGCM

        key = os.urandom(32)
        iv = os.urandom(16)
        sealed = AESGCM(key).encrypt(iv, b"legacy", None)
        assert aes_gcm_open_parts(key, iv, sealed[-16:], sealed[:-16]) == b"legacy"


class TestHashes:
    def test_hmac_deterministic(self) -> None:
        key = os.urandom(32)
        assert hmac_sha256(key, b"data") == hmac_sha256(key, b"data")

    def test_hmac_is_hex(self) -> None:
        digest = hmac_sha256(b"k", b"data")
        assert len(digest) == 64
        int(digest, 16)
