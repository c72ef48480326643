"""Field-level encryption for stored records.

Transparently turns designated plaintext fields into versioned AES-256-GCM
envelopes before a record is persisted, turns them back when it is loaded,
and maintains HMAC blind indexes so encrypted fields can still be matched
for equality.

Envelope format (stable, shared with previously stored data):

    "enc:v1:" + base64(nonce[12] || tag[16] || ciphertext)
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from collections.abc import Iterable, MutableMapping
from typing import Any

from cryptography.exceptions import InvalidTag

from app.utils.crypto import (
    NONCE_SIZE,
    TAG_SIZE,
    aes_gcm_open,
    aes_gcm_open_parts,
    aes_gcm_seal,
    derive_key_from_secret,
    hmac_sha256,
)

logger = logging.getLogger(__name__)

HASH_SUFFIX = "Hash"


class EncryptionConfigError(Exception):
    """Raised when the operator secret is missing. Always fatal."""


class DecryptionError(Exception):
    """Raised by the strict decrypt paths when a value cannot be decrypted."""


class FieldEncryptionEngine:
    """Encrypt, decrypt and blind-index individual record fields.

    Constructed once per process from the operator secret and shared by
    reference. Holds only immutable key material, so one instance may be
    used from any number of requests or threads.
    """

    PREFIX: str = "enc:v1:"
    LEGACY_IV_SIZE: int = 16

    _LEGACY_RE = re.compile(r"^[0-9a-fA-F]{32}:[0-9a-fA-F]{32}:[0-9a-fA-F]*$")

    __slots__ = ("_key", "_index_key", "_legacy_key")

    def __init__(self, secret: str | None, legacy_key: bytes | None = None) -> None:
        if secret is None or not secret.strip():
            raise EncryptionConfigError(
                "ENCRYPT_KEY_SECRET is not set. Field encryption cannot run "
                "without an operator secret."
            )
        self._key = derive_key_from_secret(secret)
        # Blind indexes are keyed with the raw secret so existing hashes match.
        self._index_key = secret.encode("utf-8")
        self._legacy_key = legacy_key

    @classmethod
    def from_settings(cls, settings: Any) -> FieldEncryptionEngine:
        legacy_hex = getattr(settings, "legacy_encryption_key", "")
        legacy_key = bytes.fromhex(legacy_hex) if legacy_hex else None
        return cls(settings.encrypt_key_secret, legacy_key=legacy_key)

    # ------------------------------------------------------------------
    # Single values
    # ------------------------------------------------------------------

    def is_encrypted(self, value: Any) -> bool:
        """True if value carries the envelope version prefix."""
        return isinstance(value, str) and value.startswith(self.PREFIX)

    def is_legacy_encrypted(self, value: Any) -> bool:
        """True if value looks like old hex ``iv:tag:ciphertext`` storage."""
        return isinstance(value, str) and bool(self._LEGACY_RE.match(value))

    def encrypt(self, plaintext: str | None) -> str | None:
        """Encrypt a string into an envelope.

        Empty and None values are returned as-is, and so are values that are
        already envelopes.
        """
        if not isinstance(plaintext, str) or plaintext == "":
            return plaintext
        if self.is_encrypted(plaintext):
            return plaintext
        sealed = aes_gcm_seal(self._key, plaintext.encode("utf-8"))
        return self.PREFIX + base64.b64encode(sealed).decode("ascii")

    def decrypt_strict(self, value: str) -> str:
        """Decrypt an envelope or raise DecryptionError.

        Non-envelope input is returned unchanged.
        """
        if not self.is_encrypted(value):
            return value
        try:
            payload = base64.b64decode(value[len(self.PREFIX):], validate=True)
            return aes_gcm_open(self._key, payload).decode("utf-8")
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError(f"Malformed envelope: {exc}") from exc
        except InvalidTag as exc:
            raise DecryptionError(
                "Envelope failed authentication (tampered data or wrong key)"
            ) from exc

    def decrypt(self, value: Any) -> Any:
        """Decrypt an envelope, failing soft.

        Non-envelope values come back unchanged. If the envelope cannot be
        decrypted the failure is logged and the envelope itself is returned;
        callers detect that case with ``is_encrypted`` on the result.
        """
        if not self.is_encrypted(value):
            return value
        try:
            return self.decrypt_strict(value)
        except DecryptionError as exc:
            logger.warning("Could not decrypt field value (%d chars): %s", len(value), exc)
            return value

    def decrypt_legacy(self, value: str) -> str:
        """Decrypt old hex ``iv:tag:ciphertext`` storage.

        Tries the current key first, then the configured legacy key.
        Raises DecryptionError if neither works.
        """
        if not self.is_legacy_encrypted(value):
            raise DecryptionError("Value is not in legacy ciphertext format")
        iv_hex, tag_hex, ct_hex = value.split(":", 2)
        iv, tag, ciphertext = bytes.fromhex(iv_hex), bytes.fromhex(tag_hex), bytes.fromhex(ct_hex)

        keys = [self._key]
        if self._legacy_key is not None:
            keys.append(self._legacy_key)
        for key in keys:
            try:
                return aes_gcm_open_parts(key, iv, tag, ciphertext).decode("utf-8")
            except (InvalidTag, ValueError):
                continue
        raise DecryptionError("Legacy ciphertext could not be decrypted with any known key")

    def compute_blind_index(self, plaintext: str | None) -> str:
        """Keyed, normalized (trimmed, lowercased) HMAC-SHA256 hex digest."""
        if not isinstance(plaintext, str):
            return ""
        normalized = plaintext.strip().lower()
        if not normalized:
            return ""
        return hmac_sha256(self._index_key, normalized.encode("utf-8"))

    # ------------------------------------------------------------------
    # Whole records
    # ------------------------------------------------------------------

    def _is_ciphertext(self, value: Any) -> bool:
        return self.is_encrypted(value) or self.is_legacy_encrypted(value)

    def _is_plaintext(self, value: Any) -> bool:
        return isinstance(value, str) and value != "" and not self._is_ciphertext(value)

    def apply_on_write(
        self,
        record: MutableMapping[str, Any],
        sensitive_fields: Iterable[str],
        blind_index_fields: Iterable[str] = (),
    ) -> MutableMapping[str, Any]:
        """Prepare a record (or a partial update) for persistence.

        Blind indexes are computed from plaintext first; only then are the
        sensitive fields replaced by envelopes.
        """
        for path in blind_index_fields:
            found, value = get_path(record, path)
            if found and self._is_plaintext(value):
                digest = self.compute_blind_index(value)
                if digest:
                    set_path(record, hash_field_name(path), digest)
                else:
                    delete_path(record, hash_field_name(path))

        for path in sensitive_fields:
            found, value = get_path(record, path)
            if found and self._is_plaintext(value):
                set_path(record, path, self.encrypt(value))
        return record

    def apply_on_read(
        self,
        record: MutableMapping[str, Any],
        sensitive_fields: Iterable[str],
    ) -> MutableMapping[str, Any]:
        """Replace envelopes in sensitive fields by their plaintext."""
        for path in sensitive_fields:
            found, value = get_path(record, path)
            if found and self.is_encrypted(value):
                set_path(record, path, self.decrypt(value))
        return record

    def undecryptable_fields(
        self,
        record: MutableMapping[str, Any],
        sensitive_fields: Iterable[str],
    ) -> list[str]:
        """Fields still holding ciphertext, e.g. after a failed apply_on_read."""
        remaining = []
        for path in sensitive_fields:
            found, value = get_path(record, path)
            if found and self._is_ciphertext(value):
                remaining.append(path)
        return remaining


def hash_field_name(path: str) -> str:
    """Name of the blind-index sibling of a (possibly dotted) field path."""
    return f"{path}{HASH_SUFFIX}"


def get_path(record: MutableMapping[str, Any], path: str) -> tuple[bool, Any]:
    """Look up a dotted path. Returns (found, value)."""
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, MutableMapping) or part not in current:
            return False, None
        current = current[part]
    return True, current


def set_path(record: MutableMapping[str, Any], path: str, value: Any) -> None:
    """Set a dotted path, creating intermediate dicts as needed."""
    parts = path.split(".")
    current = record
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, MutableMapping):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def delete_path(record: MutableMapping[str, Any], path: str) -> None:
    """Remove a dotted path if present."""
    parts = path.split(".")
    current: Any = record
    for part in parts[:-1]:
        if not isinstance(current, MutableMapping) or part not in current:
            return
        current = current[part]
    if isinstance(current, MutableMapping):
        current.pop(parts[-1], None)
