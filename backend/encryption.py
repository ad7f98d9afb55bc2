"""
Field-level encryption for sensitive text columns.

Project names/descriptions and task titles/descriptions are stored as
self-describing JSON envelopes:

    {"encryptedData": "<hex>", "iv": "<hex>", "tag": "<hex>", "salt": "<hex>"}

Each value is encrypted with AES-256-GCM under a data key derived from the
process-wide secret with PBKDF2-HMAC-SHA512 and a fresh random salt, so no two
records share a data key. The key derivation is deliberately slow; the
iteration count is configurable (ENCRYPTION_KDF_ITERATIONS).

Decoding is lenient: values that are not envelopes (rows written before
encryption was introduced) and envelopes that fail authentication are
returned as stored, and the failure is logged. Reads stay available even if a
row is damaged.

The ORM models know nothing about encryption. Services apply the codec at the
repository boundary through EncodedFieldSet.
"""

import json
import logging
import os
from typing import Any, Dict, Iterable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

KEY_LENGTH = 32  # 256 bits for AES-256
IV_LENGTH = 16
SALT_LENGTH = 32
TAG_LENGTH = 16

ENVELOPE_KEYS = ("encryptedData", "iv", "tag", "salt")


class EncryptionKeyError(ValueError):
    """The configured secret is missing or has the wrong length."""


def _parse_envelope(value: str) -> Optional[Dict[str, str]]:
    if not value.startswith("{"):
        return None
    try:
        data = json.loads(value)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    if not all(isinstance(data.get(key), str) for key in ENVELOPE_KEYS):
        return None
    return data


def is_envelope(value: Optional[str]) -> bool:
    """Check whether a stored value has the shape of an encryption envelope."""
    if not value:
        return False
    return _parse_envelope(value) is not None


class EncryptionCodec:
    """
    Encrypts and decrypts individual text values.

    One instance is built at startup from ENCRYPTION_KEY and shared by every
    request; it holds no mutable state.
    """

    def __init__(self, secret: bytes, kdf_iterations: int = 100000):
        if len(secret) != KEY_LENGTH:
            raise EncryptionKeyError(
                f"ENCRYPTION_KEY must be exactly {KEY_LENGTH * 2} hex characters ({KEY_LENGTH} bytes)."
            )
        self._secret = secret
        self._kdf_iterations = kdf_iterations

    @classmethod
    def from_hex(cls, hex_key: Optional[str], kdf_iterations: int = 100000) -> "EncryptionCodec":
        """
        Build a codec from the hex-encoded secret.

        Raises:
            EncryptionKeyError: if the key is missing, not hex, or not 32 bytes
        """
        if not hex_key:
            raise EncryptionKeyError(
                "ENCRYPTION_KEY environment variable is required. "
                "Generate one with: python -c 'import secrets; print(secrets.token_hex(32))'"
            )
        try:
            secret = bytes.fromhex(hex_key.strip())
        except ValueError:
            raise EncryptionKeyError("ENCRYPTION_KEY must be hex-encoded.") from None
        return cls(secret, kdf_iterations)

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self._kdf_iterations,
        )
        return kdf.derive(self._secret)

    def encode(self, plaintext: Optional[str]) -> Optional[str]:
        """
        Encrypt a value into an envelope.

        None, empty and whitespace-only strings are returned unchanged.
        """
        if plaintext is None or plaintext.strip() == "":
            return plaintext

        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        key = self._derive_key(salt)

        sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

        return json.dumps({
            "encryptedData": ciphertext.hex(),
            "iv": iv.hex(),
            "tag": tag.hex(),
            "salt": salt.hex(),
        })

    def decode(self, stored: Optional[str]) -> Optional[str]:
        """
        Decrypt an envelope back into plaintext.

        Non-envelope values are returned unchanged. Envelopes that cannot be
        decrypted (tampered, truncated, wrong key) are logged and returned
        unchanged as well.
        """
        if stored is None or stored.strip() == "":
            return stored

        envelope = _parse_envelope(stored)
        if envelope is None:
            return stored

        try:
            salt = bytes.fromhex(envelope["salt"])
            iv = bytes.fromhex(envelope["iv"])
            tag = bytes.fromhex(envelope["tag"])
            ciphertext = bytes.fromhex(envelope["encryptedData"])
            key = self._derive_key(salt)
            return AESGCM(key).decrypt(iv, ciphertext + tag, None).decode("utf-8")
        except (InvalidTag, ValueError) as e:
            logger.warning(f"Decryption failed, returning stored value as-is: {type(e).__name__}")
            return stored


class EncodedField:
    """A model attribute whose value is persisted as an envelope."""

    def __init__(self, name: str):
        self.name = name

    def store(self, instance: Any, value: Optional[str], codec: EncryptionCodec) -> None:
        setattr(instance, self.name, codec.encode(value))

    def load(self, instance: Any, codec: EncryptionCodec) -> Optional[str]:
        return codec.decode(getattr(instance, self.name))


class EncodedFieldSet:
    """The encrypted attributes of one model."""

    def __init__(self, *names: str):
        self.fields = {name: EncodedField(name) for name in names}

    def __contains__(self, name: str) -> bool:
        return name in self.fields

    def encode_values(self, values: Dict[str, Any], codec: EncryptionCodec) -> Dict[str, Any]:
        """Return a copy of a column->value mapping with encrypted fields encoded."""
        return {
            key: codec.encode(value) if key in self.fields else value
            for key, value in values.items()
        }

    def store(self, instance: Any, values: Dict[str, Any], codec: EncryptionCodec) -> None:
        for key, value in values.items():
            if key in self.fields:
                self.fields[key].store(instance, value, codec)
            else:
                setattr(instance, key, value)

    def load(self, instance: Any, codec: EncryptionCodec, names: Optional[Iterable[str]] = None) -> Dict[str, Optional[str]]:
        """Decrypt the encrypted attributes of instance into a name->plaintext mapping."""
        selected = self.fields if names is None else {n: self.fields[n] for n in names}
        return {name: field.load(instance, codec) for name, field in selected.items()}


PROJECT_FIELDS = EncodedFieldSet("name", "description")
TASK_FIELDS = EncodedFieldSet("title", "description")
