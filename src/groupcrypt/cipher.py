"""
groupcrypt - Authenticated symmetric encryption.

AES-256-GCM with a fresh 96-bit IV per call and a 128-bit authentication
tag. The tag is carried separately from the ciphertext so envelopes match
the wire format shared with the browser clients:

    {"ciphertext": b64, "iv": b64(12 bytes), "authTag": b64(16 bytes)}

The same envelope shape carries chat messages, wrapped group keys and call
signaling payloads.
"""

import base64
import binascii
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import AUTH_TAG_SIZE, IV_SIZE, KEY_SIZE
from .errors import CryptoError, DecryptionError, ErrorCode, InvalidEncodingError


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(data: Any, field: str = "data") -> bytes:
    """Strictly decode base64, raising InvalidEncodingError on malformed input."""
    if not isinstance(data, (str, bytes)):
        raise InvalidEncodingError(f"Field '{field}' is not base64 text", {"field": field})
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidEncodingError(f"Malformed base64 in '{field}'", {"field": field}) from e


@dataclass(frozen=True)
class EncryptedEnvelope:
    """Raw (ciphertext, iv, auth_tag) triple produced by ``encrypt``."""

    ciphertext: bytes
    iv: bytes
    auth_tag: bytes

    def to_dict(self, ciphertext_field: str = "ciphertext") -> Dict[str, str]:
        """Encode for the wire; chat messages use ``encryptedData`` as the ciphertext field."""
        return {
            ciphertext_field: b64encode(self.ciphertext),
            "iv": b64encode(self.iv),
            "authTag": b64encode(self.auth_tag),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EncryptedEnvelope":
        """Decode a wire envelope. Accepts ``ciphertext`` or ``encryptedData``."""
        if not isinstance(data, Mapping):
            raise InvalidEncodingError("Envelope is not a mapping")
        if "ciphertext" in data:
            ciphertext_field = "ciphertext"
        elif "encryptedData" in data:
            ciphertext_field = "encryptedData"
        else:
            raise InvalidEncodingError("Envelope has no ciphertext field")
        for name in ("iv", "authTag"):
            if name not in data:
                raise InvalidEncodingError(f"Envelope is missing '{name}'", {"field": name})
        return cls(
            ciphertext=b64decode(data[ciphertext_field], ciphertext_field),
            iv=b64decode(data["iv"], "iv"),
            auth_tag=b64decode(data["authTag"], "authTag"),
        )


@dataclass(frozen=True)
class WrappedGroupKeyEnvelope:
    """A group key encrypted for one member under a pairwise key.

    ``wrapped_by`` is the peer whose pairwise key was used; legacy records
    written before the field existed carry ``None``.
    """

    envelope: EncryptedEnvelope
    wrapped_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = self.envelope.to_dict(ciphertext_field="encryptedGroupKey")
        data["encryptedBy"] = self.wrapped_by
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WrappedGroupKeyEnvelope":
        if not isinstance(data, Mapping) or "encryptedGroupKey" not in data:
            raise InvalidEncodingError("Wrapped group key has no 'encryptedGroupKey'")
        for name in ("iv", "authTag"):
            if name not in data:
                raise InvalidEncodingError(f"Wrapped group key is missing '{name}'", {"field": name})
        envelope = EncryptedEnvelope(
            ciphertext=b64decode(data["encryptedGroupKey"], "encryptedGroupKey"),
            iv=b64decode(data["iv"], "iv"),
            auth_tag=b64decode(data["authTag"], "authTag"),
        )
        wrapped_by = data.get("encryptedBy")
        return cls(envelope=envelope, wrapped_by=str(wrapped_by) if wrapped_by else None)


def generate_key() -> bytes:
    """Generate a fresh random AES-256 key (used for group keys)."""
    return os.urandom(KEY_SIZE)


def _aead(key: bytes) -> AESGCM:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise CryptoError(ErrorCode.E103_INVALID_KEY, f"Symmetric key must be {KEY_SIZE} bytes")
    return AESGCM(bytes(key))


def encrypt(plaintext: bytes, key: bytes) -> EncryptedEnvelope:
    """
    Encrypt ``plaintext`` with AES-256-GCM.

    A new random IV is drawn for every call, so two encryptions of the same
    plaintext under the same key never share an IV or ciphertext.
    """
    aesgcm = _aead(key)
    iv = os.urandom(IV_SIZE)
    sealed = aesgcm.encrypt(iv, plaintext, None)
    return EncryptedEnvelope(
        ciphertext=sealed[:-AUTH_TAG_SIZE], iv=iv, auth_tag=sealed[-AUTH_TAG_SIZE:]
    )


def decrypt(envelope: EncryptedEnvelope, key: bytes) -> bytes:
    """
    Decrypt and authenticate an envelope.

    Raises:
        InvalidEncodingError: IV is not 12 bytes or auth tag is not 16 bytes
        DecryptionError: the authentication tag does not verify under ``key``
    """
    if len(envelope.iv) != IV_SIZE:
        raise InvalidEncodingError(
            f"IV must be {IV_SIZE} bytes, got {len(envelope.iv)}", {"field": "iv"}
        )
    if len(envelope.auth_tag) != AUTH_TAG_SIZE:
        raise InvalidEncodingError(
            f"Auth tag must be {AUTH_TAG_SIZE} bytes, got {len(envelope.auth_tag)}",
            {"field": "authTag"},
        )
    aesgcm = _aead(key)
    try:
        return aesgcm.decrypt(envelope.iv, envelope.ciphertext + envelope.auth_tag, None)
    except InvalidTag as e:
        raise DecryptionError(
            "Failed to decrypt message. Message may be corrupted or key mismatch."
        ) from e


def encrypt_text(plaintext: str, key: bytes) -> EncryptedEnvelope:
    return encrypt(plaintext.encode("utf-8"), key)


def decrypt_text(envelope: EncryptedEnvelope, key: bytes) -> str:
    plaintext = decrypt(envelope, key)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidEncodingError("Decrypted payload is not valid UTF-8") from e
