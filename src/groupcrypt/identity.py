"""
groupcrypt - Identity key lifecycle.

Each logged-in user owns one X25519 key-agreement keypair. It is created on
first login, persisted through a KeyStorage collaborator, and loaded on
later logins. The private half never leaves the device; only the raw public
key is published to the registry.

When a passphrase is supplied the stored record is sealed with AES-256-GCM
under an Argon2id-derived key:
    - Time cost: 3 iterations
    - Memory cost: 65536 KB (64 MB)
    - Parallelism: 1 thread
    - Unique 16-byte salt per record
"""

import json
import logging
import os
from typing import Any, Dict, Optional

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .cipher import b64decode, b64encode
from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    IDENTITY_RECORD_VERSION,
    IV_SIZE,
    KEY_SIZE,
    SALT_SIZE,
)
from .errors import (
    ErrorCode,
    IdentityError,
    IdentityGenerationError,
    InvalidEncodingError,
    UninitializedError,
)
from .storage import KeyStorage

logger = logging.getLogger(__name__)


class IdentityKeyPair:
    """
    A user's X25519 identity key pair.

    X25519 provides:
    - 128-bit security level
    - Small key size (32 bytes)
    - Resistance to timing attacks
    """

    def __init__(self, private_key: Optional[x25519.X25519PrivateKey] = None):
        if private_key is None:
            private_key = x25519.X25519PrivateKey.generate()
        self.private_key = private_key
        self.public_key = self.private_key.public_key()

    def get_public_key_bytes(self) -> bytes:
        """Get public key as raw bytes."""
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw
        )

    def get_private_key_bytes(self) -> bytes:
        """Get private key as raw bytes."""
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def exchange(self, peer_public_key_bytes: bytes) -> bytes:
        """Run X25519 against a peer's raw public key and return the shared secret."""
        peer = x25519.X25519PublicKey.from_public_bytes(peer_public_key_bytes)
        return self.private_key.exchange(peer)

    def to_dict(self) -> Dict[str, str]:
        """Export key pair to dictionary for storage."""
        return {
            "private": b64encode(self.get_private_key_bytes()),
            "public": b64encode(self.get_public_key_bytes()),
        }

    @staticmethod
    def from_dict(data: Dict[str, str]) -> "IdentityKeyPair":
        """Import key pair from dictionary, checking the public half matches."""
        private_bytes = b64decode(data["private"], "private")
        if len(private_bytes) != KEY_SIZE:
            raise InvalidEncodingError("Stored private key has the wrong length")
        keypair = IdentityKeyPair(x25519.X25519PrivateKey.from_private_bytes(private_bytes))
        stored_public = data.get("public")
        if stored_public and b64decode(stored_public, "public") != keypair.get_public_key_bytes():
            raise IdentityError(
                ErrorCode.E305_INVALID_IDENTITY,
                "Stored public key does not match the stored private key",
            )
        return keypair


def generate_fingerprint(public_key_bytes: bytes) -> str:
    """
    Generate a human-readable fingerprint from a public key using SHA-256.

    Returns a 64-character hexadecimal fingerprint.
    """
    digest = hashes.Hash(hashes.SHA256())
    digest.update(public_key_bytes)
    return digest.finalize().hex()


def _derive_storage_key(passphrase: str, salt: bytes) -> bytes:
    return hash_secret_raw(
        secret=passphrase.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=KEY_SIZE,
        type=Type.ID,
    )


def seal_record(keypair_data: Dict[str, str], passphrase: str) -> Dict[str, Any]:
    """Encrypt an exported keypair with a passphrase (Argon2id + AES-256-GCM)."""
    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(IV_SIZE)
    key = _derive_storage_key(passphrase, salt)
    ciphertext = AESGCM(key).encrypt(nonce, json.dumps(keypair_data).encode("utf-8"), None)
    return {
        "version": IDENTITY_RECORD_VERSION,
        "sealed": True,
        "salt": b64encode(salt),
        "nonce": b64encode(nonce),
        "ciphertext": b64encode(ciphertext),
    }


def unseal_record(record: Dict[str, Any], passphrase: str) -> Dict[str, str]:
    """
    Decrypt a sealed identity record.

    Raises IdentityError if the passphrase is wrong or the record is corrupted.
    """
    salt = b64decode(record["salt"], "salt")
    nonce = b64decode(record["nonce"], "nonce")
    ciphertext = b64decode(record["ciphertext"], "ciphertext")
    key = _derive_storage_key(passphrase, salt)
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise IdentityError(
            ErrorCode.E303_IDENTITY_LOAD_FAILED,
            "Failed to decrypt identity. Incorrect passphrase or corrupted record.",
        ) from e
    return json.loads(plaintext.decode("utf-8"))


class IdentityKeyStore:
    """Owns the in-memory identity keypair and its durable copy."""

    def __init__(self, storage: KeyStorage, passphrase: Optional[str] = None):
        self.storage = storage
        self.passphrase = passphrase
        self.keypair: Optional[IdentityKeyPair] = None

    @property
    def is_initialized(self) -> bool:
        return self.keypair is not None

    def generate(self) -> IdentityKeyPair:
        """
        Create a fresh keypair, replacing any in-memory pair.

        Calling this twice rotates the identity; callers decide when that is wanted.
        """
        try:
            keypair = IdentityKeyPair()
        except Exception as e:
            raise IdentityGenerationError(f"Identity keypair generation failed: {e}") from e
        self.keypair = keypair
        logger.info(f"Generated identity keypair {self.fingerprint()[:16]}")
        return keypair

    def require_keypair(self) -> IdentityKeyPair:
        if self.keypair is None:
            raise UninitializedError("Crypto not initialized. Generate or load an identity first.")
        return self.keypair

    def export_public_key(self) -> bytes:
        return self.require_keypair().get_public_key_bytes()

    def export_public_key_b64(self) -> str:
        return b64encode(self.export_public_key())

    def fingerprint(self) -> str:
        return generate_fingerprint(self.export_public_key())

    async def persist(self, user_id: str) -> None:
        """Write the current keypair to durable storage for ``user_id``."""
        keypair = self.require_keypair()
        data = keypair.to_dict()
        if self.passphrase:
            record = seal_record(data, self.passphrase)
        else:
            record = {"version": IDENTITY_RECORD_VERSION, "sealed": False, **data}
        try:
            await self.storage.save(user_id, record)
        except OSError as e:
            raise IdentityError(
                ErrorCode.E304_IDENTITY_SAVE_FAILED,
                f"Failed to save identity: {e}",
                {"user_id": user_id},
            ) from e
        logger.info(f"Identity persisted for user {user_id}")

    async def load(self, user_id: str) -> bool:
        """
        Load the persisted keypair for ``user_id``.

        Returns False when nothing is stored. Raises IdentityError for a
        corrupted record or a wrong passphrase.
        """
        try:
            record = await self.storage.load(user_id)
        except (OSError, ValueError) as e:
            raise IdentityError(
                ErrorCode.E303_IDENTITY_LOAD_FAILED,
                f"Corrupted identity record: {e}",
                {"user_id": user_id},
            ) from e
        if record is None:
            logger.debug(f"No stored identity for user {user_id}")
            return False

        try:
            if record.get("sealed"):
                if not self.passphrase:
                    raise IdentityError(
                        ErrorCode.E303_IDENTITY_LOAD_FAILED,
                        "Identity record is sealed but no passphrase was given",
                        {"user_id": user_id},
                    )
                data = unseal_record(record, self.passphrase)
            else:
                data = record
            self.keypair = IdentityKeyPair.from_dict(data)
        except (KeyError, InvalidEncodingError, ValueError) as e:
            raise IdentityError(
                ErrorCode.E303_IDENTITY_LOAD_FAILED,
                f"Corrupted identity record: {e}",
                {"user_id": user_id},
            ) from e
        logger.info(f"Identity loaded for user {user_id} ({self.fingerprint()[:16]})")
        return True

    def clear_volatile(self) -> None:
        """Forget the in-memory pair (logout). Persisted material is untouched."""
        self.keypair = None

    async def delete(self, user_id: str) -> bool:
        """Destroy the persisted keypair and the in-memory copy."""
        self.keypair = None
        deleted = await self.storage.delete(user_id)
        if deleted:
            logger.warning(f"Identity keys deleted for user {user_id}")
        return deleted
