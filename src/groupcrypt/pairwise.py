"""
groupcrypt - Pairwise key agreement.

X25519 between our identity key and a peer's published public key, then
HKDF-SHA256 to a 32-byte AES-256-GCM key. Derived keys are cached per peer
and tagged with the exact public key bytes they came from, so a peer that
silently rotates is detected on the next lookup.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .constants import KEY_SIZE, PAIRWISE_HKDF_INFO
from .errors import CryptoError, ErrorCode
from .identity import IdentityKeyStore
from .registry import PublicKeyDirectory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PairwiseSessionKey:
    """A derived key plus the peer public key it was derived from."""

    peer_id: str
    peer_public_key: bytes
    key: bytes


def derive_pairwise_key(shared_secret: bytes) -> bytes:
    """Stretch an X25519 shared secret into an AES-256 key."""
    hkdf = HKDF(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=None, info=PAIRWISE_HKDF_INFO)
    return hkdf.derive(shared_secret)


class PairwiseKeyAgreement:
    """Derives and caches one symmetric key per peer."""

    def __init__(
        self,
        identity: IdentityKeyStore,
        registry: PublicKeyDirectory,
        self_id: Optional[str] = None,
    ):
        self.identity = identity
        self.registry = registry
        self.self_id = self_id
        self._cache: Dict[str, PairwiseSessionKey] = {}

    def derive(self, peer_id: str, peer_public_key: bytes) -> bytes:
        """
        Return the pairwise key for ``peer_id`` under ``peer_public_key``.

        A cached entry is reused only when it was derived from these exact
        public key bytes; otherwise it is dropped and derived again.
        """
        cached = self._cache.get(peer_id)
        if cached is not None:
            if cached.peer_public_key == peer_public_key:
                return cached.key
            logger.info(f"Public key for peer {peer_id} changed, re-deriving pairwise key")
            del self._cache[peer_id]

        keypair = self.identity.require_keypair()
        try:
            shared_secret = keypair.exchange(peer_public_key)
        except ValueError as e:
            raise CryptoError(
                ErrorCode.E108_KEY_DERIVATION_FAILED,
                f"Key agreement with peer {peer_id} failed: {e}",
                {"peer_id": peer_id},
            ) from e

        entry = PairwiseSessionKey(peer_id, bytes(peer_public_key), derive_pairwise_key(shared_secret))
        self._cache[peer_id] = entry
        logger.debug(f"Derived pairwise key for peer {peer_id}")
        return entry.key

    async def resolve_public_key(self, peer_id: str) -> bytes:
        """Current public key for ``peer_id``; our own id resolves locally."""
        if self.self_id is not None and peer_id == self.self_id and self.identity.is_initialized:
            return self.identity.export_public_key()
        return await self.registry.get_public_key(peer_id)

    async def derive_for_peer(self, peer_id: str) -> bytes:
        """Fetch the peer's currently published key and derive against it."""
        public_key = await self.resolve_public_key(peer_id)
        return self.derive(peer_id, public_key)

    def cached(self, peer_id: str) -> Optional[PairwiseSessionKey]:
        """
        Cached pairwise key for a peer without touching the registry.

        Args:
            peer_id: Normalized user id of the peer

        Returns:
            PairwiseSessionKey (key plus the public key it came from), or None
        """
        return self._cache.get(peer_id)

    def invalidate(self, peer_id: str) -> None:
        """Evict one peer so the next derivation re-reads its published key."""
        if self._cache.pop(peer_id, None) is not None:
            logger.debug(f"Invalidated pairwise key for peer {peer_id}")

    def clear(self) -> None:
        """Evict every peer (logout and identity rotation)."""
        self._cache.clear()
