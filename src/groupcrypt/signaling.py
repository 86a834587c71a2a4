"""
groupcrypt - Call signaling encryption.

Offers, answers and ICE candidates are encrypted under the pairwise key
shared with the remote peer. Encryption failure is not fatal for a call:
the payload is sent in the clear and the result says so explicitly, so the
caller can surface "unencrypted call" to the user.

Wire forms:

    {"encrypted": true,  "encryptedData": {"ciphertext", "iv", "authTag"}}
    {"encrypted": false, "data": <payload>}

Older clients send bare ``offer`` / ``answer`` / ``candidate`` keys without
an ``encrypted`` flag; these are accepted as plaintext.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Mapping, Optional, TypeVar

from . import cipher
from .cipher import EncryptedEnvelope
from .constants import CALL_ANSWER_TIMEOUT
from .errors import (
    CallTimeoutError,
    DecryptionError,
    ErrorCode,
    GroupCryptError,
    InvalidEncodingError,
    SignalingDecryptError,
)
from .pairwise import PairwiseKeyAgreement

logger = logging.getLogger(__name__)

T = TypeVar("T")

LEGACY_SIGNAL_FIELDS = ("offer", "answer", "candidate")


@dataclass(frozen=True)
class SignalingResult:
    """Outcome of wrapping one signaling payload."""

    encrypted: bool
    message: Dict[str, Any]
    fallback_reason: Optional[str] = None


class SignalingEncryptor:
    """Encrypts call signaling for one peer at a time."""

    def __init__(self, pairwise: PairwiseKeyAgreement):
        self.pairwise = pairwise

    async def wrap(self, payload: Any, peer_id: str) -> SignalingResult:
        """
        Encrypt ``payload`` for ``peer_id``.

        Never raises for crypto or registry failures; returns an unencrypted
        result carrying the reason instead.

        Raises:
            GroupCryptError: E002 if ``payload`` is not JSON serializable, since
                it could be sent neither encrypted nor in the clear
        """
        try:
            plaintext = json.dumps(payload).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise GroupCryptError(
                ErrorCode.E002_INVALID_ARGUMENT,
                f"Signaling payload for {peer_id} is not JSON serializable: {e}",
                {"peer_id": peer_id},
            ) from e

        try:
            key = await self.pairwise.derive_for_peer(peer_id)
            envelope = cipher.encrypt(plaintext, key)
        except GroupCryptError as e:
            logger.warning(f"Signaling to {peer_id} sent unencrypted: {e}")
            return SignalingResult(
                encrypted=False,
                message={"encrypted": False, "data": payload},
                fallback_reason=str(e),
            )
        return SignalingResult(
            encrypted=True, message={"encrypted": True, "encryptedData": envelope.to_dict()}
        )

    async def unwrap(self, message: Mapping[str, Any], peer_id: str) -> Any:
        """
        Recover the payload from a received signaling message.

        Raises:
            SignalingDecryptError: the message claims to be encrypted but
                cannot be decoded or authenticated
        """
        if not message.get("encrypted"):
            if "data" in message:
                return message["data"]
            for field in LEGACY_SIGNAL_FIELDS:
                if field in message:
                    return message[field]
            return None

        try:
            envelope = EncryptedEnvelope.from_dict(message.get("encryptedData"))
            key = await self.pairwise.derive_for_peer(peer_id)
            try:
                plaintext = cipher.decrypt(envelope, key)
            except InvalidEncodingError:
                raise
            except DecryptionError:
                # Peer may have rotated since we cached
                self.pairwise.invalidate(peer_id)
                key = await self.pairwise.derive_for_peer(peer_id)
                plaintext = cipher.decrypt(envelope, key)
            return json.loads(plaintext.decode("utf-8"))
        except (GroupCryptError, ValueError) as e:
            logger.error(f"Failed to decrypt signaling from {peer_id}: {e}")
            raise SignalingDecryptError(
                f"Failed to decrypt signaling message from {peer_id}", {"peer_id": peer_id}
            ) from e


async def await_signal(
    awaitable: Awaitable[T], timeout: float = CALL_ANSWER_TIMEOUT, stage: str = "answer"
) -> T:
    """Wait for a signaling step, raising CallTimeoutError after ``timeout`` seconds."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.warning(f"Call {stage} timed out after {timeout:g}s")
        raise CallTimeoutError(stage, timeout) from e
