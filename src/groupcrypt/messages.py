"""
groupcrypt - Chat message send and receive paths.

Group messages are encrypted under the group key and travel as

    {"encryptedData": b64, "iv": b64, "authTag": b64, "isEncrypted": true}

Direct messages use the pairwise key shared with the other user and the
same envelope with a ``ciphertext`` field. Messages that cannot be read are
rendered as short placeholders rather than raising into the chat view.
"""

import logging
from typing import Any, Dict, Mapping, Optional, Sequence

from . import cipher
from .cipher import EncryptedEnvelope
from .constants import (
    PLACEHOLDER_AWAITING_SETUP,
    PLACEHOLDER_DECRYPTION_FAILED,
    PLACEHOLDER_KEY_MISMATCH,
)
from .errors import (
    AwaitingCreatorError,
    DecryptionError,
    GroupCryptError,
    InvalidEncodingError,
)
from .group import GroupKeyDistributor
from .pairwise import PairwiseKeyAgreement

logger = logging.getLogger(__name__)


def placeholder_for(error: BaseException) -> str:
    """Text shown in place of a group message that could not be decrypted."""
    if isinstance(error, AwaitingCreatorError):
        if error.reason == AwaitingCreatorError.KEY_MISMATCH:
            return PLACEHOLDER_KEY_MISMATCH
        return PLACEHOLDER_AWAITING_SETUP
    return PLACEHOLDER_DECRYPTION_FAILED


async def encrypt_group_message(
    distributor: GroupKeyDistributor,
    text: str,
    group_id: str,
    self_id: str,
    creator_id: str,
    members: Optional[Sequence[str]] = None,
) -> Dict[str, Any]:
    """Encrypt ``text`` for the group. Errors propagate to the sender."""
    key = await distributor.fetch_and_unwrap(group_id, self_id, creator_id, members)
    message: Dict[str, Any] = cipher.encrypt_text(text, key).to_dict(ciphertext_field="encryptedData")
    message["isEncrypted"] = True
    return message


async def open_group_message(
    distributor: GroupKeyDistributor,
    message: Mapping[str, Any],
    group_id: str,
    self_id: str,
    creator_id: str,
    members: Optional[Sequence[str]] = None,
) -> str:
    """
    Decrypt a group message, raising on failure.

    A message that fails under a cached group key gets one more attempt
    after the cache is dropped, since the creator may have replaced the key.
    """
    if not message.get("isEncrypted"):
        return str(message.get("text", ""))

    envelope = EncryptedEnvelope.from_dict(message)
    had_cached = distributor.cached_key(group_id) is not None
    key = await distributor.fetch_and_unwrap(group_id, self_id, creator_id, members)
    try:
        return cipher.decrypt_text(envelope, key)
    except InvalidEncodingError:
        raise
    except DecryptionError:
        if not had_cached:
            raise
        logger.info(f"Message in {group_id} failed under cached group key, refetching")
        distributor.forget(group_id)
        key = await distributor.fetch_and_unwrap(group_id, self_id, creator_id, members)
        return cipher.decrypt_text(envelope, key)


async def decrypt_group_message(
    distributor: GroupKeyDistributor,
    message: Mapping[str, Any],
    group_id: str,
    self_id: str,
    creator_id: str,
    members: Optional[Sequence[str]] = None,
) -> str:
    """Decrypt a group message for display, rendering failures as placeholders."""
    try:
        return await open_group_message(
            distributor, message, group_id, self_id, creator_id, members
        )
    except AwaitingCreatorError as e:
        logger.info(f"Group {group_id}: {e.message}")
        return placeholder_for(e)
    except GroupCryptError as e:
        logger.error(f"Failed to decrypt group message in {group_id}: {e}")
        return placeholder_for(e)


async def encrypt_for_user(pairwise: PairwiseKeyAgreement, text: str, peer_id: str) -> Dict[str, str]:
    key = await pairwise.derive_for_peer(peer_id)
    return cipher.encrypt_text(text, key).to_dict()


async def decrypt_from_user(
    pairwise: PairwiseKeyAgreement, message: Mapping[str, Any], peer_id: str
) -> str:
    """Decrypt a direct message, retrying once with a freshly derived pairwise key."""
    envelope = EncryptedEnvelope.from_dict(message)
    key = await pairwise.derive_for_peer(peer_id)
    try:
        return cipher.decrypt_text(envelope, key)
    except InvalidEncodingError:
        raise
    except DecryptionError:
        pairwise.invalidate(peer_id)
        key = await pairwise.derive_for_peer(peer_id)
        return cipher.decrypt_text(envelope, key)
