"""
groupcrypt - Key mismatch recovery.

A wrapped group key that fails authentication means the wrapping peer's
key pair changed after the envelope was written. Only the group creator may
repair this:

    1. Take the plaintext group key from the cache, or probe the other
       members' envelopes that the creator wrapped, first success wins.
    2. If nothing decrypts anywhere, mint a new key. Every message encrypted
       under the old key becomes unreadable, so this is reported as a
       REGENERATED outcome and to the data-loss callback.
    3. Re-wrap for every member under their current public keys,
       overwriting the old envelopes.
    4. Re-fetch the creator's envelope and confirm it unwraps.

Separately, whenever the creator unwraps normally, a background job
re-wraps the key for the other members so that latent mismatches heal
without anyone noticing. Failures there are logged and dropped.
"""

import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Tuple

from . import cipher
from .background import BackgroundTaskQueue
from .errors import (
    AwaitingCreatorError,
    CriticalWrapFailure,
    DecryptionError,
    GroupCryptError,
)
from .group import GroupKeyDistributor, WrapFailures

logger = logging.getLogger(__name__)


class RecoveryOutcome(Enum):
    RECOVERED = "recovered"  # Existing key found and re-wrapped
    REGENERATED = "regenerated"  # No holder found, new key minted


@dataclass
class RecoveryResult:
    group_id: str
    outcome: RecoveryOutcome
    key: bytes
    source: Optional[str] = None  # "cache" or the member whose envelope yielded the key
    failures: WrapFailures = field(default_factory=list)

    @property
    def data_loss(self) -> bool:
        """True when messages under the previous key can no longer be read."""
        return self.outcome is RecoveryOutcome.REGENERATED


DataLossCallback = Callable[[RecoveryResult], Any]


class KeyMismatchRecovery:
    """Creator-side repair of stale group key envelopes."""

    def __init__(
        self,
        distributor: GroupKeyDistributor,
        background: Optional[BackgroundTaskQueue] = None,
        on_data_loss: Optional[DataLossCallback] = None,
    ):
        self.distributor = distributor
        self.background = background
        self.on_data_loss = on_data_loss
        distributor.attach_recovery(self)

    async def recover(
        self,
        group_id: str,
        self_id: str,
        creator_id: str,
        members: Optional[Sequence[str]],
    ) -> RecoveryResult:
        """
        Repair the group's envelopes and return the key now in force.

        Raises:
            AwaitingCreatorError: caller is not the creator (reason KEY_MISMATCH)
            CriticalWrapFailure: the creator's own envelope could not be rewritten
        """
        if self_id != creator_id:
            raise AwaitingCreatorError(group_id, AwaitingCreatorError.KEY_MISMATCH)
        if not members:
            logger.warning(f"Cannot repair group {group_id} without its member list")
            raise AwaitingCreatorError(group_id, AwaitingCreatorError.KEY_MISMATCH)

        distributor = self.distributor
        member_ids = list(dict.fromkeys(members))
        async with distributor.lock(group_id):
            previous = distributor.begin_repair(group_id)
            logger.info(f"Repairing encryption for group {group_id} (as creator)")
            try:
                key, source = await self._find_existing_key(group_id, creator_id, member_ids)
                if key is None:
                    key = cipher.generate_key()
                    outcome = RecoveryOutcome.REGENERATED
                    logger.error(
                        f"No member could unwrap the key for group {group_id}; minted a new "
                        f"group key. Messages encrypted under the previous key are unreadable."
                    )
                else:
                    outcome = RecoveryOutcome.RECOVERED

                try:
                    await distributor.wrap_for_member(group_id, key, creator_id, wrapped_by=creator_id)
                except GroupCryptError as e:
                    raise CriticalWrapFailure(group_id, str(e)) from e
                others = [member for member in member_ids if member != creator_id]
                failures = await distributor.wrap_for_members(
                    group_id, key, others, wrapped_by=creator_id
                )
            except BaseException:
                distributor.abort_repair(group_id, previous)
                raise
            distributor.mark_ready(group_id, key)

        result = RecoveryResult(group_id, outcome, key, source, failures)
        if result.data_loss:
            await self._report_data_loss(result)

        await self._verify(group_id, creator_id, key)
        logger.info(
            f"Group {group_id} repaired ({outcome.value}); "
            f"{len(member_ids) - len(failures)}/{len(member_ids)} members re-wrapped"
        )
        return result

    async def _find_existing_key(
        self, group_id: str, creator_id: str, members: List[str]
    ) -> Tuple[Optional[bytes], Optional[str]]:
        cached = self.distributor.cached_key(group_id)
        if cached is not None:
            return cached, "cache"

        pairwise = self.distributor.pairwise
        for member_id in members:
            if member_id == creator_id:
                continue
            try:
                envelope = await self.distributor.group_store.fetch_envelope(group_id, member_id)
            except GroupCryptError as e:
                logger.debug(f"Could not fetch envelope of {member_id} in {group_id}: {e}")
                continue
            # Only envelopes this creator wrapped share a pairwise key with it
            if envelope is None or (envelope.wrapped_by or creator_id) != creator_id:
                continue
            try:
                pairwise.invalidate(member_id)
                pair_key = await pairwise.derive_for_peer(member_id)
                key = cipher.decrypt(envelope.envelope, pair_key)
            except GroupCryptError as e:
                logger.debug(f"Envelope of {member_id} in {group_id} did not decrypt: {e}")
                continue
            logger.info(f"Recovered group key for {group_id} from envelope of {member_id}")
            return key, member_id
        return None, None

    async def _report_data_loss(self, result: RecoveryResult) -> None:
        if self.on_data_loss is None:
            return
        try:
            outcome = self.on_data_loss(result)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(f"Data-loss callback failed for group {result.group_id}: {e}", exc_info=True)

    async def _verify(self, group_id: str, creator_id: str, key: bytes) -> None:
        envelope = await self.distributor.group_store.fetch_envelope(group_id, creator_id)
        if envelope is None:
            raise CriticalWrapFailure(group_id, "creator envelope missing after repair")
        unwrapped = await self.distributor.unwrap_envelope(
            envelope, envelope.wrapped_by or creator_id
        )
        if unwrapped != key:
            raise DecryptionError("Creator envelope does not hold the repaired group key")

    # Opportunistic reconciliation

    def schedule_reconciliation(
        self, group_id: str, creator_id: str, members: Sequence[str]
    ) -> bool:
        """Queue a background re-wrap for every member except the creator."""
        if self.background is None:
            return False
        others = [member for member in dict.fromkeys(members) if member != creator_id]
        if not others:
            return False
        return self.background.submit(
            f"reconcile:{group_id}", lambda: self.reconcile(group_id, creator_id, others)
        )

    async def reconcile(
        self, group_id: str, creator_id: str, members: Sequence[str]
    ) -> WrapFailures:
        key = self.distributor.cached_key(group_id)
        if key is None:
            logger.debug(f"No cached key for {group_id}, skipping reconciliation")
            return []
        failures = await self.distributor.wrap_for_members(
            group_id, key, members, wrapped_by=creator_id
        )
        if failures:
            logger.info(
                f"Reconciliation for {group_id} skipped {len(failures)} member(s): "
                f"{', '.join(member for member, _ in failures)}"
            )
        else:
            logger.debug(f"Reconciled {len(members)} member envelopes for {group_id}")
        return failures
