"""
groupcrypt - Group key distribution.

Every group has exactly one symmetric group key. The group's creator mints
it, wraps it for each member under the pairwise key it shares with that
member, and stores one wrapped envelope per (group, member). Members unwrap
their own envelope with the pairwise key they share with whoever wrapped it.

Per-group state, as seen by this session:

    UNINITIALIZED -> INITIALIZING -> READY
    READY -> REPAIRING -> READY
    UNINITIALIZED -> REPAIRING   (creator whose own envelope is stale)

Only the creator may mint a key. A non-creator that finds no envelope, or
whose envelope no longer decrypts, is told to wait for the creator.
"""

import asyncio
import logging
from enum import Enum, auto
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from . import cipher
from .cipher import WrappedGroupKeyEnvelope
from .constants import KEY_SIZE
from .errors import (
    AuthorityError,
    AwaitingCreatorError,
    CriticalWrapFailure,
    DecryptionError,
    ErrorCode,
    GroupCryptError,
    GroupError,
    InvalidEncodingError,
    PartialWrapFailure,
)
from .pairwise import PairwiseKeyAgreement
from .registry import GroupKeyBackend

if TYPE_CHECKING:
    from .recovery import KeyMismatchRecovery

logger = logging.getLogger(__name__)

WrapFailures = List[Tuple[str, str]]


class GroupKeyState(Enum):
    """Lifecycle of a group's key within one session."""

    UNINITIALIZED = auto()  # No plaintext key held
    INITIALIZING = auto()  # Creator is minting and distributing a key
    READY = auto()  # Plaintext key cached
    REPAIRING = auto()  # Creator is re-wrapping after a mismatch


class GroupKeyDistributor:
    """
    Initializes, wraps and unwraps per-group keys.

    Plaintext group keys are cached per group for the lifetime of the
    session. Decrypt failures on unwrap are retried once with a freshly
    derived pairwise key and then handed to the attached KeyMismatchRecovery.
    """

    TRANSITIONS: Dict[GroupKeyState, Set[GroupKeyState]] = {
        GroupKeyState.UNINITIALIZED: {
            GroupKeyState.INITIALIZING,
            GroupKeyState.READY,
            GroupKeyState.REPAIRING,
        },
        GroupKeyState.INITIALIZING: {GroupKeyState.READY, GroupKeyState.UNINITIALIZED},
        GroupKeyState.READY: {
            GroupKeyState.READY,
            GroupKeyState.REPAIRING,
            GroupKeyState.UNINITIALIZED,
        },
        GroupKeyState.REPAIRING: {GroupKeyState.READY, GroupKeyState.UNINITIALIZED},
    }

    def __init__(self, pairwise: PairwiseKeyAgreement, group_store: GroupKeyBackend):
        self.pairwise = pairwise
        self.group_store = group_store
        self.recovery: Optional["KeyMismatchRecovery"] = None
        self._keys: Dict[str, bytes] = {}
        self._states: Dict[str, GroupKeyState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def attach_recovery(self, recovery: "KeyMismatchRecovery") -> None:
        """Route unwrap failures to ``recovery`` instead of raising them."""
        self.recovery = recovery

    # State and cache

    def state(self, group_id: str) -> GroupKeyState:
        """
        Current key state of a group in this session.

        Args:
            group_id: Group identifier

        Returns:
            GroupKeyState, UNINITIALIZED for groups never seen
        """
        return self._states.get(group_id, GroupKeyState.UNINITIALIZED)

    def _transition(self, group_id: str, new_state: GroupKeyState) -> GroupKeyState:
        current = self.state(group_id)
        if new_state not in self.TRANSITIONS[current]:
            raise GroupError(
                ErrorCode.E505_INVALID_STATE_TRANSITION,
                f"Invalid group key transition {current.name} -> {new_state.name}",
                {"group_id": group_id},
            )
        self._states[group_id] = new_state
        logger.debug(f"Group {group_id}: {current.name} -> {new_state.name}")
        return current

    def lock(self, group_id: str) -> asyncio.Lock:
        """Serializes key minting (initialize / repair) for one group."""
        lock = self._locks.get(group_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[group_id] = lock
        return lock

    def cached_key(self, group_id: str) -> Optional[bytes]:
        """Plaintext group key if this session holds one, else None."""
        return self._keys.get(group_id)

    def mark_ready(self, group_id: str, key: bytes) -> None:
        """Cache ``key`` as the group key in force and move to READY."""
        self._transition(group_id, GroupKeyState.READY)
        self._keys[group_id] = key

    def begin_repair(self, group_id: str) -> GroupKeyState:
        """
        Enter REPAIRING.

        Returns:
            The state before the repair, to hand back to ``abort_repair``
        """
        return self._transition(group_id, GroupKeyState.REPAIRING)

    def abort_repair(self, group_id: str, previous: GroupKeyState) -> None:
        """
        Undo ``begin_repair`` after a failed repair.

        Args:
            group_id: Group being repaired
            previous: State returned by ``begin_repair``

        READY is restored only while the key is still cached; a concurrent
        ``forget`` leaves the group UNINITIALIZED.
        """
        if previous == GroupKeyState.READY and group_id in self._keys:
            self._restore(group_id, GroupKeyState.READY)
        else:
            self._restore(group_id, GroupKeyState.UNINITIALIZED)

    def _restore(self, group_id: str, state: GroupKeyState) -> None:
        # Error paths only: set directly so a state already reset by forget() is not an error
        current = self.state(group_id)
        if state == GroupKeyState.UNINITIALIZED:
            self._states.pop(group_id, None)
        else:
            self._states[group_id] = state
        logger.debug(f"Group {group_id}: {current.name} -> {state.name} (restored)")

    def forget(self, group_id: str) -> None:
        """
        Drop the cached plaintext key for one group.

        The group returns to UNINITIALIZED and the next fetch re-reads its
        envelope from the group-key store.
        """
        self._keys.pop(group_id, None)
        self._states.pop(group_id, None)

    def clear(self) -> None:
        """Drop every cached group key and state (used on logout)."""
        self._keys.clear()
        self._states.clear()

    # Wrapping

    async def wrap_for_member(
        self, group_id: str, key: bytes, member_id: str, wrapped_by: str
    ) -> WrappedGroupKeyEnvelope:
        """Wrap ``key`` for ``member_id``'s current public key and store the envelope."""
        pair_key = await self.pairwise.derive_for_peer(member_id)
        envelope = WrappedGroupKeyEnvelope(cipher.encrypt(key, pair_key), wrapped_by=wrapped_by)
        await self.group_store.store_envelope(group_id, member_id, envelope)
        logger.debug(f"Wrapped group key for {member_id} in group {group_id}")
        return envelope

    async def wrap_for_members(
        self, group_id: str, key: bytes, member_ids: Iterable[str], wrapped_by: str
    ) -> WrapFailures:
        """Wrap for each member in turn; returns ``(member_id, reason)`` for failures."""
        failures: WrapFailures = []
        for member_id in member_ids:
            try:
                await self.wrap_for_member(group_id, key, member_id, wrapped_by)
            except GroupCryptError as e:
                logger.warning(f"Failed to wrap group key for {member_id} in {group_id}: {e}")
                failures.append((member_id, str(e)))
        return failures

    async def unwrap_envelope(self, envelope: WrappedGroupKeyEnvelope, peer_id: str) -> bytes:
        """
        Decrypt a wrapped group key using the pairwise key shared with ``peer_id``.

        An authentication failure invalidates the cached pairwise key and
        retries exactly once; a second failure raises DecryptionError.
        """
        pair_key = await self.pairwise.derive_for_peer(peer_id)
        try:
            key = cipher.decrypt(envelope.envelope, pair_key)
        except InvalidEncodingError:
            raise
        except DecryptionError:
            logger.info(f"Unwrap with cached pairwise key for {peer_id} failed, retrying")
            self.pairwise.invalidate(peer_id)
            pair_key = await self.pairwise.derive_for_peer(peer_id)
            key = cipher.decrypt(envelope.envelope, pair_key)
        if len(key) != KEY_SIZE:
            raise InvalidEncodingError(f"Unwrapped group key must be {KEY_SIZE} bytes")
        return key

    # Protocol operations

    async def initialize(
        self, group_id: str, members: Sequence[str], creator_id: str, acting_user_id: str
    ) -> bytes:
        """
        Mint and distribute the group key (creator only).

        If the creator's envelope already exists the existing key is
        unwrapped and returned instead, so a repeated call never forks the
        group's key.

        Raises:
            AuthorityError: ``acting_user_id`` is not the creator; nothing is written
            CriticalWrapFailure: the creator's own envelope could not be stored
            PartialWrapFailure: some other members could not be served; carries the key
        """
        if acting_user_id != creator_id:
            raise AuthorityError(group_id, acting_user_id, creator_id)

        async with self.lock(group_id):
            cached = self._keys.get(group_id)
            if cached is not None:
                return cached

            existing = await self.group_store.fetch_envelope(group_id, creator_id)
            if existing is None:
                return await self._distribute_new_key(group_id, members, creator_id)

        logger.info(f"Group {group_id} already has a creator envelope, reusing existing key")
        return await self._unwrap_or_recover(group_id, creator_id, creator_id, existing, members)

    async def _distribute_new_key(
        self, group_id: str, members: Sequence[str], creator_id: str
    ) -> bytes:
        logger.info(f"Initializing encryption for group {group_id} with {len(members)} members")
        self._transition(group_id, GroupKeyState.INITIALIZING)
        key = cipher.generate_key()

        # The creator's envelope is written and awaited before anything else
        try:
            await self.wrap_for_member(group_id, key, creator_id, wrapped_by=creator_id)
        except GroupCryptError as e:
            self._restore(group_id, GroupKeyState.UNINITIALIZED)
            logger.error(f"Could not store creator key for group {group_id}: {e}")
            raise CriticalWrapFailure(group_id, str(e)) from e

        self.mark_ready(group_id, key)
        others = [member for member in dict.fromkeys(members) if member != creator_id]
        failures = await self.wrap_for_members(group_id, key, others, wrapped_by=creator_id)
        if failures:
            logger.warning(
                f"Group {group_id} initialized for {len(others) - len(failures) + 1}"
                f"/{len(others) + 1} members"
            )
            raise PartialWrapFailure(group_id, key, failures)
        logger.info(f"Group encryption initialized for group {group_id}")
        return key

    async def fetch_and_unwrap(
        self,
        group_id: str,
        self_id: str,
        creator_id: str,
        members: Optional[Sequence[str]] = None,
    ) -> bytes:
        """
        Return the plaintext group key for ``self_id``.

        Uses the cache when possible. A missing envelope makes the creator
        initialize the group and makes anyone else wait. A failed decrypt is
        handed to KeyMismatchRecovery.
        """
        cached = self._keys.get(group_id)
        if cached is not None:
            return cached

        envelope = await self.group_store.fetch_envelope(group_id, self_id)
        if envelope is None:
            if self_id != creator_id:
                raise AwaitingCreatorError(group_id, AwaitingCreatorError.NO_ENVELOPE)
            if members is None:
                raise GroupError(
                    ErrorCode.E002_INVALID_ARGUMENT,
                    "Member list required to initialize group encryption",
                    {"group_id": group_id},
                )
            try:
                return await self.initialize(group_id, members, creator_id, self_id)
            except PartialWrapFailure as e:
                logger.warning(f"Group {group_id} usable with partial distribution: {e}")
                return e.key

        return await self._unwrap_or_recover(group_id, self_id, creator_id, envelope, members)

    async def _unwrap_or_recover(
        self,
        group_id: str,
        self_id: str,
        creator_id: str,
        envelope: WrappedGroupKeyEnvelope,
        members: Optional[Sequence[str]],
    ) -> bytes:
        peer_id = envelope.wrapped_by or creator_id
        try:
            key = await self.unwrap_envelope(envelope, peer_id)
        except InvalidEncodingError:
            raise
        except DecryptionError as e:
            if self.recovery is None:
                raise
            logger.warning(f"Group key for {group_id} no longer decrypts: {e}")
            result = await self.recovery.recover(group_id, self_id, creator_id, members)
            return result.key

        self.mark_ready(group_id, key)
        logger.info(f"Group key unwrapped for group {group_id}")
        if self_id == creator_id and self.recovery is not None and members:
            self.recovery.schedule_reconciliation(group_id, creator_id, members)
        return key

    async def add_member(
        self, group_id: str, new_member_id: str, acting_user_id: str, creator_id: str
    ) -> WrappedGroupKeyEnvelope:
        """Wrap the existing group key for a newly added member."""
        key = self._keys.get(group_id)
        if key is None:
            key = await self.fetch_and_unwrap(group_id, acting_user_id, creator_id)
        envelope = await self.wrap_for_member(group_id, key, new_member_id, wrapped_by=acting_user_id)
        logger.info(f"Encryption key added for new member {new_member_id} in group {group_id}")
        return envelope
