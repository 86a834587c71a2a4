"""
groupcrypt - Group key distribution tests.

Tests for creator authority, idempotent initialization, partial and
critical wrap failures, and the member-side fetch/unwrap path.
"""

import asyncio

import pytest

from groupcrypt import cipher
from groupcrypt.cipher import WrappedGroupKeyEnvelope
from groupcrypt.errors import (
    AuthorityError,
    AwaitingCreatorError,
    CriticalWrapFailure,
    ErrorCode,
    GroupError,
    PartialWrapFailure,
)
from groupcrypt.group import GroupKeyState

GROUP = "group-1"


@pytest.mark.asyncio
async def test_scenario_a_member_unwraps_creator_key(login, network):
    """Creator initializes {alice, bob}; bob unwraps the same key alice cached."""
    alice = await login("alice")
    bob = await login("bob")

    key = await alice.distributor.initialize(GROUP, ["alice", "bob"], "alice", "alice")

    assert alice.distributor.cached_key(GROUP) == key
    assert alice.distributor.state(GROUP) == GroupKeyState.READY
    assert network.group_store.writes_for(GROUP) == ["alice", "bob"]

    bob_key = await bob.distributor.fetch_and_unwrap(GROUP, "bob", "alice")
    assert bob_key == key
    assert bob.distributor.state(GROUP) == GroupKeyState.READY

    record = network.group_store.records[(GROUP, "bob")]
    assert record["encryptedBy"] == "alice"


@pytest.mark.asyncio
async def test_scenario_b_non_creator_cannot_initialize(login, network):
    """A non-creator initialize raises AuthorityError and writes nothing."""
    await login("alice")
    bob = await login("bob")

    with pytest.raises(AuthorityError) as exc_info:
        await bob.distributor.initialize(GROUP, ["alice", "bob"], "alice", "bob")

    assert exc_info.value.code == ErrorCode.E510_NOT_GROUP_CREATOR
    assert "Only group creator can initialize encryption" in str(exc_info.value)
    assert network.group_store.writes == []
    assert bob.distributor.state(GROUP) == GroupKeyState.UNINITIALIZED


@pytest.mark.asyncio
async def test_scenario_c_non_member_waits_for_creator(login, network):
    """A user with no envelope is told to wait for the creator."""
    alice = await login("alice")
    await login("bob")
    carol = await login("carol")
    await alice.distributor.initialize(GROUP, ["alice", "bob"], "alice", "alice")

    with pytest.raises(AwaitingCreatorError) as exc_info:
        await carol.distributor.fetch_and_unwrap(GROUP, "carol", "alice")

    assert exc_info.value.reason == AwaitingCreatorError.NO_ENVELOPE
    assert exc_info.value.code == ErrorCode.E513_AWAITING_CREATOR
    assert (GROUP, "carol") not in network.group_store.records


@pytest.mark.asyncio
async def test_member_before_initialization_waits(login, network):
    """Before the creator ever initializes, members wait and write nothing."""
    await login("alice")
    bob = await login("bob")

    with pytest.raises(AwaitingCreatorError):
        await bob.distributor.fetch_and_unwrap(GROUP, "bob", "alice", ["alice", "bob"])
    assert network.group_store.writes == []


@pytest.mark.asyncio
async def test_scenario_d_member_rotation_single_retry(login, network):
    """
    Bob rotates his keypair and alice re-wraps for him. Bob's stale cached
    pairwise key fails once, is invalidated exactly once, and the retry
    succeeds.
    """
    alice = await login("alice")
    bob = await login("bob")
    key = await alice.distributor.initialize(GROUP, ["alice", "bob"], "alice", "alice")
    assert await bob.distributor.fetch_and_unwrap(GROUP, "bob", "alice") == key
    stale = bob.pairwise.cached("alice").key

    # Rotate without clearing bob's pairwise cache
    bob.identity.generate()
    await bob.publish_public_key()
    await alice.distributor.add_member(GROUP, "bob", "alice", "alice")
    bob.distributor.forget(GROUP)

    invalidated = []
    original_invalidate = bob.pairwise.invalidate

    def spy(peer_id):
        invalidated.append(peer_id)
        original_invalidate(peer_id)

    bob.pairwise.invalidate = spy

    assert await bob.distributor.fetch_and_unwrap(GROUP, "bob", "alice") == key
    assert invalidated == ["alice"]
    assert bob.pairwise.cached("alice").key != stale


@pytest.mark.asyncio
async def test_scenario_d_before_rewrap_reports_mismatch(login, network):
    """Until the creator re-wraps, a rotated member sees a key mismatch."""
    alice = await login("alice")
    bob = await login("bob")
    await alice.distributor.initialize(GROUP, ["alice", "bob"], "alice", "alice")

    await bob.rotate_identity()

    with pytest.raises(AwaitingCreatorError) as exc_info:
        await bob.distributor.fetch_and_unwrap(GROUP, "bob", "alice", ["alice", "bob"])
    assert exc_info.value.reason == AwaitingCreatorError.KEY_MISMATCH
    # Bob never writes on the creator's behalf
    assert network.group_store.writes_for(GROUP) == ["alice", "bob"]


@pytest.mark.asyncio
async def test_idempotent_initialize(login, network):
    """A second initialize reuses the existing key; old ciphertexts still decrypt."""
    alice = await login("alice")
    bob = await login("bob")
    key = await alice.distributor.initialize(GROUP, ["alice", "bob"], "alice", "alice")

    bob_key = await bob.distributor.fetch_and_unwrap(GROUP, "bob", "alice")
    earlier = cipher.encrypt_text("sent before re-init", bob_key)

    alice.distributor.forget(GROUP)
    again = await alice.distributor.initialize(GROUP, ["alice", "bob"], "alice", "alice")
    await alice.background.join()

    assert again == key
    assert cipher.decrypt_text(earlier, again) == "sent before re-init"
    assert network.group_store.writes_for(GROUP).count("alice") == 1

    # Background reconciliation may have re-wrapped bob's envelope, never the key
    bob.distributor.forget(GROUP)
    assert await bob.distributor.fetch_and_unwrap(GROUP, "bob", "alice") == key
    await alice.logout()


@pytest.mark.asyncio
async def test_initialize_returns_cached_key(login, network):
    """Initialize with a cached key performs no I/O."""
    alice = await login("alice")
    await login("bob")
    key = await alice.distributor.initialize(GROUP, ["alice", "bob"], "alice", "alice")
    writes = len(network.group_store.writes)

    assert await alice.distributor.initialize(GROUP, ["alice", "bob"], "alice", "alice") == key
    assert len(network.group_store.writes) == writes


@pytest.mark.asyncio
async def test_concurrent_initialize_mints_one_key(login, network):
    """Concurrent initialize calls in one session agree on a single key."""
    alice = await login("alice")
    await login("bob")

    first, second = await asyncio.gather(
        alice.distributor.initialize(GROUP, ["alice", "bob"], "alice", "alice"),
        alice.distributor.initialize(GROUP, ["alice", "bob"], "alice", "alice"),
    )

    assert first == second
    assert network.group_store.writes_for(GROUP) == ["alice", "bob"]


@pytest.mark.asyncio
async def test_group_keys_are_unique(login):
    """Distinct groups get distinct keys."""
    alice = await login("alice")
    await login("bob")

    one = await alice.distributor.initialize("g-one", ["alice", "bob"], "alice", "alice")
    two = await alice.distributor.initialize("g-two", ["alice", "bob"], "alice", "alice")

    assert one != two
    assert len(one) == len(two) == 32


@pytest.mark.asyncio
async def test_creator_always_included(login, network):
    """The creator's envelope is written first even when omitted from members."""
    alice = await login("alice")
    await login("bob")

    await alice.distributor.initialize(GROUP, ["bob", "bob"], "alice", "alice")

    assert network.group_store.writes_for(GROUP) == ["alice", "bob"]


@pytest.mark.asyncio
async def test_partial_wrap_failure(login, network):
    """A member without a published key is reported; the group still works."""
    alice = await login("alice")
    bob = await login("bob")

    with pytest.raises(PartialWrapFailure) as exc_info:
        await alice.distributor.initialize(GROUP, ["alice", "bob", "dave"], "alice", "alice")

    failure = exc_info.value
    assert [member for member, _ in failure.failures] == ["dave"]
    assert failure.details["failed_members"] == ["dave"]
    assert alice.distributor.state(GROUP) == GroupKeyState.READY
    assert alice.distributor.cached_key(GROUP) == failure.key
    assert await bob.distributor.fetch_and_unwrap(GROUP, "bob", "alice") == failure.key

    # Dave signs up later and is served by add_member
    dave = await login("dave")
    await alice.distributor.add_member(GROUP, "dave", "alice", "alice")
    assert await dave.distributor.fetch_and_unwrap(GROUP, "dave", "alice") == failure.key


@pytest.mark.asyncio
async def test_creator_fetch_tolerates_partial_failure(login, network):
    """The creator's auto-initialize returns the key despite partial failures."""
    alice = await login("alice")

    key = await alice.distributor.fetch_and_unwrap(GROUP, "alice", "alice", ["alice", "nobody"])

    assert alice.distributor.cached_key(GROUP) == key
    assert network.group_store.writes_for(GROUP) == ["alice"]


@pytest.mark.asyncio
async def test_creator_fetch_without_members(login):
    """The creator cannot auto-initialize without the member list."""
    alice = await login("alice")

    with pytest.raises(GroupError) as exc_info:
        await alice.distributor.fetch_and_unwrap(GROUP, "alice", "alice")
    assert exc_info.value.code == ErrorCode.E002_INVALID_ARGUMENT


@pytest.mark.asyncio
async def test_critical_wrap_failure(login, network):
    """Failure to store the creator's envelope aborts init and leaves no state."""
    alice = await login("alice")
    await login("bob")
    network.group_store.fail_for.add("alice")

    with pytest.raises(CriticalWrapFailure) as exc_info:
        await alice.distributor.initialize(GROUP, ["alice", "bob"], "alice", "alice")

    assert exc_info.value.code == ErrorCode.E511_CREATOR_WRAP_FAILED
    assert alice.distributor.state(GROUP) == GroupKeyState.UNINITIALIZED
    assert alice.distributor.cached_key(GROUP) is None
    assert network.group_store.writes == []

    # Recovers cleanly once the store is reachable again
    network.group_store.fail_for.clear()
    key = await alice.distributor.initialize(GROUP, ["alice", "bob"], "alice", "alice")
    assert len(key) == 32


@pytest.mark.asyncio
async def test_critical_wrap_failure_after_concurrent_forget(login, network):
    """A forget() while the creator envelope is being stored keeps the real error."""
    alice = await login("alice")
    await login("bob")
    network.group_store.fail_for.add("alice")
    network.group_store.before_store = lambda group_id, user_id: alice.distributor.forget(group_id)

    with pytest.raises(CriticalWrapFailure):
        await alice.distributor.initialize(GROUP, ["alice", "bob"], "alice", "alice")

    assert alice.distributor.state(GROUP) == GroupKeyState.UNINITIALIZED


@pytest.mark.asyncio
async def test_add_member_wraps_for_new_member(login, network):
    """A member added later unwraps the existing key."""
    alice = await login("alice")
    await login("bob")
    carol = await login("carol")
    key = await alice.distributor.initialize(GROUP, ["alice", "bob"], "alice", "alice")

    envelope = await alice.distributor.add_member(GROUP, "carol", "alice", "alice")

    assert isinstance(envelope, WrappedGroupKeyEnvelope)
    assert envelope.wrapped_by == "alice"
    assert await carol.distributor.fetch_and_unwrap(GROUP, "carol", "alice") == key


@pytest.mark.asyncio
async def test_add_member_by_non_creator_member(login, network):
    """A member may wrap for a newcomer; the envelope records who wrapped it."""
    alice = await login("alice")
    bob = await login("bob")
    carol = await login("carol")
    key = await alice.distributor.initialize(GROUP, ["alice", "bob"], "alice", "alice")

    await bob.distributor.add_member(GROUP, "carol", "bob", "alice")

    assert network.group_store.records[(GROUP, "carol")]["encryptedBy"] == "bob"
    assert await carol.distributor.fetch_and_unwrap(GROUP, "carol", "alice") == key


@pytest.mark.asyncio
async def test_legacy_envelope_without_wrapped_by(login, network):
    """Envelopes missing encryptedBy are unwrapped with the creator's key."""
    alice = await login("alice")
    bob = await login("bob")
    key = await alice.distributor.initialize(GROUP, ["alice", "bob"], "alice", "alice")
    network.group_store.records[(GROUP, "bob")].pop("encryptedBy")

    assert await bob.distributor.fetch_and_unwrap(GROUP, "bob", "alice") == key


def test_invalid_state_transition():
    """Transitions outside the lifecycle raise GroupError."""
    from groupcrypt.group import GroupKeyDistributor

    distributor = GroupKeyDistributor(pairwise=None, group_store=None)
    distributor._transition(GROUP, GroupKeyState.INITIALIZING)

    with pytest.raises(GroupError) as exc_info:
        distributor._transition(GROUP, GroupKeyState.REPAIRING)
    assert exc_info.value.code == ErrorCode.E505_INVALID_STATE_TRANSITION


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
