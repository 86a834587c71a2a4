"""
groupcrypt - Session lifecycle tests.

Tests for login (generate vs. load), publishing, logout, key deletion,
identity rotation and the command line tool.
"""

import logging

import pytest

from groupcrypt.config import Config
from groupcrypt.errors import ConfigError, UninitializedError
from groupcrypt.main import main
from groupcrypt.session import CryptoSession


@pytest.mark.asyncio
async def test_first_login_generates_and_publishes(login, network):
    """Test that a new user gets a persisted, published identity."""
    alice = await login("alice")

    assert alice.active is True
    assert alice.identity.is_initialized
    assert network.key_server.public_keys["alice"] == alice.identity.export_public_key()
    assert await network.storage_for("alice").load("alice") is not None


@pytest.mark.asyncio
async def test_second_login_loads_same_identity(login, network):
    """Test that logging in again reuses the stored keypair."""
    first = await login("alice")
    fingerprint = first.identity.fingerprint()
    await first.logout()

    second = await login("alice")
    assert second.identity.fingerprint() == fingerprint


@pytest.mark.asyncio
async def test_user_id_normalized_once(login, network):
    """Test that mapping-shaped users are normalized at login."""
    session = await login({"_id": 42})
    assert session.user_id == "42"
    assert session.pairwise.self_id == "42"


@pytest.mark.asyncio
async def test_publish_failure_does_not_block_login(login, network):
    """Test that an unreachable registry is logged and login proceeds."""
    network.key_server.fail_publish = True

    alice = await login("alice")

    assert alice.active is True
    assert "alice" not in network.key_server.public_keys
    assert await alice.publish_public_key() is False


@pytest.mark.asyncio
async def test_logout_clears_volatile_state(login, network):
    """Test that logout drops keys and caches but keeps persisted material."""
    alice = await login("alice")
    await login("bob")
    await alice.initialize_group("g", "alice", ["alice", "bob"])
    await alice.encrypt_for_user("hi", "bob")

    await alice.logout()

    assert alice.active is False
    assert alice.distributor.cached_key("g") is None
    assert alice.pairwise.cached("bob") is None
    with pytest.raises(UninitializedError):
        alice.identity.export_public_key()
    assert await network.storage_for("alice").load("alice") is not None


@pytest.mark.asyncio
async def test_sessions_are_isolated(login):
    """Test that two sessions share no key state."""
    alice = await login("alice")
    bob = await login("bob")

    assert alice.identity.export_public_key() != bob.identity.export_public_key()
    assert alice.distributor is not bob.distributor
    assert alice.pairwise is not bob.pairwise


@pytest.mark.asyncio
async def test_delete_keys(login, network):
    """Test that deleting keys removes the persisted identity."""
    alice = await login("alice")

    assert await alice.delete_keys() is True
    assert await network.storage_for("alice").load("alice") is None
    assert alice.identity.is_initialized is False


@pytest.mark.asyncio
async def test_rotate_identity(login, network):
    """Test that rotation persists and publishes a new keypair."""
    alice = await login("alice")
    await login("bob")
    await alice.encrypt_for_user("warm", "bob")
    old = alice.identity.fingerprint()

    new = await alice.rotate_identity()

    assert new != old
    assert network.key_server.public_keys["alice"] == alice.identity.export_public_key()
    assert alice.pairwise.cached("bob") is None
    reloaded = await login("alice")
    assert reloaded.identity.fingerprint() == new


@pytest.mark.asyncio
async def test_context_manager_logs_out(login):
    """Test async with support."""
    async with await login("alice") as alice:
        assert alice.active is True
    assert alice.active is False


@pytest.mark.asyncio
async def test_from_config_requires_passphrase(temp_dir):
    """Test that passphrase-protected storage refuses to start without one."""
    config = Config(temp_dir / "config.toml")
    config.set("storage", "passphrase_protected", True)

    with pytest.raises(ConfigError):
        await CryptoSession.from_config(config, "alice")


class TestCommandLine:
    """Tests for the groupcrypt command."""

    def teardown_method(self):
        root = logging.getLogger("groupcrypt")
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()

    def test_init_show_delete(self, temp_dir, capsys):
        """Test the identity lifecycle through the CLI."""
        args = ["--data-dir", str(temp_dir)]

        assert main(args + ["init", "--user-id", "42"]) == 0
        created = capsys.readouterr().out
        assert "Created identity for 42" in created

        assert main(args + ["init", "--user-id", "42"]) == 0
        assert "already exists" in capsys.readouterr().out

        assert main(args + ["show", "--user-id", "42"]) == 0
        shown = capsys.readouterr().out
        assert "Public key:" in shown
        assert created.split("Fingerprint: ")[1].strip() in shown

        assert main(args + ["delete", "--user-id", "42"]) == 0
        assert main(args + ["show", "--user-id", "42"]) == 1

    def test_version(self, capsys):
        """Test the --version flag."""
        with pytest.raises(SystemExit) as exc_info:
            main(["--version"])
        assert exc_info.value.code == 0
        assert "groupcrypt" in capsys.readouterr().out
