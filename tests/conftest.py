"""
Pytest configuration and fixtures for groupcrypt tests.

Provides temp directories and in-memory stand-ins for the key registry and
group-key store, so that several logged-in users can share one "server"
inside a single test.
"""

import shutil
import tempfile
from pathlib import Path
from typing import Callable, Dict, Generator, List, Optional, Set, Tuple

import pytest

from groupcrypt.cipher import WrappedGroupKeyEnvelope
from groupcrypt.errors import ErrorCode, KeyNotPublishedError, NetworkError
from groupcrypt.session import CryptoSession
from groupcrypt.storage import MemoryKeyStorage
from groupcrypt.utils import normalize_user_id


class FakeKeyServer:
    """Public key records for every user, shared by all sessions in a test."""

    def __init__(self):
        self.public_keys: Dict[str, bytes] = {}
        self.lookups: List[str] = []
        self.fail_publish = False

    def client_for(self, user_id: str) -> "FakeRegistryClient":
        return FakeRegistryClient(self, user_id)


class FakeRegistryClient:
    """The registry as seen by one authenticated user."""

    def __init__(self, server: FakeKeyServer, user_id: str):
        self.server = server
        self.user_id = user_id

    async def get_public_key(self, user_id: str) -> bytes:
        self.server.lookups.append(user_id)
        if user_id not in self.server.public_keys:
            raise KeyNotPublishedError(user_id)
        return self.server.public_keys[user_id]

    async def publish_public_key(self, public_key: bytes) -> None:
        if self.server.fail_publish:
            raise NetworkError(ErrorCode.E201_CONNECTION_FAILED, "registry unreachable")
        self.server.public_keys[self.user_id] = bytes(public_key)


class FakeGroupKeyStore:
    """Wrapped group keys keyed by (group, member), stored in wire form."""

    def __init__(self):
        self.records: Dict[Tuple[str, str], dict] = {}
        self.writes: List[Tuple[str, str]] = []
        self.fail_for: Set[str] = set()
        self.before_store: Optional[Callable[[str, str], None]] = None

    async def store_envelope(
        self, group_id: str, user_id: str, envelope: WrappedGroupKeyEnvelope
    ) -> None:
        if self.before_store is not None:
            self.before_store(group_id, user_id)
        if user_id in self.fail_for:
            raise NetworkError(ErrorCode.E200_NETWORK_ERROR, f"store failed for {user_id}")
        self.records[(group_id, user_id)] = envelope.to_dict()
        self.writes.append((group_id, user_id))

    async def fetch_envelope(
        self, group_id: str, user_id: str
    ) -> Optional[WrappedGroupKeyEnvelope]:
        record = self.records.get((group_id, user_id))
        if record is None:
            return None
        return WrappedGroupKeyEnvelope.from_dict(record)

    def writes_for(self, group_id: str) -> List[str]:
        return [user for group, user in self.writes if group == group_id]


class FakeNetwork:
    """Bundles the shared server state and per-user durable storage."""

    def __init__(self):
        self.key_server = FakeKeyServer()
        self.group_store = FakeGroupKeyStore()
        self.storages: Dict[str, MemoryKeyStorage] = {}

    def storage_for(self, user_id: str) -> MemoryKeyStorage:
        return self.storages.setdefault(user_id, MemoryKeyStorage())


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path
    """
    tmp = Path(tempfile.mkdtemp(prefix="groupcrypt_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def login(network: FakeNetwork):
    """
    Factory logging a user into the shared fake network.

    Usage: ``alice = await login("alice")``.
    """

    async def _login(user_id, **kwargs) -> CryptoSession:
        key = normalize_user_id(user_id)
        return await CryptoSession.login(
            user_id,
            network.key_server.client_for(key),
            network.group_store,
            network.storage_for(key),
            **kwargs,
        )

    return _login


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """Add markers based on test location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
