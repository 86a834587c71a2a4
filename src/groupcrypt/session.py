"""
groupcrypt - Per-login crypto session.

A CryptoSession owns everything that is specific to one logged-in user: the
identity keypair, the pairwise and group key caches, and the background
reconciliation queue. Nothing here is process-global; two sessions in one
process never share keys.

User ids are normalized once, at the session's public methods, and passed
as plain strings everywhere below.
"""

import logging
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Mapping, Optional, Sequence, TypeVar

from . import messages
from .background import BackgroundTaskQueue
from .config import Config
from .constants import CALL_ANSWER_TIMEOUT, CALL_CONNECTION_TIMEOUT, KEYS_DIRNAME
from .errors import ConfigError, ErrorCode, GroupCryptError
from .group import GroupKeyDistributor
from .identity import IdentityKeyStore
from .pairwise import PairwiseKeyAgreement
from .recovery import DataLossCallback, KeyMismatchRecovery
from .registry import (
    ApiClient,
    GroupKeyBackend,
    HttpGroupKeyStore,
    HttpKeyRegistry,
    PublicKeyDirectory,
)
from .signaling import SignalingEncryptor, SignalingResult, await_signal
from .storage import FileKeyStorage, KeyStorage
from .utils import normalize_user_id

logger = logging.getLogger(__name__)

T = TypeVar("T")


def normalize_members(members: Optional[Sequence[Any]]) -> Optional[List[str]]:
    if members is None:
        return None
    return [normalize_user_id(member) for member in members]


class CryptoSession:
    """All end-to-end encryption state for one logged-in user."""

    def __init__(
        self,
        user_id: Any,
        registry: PublicKeyDirectory,
        group_store: GroupKeyBackend,
        storage: KeyStorage,
        passphrase: Optional[str] = None,
        background: Optional[BackgroundTaskQueue] = None,
        on_data_loss: Optional[DataLossCallback] = None,
        answer_timeout: float = CALL_ANSWER_TIMEOUT,
        connection_timeout: float = CALL_CONNECTION_TIMEOUT,
        api: Optional[ApiClient] = None,
    ):
        self.user_id = normalize_user_id(user_id)
        self.registry = registry
        self.group_store = group_store
        self.identity = IdentityKeyStore(storage, passphrase)
        self.pairwise = PairwiseKeyAgreement(self.identity, registry, self.user_id)
        self.background = background if background is not None else BackgroundTaskQueue()
        self.distributor = GroupKeyDistributor(self.pairwise, group_store)
        self.recovery = KeyMismatchRecovery(self.distributor, self.background, on_data_loss)
        self.signaling = SignalingEncryptor(self.pairwise)
        self.answer_timeout = answer_timeout
        self.connection_timeout = connection_timeout
        self.api = api
        self.active = False

    # Lifecycle

    @classmethod
    async def login(
        cls,
        user_id: Any,
        registry: PublicKeyDirectory,
        group_store: GroupKeyBackend,
        storage: KeyStorage,
        **kwargs: Any,
    ) -> "CryptoSession":
        """Create a session and bring its identity online."""
        session = cls(user_id, registry, group_store, storage, **kwargs)
        await session.start()
        return session

    @classmethod
    async def from_config(
        cls,
        config: Config,
        user_id: Any,
        passphrase: Optional[str] = None,
        on_data_loss: Optional[DataLossCallback] = None,
    ) -> "CryptoSession":
        """Log in with the REST collaborators and file storage described by ``config``."""
        if config.passphrase_protected and not passphrase:
            raise ConfigError(
                ErrorCode.E700_CONFIG_ERROR,
                "Identity storage is passphrase protected; passphrase required",
            )
        api_settings = config.api
        api = ApiClient(api_settings.base_url, token=api_settings.token, timeout=api_settings.timeout)
        background_settings = config.background
        background = BackgroundTaskQueue(
            workers=background_settings.workers, max_size=background_settings.queue_size
        )
        signaling = config.signaling
        storage = FileKeyStorage(Path(config.data_dir) / KEYS_DIRNAME)
        try:
            return await cls.login(
                user_id,
                HttpKeyRegistry(api),
                HttpGroupKeyStore(api),
                storage,
                passphrase=passphrase,
                background=background,
                on_data_loss=on_data_loss,
                answer_timeout=signaling.answer_timeout,
                connection_timeout=signaling.connection_timeout,
                api=api,
            )
        except BaseException:
            await api.close()
            raise

    async def start(self) -> None:
        """
        Load the stored identity, or generate and persist a new one, then
        publish the public key. A failed publish is logged and login proceeds.
        """
        if await self.identity.load(self.user_id):
            logger.info(f"Loaded existing identity for user {self.user_id}")
        else:
            logger.info(f"No identity stored for user {self.user_id}, generating")
            self.identity.generate()
            await self.identity.persist(self.user_id)
        await self.publish_public_key()
        self.active = True

    async def publish_public_key(self) -> bool:
        try:
            await self.registry.publish_public_key(self.identity.export_public_key())
        except GroupCryptError as e:
            logger.warning(f"Could not publish public key for {self.user_id}: {e}")
            return False
        return True

    async def logout(self) -> None:
        """Stop background work and drop every in-memory secret."""
        await self.background.stop()
        self.distributor.clear()
        self.pairwise.clear()
        self.identity.clear_volatile()
        if self.api is not None:
            await self.api.close()
        self.active = False
        logger.info(f"Session closed for user {self.user_id}")

    async def delete_keys(self) -> bool:
        """Destroy the persisted identity. Existing group envelopes become unreadable."""
        self.distributor.clear()
        self.pairwise.clear()
        deleted = await self.identity.delete(self.user_id)
        self.active = False
        return deleted

    async def rotate_identity(self) -> str:
        """Replace the identity keypair; returns the new fingerprint."""
        self.identity.generate()
        await self.identity.persist(self.user_id)
        await self.publish_public_key()
        self.pairwise.clear()
        logger.warning(
            f"Identity rotated for {self.user_id}; group envelopes must be re-wrapped by creators"
        )
        return self.identity.fingerprint()

    async def __aenter__(self) -> "CryptoSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.logout()

    # Groups

    async def group_key(
        self, group_id: str, creator: Any, members: Optional[Sequence[Any]] = None
    ) -> bytes:
        return await self.distributor.fetch_and_unwrap(
            group_id, self.user_id, normalize_user_id(creator), normalize_members(members)
        )

    async def initialize_group(self, group_id: str, creator: Any, members: Sequence[Any]) -> bytes:
        return await self.distributor.initialize(
            group_id, normalize_members(members), normalize_user_id(creator), self.user_id
        )

    async def add_group_member(self, group_id: str, creator: Any, new_member: Any) -> None:
        await self.distributor.add_member(
            group_id, normalize_user_id(new_member), self.user_id, normalize_user_id(creator)
        )

    async def encrypt_group_message(
        self, text: str, group_id: str, creator: Any, members: Optional[Sequence[Any]] = None
    ) -> Dict[str, Any]:
        return await messages.encrypt_group_message(
            self.distributor,
            text,
            group_id,
            self.user_id,
            normalize_user_id(creator),
            normalize_members(members),
        )

    async def decrypt_group_message(
        self,
        message: Mapping[str, Any],
        group_id: str,
        creator: Any,
        members: Optional[Sequence[Any]] = None,
    ) -> str:
        """Plaintext, or a placeholder string when the message cannot be read."""
        return await messages.decrypt_group_message(
            self.distributor,
            message,
            group_id,
            self.user_id,
            normalize_user_id(creator),
            normalize_members(members),
        )

    # Direct messages and calls

    async def encrypt_for_user(self, text: str, peer: Any) -> Dict[str, str]:
        return await messages.encrypt_for_user(self.pairwise, text, normalize_user_id(peer))

    async def decrypt_from_user(self, message: Mapping[str, Any], peer: Any) -> str:
        return await messages.decrypt_from_user(self.pairwise, message, normalize_user_id(peer))

    async def wrap_signal(self, payload: Any, peer: Any) -> SignalingResult:
        return await self.signaling.wrap(payload, normalize_user_id(peer))

    async def unwrap_signal(self, message: Mapping[str, Any], peer: Any) -> Any:
        return await self.signaling.unwrap(message, normalize_user_id(peer))

    async def await_answer(self, awaitable: Awaitable[T]) -> T:
        return await await_signal(awaitable, self.answer_timeout, "answer")

    async def await_connection(self, awaitable: Awaitable[T]) -> T:
        return await await_signal(awaitable, self.connection_timeout, "connection")
