"""
groupcrypt - End-to-end encryption for group chat and calls

Identity keys, pairwise key agreement, per-group key distribution with
creator authority, key-mismatch recovery and call signaling encryption.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__license__ = "MIT"

# Import core modules for easy access
from .config import Config
from .constants import APP_NAME, VERSION
from .errors import (
    AuthorityError,
    AwaitingCreatorError,
    CallTimeoutError,
    ConfigError,
    CriticalWrapFailure,
    CryptoError,
    DecryptionError,
    ErrorCode,
    GroupCryptError,
    GroupError,
    IdentityError,
    InvalidEncodingError,
    KeyNotPublishedError,
    NetworkError,
    PartialWrapFailure,
    SignalingDecryptError,
    UninitializedError,
)
from .group import GroupKeyDistributor, GroupKeyState
from .recovery import KeyMismatchRecovery, RecoveryOutcome, RecoveryResult
from .session import CryptoSession
from .signaling import SignalingResult

__all__ = [
    "APP_NAME",
    "VERSION",
    "AuthorityError",
    "AwaitingCreatorError",
    "CallTimeoutError",
    "Config",
    "ConfigError",
    "CriticalWrapFailure",
    "CryptoError",
    "CryptoSession",
    "DecryptionError",
    "ErrorCode",
    "GroupCryptError",
    "GroupError",
    "GroupKeyDistributor",
    "GroupKeyState",
    "IdentityError",
    "InvalidEncodingError",
    "KeyMismatchRecovery",
    "KeyNotPublishedError",
    "NetworkError",
    "PartialWrapFailure",
    "RecoveryOutcome",
    "RecoveryResult",
    "SignalingDecryptError",
    "SignalingResult",
    "UninitializedError",
    "__license__",
    "__version__",
]
