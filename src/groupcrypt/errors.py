"""
groupcrypt - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
groupcrypt. Each error has a unique code for logging and debugging.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ErrorCode(Enum):
    """Enumeration of all groupcrypt error codes."""

    # General Errors (E001-E099)
    E001_UNKNOWN_ERROR = "E001"
    E002_INVALID_ARGUMENT = "E002"

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E102_DECRYPTION_FAILED = "E102"
    E103_INVALID_KEY = "E103"
    E104_KEY_GENERATION_FAILED = "E104"
    E108_KEY_DERIVATION_FAILED = "E108"
    E110_NOT_INITIALIZED = "E110"
    E111_INVALID_ENCODING = "E111"
    E120_SIGNALING_DECRYPT_FAILED = "E120"

    # Network Errors (E200-E299)
    E200_NETWORK_ERROR = "E200"
    E201_CONNECTION_FAILED = "E201"
    E202_CONNECTION_TIMEOUT = "E202"
    E206_INVALID_MESSAGE = "E206"
    E210_KEY_NOT_PUBLISHED = "E210"

    # Identity Errors (E300-E399)
    E300_IDENTITY_ERROR = "E300"
    E303_IDENTITY_LOAD_FAILED = "E303"
    E304_IDENTITY_SAVE_FAILED = "E304"
    E305_INVALID_IDENTITY = "E305"

    # Group Errors (E500-E599)
    E500_GROUP_ERROR = "E500"
    E505_INVALID_STATE_TRANSITION = "E505"
    E510_NOT_GROUP_CREATOR = "E510"
    E511_CREATOR_WRAP_FAILED = "E511"
    E512_PARTIAL_WRAP_FAILED = "E512"
    E513_AWAITING_CREATOR = "E513"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E702_CONFIG_SAVE_FAILED = "E702"
    E703_CONFIG_INVALID = "E703"
    E704_CONFIG_PARSE_ERROR = "E704"


class GroupCryptError(Exception):
    """Base exception class for all groupcrypt errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CryptoError(GroupCryptError):
    """Exception raised for cryptographic operation failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class UninitializedError(CryptoError):
    """An operation needed the identity keypair before one existed."""

    def __init__(self, message: str = "Identity keypair not initialized", details=None):
        super().__init__(ErrorCode.E110_NOT_INITIALIZED, message, details)


class IdentityGenerationError(CryptoError):
    """The platform primitive failed while generating a keypair."""

    def __init__(self, message: str = "Identity keypair generation failed", details=None):
        super().__init__(ErrorCode.E104_KEY_GENERATION_FAILED, message, details)


class DecryptionError(CryptoError):
    """AEAD authentication failed or the envelope could not be decrypted."""

    def __init__(
        self,
        message: str = "Decryption failed",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E102_DECRYPTION_FAILED,
    ):
        super().__init__(code, message, details)


class InvalidEncodingError(DecryptionError):
    """Malformed base64, or an IV / auth tag of the wrong length.

    Never retried: a different key cannot fix a broken envelope.
    """

    def __init__(self, message: str = "Invalid envelope encoding", details=None):
        super().__init__(message, details, code=ErrorCode.E111_INVALID_ENCODING)


class SignalingDecryptError(CryptoError):
    """An encrypted call-signaling payload could not be decrypted."""

    def __init__(self, message: str = "Failed to decrypt signaling message", details=None):
        super().__init__(ErrorCode.E120_SIGNALING_DECRYPT_FAILED, message, details)


class NetworkError(GroupCryptError):
    """Exception raised for failures talking to the key registry or group-key store."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E200_NETWORK_ERROR,
        message: str = "Network operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class KeyNotPublishedError(NetworkError):
    """The registry holds no public key for the requested user."""

    def __init__(self, user_id: str):
        super().__init__(
            ErrorCode.E210_KEY_NOT_PUBLISHED,
            f"No public key published for user {user_id}",
            {"user_id": user_id},
        )
        self.user_id = user_id


class CallTimeoutError(NetworkError):
    """A call-signaling step did not complete within its wall-clock limit."""

    def __init__(self, stage: str, timeout: float):
        super().__init__(
            ErrorCode.E202_CONNECTION_TIMEOUT,
            f"Call {stage} timed out after {timeout:g}s",
            {"stage": stage, "timeout": timeout},
        )
        self.stage = stage
        self.timeout = timeout


class IdentityError(GroupCryptError):
    """Exception raised for identity persistence failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_IDENTITY_ERROR,
        message: str = "Identity operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class GroupError(GroupCryptError):
    """Exception raised for group key distribution failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E500_GROUP_ERROR,
        message: str = "Group operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class AuthorityError(GroupError):
    """A non-creator attempted a creator-only operation."""

    def __init__(self, group_id: str, acting_user_id: str, creator_id: str):
        super().__init__(
            ErrorCode.E510_NOT_GROUP_CREATOR,
            "Only group creator can initialize encryption",
            {"group_id": group_id, "acting_user_id": acting_user_id, "creator_id": creator_id},
        )


class CriticalWrapFailure(GroupError):
    """Wrapping or storing the creator's own envelope failed during initialization."""

    def __init__(self, group_id: str, reason: str):
        super().__init__(
            ErrorCode.E511_CREATOR_WRAP_FAILED,
            "Failed to store creator encryption key",
            {"group_id": group_id, "reason": reason},
        )


class PartialWrapFailure(GroupError):
    """Some non-creator members could not receive a wrapped group key.

    The group is usable for everyone else. ``key`` is the group key that was
    distributed and ``failures`` lists ``(member_id, reason)`` pairs that can
    be retried with ``GroupKeyDistributor.add_member``.
    """

    def __init__(self, group_id: str, key: bytes, failures: List[Tuple[str, str]]):
        super().__init__(
            ErrorCode.E512_PARTIAL_WRAP_FAILED,
            f"Group key could not be wrapped for {len(failures)} member(s)",
            {"group_id": group_id, "failed_members": [member for member, _ in failures]},
        )
        self.group_id = group_id
        self.key = key
        self.failures = failures


class AwaitingCreatorError(GroupError):
    """Non-fatal: this member must wait for the group creator.

    ``reason`` is ``NO_ENVELOPE`` when nothing was ever wrapped for the member
    and ``KEY_MISMATCH`` when the envelope exists but no longer decrypts.
    """

    NO_ENVELOPE = "no_envelope"
    KEY_MISMATCH = "key_mismatch"

    def __init__(self, group_id: str, reason: str = NO_ENVELOPE):
        if reason == self.KEY_MISMATCH:
            message = "Encryption key mismatch - waiting for creator to update"
        else:
            message = "Waiting for group creator to set up encryption"
        super().__init__(
            ErrorCode.E513_AWAITING_CREATOR, message, {"group_id": group_id, "reason": reason}
        )
        self.reason = reason


class ConfigError(GroupCryptError):
    """Exception raised for configuration failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
