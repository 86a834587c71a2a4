"""
groupcrypt - Global Constants and Configuration Values

This module defines all constants used throughout groupcrypt.
All magic numbers and configuration defaults are centralized here.
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "groupcrypt"

# Cryptography Constants
KEY_SIZE = 32  # 256 bits for X25519 and AES-256
IV_SIZE = 12  # 96 bits for AES-GCM
AUTH_TAG_SIZE = 16  # 128 bits
SALT_SIZE = 16  # 128 bits
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 1
PAIRWISE_HKDF_INFO = b"groupcrypt-pairwise-v1"
IDENTITY_RECORD_VERSION = "1.0"

# API Defaults
DEFAULT_API_BASE_URL = "http://localhost:5000/api"
API_TIMEOUT = 10.0  # seconds

# Background Reconciliation
BACKGROUND_WORKERS = 2
BACKGROUND_QUEUE_SIZE = 100
BACKGROUND_ERROR_CHANNEL_SIZE = 100

# Call Signaling Timeouts (seconds)
CALL_ANSWER_TIMEOUT = 30.0
CALL_CONNECTION_TIMEOUT = 15.0

# File Paths
DEFAULT_DATA_DIR = "~/.groupcrypt"
KEYS_DIRNAME = "keys"
CONFIG_FILENAME = "config.toml"
LOGS_DIR = "logs"
LOG_FILENAME = "groupcrypt.log"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5

# Placeholders rendered for group messages that cannot be decrypted
PLACEHOLDER_AWAITING_SETUP = "[Waiting for group creator to set up encryption]"
PLACEHOLDER_KEY_MISMATCH = "[Encryption key mismatch - waiting for creator to update]"
PLACEHOLDER_DECRYPTION_FAILED = "[Decryption failed]"
