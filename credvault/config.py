"""
Configuration for the CredVault credential manager.

Static constants live at module level. Everything an operator may want to
change per deployment (database location, encryption key, upload limits) is
read from the environment into a Settings object, which is built once and
passed explicitly to the components that need it.
"""

import logging
import os
from typing import Optional

import keyring
from keyring.errors import KeyringError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ValidationError

logger = logging.getLogger(__name__)

# Application Metadata
APP_VERSION = "1.0.0"  # Use: Current version of the application. Type: str. Range: Semantic versioning string.
APP_NAME = "CredVault Credential Manager"  # Use: Full name of the application, used as API title. Type: str. Range: Any valid string.

# Security Settings
SALT_SIZE = 16  # Use: Size of the per-key salt in bytes for key derivation. Type: int. Range: At least 16 bytes (128 bits).
KEY_SIZE = 32  # Use: Size of the encryption key in bytes. Corresponds to AES-256. Type: int. Range: 16, 24 or 32 bytes.
NONCE_SIZE = 12  # Use: Size of the AES-GCM nonce in bytes. Type: int. Range: 12 bytes (96 bits) is the recommended size for GCM.
TAG_SIZE = 16  # Use: Size of the AES-GCM authentication tag in bytes. Type: int. Range: 16 bytes (128 bits).
CIPHERTEXT_VERSION = 1  # Use: Format version written into every encrypted password token. Type: int. Range: 1-255.
ARGON2_TIME_COST = 2  # Use: Default Argon2id time cost. Type: int. Range: Typically 1 to 10.
ARGON2_MEMORY_COST = 65536  # Use: Default Argon2id memory cost in KiB. Type: int. Range: At least 8 * parallelism; 65536 (64 MB) recommended.
ARGON2_PARALLELISM = 4  # Use: Default Argon2id parallelism (lanes). Type: int. Range: 1 to 255.
PBKDF2_ITERATIONS = 310000  # Use: PBKDF2-HMAC-SHA256 iterations, used when Argon2 is unavailable. Type: int. Range: At least 100,000.
KDF_COST_CEILING_FACTOR = 4  # Use: Multiple of the configured KDF costs a token header may carry before decryption refuses it. Type: int. Range: 1 to 16.
WEAK_PASSWORD_LENGTH = 8  # Use: Stored passwords shorter than this are listed by the weak-passwords report. Type: int. Range: 1 to 128.
KEY_VALIDATION_PROBE = "test"  # Use: Probe string encrypted and decrypted to validate a key before bulk imports. Type: str. Range: Any non-empty string.

# Keyring Settings
KEYRING_SERVICE = "credvault"  # Use: Service name under which the encryption key is stored in the OS keyring. Type: str. Range: Any valid string.
KEYRING_USERNAME = "encryption-key"  # Use: Account name of the keyring entry holding the encryption key. Type: str. Range: Any valid string.

# File and Directory Names
CONFIG_DIR_NAME = ".credvault"  # Use: Hidden directory in the user's home holding the database and logs. Type: str. Range: Any valid directory name.
DEFAULT_DATABASE_FILE = "credentials.db"  # Use: Default filename of the SQLite credential database. Type: str. Range: Any valid filename.
AUDIT_LOG_FILE = "audit.log"  # Use: Filename for the security audit log. Type: str. Range: Any valid filename.
CSV_EXTENSION = ".csv"  # Use: Only files with this extension are accepted for import. Type: str. Range: File extension including the dot.

# Store Settings
TABLE_NAME = "credentials"  # Use: Name of the relational table holding credentials. Type: str. Range: Valid SQL identifier.
DEFAULT_SOURCE = "manual"  # Use: Source tag for credentials created through the API without one. Type: str. Range: Any non-empty string.
DEFAULT_RECENT_LIMIT = 10  # Use: Number of rows returned by the "recent" report when no limit is given. Type: int. Range: Positive integer.
CATEGORY_OTHER = "Other"  # Use: Category for names matching none of NAME_CATEGORIES. Type: str. Range: Any string.
NAME_CATEGORIES = [  # Use: (SQL LIKE pattern, category) pairs used to group credential names in statistics, first match wins. Type: list[tuple[str, str]]. Range: Case-insensitive LIKE patterns.
    ("%google%", "Google"),
    ("%facebook%", "Facebook"),
    ("%amazon%", "Amazon"),
    ("%microsoft%", "Microsoft"),
    ("%github%", "GitHub"),
    ("%apple%", "Apple"),
    ("%twitter%", "Twitter/X"),
    ("x.com", "Twitter/X"),
    ("%.x.com", "Twitter/X"),
    ("%linkedin%", "LinkedIn"),
    ("%stackoverflow%", "StackOverflow"),
    ("%dropbox%", "Dropbox"),
]

# Browser Import Settings
BROWSER_HEADER_MAPPINGS = {  # Use: Maps candidate record fields to CSV header variations found in browser exports. Type: dict[str, list[str]]. Range: Lowercase header names.
    'name': ['name', 'title', 'site'],
    'url': ['url', 'website', 'web site', 'origin', 'origin_url'],
    'username': ['username', 'user', 'login', 'email', 'account'],
    'password': ['password', 'pass', 'pwd'],
    'note': ['note', 'notes', 'comments', 'description'],
}
FIREFOX_TIME_CREATED_HEADER = "timecreated"  # Use: Lowercased Firefox export column holding the creation time in epoch milliseconds. Type: str. Range: "timecreated".
CSV_SNIFF_SAMPLE_SIZE = 1024  # Use: Number of characters read to detect the CSV delimiter. Type: int. Range: Positive integer.
CSV_DELIMITERS = ",;\t"  # Use: Delimiters the CSV sniffer may choose from. Type: str. Range: Single characters.


class Settings(BaseSettings):
    """Deployment settings loaded from CREDVAULT_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CREDVAULT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    DATABASE_PATH: str = os.path.join(os.path.expanduser("~"), CONFIG_DIR_NAME, DEFAULT_DATABASE_FILE)

    # Encryption
    ENCRYPTION_KEY: str = ""
    USE_KEYRING: bool = True
    ARGON2_TIME_COST: int = ARGON2_TIME_COST
    ARGON2_MEMORY_COST: int = ARGON2_MEMORY_COST
    ARGON2_PARALLELISM: int = ARGON2_PARALLELISM

    # Import
    UPLOAD_DIR: str = "uploads"
    MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024
    SOURCES_DIR: str = "sources"

    # Query
    DEFAULT_PAGE_SIZE: int = 20
    MAX_PAGE_SIZE: int = 200

    # HTTP
    HOST: str = "127.0.0.1"
    PORT: int = 3000
    ALLOWED_ORIGINS: str = "*"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = os.path.join(os.path.expanduser("~"), CONFIG_DIR_NAME, "logs")


def get_encryption_key(settings: Settings) -> str:
    """
    Resolve the shared encryption key.

    The environment wins; otherwise the OS keyring is consulted when enabled.

    Raises:
        ValidationError: If no key is configured anywhere.
    """
    if settings.ENCRYPTION_KEY:
        return settings.ENCRYPTION_KEY

    if settings.USE_KEYRING:
        key: Optional[str] = None
        try:
            key = keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
        except KeyringError as e:
            logger.warning(f"Keyring lookup for the encryption key failed: {e}")
        if key:
            return key

    raise ValidationError(
        "No encryption key configured. Set CREDVAULT_ENCRYPTION_KEY or store one with 'credvault set-key'."
    )


def store_encryption_key(key: str) -> None:
    """Save the encryption key in the OS keyring."""
    if not key:
        raise ValidationError("Encryption key must not be empty")
    keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, key)
    logger.info(f"Encryption key stored in keyring service '{KEYRING_SERVICE}'.")
