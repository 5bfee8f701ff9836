"""
Exception taxonomy for the credential manager.

Every error raised by the store, the cipher or the import reconciler derives
from CredVaultError so the HTTP layer and the CLI can translate them in one
place.
"""


class CredVaultError(Exception):
    """Base class for all credential manager errors."""

    status_code = 500


class ValidationError(CredVaultError):
    """A required field is missing or an argument is out of range."""

    status_code = 400


class NotFound(CredVaultError):
    """No credential exists with the requested id."""

    status_code = 404

    def __init__(self, credential_id):
        super().__init__(f"Credential {credential_id} not found")
        self.credential_id = credential_id


class DecryptionError(CredVaultError):
    """Raised when decryption fails (wrong key or corrupt ciphertext)."""


class UniquenessViolation(CredVaultError):
    """The (name, url, username, source) identity is already taken."""

    status_code = 409


class StoreError(CredVaultError):
    """Unexpected persistence failure."""


class StoreUnavailable(StoreError):
    """The database cannot be reached at all; aborts a running import."""
