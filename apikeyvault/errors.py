"""
API Key Vault - Exceptions

Every error raised on purpose by this package derives from VaultError, so
callers can catch the whole family in one place.
"""


class VaultError(Exception):
    """Base class for all API Key Vault errors."""


class EncryptionError(VaultError):
    """The field key is unavailable/unusable or the plaintext can't be encoded."""


class KeyFileError(EncryptionError):
    """Key file missing, corrupt, or unlocked with the wrong passphrase."""


class DecryptionError(VaultError):
    """Ciphertext is malformed or was produced with a different key."""


class PersistenceError(VaultError):
    """
    The persistence layer rejected or failed an operation.

    Attributes:
        retryable: True when repeating the same call may succeed
                   (e.g. database locked), False for permanent failures.
    """

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class RecordNotFound(PersistenceError):
    """No row with this id is visible to the current owner."""


class ClipboardError(VaultError):
    """Writing to the system clipboard failed."""


class RecoveryError(VaultError):
    """Recovery shares are invalid, insufficient, or from different kits."""
