"""Error taxonomy for the vault core.

Every failure the core raises is a ``VaultError`` carrying an ``ErrorKind``,
so callers branch on ``exc.kind`` rather than on message text. Structured
context (secret id, field name, failure reason) travels in ``exc.context``
and never contains key material or plaintext.
"""

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    VAULT_LOCKED = "vault_locked"
    NOT_FOUND = "not_found"
    DECRYPTION = "decryption"
    ENCRYPTION = "encryption"
    STORE = "store"


class VaultError(Exception):
    """Base exception for the vault core."""

    kind: ErrorKind

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, kind={self.kind.value}, context={self.context!r})"


class ValidationError(VaultError):
    """A required field is missing, empty or out of range."""

    kind = ErrorKind.VALIDATION


class VaultLockedError(VaultError):
    """No key is available because the vault is locked."""

    kind = ErrorKind.VAULT_LOCKED


class NotFoundError(VaultError):
    """The requested secret does not exist."""

    kind = ErrorKind.NOT_FOUND


class DecryptionError(VaultError):
    """Ciphertext could not be opened: malformed, tampered, or wrong key."""

    kind = ErrorKind.DECRYPTION


class CiphertextFormatError(DecryptionError):
    """Blob is too short to contain a nonce."""


class IntegrityError(DecryptionError):
    """AEAD authentication failed."""


class EncryptionError(VaultError):
    """Entropy source or cipher initialization failure."""

    kind = ErrorKind.ENCRYPTION


class StoreError(VaultError):
    """Persistence layer failure."""

    kind = ErrorKind.STORE


__all__ = [
    "ErrorKind",
    "VaultError",
    "ValidationError",
    "VaultLockedError",
    "NotFoundError",
    "DecryptionError",
    "CiphertextFormatError",
    "IntegrityError",
    "EncryptionError",
    "StoreError",
]
