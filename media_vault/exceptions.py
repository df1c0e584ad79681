"""
Media vault exception hierarchy.

All exceptions inherit from MediaVaultError for easy catching.
"""

from typing import Any


class MediaVaultError(Exception):
    """Base exception for all media_vault errors."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx})"
        return self.message


class CryptoError(MediaVaultError):
    """Cryptographic operation failed."""


class AuthenticationFailure(CryptoError):
    """
    Authentication tag mismatch or truncated ciphertext.

    The blob is corrupted or has been tampered with. Retrying will not help.
    """


class InvalidPasswordError(CryptoError):
    """The password could not unwrap the vault data key."""


class KeystoreError(CryptoError):
    """Keystore file is malformed or uses an unsupported format."""


class CryptoIOError(MediaVaultError):
    """Underlying storage read or write failed."""

    def __init__(self, message: str, *, operation: str) -> None:
        super().__init__(message, operation=operation)
        self.operation = operation


class InvalidOffsetError(MediaVaultError):
    """Requested plaintext offset cannot be reached."""

    def __init__(self, message: str, *, offset: int, available: int | None = None) -> None:
        super().__init__(message, offset=offset, available=available)
        self.offset = offset
        self.available = available


class VaultLockedError(MediaVaultError):
    """Key material was requested while the vault is locked."""

    def __init__(self, message: str = "Vault is locked") -> None:
        super().__init__(message)


class VaultStateError(MediaVaultError):
    """Vault is not in the state the operation requires (missing or already created)."""


class EntryNotFoundError(MediaVaultError):
    """No entry with the given id is recorded."""

    def __init__(self, message: str, *, entry_id: str) -> None:
        super().__init__(message, entry_id=entry_id)
        self.entry_id = entry_id
