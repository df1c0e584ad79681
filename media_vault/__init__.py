"""
Media Vault.

An encrypted photo and video store with authenticated, seekable streams.

Example:
    ```python
    from media_vault import MediaKind, MediaVault

    with MediaVault("~/.vault") as vault:
        vault.unlock("password")

        entry = vault.import_file("clip.mp4")

        # Start playback 1 MiB into the clip
        handle = vault.open_entry(entry.entry_id, start_offset=1024 * 1024)
        data = handle.read(64 * 1024)
        vault.release(handle)
    ```
"""

from media_vault.client import MediaVault
from media_vault.config import VaultConfig
from media_vault.crypto.seek import DecryptingStreamHandle
from media_vault.exceptions import (
    AuthenticationFailure,
    CryptoError,
    CryptoIOError,
    EntryNotFoundError,
    InvalidOffsetError,
    InvalidPasswordError,
    KeystoreError,
    MediaVaultError,
    VaultLockedError,
    VaultStateError,
)
from media_vault.models.entry import MediaKind, VaultEntry

__version__ = "0.1.0"

__all__ = [
    # Main client
    "MediaVault",
    "VaultConfig",
    "DecryptingStreamHandle",
    # Models
    "MediaKind",
    "VaultEntry",
    # Exceptions
    "MediaVaultError",
    "CryptoError",
    "AuthenticationFailure",
    "InvalidPasswordError",
    "KeystoreError",
    "CryptoIOError",
    "InvalidOffsetError",
    "VaultLockedError",
    "VaultStateError",
    "EntryNotFoundError",
]
