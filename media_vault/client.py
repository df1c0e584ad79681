"""
Media vault facade.

This is the main entry point for users of the library. It wires the key
provider, storage, session and entry service together and owns the lifecycle
of the background close scheduler.
"""

import threading
from pathlib import Path
from typing import Self

import structlog

from media_vault.config import VaultConfig
from media_vault.core.close_scheduler import DeferredCloseScheduler
from media_vault.core.streams import ActivityCallback, ByteSource
from media_vault.crypto.key_provider import KeyMaterial, KeyMaterialProvider
from media_vault.crypto.secure_bytes import SecureBytes
from media_vault.crypto.seek import DecryptingStreamHandle
from media_vault.exceptions import CryptoIOError, VaultLockedError
from media_vault.models.entry import MediaKind, VaultEntry
from media_vault.services.entry_service import VaultEntryManager
from media_vault.services.session import VaultSession
from media_vault.storage.blob_store import BlobStore
from media_vault.storage.entry_index import EntryIndex

logger = structlog.get_logger(__name__)

KEYSTORE_FILENAME = "keystore.json"
INDEX_FILENAME = "index.json"
BLOBS_DIRNAME = "blobs"


class MediaVault:
    """
    Encrypted photo and video vault rooted at a directory.

    Example:
        ```python
        with MediaVault("~/.vault") as vault:
            vault.unlock("correct horse battery staple")

            entry = vault.import_file("holiday.mp4")

            handle = vault.open_entry(entry.entry_id, start_offset=1_000_000)
            player.feed(handle.read(64 * 1024))
            vault.release(handle)
        ```

    Args:
        root: Vault directory.
        config: Vault configuration. Uses defaults if not provided.
        on_activity: Called whenever vault data is read or written.
    """

    def __init__(
        self,
        root: Path | str,
        config: VaultConfig | None = None,
        *,
        on_activity: ActivityCallback | None = None,
    ) -> None:
        self._root = Path(root).expanduser()
        self._config = config or VaultConfig()
        self._on_activity = on_activity

        self._key_provider = KeyMaterialProvider(
            self._root / KEYSTORE_FILENAME, rounds=self._config.kdf_rounds
        )
        self._close_scheduler = DeferredCloseScheduler(
            self._config.close_workers, drain_timeout=self._config.close_drain_timeout
        )
        self._session: VaultSession | None = None
        self._entries: VaultEntryManager | None = None
        self._lock = threading.Lock()

    def __enter__(self) -> Self:
        self._close_scheduler.start()
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    @property
    def root(self) -> Path:
        return self._root

    @property
    def is_initialized(self) -> bool:
        return self._key_provider.is_initialized

    @property
    def is_unlocked(self) -> bool:
        return self._session is not None and self._session.is_unlocked

    def create(self, password: SecureBytes | str) -> None:
        """
        Initialize a new vault and unlock it.

        Raises:
            VaultStateError: If the vault already exists.
        """
        with _as_secure(password) as secret:
            material = self._key_provider.create(secret)
        self._start_session(material)
        logger.info("Vault created")

    def unlock(self, password: SecureBytes | str) -> None:
        """
        Unlock an existing vault.

        Raises:
            VaultStateError: If the vault has not been created.
            InvalidPasswordError: If the password is wrong.
        """
        with _as_secure(password) as secret:
            material = self._key_provider.unlock(secret)
        self._start_session(material)
        logger.info("Vault unlocked")

    def lock(self) -> None:
        """Destroy the session key. Open handles stay readable until released."""
        with self._lock:
            session, self._session = self._session, None
            self._entries = None
        if session is not None:
            session.lock()

    def change_password(self, old_password: SecureBytes | str, new_password: SecureBytes | str) -> None:
        """
        Rewrap the vault key under a new password. Stored entries are untouched.

        Raises:
            InvalidPasswordError: If ``old_password`` is wrong.
        """
        with _as_secure(old_password) as old, _as_secure(new_password) as new:
            self._key_provider.change_password(old, new)

    def import_entry(self, source: ByteSource, media_kind: MediaKind) -> VaultEntry:
        """
        Encrypt a stream into the vault.

        Raises:
            VaultLockedError: If the vault is locked.
            CryptoIOError: If reading or writing fails; nothing is recorded.
        """
        return self._require_entries().import_entry(source, media_kind)

    def import_file(self, path: Path | str, media_kind: MediaKind | None = None) -> VaultEntry:
        """
        Encrypt a file into the vault, inferring its kind from the filename if needed.

        Raises:
            ValueError: If the kind cannot be inferred.
            CryptoIOError: If the file cannot be read.
        """
        path = Path(path)
        media_kind = media_kind or MediaKind.from_path(path)
        entries = self._require_entries()
        try:
            source = path.open("rb")
        except OSError as e:
            msg = f"Failed to open import source: {e}"
            raise CryptoIOError(msg, operation="read") from e
        with source:
            return entries.import_entry(source, media_kind)

    def open_entry(
        self, entry_id: str, start_offset: int = 0, *, strict: bool | None = None
    ) -> DecryptingStreamHandle:
        """
        Open an entry as a decrypted stream.

        Raises:
            EntryNotFoundError: If the entry does not exist.
            InvalidOffsetError: If the offset cannot be honoured.
            VaultLockedError: If the vault is locked.
        """
        return self._require_entries().open_entry(entry_id, start_offset, strict=strict)

    def read_range(self, entry_id: str, start: int, length: int) -> bytes:
        """Read a plaintext byte range of an entry."""
        return self._require_entries().read_range(entry_id, start, length)

    def release(self, handle: DecryptingStreamHandle) -> None:
        """Hand a handle to the background close scheduler."""
        self._close_scheduler.schedule_close(handle)

    def delete_entry(self, entry_id: str) -> None:
        """
        Delete an entry and its blob.

        Raises:
            EntryNotFoundError: If the entry does not exist.
            CryptoIOError: If removal fails; the entry stays intact.
        """
        self._require_entries().delete_entry(entry_id)

    def get_entry(self, entry_id: str) -> VaultEntry:
        return self._require_entries().get_entry(entry_id)

    def list_entries(self, media_kind: MediaKind | None = None) -> list[VaultEntry]:
        return self._require_entries().list_entries(media_kind)

    def close(self) -> None:
        """Drain pending closes, stop the close scheduler and lock the vault."""
        self._close_scheduler.shutdown()
        self.lock()
        logger.debug("Vault closed")

    def _start_session(self, material: KeyMaterial) -> None:
        session = VaultSession(material, on_activity=self._on_activity)
        try:
            entries = VaultEntryManager(
                session,
                BlobStore(self._root / BLOBS_DIRNAME),
                EntryIndex(self._root / INDEX_FILENAME),
                config=self._config,
                close_scheduler=self._close_scheduler,
            )
            entries.recover()
        except Exception:
            session.lock()
            raise

        with self._lock:
            previous, self._session = self._session, session
            self._entries = entries
        if previous is not None:
            previous.lock()

    def _require_entries(self) -> VaultEntryManager:
        entries = self._entries
        if entries is None:
            raise VaultLockedError()
        return entries


def _as_secure(password: SecureBytes | str) -> SecureBytes:
    if isinstance(password, SecureBytes):
        # Caller keeps ownership; clear a copy instead.
        return SecureBytes(bytes(password))
    return SecureBytes.from_string(password)
