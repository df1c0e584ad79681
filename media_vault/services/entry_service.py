"""
Vault entry service.

Imports media into encrypted blobs, opens entries as decrypted streams and
deletes them, keeping blob storage and entry records consistent.
"""

import uuid
from datetime import UTC, datetime

import structlog

from media_vault.config import VaultConfig
from media_vault.core.close_scheduler import DeferredCloseScheduler
from media_vault.core.streams import ByteSource
from media_vault.crypto.codec import open_decrypting_source, open_encrypting_sink
from media_vault.crypto.seek import DecryptingStreamHandle
from media_vault.exceptions import CryptoIOError, EntryNotFoundError, InvalidOffsetError
from media_vault.models.entry import MediaKind, VaultEntry
from media_vault.services.session import VaultSession
from media_vault.storage.blob_store import BlobStore
from media_vault.storage.entry_index import EntryIndex

logger = structlog.get_logger(__name__)


class VaultEntryManager:
    """
    Orchestrates import, retrieval and deletion of vault entries.

    An entry is only recorded once its blob has been finalized and committed,
    so a failed import never leaves a record or a blob behind.
    """

    def __init__(
        self,
        session: VaultSession,
        blob_store: BlobStore,
        index: EntryIndex,
        *,
        config: VaultConfig | None = None,
        close_scheduler: DeferredCloseScheduler | None = None,
    ) -> None:
        """
        Args:
            session: Unlocked session providing the data key.
            blob_store: Ciphertext storage.
            index: Entry records.
            config: Vault configuration. Uses defaults if not provided.
            close_scheduler: Used by ``release`` to close handles in the background.
        """
        self._session = session
        self._blobs = blob_store
        self._index = index
        self._config = config or VaultConfig()
        self._close_scheduler = close_scheduler

    def get_entry(self, entry_id: str) -> VaultEntry:
        """
        Raises:
            EntryNotFoundError: If no such entry is recorded.
        """
        entry = self._index.get(entry_id)
        if entry is None:
            msg = f"Entry not found: {entry_id}"
            raise EntryNotFoundError(msg, entry_id=entry_id)
        return entry

    def list_entries(self, media_kind: MediaKind | None = None) -> list[VaultEntry]:
        """Recorded entries, oldest first."""
        return self._index.entries(media_kind)

    def import_entry(self, source: ByteSource, media_kind: MediaKind) -> VaultEntry:
        """
        Encrypt ``source`` into a new blob and record it.

        ``source`` is read to the end but not closed.

        Returns:
            The recorded entry.

        Raises:
            VaultLockedError: If the session is locked.
            CryptoIOError: If reading the source or writing the blob fails.
        """
        key = self._session.key_material.key_bytes()
        entry_id = uuid.uuid4().hex
        location = self._blobs.location_for(entry_id)
        logger.debug("Importing entry", entry_id=entry_id, media_kind=media_kind.value)

        try:
            length = self._encrypt_to_blob(source, location, entry_id, key)
            self._blobs.commit(location)
            entry = VaultEntry(
                entry_id=entry_id,
                ciphertext_location=location,
                plaintext_length=length,
                media_kind=media_kind,
                created_at=datetime.now(UTC),
            )
            self._index.add(entry)
        except Exception:
            self._blobs.discard(location)
            logger.warning("Import rolled back", entry_id=entry_id)
            raise

        logger.info("Entry imported", entry_id=entry_id, length=length)
        return entry

    def open_entry(
        self,
        entry: VaultEntry | str,
        start_offset: int = 0,
        *,
        strict: bool | None = None,
    ) -> DecryptingStreamHandle:
        """
        Open an entry as a decrypted stream starting at ``start_offset``.

        Bytes before the offset are decrypted and discarded.

        Args:
            entry: Entry or entry id.
            start_offset: Plaintext offset to start at.
            strict: Reject offsets past the end instead of returning an
                exhausted stream. Defaults to ``config.strict_offsets``.

        Returns:
            A handle owned by the caller. Release it with ``close()`` or ``release()``.

        Raises:
            EntryNotFoundError: If the entry is not recorded.
            InvalidOffsetError: If the offset is negative, or past the end in strict mode.
            VaultLockedError: If the session is locked.
            AuthenticationFailure: If the skip runs into a tag mismatch.
            CryptoIOError: If the blob cannot be read.
        """
        entry = self._resolve(entry)
        strict = self._config.strict_offsets if strict is None else strict
        if start_offset < 0:
            msg = "Start offset must be non-negative"
            raise InvalidOffsetError(msg, offset=start_offset, available=entry.plaintext_length)
        if strict and start_offset > entry.plaintext_length:
            msg = "Start offset past end of entry"
            raise InvalidOffsetError(msg, offset=start_offset, available=entry.plaintext_length)

        key = self._session.key_material.key_bytes()
        blob = self._blobs.open_read(entry.ciphertext_location)
        try:
            reader = open_decrypting_source(
                blob,
                key,
                associated_data=entry.entry_id.encode("ascii"),
                on_activity=self._session.activity_callback,
                chunk_size=self._config.chunk_size,
            )
        except Exception:
            blob.close()
            raise

        handle = DecryptingStreamHandle(
            reader,
            entry_id=entry.entry_id,
            length=entry.plaintext_length,
            strict=strict,
            chunk_size=self._config.chunk_size,
        )
        if start_offset > 0:
            try:
                handle.skip_to(start_offset)
            except Exception:
                handle.close()
                raise

        logger.debug("Entry opened", entry_id=entry.entry_id, start_offset=start_offset)
        return handle

    def read_range(self, entry: VaultEntry | str, start: int, length: int) -> bytes:
        """
        Read up to ``length`` plaintext bytes starting at ``start``.

        For consumers such as video players that request byte ranges. The
        handle used is released before returning.

        Returns:
            The bytes read; shorter than ``length`` only at end of entry.
        """
        if length < 0:
            msg = "length must be non-negative"
            raise ValueError(msg)
        handle = self.open_entry(entry, start)
        try:
            data = bytearray()
            while len(data) < length:
                chunk = handle.read(length - len(data))
                if not chunk:
                    break
                data += chunk
            return bytes(data)
        finally:
            self.release(handle)

    def release(self, handle: DecryptingStreamHandle) -> None:
        """Close ``handle``, in the background when a close scheduler is attached."""
        if self._close_scheduler is not None:
            self._close_scheduler.schedule_close(handle)
        else:
            handle.close()

    def delete_entry(self, entry: VaultEntry | str) -> None:
        """
        Remove an entry's blob and record.

        The blob is moved aside first; if the record cannot be removed the
        blob is put back, so the entry is either fully deleted or intact.

        Raises:
            EntryNotFoundError: If the entry is not recorded.
            CryptoIOError: If the blob or the record cannot be removed. The
                entry is left intact.
        """
        entry = self._resolve(entry)
        location = entry.ciphertext_location

        staged = self._blobs.stage_removal(location)
        if not staged:
            logger.warning("Blob already missing, removing record", entry_id=entry.entry_id)
        try:
            self._index.remove(entry.entry_id)
        except Exception:
            if staged:
                self._blobs.restore(location)
            raise
        if staged:
            self._blobs.purge(location)

        logger.info("Entry deleted", entry_id=entry.entry_id)

    def recover(self) -> int:
        """
        Clean up blob files left behind by interrupted imports or deletions.

        Returns:
            Number of files removed.
        """
        return self._blobs.sweep(self._index.locations())

    def _resolve(self, entry: VaultEntry | str) -> VaultEntry:
        entry_id = entry if isinstance(entry, str) else entry.entry_id
        return self.get_entry(entry_id)

    def _encrypt_to_blob(
        self, source: ByteSource, location: str, entry_id: str, key: bytes
    ) -> int:
        sink = self._blobs.open_write(location)
        try:
            writer = open_encrypting_sink(
                sink,
                key,
                associated_data=entry_id.encode("ascii"),
                on_activity=self._session.activity_callback,
            )
        except Exception:
            sink.close()
            raise

        with writer:
            while chunk := self._read_source(source):
                writer.write(chunk)
        return writer.bytes_written

    def _read_source(self, source: ByteSource) -> bytes:
        try:
            return source.read(self._config.chunk_size)
        except OSError as e:
            msg = f"Failed to read import source: {e}"
            raise CryptoIOError(msg, operation="read") from e
