import io
import os
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from media_vault.config import VaultConfig
from media_vault.crypto.key_provider import KeyMaterial
from media_vault.crypto.secure_bytes import SecureBytes
from media_vault.exceptions import (
    AuthenticationFailure,
    CryptoIOError,
    EntryNotFoundError,
    InvalidOffsetError,
    VaultLockedError,
)
from media_vault.models.entry import MediaKind
from media_vault.services.entry_service import VaultEntryManager
from media_vault.services.session import VaultSession
from media_vault.storage.blob_store import BlobStore
from media_vault.storage.entry_index import EntryIndex


class FailingSource:
    """Yields one chunk, then fails like a disconnected device."""

    def __init__(self) -> None:
        self._reads = 0

    def read(self, size: int = -1) -> bytes:
        self._reads += 1
        if self._reads > 1:
            raise OSError("device disconnected")
        return b"x" * size

    def close(self) -> None:
        pass


class FailingSink:
    """Accepts a few writes, then fails like a full disk."""

    def __init__(self, sink, *, fail_on_write: int) -> None:
        self._sink = sink
        self._writes = 0
        self._fail_on_write = fail_on_write

    def write(self, data: bytes) -> int:
        self._writes += 1
        if self._writes >= self._fail_on_write:
            raise OSError("No space left on device")
        return self._sink.write(data)

    def close(self) -> None:
        self._sink.close()


def _blob_files(tmp_path: Path) -> list[str]:
    directory = tmp_path / "blobs"
    return sorted(p.name for p in directory.iterdir()) if directory.exists() else []


def _flip_last_byte(path: Path) -> None:
    data = bytearray(path.read_bytes())
    data[-1] ^= 0x01
    path.write_bytes(bytes(data))


def test_import_then_open_from_offset(manager: VaultEntryManager) -> None:
    entry = manager.import_entry(io.BytesIO(b"0123456789"), MediaKind.PHOTO)

    with manager.open_entry(entry, start_offset=5) as handle:
        assert handle.read() == b"56789"
        assert handle.verified

    assert entry.plaintext_length == 10
    assert manager.get_entry(entry.entry_id) == entry


def test_import_large_stream(manager: VaultEntryManager) -> None:
    payload = os.urandom(5000)
    entry = manager.import_entry(io.BytesIO(payload), MediaKind.VIDEO)

    with manager.open_entry(entry.entry_id) as handle:
        assert handle.read() == payload


def test_import_reports_activity(manager: VaultEntryManager, activity: Mock) -> None:
    manager.import_entry(io.BytesIO(b"0123456789"), MediaKind.PHOTO)

    assert activity.called


def test_import_failure_mid_stream_leaves_nothing(
    manager: VaultEntryManager, tmp_path: Path
) -> None:
    with pytest.raises(CryptoIOError, match="Failed to read import source"):
        manager.import_entry(FailingSource(), MediaKind.VIDEO)

    assert manager.list_entries() == []
    assert _blob_files(tmp_path) == []


def test_import_failure_on_record_discards_blob(
    manager: VaultEntryManager, entry_index: EntryIndex, tmp_path: Path
) -> None:
    with patch.object(entry_index, "add", side_effect=CryptoIOError("disk full", operation="write")):
        with pytest.raises(CryptoIOError):
            manager.import_entry(io.BytesIO(b"data"), MediaKind.PHOTO)

    assert _blob_files(tmp_path) == []


def test_tampered_blob_raises_authentication_failure(
    manager: VaultEntryManager, tmp_path: Path
) -> None:
    entry = manager.import_entry(io.BytesIO(b"0123456789"), MediaKind.PHOTO)
    _flip_last_byte(tmp_path / "blobs" / entry.ciphertext_location)

    with manager.open_entry(entry) as handle, pytest.raises(AuthenticationFailure):
        handle.read()


def test_tampered_blob_fails_skip_to_end(manager: VaultEntryManager, tmp_path: Path) -> None:
    entry = manager.import_entry(io.BytesIO(b"0123456789"), MediaKind.PHOTO)
    _flip_last_byte(tmp_path / "blobs" / entry.ciphertext_location)

    with pytest.raises(AuthenticationFailure):
        manager.open_entry(entry, start_offset=10)


def test_swapped_blobs_fail_authentication(manager: VaultEntryManager, tmp_path: Path) -> None:
    first = manager.import_entry(io.BytesIO(b"first entry"), MediaKind.PHOTO)
    second = manager.import_entry(io.BytesIO(b"other entry"), MediaKind.PHOTO)
    blobs = tmp_path / "blobs"
    (blobs / second.ciphertext_location).write_bytes((blobs / first.ciphertext_location).read_bytes())

    with manager.open_entry(second) as handle, pytest.raises(AuthenticationFailure):
        handle.read()


def test_offset_past_end_returns_exhausted_stream(manager: VaultEntryManager) -> None:
    entry = manager.import_entry(io.BytesIO(b"0123456789"), MediaKind.PHOTO)

    with manager.open_entry(entry, start_offset=50) as handle:
        assert handle.read() == b""
        assert handle.position == 10


def test_offset_past_end_in_strict_mode_raises(manager: VaultEntryManager) -> None:
    entry = manager.import_entry(io.BytesIO(b"0123456789"), MediaKind.PHOTO)

    with pytest.raises(InvalidOffsetError, match="past end") as exc_info:
        manager.open_entry(entry, start_offset=11, strict=True)

    assert exc_info.value.available == 10


def test_strict_offsets_default_comes_from_config(
    session: VaultSession, blob_store: BlobStore, entry_index: EntryIndex
) -> None:
    manager = VaultEntryManager(
        session, blob_store, entry_index, config=VaultConfig(chunk_size=16, strict_offsets=True)
    )
    entry = manager.import_entry(io.BytesIO(b"0123456789"), MediaKind.PHOTO)

    with pytest.raises(InvalidOffsetError):
        manager.open_entry(entry, start_offset=11)
    with manager.open_entry(entry, start_offset=11, strict=False) as handle:
        assert handle.read() == b""


def test_negative_offset_raises(manager: VaultEntryManager) -> None:
    entry = manager.import_entry(io.BytesIO(b"0123456789"), MediaKind.PHOTO)

    with pytest.raises(InvalidOffsetError, match="non-negative"):
        manager.open_entry(entry, start_offset=-1)


def test_open_unknown_entry_raises(manager: VaultEntryManager) -> None:
    with pytest.raises(EntryNotFoundError) as exc_info:
        manager.open_entry("missing")

    assert exc_info.value.entry_id == "missing"


@pytest.mark.parametrize(
    ("start", "length", "expected"),
    [(0, 4, b"0123"), (3, 4, b"3456"), (8, 10, b"89"), (10, 5, b""), (2, 0, b"")],
)
def test_read_range(manager: VaultEntryManager, start: int, length: int, expected: bytes) -> None:
    entry = manager.import_entry(io.BytesIO(b"0123456789"), MediaKind.VIDEO)

    assert manager.read_range(entry, start, length) == expected


def test_read_range_rejects_negative_length(manager: VaultEntryManager) -> None:
    entry = manager.import_entry(io.BytesIO(b"0123456789"), MediaKind.VIDEO)

    with pytest.raises(ValueError, match="length must be non-negative"):
        manager.read_range(entry, 0, -1)


def test_release_uses_close_scheduler_when_attached(
    session: VaultSession, blob_store: BlobStore, entry_index: EntryIndex, config: VaultConfig
) -> None:
    scheduler = Mock()
    manager = VaultEntryManager(
        session, blob_store, entry_index, config=config, close_scheduler=scheduler
    )
    entry = manager.import_entry(io.BytesIO(b"0123456789"), MediaKind.VIDEO)
    handle = manager.open_entry(entry)

    manager.release(handle)

    scheduler.schedule_close.assert_called_once_with(handle)
    handle.close()


def test_release_without_scheduler_closes_inline(manager: VaultEntryManager) -> None:
    entry = manager.import_entry(io.BytesIO(b"0123456789"), MediaKind.VIDEO)
    handle = manager.open_entry(entry)

    manager.release(handle)

    assert handle.closed


def test_delete_removes_blob_and_record(manager: VaultEntryManager, tmp_path: Path) -> None:
    entry = manager.import_entry(io.BytesIO(b"0123456789"), MediaKind.PHOTO)

    manager.delete_entry(entry.entry_id)

    assert manager.list_entries() == []
    assert _blob_files(tmp_path) == []
    with pytest.raises(EntryNotFoundError):
        manager.open_entry(entry.entry_id)


def test_delete_unknown_entry_raises(manager: VaultEntryManager) -> None:
    with pytest.raises(EntryNotFoundError):
        manager.delete_entry("missing")


def test_delete_rolls_back_when_record_removal_fails(
    manager: VaultEntryManager, entry_index: EntryIndex
) -> None:
    entry = manager.import_entry(io.BytesIO(b"0123456789"), MediaKind.PHOTO)

    with patch.object(
        entry_index, "remove", side_effect=CryptoIOError("disk full", operation="write")
    ), pytest.raises(CryptoIOError):
        manager.delete_entry(entry)

    with manager.open_entry(entry) as handle:
        assert handle.read() == b"0123456789"


def test_delete_with_missing_blob_removes_record(
    manager: VaultEntryManager, tmp_path: Path
) -> None:
    entry = manager.import_entry(io.BytesIO(b"0123456789"), MediaKind.PHOTO)
    (tmp_path / "blobs" / entry.ciphertext_location).unlink()

    manager.delete_entry(entry)

    assert manager.list_entries() == []


def test_list_entries_filters_by_kind(manager: VaultEntryManager) -> None:
    photo = manager.import_entry(io.BytesIO(b"photo"), MediaKind.PHOTO)
    video = manager.import_entry(io.BytesIO(b"video"), MediaKind.VIDEO)

    assert {e.entry_id for e in manager.list_entries()} == {photo.entry_id, video.entry_id}
    assert manager.list_entries(MediaKind.VIDEO) == [video]


def test_locked_session_rejects_new_operations(
    manager: VaultEntryManager, session: VaultSession
) -> None:
    entry = manager.import_entry(io.BytesIO(b"0123456789"), MediaKind.PHOTO)
    open_handle = manager.open_entry(entry)

    session.lock()

    with pytest.raises(VaultLockedError):
        manager.open_entry(entry)
    with pytest.raises(VaultLockedError):
        manager.import_entry(io.BytesIO(b"more"), MediaKind.PHOTO)
    with open_handle:
        assert open_handle.read() == b"0123456789"


def test_recover_removes_interrupted_import(
    manager: VaultEntryManager, blob_store: BlobStore, tmp_path: Path
) -> None:
    entry = manager.import_entry(io.BytesIO(b"0123456789"), MediaKind.PHOTO)
    blob_store.open_write(blob_store.location_for("interrupted")).close()

    assert manager.recover() == 1
    assert _blob_files(tmp_path) == [entry.ciphertext_location]


def test_import_failure_writing_blob_leaves_nothing(
    manager: VaultEntryManager, blob_store: BlobStore, tmp_path: Path
) -> None:
    open_write = blob_store.open_write

    def open_failing_sink(location: str) -> FailingSink:
        return FailingSink(open_write(location), fail_on_write=3)

    with patch.object(blob_store, "open_write", side_effect=open_failing_sink):
        with pytest.raises(CryptoIOError) as exc_info:
            manager.import_entry(io.BytesIO(b"x" * 64), MediaKind.VIDEO)

    assert exc_info.value.operation == "write"
    assert manager.list_entries() == []
    assert _blob_files(tmp_path) == []


def test_lock_during_open_keeps_the_stream_usable(
    manager: VaultEntryManager, session: VaultSession, blob_store: BlobStore
) -> None:
    entry = manager.import_entry(io.BytesIO(b"0123456789"), MediaKind.PHOTO)
    open_read = blob_store.open_read

    def lock_then_open(location: str):
        session.lock()
        return open_read(location)

    with patch.object(blob_store, "open_read", side_effect=lock_then_open):
        handle = manager.open_entry(entry, start_offset=2)

    with handle:
        assert handle.read() == b"23456789"
    with pytest.raises(VaultLockedError):
        manager.open_entry(entry)


def test_lock_during_import_encrypts_with_the_real_key(
    manager: VaultEntryManager,
    session: VaultSession,
    blob_store: BlobStore,
    entry_index: EntryIndex,
    config: VaultConfig,
    data_key: bytes,
) -> None:
    open_write = blob_store.open_write

    def lock_then_open(location: str):
        session.lock()
        return open_write(location)

    with patch.object(blob_store, "open_write", side_effect=lock_then_open):
        entry = manager.import_entry(io.BytesIO(b"0123456789"), MediaKind.PHOTO)

    reopened = VaultEntryManager(
        VaultSession(KeyMaterial(SecureBytes(data_key))), blob_store, entry_index, config=config
    )
    with reopened.open_entry(entry) as handle:
        assert handle.read() == b"0123456789"
