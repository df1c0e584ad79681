import io
from collections.abc import Callable
from pathlib import Path
from unittest.mock import Mock

import pytest

from media_vault.config import VaultConfig
from media_vault.crypto.codec import open_decrypting_source, open_encrypting_sink
from media_vault.crypto.key_provider import KeyMaterial
from media_vault.crypto.secure_bytes import SecureBytes
from media_vault.services.entry_service import VaultEntryManager
from media_vault.services.session import VaultSession
from media_vault.storage.blob_store import BlobStore
from media_vault.storage.entry_index import EntryIndex

DATA_KEY = bytes(range(32))


class MemorySink(io.BytesIO):
    """BytesIO whose contents stay readable after the writer closes it."""

    def __init__(self) -> None:
        super().__init__()
        self.close_calls = 0

    def close(self) -> None:
        self.close_calls += 1


@pytest.fixture
def data_key() -> bytes:
    return DATA_KEY


@pytest.fixture
def make_sink() -> Callable[[], MemorySink]:
    return MemorySink


@pytest.fixture
def encrypt(data_key: bytes) -> Callable[..., bytes]:
    def _encrypt(
        plaintext: bytes,
        *,
        key: bytes | None = None,
        associated_data: bytes | None = None,
    ) -> bytes:
        sink = MemorySink()
        with open_encrypting_sink(
            sink, key or data_key, associated_data=associated_data
        ) as writer:
            writer.write(plaintext)
        return sink.getvalue()

    return _encrypt


@pytest.fixture
def decrypt(data_key: bytes) -> Callable[..., bytes]:
    def _decrypt(
        blob: bytes,
        *,
        key: bytes | None = None,
        associated_data: bytes | None = None,
        chunk_size: int = 16,
    ) -> bytes:
        with open_decrypting_source(
            io.BytesIO(blob),
            key or data_key,
            associated_data=associated_data,
            chunk_size=chunk_size,
        ) as reader:
            return reader.read()

    return _decrypt


@pytest.fixture
def config() -> VaultConfig:
    return VaultConfig(chunk_size=16, kdf_rounds=1, close_workers=4, close_drain_timeout=5.0)


@pytest.fixture
def activity() -> Mock:
    return Mock()


@pytest.fixture
def session(data_key: bytes, activity: Mock) -> VaultSession:
    return VaultSession(KeyMaterial(SecureBytes(data_key)), on_activity=activity)


@pytest.fixture
def blob_store(tmp_path: Path) -> BlobStore:
    return BlobStore(tmp_path / "blobs")


@pytest.fixture
def entry_index(tmp_path: Path) -> EntryIndex:
    return EntryIndex(tmp_path / "index.json")


@pytest.fixture
def manager(
    session: VaultSession,
    blob_store: BlobStore,
    entry_index: EntryIndex,
    config: VaultConfig,
) -> VaultEntryManager:
    return VaultEntryManager(session, blob_store, entry_index, config=config)
