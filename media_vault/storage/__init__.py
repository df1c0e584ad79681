"""
Persistence for ciphertext blobs and entry records.
"""

from media_vault.storage.blob_store import BlobStore
from media_vault.storage.entry_index import EntryIndex

__all__ = [
    "BlobStore",
    "EntryIndex",
]
