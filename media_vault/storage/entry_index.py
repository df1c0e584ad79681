"""
Persistent index of vault entries.

Records are kept in memory and written as one JSON document. Every mutation
rewrites the document through a temporary file and an atomic rename, and the
in-memory view only changes once the write has succeeded.
"""

import json
import os
import threading
from pathlib import Path

import structlog

from media_vault.exceptions import CryptoIOError, VaultStateError
from media_vault.models.entry import MediaKind, VaultEntry

logger = structlog.get_logger(__name__)

INDEX_VERSION = 1


class EntryIndex:
    """
    Entry records keyed by entry id.

    Mutations are serialized with a lock; readers see a consistent snapshot.
    """

    def __init__(self, path: Path) -> None:
        """
        Args:
            path: Location of the index JSON file.

        Raises:
            VaultStateError: If the index file is corrupted.
            CryptoIOError: If the index file cannot be read.
        """
        self._path = path
        self._lock = threading.Lock()
        self._entries: dict[str, VaultEntry] = self._load()

    def get(self, entry_id: str) -> VaultEntry | None:
        return self._entries.get(entry_id)

    def entries(self, media_kind: MediaKind | None = None) -> list[VaultEntry]:
        """All entries, oldest first, optionally filtered by kind."""
        selected = [
            e for e in self._entries.values() if media_kind is None or e.media_kind == media_kind
        ]
        return sorted(selected, key=lambda e: e.created_at)

    def locations(self) -> set[str]:
        """Blob locations referenced by some entry."""
        return {e.ciphertext_location for e in self._entries.values()}

    def add(self, entry: VaultEntry) -> None:
        """
        Record a new entry.

        Raises:
            ValueError: If the id is already recorded.
            CryptoIOError: If the index cannot be written.
        """
        with self._lock:
            if entry.entry_id in self._entries:
                msg = f"Entry already recorded: {entry.entry_id}"
                raise ValueError(msg)
            updated = {**self._entries, entry.entry_id: entry}
            self._save(updated)
            self._entries = updated

    def remove(self, entry_id: str) -> VaultEntry | None:
        """
        Drop an entry record.

        Returns:
            The removed entry, or None if it was not recorded.

        Raises:
            CryptoIOError: If the index cannot be written.
        """
        with self._lock:
            if entry_id not in self._entries:
                return None
            updated = dict(self._entries)
            removed = updated.pop(entry_id)
            self._save(updated)
            self._entries = updated
            return removed

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: str) -> bool:
        return entry_id in self._entries

    def _load(self) -> dict[str, VaultEntry]:
        try:
            with self._path.open("r", encoding="utf-8") as f:
                document = json.load(f)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as e:
            msg = f"Entry index is not valid JSON: {e}"
            raise VaultStateError(msg) from e
        except OSError as e:
            msg = f"Failed to read entry index: {e}"
            raise CryptoIOError(msg, operation="read") from e

        try:
            if document["version"] != INDEX_VERSION:
                msg = f"Unsupported entry index version: {document['version']}"
                raise VaultStateError(msg)
            entries = [VaultEntry.from_record(r) for r in document["entries"]]
        except (KeyError, TypeError, ValueError) as e:
            msg = f"Malformed entry index: {e}"
            raise VaultStateError(msg) from e

        logger.debug("Entry index loaded", count=len(entries))
        return {e.entry_id: e for e in entries}

    def _save(self, entries: dict[str, VaultEntry]) -> None:
        document = {
            "version": INDEX_VERSION,
            "entries": [e.to_record() for e in entries.values()],
        }
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as f:
                json.dump(document, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            msg = f"Failed to write entry index: {e}"
            raise CryptoIOError(msg, operation="write") from e
