"""
On-disk storage for ciphertext blobs.

Blobs live in a single directory as ``<entry_id>.blob``. New blobs are
written to a ``.part`` file and renamed into place on commit; deletions
rename the blob to ``.deleting`` first so they can be rolled back.
"""

import os
from collections.abc import Iterable
from pathlib import Path
from typing import BinaryIO

import structlog

from media_vault.exceptions import CryptoIOError

logger = structlog.get_logger(__name__)

BLOB_SUFFIX = ".blob"
PART_SUFFIX = ".part"
DELETING_SUFFIX = ".deleting"


class BlobStore:
    """
    Ciphertext blob directory.

    Locations are bare blob names; they are resolved against the store
    directory and never contain path separators.
    """

    def __init__(self, directory: Path) -> None:
        """
        Args:
            directory: Directory holding the blobs. Created on first write.
        """
        self._directory = directory

    @staticmethod
    def location_for(entry_id: str) -> str:
        return f"{entry_id}{BLOB_SUFFIX}"

    def exists(self, location: str) -> bool:
        return self._path(location).exists()

    def open_write(self, location: str) -> BinaryIO:
        """
        Open the staging file for a new blob.

        Raises:
            CryptoIOError: If the file cannot be created.
        """
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            return self._staging_path(location, PART_SUFFIX).open("xb")
        except OSError as e:
            msg = f"Failed to create blob: {e}"
            raise CryptoIOError(msg, operation="write") from e

    def commit(self, location: str) -> None:
        """
        Move a fully written staging file into place.

        Raises:
            CryptoIOError: If the rename fails.
        """
        try:
            os.replace(self._staging_path(location, PART_SUFFIX), self._path(location))
        except OSError as e:
            msg = f"Failed to commit blob: {e}"
            raise CryptoIOError(msg, operation="write") from e

    def discard(self, location: str) -> None:
        """Remove a blob and its staging file. Failures are logged, not raised."""
        for path in (self._staging_path(location, PART_SUFFIX), self._path(location)):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Failed to discard blob file", location=location, error=str(e))

    def open_read(self, location: str) -> BinaryIO:
        """
        Open a committed blob for reading.

        Raises:
            CryptoIOError: If the blob is missing or unreadable.
        """
        try:
            return self._path(location).open("rb")
        except OSError as e:
            msg = f"Failed to open blob: {e}"
            raise CryptoIOError(msg, operation="read") from e

    def stage_removal(self, location: str) -> bool:
        """
        Rename a blob out of the way ahead of deleting its record.

        Returns:
            False if the blob was already gone.

        Raises:
            CryptoIOError: If the rename fails.
        """
        try:
            os.replace(self._path(location), self._staging_path(location, DELETING_SUFFIX))
        except FileNotFoundError:
            return False
        except OSError as e:
            msg = f"Failed to remove blob: {e}"
            raise CryptoIOError(msg, operation="delete") from e
        return True

    def restore(self, location: str) -> None:
        """
        Undo ``stage_removal``.

        Raises:
            CryptoIOError: If the rename fails.
        """
        try:
            os.replace(self._staging_path(location, DELETING_SUFFIX), self._path(location))
        except OSError as e:
            msg = f"Failed to restore blob: {e}"
            raise CryptoIOError(msg, operation="delete") from e

    def purge(self, location: str) -> None:
        """Delete a staged blob for good. Failures are logged; ``sweep`` retries later."""
        try:
            self._staging_path(location, DELETING_SUFFIX).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to purge blob", location=location, error=str(e))

    def sweep(self, known_locations: Iterable[str]) -> int:
        """
        Clean up after interrupted imports and deletions.

        Removes ``.part`` files of unfinished imports, finishes deletions
        whose record is gone and restores those whose record still exists.
        Committed blobs are never removed here, even when no record points
        to them; only ``delete_entry`` destroys an entry's ciphertext.

        Returns:
            Number of files removed.
        """
        if not self._directory.is_dir():
            return 0
        known = set(known_locations)
        removed = 0
        for path in self._directory.iterdir():
            if path.name.endswith(DELETING_SUFFIX):
                location = path.name.removesuffix(DELETING_SUFFIX)
                if location in known:
                    self.restore(location)
                    logger.warning("Restored interrupted deletion", location=location)
                    continue
            elif not path.name.endswith(PART_SUFFIX):
                if path.name.endswith(BLOB_SUFFIX) and path.name not in known:
                    logger.warning("Keeping blob without entry record", location=path.name)
                continue
            try:
                path.unlink()
            except OSError as e:
                logger.warning("Failed to sweep blob file", file=path.name, error=str(e))
                continue
            removed += 1
        if removed:
            logger.warning("Swept leftover blob files", count=removed)
        return removed

    def _path(self, location: str) -> Path:
        if not location.endswith(BLOB_SUFFIX) or Path(location).name != location:
            msg = f"Invalid blob location: {location!r}"
            raise ValueError(msg)
        return self._directory / location

    def _staging_path(self, location: str, suffix: str) -> Path:
        path = self._path(location)
        return path.with_name(path.name + suffix)
