"""
Forward-only seeking over a decrypting reader.

GCM authentication is order dependent, so a seek is a read-and-discard
through the real decrypt path, never a jump of the underlying file cursor.
"""

from typing import Self

import structlog

from media_vault.core.streams import DEFAULT_CHUNK_SIZE, force_skip
from media_vault.crypto.codec import DecryptingReader
from media_vault.exceptions import InvalidOffsetError

logger = structlog.get_logger(__name__)


class DecryptingStreamHandle:
    """
    Consumer-facing stream for one vault entry.

    Exposes ``read``/``readinto``/``close`` plus forward-only ``skip`` and
    ``skip_to``. Owned by a single consumer; release it with ``close()`` or
    through the deferred-close scheduler.
    """

    def __init__(
        self,
        reader: DecryptingReader,
        *,
        entry_id: str | None = None,
        length: int | None = None,
        strict: bool = False,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        """
        Args:
            reader: Decrypting reader positioned anywhere in the blob.
            entry_id: Entry the stream belongs to, for logging.
            length: Expected plaintext length, when known.
            strict: Raise instead of returning a short skip count.
            chunk_size: Bytes discarded per step while skipping.
        """
        self._reader = reader
        self._entry_id = entry_id
        self._length = length
        self._strict = strict
        self._chunk_size = chunk_size

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else f"position={self.position}"
        return f"{self.__class__.__name__}(entry_id={self._entry_id!r}, {state})"

    @property
    def entry_id(self) -> str | None:
        return self._entry_id

    @property
    def length(self) -> int | None:
        """Plaintext length of the entry, if known."""
        return self._length

    @property
    def position(self) -> int:
        """Current plaintext offset."""
        return self._reader.position

    @property
    def verified(self) -> bool:
        return self._reader.verified

    @property
    def closed(self) -> bool:
        return self._reader.closed

    def read(self, size: int = -1, /) -> bytes:
        """Read up to ``size`` plaintext bytes. ``b""`` at end of stream."""
        return self._reader.read(size)

    def readinto(self, buffer: bytearray | memoryview, /) -> int:
        """Read into ``buffer`` and return the byte count, 0 at end of stream."""
        return self._reader.readinto(buffer)

    def skip(self, count: int) -> int:
        """
        Discard the next ``count`` plaintext bytes.

        Skips compose: ``skip(10)`` then ``skip(5)`` lands where ``skip(15)`` would.

        Returns:
            Bytes actually discarded. Short only at end of stream.

        Raises:
            InvalidOffsetError: In strict mode, when the stream ends early.
            AuthenticationFailure: If the skip reaches a tag that does not match.
        """
        start = self.position
        skipped = force_skip(self._reader, count, chunk_size=self._chunk_size)
        logger.debug("Skipped plaintext", entry_id=self._entry_id, start=start, skipped=skipped)
        if self._strict and skipped < count:
            msg = "Stream ended before requested offset"
            raise InvalidOffsetError(msg, offset=start + count, available=start + skipped)
        return skipped

    def skip_to(self, offset: int) -> int:
        """
        Advance to absolute plaintext ``offset``.

        Returns:
            Bytes discarded to get there, short if the stream ended first.

        Raises:
            InvalidOffsetError: If ``offset`` is behind the cursor, or in strict
                mode when the stream ends before ``offset``.
        """
        if offset < self.position:
            msg = "Cannot seek backwards in a decrypting stream"
            raise InvalidOffsetError(msg, offset=offset, available=self.position)
        return self.skip(offset - self.position)

    def close(self) -> None:
        """Close the reader and its blob. Idempotent."""
        self._reader.close()
