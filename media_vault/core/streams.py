"""
Stream capability interfaces and helpers shared by the codec and the vault.

Anything with ``read`` and ``close`` (files, ``io.BytesIO``, decrypting readers)
is a ByteSource; anything with ``write`` and ``close`` is a ByteSink.
"""

from collections.abc import Callable
from typing import Protocol, runtime_checkable

ActivityCallback = Callable[[], None]

DEFAULT_CHUNK_SIZE = 64 * 1024


@runtime_checkable
class Closeable(Protocol):
    """Anything that holds a resource released by ``close()``."""

    def close(self) -> None:
        """Release the underlying resource."""
        ...


@runtime_checkable
class ByteSource(Protocol):
    """Sequential byte source. ``read`` returns ``b""`` at end of stream."""

    def read(self, size: int = -1, /) -> bytes:
        """Read up to ``size`` bytes."""
        ...

    def close(self) -> None:
        """Release the underlying resource."""
        ...


@runtime_checkable
class ByteSink(Protocol):
    """Sequential byte sink."""

    def write(self, data: bytes, /) -> int:
        """Write ``data`` and return the number of bytes accepted."""
        ...

    def close(self) -> None:
        """Release the underlying resource."""
        ...


def force_skip(source: ByteSource, count: int, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> int:
    """
    Skip ``count`` bytes by reading and discarding them.

    Authenticated decryption must see every ciphertext byte, so the underlying
    stream is never seeked. Reading stops early on the first empty read.

    Args:
        source: Stream to consume.
        count: Number of bytes to discard.
        chunk_size: Maximum bytes read per step.

    Returns:
        Number of bytes actually discarded. Less than ``count`` means the
        stream ended.

    Raises:
        ValueError: If count is negative or chunk_size is not positive.
    """
    if count < 0:
        msg = "'count' must be non-negative"
        raise ValueError(msg)
    if chunk_size <= 0:
        msg = "'chunk_size' must be a strictly positive integer"
        raise ValueError(msg)

    skipped = 0
    while skipped < count:
        data = source.read(min(chunk_size, count - skipped))
        if not data:
            break
        skipped += len(data)
    return skipped
