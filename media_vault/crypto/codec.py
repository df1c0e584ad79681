"""
AES-256-GCM streaming codec for vault blobs.

Blob layout::

    [12-byte nonce][ciphertext, same length as plaintext][16-byte tag]

A single GCM computation covers the whole blob, so integrity is only known
once the stream has been consumed to the end. The decrypting side therefore
always holds back the last TAG_SIZE ciphertext bytes: until the source is
exhausted it cannot tell which bytes are the tag.
"""

import os
from types import TracebackType
from typing import NoReturn, Self

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from media_vault.core.streams import DEFAULT_CHUNK_SIZE, ActivityCallback, ByteSink, ByteSource
from media_vault.crypto.secure_bytes import SecureBytes
from media_vault.exceptions import AuthenticationFailure, CryptoIOError

logger = structlog.get_logger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
BLOB_OVERHEAD = NONCE_SIZE + TAG_SIZE


def _new_cipher(key: SecureBytes | bytes, nonce: bytes) -> Cipher:
    if len(key) != KEY_SIZE:
        msg = f"Key must be exactly {KEY_SIZE} bytes"
        raise ValueError(msg)
    return Cipher(algorithms.AES(bytes(key)), modes.GCM(nonce))


class EncryptingWriter:
    """
    Encrypts everything written to it into a blob on ``sink``.

    The nonce is written immediately, ciphertext on every ``write`` and the
    tag on ``close``. Used as a context manager, an exception inside the block
    aborts the blob instead of finalizing it.
    """

    def __init__(
        self,
        sink: ByteSink,
        key: SecureBytes | bytes,
        *,
        associated_data: bytes | None = None,
        on_activity: ActivityCallback | None = None,
        nonce: bytes | None = None,
    ) -> None:
        """
        Args:
            sink: Destination for the blob. Closed when the writer closes.
            key: 32-byte data key.
            associated_data: Authenticated but unstored context bytes.
            on_activity: Called after every successful write.
            nonce: Fixed nonce, for known-answer tests only. Random by default.

        Raises:
            CryptoIOError: If the nonce cannot be written.
        """
        nonce = os.urandom(NONCE_SIZE) if nonce is None else nonce
        if len(nonce) != NONCE_SIZE:
            msg = f"Nonce must be exactly {NONCE_SIZE} bytes"
            raise ValueError(msg)

        self._sink = sink
        self._encryptor = _new_cipher(key, nonce).encryptor()
        if associated_data:
            self._encryptor.authenticate_additional_data(associated_data)
        self._on_activity = on_activity
        self._bytes_written = 0
        self._closed = False

        self._write_to_sink(nonce)

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is None:
            self.close()
        else:
            self.abort()

    @property
    def bytes_written(self) -> int:
        """Plaintext bytes accepted so far."""
        return self._bytes_written

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, data: bytes, /) -> int:
        """
        Encrypt ``data`` and write it to the sink.

        Returns:
            Number of plaintext bytes accepted.

        Raises:
            CryptoIOError: If the sink write fails.
        """
        if self._closed:
            msg = "I/O operation on closed writer"
            raise ValueError(msg)
        if not data:
            return 0
        self._write_to_sink(self._encryptor.update(data))
        self._bytes_written += len(data)
        if self._on_activity is not None:
            self._on_activity()
        return len(data)

    def close(self) -> None:
        """
        Finalize the GCM computation, append the tag and close the sink. Idempotent.

        Raises:
            CryptoIOError: If the tag cannot be written or the sink fails to close.
        """
        if self._closed:
            return
        self._closed = True
        try:
            self._write_to_sink(self._encryptor.finalize() + self._encryptor.tag)
        finally:
            self._close_sink()
        logger.debug("Blob finalized", length=self._bytes_written)

    def abort(self) -> None:
        """Close the sink without writing a tag. The partial blob will never authenticate."""
        if self._closed:
            return
        self._closed = True
        self._close_sink()
        logger.debug("Blob aborted", length=self._bytes_written)

    def _write_to_sink(self, data: bytes) -> None:
        try:
            self._sink.write(data)
        except OSError as e:
            msg = f"Failed to write ciphertext: {e}"
            raise CryptoIOError(msg, operation="write") from e

    def _close_sink(self) -> None:
        try:
            self._sink.close()
        except OSError as e:
            msg = f"Failed to close ciphertext sink: {e}"
            raise CryptoIOError(msg, operation="close") from e


class DecryptingReader:
    """
    Sequential plaintext view over a blob.

    Plaintext is released as ciphertext arrives, except that the final
    plaintext bytes of the stream are only returned after the tag has been
    verified. Once verification fails the reader is unusable.

    Not thread-safe: one consumer owns the cursor.
    """

    def __init__(
        self,
        source: ByteSource,
        key: SecureBytes | bytes,
        *,
        associated_data: bytes | None = None,
        on_activity: ActivityCallback | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        """
        Args:
            source: Blob bytes, positioned at the nonce. Closed when the reader closes.
            key: 32-byte data key.
            associated_data: Must match what the blob was written with.
            on_activity: Called after every read that returned data.
            chunk_size: Ciphertext bytes pulled from the source per step.

        Raises:
            AuthenticationFailure: If the source is too short to hold a nonce.
            CryptoIOError: If reading the nonce fails.
        """
        if chunk_size <= 0:
            msg = "chunk_size must be positive"
            raise ValueError(msg)
        if len(key) != KEY_SIZE:
            msg = f"Key must be exactly {KEY_SIZE} bytes"
            raise ValueError(msg)

        self._source = source
        self._chunk_size = chunk_size
        self._on_activity = on_activity
        self._pending = bytearray()
        self._plaintext = bytearray()
        self._position = 0
        self._eof = False
        self._verified = False
        self._failed = False
        self._closed = False

        nonce = self._read_nonce()
        self._decryptor = _new_cipher(key, nonce).decryptor()
        if associated_data:
            self._decryptor.authenticate_additional_data(associated_data)

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    @property
    def position(self) -> int:
        """Plaintext bytes consumed so far (read or skipped)."""
        return self._position

    @property
    def verified(self) -> bool:
        """True once the whole blob has been read and the tag matched."""
        return self._verified

    @property
    def closed(self) -> bool:
        return self._closed

    def read(self, size: int = -1, /) -> bytes:
        """
        Read up to ``size`` plaintext bytes, or everything left if ``size`` is negative.

        Returns:
            Plaintext, ``b""`` at the verified end of stream.

        Raises:
            AuthenticationFailure: If the tag does not match or the blob is truncated.
            CryptoIOError: If the source read fails.
        """
        self._check_readable()
        if size == 0:
            return b""
        if size is None or size < 0:
            while not self._eof:
                self._fill()
            size = len(self._plaintext)
        else:
            # Keep one byte in hand so the stream's last byte waits for the tag.
            while not self._eof and len(self._plaintext) <= size:
                self._fill()

        data = bytes(self._plaintext[:size])
        del self._plaintext[:size]
        self._position += len(data)
        if data and self._on_activity is not None:
            self._on_activity()
        return data

    def readinto(self, buffer: bytearray | memoryview, /) -> int:
        """
        Read plaintext into ``buffer``.

        Returns:
            Number of bytes stored, 0 at end of stream.
        """
        view = memoryview(buffer).cast("B")
        data = self.read(len(view))
        view[: len(data)] = data
        return len(data)

    def close(self) -> None:
        """Drop buffered state and close the source. Idempotent. Does not verify the tag."""
        if self._closed:
            return
        self._closed = True
        self._pending.clear()
        self._plaintext.clear()
        try:
            self._source.close()
        except OSError as e:
            msg = f"Failed to close ciphertext source: {e}"
            raise CryptoIOError(msg, operation="close") from e

    def _read_nonce(self) -> bytes:
        nonce = b""
        while len(nonce) < NONCE_SIZE:
            data = self._read_source(NONCE_SIZE - len(nonce))
            if not data:
                msg = "Blob too short to hold a nonce"
                raise AuthenticationFailure(msg, length=len(nonce))
            nonce += data
        return nonce

    def _read_source(self, size: int) -> bytes:
        try:
            return self._source.read(size)
        except OSError as e:
            msg = f"Failed to read ciphertext: {e}"
            raise CryptoIOError(msg, operation="read") from e

    def _fill(self) -> None:
        chunk = self._read_source(self._chunk_size)
        if not chunk:
            self._finalize()
            return
        self._pending += chunk
        releasable = len(self._pending) - TAG_SIZE
        if releasable > 0:
            self._plaintext += self._decryptor.update(bytes(self._pending[:releasable]))
            del self._pending[:releasable]

    def _finalize(self) -> None:
        if len(self._pending) < TAG_SIZE:
            self._fail("Ciphertext truncated before authentication tag")
        try:
            self._plaintext += self._decryptor.finalize_with_tag(bytes(self._pending))
        except InvalidTag:
            self._fail("Authentication tag mismatch")
        self._pending.clear()
        self._eof = True
        self._verified = True
        logger.debug("Blob authenticated", length=self._position + len(self._plaintext))

    def _fail(self, message: str) -> NoReturn:
        self._failed = True
        self._eof = True
        self._plaintext.clear()
        self._pending.clear()
        logger.warning("Blob failed authentication", reason=message, position=self._position)
        raise AuthenticationFailure(message, position=self._position)

    def _check_readable(self) -> None:
        if self._closed:
            msg = "I/O operation on closed reader"
            raise ValueError(msg)
        if self._failed:
            msg = "Blob failed authentication"
            raise AuthenticationFailure(msg, position=self._position)


def open_encrypting_sink(
    destination: ByteSink,
    key: SecureBytes | bytes,
    *,
    associated_data: bytes | None = None,
    on_activity: ActivityCallback | None = None,
    nonce: bytes | None = None,
) -> EncryptingWriter:
    """
    Start a new blob on ``destination``.

    Raises:
        CryptoIOError: If the destination cannot be written.
    """
    return EncryptingWriter(
        destination,
        key,
        associated_data=associated_data,
        on_activity=on_activity,
        nonce=nonce,
    )


def open_decrypting_source(
    source: ByteSource,
    key: SecureBytes | bytes,
    *,
    associated_data: bytes | None = None,
    on_activity: ActivityCallback | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> DecryptingReader:
    """
    Open a blob for sequential verified decryption.

    The caller still owns ``source`` if this raises.

    Raises:
        AuthenticationFailure: If the blob has no complete nonce.
        CryptoIOError: If the source cannot be read.
    """
    return DecryptingReader(
        source,
        key,
        associated_data=associated_data,
        on_activity=on_activity,
        chunk_size=chunk_size,
    )
