"""Zeroable byte buffer for passwords and key material."""

import ctypes
import ctypes.util
import hmac
import os
import platform
import warnings
from typing import Self

_libc: ctypes.CDLL | None = None

if platform.system() in ("Linux", "Darwin"):
    try:
        _libc = ctypes.CDLL(ctypes.util.find_library("c"), use_errno=True)
        _libc.mlock.argtypes = [ctypes.c_void_p, ctypes.c_size_t]
        _libc.mlock.restype = ctypes.c_int
        _libc.munlock.argtypes = [ctypes.c_void_p, ctypes.c_size_t]
        _libc.munlock.restype = ctypes.c_int
    except (OSError, AttributeError, TypeError):
        _libc = None


def _address_of(data: bytearray) -> int:
    return ctypes.addressof((ctypes.c_char * len(data)).from_buffer(data))


def _secure_zero(data: bytearray) -> None:
    if not data:
        return
    try:
        ctypes.memset(_address_of(data), 0, len(data))
    except Exception as exc:
        warnings.warn(f"ctypes.memset failed, zeroing byte by byte: {exc}", RuntimeWarning)
        for i in range(len(data)):
            data[i] = 0


def _mlock(data: bytearray) -> bool:
    if _libc is None or not data:
        return False
    try:
        return _libc.mlock(_address_of(data), len(data)) == 0
    except Exception:
        return False


def _munlock(data: bytearray) -> None:
    if _libc is None or not data:
        return
    try:
        _libc.munlock(_address_of(data), len(data))
    except Exception:
        pass


class SecureBytes:
    """
    Byte buffer that is zeroed when cleared, garbage collected or used as a context manager.

    Holds passwords and the vault data key. Converting to ``bytes`` makes an
    unmanaged copy, so do it only at the point a cipher needs the raw key.
    """

    __slots__ = ("_data", "_cleared", "_locked")

    def __init__(self, data: bytes | bytearray, *, lock: bool = False) -> None:
        self._data = bytearray(data)
        self._cleared = False
        self._locked = lock and _mlock(self._data)

    @classmethod
    def random(cls, size: int, *, lock: bool = False) -> Self:
        """Create a buffer of ``size`` bytes from the OS CSPRNG."""
        raw = bytearray(os.urandom(size))
        try:
            return cls(raw, lock=lock)
        finally:
            _secure_zero(raw)

    @classmethod
    def from_string(cls, s: str, encoding: str = "utf-8", *, lock: bool = False) -> Self:
        """Create from a string, zeroing the intermediate encoding."""
        encoded = bytearray(s, encoding)
        try:
            return cls(encoded, lock=lock)
        finally:
            _secure_zero(encoded)

    def __del__(self) -> None:
        self.clear()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *_: object) -> None:
        self.clear()

    def clear(self) -> None:
        """Zero memory and unlock. Idempotent."""
        if self._cleared:
            return
        # Mark first so no reader copies a half-zeroed buffer.
        self._cleared = True
        _secure_zero(self._data)
        if self._locked:
            _munlock(self._data)
            self._locked = False

    def __bytes__(self) -> bytes:
        self._check_cleared()
        return bytes(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __bool__(self) -> bool:
        return not self._cleared and len(self._data) > 0

    def __repr__(self) -> str:
        if self._cleared:
            return "SecureBytes(<cleared>)"
        return f"SecureBytes(<{len(self._data)} bytes>)"

    def __eq__(self, other: object) -> bool:
        """Constant-time comparison."""
        if isinstance(other, SecureBytes):
            if self._cleared or other._cleared:
                return False
            return hmac.compare_digest(self._data, other._data)
        if isinstance(other, (bytes, bytearray)):
            return not self._cleared and hmac.compare_digest(self._data, other)
        return NotImplemented

    def __hash__(self) -> int:
        raise TypeError("SecureBytes is not hashable")

    @property
    def is_cleared(self) -> bool:
        return self._cleared

    @property
    def is_locked(self) -> bool:
        return self._locked

    def _check_cleared(self) -> None:
        if self._cleared:
            raise RuntimeError("SecureBytes has been cleared")
