"""
Media vault configuration.
"""

from dataclasses import dataclass


@dataclass(frozen=True, kw_only=True)
class VaultConfig:
    """
    Attributes:
        chunk_size: Number of bytes read per step when importing, decrypting and skipping.
        kdf_rounds: bcrypt-pbkdf rounds used to derive the key-encryption key.
        close_workers: Number of background threads releasing stream handles.
        close_drain_timeout: Seconds to wait for pending closes on shutdown.
        strict_offsets: Reject start offsets past the end of an entry instead of
            returning a short skip.
    """

    chunk_size: int = 64 * 1024
    kdf_rounds: int = 64
    close_workers: int = 2
    close_drain_timeout: float = 10.0
    strict_offsets: bool = False

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            msg = "chunk_size must be positive"
            raise ValueError(msg)
        if self.kdf_rounds <= 0:
            msg = "kdf_rounds must be positive"
            raise ValueError(msg)
        if self.close_workers <= 0:
            msg = "close_workers must be positive"
            raise ValueError(msg)
        if self.close_drain_timeout <= 0:
            msg = "close_drain_timeout must be positive"
            raise ValueError(msg)
