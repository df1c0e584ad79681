"""
Cryptographic operations for the media vault.

This module provides:
- AES-256-GCM streaming encryption and verified decryption of blobs
- Forward-only seeking that keeps the authentication state intact
- Password-wrapped data key management
- Secure memory handling
"""

from media_vault.crypto.codec import (
    DecryptingReader,
    EncryptingWriter,
    open_decrypting_source,
    open_encrypting_sink,
)
from media_vault.crypto.key_provider import KeyMaterial, KeyMaterialProvider
from media_vault.crypto.secure_bytes import SecureBytes
from media_vault.crypto.seek import DecryptingStreamHandle

__all__ = [
    "SecureBytes",
    "KeyMaterial",
    "KeyMaterialProvider",
    "EncryptingWriter",
    "DecryptingReader",
    "DecryptingStreamHandle",
    "open_encrypting_sink",
    "open_decrypting_source",
]
