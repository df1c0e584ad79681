"""
Vault key material.

A random 256-bit data key encrypts every blob. It is stored wrapped with
AES-GCM under a key-encryption key derived from the user's password with
bcrypt-pbkdf, so changing the password only rewraps the data key.

Keystore file (JSON)::

    {
        "version": 1,
        "kdf": {"name": "bcrypt-pbkdf", "rounds": 64, "salt": "<b64>"},
        "wrapped_key": {"nonce": "<b64>", "ciphertext": "<b64, includes tag>"}
    }
"""

import base64
import json
import os
import threading
from pathlib import Path
from typing import Self

import bcrypt
import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from media_vault.crypto.codec import KEY_SIZE, NONCE_SIZE
from media_vault.crypto.secure_bytes import SecureBytes
from media_vault.exceptions import (
    CryptoIOError,
    InvalidPasswordError,
    KeystoreError,
    VaultLockedError,
    VaultStateError,
)

logger = structlog.get_logger(__name__)

KEYSTORE_VERSION = 1
_KDF_NAME = "bcrypt-pbkdf"
_SALT_SIZE = 16
_WRAP_AAD = b"media-vault/keystore/v1"


class KeyMaterial:
    """
    The unlocked data key for one session.

    Shared read-only by every open stream; ``destroy()`` zeroes it.
    """

    __slots__ = ("_key", "_lock")

    def __init__(self, key: SecureBytes) -> None:
        if len(key) != KEY_SIZE:
            msg = f"Data key must be exactly {KEY_SIZE} bytes"
            raise ValueError(msg)
        self._key = key
        self._lock = threading.Lock()

    @classmethod
    def generate(cls) -> Self:
        return cls(SecureBytes.random(KEY_SIZE, lock=True))

    @property
    def key(self) -> SecureBytes:
        """
        Raises:
            VaultLockedError: If the key has been destroyed.
        """
        if self._key.is_cleared:
            raise VaultLockedError("Key material has been destroyed")
        return self._key

    @property
    def is_destroyed(self) -> bool:
        return self._key.is_cleared

    def key_bytes(self) -> bytes:
        """
        Copy of the raw key, taken atomically with respect to ``destroy()``.

        Raises:
            VaultLockedError: If the key has been destroyed.
        """
        with self._lock:
            if self._key.is_cleared:
                raise VaultLockedError("Key material has been destroyed")
            return bytes(self._key)

    def destroy(self) -> None:
        """Zero the key. Idempotent."""
        with self._lock:
            self._key.clear()

    def __repr__(self) -> str:
        state = "destroyed" if self.is_destroyed else "active"
        return f"KeyMaterial(<{state}>)"


class KeyMaterialProvider:
    """
    Creates, unlocks and rewraps the vault data key.
    """

    def __init__(self, keystore_path: Path, *, rounds: int = 64) -> None:
        """
        Args:
            keystore_path: Location of the keystore JSON file.
            rounds: bcrypt-pbkdf rounds for new keystores. Existing keystores
                keep the rounds they were written with.
        """
        if rounds <= 0:
            msg = "rounds must be positive"
            raise ValueError(msg)
        self._path = keystore_path
        self._rounds = rounds

    @property
    def is_initialized(self) -> bool:
        return self._path.exists()

    def create(self, password: SecureBytes) -> KeyMaterial:
        """
        Generate a new data key and store it wrapped under ``password``.

        Raises:
            VaultStateError: If a keystore already exists.
            CryptoIOError: If the keystore cannot be written.
        """
        if self.is_initialized:
            msg = "Vault already initialized"
            raise VaultStateError(msg, path=str(self._path))

        material = KeyMaterial.generate()
        self._write_keystore(self._wrap(material, password))
        logger.info("Keystore created", rounds=self._rounds)
        return material

    def unlock(self, password: SecureBytes) -> KeyMaterial:
        """
        Unwrap the data key with ``password``.

        Raises:
            VaultStateError: If no keystore exists.
            InvalidPasswordError: If the password is wrong.
            KeystoreError: If the keystore is malformed.
        """
        keystore = self._read_keystore()
        material = self._unwrap(keystore, password)
        logger.debug("Keystore unlocked")
        return material

    def change_password(self, old_password: SecureBytes, new_password: SecureBytes) -> None:
        """
        Rewrap the data key under ``new_password`` with a fresh salt.

        Blobs are untouched: the data key itself does not change.

        Raises:
            InvalidPasswordError: If ``old_password`` is wrong.
        """
        material = self._unwrap(self._read_keystore(), old_password)
        try:
            self._write_keystore(self._wrap(material, new_password))
        finally:
            material.destroy()
        logger.info("Keystore password changed")

    def _wrap(self, material: KeyMaterial, password: SecureBytes) -> dict:
        salt = os.urandom(_SALT_SIZE)
        nonce = os.urandom(NONCE_SIZE)
        with self._derive_kek(password, salt, self._rounds) as kek:
            ciphertext = AESGCM(bytes(kek)).encrypt(nonce, material.key_bytes(), _WRAP_AAD)
        return {
            "version": KEYSTORE_VERSION,
            "kdf": {"name": _KDF_NAME, "rounds": self._rounds, "salt": _b64(salt)},
            "wrapped_key": {"nonce": _b64(nonce), "ciphertext": _b64(ciphertext)},
        }

    def _unwrap(self, keystore: dict, password: SecureBytes) -> KeyMaterial:
        try:
            if keystore["version"] != KEYSTORE_VERSION:
                msg = f"Unsupported keystore version: {keystore['version']}"
                raise KeystoreError(msg)
            kdf = keystore["kdf"]
            if kdf["name"] != _KDF_NAME:
                msg = f"Unsupported key derivation: {kdf['name']}"
                raise KeystoreError(msg)
            rounds = int(kdf["rounds"])
            salt = base64.b64decode(kdf["salt"], validate=True)
            nonce = base64.b64decode(keystore["wrapped_key"]["nonce"], validate=True)
            ciphertext = base64.b64decode(keystore["wrapped_key"]["ciphertext"], validate=True)
        except (KeyError, TypeError, ValueError) as e:
            msg = f"Malformed keystore: {e}"
            raise KeystoreError(msg) from e
        if not salt or rounds <= 0:
            msg = "Keystore has an empty salt or non-positive rounds"
            raise KeystoreError(msg)

        with self._derive_kek(password, salt, rounds) as kek:
            try:
                raw = bytearray(AESGCM(bytes(kek)).decrypt(nonce, ciphertext, _WRAP_AAD))
            except InvalidTag:
                msg = "Invalid vault password"
                raise InvalidPasswordError(msg) from None
            except ValueError as e:
                msg = f"Malformed wrapped key: {e}"
                raise KeystoreError(msg) from e
        try:
            return KeyMaterial(SecureBytes(raw, lock=True))
        finally:
            raw[:] = bytes(len(raw))

    @staticmethod
    def _derive_kek(password: SecureBytes, salt: bytes, rounds: int) -> SecureBytes:
        if not password:
            msg = "Password must not be empty"
            raise ValueError(msg)
        return SecureBytes(
            bcrypt.kdf(
                password=bytes(password),
                salt=salt,
                desired_key_bytes=KEY_SIZE,
                rounds=rounds,
                ignore_few_rounds=True,
            )
        )

    def _read_keystore(self) -> dict:
        try:
            with self._path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            msg = "Vault not initialized"
            raise VaultStateError(msg, path=str(self._path)) from None
        except json.JSONDecodeError as e:
            msg = f"Keystore is not valid JSON: {e}"
            raise KeystoreError(msg) from e
        except OSError as e:
            msg = f"Failed to read keystore: {e}"
            raise CryptoIOError(msg, operation="read") from e
        if not isinstance(data, dict):
            msg = "Keystore must be a JSON object"
            raise KeystoreError(msg)
        return data

    def _write_keystore(self, keystore: dict) -> None:
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as f:
                json.dump(keystore, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            msg = f"Failed to write keystore: {e}"
            raise CryptoIOError(msg, operation="write") from e


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")
