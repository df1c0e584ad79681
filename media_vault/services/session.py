"""
Unlocked vault session.

Carries the data key and the activity callback to every component that needs
cryptographic access, instead of keeping them in module-level state.
"""

from typing import Self

import structlog

from media_vault.core.streams import ActivityCallback
from media_vault.crypto.key_provider import KeyMaterial
from media_vault.exceptions import VaultLockedError

logger = structlog.get_logger(__name__)


class VaultSession:
    """
    One unlocked period of the vault.

    Created on unlock; ``lock()`` destroys the key material. Streams opened
    before the lock keep working until closed, new ones cannot be opened.
    """

    def __init__(
        self,
        key_material: KeyMaterial,
        *,
        on_activity: ActivityCallback | None = None,
    ) -> None:
        """
        Args:
            key_material: Unlocked data key, owned by the session from now on.
            on_activity: Called whenever vault data is read or written, so an
                external inactivity timer can be reset.
        """
        self._key_material = key_material
        self._on_activity = on_activity

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *_: object) -> None:
        self.lock()

    @property
    def is_unlocked(self) -> bool:
        return not self._key_material.is_destroyed

    @property
    def key_material(self) -> KeyMaterial:
        """
        Raises:
            VaultLockedError: If the session has been locked.
        """
        if self._key_material.is_destroyed:
            raise VaultLockedError()
        return self._key_material

    @property
    def activity_callback(self) -> ActivityCallback:
        """Callback to hand to stream adapters."""
        return self.notify_activity

    def notify_activity(self) -> None:
        """Report that the vault is in use."""
        if self._on_activity is not None:
            self._on_activity()

    def lock(self) -> None:
        """Destroy the key material. Idempotent."""
        if self._key_material.is_destroyed:
            return
        self._key_material.destroy()
        logger.info("Vault session locked")
