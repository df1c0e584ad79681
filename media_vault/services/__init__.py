"""
Business logic services for the media vault.
"""

from media_vault.services.entry_service import VaultEntryManager
from media_vault.services.session import VaultSession

__all__ = [
    "VaultEntryManager",
    "VaultSession",
]
