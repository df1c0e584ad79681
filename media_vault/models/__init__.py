"""
Domain models for the media vault.

These are immutable (frozen) dataclasses representing the core domain concepts.
"""

from media_vault.models.entry import MediaKind, VaultEntry

__all__ = [
    "MediaKind",
    "VaultEntry",
]
