"""
Vault entry domain models.
"""

import mimetypes
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Self


class MediaKind(StrEnum):
    """Kind of media stored in an entry."""

    PHOTO = "photo"
    VIDEO = "video"

    @classmethod
    def from_path(cls, path: Path | str) -> Self:
        """
        Infer the media kind from a filename's MIME type.

        Raises:
            ValueError: If the file is neither an image nor a video.
        """
        mime_type, _ = mimetypes.guess_type(str(path))
        match (mime_type or "").split("/", 1)[0]:
            case "image":
                return cls.PHOTO
            case "video":
                return cls.VIDEO
            case _:
                msg = f"Unsupported media type for {Path(path).name}: {mime_type}"
                raise ValueError(msg)


@dataclass(frozen=True, kw_only=True)
class VaultEntry:
    """
    A single stored, encrypted media item.

    Attributes:
        entry_id: Opaque unique identifier.
        ciphertext_location: Blob name inside the blob store. Only the entry
            manager resolves it; consumers get decrypted streams.
        plaintext_length: Original byte length.
        media_kind: Photo or video.
        created_at: Import time (UTC).
    """

    entry_id: str
    ciphertext_location: str = field(repr=False)
    plaintext_length: int
    media_kind: MediaKind
    created_at: datetime

    def __post_init__(self) -> None:
        if self.plaintext_length < 0:
            msg = "plaintext_length must be non-negative"
            raise ValueError(msg)

    def to_record(self) -> dict[str, Any]:
        """Serialize for the entry index."""
        return {
            "id": self.entry_id,
            "location": self.ciphertext_location,
            "length": self.plaintext_length,
            "kind": self.media_kind.value,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Self:
        """
        Build an entry from an index record.

        Raises:
            KeyError: If a field is missing.
            ValueError: If a field has an invalid value.
        """
        return cls(
            entry_id=record["id"],
            ciphertext_location=record["location"],
            plaintext_length=int(record["length"]),
            media_kind=MediaKind(record["kind"]),
            created_at=datetime.fromisoformat(record["created_at"]),
        )
