"""Document data models."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePath
from typing import Any, Dict, Optional


class ContentType(str, Enum):
    """Kind of source media a document's text was extracted from."""
    DOCUMENT = "document"
    AUDIO = "audio"
    WEB = "web"
    IMAGE = "image"
    TEXT = "text"

    @classmethod
    def from_filename(cls, filename: str) -> "ContentType":
        """Infer the content type from a file extension (unknown → text)."""
        ext = PurePath(filename).suffix.lower().lstrip(".")
        return _EXTENSION_TYPES.get(ext, cls.TEXT)


_EXTENSION_TYPES = {
    "mp3": ContentType.AUDIO,
    "m4a": ContentType.AUDIO,
    "wav": ContentType.AUDIO,
    "pdf": ContentType.DOCUMENT,
    "md": ContentType.DOCUMENT,
    "txt": ContentType.TEXT,
    "jpg": ContentType.IMAGE,
    "jpeg": ContentType.IMAGE,
    "png": ContentType.IMAGE,
    "html": ContentType.WEB,
    "htm": ContentType.WEB,
}


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class Document:
    """A piece of ingested personal content, owned by a single user."""
    document_id: str
    owner_id: str
    name: str
    content_type: ContentType
    text: str
    content_timestamp: datetime  # When the content was authored/published
    ingested_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.content_type = ContentType(self.content_type)
        self.content_timestamp = ensure_utc(self.content_timestamp)
        self.ingested_at = ensure_utc(self.ingested_at)

    @property
    def source_url(self) -> Optional[str]:
        return self.metadata.get("source_url") or self.metadata.get("url")
