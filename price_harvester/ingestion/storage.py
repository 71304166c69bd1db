"""
Upload Storage Module
=====================

Provides abstract and concrete implementations for storing feed files
pushed by merchants. The fetcher reads the newest upload for UPLOAD feeds.
"""

from __future__ import annotations

import gzip
import hashlib
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from uuid import UUID

from price_harvester.core.schema import utc_now


@dataclass
class UploadMetadata:
    """Metadata about a stored upload."""

    feed_id: UUID
    filename: str
    content_hash: str
    size_bytes: int
    uploaded_at: datetime
    file_path: str


class UploadStorage(ABC):
    """
    Abstract base class for pushed feed files.

    Implementations keep every upload; the newest one is what a run reads.
    """

    @abstractmethod
    def save_upload(self, feed_id: UUID, filename: str, content: bytes) -> UploadMetadata:
        """
        Store a pushed feed file.

        Args:
            feed_id: Feed the file belongs to
            filename: Original file name
            content: Raw file bytes

        Returns:
            UploadMetadata with storage details
        """
        pass

    @abstractmethod
    def latest_upload(self, feed_id: UUID) -> UploadMetadata | None:
        """
        Find the most recent upload for a feed.

        Args:
            feed_id: Feed UUID

        Returns:
            UploadMetadata if any upload exists, None otherwise
        """
        pass

    @abstractmethod
    def read(self, metadata: UploadMetadata) -> bytes:
        """
        Read the raw bytes of an upload.

        Args:
            metadata: Upload to read

        Returns:
            Raw content bytes
        """
        pass


class LocalUploadStorage(UploadStorage):
    """
    Local filesystem storage for uploads.

    Directory structure:
        {base_path}/{feed_id}/{YYYYmmddTHHMMSSffffff}__{filename}.gz
    """

    def __init__(self, base_path: str | Path) -> None:
        """
        Initialize local upload storage.

        Args:
            base_path: Base directory for uploads
        """
        self.base_path = Path(base_path).expanduser().resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _feed_dir(self, feed_id: UUID) -> Path:
        return self.base_path / str(feed_id)

    def save_upload(self, feed_id: UUID, filename: str, content: bytes) -> UploadMetadata:
        """Save an upload, compressed, under the feed's directory."""
        uploaded_at = utc_now()
        safe_name = Path(filename).name or "upload"
        file_path = self._feed_dir(feed_id) / (
            f"{uploaded_at.strftime('%Y%m%dT%H%M%S%f')}__{safe_name}.gz"
        )
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with open(file_path, "wb") as f:
            f.write(gzip.compress(content, compresslevel=6))

        return UploadMetadata(
            feed_id=feed_id,
            filename=safe_name,
            content_hash=hashlib.sha256(content).hexdigest(),
            size_bytes=len(content),
            uploaded_at=uploaded_at,
            file_path=str(file_path),
        )

    def latest_upload(self, feed_id: UUID) -> UploadMetadata | None:
        """Return the newest upload by timestamp prefix."""
        feed_dir = self._feed_dir(feed_id)
        if not feed_dir.exists():
            return None

        files = sorted(p for p in feed_dir.iterdir() if p.name.endswith(".gz"))
        if not files:
            return None

        latest = files[-1]
        stamp, _, rest = latest.name.partition("__")
        content = gzip.decompress(latest.read_bytes())
        return UploadMetadata(
            feed_id=feed_id,
            filename=rest[: -len(".gz")],
            content_hash=hashlib.sha256(content).hexdigest(),
            size_bytes=len(content),
            uploaded_at=datetime.strptime(stamp, "%Y%m%dT%H%M%S%f"),
            file_path=str(latest),
        )

    def read(self, metadata: UploadMetadata) -> bytes:
        """Read and decompress an upload."""
        with open(metadata.file_path, "rb") as f:
            return gzip.decompress(f.read())


def get_default_storage(base_path: str | None = None) -> LocalUploadStorage:
    """
    Get a storage instance.

    Uses the given path, the UPLOAD_STORAGE_PATH environment variable, or
    ~/.price_harvester/uploads.
    """
    storage_path = base_path or os.environ.get(
        "UPLOAD_STORAGE_PATH", "~/.price_harvester/uploads"
    )
    return LocalUploadStorage(storage_path)
