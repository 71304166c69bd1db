"""Tests for upload storage."""

import gzip
import hashlib
from pathlib import Path
from uuid import uuid4

from price_harvester.ingestion.storage import LocalUploadStorage, get_default_storage


class TestLocalUploadStorage:
    """Tests for LocalUploadStorage."""

    def test_save_and_read(self, tmp_path) -> None:
        """Uploads are stored gzipped and read back intact."""
        storage = LocalUploadStorage(tmp_path)
        feed_id = uuid4()
        content = b"name,url,price\nA,https://shop.example.com/a,1\n"

        metadata = storage.save_upload(feed_id, "products.csv", content)

        path = Path(metadata.file_path)
        assert path.parent == tmp_path.resolve() / str(feed_id)
        assert path.name.endswith("__products.csv.gz")
        assert gzip.decompress(path.read_bytes()) == content
        assert metadata.content_hash == hashlib.sha256(content).hexdigest()
        assert metadata.size_bytes == len(content)
        assert storage.read(metadata) == content

    def test_filename_is_sanitized(self, tmp_path) -> None:
        """Directory parts of the client filename are dropped."""
        storage = LocalUploadStorage(tmp_path)

        metadata = storage.save_upload(uuid4(), "../../etc/passwd", b"x")

        assert metadata.filename == "passwd"
        assert Path(metadata.file_path).resolve().is_relative_to(tmp_path.resolve())

    def test_latest_upload(self, tmp_path) -> None:
        """The newest file wins."""
        storage = LocalUploadStorage(tmp_path)
        feed_id = uuid4()
        storage.save_upload(feed_id, "first.csv", b"one")
        second = storage.save_upload(feed_id, "second.csv", b"two")

        latest = storage.latest_upload(feed_id)

        assert latest.filename == "second.csv"
        assert latest.uploaded_at == second.uploaded_at
        assert storage.read(latest) == b"two"

    def test_no_uploads(self, tmp_path) -> None:
        """Unknown feeds have no latest upload."""
        assert LocalUploadStorage(tmp_path).latest_upload(uuid4()) is None

    def test_default_storage_from_env(self, tmp_path, monkeypatch) -> None:
        """UPLOAD_STORAGE_PATH picks the base directory."""
        monkeypatch.setenv("UPLOAD_STORAGE_PATH", str(tmp_path / "uploads"))

        storage = get_default_storage()

        assert storage.base_path == (tmp_path / "uploads").resolve()
        assert storage.base_path.is_dir()
