"""Tests for local artifact storage."""

import pytest

from lemona_export.exceptions import StorageError
from lemona_export.services.storage_service import (
    LocalStorageService,
    export_storage_key,
    get_storage_service,
)


class TestLocalStorageService:
    def test_factory_picks_local(self, settings):
        assert isinstance(get_storage_service(settings), LocalStorageService)

    def test_storage_key(self):
        assert export_storage_key("abc") == "exports/abc.mp4"

    @pytest.mark.asyncio
    async def test_upload_and_url(self, settings, clip_file):
        storage = LocalStorageService(settings)

        url = await storage.upload_file(str(clip_file), "exports/job.mp4", "video/mp4")

        assert url == "http://localhost:8000/api/export/files/exports/job.mp4"
        assert await storage.get_signed_url("exports/job.mp4") == url
        assert storage.file_exists("exports/job.mp4")
        assert storage.get_file_path("exports/job.mp4").read_bytes() == clip_file.read_bytes()

    @pytest.mark.asyncio
    async def test_upload_missing_file(self, settings, temp_output_dir):
        storage = LocalStorageService(settings)
        with pytest.raises(StorageError):
            await storage.upload_file(str(temp_output_dir / "missing.mp4"), "exports/job.mp4")

    def test_delete(self, settings, clip_file):
        storage = LocalStorageService(settings)
        path = storage.get_file_path("exports/old.mp4")
        path.write_bytes(b"x")

        assert storage.delete_file("exports/old.mp4") is True
        assert storage.delete_file("exports/old.mp4") is False

    def test_key_cannot_escape_root(self, settings):
        storage = LocalStorageService(settings)
        with pytest.raises(StorageError):
            storage.get_file_path("../outside.mp4")
