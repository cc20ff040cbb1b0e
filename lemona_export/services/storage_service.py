"""Durable storage for finished export artifacts."""

import asyncio
import logging
import shutil
from datetime import timedelta
from pathlib import Path
from typing import Protocol

from lemona_export.config import Settings, get_settings
from lemona_export.exceptions import StorageError

logger = logging.getLogger(__name__)

VIDEO_CONTENT_TYPE = "video/mp4"


def export_storage_key(job_id: str) -> str:
    return f"exports/{job_id}.mp4"


class StorageService(Protocol):
    async def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str: ...

    async def get_signed_url(self, storage_key: str, expiration_hours: int = 24) -> str: ...

    def delete_file(self, storage_key: str) -> bool: ...


class LocalStorageService:
    """Local file storage for development without GCS."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.base_path = Path(self.settings.local_storage_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, storage_key: str) -> Path:
        full_path = (self.base_path / storage_key).resolve()
        if self.base_path.resolve() not in full_path.parents:
            raise StorageError(f"Storage key escapes storage root: {storage_key}")
        full_path.parent.mkdir(parents=True, exist_ok=True)
        return full_path

    def get_public_url(self, storage_key: str) -> str:
        """Get URL for accessing the file through the export API."""
        return f"{self.settings.public_base_url.rstrip('/')}/api/export/files/{storage_key}"

    def get_file_path(self, storage_key: str) -> Path:
        return self._get_full_path(storage_key)

    async def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str:
        """Copy a local file into the storage directory."""
        full_path = self._get_full_path(storage_key)
        try:
            await asyncio.to_thread(shutil.copyfile, local_path, full_path)
        except OSError as e:
            raise StorageError(f"Failed to store {storage_key}: {e}") from e
        return self.get_public_url(storage_key)

    async def get_signed_url(self, storage_key: str, expiration_hours: int = 24) -> str:
        """Local files are served unsigned."""
        return self.get_public_url(storage_key)

    def delete_file(self, storage_key: str) -> bool:
        full_path = self._get_full_path(storage_key)
        if full_path.exists():
            full_path.unlink()
            return True
        return False

    def file_exists(self, storage_key: str) -> bool:
        return self._get_full_path(storage_key).exists()


class GCSStorageService:
    """Google Cloud Storage service for production."""

    def __init__(self, settings: Settings | None = None) -> None:
        from google.cloud import storage

        self.settings = settings or get_settings()
        self._storage = storage
        self._client = None
        self._bucket = None

    @property
    def client(self):
        if self._client is None:
            if self.settings.gcs_project_id:
                self._client = self._storage.Client(project=self.settings.gcs_project_id)
            else:
                self._client = self._storage.Client()
        return self._client

    @property
    def bucket(self):
        if self._bucket is None:
            self._bucket = self.client.bucket(self.settings.gcs_bucket_name)
        return self._bucket

    def _generate_signed_url_v4(self, storage_key: str, expiration_hours: int) -> str:
        from google.auth import compute_engine
        from google.auth.transport import requests as auth_requests

        blob = self.bucket.blob(storage_key)
        expiration = timedelta(hours=expiration_hours)
        credentials = self.client._credentials

        # Compute Engine / Cloud Run credentials hold no private key; sign via IAM
        if isinstance(credentials, compute_engine.Credentials):
            credentials.refresh(auth_requests.Request())
            return blob.generate_signed_url(
                version="v4",
                expiration=expiration,
                method="GET",
                service_account_email=credentials.service_account_email,
                access_token=credentials.token,
            )
        return blob.generate_signed_url(version="v4", expiration=expiration, method="GET")

    async def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str:
        """Upload a local file to GCS."""
        blob = self.bucket.blob(storage_key)
        try:
            await asyncio.to_thread(blob.upload_from_filename, local_path, content_type=content_type)
        except Exception as e:
            raise StorageError(f"Failed to upload {storage_key}: {e}") from e
        return f"https://storage.googleapis.com/{self.settings.gcs_bucket_name}/{storage_key}"

    async def get_signed_url(self, storage_key: str, expiration_hours: int = 24) -> str:
        try:
            return await asyncio.to_thread(self._generate_signed_url_v4, storage_key, expiration_hours)
        except Exception as e:
            raise StorageError(f"Failed to sign URL for {storage_key}: {e}") from e

    def delete_file(self, storage_key: str) -> bool:
        blob = self.bucket.blob(storage_key)
        if blob.exists():
            blob.delete()
            return True
        return False


def get_storage_service(settings: Settings | None = None) -> StorageService:
    """Use LocalStorageService or GCSStorageService based on config."""
    settings = settings or get_settings()
    if settings.use_local_storage:
        return LocalStorageService(settings)
    return GCSStorageService(settings)
