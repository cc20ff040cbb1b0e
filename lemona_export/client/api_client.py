"""HTTP client for the export API."""

from collections.abc import Callable
from typing import Any

import httpx

from lemona_export.client.config import API_BASE_URL, API_KEY, DOWNLOAD_TIMEOUT, REQUEST_TIMEOUT

DOWNLOAD_CHUNK_SIZE = 1024 * 1024


class ExportApiClient:
    def __init__(
        self,
        base_url: str = API_BASE_URL,
        api_key: str = API_KEY,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.api_key = api_key
        self._transport = transport

    def _auth_headers(self) -> dict[str, str]:
        if self.api_key:
            return {"X-API-Key": self.api_key}
        return {}

    def _client(self, timeout: float = REQUEST_TIMEOUT) -> httpx.AsyncClient:
        """Create an async HTTP client with auth headers."""
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._auth_headers(),
            timeout=timeout,
            transport=self._transport,
        )

    async def start_export(
        self,
        clips: list[dict[str, Any]],
        tracks: list[dict[str, Any]],
        export_settings: dict[str, Any] | None = None,
        asset_policy: str | None = None,
    ) -> str:
        """Submit a timeline for export and return the job id."""
        body: dict[str, Any] = {"clips": clips, "tracks": tracks}
        if export_settings is not None:
            body["exportSettings"] = export_settings
        if asset_policy is not None:
            body["assetPolicy"] = asset_policy
        async with self._client() as client:
            resp = await client.post("/api/export/start", json=body)
            resp.raise_for_status()
            return resp.json()["jobId"]

    async def get_status(self, job_id: str) -> dict[str, Any]:
        """Get the job snapshot (status, progress, error, downloadUrl)."""
        async with self._client() as client:
            resp = await client.get(f"/api/export/status/{job_id}")
            resp.raise_for_status()
            return resp.json()["job"]

    async def cancel_export(self, job_id: str) -> dict[str, Any]:
        async with self._client() as client:
            resp = await client.delete(f"/api/export/cancel/{job_id}")
            resp.raise_for_status()
            return resp.json()

    async def list_jobs(self) -> list[dict[str, Any]]:
        async with self._client() as client:
            resp = await client.get("/api/export/jobs")
            resp.raise_for_status()
            return resp.json()["jobs"]

    async def get_download_url(self, job_id: str) -> str:
        """Resolve the signed artifact URL without following the redirect."""
        async with self._client() as client:
            resp = await client.get(f"/api/export/download/{job_id}", follow_redirects=False)
            if resp.status_code != 307:
                resp.raise_for_status()
                raise httpx.HTTPStatusError(
                    f"Unexpected status {resp.status_code}", request=resp.request, response=resp
                )
            return resp.headers["location"]

    async def download(
        self,
        url: str,
        dest_path: str,
        on_progress: Callable[[int, int | None], None] | None = None,
    ) -> int:
        """Stream a file to disk.

        Args:
            url: Absolute (signed) URL or an API path
            dest_path: Local destination
            on_progress: Called with (bytes_written, total_bytes or None)

        Returns:
            Number of bytes written
        """
        written = 0
        async with self._client(timeout=DOWNLOAD_TIMEOUT) as client:
            async with client.stream("GET", url, follow_redirects=True) as resp:
                resp.raise_for_status()
                total = int(resp.headers["content-length"]) if "content-length" in resp.headers else None
                with open(dest_path, "wb") as f:
                    async for chunk in resp.aiter_bytes(chunk_size=DOWNLOAD_CHUNK_SIZE):
                        f.write(chunk)
                        written += len(chunk)
                        if on_progress:
                            on_progress(written, total)
        return written
