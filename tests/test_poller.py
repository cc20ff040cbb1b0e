"""
Tests for the export API client and the adaptive status poller.

The poller runs against an AsyncMock client and a recording sleep, so no
test waits in real time.
"""

import random
from unittest.mock import AsyncMock

import httpx
import pytest

from lemona_export.client.api_client import ExportApiClient
from lemona_export.client.config import PollerConfig
from lemona_export.client.poller import StatusPoller


def _status(status: str, progress: int = 0, **extra) -> dict:
    return {"id": "job-1", "status": status, "progress": progress, **extra}


def _http_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "http://test/api/export/status/job-1")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _poller(statuses, config: PollerConfig | None = None, sleep=None) -> StatusPoller:
    client = AsyncMock(spec=ExportApiClient)
    client.get_status.side_effect = statuses
    return StatusPoller(client, config or PollerConfig(jitter_s=0), sleep=sleep or RecordingSleep())


class TestIntervals:
    @pytest.fixture
    def poller(self):
        return StatusPoller(AsyncMock(spec=ExportApiClient), PollerConfig(jitter_s=0))

    def test_initial_polls_are_short(self, poller):
        assert poller.base_interval(50, "processing", 0) == 2.0
        assert poller.base_interval(50, "processing", 2) == 2.0

    def test_early_processing_is_medium(self, poller):
        assert poller.base_interval(5, "processing", 4) == 5.0

    def test_steady_processing_is_long(self, poller):
        assert poller.base_interval(45, "processing", 5) == 20.0

    def test_final_band_is_short(self, poller):
        assert poller.base_interval(90, "processing", 10) == 2.0
        assert poller.base_interval(99, "processing", 10) == 2.0

    def test_unchanged_queued_is_long(self, poller):
        assert poller.base_interval(0, "queued", 5, unchanged_queued=True) == 20.0
        assert poller.base_interval(0, "queued", 5) == 5.0

    def test_jitter_stays_in_band(self):
        poller = StatusPoller(AsyncMock(spec=ExportApiClient), PollerConfig(jitter_s=1.0), rng=random.Random(7))
        for _ in range(50):
            interval = poller.next_interval(45, "processing", 5)
            assert 20.0 <= interval <= 21.0

    def test_jitter_is_seeded(self):
        first = StatusPoller(AsyncMock(spec=ExportApiClient), rng=random.Random(3))
        second = StatusPoller(AsyncMock(spec=ExportApiClient), rng=random.Random(3))
        assert first.next_interval(45, "processing", 5) == second.next_interval(45, "processing", 5)


class TestPoll:
    @pytest.mark.asyncio
    async def test_completes_with_download_url(self):
        sleep = RecordingSleep()
        poller = _poller(
            [
                _status("queued"),
                _status("processing", 10),
                _status("processing", 50),
                _status("completed", 100, downloadUrl="https://storage.test/x.mp4"),
            ],
            sleep=sleep,
        )

        result = await poller.poll("job-1")

        assert result.success is True
        assert result.download_url == "https://storage.test/x.mp4"
        assert result.polls == 4
        # No sleep after the final poll
        assert len(sleep.delays) == 3

    @pytest.mark.asyncio
    async def test_callbacks_fire_only_on_change(self):
        statuses = []
        progress = []
        poller = _poller(
            [
                _status("processing", 10),
                _status("processing", 10),
                _status("processing", 40),
                _status("processing", 40),
                _status("completed", 100, downloadUrl="https://x"),
            ]
        )

        await poller.poll("job-1", on_progress=progress.append, on_status_change=statuses.append)

        assert statuses == ["processing", "completed"]
        assert progress == [10, 40, 100]

    @pytest.mark.asyncio
    async def test_failed_job(self):
        poller = _poller([_status("failed", 30, error="ffmpeg exited with code 1", errorKind="render-engine")])

        result = await poller.poll("job-1")

        assert result.success is False
        assert result.error == "ffmpeg exited with code 1"
        assert result.error_kind == "render-engine"
        assert result.timed_out is False

    @pytest.mark.asyncio
    async def test_gives_up_after_max_polls(self):
        sleep = RecordingSleep()
        poller = _poller([_status("processing", 20)] * 5, config=PollerConfig(jitter_s=0, max_polls=5), sleep=sleep)

        result = await poller.poll("job-1")

        assert result.success is False
        assert result.timed_out is True
        assert result.error_kind == "timeout"
        assert result.polls == 5
        assert len(sleep.delays) == 4

    @pytest.mark.asyncio
    async def test_missing_job_fails(self):
        poller = _poller([_http_error(404)])

        result = await poller.poll("job-1")

        assert result.success is False
        assert result.error_kind == "validation"
        assert result.polls == 1

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self):
        poller = _poller(
            [_http_error(503), httpx.ConnectError("refused"), _status("completed", 100, downloadUrl="https://x")]
        )

        result = await poller.poll("job-1")

        assert result.success is True
        assert result.polls == 3

    @pytest.mark.asyncio
    async def test_client_errors_propagate(self):
        poller = _poller([_http_error(401)])
        with pytest.raises(httpx.HTTPStatusError):
            await poller.poll("job-1")

    @pytest.mark.asyncio
    async def test_stop_ends_polling(self):
        client = AsyncMock(spec=ExportApiClient)
        poller = StatusPoller(client, PollerConfig(jitter_s=0), sleep=RecordingSleep())

        async def status_then_stop(job_id):
            poller.stop()
            return _status("processing", 20)

        client.get_status.side_effect = status_then_stop

        result = await poller.poll("job-1")

        assert result.cancelled is True
        assert result.success is False
        assert client.get_status.await_count == 1

    @pytest.mark.asyncio
    async def test_steady_processing_waits_long(self):
        """45% processing after the initial polls waits in the long band."""
        sleep = RecordingSleep()
        poller = _poller(
            [_status("processing", 45)] * 6 + [_status("completed", 100, downloadUrl="https://x")],
            config=PollerConfig(jitter_s=0),
            sleep=sleep,
        )

        await poller.poll("job-1")

        assert sleep.delays == [2.0, 2.0, 20.0, 20.0, 20.0, 20.0]

    @pytest.mark.asyncio
    async def test_download_reports_downloading(self, temp_output_dir):
        client = AsyncMock(spec=ExportApiClient)
        client.download.return_value = 3
        poller = StatusPoller(client)
        statuses = []

        dest = str(temp_output_dir / "out.mp4")
        assert await poller.download("https://x/out.mp4", dest, on_status_change=statuses.append) == dest
        assert statuses == ["downloading"]
        client.download.assert_awaited_once()


class TestExportApiClient:
    def _client(self, handler) -> ExportApiClient:
        return ExportApiClient(base_url="http://api.test", api_key="secret", transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_start_export(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["key"] = request.headers.get("x-api-key")
            return httpx.Response(200, json={"success": True, "jobId": "job-9", "message": "Export job started"})

        job_id = await self._client(handler).start_export([], [], asset_policy="lenient")

        assert job_id == "job-9"
        assert seen == {"path": "/api/export/start", "key": "secret"}

    @pytest.mark.asyncio
    async def test_get_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": True, "job": _status("processing", 12)})

        job = await self._client(handler).get_status("job-1")
        assert job["progress"] == 12

    @pytest.mark.asyncio
    async def test_status_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"success": False})

        with pytest.raises(httpx.HTTPStatusError):
            await self._client(handler).get_status("job-1")

    @pytest.mark.asyncio
    async def test_download_url_from_redirect(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(307, headers={"location": "https://storage.test/signed.mp4"})

        assert await self._client(handler).get_download_url("job-1") == "https://storage.test/signed.mp4"

    @pytest.mark.asyncio
    async def test_download_streams_to_disk(self, temp_output_dir):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"0123456789")

        progress = []
        dest = temp_output_dir / "out.mp4"
        written = await self._client(handler).download(
            "https://storage.test/signed.mp4", str(dest), lambda done, total: progress.append((done, total))
        )

        assert written == 10
        assert dest.read_bytes() == b"0123456789"
        assert progress[-1] == (10, 10)
