"""
Adaptive export status poller.

Polls one export job until it finishes, picking each wait from the job's
observed state:
- short for the first few polls and in the final 90-100% range
- medium for early processing below 10%
- long during steady 10-90% processing and while the job sits in "queued"
- plus a small random jitter so concurrent exports do not poll in lockstep

Callbacks only fire when progress or status changed since the previous poll.
Giving up after max_polls is a timeout, not a failure: the job may still be
running on the server. stop() ends the loop without touching the job.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from lemona_export.client.api_client import ExportApiClient
from lemona_export.client.config import PollerConfig

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({"completed", "failed"})

ProgressCallback = Callable[[int], None]
StatusCallback = Callable[[str], None]


@dataclass
class PollResult:
    success: bool
    download_url: str | None = None
    error: str | None = None
    error_kind: str | None = None
    timed_out: bool = False
    cancelled: bool = False
    polls: int = 0


class StatusPoller:
    """Sequential polling loop for one export job."""

    def __init__(
        self,
        client: ExportApiClient,
        config: PollerConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.client = client
        self.config = config or PollerConfig()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._stopped = asyncio.Event()

    def base_interval(self, progress: int, status: str, poll_count: int, unchanged_queued: bool = False) -> float:
        """Interval before jitter for the given observed state."""
        config = self.config
        if poll_count < config.initial_polls:
            return config.short_interval_s
        if status == "queued" and unchanged_queued:
            return config.long_interval_s
        if progress >= config.final_band_start:
            return config.short_interval_s
        if progress >= config.active_band_start:
            return config.long_interval_s
        return config.medium_interval_s

    def next_interval(self, progress: int, status: str, poll_count: int, unchanged_queued: bool = False) -> float:
        jitter = self._rng.uniform(0, self.config.jitter_s) if self.config.jitter_s > 0 else 0.0
        return self.base_interval(progress, status, poll_count, unchanged_queued) + jitter

    def stop(self) -> None:
        """Stop polling. The server-side job is not affected."""
        self._stopped.set()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    async def poll(
        self,
        job_id: str,
        on_progress: ProgressCallback | None = None,
        on_status_change: StatusCallback | None = None,
    ) -> PollResult:
        """Poll until the job completes or fails, max_polls is reached, or stop() is called."""
        last_status: str | None = None
        last_progress: int | None = None

        for poll_count in range(self.config.max_polls):
            if self.stopped:
                return PollResult(success=False, cancelled=True, polls=poll_count)

            previous_status = last_status
            try:
                job = await self.client.get_status(job_id)
            except httpx.HTTPStatusError as e:
                if e.response.status_code == 404:
                    logger.error(f"[POLLER] Job {job_id} not found")
                    return PollResult(
                        success=False,
                        error=f"Export job not found: {job_id}",
                        error_kind="validation",
                        polls=poll_count + 1,
                    )
                if e.response.status_code < 500:
                    raise
                logger.warning(f"[POLLER] Status check failed ({e.response.status_code}), retrying")
            except httpx.TransportError as e:
                logger.warning(f"[POLLER] Status check failed ({e}), retrying")
            else:
                last_status, last_progress = self._notify(job, last_status, last_progress, on_progress, on_status_change)
                result = self._terminal_result(job, poll_count + 1)
                if result is not None:
                    return result

            if poll_count + 1 >= self.config.max_polls:
                break
            unchanged_queued = last_status == "queued" and previous_status == "queued"
            delay = self.next_interval(last_progress or 0, last_status or "queued", poll_count + 1, unchanged_queued)
            logger.debug(f"[POLLER] Job {job_id}: {last_status} {last_progress}%, next poll in {delay:.1f}s")
            await self._wait(delay)

        if self.stopped:
            return PollResult(success=False, cancelled=True, polls=self.config.max_polls)
        logger.warning(f"[POLLER] Job {job_id}: gave up after {self.config.max_polls} polls")
        return PollResult(
            success=False,
            error=f"Stopped polling after {self.config.max_polls} attempts; the export may still be running",
            error_kind="timeout",
            timed_out=True,
            polls=self.config.max_polls,
        )

    def _notify(
        self,
        job: dict[str, Any],
        last_status: str | None,
        last_progress: int | None,
        on_progress: ProgressCallback | None,
        on_status_change: StatusCallback | None,
    ) -> tuple[str, int]:
        status = job["status"]
        progress = int(job.get("progress") or 0)
        if status != last_status and on_status_change:
            on_status_change(status)
        if progress != last_progress and on_progress:
            on_progress(progress)
        return status, progress

    def _terminal_result(self, job: dict[str, Any], polls: int) -> PollResult | None:
        status = job["status"]
        if status not in TERMINAL_STATUSES:
            return None
        if status == "completed":
            return PollResult(success=True, download_url=job.get("downloadUrl"), polls=polls)
        return PollResult(
            success=False,
            error=job.get("error") or "Export failed",
            error_kind=job.get("errorKind"),
            polls=polls,
        )

    async def _wait(self, delay: float) -> None:
        """Sleep for delay seconds, waking early if stop() is called."""
        sleeper = asyncio.ensure_future(self._sleep(delay))
        stopper = asyncio.ensure_future(self._stopped.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, stopper):
                if not task.done():
                    task.cancel()

    async def download(
        self,
        download_url: str,
        dest_path: str,
        on_status_change: StatusCallback | None = None,
        on_progress: Callable[[int, int | None], None] | None = None,
    ) -> str:
        """Fetch the finished artifact, reporting the downloading sub-state."""
        if on_status_change:
            on_status_change("downloading")
        size = await self.client.download(download_url, dest_path, on_progress)
        logger.info(f"[POLLER] Downloaded {size} bytes to {dest_path}")
        return dest_path
