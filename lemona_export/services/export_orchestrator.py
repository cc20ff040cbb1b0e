"""
Export job orchestrator.

Owns every ExportJob and drives it through:
1. Asset resolution (strict / lenient policy)
2. Element classification
3. Overlay frame rendering for styled elements (fail / degrade policy)
4. Filter graph compilation
5. ffmpeg execution with progress
6. Upload to durable storage and a signed download URL

Each job runs as its own asyncio task. Temp files, the asset cache and the
overlay frames are registered on an AsyncExitStack and released when the job
scope ends, whatever the outcome.
"""

import asyncio
import logging
import os
import shutil
import tempfile
import threading
from collections.abc import Callable, Sequence
from contextlib import AsyncExitStack
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from lemona_export.config import Settings, get_settings
from lemona_export.exceptions import (
    AssetResolutionError,
    ExportCancelledError,
    ExportError,
    ExportTimeoutError,
    JobNotFoundError,
    OverlayRenderError,
    RenderEngineError,
)
from lemona_export.render.classifier import classification_stats, classify
from lemona_export.render.compiler import FilterGraphCompiler, OverlaySequence, output_duration_ms
from lemona_export.render.overlay_renderer import OverlayFrameRenderer, can_render
from lemona_export.render.pipeline import RenderPipeline
from lemona_export.schemas.export import ExportRequest, ExportSettings
from lemona_export.schemas.timeline import TimelineElement, Track
from lemona_export.services.asset_cache import AssetCache
from lemona_export.services.asset_resolver import AssetResolver
from lemona_export.services.export_job import ExportJob
from lemona_export.services.storage_service import (
    VIDEO_CONTENT_TYPE,
    StorageService,
    export_storage_key,
    get_storage_service,
)
from lemona_export.services.timeline_validator import validate_timeline
from lemona_export.utils.media_info import get_media_duration

logger = logging.getLogger(__name__)

# Share of the progress bar owned by the ffmpeg run; upload takes it to 99
ENGINE_PROGRESS_SHARE = 95
UPLOAD_PROGRESS = 99
# Allowed drift of the finished file's duration, in output frames
DURATION_TOLERANCE_FRAMES = 2

ResolverFactory = Callable[[AssetCache], AssetResolver]


class ExportOrchestrator:
    """Creates export jobs and runs them in the background."""

    def __init__(
        self,
        settings: Settings | None = None,
        storage: StorageService | None = None,
        pipeline: RenderPipeline | None = None,
        resolver_factory: ResolverFactory | None = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or get_storage_service(self.settings)
        self.pipeline = pipeline or RenderPipeline(self.settings)
        self._resolver_factory = resolver_factory or (lambda cache: AssetResolver(cache, self.settings))
        self._jobs: dict[str, ExportJob] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_jobs)

    # =========================================================================
    # Job control
    # =========================================================================

    def submit(self, request: ExportRequest) -> ExportJob:
        """Validate the timeline and start the job in the background.

        Raises:
            TimelineValidationError: The timeline cannot be exported; no job is created
        """
        validate_timeline(request.clips, request.tracks, request.export_settings)
        self._sweep_expired_jobs()

        job = ExportJob(
            id=str(uuid4()),
            export_settings=request.export_settings,
            duration_ms=output_duration_ms(request.clips),
        )
        self._jobs[job.id] = job
        policy = request.asset_policy or self.settings.asset_policy

        task = asyncio.create_task(
            self._run_job(job, list(request.clips), list(request.tracks), policy),
            name=f"export-{job.id}",
        )
        self._tasks[job.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.id, None))

        logger.info(
            f"[EXPORT] Job {job.id} queued: {len(request.clips)} elements, "
            f"{job.duration_ms:g}ms, {request.export_settings.resolution} @ {request.export_settings.fps}fps, "
            f"assets={policy}"
        )
        return job

    def _sweep_expired_jobs(self) -> None:
        """Forget finished jobs older than the retention window."""
        hours = self.settings.job_retention_hours
        if hours <= 0:
            return
        cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.status.is_terminal and job.created_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.info(f"[EXPORT] Dropped {len(expired)} finished jobs older than {hours}h")

    def get_job(self, job_id: str) -> ExportJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def status(self, job_id: str) -> ExportJob:
        return self.get_job(job_id)

    def list_jobs(self) -> list[ExportJob]:
        """All known jobs, newest first."""
        return sorted(self._jobs.values(), key=lambda job: job.created_at, reverse=True)

    def cancel(self, job_id: str) -> bool:
        """Best-effort cancellation. Returns False if the job already finished."""
        job = self.get_job(job_id)
        if job.status.is_terminal:
            return False
        task = self._tasks.get(job_id)
        if task is None or task.done():
            return False
        logger.info(f"[EXPORT] Job {job_id} cancellation requested")
        task.cancel()
        return True

    async def wait(self, job_id: str) -> ExportJob:
        """Wait until the job's task has finished."""
        job = self.get_job(job_id)
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return job

    async def shutdown(self) -> None:
        """Cancel running jobs and wait for their cleanup."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info(f"[EXPORT] Shutting down, cancelling {len(tasks)} jobs")
            await asyncio.gather(*tasks, return_exceptions=True)

    # =========================================================================
    # Job execution
    # =========================================================================

    async def _run_job(
        self,
        job: ExportJob,
        clips: list[TimelineElement],
        tracks: list[Track],
        policy: str,
    ) -> None:
        try:
            async with self._semaphore:
                await asyncio.wait_for(
                    self._execute(job, clips, tracks, policy),
                    timeout=self.settings.job_timeout_s,
                )
        except asyncio.TimeoutError:
            self._fail(job, ExportTimeoutError(f"Export exceeded {self.settings.job_timeout_s}s"))
        except asyncio.CancelledError:
            self._fail(job, ExportCancelledError())
            raise
        except ExportError as e:
            self._fail(job, e)
        except Exception as e:
            logger.exception(f"[EXPORT] Job {job.id} crashed")
            self._fail(job, RenderEngineError(f"Unexpected export failure: {e}"))

    def _fail(self, job: ExportJob, error: ExportError) -> None:
        if job.status.is_terminal:
            return
        job.mark_failed(error.message, error.kind)
        logger.error(f"[EXPORT] Job {job.id} failed ({error.kind}): {error.message}")

    async def _execute(
        self,
        job: ExportJob,
        clips: list[TimelineElement],
        tracks: list[Track],
        policy: str,
    ) -> None:
        export_settings = job.export_settings
        async with AsyncExitStack() as stack:
            os.makedirs(self.settings.export_temp_dir, exist_ok=True)
            work_dir = tempfile.mkdtemp(prefix=f"lemona_export_{job.id[:8]}_", dir=self.settings.export_temp_dir)
            stack.callback(shutil.rmtree, work_dir, True)

            cache = AssetCache(
                os.path.join(work_dir, "assets"),
                max_entries=self.settings.asset_cache_max_entries,
                max_bytes=self.settings.asset_cache_max_bytes,
            )
            stack.callback(cache.close)

            # 1. Assets
            job.set_stage("resolving assets")
            resolver = self._resolver_factory(cache)
            resolved = await resolver.resolve(clips, policy)
            stack.callback(resolver.release, resolved)
            for warning in resolved.warnings:
                job.add_warning(warning)
            if not resolved.elements:
                raise AssetResolutionError("timeline", "every element was dropped")

            # 2. Classification
            partition = classify(resolved.elements)
            logger.info(f"[EXPORT] Job {job.id} {classification_stats(partition)}")
            overlay_ids = {element.id for element in partition.styled if can_render(element)}
            for element in partition.styled:
                if element.id not in overlay_ids:
                    logger.info(f"[EXPORT] Styled {element.kind} {element.id} is compiled natively")
            overlay_elements = [e for e in resolved.elements if e.id in overlay_ids]
            native_elements = [e for e in resolved.elements if e.id not in overlay_ids]

            # 3. Overlay
            overlay = None
            if overlay_elements:
                job.set_stage("rendering overlay")
                overlay = await self._render_overlay(job, overlay_elements, tracks, export_settings, work_dir)
                # Overlay sources are baked into the frames (or abandoned)
                resolver.release(resolved, overlay_ids)

            # 4. Compile
            job.set_stage("compiling")
            program = FilterGraphCompiler(
                export_settings,
                sample_rate=self.settings.render_audio_sample_rate,
            ).compile(
                native_elements,
                tracks,
                overlay=overlay,
                duration_ms=job.duration_ms,
                audio_sources=resolved.audio_sources,
            )

            # 5. Engine
            output_path = os.path.join(work_dir, f"{job.id}.mp4")
            await self.pipeline.run(
                program,
                export_settings,
                output_path,
                on_progress=lambda fraction: job.update_progress(fraction * ENGINE_PROGRESS_SHARE, "encoding"),
                on_start=lambda pid: job.mark_processing(),
            )
            if self.settings.verify_output_duration:
                await self._verify_duration(job, output_path, export_settings)

            # 6. Upload
            job.update_progress(UPLOAD_PROGRESS, "uploading")
            storage_key = export_storage_key(job.id)
            await self.storage.upload_file(output_path, storage_key, VIDEO_CONTENT_TYPE)
            download_url = await self.storage.get_signed_url(storage_key, self.settings.download_url_expiry_hours)

            job.mark_completed(download_url)
            logger.info(f"[EXPORT] Job {job.id} completed: {storage_key}")

    async def _render_overlay(
        self,
        job: ExportJob,
        elements: Sequence[TimelineElement],
        tracks: Sequence[Track],
        export_settings: ExportSettings,
        work_dir: str,
    ) -> OverlaySequence | None:
        """Render overlay frames, applying the overlay failure policy."""
        renderer = OverlayFrameRenderer(
            export_settings.width,
            export_settings.height,
            export_settings.fps,
            max_workers=self.settings.overlay_render_workers,
        )
        cancel_event = threading.Event()

        def on_progress(done: int, total: int) -> None:
            job.set_stage(f"rendering overlay {done}/{total}")

        render = asyncio.ensure_future(
            asyncio.to_thread(
                renderer.render,
                elements,
                tracks,
                job.duration_ms,
                os.path.join(work_dir, "overlay"),
                on_progress,
                cancel_event,
            )
        )
        try:
            return await asyncio.shield(render)
        except asyncio.CancelledError:
            # The worker thread must stop before the work dir is removed
            cancel_event.set()
            await asyncio.gather(render, return_exceptions=True)
            raise
        except OverlayRenderError as e:
            if self.settings.overlay_failure_policy != "degrade":
                raise
            message = f"Overlay abandoned, exporting without {len(elements)} styled elements: {e.message}"
            logger.warning(f"[EXPORT] Job {job.id}: {message}")
            job.add_warning(message)
            return None

    async def _verify_duration(self, job: ExportJob, output_path: str, export_settings: ExportSettings) -> None:
        try:
            actual_ms = await asyncio.to_thread(get_media_duration, output_path, self.settings.ffprobe_path)
        except RuntimeError as e:
            logger.warning(f"[EXPORT] Job {job.id}: could not probe output duration: {e}")
            return
        tolerance = DURATION_TOLERANCE_FRAMES * export_settings.frame_duration_ms
        if abs(actual_ms - job.duration_ms) > tolerance:
            logger.warning(
                f"[EXPORT] Job {job.id}: output is {actual_ms:.0f}ms, expected {job.duration_ms:.0f}ms"
            )
