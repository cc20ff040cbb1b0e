"""
Render pipeline: runs a compiled export program through ffmpeg.

- Encoder parameters derived from ExportSettings (quality tier, optimization hint)
- Async subprocess execution with `-progress pipe:1` parsing
- Bounded stderr tail for failure diagnostics
- Engine timeout and cancellation (the subprocess is killed, never orphaned)
- Output verification before reporting success
"""

import asyncio
import logging
import os
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from lemona_export.config import Settings, get_settings
from lemona_export.exceptions import RenderEngineError
from lemona_export.render.compiler import CompiledProgram
from lemona_export.schemas.export import ExportSettings

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]
StartCallback = Callable[[int], None]

CRF_BY_QUALITY = {"low": 28, "medium": 23, "high": 18}
AUDIO_BITRATE_BY_QUALITY = {"low": "128k", "medium": "192k", "high": "256k"}
PRESET_BY_OPTIMIZATION = {"speed": "veryfast", "balanced": "medium", "quality": "slow"}

# "auto" switches to a faster preset for long exports
AUTO_FAST_THRESHOLD_MS = 180_000
STDERR_TAIL_LINES = 40


@dataclass(frozen=True)
class EncoderOptions:
    crf: int
    preset: str
    audio_bitrate: str


def encoder_options(export_settings: ExportSettings, duration_ms: float) -> EncoderOptions:
    """Pick x264/AAC parameters. Never affects the filter graph."""
    if export_settings.optimization == "auto":
        preset = "fast" if duration_ms > AUTO_FAST_THRESHOLD_MS else "medium"
    else:
        preset = PRESET_BY_OPTIMIZATION[export_settings.optimization]
    return EncoderOptions(
        crf=CRF_BY_QUALITY[export_settings.quality],
        preset=preset,
        audio_bitrate=AUDIO_BITRATE_BY_QUALITY[export_settings.quality],
    )


def build_command(
    program: CompiledProgram,
    export_settings: ExportSettings,
    output_path: str,
    settings: Settings | None = None,
) -> list[str]:
    """Build the ffmpeg argv for a compiled program without executing it."""
    settings = settings or get_settings()
    options = encoder_options(export_settings, program.duration_ms)

    cmd = [settings.ffmpeg_path, "-y", "-hide_banner", "-nostdin"]
    for source in program.inputs:
        cmd.extend(source.to_args())

    cmd += [
        "-filter_complex", program.filter_complex,
        "-map", f"[{program.video_label}]",
        "-map", f"[{program.audio_label}]",
        "-c:v", "libx264",
        "-preset", options.preset,
        "-crf", str(options.crf),
        "-r", str(export_settings.fps),
        "-pix_fmt", "yuv420p",
        "-c:a", "aac",
        "-b:a", options.audio_bitrate,
        "-ar", str(settings.render_audio_sample_rate),
        "-threads", str(settings.render_ffmpeg_threads),
        "-max_muxing_queue_size", str(settings.render_ffmpeg_max_muxing_queue),
        "-movflags", "+faststart",
        "-t", f"{program.duration_ms / 1000:.3f}",
        "-progress", "pipe:1",
        "-nostats",
        output_path,
    ]
    return cmd


def parse_progress_line(line: str, duration_ms: float) -> float | None:
    """Turn one `-progress` line into a completed fraction, if it carries one."""
    if line.startswith("out_time_us=") or line.startswith("out_time_ms="):
        # ffmpeg reports microseconds under both keys
        try:
            time_us = int(line.split("=", 1)[1])
        except ValueError:
            return None  # "N/A" before the first frame
        if duration_ms <= 0:
            return None
        return max(0.0, min(1.0, time_us / 1000 / duration_ms))
    if line.startswith("progress=end"):
        return 1.0
    return None


class RenderPipeline:
    """Runs ffmpeg for one export job."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.timeout_s = self.settings.engine_timeout_s

    async def run(
        self,
        program: CompiledProgram,
        export_settings: ExportSettings,
        output_path: str,
        on_progress: ProgressCallback | None = None,
        on_start: StartCallback | None = None,
    ) -> str:
        """Execute the program and return the verified output path.

        Raises:
            RenderEngineError: Nonzero exit, timeout, or missing/empty output
        """
        cmd = build_command(program, export_settings, output_path, self.settings)
        logger.info(f"[FFMPEG] {len(program.inputs)} inputs, duration={program.duration_ms:g}ms -> {output_path}")
        logger.debug(f"[FFMPEG] filter_complex:\n{program.filter_complex}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise RenderEngineError(f"ffmpeg not found: {self.settings.ffmpeg_path}") from e

        if on_start:
            on_start(proc.pid)

        stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        try:
            await asyncio.wait_for(
                asyncio.gather(
                    self._read_progress(proc, program.duration_ms, on_progress),
                    self._read_stderr(proc, stderr_tail),
                ),
                timeout=self.timeout_s,
            )
            returncode = await proc.wait()
        except asyncio.TimeoutError:
            await self._kill(proc)
            raise RenderEngineError(
                f"ffmpeg timed out after {self.timeout_s}s",
                stderr_tail="\n".join(stderr_tail) or None,
            )
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        if returncode != 0:
            tail = "\n".join(stderr_tail)
            logger.error(f"[FFMPEG] exited with {returncode}:\n{tail}")
            raise RenderEngineError(f"ffmpeg exited with code {returncode}", stderr_tail=tail or None)

        if not os.path.exists(output_path) or os.path.getsize(output_path) == 0:
            raise RenderEngineError(f"ffmpeg produced no output at {output_path}")

        if on_progress:
            on_progress(1.0)
        logger.info(f"[FFMPEG] done: {output_path} ({os.path.getsize(output_path)} bytes)")
        return output_path

    async def _read_progress(
        self,
        proc: asyncio.subprocess.Process,
        duration_ms: float,
        on_progress: ProgressCallback | None,
    ) -> None:
        last_reported = -1.0
        async for raw_line in proc.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            fraction = parse_progress_line(line, duration_ms)
            if fraction is None:
                continue
            # Report about every 1%
            if on_progress and fraction >= last_reported + 0.01:
                last_reported = fraction
                on_progress(fraction)

    async def _read_stderr(self, proc: asyncio.subprocess.Process, tail: deque[str]) -> None:
        async for raw_line in proc.stderr:
            line = raw_line.decode("utf-8", errors="replace").rstrip()
            if line:
                tail.append(line)

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            logger.warning(f"[FFMPEG] killing pid {proc.pid}")
            proc.kill()
            await proc.wait()
