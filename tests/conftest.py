"""
Pytest fixtures for export compiler tests.

Most tests build timelines in memory and never touch ffmpeg. Tests that run
the real binary are marked @pytest.mark.requires_ffmpeg and skipped when
ffmpeg/ffprobe are not on PATH.
"""

import asyncio
import shutil
import tempfile
from pathlib import Path

import pytest
from PIL import Image

from lemona_export.config import Settings
from lemona_export.schemas.export import ExportSettings
from lemona_export.schemas.timeline import TimelineElement, Track
from lemona_export.utils.media_info import MediaInfo


def pytest_configure(config):
    config.addinivalue_line("markers", "requires_ffmpeg: needs ffmpeg and ffprobe on PATH")


def _ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


def pytest_collection_modifyitems(config, items):
    if _ffmpeg_available():
        return
    skip = pytest.mark.skip(reason="ffmpeg not available")
    for item in items:
        if "requires_ffmpeg" in item.keywords:
            item.add_marker(skip)


# =============================================================================
# Timeline builders
# =============================================================================


def make_element(
    element_id: str,
    kind: str = "video",
    track_id: str = "v1",
    start_ms: float = 0,
    end_ms: float = 5000,
    **fields,
) -> TimelineElement:
    """Build a TimelineElement with sensible defaults for its kind."""
    if kind in ("video", "audio", "image", "sticker") and "source" not in fields:
        fields["source"] = f"/media/{element_id}.{'png' if kind in ('image', 'sticker') else 'mp4'}"
    if kind in ("text", "caption") and "text" not in fields:
        fields["text"] = f"Text {element_id}"
    return TimelineElement(
        id=element_id,
        kind=kind,
        track_id=track_id,
        timeline_start_ms=start_ms,
        timeline_end_ms=end_ms,
        **fields,
    )


def make_track(track_id: str, index: int = 0, kind: str = "video") -> Track:
    return Track(id=track_id, index=index, kind=kind)


@pytest.fixture
def export_settings() -> ExportSettings:
    return ExportSettings(resolution="720p", fps=30, quality="medium")


@pytest.fixture
def temp_output_dir():
    """Temporary directory removed after the test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings(temp_output_dir: Path) -> Settings:
    """Settings pointing every path into the test's temp dir."""
    return Settings(
        _env_file=None,
        export_temp_dir=str(temp_output_dir / "work"),
        local_storage_path=str(temp_output_dir / "storage"),
        use_local_storage=True,
        asset_retry_base_delay_s=0.0,
        verify_output_duration=False,
        job_timeout_s=30,
    )


@pytest.fixture
def sticker_png(temp_output_dir: Path) -> Path:
    """A 64x64 opaque red PNG."""
    path = temp_output_dir / "sticker.png"
    Image.new("RGBA", (64, 64), (255, 0, 0, 255)).save(path)
    return path


@pytest.fixture
def clip_file(temp_output_dir: Path) -> Path:
    """Placeholder media file; probing is faked wherever it is used."""
    path = temp_output_dir / "clip.mp4"
    path.write_bytes(b"not really a video")
    return path


# =============================================================================
# Engine and probe stand-ins
# =============================================================================


class FakePipeline:
    """Records each run and writes a non-empty output file instead of running ffmpeg."""

    def __init__(self, error: Exception | None = None, block: asyncio.Event | None = None):
        self.error = error
        self.block = block
        self.started = asyncio.Event()
        self.programs = []

    async def run(self, program, export_settings, output_path, on_progress=None, on_start=None):
        self.programs.append(program)
        if on_start:
            on_start(1234)
        self.started.set()
        if on_progress:
            on_progress(0.5)
        if self.block is not None:
            await self.block.wait()
        if self.error is not None:
            raise self.error
        with open(output_path, "wb") as f:
            f.write(b"mp4")
        if on_progress:
            on_progress(1.0)
        return output_path


def fake_probe(path: str) -> MediaInfo:
    return MediaInfo(duration_ms=4000, has_video=True, has_audio=True)
