"""
End-to-end exports through the real ffmpeg binary.

Skipped when ffmpeg/ffprobe are not installed.
"""

import asyncio
import subprocess

import pytest
from conftest import make_element, make_track

from lemona_export.schemas.export import ExportRequest, ExportSettings
from lemona_export.services.export_job import JobStatus
from lemona_export.services.export_orchestrator import ExportOrchestrator
from lemona_export.services.storage_service import export_storage_key
from lemona_export.utils.media_info import get_media_duration, probe_media

pytestmark = pytest.mark.requires_ffmpeg


@pytest.fixture
def test_video(temp_output_dir):
    """A 2s 320x240 test pattern with a sine tone."""
    path = temp_output_dir / "pattern.mp4"
    subprocess.run(
        [
            "ffmpeg", "-y",
            "-f", "lavfi", "-i", "testsrc=size=320x240:rate=24:duration=2",
            "-f", "lavfi", "-i", "sine=frequency=440:duration=2",
            "-c:v", "libx264", "-pix_fmt", "yuv420p",
            "-c:a", "aac", "-shortest",
            str(path),
        ],
        check=True,
        capture_output=True,
    )
    return path


@pytest.mark.asyncio
async def test_video_with_caption_exports(settings, test_video):
    orchestrator = ExportOrchestrator(settings=settings)
    request = ExportRequest(
        clips=[
            make_element("v1", "video", "v1", 0, 2000, source=str(test_video)),
            make_element("c1", "caption", "t1", 500, 1500, text="Hello"),
        ],
        tracks=[make_track("v1", 0), make_track("t1", 1)],
        export_settings=ExportSettings(resolution="480p", fps=24, quality="low", optimization="speed"),
    )

    job = orchestrator.submit(request)
    await orchestrator.wait(job.id)

    assert job.status is JobStatus.COMPLETED, job.error
    output = orchestrator.storage.get_file_path(export_storage_key(job.id))
    info = probe_media(str(output))
    assert (info.width, info.height) == (854, 480)
    assert info.has_audio
    assert abs(get_media_duration(str(output)) - 2000) <= 2 * 1000 / 24 + 50


@pytest.mark.asyncio
async def test_gap_and_silent_image_export(settings, sticker_png):
    """An image after a gap, with no audio source anywhere, still yields full-length audio."""
    orchestrator = ExportOrchestrator(settings=settings)
    request = ExportRequest(
        clips=[make_element("i1", "image", "v1", 1000, 2000, source=str(sticker_png))],
        tracks=[make_track("v1", 0)],
        export_settings=ExportSettings(resolution="480p", fps=24, quality="low", optimization="speed"),
    )

    job = orchestrator.submit(request)
    await orchestrator.wait(job.id)

    assert job.status is JobStatus.COMPLETED, job.error
    output = orchestrator.storage.get_file_path(export_storage_key(job.id))
    assert probe_media(str(output)).has_audio


@pytest.mark.asyncio
async def test_mixed_audio_tracks_export(settings, test_video):
    """Back-to-back clips on one track plus a delayed, sped-up audio clip on another."""
    orchestrator = ExportOrchestrator(settings=settings)
    request = ExportRequest(
        clips=[
            make_element("v1", "video", "v1", 0, 1000, source=str(test_video), source_start_ms=0),
            make_element("v2", "video", "v1", 1000, 2000, source=str(test_video), source_start_ms=1000),
            make_element("m1", "audio", "a1", 500, 1500, source=str(test_video), speed=1.5, volume=0.5),
        ],
        tracks=[make_track("v1", 0), make_track("a1", 1, "audio")],
        export_settings=ExportSettings(resolution="480p", fps=24, quality="low", optimization="speed"),
    )

    job = orchestrator.submit(request)
    await asyncio.wait_for(orchestrator.wait(job.id), timeout=120)

    assert job.status is JobStatus.COMPLETED, job.error
    output = orchestrator.storage.get_file_path(export_storage_key(job.id))
    assert probe_media(str(output)).has_audio
    # One video frame, plus one AAC packet of encoder padding
    assert abs(get_media_duration(str(output)) - 2000) <= 1000 / 24 + 1024 / 48
