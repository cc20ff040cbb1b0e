"""Media file information utilities using FFprobe."""

import json
import subprocess
from dataclasses import dataclass

from lemona_export.config import get_settings


@dataclass
class MediaInfo:
    """Media file information."""

    duration_ms: float | None = None
    width: int | None = None
    height: int | None = None
    video_codec: str | None = None
    audio_codec: str | None = None
    has_video: bool = False
    has_audio: bool = False


def _run_ffprobe(file_path: str, *args: str, ffprobe_path: str | None = None) -> dict:
    """Run ffprobe and return parsed JSON."""
    cmd = [
        ffprobe_path or get_settings().ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        *args,
        file_path,
    ]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=60)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise RuntimeError(f"ffprobe failed to run: {e}") from e
    if result.returncode != 0:
        raise RuntimeError(f"ffprobe failed: {result.stderr.strip() or 'unreadable media'}")

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise RuntimeError(f"Failed to parse ffprobe output: {e}") from e


def probe_media(file_path: str, ffprobe_path: str | None = None) -> MediaInfo:
    """
    Get stream layout and duration of a media file.

    Args:
        file_path: Path to media file
        ffprobe_path: Override for the configured ffprobe binary

    Returns:
        MediaInfo for the file

    Raises:
        RuntimeError: If ffprobe fails or the file is not media
    """
    data = _run_ffprobe(file_path, "-show_format", "-show_streams", ffprobe_path=ffprobe_path)
    info = MediaInfo()

    format_info = data.get("format", {})
    if "duration" in format_info:
        try:
            info.duration_ms = float(format_info["duration"]) * 1000
        except ValueError:
            pass

    for stream in data.get("streams", []):
        codec_type = stream.get("codec_type")
        if codec_type == "video" and not info.has_video:
            info.has_video = True
            info.width = stream.get("width")
            info.height = stream.get("height")
            info.video_codec = stream.get("codec_name")
        elif codec_type == "audio" and not info.has_audio:
            info.has_audio = True
            info.audio_codec = stream.get("codec_name")

    if not info.has_video and not info.has_audio:
        raise RuntimeError(f"No audio or video stream found in: {file_path}")
    return info


def get_media_duration(file_path: str, ffprobe_path: str | None = None) -> float:
    """Get media file duration in milliseconds.

    Raises:
        RuntimeError: If ffprobe fails or duration not found
    """
    data = _run_ffprobe(file_path, "-show_format", ffprobe_path=ffprobe_path)
    format_info = data.get("format", {})
    if "duration" not in format_info:
        raise RuntimeError(f"Duration not found in: {file_path}")
    return float(format_info["duration"]) * 1000
