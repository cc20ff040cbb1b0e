"""Tests for timeline validation before job creation."""

import pytest
from conftest import make_element, make_track

from lemona_export.exceptions import (
    ClipOverlapError,
    EmptyTimelineError,
    InvalidTimeRangeError,
    MissingSourceError,
    SpeedMismatchError,
    TimelineValidationError,
    TrackNotFoundError,
    UnsupportedSpeedError,
)
from lemona_export.schemas.export import ExportSettings
from lemona_export.services.timeline_validator import validate_timeline


@pytest.fixture
def tracks():
    return [make_track("v1", 0), make_track("v2", 1), make_track("t1", 2, "text"), make_track("a1", 3, "audio")]


class TestTimelineValidator:
    def test_valid_timeline(self, tracks):
        validate_timeline(
            [
                make_element("c1", "video", "v1", 0, 5000),
                make_element("c2", "video", "v1", 5000, 8000),
                make_element("t1", "text", "t1", 1000, 3000),
                make_element("m1", "audio", "a1", 0, 8000),
            ],
            tracks,
        )

    def test_empty_timeline(self, tracks):
        with pytest.raises(EmptyTimelineError):
            validate_timeline([], tracks)

    def test_unknown_track(self, tracks):
        with pytest.raises(TrackNotFoundError) as exc_info:
            validate_timeline([make_element("c1", "video", "missing")], tracks)
        assert exc_info.value.location.track_id == "missing"
        assert exc_info.value.kind == "validation"

    def test_end_before_start(self, tracks):
        with pytest.raises(InvalidTimeRangeError):
            validate_timeline([make_element("c1", "video", "v1", 5000, 5000)], tracks)

    def test_negative_start(self, tracks):
        with pytest.raises(InvalidTimeRangeError):
            validate_timeline([make_element("c1", "video", "v1", -10, 5000)], tracks)

    def test_inverted_source_range(self, tracks):
        element = make_element("c1", "video", "v1", 0, 1000, source_start_ms=5000, source_end_ms=4000)
        with pytest.raises(InvalidTimeRangeError):
            validate_timeline([element], tracks)

    def test_overlapping_video_clips_rejected(self, tracks):
        with pytest.raises(ClipOverlapError) as exc_info:
            validate_timeline(
                [make_element("c1", "video", "v1", 0, 5000), make_element("c2", "image", "v1", 4000, 6000)],
                tracks,
            )
        assert "c1" in exc_info.value.message and "c2" in exc_info.value.message

    def test_overlap_on_different_tracks_allowed(self, tracks):
        validate_timeline(
            [make_element("c1", "video", "v1", 0, 5000), make_element("c2", "video", "v2", 1000, 6000)],
            tracks,
        )

    def test_overlapping_text_and_audio_allowed(self, tracks):
        validate_timeline(
            [
                make_element("t1", "text", "t1", 0, 5000),
                make_element("t2", "caption", "t1", 1000, 3000),
                make_element("a", "audio", "a1", 0, 5000),
                make_element("b", "audio", "a1", 2000, 4000),
            ],
            tracks,
        )

    @pytest.mark.parametrize("speed", [0.05, 17])
    def test_unsupported_speed(self, tracks, speed):
        with pytest.raises(UnsupportedSpeedError):
            validate_timeline([make_element("c1", "video", "v1", 0, 1000, speed=speed)], tracks)

    def test_source_span_matching_speed_passes(self, tracks):
        """10s of source at speed 2 occupies 5s of timeline."""
        element = make_element("c1", "video", "v1", 0, 5000, source_start_ms=0, source_end_ms=10000, speed=2.0)
        validate_timeline([element], tracks)

    def test_speed_mismatch(self, tracks):
        element = make_element("c1", "video", "v1", 0, 5000, source_start_ms=0, source_end_ms=10000, speed=1.0)
        with pytest.raises(SpeedMismatchError):
            validate_timeline([element], tracks)

    def test_speed_tolerance_is_one_frame(self, tracks):
        settings = ExportSettings(fps=25)  # 40ms frames
        ok = make_element("c1", "video", "v1", 0, 5000, source_start_ms=0, source_end_ms=5039)
        validate_timeline([ok], tracks, settings)
        off = make_element("c2", "video", "v1", 0, 5000, source_start_ms=0, source_end_ms=5041)
        with pytest.raises(SpeedMismatchError):
            validate_timeline([off], tracks, settings)

    def test_media_requires_source(self, tracks):
        element = make_element("c1", "video", "v1", source=None)
        with pytest.raises(MissingSourceError):
            validate_timeline([element], tracks)

    def test_errors_share_base_class(self, tracks):
        with pytest.raises(TimelineValidationError) as exc_info:
            validate_timeline([], tracks)
        assert exc_info.value.status_code == 400
