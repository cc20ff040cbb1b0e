"""Timeline validation run before an export job is created.

Rejects timelines the compiler cannot turn into a well-defined program:
- Empty timelines
- Elements referencing unknown tracks
- Malformed timing (end before start, negative source ranges)
- Speeds outside what chained tempo filters can express
- Source ranges that disagree with timeline duration x speed
- Media elements without a source
- Overlapping video/image clips on the same track
"""

import logging
from collections import defaultdict
from collections.abc import Sequence

from lemona_export.exceptions import (
    ClipOverlapError,
    EmptyTimelineError,
    InvalidTimeRangeError,
    MissingSourceError,
    SpeedMismatchError,
    TrackNotFoundError,
    UnsupportedSpeedError,
)
from lemona_export.render.audio_mixer import MAX_SPEED, MIN_SPEED
from lemona_export.schemas.export import ExportSettings
from lemona_export.schemas.timeline import (
    TIMED_SOURCE_KINDS,
    VISUAL_MEDIA_KINDS,
    TimelineElement,
    Track,
)

logger = logging.getLogger(__name__)


class TimelineValidator:
    """Validates a timeline against the compiler's preconditions."""

    def __init__(
        self,
        elements: Sequence[TimelineElement],
        tracks: Sequence[Track],
        settings: ExportSettings | None = None,
    ):
        self.elements = list(elements)
        self.tracks = {track.id: track for track in tracks}
        self.settings = settings or ExportSettings()

    def validate(self) -> None:
        """Run every check, raising the first TimelineValidationError found."""
        if not self.elements:
            raise EmptyTimelineError()

        for element in self.elements:
            self._check_track(element)
            self._check_timing(element)
            self._check_speed(element)
            self._check_source(element)

        self._check_overlaps()
        logger.debug(f"[VALIDATE] {len(self.elements)} elements on {len(self.tracks)} tracks OK")

    def _check_track(self, element: TimelineElement) -> None:
        if element.track_id not in self.tracks:
            raise TrackNotFoundError(element.id, element.track_id)

    def _check_timing(self, element: TimelineElement) -> None:
        if element.timeline_start_ms < 0:
            raise InvalidTimeRangeError(element.id, "timelineStartMs must not be negative")
        if element.timeline_end_ms <= element.timeline_start_ms:
            raise InvalidTimeRangeError(
                element.id,
                f"timelineEndMs ({element.timeline_end_ms:g}) must be greater than "
                f"timelineStartMs ({element.timeline_start_ms:g})",
            )
        if element.kind not in TIMED_SOURCE_KINDS:
            return
        if element.source_start_ms is not None and element.source_start_ms < 0:
            raise InvalidTimeRangeError(element.id, "sourceStartMs must not be negative")
        source_start, source_end = element.source_range_ms()
        if source_end <= source_start:
            raise InvalidTimeRangeError(element.id, "sourceEndMs must be greater than sourceStartMs")

    def _check_speed(self, element: TimelineElement) -> None:
        if element.kind not in TIMED_SOURCE_KINDS:
            return
        if not MIN_SPEED <= element.speed <= MAX_SPEED:
            raise UnsupportedSpeedError(element.id, element.speed, MIN_SPEED, MAX_SPEED)

        if element.source_start_ms is None or element.source_end_ms is None:
            return
        expected = element.duration_ms * element.speed
        actual = element.source_end_ms - element.source_start_ms
        # One output frame worth of source time
        tolerance = max(1.0, self.settings.frame_duration_ms * element.speed)
        if abs(actual - expected) > tolerance:
            raise SpeedMismatchError(element.id, expected, actual)

    def _check_source(self, element: TimelineElement) -> None:
        if element.kind in ("text", "caption"):
            return
        if not element.asset_source:
            raise MissingSourceError(element.id)

    def _check_overlaps(self) -> None:
        by_track: dict[str, list[TimelineElement]] = defaultdict(list)
        for element in self.elements:
            if element.kind in VISUAL_MEDIA_KINDS:
                by_track[element.track_id].append(element)

        for track_id, clips in by_track.items():
            clips.sort(key=lambda e: e.timeline_start_ms)
            for current, following in zip(clips, clips[1:]):
                if current.timeline_end_ms > following.timeline_start_ms:
                    raise ClipOverlapError(
                        track_id,
                        current.id,
                        following.id,
                        current.timeline_end_ms - following.timeline_start_ms,
                    )


def validate_timeline(
    elements: Sequence[TimelineElement],
    tracks: Sequence[Track],
    settings: ExportSettings | None = None,
) -> None:
    TimelineValidator(elements, tracks, settings).validate()
