"""Custom exceptions for the export service.

Every error carries a machine-readable code. The code decides the error kind
(validation, asset-resolution, render-engine, timeout, cancelled) that is
reported both in HTTP error envelopes and on failed export jobs.
"""

from lemona_export.constants.error_codes import get_error_spec
from lemona_export.schemas.envelope import ErrorInfo, ErrorLocation


class ExportError(Exception):
    """Base exception for all export service errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        location: ErrorLocation | None = None,
        suggested_fix: str | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.location = location
        self.suggested_fix = suggested_fix
        super().__init__(self.message)

    @property
    def kind(self) -> str:
        return get_error_spec(self.code).get("kind", "internal")

    def to_error_info(self) -> ErrorInfo:
        """Convert exception to ErrorInfo for API response."""
        spec = get_error_spec(self.code)
        return ErrorInfo(
            code=self.code,
            message=self.message,
            kind=self.kind,
            location=self.location,
            retryable=spec.get("retryable", False),
            suggested_fix=self.suggested_fix or spec.get("suggested_fix"),
            parameters=spec.get("parameters", {}),
        )


# =============================================================================
# Timeline Validation Errors (400)
# =============================================================================


class TimelineValidationError(ExportError):
    """Base class for timeline validation errors."""

    code = "VALIDATION_ERROR"
    status_code = 400
    message = "Timeline validation failed"


class EmptyTimelineError(TimelineValidationError):
    code = "EMPTY_TIMELINE"
    message = "Timeline has no elements to export"


class InvalidTimeRangeError(TimelineValidationError):
    """Element timing is malformed."""

    code = "INVALID_TIME_RANGE"
    message = "Invalid time range"

    def __init__(self, element_id: str, detail: str):
        super().__init__(
            f"Element {element_id}: {detail}",
            location=ErrorLocation(element_id=element_id),
        )


class TrackNotFoundError(TimelineValidationError):
    """Element references a track that is not in the track list."""

    code = "TRACK_NOT_FOUND"
    message = "Track not found"

    def __init__(self, element_id: str, track_id: str):
        super().__init__(
            f"Element {element_id} references unknown track: {track_id}",
            location=ErrorLocation(element_id=element_id, track_id=track_id),
        )


class ClipOverlapError(TimelineValidationError):
    """Two visual clips on one track overlap in time."""

    code = "CLIP_OVERLAP"
    message = "Clips overlap on the same track"

    def __init__(self, track_id: str, first_id: str, second_id: str, overlap_ms: float):
        super().__init__(
            f"Clips {first_id} and {second_id} overlap by {overlap_ms:g}ms on track {track_id}",
            location=ErrorLocation(element_id=second_id, track_id=track_id),
        )


class SpeedMismatchError(TimelineValidationError):
    """Source range does not match timeline duration times speed."""

    code = "SPEED_MISMATCH"
    message = "Source range does not match timeline duration and speed"

    def __init__(self, element_id: str, expected_ms: float, actual_ms: float):
        super().__init__(
            f"Element {element_id}: source range is {actual_ms:g}ms, expected {expected_ms:g}ms",
            location=ErrorLocation(element_id=element_id, field="sourceEndMs"),
        )


class UnsupportedSpeedError(TimelineValidationError):
    code = "UNSUPPORTED_SPEED"
    message = "Playback speed outside the supported range"

    def __init__(self, element_id: str, speed: float, min_speed: float, max_speed: float):
        super().__init__(
            f"Element {element_id}: speed {speed:g} is outside [{min_speed:g}, {max_speed:g}]",
            location=ErrorLocation(element_id=element_id, field="speed"),
        )


class MissingSourceError(TimelineValidationError):
    code = "MISSING_SOURCE"
    message = "Element has no source"

    def __init__(self, element_id: str):
        super().__init__(
            f"Element {element_id} has no source",
            location=ErrorLocation(element_id=element_id, field="source"),
        )


# =============================================================================
# Asset Resolution Errors
# =============================================================================


class AssetResolutionError(ExportError):
    """A referenced source could not be fetched or read."""

    code = "ASSET_UNREACHABLE"
    status_code = 502
    message = "Asset could not be resolved"

    def __init__(self, source: str, detail: str | None = None, *, code: str | None = None):
        self.source = source
        message = f"Asset could not be resolved: {source}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message, code=code)


class AssetCacheFullError(AssetResolutionError):
    code = "ASSET_CACHE_FULL"
    status_code = 507

    def __init__(self, source: str, limit: str):
        super().__init__(source, f"asset cache full: {limit}")


# =============================================================================
# Render Errors
# =============================================================================


class RenderEngineError(ExportError):
    """The compositing subprocess failed, crashed or timed out."""

    code = "RENDER_ENGINE_FAILED"
    message = "Render engine failed"

    def __init__(self, message: str | None = None, *, stderr_tail: str | None = None):
        self.stderr_tail = stderr_tail
        if message and stderr_tail:
            message = f"{message}: {stderr_tail}"
        super().__init__(message)


class OverlayRenderError(ExportError):
    """The overlay frame pass was abandoned."""

    code = "OVERLAY_RENDER_FAILED"
    message = "Overlay rendering failed"


class StorageError(ExportError):
    code = "STORAGE_ERROR"
    status_code = 503
    message = "Storage operation failed"


# =============================================================================
# Job Lifecycle Errors
# =============================================================================


class ExportTimeoutError(ExportError):
    code = "EXPORT_TIMEOUT"
    status_code = 504
    message = "Export timed out"


class ExportCancelledError(ExportError):
    code = "EXPORT_CANCELLED"
    status_code = 409
    message = "Cancelled by user"


class JobNotFoundError(ExportError):
    code = "JOB_NOT_FOUND"
    status_code = 404
    message = "Export job not found"

    def __init__(self, job_id: str | None = None):
        message = f"Export job not found: {job_id}" if job_id else self.message
        super().__init__(message)


class JobNotCompletedError(ExportError):
    code = "JOB_NOT_COMPLETED"
    status_code = 400
    message = "Export job is not completed"


class InvalidJobTransitionError(ExportError):
    """Raised when a job is moved along an edge the state machine does not have."""

    code = "INVALID_JOB_TRANSITION"
    status_code = 409
    message = "Invalid job state transition"

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")
