"""Error codes dictionary for the export API.

Single source of truth for error codes, the error kind each one is reported
under, and whether a caller may retry. Used by exception handlers and by the
job orchestrator when it classifies a failed job.
"""

from typing import Any, Literal, TypedDict

ErrorKind = Literal["validation", "asset-resolution", "render-engine", "timeout", "cancelled", "internal"]


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    kind: ErrorKind
    retryable: bool
    suggested_fix: str
    parameters: dict[str, Any]


ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Timeline validation errors (not retryable, fix input)
    # ==========================================================================
    "VALIDATION_ERROR": {
        "kind": "validation",
        "retryable": False,
    },
    "EMPTY_TIMELINE": {
        "kind": "validation",
        "retryable": False,
        "suggested_fix": "Add at least one element to the timeline before exporting",
    },
    "INVALID_TIME_RANGE": {
        "kind": "validation",
        "retryable": False,
        "suggested_fix": "timelineEndMs must be greater than timelineStartMs",
    },
    "TRACK_NOT_FOUND": {
        "kind": "validation",
        "retryable": False,
        "suggested_fix": "Every element must reference a track in the tracks list",
    },
    "CLIP_OVERLAP": {
        "kind": "validation",
        "retryable": False,
        "suggested_fix": "Move or trim clips so video/image clips on one track do not overlap",
    },
    "SPEED_MISMATCH": {
        "kind": "validation",
        "retryable": False,
        "suggested_fix": "Source range must equal timeline duration multiplied by speed",
    },
    "UNSUPPORTED_SPEED": {
        "kind": "validation",
        "retryable": False,
        "parameters": {"min_speed": 0.0625, "max_speed": 16.0},
    },
    "MISSING_SOURCE": {
        "kind": "validation",
        "retryable": False,
        "suggested_fix": "Media elements need a source path or URL",
    },
    # ==========================================================================
    # Asset resolution errors
    # ==========================================================================
    "ASSET_UNREACHABLE": {
        "kind": "asset-resolution",
        "retryable": True,
        "parameters": {"delay_ms": 5000, "max_retries": 2},
    },
    "ASSET_UNREADABLE": {
        "kind": "asset-resolution",
        "retryable": False,
    },
    "ASSET_CACHE_FULL": {
        "kind": "asset-resolution",
        "retryable": False,
        "suggested_fix": "Reduce the number of distinct sources or raise ASSET_CACHE_MAX_ENTRIES",
    },
    # ==========================================================================
    # Render engine errors
    # ==========================================================================
    "RENDER_ENGINE_FAILED": {
        "kind": "render-engine",
        "retryable": True,
        "parameters": {"delay_ms": 2000, "max_retries": 1},
    },
    "OVERLAY_RENDER_FAILED": {
        "kind": "render-engine",
        "retryable": True,
        "parameters": {"delay_ms": 2000, "max_retries": 1},
    },
    "STORAGE_ERROR": {
        "kind": "render-engine",
        "retryable": True,
        "parameters": {"delay_ms": 2000, "max_retries": 2},
    },
    # ==========================================================================
    # Job lifecycle errors
    # ==========================================================================
    "EXPORT_TIMEOUT": {
        "kind": "timeout",
        "retryable": True,
    },
    "EXPORT_CANCELLED": {
        "kind": "cancelled",
        "retryable": False,
    },
    "JOB_NOT_FOUND": {
        "kind": "validation",
        "retryable": False,
    },
    "INVALID_JOB_TRANSITION": {
        "kind": "internal",
        "retryable": False,
    },
    "JOB_NOT_COMPLETED": {
        "kind": "validation",
        "retryable": True,
        "suggested_fix": "Poll GET /api/export/status/{job_id} until the job is completed",
    },
    # ==========================================================================
    # System errors
    # ==========================================================================
    "INTERNAL_ERROR": {
        "kind": "internal",
        "retryable": True,
        "parameters": {"delay_ms": 2000, "max_retries": 2},
    },
    "BAD_REQUEST": {
        "kind": "validation",
        "retryable": False,
    },
    "NOT_FOUND": {
        "kind": "validation",
        "retryable": False,
    },
    "CONFLICT": {
        "kind": "validation",
        "retryable": False,
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get error specification by code.

    Args:
        code: The error code

    Returns:
        ErrorCodeSpec with kind and retryable flag
    """
    return ERROR_CODES.get(code, {"kind": "internal", "retryable": False})


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    return get_error_spec(code).get("retryable", False)
