from typing import Any

from pydantic import BaseModel, Field


class ErrorLocation(BaseModel):
    field: str | None = None
    element_id: str | None = None
    track_id: str | None = None
    time_ms: float | None = None


class ErrorInfo(BaseModel):
    code: str
    message: str
    kind: str
    location: ErrorLocation | None = None
    retryable: bool = False
    suggested_fix: str | None = None  # Human-readable fix suggestion
    parameters: dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorInfo
