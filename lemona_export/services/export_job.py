"""Export job model and its state machine.

    queued -> processing -> completed
       |          |
       +----------+-----> failed

"downloading" is a client-side sub-state of completed (the consumer fetching
the artifact); the server never stores it.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from lemona_export.exceptions import InvalidJobTransitionError
from lemona_export.schemas.export import ExportJobResponse, ExportJobSummary, ExportSettings


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DOWNLOADING = "downloading"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.DOWNLOADING: frozenset(),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ExportJob:
    """Export job information. Mutated only by the orchestrator."""

    id: str
    export_settings: ExportSettings
    duration_ms: float = 0.0
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    stage: str | None = "queued"
    error: str | None = None
    error_kind: str | None = None
    download_url: str | None = None
    warnings: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def _transition(self, target: JobStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidJobTransitionError(self.id, self.status.value, target.value)
        self.status = target

    def mark_processing(self) -> None:
        with self._lock:
            self._transition(JobStatus.PROCESSING)
            self.started_at = _now()
            self.stage = "rendering"

    def update_progress(self, progress: float, stage: str | None = None) -> int:
        """Raise progress; lower values are ignored so it never regresses."""
        with self._lock:
            if self.status.is_terminal:
                return self.progress
            value = int(max(0, min(99, progress)))
            if value > self.progress:
                self.progress = value
            if stage:
                self.stage = stage
            return self.progress

    def set_stage(self, stage: str) -> None:
        with self._lock:
            if not self.status.is_terminal:
                self.stage = stage

    def add_warning(self, message: str) -> None:
        with self._lock:
            self.warnings.append(message)

    def mark_completed(self, download_url: str) -> None:
        if not download_url:
            raise ValueError("a completed job needs a download URL")
        with self._lock:
            self._transition(JobStatus.COMPLETED)
            self.progress = 100
            self.stage = "completed"
            self.download_url = download_url
            self.completed_at = _now()

    def mark_failed(self, error: str, kind: str) -> None:
        with self._lock:
            self._transition(JobStatus.FAILED)
            self.error = error or f"Export failed ({kind})"
            self.error_kind = kind
            self.stage = "failed"
            self.completed_at = _now()

    def to_response(self) -> ExportJobResponse:
        return ExportJobResponse(
            id=self.id,
            status=self.status.value,
            progress=self.progress,
            stage=self.stage,
            error=self.error,
            error_kind=self.error_kind,
            download_url=self.download_url,
            warnings=list(self.warnings),
            duration_ms=self.duration_ms,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )

    def to_summary(self) -> ExportJobSummary:
        return ExportJobSummary(
            id=self.id,
            status=self.status.value,
            progress=self.progress,
            created_at=self.created_at,
            completed_at=self.completed_at,
            error=self.error,
        )
