"""Tests for the export job state machine."""

import pytest

from lemona_export.exceptions import InvalidJobTransitionError
from lemona_export.schemas.export import ExportSettings
from lemona_export.services.export_job import ExportJob, JobStatus


@pytest.fixture
def job() -> ExportJob:
    return ExportJob(id="job-1", export_settings=ExportSettings(), duration_ms=8000)


class TestExportJob:
    def test_initial_state(self, job):
        assert job.status is JobStatus.QUEUED
        assert job.progress == 0
        assert job.started_at is None

    def test_happy_path(self, job):
        job.mark_processing()
        assert job.status is JobStatus.PROCESSING
        assert job.started_at is not None

        job.update_progress(40, "encoding")
        job.mark_completed("https://storage.test/exports/job-1.mp4")

        assert job.status is JobStatus.COMPLETED
        assert job.progress == 100
        assert job.download_url == "https://storage.test/exports/job-1.mp4"
        assert job.completed_at is not None

    def test_progress_never_regresses(self, job):
        job.mark_processing()
        job.update_progress(50)
        assert job.update_progress(30) == 50
        assert job.progress == 50

    def test_progress_capped_below_completion(self, job):
        job.mark_processing()
        assert job.update_progress(140) == 99

    def test_stage_updates_with_lower_progress(self, job):
        job.mark_processing()
        job.update_progress(60, "encoding")
        job.update_progress(10, "uploading")
        assert job.stage == "uploading"
        assert job.progress == 60

    def test_completion_requires_url(self, job):
        job.mark_processing()
        with pytest.raises(ValueError):
            job.mark_completed("")
        assert job.status is JobStatus.PROCESSING

    def test_cannot_complete_from_queued(self, job):
        with pytest.raises(InvalidJobTransitionError):
            job.mark_completed("https://x")

    def test_queued_job_can_fail(self, job):
        job.mark_failed("Cancelled by user", "cancelled")
        assert job.status is JobStatus.FAILED
        assert job.error_kind == "cancelled"
        assert job.stage == "failed"

    def test_terminal_states_are_final(self, job):
        job.mark_processing()
        job.mark_failed("boom", "render-engine")
        with pytest.raises(InvalidJobTransitionError):
            job.mark_processing()
        with pytest.raises(InvalidJobTransitionError):
            job.mark_completed("https://x")

    def test_progress_ignored_after_failure(self, job):
        job.mark_processing()
        job.update_progress(20)
        job.mark_failed("boom", "render-engine")
        job.update_progress(90, "encoding")
        assert job.progress == 20
        assert job.stage == "failed"

    def test_empty_error_gets_default_message(self, job):
        job.mark_failed("", "timeout")
        assert job.error == "Export failed (timeout)"

    def test_response_shape(self, job):
        job.add_warning("Dropped video element v9")
        payload = job.to_response().model_dump(by_alias=True)
        assert payload["status"] == "queued"
        assert payload["durationMs"] == 8000
        assert payload["warnings"] == ["Dropped video element v9"]
        assert payload["errorKind"] is None

    def test_terminal_flags(self):
        assert JobStatus.COMPLETED.is_terminal
        assert JobStatus.FAILED.is_terminal
        assert not JobStatus.PROCESSING.is_terminal
