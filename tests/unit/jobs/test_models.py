"""Tests for job models."""

import dataclasses
from datetime import datetime, timezone

import pytest

from jobwatch.jobs.models import (
    ChangeEvent,
    Job,
    JobDetail,
    JobEvent,
    StatusCount,
    fill_status_counts,
)
from jobwatch.jobs.types import JobStatus


class TestJob:
    def test_create_job(self):
        job = Job(
            id=7,
            queue_name="default",
            task_name="send_email",
            status=JobStatus.TODO,
        )
        assert job.priority == 0
        assert job.attempts == 0
        assert job.args == {}
        assert job.lock is None
        assert job.queueing_lock is None
        assert job.worker_id is None
        assert job.abort_requested is False

    def test_job_is_immutable(self):
        job = Job(id=1, queue_name="q", task_name="t", status=JobStatus.DOING)
        with pytest.raises(dataclasses.FrozenInstanceError):
            job.status = JobStatus.SUCCEEDED


class TestJobDetail:
    def test_detail_holds_events(self):
        job = Job(id=1, queue_name="q", task_name="t", status=JobStatus.SUCCEEDED)
        at = datetime(2025, 1, 1, tzinfo=timezone.utc)
        events = [
            JobEvent(id=1, job_id=1, type="deferred", at=at),
            JobEvent(id=2, job_id=1, type="started", at=at),
        ]
        detail = JobDetail(job=job, events=events)
        assert detail.job.id == 1
        assert [e.type for e in detail.events] == ["deferred", "started"]


class TestChangeEvent:
    def test_fields(self):
        event = ChangeEvent(type="job_inserted", job_id=42)
        assert event.type == "job_inserted"
        assert event.job_id == 42


class TestFillStatusCounts:
    def test_missing_statuses_are_zero(self):
        counts = fill_status_counts(
            [
                StatusCount(status=JobStatus.FAILED, count=2),
                StatusCount(status=JobStatus.TODO, count=5),
            ]
        )
        assert [c.status for c in counts] == JobStatus.display_order()
        by_status = {c.status: c.count for c in counts}
        assert by_status[JobStatus.TODO] == 5
        assert by_status[JobStatus.FAILED] == 2
        assert by_status[JobStatus.DOING] == 0
        assert by_status[JobStatus.ABORTED] == 0

    def test_total_is_preserved(self):
        partial = [
            StatusCount(status=JobStatus.DOING, count=3),
            StatusCount(status=JobStatus.SUCCEEDED, count=10),
        ]
        assert sum(c.count for c in fill_status_counts(partial)) == 13

    def test_empty(self):
        counts = fill_status_counts([])
        assert len(counts) == len(JobStatus)
        assert all(c.count == 0 for c in counts)
