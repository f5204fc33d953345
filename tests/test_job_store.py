"""Tests for the in-memory job registry."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from config import Settings
from errors import JobStateError
from job_store import COMPLETE, ERROR, PROCESSING, Job, JobStore


class TestJobStore:
    """Tests for JobStore."""

    def test_create_and_get(self):
        store = JobStore()
        store.create(Job(id="a", created_at=100.0))

        job = store.get("a")
        assert job.id == "a"
        assert job.status == PROCESSING
        assert "a" in store
        assert len(store) == 1

    def test_get_missing_returns_none(self):
        assert JobStore().get("missing") is None

    def test_get_returns_copy(self):
        store = JobStore()
        store.create(Job(id="a"))

        job = store.get("a")
        job.status = COMPLETE

        assert store.get("a").status == PROCESSING

    def test_duplicate_id_rejected(self):
        store = JobStore()
        store.create(Job(id="a"))
        with pytest.raises(ValueError, match="already exists"):
            store.create(Job(id="a"))

    def test_update_to_terminal_state(self):
        store = JobStore()
        store.create(Job(id="a"))

        job = store.update("a", status=COMPLETE, size_bytes=300_000, url="/videos/a.mp4")

        assert job.status == COMPLETE
        assert store.get("a").url == "/videos/a.mp4"

    def test_terminal_state_is_sticky(self):
        store = JobStore()
        store.create(Job(id="a"))
        store.update("a", status=ERROR, error="boom")

        with pytest.raises(JobStateError):
            store.update("a", status=PROCESSING)
        with pytest.raises(JobStateError):
            store.update("a", status=COMPLETE, size_bytes=1, url="x")
        assert store.get("a").status == ERROR

    def test_update_cannot_change_id(self):
        store = JobStore()
        store.create(Job(id="a"))
        with pytest.raises(ValueError):
            store.update("a", id="b")

    def test_update_missing_returns_none(self):
        assert JobStore().update("gone", status=ERROR, error="x") is None

    def test_evict_older_than(self):
        store = JobStore()
        store.create(Job(id="old", created_at=0.0))
        store.create(Job(id="new", created_at=5000.0))

        evicted = store.evict_older_than(3600, now=5000.0)

        assert [j.id for j in evicted] == ["old"]
        assert store.ids() == ["new"]

    def test_create_enforces_capacity_oldest_first(self):
        store = JobStore(max_jobs=3)
        for i in range(3):
            store.create(Job(id=f"job{i}", created_at=float(i)))

        evicted = store.create(Job(id="job3", created_at=3.0))

        assert [j.id for j in evicted] == ["job0"]
        assert len(store) == 3
        assert "job0" not in store

    def test_capacity_never_exceeded(self):
        store = JobStore(max_jobs=5)
        for i in range(20):
            store.create(Job(id=f"job{i}", created_at=float(i)))
            assert len(store) <= 5
        assert sorted(store.ids()) == sorted(f"job{i}" for i in range(15, 20))

    def test_evict_over_capacity(self):
        store = JobStore(max_jobs=10)
        for i in range(6):
            store.create(Job(id=f"job{i}", created_at=float(10 - i)))

        evicted = store.evict_over_capacity(4)

        # created_at decreases with i, so the highest indexes are the oldest
        assert [j.id for j in evicted] == ["job5", "job4"]
        assert len(store) == 4

    def test_counts(self):
        store = JobStore()
        store.create(Job(id="a"))
        store.create(Job(id="b"))
        store.update("b", status=ERROR, error="x")

        assert store.counts() == {"total": 2, "processing": 1, "complete": 0, "error": 1}


class TestJobPayload:
    """Tests for Job.to_dict status payloads."""

    def test_processing_payload(self):
        data = Job(id="a", caption="hi").to_dict()

        assert data["id"] == "a"
        assert data["status"] == "processing"
        assert data["caption"] == "hi"
        for key in ("url", "size_bytes", "error", "completed_at"):
            assert key not in data

    def test_complete_payload(self):
        job = Job(
            id="a", status=COMPLETE, created_at=0.0, completed_at=42.0,
            processing_time=42, size_bytes=307_200, url="/videos/a.mp4",
        )
        data = job.to_dict()

        assert data["url"] == "/videos/a.mp4"
        assert data["size_bytes"] == 307_200
        assert data["size_kb"] == 300
        assert data["processing_time"] == 42
        assert data["created_at"] == "1970-01-01T00:00:00+00:00"
        assert "error" not in data

    def test_error_payload(self):
        job = Job(id="a", status=ERROR, completed_at=1.0, processing_time=1, error="boom")
        data = job.to_dict()

        assert data["error"] == "boom"
        assert "url" not in data
        assert "size_bytes" not in data


class TestCapacitySetting:
    """The registry cap must allow at least one job."""

    def test_store_rejects_zero_capacity(self):
        with pytest.raises(ValueError, match="at least 1"):
            JobStore(max_jobs=0)

    def test_settings_reject_zero_capacity(self):
        with pytest.raises(PydanticValidationError):
            Settings(max_jobs=0)

    def test_single_slot_keeps_newest(self):
        store = JobStore(max_jobs=1)
        store.create(Job(id="a", created_at=1.0))

        evicted = store.create(Job(id="b", created_at=2.0))

        assert [j.id for j in evicted] == ["a"]
        assert store.ids() == ["b"]
