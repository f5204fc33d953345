# job_store.py
import dataclasses
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from errors import JobStateError

PROCESSING = "processing"
COMPLETE = "complete"
ERROR = "error"
TERMINAL_STATES = (COMPLETE, ERROR)


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class Job:
    id: str
    status: str = PROCESSING
    created_at: float = dataclasses.field(default_factory=time.time)
    caption: Optional[str] = None
    completed_at: Optional[float] = None
    processing_time: Optional[int] = None
    size_bytes: Optional[int] = None
    url: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def to_dict(self) -> dict:
        """Status payload; only the fields belonging to the current state are included."""
        data = {
            "id": self.id,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "caption": self.caption,
        }
        if self.status == COMPLETE:
            data.update({
                "url": self.url,
                "size_bytes": self.size_bytes,
                "size_kb": round(self.size_bytes / 1024),
            })
        elif self.status == ERROR:
            data["error"] = self.error
        if self.is_terminal:
            data["completed_at"] = _iso(self.completed_at)
            data["processing_time"] = self.processing_time
        return data


class JobStore:
    """In-memory job registry. Callers only ever see copies of the stored jobs."""

    def __init__(self, max_jobs: int = 100):
        if max_jobs < 1:
            raise ValueError("max_jobs must be at least 1")
        self.max_jobs = max_jobs
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def create(self, job: Job) -> List[Job]:
        """Insert a new job, evicting the oldest entries to stay within ``max_jobs``.

        Returns the evicted jobs so their files can be reclaimed.
        """
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job with ID '{job.id}' already exists")
            evicted = self._evict_oldest(self.max_jobs - 1)
            self._jobs[job.id] = dataclasses.replace(job)
        return evicted

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return dataclasses.replace(job) if job else None

    def update(self, job_id: str, **changes) -> Optional[Job]:
        """Apply ``changes`` to a processing job. Returns None if the job is gone."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if job.is_terminal:
                raise JobStateError(f"Job {job_id} is already {job.status}")
            if "id" in changes or "created_at" in changes:
                raise ValueError("id and created_at are immutable")
            updated = dataclasses.replace(job, **changes)
            self._jobs[job_id] = updated
            return dataclasses.replace(updated)

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._jobs)

    def counts(self) -> dict:
        with self._lock:
            counts = {"total": len(self._jobs), PROCESSING: 0, COMPLETE: 0, ERROR: 0}
            for job in self._jobs.values():
                counts[job.status] += 1
            return counts

    def evict_older_than(self, max_age: float, now: Optional[float] = None) -> List[Job]:
        now = time.time() if now is None else now
        with self._lock:
            stale = [job for job in self._jobs.values() if now - job.created_at > max_age]
            for job in stale:
                del self._jobs[job.id]
        return sorted(stale, key=lambda j: j.created_at)

    def evict_over_capacity(self, max_count: Optional[int] = None) -> List[Job]:
        max_count = self.max_jobs if max_count is None else max_count
        with self._lock:
            return self._evict_oldest(max_count)

    def _evict_oldest(self, keep: int) -> List[Job]:
        # caller holds the lock
        excess = len(self._jobs) - keep
        if excess <= 0:
            return []
        oldest = sorted(self._jobs.values(), key=lambda j: j.created_at)[:excess]
        for job in oldest:
            del self._jobs[job.id]
        return oldest
