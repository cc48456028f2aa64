from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

__all__ = ["JobStatus", "JobRecord", "JobConflictError", "JobTracker"]


class JobStatus(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobConflictError(RuntimeError):
    def __init__(self, vendor_id: str) -> None:
        self.vendor_id = vendor_id
        super().__init__(f"a job for {vendor_id} is already running")


@dataclass(frozen=True)
class JobRecord:
    vendor_id: str
    status: JobStatus = JobStatus.NOT_STARTED
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    download_count: int = 0
    error: Optional[str] = None
    run_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "vendor_id": self.vendor_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "download_count": self.download_count,
            "error": self.error,
            "run_id": self.run_id,
        }


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobTracker:
    """Per-vendor job status with an atomic check-and-set start."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: Dict[str, JobRecord] = {}

    def try_start(self, vendor_id: str, *, run_id: str | None = None) -> JobRecord:
        with self._lock:
            current = self._jobs.get(vendor_id)
            if current is not None and current.status is JobStatus.RUNNING:
                raise JobConflictError(vendor_id)
            record = JobRecord(vendor_id=vendor_id, status=JobStatus.RUNNING, started_at=_now(), run_id=run_id)
            self._jobs[vendor_id] = record
            return record

    def _finish(self, vendor_id: str, **changes: Any) -> JobRecord:
        with self._lock:
            current = self._jobs.get(vendor_id) or JobRecord(vendor_id=vendor_id)
            record = replace(current, finished_at=_now(), **changes)
            self._jobs[vendor_id] = record
            return record

    def mark_completed(self, vendor_id: str, download_count: int) -> JobRecord:
        return self._finish(vendor_id, status=JobStatus.COMPLETED, download_count=download_count, error=None)

    def mark_failed(self, vendor_id: str, error: str) -> JobRecord:
        return self._finish(vendor_id, status=JobStatus.FAILED, error=error)

    def get(self, vendor_id: str) -> JobRecord:
        with self._lock:
            return self._jobs.get(vendor_id) or JobRecord(vendor_id=vendor_id)

    def is_running(self, vendor_id: str) -> bool:
        return self.get(vendor_id).status is JobStatus.RUNNING

    def snapshot(self) -> Dict[str, JobRecord]:
        with self._lock:
            return dict(self._jobs)
