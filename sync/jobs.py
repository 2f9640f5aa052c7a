"""
Long-running job records: status, monotonic progress and an append-only log.

A job moves PENDING -> RUNNING -> COMPLETED | FAILED. Progress never goes
backwards and a terminal job cannot be changed. Every mutation is written
through to the store so pollers see it immediately.
"""

import time
import uuid
import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Callable

from sync.errors import JobStateError

logger = logging.getLogger(__name__)

PENDING = 'PENDING'
RUNNING = 'RUNNING'
COMPLETED = 'COMPLETED'
FAILED = 'FAILED'
TERMINAL_STATUSES = (COMPLETED, FAILED)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Job:
    def __init__(self, job_id: str, job_type: str, status: str = PENDING, progress: int = 0, config: Dict[str, Any] = None,
                 logs: List[Dict[str, Any]] = None, result: Dict[str, Any] = None, error: str = None,
                 created_at: str = None, started_at: str = None, completed_at: str = None, updated_at: str = None):
        self.id = job_id
        self.type = job_type
        self.status = status
        self.progress = int(progress or 0)
        self.config = config or {}
        self.logs = logs or []
        self.result = result
        self.error = error
        self.created_at = created_at
        self.started_at = started_at
        self.completed_at = completed_at
        self.updated_at = updated_at

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Job':
        return cls(
            row['id'], row['type'], row['status'], row.get('progress') or 0, row.get('config'), row.get('logs'),
            row.get('result'), row.get('error'), row.get('created_at'), row.get('started_at'), row.get('completed_at'),
            row.get('updated_at'),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type,
            'status': self.status,
            'progress': self.progress,
            'config': self.config,
            'logs': self.logs,
            'result': self.result,
            'error': self.error,
            'created_at': self.created_at,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'updated_at': self.updated_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Shape returned to pollers."""
        return {
            'id': self.id,
            'type': self.type,
            'status': self.status,
            'progress': self.progress,
            'result': self.result,
            'error': self.error,
            'logs': list(self.logs),
            'createdAt': self.created_at,
            'completedAt': self.completed_at,
        }


class JobOrchestrator:
    """Mutates one stored job. Obtain an id with ``create`` and wrap it."""

    def __init__(self, store, job_id: str):
        row = store.get_job(job_id)
        if row is None:
            raise JobStateError(f"job {job_id} not found")
        self.store = store
        self.job = Job.from_row(row)
        self._lock = threading.Lock()

    @staticmethod
    def create(store, job_type: str, config: Optional[Dict[str, Any]] = None) -> str:
        now = utc_now()
        job = Job(str(uuid.uuid4()), job_type, PENDING, 0, config or {}, created_at=now, updated_at=now)
        job.logs.append({'timestamp': now, 'level': 'info', 'message': 'Job created - waiting to start'})
        store.insert_job(job.to_row())
        logger.info("created %s job %s", job_type, job.id)
        return job.id

    @property
    def id(self) -> str:
        return self.job.id

    @property
    def progress(self) -> int:
        return self.job.progress

    def _check_mutable(self):
        if self.job.is_terminal:
            raise JobStateError(f"job {self.job.id} is already {self.job.status}")

    def _append(self, message: str, level: str):
        now = utc_now()
        self.job.logs.append({'timestamp': now, 'level': level, 'message': message})
        self.job.updated_at = now
        logger.log(logging.ERROR if level == 'error' else logging.WARNING if level == 'warn' else logging.INFO, "[job %s] %s", self.job.id[:8], message)

    def _save(self, *fields: str):
        row = self.job.to_row()
        self.store.update_job(self.job.id, {f: row[f] for f in fields + ('updated_at',)})

    def start(self, message: str = 'Job started'):
        with self._lock:
            self._check_mutable()
            if self.job.status == RUNNING:
                return
            self.job.status = RUNNING
            self.job.started_at = utc_now()
            self._append(message, 'info')
            self._save('status', 'started_at', 'logs')

    def advance(self, progress: int, message: Optional[str] = None):
        """Raise progress to ``progress`` (0..100), optionally logging ``message``."""
        progress = int(progress)
        with self._lock:
            self._check_mutable()
            if progress < self.job.progress or progress > 100:
                raise ValueError(f"progress must stay within [{self.job.progress}, 100], got {progress}")
            self.job.progress = progress
            if message:
                self._append(message, 'info')
            self.job.updated_at = utc_now()
            self._save('progress', 'logs')

    def log(self, message: str, level: str = 'info'):
        with self._lock:
            self._check_mutable()
            self._append(message, level)
            self._save('logs')

    def complete(self, result: Dict[str, Any]):
        with self._lock:
            self._check_mutable()
            self.job.status = COMPLETED
            self.job.progress = 100
            self.job.result = result
            self.job.completed_at = utc_now()
            self._append('Job completed', 'info')
            self._save('status', 'progress', 'result', 'completed_at', 'logs')

    def fail(self, error: str, result: Optional[Dict[str, Any]] = None):
        """Mark the job FAILED. Progress stays where it was; ``result`` keeps partial counts."""
        with self._lock:
            self._check_mutable()
            self.job.status = FAILED
            self.job.error = str(error)
            if result is not None:
                self.job.result = result
            self.job.completed_at = utc_now()
            self._append(f"Job failed: {error}", 'error')
            self._save('status', 'error', 'result', 'completed_at', 'logs')


def get_job(store, job_id: str) -> Optional[Job]:
    row = store.get_job(job_id)
    return Job.from_row(row) if row else None


def wait_for_job(store, job_id: str, interval: float = 2.0, max_attempts: int = 150, sleep: Callable[[float], None] = time.sleep) -> Job:
    """Poll until the job is terminal or ``max_attempts`` reads were made.

    Returns the last job state seen; giving up leaves the job running.
    """
    job = None
    for attempt in range(max(1, int(max_attempts))):
        job = get_job(store, job_id)
        if job is None:
            raise JobStateError(f"job {job_id} not found")
        if job.is_terminal:
            return job
        if attempt < max_attempts - 1:
            sleep(interval)
    logger.info("stopped waiting for job %s at %s%% (%s)", job_id, job.progress, job.status)
    return job
