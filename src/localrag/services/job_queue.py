"""
Job Queue - crash-safe, single-worker queue of ingestion jobs.

Jobs move pending -> running -> complete | failed, or pending -> cancelled.
The whole queue is rewritten (atomically) to <data_dir>/queue.json after
every state change, so a restart resumes where the process died: jobs
found "running" on load are put back to "pending".
"""

import json
import threading
import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from ..localrag_exceptions import CorruptionError, FileIOError
from ..logging_config import configure_logger_for_debug_trace
from .utils import atomic_write_json, validate_collection_name, validate_source_path

logger = configure_logger_for_debug_trace(__name__)

PROGRESS_SAVE_INTERVAL = 2.0


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Job:
    """
    One queued ingestion request.

    ::: This is a value-object.
    """
    id: str
    path: str
    collection: str
    status: JobStatus = JobStatus.PENDING
    created_at: str = ""
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    progress: str = "In Queue"
    error: Optional[str] = None
    report: Optional[Dict[str, Any]] = None

    @property
    def is_finished(self) -> bool:
        return self.status in (JobStatus.COMPLETE, JobStatus.FAILED, JobStatus.CANCELLED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "path": self.path,
            "collection": self.collection,
            "status": self.status.value,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "progress": self.progress,
            "error": self.error,
            "report": self.report,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=str(data["id"]),
            path=data["path"],
            collection=data["collection"],
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            created_at=data.get("createdAt", ""),
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
            progress=data.get("progress", ""),
            error=data.get("error"),
            report=data.get("report"),
        )


# runner(job, progress) -> report (an IngestReport, a dict, or None)
JobRunner = Callable[[Job, Callable[[str], None]], Any]
JobListener = Callable[[List[Job]], None]


class JobQueue:
    """
    Persistent FIFO of ingestion jobs executed by one worker thread.

    ::: This is-in-layer Service-Layer.
    ::: This is a task.
    ::: This is stateful.
    ::: This is thread-safe.
    """

    def __init__(
        self,
        path: Union[str, Path],
        runner: JobRunner,
        save_interval: float = PROGRESS_SAVE_INTERVAL,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            path: Queue file (JSON array of jobs)
            runner: Called with (job, progress_callback) for each job
            save_interval: Minimum seconds between progress-only saves
            poll_interval: Seconds the idle worker sleeps between checks
            clock: Monotonic time source for progress throttling
        """
        self.path = Path(path)
        self._runner = runner
        self._save_interval = save_interval
        self._poll_interval = poll_interval
        self._clock = clock

        self._jobs: List[Job] = []
        self._listeners: List[JobListener] = []
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._busy = False
        self._last_progress_save = float("-inf")

        self._load()

    # --- Persistence ---

    def _load(self) -> None:
        """
        Raises:
            CorruptionError: If the queue file is not a JSON array of jobs
        """
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            jobs = [Job.from_dict(item) for item in raw]
        except OSError as e:
            raise FileIOError(f"Failed to read job queue ({e})", str(self.path)) from e
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise CorruptionError(f"Malformed job queue {self.path}: {e}") from e

        requeued = 0
        for job in jobs:
            if job.status == JobStatus.RUNNING:
                job.status = JobStatus.PENDING
                job.started_at = None
                job.progress = "Requeued after restart"
                requeued += 1

        self._jobs = jobs
        logger.info(f"[JobQueue] Loaded {len(jobs)} jobs from {self.path}")
        if requeued:
            logger.warning(f"[JobQueue] Requeued {requeued} interrupted job(s)")
            self._save()

    def _save(self) -> None:
        """Persist all jobs and notify listeners. Caller holds the lock."""
        atomic_write_json(self.path, [job.to_dict() for job in self._jobs])
        self._changed.notify_all()
        snapshot = [replace(job) for job in self._jobs]
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"[JobQueue] Listener failed: {e}")

    # --- Public API ---

    def add_listener(self, callback: JobListener) -> None:
        with self._lock:
            self._listeners.append(callback)

    def remove_listener(self, callback: JobListener) -> None:
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)

    def enqueue(self, path: str, collection: str) -> Job:
        """
        Queue an ingestion of `path` into `collection`.

        Raises:
            ValidationError: Unsafe path or invalid collection name
        """
        validate_collection_name(collection)
        validate_source_path(path)

        job = Job(
            id=uuid.uuid4().hex,
            path=path,
            collection=collection,
            created_at=_now_iso(),
        )
        with self._lock:
            self._jobs.append(job)
            self._save()
        logger.info(f"[JobQueue] Enqueued job {job.id}: {path} -> {collection}")
        self._wake.set()
        return replace(job)

    def cancel(self, job_id: str) -> bool:
        """Cancel a pending job. Running and finished jobs are left alone."""
        with self._lock:
            job = self._find(job_id)
            if job is None or job.status != JobStatus.PENDING:
                return False
            job.status = JobStatus.CANCELLED
            job.progress = "Cancelled"
            job.completed_at = _now_iso()
            self._save()
        logger.info(f"[JobQueue] Cancelled job {job_id}")
        return True

    def get_jobs(self) -> List[Job]:
        with self._lock:
            return [replace(job) for job in self._jobs]

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._find(job_id)
            return replace(job) if job else None

    def _find(self, job_id: str) -> Optional[Job]:
        for job in self._jobs:
            if job.id == job_id:
                return job
        return None

    def _pending(self) -> Optional[Job]:
        for job in self._jobs:
            if job.status == JobStatus.PENDING:
                return job
        return None

    def _update_progress(self, job: Job, message: str) -> None:
        with self._lock:
            job.progress = message
            now = self._clock()
            if now - self._last_progress_save >= self._save_interval:
                self._last_progress_save = now
                self._save()

    # --- Execution ---

    def process_next(self) -> Optional[Job]:
        """
        Run the oldest pending job to completion on the calling thread.

        Returns:
            The finished job, or None if nothing was pending
        """
        with self._lock:
            job = self._pending()
            if job is None:
                return None
            job.status = JobStatus.RUNNING
            job.started_at = _now_iso()
            job.progress = "Starting"
            self._save()
            self._busy = True

        logger.info(f"[JobQueue] Starting job {job.id}: {job.path}")
        try:
            report = self._runner(replace(job), lambda message: self._update_progress(job, message))
        except Exception as e:
            logger.error(f"[JobQueue] Job {job.id} failed: {e}", exc_info=True)
            with self._lock:
                job.status = JobStatus.FAILED
                job.error = str(e)
                job.progress = f"Error: {e}"
        else:
            with self._lock:
                job.status = JobStatus.COMPLETE
                job.progress = "Complete"
                job.report = report.to_dict() if hasattr(report, "to_dict") else report
            logger.info(f"[JobQueue] Job {job.id} complete")
        finally:
            with self._lock:
                job.completed_at = _now_iso()
                self._busy = False
                self._save()

        return replace(job)

    def start(self) -> None:
        """Start the worker thread (non-blocking)."""
        if self._thread is not None and self._thread.is_alive():
            logger.debug("[JobQueue] Worker already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._worker_loop,
            name="LocalRagIngestWorker",
            daemon=True,
        )
        self._thread.start()

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            self._wake.clear()
            try:
                job = self.process_next()
            except Exception as e:
                logger.error(f"[JobQueue] Worker error: {e}", exc_info=True)
                job = None
            if job is None:
                self._wake.wait(self._poll_interval)

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Ask the worker to exit after its current job.

        Returns:
            True if the worker has stopped
        """
        self._stop.set()
        self._wake.set()
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no job is pending or running.

        Returns:
            False if the timeout expired first
        """
        with self._changed:
            return self._changed.wait_for(
                lambda: not self._busy and self._pending() is None, timeout
            )
