"""
Tests for JobQueue.

Covers:
- Enqueue validation, FIFO execution and cancellation
- Failure capture and report storage
- Crash recovery of running jobs
- Progress save throttling and change listeners
- The background worker thread
"""

import json

import pytest

from localrag.localrag_exceptions import CorruptionError, ValidationError
from localrag.services.job_queue import Job, JobQueue, JobStatus
from localrag.services.rag_types import IngestReport

DOCS = "/home/user/docs"


class RecordingRunner:
    """Runner that records the jobs it was given and returns a report."""

    def __init__(self, fail_on=None):
        self.jobs = []
        self.fail_on = fail_on

    def __call__(self, job, progress):
        self.jobs.append(job)
        progress("Scanning directory...")
        if self.fail_on and job.collection == self.fail_on:
            raise RuntimeError("Ollama embed failed: 500")
        return IngestReport(collection=job.collection, source_path=job.path, processed=2)


@pytest.fixture
def queue_path(data_dir):
    return data_dir / "queue.json"


@pytest.fixture
def runner():
    return RecordingRunner()


@pytest.fixture
def queue(queue_path, runner):
    return JobQueue(queue_path, runner, poll_interval=0.05)


class TestEnqueue:
    """Tests for enqueue and queries."""

    def test_enqueue_creates_pending_job(self, queue, queue_path):
        """A new job is pending and persisted."""
        job = queue.enqueue(DOCS, "docs")
        assert job.status == JobStatus.PENDING
        assert job.progress == "In Queue"
        assert job.created_at
        assert len(job.id) == 32

        stored = json.loads(queue_path.read_text(encoding="utf-8"))
        assert stored[0]["id"] == job.id
        assert stored[0]["status"] == "pending"
        assert stored[0]["createdAt"] == job.created_at

    def test_ids_are_unique(self, queue):
        """Every job gets its own id."""
        ids = {queue.enqueue(DOCS, "docs").id for _ in range(5)}
        assert len(ids) == 5

    @pytest.mark.parametrize("path,collection", [
        ("relative/docs", "docs"),
        ("/home/user/../etc", "docs"),
        ("/etc/secrets", "docs"),
        (DOCS, "bad name"),
        (DOCS, ""),
    ])
    def test_validation(self, queue, path, collection):
        """Unsafe paths and bad collection names are refused."""
        with pytest.raises(ValidationError):
            queue.enqueue(path, collection)
        assert queue.get_jobs() == []

    def test_get_jobs_returns_copies(self, queue):
        """Mutating a returned job does not affect the queue."""
        job = queue.enqueue(DOCS, "docs")
        copy = queue.get_job(job.id)
        copy.status = JobStatus.FAILED
        assert queue.get_job(job.id).status == JobStatus.PENDING

    def test_get_unknown_job(self, queue):
        """Unknown ids return None."""
        assert queue.get_job("missing") is None

    def test_jobs_survive_restart(self, queue, queue_path, runner):
        """A new queue on the same file sees earlier jobs."""
        job = queue.enqueue(DOCS, "docs")
        reloaded = JobQueue(queue_path, runner)
        assert [j.id for j in reloaded.get_jobs()] == [job.id]


class TestExecution:
    """Tests for process_next."""

    def test_fifo_order(self, queue, runner):
        """Jobs run in the order they were queued."""
        first = queue.enqueue(DOCS, "first")
        second = queue.enqueue(DOCS, "second")
        assert queue.process_next().id == first.id
        assert queue.process_next().id == second.id
        assert queue.process_next() is None
        assert [j.collection for j in runner.jobs] == ["first", "second"]

    def test_success_stores_report(self, queue):
        """A finished job is complete and carries its report."""
        queue.enqueue(DOCS, "docs")
        job = queue.process_next()
        assert job.status == JobStatus.COMPLETE
        assert job.progress == "Complete"
        assert job.started_at and job.completed_at
        assert job.report["processed"] == 2
        assert job.is_finished

    def test_failure_is_recorded(self, queue_path):
        """A raising runner fails the job and the queue moves on."""
        queue = JobQueue(queue_path, RecordingRunner(fail_on="bad"))
        queue.enqueue(DOCS, "bad")
        queue.enqueue(DOCS, "good")

        failed = queue.process_next()
        assert failed.status == JobStatus.FAILED
        assert failed.error == "Ollama embed failed: 500"
        assert failed.progress == "Error: Ollama embed failed: 500"
        assert failed.completed_at

        assert queue.process_next().status == JobStatus.COMPLETE

    def test_cancel_pending(self, queue, runner):
        """Cancelled jobs are never run."""
        job = queue.enqueue(DOCS, "docs")
        assert queue.cancel(job.id) is True
        cancelled = queue.get_job(job.id)
        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.completed_at
        assert queue.process_next() is None
        assert runner.jobs == []

    def test_cancel_finished_or_unknown(self, queue):
        """Only pending jobs can be cancelled."""
        job = queue.enqueue(DOCS, "docs")
        queue.process_next()
        assert queue.cancel(job.id) is False
        assert queue.cancel("missing") is False
        assert queue.get_job(job.id).status == JobStatus.COMPLETE

    def test_runner_receives_copy(self, queue, runner):
        """The runner cannot mutate the stored job."""
        queue.enqueue(DOCS, "docs")
        queue.process_next()
        runner.jobs[0].status = JobStatus.FAILED
        assert queue.get_jobs()[0].status == JobStatus.COMPLETE


class TestCrashRecovery:
    """Tests for loading a queue left behind by a dead process."""

    def test_running_jobs_are_requeued(self, queue_path, runner):
        """Jobs found running are put back to pending and saved."""
        interrupted = Job(
            id="abc", path=DOCS, collection="docs", status=JobStatus.RUNNING,
            created_at="2024-01-01T00:00:00+00:00", started_at="2024-01-01T00:00:01+00:00",
            progress="Processing a.md (1/5)",
        )
        done = Job(id="old", path=DOCS, collection="docs", status=JobStatus.COMPLETE)
        queue_path.write_text(
            json.dumps([done.to_dict(), interrupted.to_dict()]), encoding="utf-8"
        )

        queue = JobQueue(queue_path, runner)
        job = queue.get_job("abc")
        assert job.status == JobStatus.PENDING
        assert job.started_at is None
        assert job.progress == "Requeued after restart"
        assert queue.get_job("old").status == JobStatus.COMPLETE

        stored = json.loads(queue_path.read_text(encoding="utf-8"))
        assert stored[1]["status"] == "pending"

        assert queue.process_next().id == "abc"

    def test_corrupt_queue_file(self, queue_path, runner):
        """An unparseable queue file raises CorruptionError."""
        queue_path.write_text("{", encoding="utf-8")
        with pytest.raises(CorruptionError):
            JobQueue(queue_path, runner)


class TestNotifications:
    """Tests for progress throttling and listeners."""

    def test_progress_saves_are_throttled(self, queue_path):
        """Progress-only updates are saved at most once per interval."""
        now = [0.0]

        def runner(job, progress):
            for t, message in [(0.0, "step 1"), (1.0, "step 2"), (3.0, "step 3")]:
                now[0] = t
                progress(message)
            return None

        queue = JobQueue(queue_path, runner, save_interval=2.0, clock=lambda: now[0])
        queue.enqueue(DOCS, "docs")
        seen = []
        queue.add_listener(lambda jobs: seen.append(jobs[0].progress))
        queue.process_next()

        assert seen == ["Starting", "step 1", "step 3", "Complete"]

    def test_listener_receives_copies(self, queue):
        """Listeners get a snapshot of all jobs after each change."""
        received = []
        queue.add_listener(received.append)
        job = queue.enqueue(DOCS, "docs")
        assert received[-1][0].id == job.id
        received[-1][0].status = JobStatus.FAILED
        assert queue.get_job(job.id).status == JobStatus.PENDING

    def test_failing_listener_is_ignored(self, queue):
        """A raising listener does not break queue operations."""
        def broken(jobs):
            raise RuntimeError("listener bug")

        queue.add_listener(broken)
        job = queue.enqueue(DOCS, "docs")
        assert queue.process_next().id == job.id

    def test_remove_listener(self, queue):
        """Removed listeners are no longer called."""
        received = []
        queue.add_listener(received.append)
        queue.remove_listener(received.append)
        queue.enqueue(DOCS, "docs")
        assert received == []


class TestWorkerThread:
    """Tests for the background worker."""

    def test_worker_drains_queue(self, queue):
        """The worker runs queued jobs until idle, then stops on request."""
        queue.start()
        try:
            assert queue.is_running
            first = queue.enqueue(DOCS, "first")
            second = queue.enqueue(DOCS, "second")
            assert queue.wait_idle(timeout=5.0)
        finally:
            assert queue.stop(timeout=5.0)

        assert not queue.is_running
        assert queue.get_job(first.id).status == JobStatus.COMPLETE
        assert queue.get_job(second.id).status == JobStatus.COMPLETE

    def test_start_twice_is_harmless(self, queue):
        """A second start does not spawn another worker."""
        queue.start()
        thread = queue._thread
        queue.start()
        assert queue._thread is thread
        assert queue.stop(timeout=5.0)

    def test_stop_without_start(self, queue):
        """Stopping an idle queue succeeds immediately."""
        assert queue.stop() is True
