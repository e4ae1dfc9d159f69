"""
Job Queue - in-memory background jobs on the running event loop.

Jobs are ordered by priority (lower number first, FIFO within a priority),
run by the handler registered for their type, time-boxed with
``asyncio.wait_for`` and retried with exponential back-off. Everything runs
on one event loop, so queue mutations need no locking; the worker task only
decides *when* a job starts.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Any, Awaitable, Callable

from loguru import logger

from brainlane.config import settings


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobType(str, Enum):
    PROJECT_SCAN = "project_scan"
    AI_ANALYSIS = "ai_analysis"
    TASK_GENERATION = "task_generation"
    FILE_GENERATION = "file_generation"
    DEPLOYMENT_PREP = "deployment_prep"


class JobPriority(IntEnum):
    CRITICAL = 1
    HIGH = 2
    NORMAL = 3
    LOW = 4


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class Job:
    type: str
    data: Any
    priority: int = JobPriority.NORMAL
    max_retries: int = 3
    timeout: float = 300.0
    user_id: str | None = None
    project_id: str | None = None
    id: str = field(default_factory=lambda: f"job_{uuid.uuid4().hex[:12]}")

    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    result: Any = None
    error: str | None = None
    retry_count: int = 0

    created_at: datetime = field(default_factory=_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime = field(default_factory=_now)

    logs: list[dict[str, str]] = field(default_factory=list)
    metrics: dict[str, float | None] = field(
        default_factory=lambda: {"queue_time": None, "process_time": None, "total_time": None}
    )

    def log(self, message: str, level: str = "info") -> None:
        self.updated_at = _now()
        self.logs.append({"timestamp": self.updated_at.isoformat(), "level": level, "message": message})

    def to_dict(self, include_result: bool = True) -> dict[str, Any]:
        job_type = self.type.value if isinstance(self.type, Enum) else self.type
        return {
            "id": self.id,
            "type": job_type,
            "priority": int(self.priority),
            "status": self.status.value,
            "progress": self.progress,
            "result": self.result if include_result else None,
            "error": self.error,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "user_id": self.user_id,
            "project_id": self.project_id,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "updated_at": _iso(self.updated_at),
            "logs": list(self.logs),
            "metrics": dict(self.metrics),
        }


class JobContext:
    """Handle given to a job handler for progress, logging and cancellation checks."""

    def __init__(self, job: Job) -> None:
        self.job = job

    def update_progress(self, progress: float, message: str | None = None) -> None:
        # 100 is reserved for the queue, once the job has actually settled
        self.job.progress = min(99, max(0, int(progress)))
        self.job.updated_at = _now()
        if message:
            self.job.log(message)

    def log(self, message: str, level: str = "info") -> None:
        self.job.log(message, level)

    def is_cancelled(self) -> bool:
        return self.job.status == JobStatus.CANCELLED


JobHandler = Callable[[Any, JobContext], Awaitable[Any]]
JobListener = Callable[[Job], Any]


class JobQueue:
    def __init__(
        self,
        name: str = "brainlane-jobs",
        *,
        concurrency: int | None = None,
        default_timeout: float | None = None,
        default_max_retries: int | None = None,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        poll_interval: float = 0.5,
    ) -> None:
        self.name = name
        self.concurrency = concurrency or settings.job_queue_concurrency
        self.default_timeout = default_timeout or settings.job_timeout
        self.default_max_retries = (
            default_max_retries if default_max_retries is not None else settings.job_max_retries
        )
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.poll_interval = poll_interval

        self._queue: list[Job] = []
        self._active: dict[str, Job] = {}
        self._finished: dict[str, Job] = {}
        self._processors: dict[str, JobHandler] = {}
        self._listeners: dict[str, list[JobListener]] = {}

        self._worker: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._retrying: dict[str, tuple[Job, asyncio.TimerHandle]] = {}
        self._wakeup = asyncio.Event()

        self.stats: dict[str, float] = {
            "total_jobs_processed": 0,
            "total_jobs_failed": 0,
            "average_process_time": 0.0,
        }

    # -----------------------------------------------------------------------
    # Registration / submission
    # -----------------------------------------------------------------------

    def process(self, job_type: str, handler: JobHandler) -> None:
        self._processors[str(getattr(job_type, "value", job_type))] = handler
        logger.info("📋 Registered processor for: {}", getattr(job_type, "value", job_type))

    def add(
        self,
        job_type: str,
        data: Any,
        *,
        priority: int = JobPriority.NORMAL,
        max_retries: int | None = None,
        timeout: float | None = None,
        user_id: str | None = None,
        project_id: str | None = None,
    ) -> Job:
        job = Job(
            type=str(getattr(job_type, "value", job_type)),
            data=data,
            priority=int(priority),
            max_retries=self.default_max_retries if max_retries is None else max_retries,
            timeout=timeout or self.default_timeout,
            user_id=user_id,
            project_id=project_id,
        )
        job.log(f"Job created: {job.type}")
        self._enqueue(job)
        self._emit("added", job)
        logger.info("📥 Job added: {} ({}) - queue size: {}", job.id, job.type, len(self._queue))
        return job

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    def get_job(self, job_id: str) -> Job | None:
        if job_id in self._active:
            return self._active[job_id]
        if job_id in self._retrying:
            return self._retrying[job_id][0]
        for job in self._queue:
            if job.id == job_id:
                return job
        return self._finished.get(job_id)

    def jobs_for_project(self, project_id: str) -> list[Job]:
        jobs = [j for j in (*self._queue, *self._active.values(), *(j for j, _ in self._retrying.values()),
                          *self._finished.values())
                if j.project_id == project_id]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def get_status(self) -> dict[str, Any]:
        return {
            "queue_size": len(self._queue),
            "active_jobs": len(self._active),
            "retrying_jobs": len(self._retrying),
            "completed_jobs": len(self._finished),
            "stats": dict(self.stats),
            "processors": list(self._processors),
            "running": self._worker is not None and not self._worker.done(),
        }

    # -----------------------------------------------------------------------
    # Control
    # -----------------------------------------------------------------------

    def cancel(self, job_id: str) -> bool:
        """
        Cancel a queued or retry-waiting job outright, or flag a running one.

        A running handler sees the flag through ``JobContext.is_cancelled``;
        whatever it returns afterwards is discarded.
        """
        job = self.get_job(job_id)
        if job is None:
            return False

        if job.status == JobStatus.QUEUED:
            retrying = self._retrying.pop(job_id, None)
            if retrying is not None:
                retrying[1].cancel()
            self._queue = [j for j in self._queue if j.id != job_id]
            job.status = JobStatus.CANCELLED
            job.completed_at = _now()
            job.log("Job cancelled by user", "warn")
            self._finished[job.id] = job
            self._emit("cancelled", job)
            return True

        if job.status == JobStatus.RUNNING:
            job.status = JobStatus.CANCELLED
            job.log("Job cancellation requested", "warn")
            return True

        return False

    def retry(self, job_id: str) -> Job | None:
        """Requeue a failed job by hand."""
        job = self._finished.get(job_id)
        if job is None or job.status != JobStatus.FAILED:
            return None

        job.status = JobStatus.QUEUED
        job.progress = 0
        job.error = None
        job.retry_count += 1
        job.log(f"Manual retry requested (attempt {job.retry_count + 1})")
        del self._finished[job_id]
        self._enqueue(job)
        self._emit("retried", job)
        return job

    def on(self, event: str, callback: JobListener) -> Callable[[], None]:
        self._listeners.setdefault(event, []).append(callback)
        return lambda: self.off(event, callback)

    def off(self, event: str, callback: JobListener) -> None:
        listeners = self._listeners.get(event, [])
        if callback in listeners:
            listeners.remove(callback)

    def clear_old_jobs(self, max_age: timedelta = timedelta(hours=24)) -> int:
        cutoff = _now() - max_age
        stale = [jid for jid, j in self._finished.items() if j.completed_at and j.completed_at < cutoff]
        for jid in stale:
            del self._finished[jid]
        if stale:
            logger.info("🧹 Cleared {} old jobs", len(stale))
        return len(stale)

    # -----------------------------------------------------------------------
    # Processing
    # -----------------------------------------------------------------------

    async def run_next(self) -> Job | None:
        """Run the next queued job to completion; ``None`` when the queue is empty."""
        if not self._queue:
            return None
        job = self._queue.pop(0)
        await self._execute(job)
        return job

    async def start(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        self._worker = asyncio.create_task(self._run_worker(), name=f"{self.name}-worker")
        logger.info("🚀 Job queue '{}' started (concurrency={})", self.name, self.concurrency)

    async def stop(self) -> None:
        for _, handle in self._retrying.values():
            handle.cancel()
        self._retrying.clear()

        pending = [t for t in (self._worker, *self._tasks) if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._worker = None
        logger.info("🛑 Job queue '{}' stopped", self.name)

    async def _run_worker(self) -> None:
        while True:
            while self._queue and len(self._tasks) < self.concurrency:
                job = self._queue.pop(0)
                task = asyncio.create_task(self._execute(job), name=f"job-{job.id}")
                self._tasks.add(task)
                task.add_done_callback(self._on_task_done)
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._wakeup.set()

    async def _execute(self, job: Job) -> None:
        handler = self._processors.get(job.type)
        if handler is None:
            job.status = JobStatus.FAILED
            job.error = f"No processor registered for job type: {job.type}"
            job.log(job.error, "error")
            job.started_at = job.started_at or _now()
            self.stats["total_jobs_failed"] += 1
            self._complete(job)
            return

        self._active[job.id] = job
        job.status = JobStatus.RUNNING
        job.started_at = _now()
        job.metrics["queue_time"] = (job.started_at - job.created_at).total_seconds()
        job.log("Job started")
        self._emit("started", job)

        try:
            result = await asyncio.wait_for(handler(job.data, JobContext(job)), timeout=job.timeout)
        except asyncio.CancelledError:
            job.error = "Job interrupted by queue shutdown"
            job.log(job.error, "warn")
            job.status = JobStatus.CANCELLED
            self._complete(job)
            raise
        except asyncio.TimeoutError:
            job.error = f"Job timed out after {job.timeout}s"
            job.log(job.error, "error")
            if job.status != JobStatus.CANCELLED:
                job.status = JobStatus.FAILED
                self.stats["total_jobs_failed"] += 1
            self._complete(job)
            return
        except Exception as exc:
            job.error = str(exc) or exc.__class__.__name__
            job.log(f"Job failed: {job.error}", "error")
            if job.status == JobStatus.CANCELLED:
                self._complete(job)
                return
            if job.retry_count < job.max_retries:
                self._schedule_retry(job)
                return
            logger.error("❌ Job {} failed permanently: {}", job.id, job.error)
            job.status = JobStatus.FAILED
            self.stats["total_jobs_failed"] += 1
            self._complete(job)
            return

        if job.status == JobStatus.CANCELLED:
            job.log("Job was cancelled during processing", "warn")
            self._complete(job)
            return

        job.status = JobStatus.COMPLETE
        job.result = result
        job.log("Job completed successfully")
        self.stats["total_jobs_processed"] += 1
        self._complete(job)

    def _schedule_retry(self, job: Job) -> None:
        job.retry_count += 1
        job.status = JobStatus.QUEUED
        job.log(f"Retrying (attempt {job.retry_count + 1}/{job.max_retries + 1})")
        self._active.pop(job.id, None)

        delay = min(self.retry_base_delay * 2 ** job.retry_count, self.retry_max_delay)

        def requeue() -> None:
            if self._retrying.pop(job.id, None) is None or job.status != JobStatus.QUEUED:
                return
            self._enqueue(job)
            self._emit("retried", job)

        handle = asyncio.get_running_loop().call_later(delay, requeue)
        self._retrying[job.id] = (job, handle)
        logger.warning("🔁 Job {} retry {} in {:.1f}s", job.id, job.retry_count, delay)

    def _complete(self, job: Job) -> None:
        job.completed_at = _now()
        if job.started_at:
            job.metrics["process_time"] = (job.completed_at - job.started_at).total_seconds()
        job.metrics["total_time"] = (job.completed_at - job.created_at).total_seconds()
        if job.status == JobStatus.COMPLETE:
            job.progress = 100

        self._active.pop(job.id, None)
        self._finished[job.id] = job

        settled = self.stats["total_jobs_processed"] + self.stats["total_jobs_failed"]
        process_time = job.metrics["process_time"]
        if settled > 0 and process_time is not None:
            self.stats["average_process_time"] = (
                self.stats["average_process_time"] * (settled - 1) + process_time
            ) / settled

        event = {
            JobStatus.COMPLETE: "completed",
            JobStatus.CANCELLED: "cancelled",
        }.get(job.status, "failed")
        self._emit(event, job)
        self._wakeup.set()
        logger.info("📤 Job {}: {} ({}s)", job.status.value, job.id, job.metrics["process_time"])

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _enqueue(self, job: Job) -> None:
        index = next((i for i, queued in enumerate(self._queue) if queued.priority > job.priority), None)
        if index is None:
            self._queue.append(job)
        else:
            self._queue.insert(index, job)
        self._wakeup.set()

    def _emit(self, event: str, job: Job) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                callback(job)
            except Exception:
                logger.exception("Job listener error ({})", event)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_job_queue: JobQueue | None = None


def get_job_queue() -> JobQueue:
    """Return the process-level JobQueue singleton."""
    global _job_queue
    if _job_queue is None:
        _job_queue = JobQueue()
    return _job_queue
