"""Durable sync job queue backed by the ``sync_jobs`` table.

Jobs are claimed with a conditional UPDATE so a job runs on exactly one
worker at a time. Priority only orders claiming ("high" before "normal");
two jobs for the same source event may still run concurrently.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import sessionmaker

from calmirror.config import settings
from calmirror.errors import NonRetryableError
from calmirror.models.sync_job import JobState, SyncJob

logger = logging.getLogger(__name__)

JOB_NAME = "syncEvent"
PRIORITY_VALUES = {"immediate": 1, "high": 1, "normal": 10}

JobHandler = Callable[[dict[str, Any], str], Optional[dict[str, Any]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class JobHandle:
    job_id: str
    priority: int
    state: str
    attempts: int = 0
    last_error: Optional[str] = None
    result: Optional[dict[str, Any]] = None


def _handle(job: SyncJob) -> JobHandle:
    return JobHandle(
        job_id=job.job_id,
        priority=job.priority,
        state=job.state.value,
        attempts=job.attempts,
        last_error=job.last_error,
        result=job.result,
    )


class SyncJobQueue:
    def __init__(
        self,
        session_factory: sessionmaker,
        handler: JobHandler,
        concurrency: int = settings.QUEUE_CONCURRENCY,
        max_attempts: int = settings.QUEUE_MAX_ATTEMPTS,
        backoff_seconds: float = settings.QUEUE_BACKOFF_SECONDS,
        normal_delay_seconds: float = settings.QUEUE_NORMAL_DELAY_SECONDS,
        poll_interval: float = settings.QUEUE_POLL_INTERVAL_SECONDS,
        keep_completed: int = settings.QUEUE_KEEP_COMPLETED,
        keep_failed: int = settings.QUEUE_KEEP_FAILED,
        now_fn: Callable[[], datetime] = _utcnow,
    ):
        self.session_factory = session_factory
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.normal_delay_seconds = normal_delay_seconds
        self.poll_interval = poll_interval
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.now_fn = now_fn
        self._stop = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None

    # ── Producer side ───────────────────────────────────────────────

    def enqueue(self, event_data: dict[str, Any], source_calendar_id: str, priority: str = "normal") -> JobHandle:
        if priority not in PRIORITY_VALUES:
            raise ValueError(f"Unknown priority '{priority}'")
        now = self.now_fn()
        delay = self.normal_delay_seconds if priority == "normal" else 0.0
        with self.session_factory() as db:
            job = SyncJob(
                name=JOB_NAME,
                event_data=event_data,
                source_calendar_id=source_calendar_id,
                priority=PRIORITY_VALUES[priority],
                state=JobState.waiting,
                attempts=0,
                max_attempts=self.max_attempts,
                run_after=now + timedelta(seconds=delay),
                created_at=now,
            )
            db.add(job)
            db.commit()
            handle = _handle(job)
        logger.debug("Queued %s job %s for event %s", priority, handle.job_id, event_data.get("id"))
        return handle

    def get_job(self, job_id: str) -> Optional[JobHandle]:
        with self.session_factory() as db:
            job = db.get(SyncJob, job_id)
            return _handle(job) if job else None

    def get_queue_status(self) -> dict[str, int]:
        now = self.now_fn()
        with self.session_factory() as db:
            counts = dict(db.query(SyncJob.state, func.count()).group_by(SyncJob.state).all())
            delayed = (
                db.query(func.count())
                .select_from(SyncJob)
                .filter(SyncJob.state == JobState.waiting, SyncJob.run_after > now)
                .scalar()
            )
        return {
            "waiting": counts.get(JobState.waiting, 0) - delayed,
            "delayed": delayed,
            "active": counts.get(JobState.active, 0),
            "completed": counts.get(JobState.completed, 0),
            "failed": counts.get(JobState.failed, 0),
        }

    # ── Consumer side ───────────────────────────────────────────────

    def process_next(self) -> Optional[str]:
        """Claim and run one due job. Returns its id, or None if nothing is due."""
        job = self._claim()
        if job is None:
            return None
        self._run(job)
        return job.job_id

    def _claim(self) -> Optional[SyncJob]:
        now = self.now_fn()
        with self.session_factory() as db:
            candidates = (
                db.query(SyncJob.job_id)
                .filter(SyncJob.state == JobState.waiting, SyncJob.run_after <= now)
                .order_by(SyncJob.priority, SyncJob.run_after, SyncJob.created_at)
                .limit(self.concurrency)
                .all()
            )
            for (job_id,) in candidates:
                claimed = db.execute(
                    update(SyncJob)
                    .where(SyncJob.job_id == job_id, SyncJob.state == JobState.waiting)
                    .values(state=JobState.active, attempts=SyncJob.attempts + 1)
                )
                db.commit()
                if claimed.rowcount == 1:
                    job = db.get(SyncJob, job_id)
                    db.expunge(job)
                    return job
        return None

    def _run(self, job: SyncJob) -> None:
        event_id = (job.event_data or {}).get("id")
        logger.info("Processing sync for event %s from %s (attempt %d/%d)",
                    event_id, job.source_calendar_id, job.attempts, job.max_attempts)
        try:
            result = self.handler(job.event_data, job.source_calendar_id)
        except NonRetryableError as exc:
            logger.error("Job %s failed permanently: %s", job.job_id, exc)
            self._finish(job.job_id, JobState.failed, error=str(exc))
            return
        except Exception as exc:
            if job.attempts < job.max_attempts:
                delay = self.backoff_seconds * (2 ** (job.attempts - 1))
                logger.warning("Job %s failed (attempt %d/%d), retrying in %.1fs: %s",
                               job.job_id, job.attempts, job.max_attempts, delay, exc)
                self._retry_later(job.job_id, delay, str(exc))
            else:
                logger.error("Job %s failed after %d attempts: %s", job.job_id, job.attempts, exc)
                self._finish(job.job_id, JobState.failed, error=str(exc))
            return
        logger.info("Job %s completed for event %s", job.job_id, event_id)
        self._finish(job.job_id, JobState.completed, result={"status": "completed", "eventId": event_id, **(result or {})})

    def _retry_later(self, job_id: str, delay: float, error: str) -> None:
        with self.session_factory() as db:
            job = db.get(SyncJob, job_id)
            job.state = JobState.waiting
            job.run_after = self.now_fn() + timedelta(seconds=delay)
            job.last_error = error
            db.commit()

    def _finish(self, job_id: str, state: JobState, error: Optional[str] = None, result: Optional[dict] = None) -> None:
        with self.session_factory() as db:
            job = db.get(SyncJob, job_id)
            job.state = state
            job.finished_at = self.now_fn()
            job.last_error = error
            job.result = result
            db.commit()
        self._prune(state, self.keep_completed if state == JobState.completed else self.keep_failed)

    def _prune(self, state: JobState, keep: int) -> None:
        """Drop finished jobs of ``state`` beyond the ``keep`` most recent."""
        with self.session_factory() as db:
            stale = (
                db.query(SyncJob.job_id)
                .filter(SyncJob.state == state)
                .order_by(SyncJob.finished_at.desc(), SyncJob.created_at.desc())
                .offset(keep)
                .all()
            )
            if stale:
                db.query(SyncJob).filter(SyncJob.job_id.in_([j for (j,) in stale])).delete(synchronize_session=False)
                db.commit()

    # ── Worker pool ─────────────────────────────────────────────────

    def start(self) -> None:
        """Recover jobs orphaned by a previous process and start the workers.

        Orphans with attempts left are requeued; those interrupted on their
        last attempt are failed.
        """
        if self._executor is not None:
            return
        with self.session_factory() as db:
            exhausted = (
                db.query(SyncJob)
                .filter(SyncJob.state == JobState.active, SyncJob.attempts >= SyncJob.max_attempts)
                .update(
                    {
                        SyncJob.state: JobState.failed,
                        SyncJob.finished_at: self.now_fn(),
                        SyncJob.last_error: "Worker stopped during the final attempt",
                    },
                    synchronize_session=False,
                )
            )
            recovered = (
                db.query(SyncJob)
                .filter(SyncJob.state == JobState.active)
                .update({SyncJob.state: JobState.waiting}, synchronize_session=False)
            )
            db.commit()
        if exhausted:
            logger.error("Failed %d jobs interrupted on their final attempt", exhausted)
            self._prune(JobState.failed, self.keep_failed)
        if recovered:
            logger.warning("Requeued %d jobs left active by a previous run", recovered)

        self._stop.clear()
        self._executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="calmirror-worker")
        for _ in range(self.concurrency):
            self._executor.submit(self._worker_loop)
        logger.info("Sync job queue started with %d workers", self.concurrency)

    def stop(self) -> None:
        if self._executor is None:
            return
        self._stop.set()
        self._executor.shutdown(wait=True)
        self._executor = None
        logger.info("Sync job queue stopped")

    @property
    def running(self) -> bool:
        return self._executor is not None

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            try:
                processed = self.process_next()
            except Exception:
                logger.exception("Sync worker failed to process the queue")
                processed = None
            if processed is None:
                self._stop.wait(self.poll_interval)
