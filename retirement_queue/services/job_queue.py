"""
services/job_queue.py

Durable job queue on the application database.

Jobs are rows in the ``jobs`` table. Enqueueing happens inside the caller's
session, so a job exists only if the caller's transaction commits. Job kinds
may declare a uniqueness period: while a job with the same kind and args was
created inside that period (and was not cancelled or discarded), a new
enqueue is a no-op.

The uniqueness check is atomic: the job holding a key carries it in the
unique ``unique_slot`` column, a stale holder gives the slot up with a
conditional UPDATE, and an insert that loses the race on the unique index
is reported as a duplicate.

Execution is at-least-once:
  work returns            -> completed
  work raises JobCancel   -> cancelled, never retried
  work raises anything    -> retryable, rescheduled with backoff
  attempts exhausted      -> discarded

Timeouts and rescued jobs count as failures. Work may define
``on_failure(ctx, error)``; the worker calls it on every failure so the
work can roll its own state back, and it may raise JobCancel to stop retries.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, ClassVar, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from retirement_queue.core.config import settings
from retirement_queue.db.models import Job, JobState
from retirement_queue.utils.exceptions import JobCancel
from retirement_queue.utils.helpers import utcnow

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 3600

FINAL_STATES = (JobState.completed, JobState.cancelled, JobState.discarded)

RELEASED_STATES = (JobState.cancelled, JobState.discarded)


@dataclass
class AnalyzeCaseArgs:
    case_id: str

    kind: ClassVar[str] = "analyze:case"
    unique_period: ClassVar[Optional[timedelta]] = timedelta(hours=1)


@dataclass
class EnqueueResult:
    inserted: bool
    job_id: Optional[int] = None


@dataclass
class JobContext:
    job_id: int
    kind: str
    args: Dict[str, Any]
    attempt: int
    max_attempts: int
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


Work = Callable[[JobContext], Awaitable[None]]


def unique_key(kind: str, args: Dict[str, Any]) -> str:
    canonical = json.dumps(args, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(f"{kind}:{canonical}".encode("utf-8")).hexdigest()


def backoff_seconds(attempt: int) -> int:
    return min(attempt ** 4, MAX_BACKOFF_SECONDS)


def _context(job: Job) -> JobContext:
    return JobContext(
        job_id=job.id,
        kind=job.kind,
        args=dict(job.args or {}),
        attempt=job.attempt,
        max_attempts=job.max_attempts,
        errors=list(job.errors or []),
    )


class JobQueue:
    def __init__(self, session_factory: sessionmaker, max_attempts: Optional[int] = None):
        self.session_factory = session_factory
        self.max_attempts = max_attempts or settings.JOB_MAX_ATTEMPTS

    def enqueue_tx(self, db: Session, args) -> EnqueueResult:
        """Insert a job inside ``db``'s transaction unless a duplicate is live."""
        kind = args.kind
        payload = asdict(args)
        period = getattr(args, "unique_period", None)
        key = unique_key(kind, payload) if period else None
        now = utcnow()

        if key is not None:
            holder = self._slot_holder(db, key)
            if holder is not None:
                live = holder.state not in RELEASED_STATES and holder.created_at >= now - period
                if live:
                    logger.info(f"Job {kind} {payload} already enqueued as #{holder.id}")
                    return EnqueueResult(inserted=False, job_id=holder.id)
                released = (
                    db.query(Job)
                    .filter(Job.id == holder.id, Job.unique_slot == key)
                    .update({Job.unique_slot: None}, synchronize_session=False)
                )
                db.expire(holder)
                if not released:
                    logger.info(f"Job {kind} {payload} slot taken by a concurrent enqueue")
                    return EnqueueResult(inserted=False)

        job = Job(
            kind=kind,
            args=payload,
            unique_key=key,
            unique_slot=key,
            state=JobState.available,
            attempt=0,
            max_attempts=self.max_attempts,
            scheduled_at=now,
            created_at=now,
            errors=[],
        )
        try:
            with db.begin_nested():
                db.add(job)
        except IntegrityError:
            winner = self._slot_holder(db, key) if key is not None else None
            logger.info(f"Job {kind} {payload} enqueued concurrently, keeping the other insert")
            return EnqueueResult(inserted=False, job_id=winner.id if winner is not None else None)
        logger.info(f"Enqueued job #{job.id} {kind} {payload}")
        return EnqueueResult(inserted=True, job_id=job.id)

    def _slot_holder(self, db: Session, key: str) -> Optional[Job]:
        return db.query(Job).filter(Job.unique_slot == key).first()

    def enqueue(self, args) -> EnqueueResult:
        db = self.session_factory()
        try:
            result = self.enqueue_tx(db, args)
            db.commit()
            return result
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get(self, job_id: int) -> Optional[Job]:
        db = self.session_factory()
        try:
            return db.get(Job, job_id)
        finally:
            db.close()

    def list_jobs(self, kind: Optional[str] = None) -> List[Job]:
        db = self.session_factory()
        try:
            q = db.query(Job)
            if kind:
                q = q.filter(Job.kind == kind)
            return q.order_by(Job.id).all()
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def prune_finalized(self, older_than: timedelta) -> int:
        """Delete finalized jobs whose finalized_at is older than ``older_than``."""
        db = self.session_factory()
        try:
            count = (
                db.query(Job)
                .filter(
                    Job.state.in_(FINAL_STATES),
                    Job.finalized_at < utcnow() - older_than,
                )
                .delete(synchronize_session=False)
            )
            db.commit()
            return count
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class JobWorker:
    """Claims due jobs and runs them, up to ``max_workers`` at a time."""

    def __init__(
        self,
        session_factory: sessionmaker,
        max_workers: Optional[int] = None,
        poll_interval: Optional[float] = None,
        job_timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.max_workers = max_workers or settings.WORKER_MAX_WORKERS
        self.poll_interval = poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL_SECONDS
        self.job_timeout = job_timeout if job_timeout is not None else settings.JOB_TIMEOUT_SECONDS
        self._workers: Dict[str, Work] = {}
        self._stopping = asyncio.Event()

    def register(self, kind: str, work: Work) -> None:
        self._workers[kind] = work

    def _claim(self, limit: int) -> List[JobContext]:
        db = self.session_factory()
        try:
            now = utcnow()
            jobs = (
                db.query(Job)
                .filter(
                    Job.state.in_([JobState.available, JobState.retryable]),
                    Job.scheduled_at <= now,
                    Job.kind.in_(list(self._workers)),
                )
                .order_by(Job.scheduled_at, Job.id)
                .limit(limit)
                .with_for_update(skip_locked=True)
                .all()
            )
            claimed = []
            for job in jobs:
                job.state = JobState.running
                job.attempt += 1
                job.attempted_at = now
                claimed.append(_context(job))
            db.commit()
            return claimed
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _finish(self, ctx: JobContext, state: JobState, error: Optional[BaseException] = None) -> bool:
        """Record the outcome of ``ctx``'s attempt; False when the job has moved on since."""
        db = self.session_factory()
        try:
            job = db.get(Job, ctx.job_id)
            if job is None or job.state != JobState.running or job.attempt != ctx.attempt:
                return False
            now = utcnow()
            if error is not None:
                job.errors = list(job.errors or []) + [
                    {"at": now.isoformat(), "attempt": ctx.attempt, "error": f"{type(error).__name__}: {error}"}
                ]
            job.state = state
            if state == JobState.retryable:
                job.scheduled_at = now + timedelta(seconds=backoff_seconds(ctx.attempt))
            else:
                job.finalized_at = now
            db.commit()
            return True
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def handle_failure(self, ctx: JobContext, error: BaseException) -> JobState:
        """Run the work's ``on_failure`` hook and pick the state a failed attempt ends in."""
        hook = getattr(self._workers.get(ctx.kind), "on_failure", None)
        if hook is not None:
            try:
                hook(ctx, error)
            except JobCancel as e:
                logger.warning(f"Job #{ctx.job_id} {ctx.kind} cancelled: {e.reason}")
                return JobState.cancelled
            except Exception as e:
                logger.error(f"Job #{ctx.job_id} {ctx.kind} on_failure hook failed: {e}", exc_info=True)

        if ctx.is_final_attempt:
            logger.error(f"Job #{ctx.job_id} {ctx.kind} discarded after {ctx.attempt} attempts: {error}")
            return JobState.discarded
        logger.warning(
            f"Job #{ctx.job_id} {ctx.kind} failed (attempt {ctx.attempt}), "
            f"retrying in {backoff_seconds(ctx.attempt)}s: {error!r}"
        )
        return JobState.retryable

    async def _execute(self, ctx: JobContext) -> None:
        work = self._workers[ctx.kind]
        logger.info(f"Job #{ctx.job_id} {ctx.kind} started (attempt {ctx.attempt}/{ctx.max_attempts})")
        try:
            await asyncio.wait_for(work(ctx), timeout=self.job_timeout)
        except JobCancel as e:
            logger.warning(f"Job #{ctx.job_id} {ctx.kind} cancelled: {e.reason}")
            self._finish(ctx, JobState.cancelled, e)
        except asyncio.TimeoutError:
            error = asyncio.TimeoutError(f"timed out after {self.job_timeout}s")
            self._finish(ctx, self.handle_failure(ctx, error), error)
        except Exception as e:
            self._finish(ctx, self.handle_failure(ctx, e), e)
        else:
            logger.info(f"Job #{ctx.job_id} {ctx.kind} completed")
            self._finish(ctx, JobState.completed)

    def rescue_stuck(self, older_than: timedelta) -> int:
        """Fail jobs left running longer than ``older_than``, most likely by a dead worker."""
        db = self.session_factory()
        try:
            stuck = [
                _context(job)
                for job in db.query(Job)
                .filter(Job.state == JobState.running, Job.attempted_at < utcnow() - older_than)
                .order_by(Job.id)
                .all()
            ]
        finally:
            db.close()

        rescued = 0
        for ctx in stuck:
            error = RuntimeError("rescued: worker stopped responding")
            if self._finish(ctx, self.handle_failure(ctx, error), error):
                rescued += 1
        return rescued

    async def run_once(self) -> int:
        """Claim and run one batch of due jobs; returns how many ran."""
        batch = self._claim(self.max_workers)
        if batch:
            await asyncio.gather(*(self._execute(ctx) for ctx in batch))
        return len(batch)

    async def drain(self) -> int:
        """Run batches until nothing is due."""
        total = 0
        while True:
            ran = await self.run_once()
            if not ran:
                return total
            total += ran

    async def run_forever(self) -> None:
        logger.info(f"Job worker started ({self.max_workers} workers, kinds={sorted(self._workers)})")
        self._stopping.clear()
        while not self._stopping.is_set():
            try:
                ran = await self.run_once()
            except Exception as e:
                logger.error(f"Job worker loop error: {e}", exc_info=True)
                ran = 0
            if not ran:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except TimeoutError:
                    pass
        logger.info("Job worker stopped")

    def stop(self) -> None:
        self._stopping.set()
