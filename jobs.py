"""Durable work queue with at-least-once delivery.

Producers (the recurrence scan, the budget evaluator, the monthly report)
insert ``Job`` rows in the same session as their own writes. ``JobWorker``
drains them on a timer; handlers must be idempotent because a job can run
again after a crash between the handler's commit and the job's bookkeeping.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from models import Job, JobKind, JobStatus
from recurrence import RecurringEngine, local_now


logger = logging.getLogger(__name__)

Handler = Callable[[Session, dict, datetime], None]


class JobQueue:
    def __init__(self, session: Session) -> None:
        self.session = session

    def enqueue(
        self,
        kind: JobKind,
        payload: dict,
        *,
        user_id: Optional[int] = None,
        available_at: Optional[datetime] = None,
    ) -> Job:
        job = Job(
            kind=kind,
            user_id=user_id,
            payload=json.dumps(payload, sort_keys=True, default=str),
            status=JobStatus.pending,
            attempts=0,
            available_at=available_at or local_now(),
        )
        self.session.add(job)
        self.session.flush()
        return job

    def has_pending(self, kind: JobKind, payload: dict) -> bool:
        stmt = (
            select(Job.id)
            .where(
                Job.kind == kind,
                Job.status == JobStatus.pending,
                Job.payload == json.dumps(payload, sort_keys=True, default=str),
            )
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none() is not None

    def pending(self, kind: Optional[JobKind] = None) -> list[Job]:
        stmt = select(Job).where(Job.status == JobStatus.pending).order_by(Job.id)
        if kind is not None:
            stmt = stmt.where(Job.kind == kind)
        return list(self.session.scalars(stmt).all())

    def prune_finished(self, before: datetime) -> int:
        result = self.session.execute(
            delete(Job)
            .where(
                Job.status.in_([JobStatus.done, JobStatus.failed]),
                Job.finished_at < before,
            )
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)


def process_recurring_handler(session: Session, payload: dict, now: datetime) -> None:
    transaction_id = payload.get("transaction_id")
    user_id = payload.get("user_id")
    if not transaction_id or not user_id:
        logger.error(f"job_invalid_payload: kind=process_recurring payload={payload}")
        return
    RecurringEngine(session).process(int(transaction_id), int(user_id), now=now)


def send_email_handler(session: Session, payload: dict, now: datetime) -> None:
    from notifications import EmailSender, render_email

    html = render_email(payload["template"], **payload.get("context", {}))
    EmailSender().send(payload["to"], payload["subject"], html)


def default_handlers() -> dict[JobKind, Handler]:
    return {
        JobKind.process_recurring: process_recurring_handler,
        JobKind.send_email: send_email_handler,
    }


class JobWorker:
    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        handlers: Optional[dict[JobKind, Handler]] = None,
        *,
        throttle_per_minute: Optional[int] = None,
        max_attempts: Optional[int] = None,
        backoff_secs: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.session_factory = session_factory
        self.handlers = handlers if handlers is not None else default_handlers()
        self.throttled_kinds = {JobKind.process_recurring}
        self.throttle_per_minute = (
            throttle_per_minute
            if throttle_per_minute is not None
            else settings.recurring_throttle_per_minute
        )
        self.max_attempts = (
            max_attempts if max_attempts is not None else settings.job_max_attempts
        )
        self.backoff_secs = (
            backoff_secs if backoff_secs is not None else settings.job_backoff_secs
        )

    def _started_in_window(
        self, session: Session, kind: JobKind, user_id: int, now: datetime
    ) -> int:
        stmt = select(func.count(Job.id)).where(
            Job.kind == kind,
            Job.user_id == user_id,
            Job.started_at.is_not(None),
            Job.started_at > now - timedelta(minutes=1),
        )
        return int(session.execute(stmt).scalar_one() or 0)

    def _claim(self, now: datetime, limit: int) -> list[int]:
        claimed: list[int] = []
        throttled: set[tuple[JobKind, int]] = set()
        last_id = 0
        with session_scope(self.session_factory) as session:
            while len(claimed) < limit:
                stmt = (
                    select(Job)
                    .where(
                        Job.status == JobStatus.pending,
                        Job.available_at <= now,
                        Job.id > last_id,
                    )
                    .order_by(Job.id)
                    .limit(limit)
                )
                batch = session.scalars(stmt).all()
                if not batch:
                    break
                for job in batch:
                    last_id = job.id
                    if job.kind in self.throttled_kinds and job.user_id is not None:
                        owner = (job.kind, job.user_id)
                        if owner in throttled:
                            continue
                        started = self._started_in_window(
                            session, job.kind, job.user_id, now
                        )
                        if started >= self.throttle_per_minute:
                            # Skipped rows stay pending; later owners are still scanned.
                            throttled.add(owner)
                            continue
                    job.started_at = now
                    job.attempts += 1
                    session.flush()
                    claimed.append(job.id)
                    if len(claimed) >= limit:
                        break
        return claimed

    def _finish(self, job_id: int, now: datetime, error: Optional[Exception]) -> None:
        with session_scope(self.session_factory) as session:
            job = session.get(Job, job_id)
            if job is None:
                return
            if error is None:
                job.status = JobStatus.done
                job.finished_at = now
                job.last_error = None
                return
            job.last_error = f"{error.__class__.__name__}: {error}"
            if job.attempts >= self.max_attempts:
                job.status = JobStatus.failed
                job.finished_at = now
                logger.error(
                    f"job_dropped: id={job.id} kind={job.kind.value} "
                    f"attempts={job.attempts} error={job.last_error}"
                )
                return
            delay = self.backoff_secs * (2 ** job.attempts)
            job.available_at = now + timedelta(seconds=delay)
            logger.warning(
                f"job_retry: id={job.id} kind={job.kind.value} "
                f"attempts={job.attempts} retry_in={delay:.0f}s"
            )

    def run_job(self, job_id: int, now: datetime) -> bool:
        error: Optional[Exception] = None
        try:
            with session_scope(self.session_factory) as session:
                job = session.get(Job, job_id)
                handler = self.handlers.get(job.kind)
                if handler is None:
                    raise LookupError(f"No handler registered for {job.kind.value}")
                handler(session, json.loads(job.payload), now)
        except Exception as exc:
            logger.exception(f"job_failed: id={job_id}")
            error = exc
        self._finish(job_id, now, error)
        return error is None

    def run_pending(self, now: Optional[datetime] = None, limit: int = 100) -> int:
        now = now or local_now()
        processed = 0
        for job_id in self._claim(now, limit):
            if self.run_job(job_id, now):
                processed += 1
        return processed
