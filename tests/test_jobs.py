from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

import jobs
from database import Base
from errors import UpstreamError
from jobs import JobQueue, JobWorker
from models import Job, JobKind, JobStatus


NOW = datetime(2024, 6, 1, 12, 0, 0)


def _factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'jobs.db'}")
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


def _enqueue(factory, kind: JobKind, count: int, user_id: int = 1) -> None:
    with factory() as session:
        queue = JobQueue(session)
        for index in range(count):
            queue.enqueue(kind, {"n": index}, user_id=user_id, available_at=NOW)
        session.commit()


def _jobs(factory) -> list[Job]:
    with factory() as session:
        return list(session.scalars(select(Job).order_by(Job.id)).all())


def test_recurring_jobs_are_throttled_per_owner(tmp_path) -> None:
    factory = _factory(tmp_path)
    _enqueue(factory, JobKind.process_recurring, 12, user_id=1)
    _enqueue(factory, JobKind.process_recurring, 2, user_id=2)
    seen: list[int] = []

    def handler(session, payload, now):
        seen.append(payload["n"])

    worker = JobWorker(
        factory,
        {JobKind.process_recurring: handler},
        throttle_per_minute=10,
        max_attempts=3,
        backoff_secs=2,
    )

    assert worker.run_pending(NOW) == 12
    assert worker.run_pending(NOW + timedelta(seconds=30)) == 0
    assert worker.run_pending(NOW + timedelta(seconds=61)) == 2
    assert len(seen) == 14
    assert all(job.status == JobStatus.done for job in _jobs(factory))


def test_failed_job_backs_off_then_is_dropped(tmp_path) -> None:
    factory = _factory(tmp_path)
    _enqueue(factory, JobKind.send_email, 1)

    def handler(session, payload, now):
        raise UpstreamError("provider down")

    worker = JobWorker(
        factory,
        {JobKind.send_email: handler},
        throttle_per_minute=10,
        max_attempts=3,
        backoff_secs=2,
    )

    assert worker.run_pending(NOW) == 0
    job = _jobs(factory)[0]
    assert job.attempts == 1
    assert job.status == JobStatus.pending
    assert job.available_at == NOW + timedelta(seconds=4)

    assert worker.run_pending(NOW + timedelta(seconds=1)) == 0
    assert _jobs(factory)[0].attempts == 1

    worker.run_pending(NOW + timedelta(seconds=4))
    job = _jobs(factory)[0]
    assert job.attempts == 2
    assert job.available_at == NOW + timedelta(seconds=12)

    worker.run_pending(NOW + timedelta(seconds=12))
    job = _jobs(factory)[0]
    assert job.attempts == 3
    assert job.status == JobStatus.failed
    assert "provider down" in job.last_error


def test_missing_handler_counts_as_failure(tmp_path) -> None:
    factory = _factory(tmp_path)
    _enqueue(factory, JobKind.send_email, 1)

    worker = JobWorker(factory, {}, max_attempts=1, backoff_secs=1)
    assert worker.run_pending(NOW) == 0
    job = _jobs(factory)[0]
    assert job.status == JobStatus.failed
    assert "No handler" in job.last_error


def test_send_email_handler_renders_template(monkeypatch) -> None:
    import notifications

    sent: list[tuple[str, str, str]] = []

    def fake_send(self, to, subject, html):
        sent.append((to, subject, html))
        return True

    monkeypatch.setattr(notifications.EmailSender, "send", fake_send)

    jobs.send_email_handler(
        None,
        {
            "to": "owner@example.com",
            "subject": "Budget Alert for Main",
            "template": "budget_alert",
            "context": {
                "user_name": "Owner",
                "account_name": "Main",
                "percentage_used": 85.0,
                "budget_cents": 10_000,
                "total_expenses_cents": 8_500,
            },
        },
        NOW,
    )

    assert len(sent) == 1
    to, subject, html = sent[0]
    assert to == "owner@example.com"
    assert "85.0%" in html
    assert "100.00" in html
    assert "15.00" in html


def test_email_sender_requires_api_key(monkeypatch) -> None:
    from notifications import EmailSender

    sender = EmailSender()
    monkeypatch.setattr(sender.settings, "resend_api_key", None)
    with pytest.raises(UpstreamError):
        sender.send("owner@example.com", "Hello", "<p>hi</p>")


def test_throttled_owner_does_not_starve_later_owners(tmp_path) -> None:
    factory = _factory(tmp_path)
    _enqueue(factory, JobKind.process_recurring, 8, user_id=1)
    _enqueue(factory, JobKind.process_recurring, 2, user_id=2)

    worker = JobWorker(
        factory,
        {JobKind.process_recurring: lambda session, payload, now: None},
        throttle_per_minute=2,
        max_attempts=3,
        backoff_secs=2,
    )

    assert worker.run_pending(NOW, limit=5) == 4
    done = [job.user_id for job in _jobs(factory) if job.status == JobStatus.done]
    assert done == [1, 1, 2, 2]
    pending = [job for job in _jobs(factory) if job.status == JobStatus.pending]
    assert len(pending) == 6
    assert all(job.user_id == 1 and job.attempts == 0 for job in pending)


def test_prune_finished_removes_only_old_terminal_jobs(tmp_path) -> None:
    factory = _factory(tmp_path)
    _enqueue(factory, JobKind.send_email, 5)
    cutoff = NOW - timedelta(days=7)

    with factory() as session:
        old_done, old_failed, recent_done, old_pending, untouched = session.scalars(
            select(Job).order_by(Job.id)
        ).all()
        old_done.status = JobStatus.done
        old_done.finished_at = cutoff - timedelta(hours=1)
        old_failed.status = JobStatus.failed
        old_failed.finished_at = cutoff - timedelta(days=3)
        recent_done.status = JobStatus.done
        recent_done.finished_at = cutoff + timedelta(hours=1)
        old_pending.available_at = cutoff - timedelta(days=30)
        kept = [recent_done.id, old_pending.id, untouched.id]
        session.commit()

        assert JobQueue(session).prune_finished(cutoff) == 2
        session.commit()

    assert [job.id for job in _jobs(factory)] == kept
