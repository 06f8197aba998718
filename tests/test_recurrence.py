from datetime import date, datetime

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from errors import InvalidInputError
from jobs import JobQueue
from models import (
    Account,
    JobKind,
    RecurringInterval,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from rate_limit import TokenBucketLimiter
from recurrence import RecurringEngine, is_transaction_due, next_occurrence
from schemas import AccountIn, TransactionIn
from services import AccountService, TransactionService, UserService


def _recurring(session: Session, interval=RecurringInterval.monthly, **extra) -> Transaction:
    user = UserService(session).resolve("sub-1", "owner@example.com")
    account = AccountService(session, user.id).create(AccountIn(name="Main"))
    limiter = TokenBucketLimiter(capacity=100, refill_rate=1, interval=3600)
    return TransactionService(session, user.id, limiter).create(
        TransactionIn(
            account_id=account.id,
            type=TransactionType.expense,
            amount_cents=1_000,
            date=extra.pop("date", date(2024, 1, 1)),
            category="bills",
            description="Rent",
            is_recurring=True,
            recurring_interval=interval,
            **extra,
        )
    )


def _balance(session: Session, account_id: int) -> int:
    return session.execute(
        select(Account.balance_cents).where(Account.id == account_id)
    ).scalar_one()


def test_next_occurrence_steps() -> None:
    assert next_occurrence(date(2024, 3, 10), RecurringInterval.daily) == date(2024, 3, 11)
    assert next_occurrence(date(2024, 12, 31), RecurringInterval.daily) == date(2025, 1, 1)
    assert next_occurrence(date(2024, 3, 10), RecurringInterval.weekly) == date(2024, 3, 17)
    assert next_occurrence(date(2024, 3, 10), RecurringInterval.monthly) == date(2024, 4, 10)
    assert next_occurrence(date(2024, 3, 10), RecurringInterval.yearly) == date(2025, 3, 10)


def test_month_end_clamps_to_last_day() -> None:
    assert next_occurrence(date(2024, 1, 31), RecurringInterval.monthly) == date(2024, 2, 29)
    assert next_occurrence(date(2023, 1, 31), RecurringInterval.monthly) == date(2023, 2, 28)
    assert next_occurrence(date(2024, 2, 29), RecurringInterval.yearly) == date(2025, 2, 28)
    assert next_occurrence(date(2024, 12, 15), RecurringInterval.monthly) == date(2025, 1, 15)


def test_twelve_months_equal_one_year() -> None:
    current = date(2023, 5, 20)
    for _ in range(12):
        current = next_occurrence(current, RecurringInterval.monthly)
    assert current == next_occurrence(date(2023, 5, 20), RecurringInterval.yearly)


def test_unknown_interval_is_rejected() -> None:
    with pytest.raises(InvalidInputError):
        next_occurrence(date(2024, 1, 1), "FORTNIGHTLY")


def test_is_transaction_due() -> None:
    txn = Transaction(
        is_recurring=True,
        recurring_interval=RecurringInterval.monthly,
        next_recurring_date=date(2024, 2, 1),
        last_processed=None,
    )
    assert is_transaction_due(txn, date(2024, 1, 15))

    txn.last_processed = datetime(2024, 1, 1, 0, 5)
    assert not is_transaction_due(txn, date(2024, 1, 31))
    assert is_transaction_due(txn, date(2024, 2, 1))
    assert is_transaction_due(txn, date(2024, 3, 1))


def test_process_creates_one_occurrence_per_due_date() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        source = _recurring(session)
        engine_ = RecurringEngine(session)
        first_run = datetime(2024, 1, 1, 0, 5)

        occurrence = engine_.process(source.id, source.user_id, now=first_run)
        assert occurrence is not None
        assert occurrence.description == "Rent (Recurring)"
        assert occurrence.is_recurring is False
        assert occurrence.date == date(2024, 1, 1)

        assert engine_.process(source.id, source.user_id, now=first_run) is None
        assert engine_.process(source.id, source.user_id, now=datetime(2024, 1, 20)) is None

        session.refresh(source)
        assert source.next_recurring_date == date(2024, 2, 1)
        assert source.last_processed == first_run
        assert _balance(session, source.account_id) == -2_000

        assert engine_.process(source.id, source.user_id, now=datetime(2024, 2, 1, 0, 1))
        count = session.execute(select(func.count(Transaction.id))).scalar_one()
        assert count == 3
        assert _balance(session, source.account_id) == -3_000


def test_process_ignores_non_completed_and_foreign_owner() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        source = _recurring(session, status=TransactionStatus.pending)
        engine_ = RecurringEngine(session)
        now = datetime(2024, 1, 1, 1, 0)

        assert engine_.process(source.id, source.user_id, now=now) is None
        assert engine_.process(source.id, source.user_id + 1, now=now) is None
        assert engine_.due_transactions(date(2024, 1, 1)) == []


def test_enqueue_due_skips_pending_jobs() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        source = _recurring(session, interval=RecurringInterval.daily)
        engine_ = RecurringEngine(session)
        queue = JobQueue(session)

        assert engine_.enqueue_due(queue, date(2024, 1, 1)) == 1
        assert engine_.enqueue_due(queue, date(2024, 1, 1)) == 0

        jobs = queue.pending(JobKind.process_recurring)
        assert len(jobs) == 1
        assert jobs[0].user_id == source.user_id
