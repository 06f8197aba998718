import logging
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from config import get_settings
from errors import InvalidInputError
from ledger import Movement, apply_balance_delta, atomic
from models import (
    JobKind,
    RecurringInterval,
    Transaction,
    TransactionStatus,
)


logger = logging.getLogger(__name__)

OCCURRENCE_SUFFIX = " (Recurring)"


def local_now() -> datetime:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(base.day, days_in_month(year, month)))


def next_occurrence(from_date: date, interval: RecurringInterval) -> date:
    if interval == RecurringInterval.daily:
        return from_date + timedelta(days=1)
    if interval == RecurringInterval.weekly:
        return from_date + timedelta(days=7)
    if interval == RecurringInterval.monthly:
        return _add_months(from_date, 1)
    if interval == RecurringInterval.yearly:
        return _add_months(from_date, 12)
    raise InvalidInputError(f"Unknown recurring interval: {interval}")


def is_transaction_due(txn: Transaction, today: Optional[date] = None) -> bool:
    if txn.last_processed is None:
        return True
    if txn.next_recurring_date is None:
        return False
    return txn.next_recurring_date <= (today or local_today())


def _due_clause(today: date):
    return or_(
        Transaction.last_processed.is_(None),
        Transaction.next_recurring_date <= today,
    )


class RecurringEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def due_transactions(self, today: Optional[date] = None) -> list[Transaction]:
        today = today or local_today()
        stmt = (
            select(Transaction)
            .where(
                Transaction.is_recurring.is_(True),
                Transaction.status == TransactionStatus.completed,
                _due_clause(today),
            )
            .order_by(Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def enqueue_due(self, queue, today: Optional[date] = None) -> int:
        count = 0
        for txn in self.due_transactions(today):
            payload = {"transaction_id": txn.id, "user_id": txn.user_id}
            if queue.has_pending(JobKind.process_recurring, payload):
                continue
            queue.enqueue(JobKind.process_recurring, payload, user_id=txn.user_id)
            count += 1
        self.session.commit()
        return count

    def process(
        self,
        transaction_id: int,
        user_id: int,
        now: Optional[datetime] = None,
    ) -> Optional[Transaction]:
        """Materialise one occurrence of a due recurring transaction.

        Safe against late or duplicated work items: the recurring row is
        claimed with a conditional update that only matches while it is still
        due, so a second delivery finds nothing to claim and does nothing.
        """
        now = now or local_now()
        today = now.date()
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.id == transaction_id, Transaction.user_id == user_id
            )
        )
        if (
            txn is None
            or not txn.is_recurring
            or txn.recurring_interval is None
            or txn.status != TransactionStatus.completed
            or not is_transaction_due(txn, today)
        ):
            return None

        with atomic(self.session):
            claimed = self.session.execute(
                update(Transaction)
                .where(
                    Transaction.id == txn.id,
                    Transaction.is_recurring.is_(True),
                    _due_clause(today),
                )
                .values(
                    last_processed=now,
                    next_recurring_date=next_occurrence(today, txn.recurring_interval),
                )
                .execution_options(synchronize_session="evaluate")
            )
            if claimed.rowcount != 1:
                return None

            occurrence = Transaction(
                user_id=txn.user_id,
                account_id=txn.account_id,
                type=txn.type,
                amount_cents=txn.amount_cents,
                category=txn.category,
                description=f"{txn.description or ''}{OCCURRENCE_SUFFIX}".strip(),
                date=today,
                status=TransactionStatus.completed,
                is_recurring=False,
            )
            self.session.add(occurrence)
            apply_balance_delta(
                self.session, txn.account_id, Movement.of(occurrence).delta
            )
        logger.info(
            f"recurring_occurrence: source_id={txn.id} occurrence_id={occurrence.id} "
            f"next={txn.next_recurring_date}"
        )
        return occurrence
