from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Optional

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import get_settings
from errors import (
    ConflictError,
    InvalidInputError,
    NotFoundError,
    RateLimitedError,
)
from jobs import JobQueue
from ledger import (
    Movement,
    apply_balance_delta,
    atomic,
    retry_on_conflict,
    reversal_by_account,
    sum_amounts,
)
from models import (
    Account,
    Budget,
    JobKind,
    Transaction,
    TransactionType,
    User,
)
from periods import Period, is_new_month, month_bounds, previous_month
from rate_limit import TokenBucketLimiter, get_rate_limiter
from recurrence import local_now, local_today, next_occurrence
from schemas import AccountIn, TransactionIn, TransactionUpdate


logger = logging.getLogger(__name__)

OPENING_BALANCE_CATEGORY = "opening-balance"
CLEARABLE_FIELDS = {"description", "recurring_interval"}


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    type: Optional[TransactionType] = None
    category: Optional[str] = None
    recurring: Optional[bool] = None


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def resolve(self, subject: str, email: str, name: Optional[str] = None) -> User:
        stmt = select(User).where(User.auth_subject == subject)
        user = self.session.scalar(stmt)
        if user:
            return user
        user = User(auth_subject=subject, email=email, name=name)
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError:
            # Another request provisioned the same subject first.
            self.session.rollback()
            user = self.session.scalar(stmt)
            if not user:
                raise
        return user


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.created_at.desc(), Account.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def transaction_counts(self) -> dict[int, int]:
        stmt = (
            select(Transaction.account_id, func.count(Transaction.id))
            .where(Transaction.user_id == self.user_id)
            .group_by(Transaction.account_id)
        )
        return {account_id: count for account_id, count in self.session.execute(stmt)}

    def get(self, account_id: int) -> Account:
        account = self.session.scalar(
            select(Account).where(
                Account.id == account_id, Account.user_id == self.user_id
            )
        )
        if not account:
            raise NotFoundError("Account not found")
        return account

    def get_default(self) -> Optional[Account]:
        return self.session.scalar(
            select(Account)
            .where(Account.user_id == self.user_id, Account.is_default.is_(True))
            .order_by(Account.id)
            .limit(1)
        )

    def get_with_transactions(self, account_id: int) -> tuple[Account, list[Transaction]]:
        account = self.get(account_id)
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.account_id == account.id,
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return account, list(self.session.scalars(stmt).all())

    def _clear_default(self) -> None:
        self.session.execute(
            update(Account)
            .where(Account.user_id == self.user_id, Account.is_default.is_(True))
            .values(is_default=False)
            .execution_options(synchronize_session="fetch")
        )

    @retry_on_conflict
    def create(self, data: AccountIn) -> Account:
        existing = int(
            self.session.execute(
                select(func.count(Account.id)).where(Account.user_id == self.user_id)
            ).scalar_one()
            or 0
        )
        should_be_default = existing == 0 or data.is_default

        account = Account(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            balance_cents=0,
            is_default=should_be_default,
        )
        with atomic(self.session):
            if should_be_default:
                self._clear_default()
            self.session.add(account)
            self.session.flush()
            if data.balance_cents:
                movement = Movement(
                    TransactionType.income
                    if data.balance_cents > 0
                    else TransactionType.expense,
                    abs(data.balance_cents),
                )
                self.session.add(
                    Transaction(
                        user_id=self.user_id,
                        account_id=account.id,
                        type=movement.type,
                        amount_cents=movement.amount_cents,
                        category=OPENING_BALANCE_CATEGORY,
                        description="Opening balance",
                        date=local_today(),
                        is_recurring=False,
                    )
                )
                apply_balance_delta(self.session, account.id, movement.delta)
        self.session.refresh(account)
        return account

    @retry_on_conflict
    def set_default(self, account_id: int) -> Account:
        account = self.get(account_id)
        with atomic(self.session):
            self._clear_default()
            account.is_default = True
        return account

    @retry_on_conflict
    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        was_default = account.is_default
        with atomic(self.session):
            self.session.execute(
                delete(Transaction).where(
                    Transaction.user_id == self.user_id,
                    Transaction.account_id == account.id,
                )
            )
            self.session.delete(account)
            self.session.flush()
            if was_default:
                replacement = self.session.scalar(
                    select(Account)
                    .where(Account.user_id == self.user_id)
                    .order_by(Account.created_at.desc(), Account.id.desc())
                    .limit(1)
                )
                if replacement:
                    replacement.is_default = True


class TransactionService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        rate_limiter: Optional[TokenBucketLimiter] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.rate_limiter = rate_limiter or get_rate_limiter()

    def _owned_account(self, account_id: int) -> Account:
        return AccountService(self.session, self.user_id).get(account_id)

    def _check_rate_limit(self) -> None:
        decision = self.rate_limiter.check(self.user_id, 1)
        if decision.allowed:
            return
        logger.warning(
            f"rate_limit_exceeded: user_id={self.user_id} "
            f"remaining={decision.remaining} reset_in={decision.retry_after:.0f}s"
        )
        raise RateLimitedError(
            "Too many requests. Please try again later.",
            retry_after=decision.retry_after,
        )

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        if data.is_recurring and data.recurring_interval is None:
            raise InvalidInputError(
                "Recurring interval is required for recurring transactions"
            )
        movement = Movement(data.type, data.amount_cents)
        self._owned_account(data.account_id)
        self._check_rate_limit()
        return self._insert(data, movement)

    @retry_on_conflict
    def _insert(self, data: TransactionIn, movement: Movement) -> Transaction:
        txn = Transaction(
            user_id=self.user_id,
            account_id=data.account_id,
            type=movement.type,
            amount_cents=movement.amount_cents,
            category=data.category.strip(),
            description=data.description,
            date=data.date,
            receipt_url=data.receipt_url,
            status=data.status,
            is_recurring=data.is_recurring,
            recurring_interval=data.recurring_interval if data.is_recurring else None,
            next_recurring_date=(
                next_occurrence(data.date, data.recurring_interval)
                if data.is_recurring
                else None
            ),
        )
        with atomic(self.session):
            self.session.add(txn)
            apply_balance_delta(self.session, data.account_id, movement.delta)
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        changes = {
            key: value
            for key, value in data.model_dump(exclude_unset=True).items()
            if value is not None or key in CLEARABLE_FIELDS
        }
        return self._apply_update(transaction_id, changes)

    @retry_on_conflict
    def _apply_update(self, transaction_id: int, changes: dict) -> Transaction:
        txn = self.get(transaction_id)
        old_account_id = txn.account_id
        old_delta = Movement.of(txn).delta

        new_account_id = changes.get("account_id", old_account_id)
        if new_account_id != old_account_id:
            self._owned_account(new_account_id)

        movement = Movement(
            changes.get("type", txn.type), changes.get("amount_cents", txn.amount_cents)
        )
        new_date = changes.get("date", txn.date)
        is_recurring = changes.get("is_recurring", txn.is_recurring)
        interval = (
            changes.get("recurring_interval", txn.recurring_interval)
            if is_recurring
            else None
        )
        if is_recurring and interval is None:
            raise InvalidInputError(
                "Recurring interval is required for recurring transactions"
            )
        recurrence_changed = (
            is_recurring != txn.is_recurring
            or interval != txn.recurring_interval
            or new_date != txn.date
        )

        with atomic(self.session):
            txn.account_id = new_account_id
            txn.type = movement.type
            txn.amount_cents = movement.amount_cents
            txn.date = new_date
            if "category" in changes:
                txn.category = changes["category"].strip()
            if "description" in changes:
                txn.description = changes["description"]
            if "status" in changes:
                txn.status = changes["status"]
            txn.is_recurring = is_recurring
            txn.recurring_interval = interval
            if not is_recurring:
                txn.next_recurring_date = None
            elif recurrence_changed or txn.next_recurring_date is None:
                base = txn.last_processed.date() if txn.last_processed else new_date
                txn.next_recurring_date = next_occurrence(base, interval)

            if new_account_id != old_account_id:
                apply_balance_delta(self.session, old_account_id, -old_delta)
                apply_balance_delta(self.session, new_account_id, movement.delta)
            else:
                apply_balance_delta(
                    self.session, old_account_id, movement.delta - old_delta
                )
        return txn

    @retry_on_conflict
    def delete_many(self, transaction_ids: Iterable[int]) -> int:
        ids = sorted(set(transaction_ids))
        if not ids:
            return 0
        txns = self.session.scalars(
            select(Transaction).where(
                Transaction.user_id == self.user_id, Transaction.id.in_(ids)
            )
        ).all()
        if not txns:
            return 0

        changes = reversal_by_account(txns)
        found_ids = [txn.id for txn in txns]
        with atomic(self.session):
            result = self.session.execute(
                delete(Transaction)
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.id.in_(found_ids),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != len(found_ids):
                # Rows vanished since they were read; reversing them would double count.
                raise ConflictError("Transactions changed concurrently")
            for txn in txns:
                self.session.expunge(txn)
            for account_id, delta in changes.items():
                apply_balance_delta(self.session, account_id, delta)
        logger.info(
            f"transactions_deleted: user_id={self.user_id} count={len(found_ids)} "
            f"accounts={sorted(changes)}"
        )
        return len(found_ids)

    def delete(self, transaction_id: int) -> None:
        self.get(transaction_id)
        self.delete_many([transaction_id])

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        period: Optional[Period] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        if period:
            stmt = stmt.where(Transaction.date.between(period.start, period.end))
        if filters.account_id:
            stmt = stmt.where(Transaction.account_id == filters.account_id)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category:
            stmt = stmt.where(
                func.lower(Transaction.category) == filters.category.strip().lower()
            )
        if filters.recurring is not None:
            stmt = stmt.where(Transaction.is_recurring.is_(filters.recurring))
        return list(self.session.scalars(stmt).all())

    def recent(self, limit: int = 5) -> list[Transaction]:
        return self.list(limit=limit)

    def summary(self, period: Period, account_id: Optional[int] = None) -> dict[str, int]:
        if account_id is not None:
            self._owned_account(account_id)
        income = sum_amounts(
            self.session,
            self.user_id,
            account_id=account_id,
            type=TransactionType.income,
            start=period.start,
            end=period.end,
        )
        expense = sum_amounts(
            self.session,
            self.user_id,
            account_id=account_id,
            type=TransactionType.expense,
            start=period.start,
            end=period.end,
        )
        return {
            "income_cents": income,
            "expense_cents": expense,
            "net_cents": income - expense,
        }


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self) -> Optional[Budget]:
        return self.session.scalar(select(Budget).where(Budget.user_id == self.user_id))

    @retry_on_conflict
    def upsert(self, amount_cents: int) -> Budget:
        if amount_cents <= 0:
            raise InvalidInputError("Budget amount must be greater than zero")
        with atomic(self.session):
            budget = self.get()
            if budget:
                budget.amount_cents = amount_cents
            else:
                budget = Budget(user_id=self.user_id, amount_cents=amount_cents)
                self.session.add(budget)
        return budget

    def get_current(
        self, account_id: Optional[int] = None, today: Optional[date] = None
    ) -> dict[str, object]:
        today = today or local_today()
        accounts = AccountService(self.session, self.user_id)
        account = accounts.get(account_id) if account_id else accounts.get_default()
        budget = self.get()
        expenses = 0
        if account:
            first, last = month_bounds(today.year, today.month)
            expenses = sum_amounts(
                self.session,
                self.user_id,
                account_id=account.id,
                type=TransactionType.expense,
                start=first,
                end=last,
            )
        percentage = (
            expenses / budget.amount_cents * 100
            if budget and budget.amount_cents > 0
            else None
        )
        return {
            "budget": budget,
            "account_id": account.id if account else None,
            "current_expenses_cents": expenses,
            "percentage_used": percentage,
        }


class BudgetEvaluator:
    """Raises at most one budget alert per owner per calendar month."""

    def __init__(self, session: Session, *, threshold: Optional[float] = None) -> None:
        self.session = session
        self.threshold = (
            threshold if threshold is not None else get_settings().budget_alert_threshold
        )

    def run(self, now: Optional[datetime] = None) -> int:
        now = now or local_now()
        first, last = month_bounds(now.year, now.month)
        stmt = (
            select(Budget, User, Account)
            .join(User, Budget.user_id == User.id)
            .join(
                Account,
                and_(Account.user_id == User.id, Account.is_default.is_(True)),
                isouter=True,
            )
            .order_by(Budget.id)
        )
        alerts = 0
        seen: set[int] = set()
        for budget, user, account in self.session.execute(stmt).all():
            if budget.id in seen:
                continue
            seen.add(budget.id)
            if account is None:
                continue
            if self._evaluate(budget, user, account, now, first, last):
                alerts += 1
        return alerts

    def _evaluate(
        self,
        budget: Budget,
        user: User,
        account: Account,
        now: datetime,
        first: date,
        last: date,
    ) -> bool:
        total = sum_amounts(
            self.session,
            budget.user_id,
            account_id=account.id,
            type=TransactionType.expense,
            start=first,
            end=last,
        )
        percentage = total / budget.amount_cents * 100
        logger.info(
            f"budget_check: budget_id={budget.id} account_id={account.id} "
            f"percentage_used={percentage:.1f}"
        )
        if percentage <= self.threshold:
            return False
        if budget.last_alert_sent and not is_new_month(budget.last_alert_sent, now):
            return False

        with atomic(self.session):
            JobQueue(self.session).enqueue(
                JobKind.send_email,
                {
                    "to": user.email,
                    "subject": f"Budget Alert for {account.name}",
                    "template": "budget_alert",
                    "context": {
                        "user_name": user.name,
                        "account_name": account.name,
                        "percentage_used": round(percentage, 1),
                        "budget_cents": budget.amount_cents,
                        "total_expenses_cents": total,
                    },
                },
                user_id=user.id,
                available_at=now,
            )
            budget.last_alert_sent = now
        logger.info(f"budget_alert_queued: budget_id={budget.id} user_id={user.id}")
        return True


class ReportService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def monthly_stats(self, year: int, month: int) -> dict[str, object]:
        first, last = month_bounds(year, month)
        rows = self.session.execute(
            select(
                Transaction.type,
                Transaction.category,
                func.sum(Transaction.amount_cents),
                func.count(Transaction.id),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(first, last),
            )
            .group_by(Transaction.type, Transaction.category)
        ).all()

        income = 0
        expenses = 0
        count = 0
        by_category: dict[str, int] = {}
        for txn_type, category, amount, n in rows:
            count += int(n)
            if txn_type == TransactionType.income:
                income += int(amount)
            else:
                expenses += int(amount)
                by_category[category] = by_category.get(category, 0) + int(amount)

        return {
            "year": year,
            "month": month,
            "total_income_cents": income,
            "total_expenses_cents": expenses,
            "net_cents": income - expenses,
            "transaction_count": count,
            "by_category": [
                {"category": name, "amount_cents": amount}
                for name, amount in sorted(
                    by_category.items(), key=lambda item: item[1], reverse=True
                )
            ],
        }


class MonthlyReporter:
    def __init__(self, session: Session) -> None:
        self.session = session

    def run(self, today: Optional[date] = None) -> int:
        today = today or local_today()
        year, month = previous_month(today)
        month_label = date(year, month, 1).strftime("%B %Y")
        queue = JobQueue(self.session)
        queued = 0
        for user in self.session.scalars(select(User).order_by(User.id)).all():
            stats = ReportService(self.session, user.id).monthly_stats(year, month)
            if not stats["transaction_count"]:
                continue
            queue.enqueue(
                JobKind.send_email,
                {
                    "to": user.email,
                    "subject": f"Your Monthly Financial Report - {month_label}",
                    "template": "monthly_report",
                    "context": {
                        **stats,
                        "user_name": user.name,
                        "month_label": month_label,
                    },
                },
                user_id=user.id,
            )
            queued += 1
        self.session.commit()
        logger.info(f"monthly_reports_queued: month={year}-{month:02d} count={queued}")
        return queued
