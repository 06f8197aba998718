"""Ledger Store primitives.

Every write that changes a transaction's amount, type or existence goes through
``atomic`` together with ``apply_balance_delta`` on the owning account, so the
row write and the balance adjustment commit or roll back as one unit.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Iterator, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from tenacity import retry, retry_if_exception_type, stop_after_attempt

from errors import ConflictError, InvalidInputError
from models import Account, Transaction, TransactionType


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Movement:
    """A positive magnitude tagged with its direction."""

    type: TransactionType
    amount_cents: int

    def __post_init__(self) -> None:
        if self.amount_cents <= 0:
            raise InvalidInputError("Amount must be greater than zero")
        if not isinstance(self.type, TransactionType):
            raise InvalidInputError(f"Unknown transaction type: {self.type}")

    @property
    def delta(self) -> int:
        if self.type == TransactionType.expense:
            return -self.amount_cents
        return self.amount_cents

    @classmethod
    def of(cls, txn: Transaction) -> "Movement":
        return cls(txn.type, txn.amount_cents)


def apply_balance_delta(session: Session, account_id: int, delta_cents: int) -> None:
    if delta_cents == 0:
        return
    session.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(balance_cents=Account.balance_cents + delta_cents)
        .execution_options(synchronize_session="evaluate")
    )


def reversal_by_account(transactions: Iterable[Transaction]) -> dict[int, int]:
    changes: dict[int, int] = defaultdict(int)
    for txn in transactions:
        changes[txn.account_id] -= Movement.of(txn).delta
    return dict(changes)


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    try:
        yield session
        session.commit()
    except (OperationalError, IntegrityError) as exc:
        session.rollback()
        logger.warning(f"ledger_write_failed: error={exc.__class__.__name__}")
        raise ConflictError("Operation failed, please retry") from exc
    except Exception:
        session.rollback()
        raise


retry_on_conflict = retry(
    retry=retry_if_exception_type(ConflictError),
    stop=stop_after_attempt(2),
    reraise=True,
)


def signed_amount():
    return case(
        (Transaction.type == TransactionType.expense, -Transaction.amount_cents),
        else_=Transaction.amount_cents,
    )


def sum_amounts(
    session: Session,
    user_id: int,
    *,
    account_id: Optional[int] = None,
    type: Optional[TransactionType] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> int:
    stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
        Transaction.user_id == user_id
    )
    if account_id is not None:
        stmt = stmt.where(Transaction.account_id == account_id)
    if type is not None:
        stmt = stmt.where(Transaction.type == type)
    if start is not None:
        stmt = stmt.where(Transaction.date >= start)
    if end is not None:
        stmt = stmt.where(Transaction.date <= end)
    return int(session.execute(stmt).scalar_one() or 0)


def recompute_balance(session: Session, account_id: int) -> int:
    stmt = select(func.coalesce(func.sum(signed_amount()), 0)).where(
        Transaction.account_id == account_id
    )
    return int(session.execute(stmt).scalar_one() or 0)
