from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def _value_enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


class TransactionType(str, Enum):
    income = "INCOME"
    expense = "EXPENSE"


class TransactionStatus(str, Enum):
    pending = "PENDING"
    completed = "COMPLETED"
    failed = "FAILED"


class RecurringInterval(str, Enum):
    daily = "DAILY"
    weekly = "WEEKLY"
    monthly = "MONTHLY"
    yearly = "YEARLY"


class AccountType(str, Enum):
    current = "CURRENT"
    savings = "SAVINGS"


class JobKind(str, Enum):
    process_recurring = "process_recurring"
    send_email = "send_email"


class JobStatus(str, Enum):
    pending = "PENDING"
    done = "DONE"
    failed = "FAILED"


TRANSACTION_TYPE_ENUM = _value_enum(TransactionType, "transactiontype")
TRANSACTION_STATUS_ENUM = _value_enum(TransactionStatus, "transactionstatus")
RECURRING_INTERVAL_ENUM = _value_enum(RecurringInterval, "recurringinterval")
ACCOUNT_TYPE_ENUM = _value_enum(AccountType, "accounttype")
JOB_KIND_ENUM = _value_enum(JobKind, "jobkind")
JOB_STATUS_ENUM = _value_enum(JobStatus, "jobstatus")


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    auth_subject: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(120))

    accounts: Mapped[list["Account"]] = relationship(
        "Account", back_populates="user", cascade="all, delete-orphan"
    )
    budget: Mapped[Optional["Budget"]] = relationship(
        "Budget", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(ACCOUNT_TYPE_ENUM, nullable=False)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    user: Mapped["User"] = relationship("User", back_populates="accounts")
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("ix_accounts_user_default", "user_id", "is_default"),)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[TransactionType] = mapped_column(TRANSACTION_TYPE_ENUM, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(60), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    receipt_url: Mapped[Optional[str]] = mapped_column(String(500))
    status: Mapped[TransactionStatus] = mapped_column(
        TRANSACTION_STATUS_ENUM, nullable=False, default=TransactionStatus.completed
    )
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recurring_interval: Mapped[Optional[RecurringInterval]] = mapped_column(
        RECURRING_INTERVAL_ENUM
    )
    next_recurring_date: Mapped[Optional[date]] = mapped_column(Date)
    last_processed: Mapped[Optional[datetime]] = mapped_column(DateTime)

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_account_type_date", "account_id", "type", "date"),
        Index(
            "ix_transactions_recurring_due",
            "is_recurring",
            "status",
            "next_recurring_date",
        ),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "(is_recurring AND recurring_interval IS NOT NULL)"
            " OR (NOT is_recurring AND recurring_interval IS NULL)",
            name="ck_transactions_recurring_interval",
        ),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    last_alert_sent: Mapped[Optional[datetime]] = mapped_column(DateTime)

    user: Mapped["User"] = relationship("User", back_populates="budget")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_budget_amount_positive"),
    )


class Job(Base, TimestampMixin):
    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    kind: Mapped[JobKind] = mapped_column(JOB_KIND_ENUM, nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(Integer)
    payload: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    status: Mapped[JobStatus] = mapped_column(
        JOB_STATUS_ENUM, nullable=False, default=JobStatus.pending
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("ix_jobs_status_available", "status", "available_at"),
        Index("ix_jobs_kind_user_started", "kind", "user_id", "started_at"),
    )
