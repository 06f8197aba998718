import datetime as dt
from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import (
    AccountType,
    RecurringInterval,
    TransactionStatus,
    TransactionType,
)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType = AccountType.current
    balance_cents: int = 0
    is_default: bool = False


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    balance_cents: int
    is_default: bool
    created_at: datetime
    transaction_count: Optional[int] = None


class TransactionIn(BaseModel):
    account_id: int
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    date: date
    category: str = Field(..., min_length=1, max_length=60)
    description: Optional[str] = Field(default=None, max_length=500)
    receipt_url: Optional[str] = Field(default=None, max_length=500)
    status: TransactionStatus = TransactionStatus.completed
    is_recurring: bool = False
    recurring_interval: Optional[RecurringInterval] = None

    @model_validator(mode="after")
    def _check_recurrence(self) -> "TransactionIn":
        if self.is_recurring and self.recurring_interval is None:
            raise ValueError(
                "Recurring interval is required for recurring transactions"
            )
        if not self.is_recurring:
            self.recurring_interval = None
        return self


class TransactionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    type: Optional[TransactionType] = None
    amount_cents: Optional[int] = Field(default=None, gt=0)
    date: Optional[dt.date] = None
    category: Optional[str] = Field(default=None, min_length=1, max_length=60)
    description: Optional[str] = Field(default=None, max_length=500)
    status: Optional[TransactionStatus] = None
    is_recurring: Optional[bool] = None
    recurring_interval: Optional[RecurringInterval] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    type: TransactionType
    amount_cents: int
    category: str
    description: Optional[str]
    date: date
    receipt_url: Optional[str]
    status: TransactionStatus
    is_recurring: bool
    recurring_interval: Optional[RecurringInterval]
    next_recurring_date: Optional[dt.date]
    last_processed: Optional[datetime]


class BulkDeleteIn(BaseModel):
    transaction_ids: list[int] = Field(..., min_length=1)


class BudgetIn(BaseModel):
    amount_cents: int = Field(..., gt=0)


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount_cents: int
    last_alert_sent: Optional[datetime]


class BudgetStatus(BaseModel):
    budget: Optional[BudgetOut]
    account_id: Optional[int]
    current_expenses_cents: int
    percentage_used: Optional[float]


class ReceiptScan(BaseModel):
    amount_cents: int = Field(..., gt=0)
    date: Optional[dt.date] = None
    description: Optional[str] = None
    category: Optional[str] = None
    merchant_name: Optional[str] = None


class ActionResult(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    code: Optional[str] = None
    warning: Optional[str] = None
