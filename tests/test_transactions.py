from datetime import date

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

import services
from database import Base
from errors import ConflictError, InvalidInputError, NotFoundError
from ledger import recompute_balance
from models import Account, RecurringInterval, Transaction, TransactionType
from periods import resolve_period
from rate_limit import TokenBucketLimiter
from schemas import AccountIn, TransactionIn, TransactionUpdate
from services import (
    AccountService,
    TransactionFilters,
    TransactionService,
    UserService,
)


def _limiter() -> TokenBucketLimiter:
    return TokenBucketLimiter(capacity=1000, refill_rate=1, interval=3600)


def _balance(session: Session, account_id: int) -> int:
    return session.execute(
        select(Account.balance_cents).where(Account.id == account_id)
    ).scalar_one()


def _setup(session: Session):
    user = UserService(session).resolve("sub-1", "owner@example.com", "Owner")
    accounts = AccountService(session, user.id)
    main = accounts.create(AccountIn(name="Main"))
    savings = accounts.create(AccountIn(name="Savings"))
    return user, main, savings, TransactionService(session, user.id, _limiter())


def _txn(account_id: int, type: TransactionType, amount_cents: int, **extra) -> TransactionIn:
    return TransactionIn(
        account_id=account_id,
        type=type,
        amount_cents=amount_cents,
        date=extra.pop("date", date(2024, 3, 10)),
        category=extra.pop("category", "groceries"),
        **extra,
    )


def test_create_moves_balance_by_signed_amount() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, main, _, service = _setup(session)
        service.create(_txn(main.id, TransactionType.income, 10_000, category="salary"))
        service.create(_txn(main.id, TransactionType.expense, 2_500))

        assert _balance(session, main.id) == 7_500
        assert recompute_balance(session, main.id) == 7_500


def test_update_amount_applies_difference() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, main, _, service = _setup(session)
        service.create(_txn(main.id, TransactionType.income, 100_000, category="salary"))
        txn = service.create(_txn(main.id, TransactionType.expense, 10_000))
        assert _balance(session, main.id) == 90_000

        service.update(txn.id, TransactionUpdate(amount_cents=15_000))

        assert _balance(session, main.id) == 85_000
        assert recompute_balance(session, main.id) == 85_000


def test_update_type_flips_sign() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, main, _, service = _setup(session)
        txn = service.create(_txn(main.id, TransactionType.expense, 4_000))
        assert _balance(session, main.id) == -4_000

        service.update(txn.id, TransactionUpdate(type=TransactionType.income))

        assert _balance(session, main.id) == 4_000


def test_update_can_move_transaction_between_accounts() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, main, savings, service = _setup(session)
        txn = service.create(_txn(main.id, TransactionType.expense, 3_000))

        service.update(
            txn.id, TransactionUpdate(account_id=savings.id, amount_cents=2_000)
        )

        assert _balance(session, main.id) == 0
        assert _balance(session, savings.id) == -2_000
        assert recompute_balance(session, main.id) == 0
        assert recompute_balance(session, savings.id) == -2_000


def test_update_recurrence_recomputes_next_date() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, main, _, service = _setup(session)
        txn = service.create(_txn(main.id, TransactionType.expense, 1_500))
        assert txn.next_recurring_date is None

        updated = service.update(
            txn.id,
            TransactionUpdate(
                is_recurring=True, recurring_interval=RecurringInterval.weekly
            ),
        )
        assert updated.next_recurring_date == date(2024, 3, 17)

        with pytest.raises(InvalidInputError):
            service.update(txn.id, TransactionUpdate(recurring_interval=None))

        cleared = service.update(txn.id, TransactionUpdate(is_recurring=False))
        assert cleared.recurring_interval is None
        assert cleared.next_recurring_date is None


def _bulk_fixture(session: Session):
    _, main, savings, service = _setup(session)
    ids = [
        service.create(_txn(main.id, TransactionType.expense, 5_000)).id,
        service.create(_txn(savings.id, TransactionType.expense, 3_000)).id,
        service.create(_txn(main.id, TransactionType.income, 2_000)).id,
    ]
    kept = service.create(_txn(main.id, TransactionType.income, 1_000)).id
    return main.id, savings.id, service, ids, kept


def test_bulk_delete_reverses_each_account() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        main_id, savings_id, service, ids, kept = _bulk_fixture(session)
        assert _balance(session, main_id) == -2_000
        assert _balance(session, savings_id) == -3_000

        deleted = service.delete_many(ids + [9_999])

        assert deleted == 3
        assert _balance(session, main_id) == 1_000
        assert _balance(session, savings_id) == 0
        remaining = session.execute(select(Transaction.id)).scalars().all()
        assert remaining == [kept]


def test_bulk_delete_is_all_or_nothing(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        main_id, savings_id, service, ids, _ = _bulk_fixture(session)
        real_apply = services.apply_balance_delta

        def failing_apply(session_, account_id, delta_cents):
            if account_id == savings_id:
                raise OperationalError("UPDATE accounts", {}, Exception("locked"))
            real_apply(session_, account_id, delta_cents)

        monkeypatch.setattr(services, "apply_balance_delta", failing_apply)
        with pytest.raises(ConflictError):
            service.delete_many(ids)
        monkeypatch.undo()

        assert _balance(session, main_id) == -2_000
        assert _balance(session, savings_id) == -3_000
        count = session.execute(select(func.count(Transaction.id))).scalar_one()
        assert count == 4


def test_conflict_is_retried_once_then_succeeds(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, main, _, service = _setup(session)
        main_id = main.id
        real_apply = services.apply_balance_delta
        calls: list[int] = []

        def flaky_apply(session_, account_id, delta_cents):
            calls.append(delta_cents)
            if len(calls) == 1:
                raise OperationalError(
                    "UPDATE accounts", {}, Exception("database is locked")
                )
            real_apply(session_, account_id, delta_cents)

        monkeypatch.setattr(services, "apply_balance_delta", flaky_apply)
        service.create(_txn(main_id, TransactionType.expense, 500))
        monkeypatch.undo()

        assert calls == [-500, -500]
        count = session.execute(select(func.count(Transaction.id))).scalar_one()
        assert count == 1
        assert _balance(session, main_id) == -500


def test_bulk_delete_retries_when_rows_vanish_concurrently(
    tmp_path, monkeypatch
) -> None:
    engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        main_id, savings_id, service, ids, kept = _bulk_fixture(session)
        real_reversal = services.reversal_by_account
        raced: list[int] = []

        def racing_reversal(txns):
            if not raced:
                raced.append(txns[0].id)
                with Session(engine) as other:
                    TransactionService(other, service.user_id, _limiter()).delete(
                        txns[0].id
                    )
            return real_reversal(txns)

        monkeypatch.setattr(services, "reversal_by_account", racing_reversal)
        deleted = service.delete_many(ids)
        monkeypatch.undo()

        assert raced[0] in ids
        assert deleted == 2
        assert _balance(session, main_id) == 1_000
        assert _balance(session, savings_id) == 0
        assert recompute_balance(session, main_id) == 1_000
        remaining = session.execute(select(Transaction.id)).scalars().all()
        assert remaining == [kept]


def test_delete_missing_transaction_raises() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, _, _, service = _setup(session)
        with pytest.raises(NotFoundError):
            service.delete(42)


def test_other_owner_cannot_touch_account() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, main, _, service = _setup(session)
        other = UserService(session).resolve("sub-2", "other@example.com")
        intruder = TransactionService(session, other.id, _limiter())

        with pytest.raises(NotFoundError):
            intruder.create(_txn(main.id, TransactionType.expense, 100))

        txn = service.create(_txn(main.id, TransactionType.expense, 100))
        assert intruder.delete_many([txn.id]) == 0
        assert _balance(session, main.id) == -100


def test_recurring_input_requires_interval() -> None:
    with pytest.raises(ValidationError):
        _txn(1, TransactionType.expense, 100, is_recurring=True)

    with pytest.raises(ValidationError):
        _txn(1, TransactionType.expense, 0)


def test_list_filters_and_summary() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, main, savings, service = _setup(session)
        service.create(_txn(main.id, TransactionType.income, 50_000, category="salary"))
        service.create(_txn(main.id, TransactionType.expense, 1_200, category="Food"))
        service.create(
            _txn(
                savings.id,
                TransactionType.expense,
                800,
                category="food",
                date=date(2024, 2, 1),
            )
        )

        march = resolve_period("this_month", None, None, today=date(2024, 3, 20))
        food = service.list(TransactionFilters(category="food"))
        assert len(food) == 2
        assert [t.amount_cents for t in service.list(period=march)] == [1_200, 50_000]

        summary = service.summary(march, account_id=main.id)
        assert summary == {
            "income_cents": 50_000,
            "expense_cents": 1_200,
            "net_cents": 48_800,
        }
        count = session.execute(select(func.count(Transaction.id))).scalar_one()
        assert count == 3
