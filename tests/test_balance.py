from datetime import date

import pytest
from sqlalchemy.orm import Session

from database import Base, make_engine
from models import AccountKind, TransactionSource
from schemas import AccountIn, AccountUpdate, SplitIn, TransactionIn
from services import (
    AccountService,
    AccountTypeService,
    BalanceService,
    SeedService,
    SplitService,
    TransactionService,
    ValidationError,
)

USER = "alice"


def _engine():
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def _account(session: Session, type_name="Checking", **fields):
    SeedService(session, USER).ensure_builtin_account_types()
    account_type = next(
        t for t in AccountTypeService(session, USER).list_all() if t.name == type_name
    )
    return AccountService(session, USER).create(
        AccountIn(name="Main", account_type_id=account_type.id, **fields)
    )


def _add(session, account_id, amount_cents, description="Entry"):
    return TransactionService(session, USER).create(
        TransactionIn(
            account_id=account_id,
            amount_cents=amount_cents,
            description=description,
            date=date(2025, 3, 1),
        )
    )


def test_recalculated_balance_is_initial_plus_live_transactions() -> None:
    engine = _engine()

    with Session(engine) as session:
        account = _account(session, initial_balance_cents=10000)
        assert account.balance_cents == 10000
        _add(session, account.id, -2500)
        _add(session, account.id, 1000)
        dropped = _add(session, account.id, -99999)
        TransactionService(session, USER).delete(dropped.id)
        balances = BalanceService(session, USER)

        assert balances.recalculate(account.id) == 8500
        status = balances.check(account.id)
        assert status.cached_cents == 10000
        assert status.drift_cents == -1500
        assert status.has_drift

        assert balances.force_update(account.id) == 8500
        assert AccountService(session, USER).get(account.id).balance_cents == 8500
        assert not balances.check(account.id).has_drift


def test_initial_balance_change_is_picked_up_by_reconcile() -> None:
    engine = _engine()

    with Session(engine) as session:
        account = _account(session, initial_balance_cents=0)
        _add(session, account.id, -300)
        AccountService(session, USER).update(
            account.id, AccountUpdate(initial_balance_cents=1000)
        )

        assert BalanceService(session, USER).force_update(account.id) == 700


def test_split_and_merge_leave_balance_unchanged() -> None:
    engine = _engine()

    with Session(engine) as session:
        account = _account(session)
        txn = _add(session, account.id, -9000)
        balances = BalanceService(session, USER)
        before = balances.recalculate(account.id)

        SplitService(session, USER).split(
            txn.id,
            [
                SplitIn(amount_cents=-3000, description="A"),
                SplitIn(amount_cents=-6000, description="B"),
            ],
        )
        assert balances.recalculate(account.id) == before

        SplitService(session, USER).merge(txn.id)
        assert balances.recalculate(account.id) == before == -9000


def test_asset_value_update_records_adjustment() -> None:
    engine = _engine()

    with Session(engine) as session:
        house = _account(
            session,
            type_name="Investment",
            initial_balance_cents=100000,
            kind=AccountKind.asset,
        )
        balances = BalanceService(session, USER)

        txn = balances.update_asset_value(house.id, 125000, on=date(2025, 6, 30))

        assert txn.amount_cents == 25000
        assert txn.source == TransactionSource.adjustment
        assert txn.is_manual is False
        assert txn.date == date(2025, 6, 30)
        assert AccountService(session, USER).get(house.id).balance_cents == 125000

        assert balances.update_asset_value(house.id, 125000) is None

        lower = balances.update_asset_value(house.id, 110000)
        assert lower.amount_cents == -15000
        assert balances.recalculate(house.id) == 110000


def test_only_asset_accounts_can_be_revalued() -> None:
    engine = _engine()

    with Session(engine) as session:
        account = _account(session)

        with pytest.raises(ValidationError) as exc:
            BalanceService(session, USER).update_asset_value(account.id, 500)
        assert exc.value.rule == "invalid_account"
