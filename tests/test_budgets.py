from datetime import date

import pytest
from sqlalchemy.orm import Session

from database import Base, make_engine
from schemas import AccountIn, BudgetIn, BudgetItemIn, BudgetUpdate, SplitIn, TransactionIn
from services import (
    AccountService,
    AccountTypeService,
    BudgetService,
    NotFoundError,
    SeedService,
    SplitService,
    TagService,
    TransactionService,
)

USER = "alice"


def _engine():
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def _account(session: Session, user: str = USER):
    SeedService(session, user).ensure_builtin_account_types()
    checking = next(
        t for t in AccountTypeService(session, user).list_all() if t.name == "Checking"
    )
    return AccountService(session, user).create(
        AccountIn(name="Joint", account_type_id=checking.id)
    )


def _add(session, account_id, amount_cents, day, tag_ids=(), user=USER):
    return TransactionService(session, user).create(
        TransactionIn(
            account_id=account_id,
            amount_cents=amount_cents,
            description="Purchase",
            date=day,
            tag_ids=list(tag_ids),
        )
    )


def test_budget_vs_actual_sums_tagged_spending_in_month() -> None:
    engine = _engine()

    with Session(engine) as session:
        account = _account(session)
        groceries = TagService(session, USER).create_item("Groceries", 0)
        _add(session, account.id, -12000, date(2025, 3, 3), [groceries.id])
        _add(session, account.id, -8000, date(2025, 3, 17), [groceries.id])
        _add(session, account.id, 5000, date(2025, 3, 20))
        # Outside the month.
        _add(session, account.id, -9900, date(2025, 4, 1), [groceries.id])
        deleted = _add(session, account.id, -700, date(2025, 3, 9), [groceries.id])
        TransactionService(session, USER).delete(deleted.id)

        budgets = BudgetService(session, USER)
        budget = budgets.create(BudgetIn(name="March", month=3, year=2025))
        budgets.add_item(
            budget.id,
            BudgetItemIn(category="Groceries", tag_ids=[groceries.id], budgeted_cents=50000),
        )

        report = budgets.get_budget_vs_actual(budget.id)

        (row,) = report.budget_items
        assert row.actual_spent_cents == 20000
        assert row.remaining_cents == 30000
        assert row.percentage_used == 40.0
        assert row.display_percentage == 40.0
        assert report.total_budgeted_cents == 50000
        assert report.total_spent_cents == 20000
        assert report.total_remaining_cents == 30000
        assert report.overall_percentage_used == 40.0


def test_split_transactions_are_categorized_by_their_splits() -> None:
    engine = _engine()

    with Session(engine) as session:
        account = _account(session)
        tags = TagService(session, USER)
        groceries = tags.create_item("Groceries", 0)
        dining = tags.create_item("Dining", 0)
        txn = _add(session, account.id, -10000, date(2025, 3, 5), [dining.id])
        SplitService(session, USER).split(
            txn.id,
            [
                SplitIn(amount_cents=-3000, description="Food", tag_ids=[groceries.id]),
                SplitIn(amount_cents=-7000, description="Dinner", tag_ids=[dining.id]),
            ],
        )

        budgets = BudgetService(session, USER)
        budget = budgets.create(BudgetIn(name="March", month=3, year=2025))
        budgets.add_item(
            budget.id,
            BudgetItemIn(category="Groceries", tag_ids=[groceries.id], budgeted_cents=10000),
        )
        budgets.add_item(
            budget.id,
            BudgetItemIn(category="Dining", tag_ids=[dining.id], budgeted_cents=5000),
        )

        report = budgets.get_budget_vs_actual(budget.id)

        spent = {row.category: row.actual_spent_cents for row in report.budget_items}
        assert spent == {"Groceries": 3000, "Dining": 7000}
        dining_row = report.budget_items[1]
        assert dining_row.remaining_cents == -2000
        assert dining_row.percentage_used == 140.0
        assert dining_row.display_percentage == 100.0


def test_items_matching_any_of_their_tags() -> None:
    engine = _engine()

    with Session(engine) as session:
        account = _account(session)
        tags = TagService(session, USER)
        fuel = tags.create_item("Fuel", 0)
        parking = tags.create_item("Parking", 0)
        _add(session, account.id, -4000, date(2025, 3, 1), [fuel.id])
        _add(session, account.id, -1000, date(2025, 3, 2), [parking.id])
        _add(session, account.id, -500, date(2025, 3, 3), [fuel.id, parking.id])

        budgets = BudgetService(session, USER)
        budget = budgets.create(BudgetIn(name="March", month=3, year=2025))
        budgets.add_item(
            budget.id,
            BudgetItemIn(
                category="Car", tag_ids=[fuel.id, parking.id], budgeted_cents=20000
            ),
        )

        report = budgets.get_budget_vs_actual(budget.id)

        assert report.budget_items[0].actual_spent_cents == 5500
        assert report.budget_items[0].percentage_used == 27.5


def test_other_users_accounts_do_not_count() -> None:
    engine = _engine()

    with Session(engine) as session:
        mine = _account(session)
        theirs = _account(session, user="bob")
        groceries = TagService(session, USER).create_item("Groceries", 0)
        _add(session, mine.id, -1000, date(2025, 3, 3), [groceries.id])
        _add(session, theirs.id, -9000, date(2025, 3, 3), user="bob")

        budgets = BudgetService(session, USER)
        budget = budgets.create(BudgetIn(name="March", month=3, year=2025))
        budgets.add_item(
            budget.id,
            BudgetItemIn(category="Groceries", tag_ids=[groceries.id], budgeted_cents=2000),
        )

        assert budgets.get_budget_vs_actual(budget.id).total_spent_cents == 1000
        with pytest.raises(NotFoundError):
            BudgetService(session, "bob").get_budget_vs_actual(budget.id)


def test_budget_listing_and_updates() -> None:
    engine = _engine()

    with Session(engine) as session:
        groceries = TagService(session, USER).create_item("Groceries", 0)
        budgets = BudgetService(session, USER)
        march = budgets.create(BudgetIn(name="March", month=3, year=2025))
        budgets.create(BudgetIn(name="April", month=4, year=2025, is_active=False))
        budgets.create(BudgetIn(name="Old", month=12, year=2024))

        assert [b.name for b in budgets.list()] == ["April", "March", "Old"]
        assert [b.name for b in budgets.list(active_only=True)] == ["March", "Old"]
        assert [b.name for b in budgets.list(month=3, year=2025)] == ["March"]

        budgets.update(march.id, BudgetUpdate(name="March groceries", is_active=False))
        assert budgets.list(active_only=True)[0].name == "Old"

        item = budgets.add_item(
            march.id,
            BudgetItemIn(category=" Food ", tag_ids=[groceries.id], budgeted_cents=100),
        )
        assert item.category == "Food"
        budgets.update_item(
            item.id,
            BudgetItemIn(category="Food", tag_ids=[groceries.id], budgeted_cents=300),
        )
        assert budgets.get(march.id).items[0].budgeted_cents == 300

        budgets.delete_item(item.id)
        assert budgets.get(march.id).items == []
        budgets.delete(march.id)
        with pytest.raises(NotFoundError):
            budgets.get(march.id)


def test_budget_without_items_reports_zero_totals() -> None:
    engine = _engine()

    with Session(engine) as session:
        budgets = BudgetService(session, USER)
        budget = budgets.create(BudgetIn(name="Empty", month=1, year=2025))

        report = budgets.get_budget_vs_actual(budget.id)

        assert report.budget_items == []
        assert (
            report.total_budgeted_cents,
            report.total_spent_cents,
            report.total_remaining_cents,
            report.overall_percentage_used,
        ) == (0, 0, 0, 0.0)
