from datetime import date

import pytest
from sqlalchemy.orm import Session

from database import Base, make_engine
from models import AccountTypeCategory, DefaultSign, LinkType
from schemas import AccountIn, AccountTypeIn, AccountUpdate, TransactionIn, TransactionLinkIn
from services import (
    AccountService,
    AccountTypeService,
    InUseError,
    NotFoundError,
    SeedService,
    TagService,
    TransactionLinkService,
    TransactionService,
    ValidationError,
)

USER = "alice"


def _engine():
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def _type(session: Session, name: str):
    return next(
        t for t in AccountTypeService(session, USER).list_all() if t.name == name
    )


def test_builtin_account_types_are_shared_and_read_only() -> None:
    engine = _engine()

    with Session(engine) as session:
        assert SeedService(session, USER).ensure_builtin_account_types() == 6
        assert SeedService(session, "bob").ensure_builtin_account_types() == 0

        types = AccountTypeService(session, USER)
        checking = _type(session, "Checking")
        assert checking.owner_id is None
        assert not checking.is_custom

        with pytest.raises(ValidationError) as exc:
            types.update(
                checking.id,
                AccountTypeIn(
                    name="Current",
                    category=AccountTypeCategory.asset,
                    default_sign=DefaultSign.positive,
                ),
            )
        assert exc.value.rule == "read_only"
        with pytest.raises(ValidationError):
            types.delete(checking.id)


def test_custom_account_types_are_private_and_guarded() -> None:
    engine = _engine()

    with Session(engine) as session:
        SeedService(session, USER).ensure_builtin_account_types()
        types = AccountTypeService(session, USER)
        crypto = types.create(
            AccountTypeIn(
                name="Crypto",
                category=AccountTypeCategory.asset,
                default_sign=DefaultSign.positive,
            )
        )

        assert crypto.is_custom
        assert "Crypto" not in [t.name for t in AccountTypeService(session, "bob").list_all()]
        with pytest.raises(ValidationError) as exc:
            types.create(
                AccountTypeIn(
                    name="checking",
                    category=AccountTypeCategory.asset,
                    default_sign=DefaultSign.positive,
                )
            )
        assert exc.value.rule == "duplicate"

        account = AccountService(session, USER).create(
            AccountIn(name="Wallet", account_type_id=crypto.id)
        )
        with pytest.raises(InUseError):
            types.delete(crypto.id)

        AccountService(session, USER).delete(account.id)
        types.delete(crypto.id)
        with pytest.raises(NotFoundError):
            types.get(crypto.id)


def test_account_defaults_follow_type_and_settings() -> None:
    engine = _engine()

    with Session(engine) as session:
        SeedService(session, USER).ensure_builtin_account_types()
        accounts = AccountService(session, USER)

        card = accounts.create(
            AccountIn(
                name="Visa",
                account_type_id=_type(session, "Credit Card").id,
                currency="eur",
                initial_balance_cents=-4500,
            )
        )

        assert card.type == "Credit Card"
        assert card.default_sign == DefaultSign.negative
        assert card.currency == "EUR"
        assert card.balance_cents == -4500

        renamed = accounts.update(card.id, AccountUpdate(name=" Visa Gold ", currency="usd"))
        assert renamed.name == "Visa Gold"
        assert renamed.currency == "USD"


def test_shared_accounts_are_visible_but_owner_controlled() -> None:
    engine = _engine()

    with Session(engine) as session:
        SeedService(session, USER).ensure_builtin_account_types()
        mine = AccountService(session, USER).create(
            AccountIn(name="Household", account_type_id=_type(session, "Checking").id)
        )
        bob = AccountService(session, "bob")

        with pytest.raises(NotFoundError):
            bob.get(mine.id)

        shared = AccountService(session, USER).share(mine.id, "bob")
        assert shared.shared_with == {"bob"}
        assert [a.id for a in bob.list_visible()] == [mine.id]

        txn = TransactionService(session, "bob").create(
            TransactionIn(
                account_id=mine.id,
                amount_cents=-1500,
                description="Pizza",
                date=date(2025, 3, 8),
            )
        )
        assert txn.owner_id == "bob"
        with pytest.raises(NotFoundError):
            bob.update(mine.id, AccountUpdate(name="Mine now"))

        AccountService(session, USER).unshare(mine.id, "bob")
        assert bob.list_visible() == []
        with pytest.raises(NotFoundError):
            TransactionService(session, "bob").get(txn.id)


def test_deleting_account_releases_tag_usage() -> None:
    engine = _engine()

    with Session(engine) as session:
        SeedService(session, USER).ensure_builtin_account_types()
        account = AccountService(session, USER).create(
            AccountIn(name="Old", account_type_id=_type(session, "Savings").id)
        )
        tags = TagService(session, USER)
        food = tags.create_item("Food", 0)
        TransactionService(session, USER).create(
            TransactionIn(
                account_id=account.id,
                amount_cents=-800,
                description="Bagels",
                date=date(2025, 3, 8),
                tag_ids=[food.id],
            )
        )

        AccountService(session, USER).delete(account.id)

        assert tags.get(food.id).usage_count == 0
        tags.delete_item(food.id)


def test_transaction_links_are_unordered_pairs() -> None:
    engine = _engine()

    with Session(engine) as session:
        SeedService(session, USER).ensure_builtin_account_types()
        accounts = AccountService(session, USER)
        checking = accounts.create(
            AccountIn(name="Checking", account_type_id=_type(session, "Checking").id)
        )
        card = accounts.create(
            AccountIn(name="Visa", account_type_id=_type(session, "Credit Card").id)
        )
        txns = TransactionService(session, USER)
        payment = txns.create(
            TransactionIn(
                account_id=checking.id,
                amount_cents=-20000,
                description="Card payment",
                date=date(2025, 3, 28),
            )
        )
        received = txns.create(
            TransactionIn(
                account_id=card.id,
                amount_cents=20000,
                description="Payment received",
                date=date(2025, 3, 29),
            )
        )
        links = TransactionLinkService(session, USER)

        link = links.link(
            TransactionLinkIn(
                transaction_id=received.id,
                other_transaction_id=payment.id,
                link_type=LinkType.payment,
            )
        )

        assert (link.first_transaction_id, link.second_transaction_id) == (
            payment.id,
            received.id,
        )
        assert [found.id for found in links.links_for(payment.id)] == [link.id]
        with pytest.raises(ValidationError) as exc:
            links.link(
                TransactionLinkIn(transaction_id=payment.id, other_transaction_id=received.id)
            )
        assert exc.value.rule == "duplicate"
        with pytest.raises(ValidationError) as exc:
            links.link(
                TransactionLinkIn(transaction_id=payment.id, other_transaction_id=payment.id)
            )
        assert exc.value.rule == "self_link"

        txns.delete(received.id)
        assert links.links_for(payment.id) == []
