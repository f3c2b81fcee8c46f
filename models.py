from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def _values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class DefaultSign(str, Enum):
    positive = "positive"
    negative = "negative"


class AccountTypeCategory(str, Enum):
    asset = "asset"
    liability = "liability"


class AccountCategory(str, Enum):
    family = "family"
    personal = "personal"
    assets = "assets"


class AccountKind(str, Enum):
    bank = "bank"
    pseudo = "pseudo"
    asset = "asset"


class TransactionSource(str, Enum):
    manual = "manual"
    csv = "csv"
    excel = "excel"
    initial_balance = "initial-balance"
    adjustment = "adjustment"


class LinkType(str, Enum):
    transfer = "transfer"
    payment = "payment"
    related = "related"


TRANSACTION_SOURCE_ENUM = SAEnum(
    TransactionSource, name="transactionsource", values_callable=_values
)


class TagLevel(int, Enum):
    category = 0
    subcategory = 1
    tag_group = 2
    tag = 3


MAX_TAG_LEVEL = TagLevel.tag.value


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class AccountType(Base, TimestampMixin):
    __tablename__ = "account_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[Optional[str]] = mapped_column(String(128))
    name: Mapped[str] = mapped_column(String(60), nullable=False)
    category: Mapped[AccountTypeCategory] = mapped_column(
        SAEnum(AccountTypeCategory), nullable=False
    )
    default_sign: Mapped[DefaultSign] = mapped_column(
        SAEnum(DefaultSign), nullable=False
    )
    is_custom: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    accounts: Mapped[list["Account"]] = relationship(
        "Account", back_populates="account_type"
    )

    __table_args__ = (
        UniqueConstraint("owner_id", "name", name="uq_account_type_owner_name"),
    )


class AccountShare(Base):
    __tablename__ = "account_shares"

    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    account_type_id: Mapped[int] = mapped_column(
        ForeignKey("account_types.id"), nullable=False
    )
    default_sign: Mapped[DefaultSign] = mapped_column(
        SAEnum(DefaultSign), nullable=False
    )
    initial_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    category: Mapped[AccountCategory] = mapped_column(
        SAEnum(AccountCategory), nullable=False, default=AccountCategory.personal
    )
    kind: Mapped[AccountKind] = mapped_column(
        SAEnum(AccountKind), nullable=False, default=AccountKind.bank
    )

    account_type: Mapped["AccountType"] = relationship(
        "AccountType", back_populates="accounts"
    )
    shares: Mapped[list["AccountShare"]] = relationship(
        "AccountShare", cascade="all, delete-orphan", passive_deletes=True
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def type(self) -> str:
        return self.account_type.name

    @property
    def shared_with(self) -> set[str]:
        return {share.user_id for share in self.shares}

    def is_visible_to(self, user_id: str) -> bool:
        return self.owner_id == user_id or user_id in self.shared_with

    __table_args__ = (Index("ix_accounts_owner", "owner_id"),)


class Tag(Base, TimestampMixin):
    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(60), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(9))
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    parent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("tags.id"))
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        CheckConstraint(
            f"level >= 0 AND level <= {MAX_TAG_LEVEL}", name="ck_tag_level_range"
        ),
        CheckConstraint("usage_count >= 0", name="ck_tag_usage_non_negative"),
        Index("ix_tags_owner_level_name", "owner_id", "level", "name"),
    )


transaction_tags = Table(
    "transaction_tags",
    Base.metadata,
    Column(
        "transaction_id",
        Integer,
        ForeignKey("transactions.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


split_tags = Table(
    "split_tags",
    Base.metadata,
    Column(
        "split_id",
        Integer,
        ForeignKey("transaction_splits.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    is_manual: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    source: Mapped[TransactionSource] = mapped_column(
        TRANSACTION_SOURCE_ENUM, nullable=False, default=TransactionSource.manual
    )
    is_split: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")
    tags: Mapped[list["Tag"]] = relationship("Tag", secondary=transaction_tags)
    splits: Mapped[list["TransactionSplit"]] = relationship(
        "TransactionSplit",
        back_populates="transaction",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="TransactionSplit.position",
    )

    @property
    def tag_ids(self) -> set[int]:
        return {tag.id for tag in self.tags}

    __table_args__ = (
        Index("ix_transactions_account_date", "account_id", "date"),
        Index("ix_transactions_owner_date", "owner_id", "date"),
    )


class TransactionSplit(Base, TimestampMixin):
    __tablename__ = "transaction_splits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    transaction: Mapped["Transaction"] = relationship(
        "Transaction", back_populates="splits"
    )
    tags: Mapped[list["Tag"]] = relationship("Tag", secondary=split_tags)

    @property
    def tag_ids(self) -> set[int]:
        return {tag.id for tag in self.tags}

    __table_args__ = (
        CheckConstraint("amount_cents != 0", name="ck_split_amount_non_zero"),
        Index("ix_splits_transaction", "transaction_id", "position"),
    )


class TransactionLink(Base, TimestampMixin):
    __tablename__ = "transaction_links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    first_transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    second_transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    link_type: Mapped[LinkType] = mapped_column(SAEnum(LinkType), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint(
            "first_transaction_id",
            "second_transaction_id",
            name="uq_transaction_link_pair",
        ),
        CheckConstraint(
            "first_transaction_id < second_transaction_id",
            name="ck_transaction_link_ordered",
        ),
    )


budget_item_tags = Table(
    "budget_item_tags",
    Base.metadata,
    Column(
        "budget_item_id",
        Integer,
        ForeignKey("budget_items.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    items: Mapped[list["BudgetItem"]] = relationship(
        "BudgetItem",
        back_populates="budget",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="BudgetItem.id",
    )

    __table_args__ = (
        CheckConstraint("month >= 1 AND month <= 12", name="ck_budget_month_range"),
        Index("ix_budgets_owner_month", "owner_id", "year", "month"),
    )


class BudgetItem(Base, TimestampMixin):
    __tablename__ = "budget_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    budgeted_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    budget: Mapped["Budget"] = relationship("Budget", back_populates="items")
    tags: Mapped[list["Tag"]] = relationship("Tag", secondary=budget_item_tags)

    @property
    def tag_ids(self) -> set[int]:
        return {tag.id for tag in self.tags}

    __table_args__ = (
        CheckConstraint("budgeted_cents >= 0", name="ck_budget_item_amount_positive"),
    )
