"""initial ledger schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return (
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )


def upgrade():
    default_sign = sa.Enum("positive", "negative", name="defaultsign")

    op.create_table(
        "account_types",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=128)),
        sa.Column("name", sa.String(length=60), nullable=False),
        sa.Column(
            "category",
            sa.Enum("asset", "liability", name="accounttypecategory"),
            nullable=False,
        ),
        sa.Column("default_sign", default_sign, nullable=False),
        sa.Column("is_custom", sa.Boolean(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("owner_id", "name", name="uq_account_type_owner_name"),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "account_type_id",
            sa.Integer(),
            sa.ForeignKey("account_types.id"),
            nullable=False,
        ),
        sa.Column("default_sign", default_sign, nullable=False),
        sa.Column(
            "initial_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column(
            "category",
            sa.Enum("family", "personal", "assets", name="accountcategory"),
            nullable=False,
        ),
        sa.Column(
            "kind",
            sa.Enum("bank", "pseudo", "asset", name="accountkind"),
            nullable=False,
        ),
        *_timestamps(),
    )
    op.create_index("ix_accounts_owner", "accounts", ["owner_id"])

    op.create_table(
        "account_shares",
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("user_id", sa.String(length=128), primary_key=True),
    )

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=60), nullable=False),
        sa.Column("color", sa.String(length=9)),
        sa.Column("level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("tags.id")),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("level >= 0 AND level <= 3", name="ck_tag_level_range"),
        sa.CheckConstraint("usage_count >= 0", name="ck_tag_usage_non_negative"),
    )
    op.create_index(
        "ix_tags_owner_level_name", "tags", ["owner_id", "level", "name"]
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("is_manual", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column(
            "source",
            sa.Enum(
                "manual",
                "csv",
                "excel",
                "initial-balance",
                "adjustment",
                name="transactionsource",
            ),
            nullable=False,
        ),
        sa.Column("is_split", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
    )
    op.create_index(
        "ix_transactions_account_date", "transactions", ["account_id", "date"]
    )
    op.create_index("ix_transactions_owner_date", "transactions", ["owner_id", "date"])

    op.create_table(
        "transaction_tags",
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id"), primary_key=True),
    )

    op.create_table(
        "transaction_splits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("amount_cents != 0", name="ck_split_amount_non_zero"),
    )
    op.create_index(
        "ix_splits_transaction", "transaction_splits", ["transaction_id", "position"]
    )

    op.create_table(
        "split_tags",
        sa.Column(
            "split_id",
            sa.Integer(),
            sa.ForeignKey("transaction_splits.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id"), primary_key=True),
    )

    op.create_table(
        "transaction_links",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column(
            "first_transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "second_transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "link_type",
            sa.Enum("transfer", "payment", "related", name="linktype"),
            nullable=False,
        ),
        sa.Column("note", sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint(
            "first_transaction_id",
            "second_transaction_id",
            name="uq_transaction_link_pair",
        ),
        sa.CheckConstraint(
            "first_transaction_id < second_transaction_id",
            name="ck_transaction_link_ordered",
        ),
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.CheckConstraint("month >= 1 AND month <= 12", name="ck_budget_month_range"),
    )
    op.create_index("ix_budgets_owner_month", "budgets", ["owner_id", "year", "month"])

    op.create_table(
        "budget_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("budgeted_cents", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "budgeted_cents >= 0", name="ck_budget_item_amount_positive"
        ),
    )

    op.create_table(
        "budget_item_tags",
        sa.Column(
            "budget_item_id",
            sa.Integer(),
            sa.ForeignKey("budget_items.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id"), primary_key=True),
    )


def downgrade():
    op.drop_table("budget_item_tags")
    op.drop_table("budget_items")
    op.drop_index("ix_budgets_owner_month", table_name="budgets")
    op.drop_table("budgets")
    op.drop_table("transaction_links")
    op.drop_table("split_tags")
    op.drop_index("ix_splits_transaction", table_name="transaction_splits")
    op.drop_table("transaction_splits")
    op.drop_table("transaction_tags")
    op.drop_index("ix_transactions_owner_date", table_name="transactions")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_tags_owner_level_name", table_name="tags")
    op.drop_table("tags")
    op.drop_table("account_shares")
    op.drop_index("ix_accounts_owner", table_name="accounts")
    op.drop_table("accounts")
    op.drop_table("account_types")
