import datetime as dt
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import (
    AccountCategory,
    AccountKind,
    AccountTypeCategory,
    DefaultSign,
    LinkType,
    MAX_TAG_LEVEL,
    TransactionSource,
)


class AccountTypeIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=60)
    category: AccountTypeCategory
    default_sign: DefaultSign


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    account_type_id: int
    initial_balance_cents: int = 0
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    category: AccountCategory = AccountCategory.personal
    kind: AccountKind = AccountKind.bank
    default_sign: Optional[DefaultSign] = None

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value


class AccountUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    category: Optional[AccountCategory] = None
    default_sign: Optional[DefaultSign] = None
    initial_balance_cents: Optional[int] = None


class TransactionIn(BaseModel):
    account_id: int
    amount_cents: int
    description: str = Field(..., min_length=1, max_length=200)
    date: date
    source: TransactionSource = TransactionSource.manual
    tag_ids: list[int] = Field(default_factory=list)


class TransactionUpdate(BaseModel):
    """Partial update; only fields that were explicitly set are applied."""

    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    date: Optional[dt.date] = None
    tag_ids: Optional[list[int]] = None


class SplitIn(BaseModel):
    amount_cents: int
    description: str = Field(default="", max_length=200)
    tag_ids: list[int] = Field(default_factory=list)


class SplitUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=200)
    tag_ids: Optional[list[int]] = None


class SplitResult(BaseModel):
    transaction_id: int
    split_ids: list[int]
    total_cents: int


class TagIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=60)
    level: int = Field(..., ge=0, le=MAX_TAG_LEVEL)
    parent_id: Optional[int] = None
    color: Optional[str] = Field(default=None, max_length=9)
    order: int = 0


class TagUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=60)
    color: Optional[str] = Field(default=None, max_length=9)
    order: Optional[int] = None


class TagBulkUpdate(BaseModel):
    id: int
    updates: TagUpdate


class TagNode(BaseModel):
    id: int
    name: str
    level: int
    parent_id: Optional[int]
    color: Optional[str]
    is_default: bool
    usage_count: int
    children: list["TagNode"] = Field(default_factory=list)


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=1970, le=3000)
    is_active: bool = True


class BudgetUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    year: Optional[int] = Field(default=None, ge=1970, le=3000)
    is_active: Optional[bool] = None


class BudgetItemIn(BaseModel):
    category: str = Field(..., min_length=1, max_length=100)
    tag_ids: list[int] = Field(..., min_length=1)
    budgeted_cents: int = Field(..., gt=0)

    @field_validator("category")
    @classmethod
    def _strip_category(cls, value: str) -> str:
        clean = value.strip()
        if not clean:
            raise ValueError("Category label cannot be empty")
        return clean


class BudgetItemProgress(BaseModel):
    id: int
    category: str
    tag_ids: list[int]
    budgeted_cents: int
    actual_spent_cents: int
    remaining_cents: int
    percentage_used: float
    display_percentage: float


class BudgetVsActual(BaseModel):
    budget_id: int
    month: int
    year: int
    total_budgeted_cents: int
    total_spent_cents: int
    total_remaining_cents: int
    overall_percentage_used: float
    budget_items: list[BudgetItemProgress]


class BalanceCheck(BaseModel):
    account_id: int
    cached_cents: int
    recalculated_cents: int

    @property
    def drift_cents(self) -> int:
        return self.recalculated_cents - self.cached_cents

    @property
    def has_drift(self) -> bool:
        return self.drift_cents != 0


class TransactionLinkIn(BaseModel):
    transaction_id: int
    other_transaction_id: int
    link_type: LinkType = LinkType.transfer
    note: Optional[str] = Field(default=None, max_length=200)


class AccountTypeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: Optional[str]
    name: str
    category: AccountTypeCategory
    default_sign: DefaultSign
    is_custom: bool


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    name: str
    type: str
    account_type_id: int
    default_sign: DefaultSign
    initial_balance_cents: int
    balance_cents: int
    currency: str
    category: AccountCategory
    kind: AccountKind
    shared_with: set[str]


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    owner_id: str
    amount_cents: int
    description: str
    date: date
    is_manual: bool
    source: TransactionSource
    is_split: bool
    tag_ids: set[int]


class SplitOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    transaction_id: int
    amount_cents: int
    description: str
    position: int
    tag_ids: set[int]


class TagOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    color: Optional[str]
    level: int
    parent_id: Optional[int]
    is_default: bool
    usage_count: int
    order: int


class BudgetItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    budget_id: int
    category: str
    budgeted_cents: int
    tag_ids: set[int]


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    name: str
    month: int
    year: int
    is_active: bool
    items: list[BudgetItemOut]


class TransactionLinkOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    first_transaction_id: int
    second_transaction_id: int
    link_type: LinkType
    note: Optional[str]


class TagMoveIn(BaseModel):
    level: int = Field(..., ge=0, le=MAX_TAG_LEVEL)
    parent_id: Optional[int] = None


class BulkTagIn(BaseModel):
    transaction_ids: list[int] = Field(..., min_length=1)
    tag_ids: list[int] = Field(..., min_length=1)


class ShareIn(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)


class AssetValueIn(BaseModel):
    balance_cents: int
    on: Optional[dt.date] = None


class SplitBatchIn(BaseModel):
    updates: dict[int, SplitUpdate] = Field(default_factory=dict)
    remove: list[int] = Field(default_factory=list)
