"""Seed data for new ledgers: built-in account types and default tags."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from models import AccountTypeCategory, DefaultSign


@dataclass(frozen=True)
class AccountTypeSeed:
    name: str
    category: AccountTypeCategory
    default_sign: DefaultSign


@dataclass(frozen=True)
class TagSeed:
    name: str
    color: Optional[str] = None
    children: tuple["TagSeed", ...] = field(default_factory=tuple)


BUILTIN_ACCOUNT_TYPES: tuple[AccountTypeSeed, ...] = (
    AccountTypeSeed("Checking", AccountTypeCategory.asset, DefaultSign.positive),
    AccountTypeSeed("Savings", AccountTypeCategory.asset, DefaultSign.positive),
    AccountTypeSeed("Investment", AccountTypeCategory.asset, DefaultSign.positive),
    AccountTypeSeed("Credit Card", AccountTypeCategory.liability, DefaultSign.negative),
    AccountTypeSeed("Mortgage", AccountTypeCategory.liability, DefaultSign.negative),
    AccountTypeSeed("Auto Loan", AccountTypeCategory.liability, DefaultSign.negative),
)


DEFAULT_TAGS: tuple[TagSeed, ...] = (
    TagSeed(
        "Income",
        "#10B981",
        (
            TagSeed("Salary", "#10B981"),
            TagSeed("Bonus", "#34D399"),
            TagSeed("Interest", "#6EE7B7"),
            TagSeed("Other Income", "#A7F3D0"),
        ),
    ),
    TagSeed(
        "Expenses",
        "#EF4444",
        (
            TagSeed("Housing", "#8B5CF6"),
            TagSeed("Transportation", "#3B82F6"),
            TagSeed("Food & Dining", "#F59E0B"),
            TagSeed("Entertainment", "#EC4899"),
            TagSeed("Healthcare", "#14B8A6"),
            TagSeed("Shopping", "#F97316"),
            TagSeed("Bills & Services", "#6366F1"),
            TagSeed("Personal Care", "#A855F7"),
        ),
    ),
)


class SeedLoader:
    """Supplies the seed records handed to ``SeedService``.

    The packaged defaults are used unless a JSON file is given, in which case
    it must hold ``{"account_types": [...], "tags": [...]}`` with tags nested
    through a ``children`` list.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path

    def _load(self) -> dict:
        if self.path is None:
            return {}
        with open(self.path, encoding="utf-8") as fh:
            return json.load(fh)

    def account_types(self) -> tuple[AccountTypeSeed, ...]:
        raw = self._load().get("account_types")
        if raw is None:
            return BUILTIN_ACCOUNT_TYPES
        return tuple(
            AccountTypeSeed(
                name=item["name"],
                category=AccountTypeCategory(item["category"]),
                default_sign=DefaultSign(item["default_sign"]),
            )
            for item in raw
        )

    def tags(self) -> tuple[TagSeed, ...]:
        raw = self._load().get("tags")
        if raw is None:
            return DEFAULT_TAGS
        return tuple(_tag_seed_from_dict(item) for item in raw)


def _tag_seed_from_dict(item: dict) -> TagSeed:
    return TagSeed(
        name=item["name"],
        color=item.get("color"),
        children=tuple(_tag_seed_from_dict(child) for child in item.get("children", [])),
    )
