"""Public entry point of the ledger engine.

``Ledger`` wires the services to an injected session factory and seed loader.
Each call opens its own session and converts its result to plain pydantic
models before the session closes. Mutations that can move an account's
balance run under that account's lock so concurrent writers never interleave
a recalculation; reads take no lock.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date
from typing import Any, Callable, Iterator, Optional, Sequence

from pydantic import BaseModel
from sqlalchemy.orm import Session, sessionmaker

from config import get_settings
from database import get_session_factory
from schemas import (
    AccountIn,
    AccountOut,
    AccountTypeIn,
    AccountTypeOut,
    AccountUpdate,
    BalanceCheck,
    BudgetIn,
    BudgetItemIn,
    BudgetItemOut,
    BudgetOut,
    BudgetUpdate,
    BudgetVsActual,
    SplitIn,
    SplitOut,
    SplitResult,
    SplitUpdate,
    TagBulkUpdate,
    TagNode,
    TagOut,
    TagUpdate,
    TransactionIn,
    TransactionLinkIn,
    TransactionLinkOut,
    TransactionOut,
    TransactionUpdate,
)
from seed import SeedLoader
from services import (
    AccountService,
    AccountTypeService,
    BalanceService,
    BudgetService,
    SeedService,
    SplitService,
    TagService,
    TransactionLinkService,
    TransactionService,
)

logger = logging.getLogger(__name__)


class AccountLocks:
    """One re-entrant lock per account id, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.RLock] = {}

    def for_account(self, account_id: int) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, account_id: int) -> Iterator[None]:
        with self.for_account(account_id):
            yield


def _convert(result: Any, out: Optional[type[BaseModel]]) -> Any:
    if out is None or result is None:
        return result
    if isinstance(result, list):
        return [out.model_validate(item) for item in result]
    return out.model_validate(result)


class Ledger:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        seed_loader: Optional[SeedLoader] = None,
        locks: Optional[AccountLocks] = None,
    ) -> None:
        self.session_factory = session_factory or get_session_factory()
        self.seed_loader = seed_loader or SeedLoader()
        self.locks = locks or AccountLocks()

    def _run(
        self, fn: Callable[[Session], Any], out: Optional[type[BaseModel]] = None
    ) -> Any:
        session: Session = self.session_factory()
        try:
            return _convert(fn(session), out)
        finally:
            session.close()

    def _run_locked(
        self,
        account_id: int,
        fn: Callable[[Session], Any],
        out: Optional[type[BaseModel]] = None,
    ) -> Any:
        with self.locks.hold(account_id):
            return self._run(fn, out)

    def _account_of_transaction(self, user_id: str, transaction_id: int) -> int:
        return self._run(
            lambda s: TransactionService(s, user_id).get(transaction_id).account_id
        )

    def _account_of_split(self, user_id: str, split_id: int) -> int:
        return self._run(
            lambda s: SplitService(s, user_id).get(split_id).transaction.account_id
        )

    def bootstrap_user(self, user_id: str) -> None:
        """Make sure built-in account types and the user's default tags exist."""

        def seed(session: Session) -> None:
            service = SeedService(session, user_id, self.seed_loader)
            service.ensure_builtin_account_types()
            if get_settings().seed_defaults:
                service.seed_default_tags()

        self._run(seed)
        logger.info(f"user_bootstrapped: user={user_id}")

    # account types

    def list_account_types(self, user_id: str) -> list[AccountTypeOut]:
        return self._run(
            lambda s: AccountTypeService(s, user_id).list_all(), AccountTypeOut
        )

    def create_account_type(self, user_id: str, data: AccountTypeIn) -> AccountTypeOut:
        return self._run(
            lambda s: AccountTypeService(s, user_id).create(data), AccountTypeOut
        )

    def update_account_type(
        self, user_id: str, type_id: int, data: AccountTypeIn
    ) -> AccountTypeOut:
        return self._run(
            lambda s: AccountTypeService(s, user_id).update(type_id, data),
            AccountTypeOut,
        )

    def delete_account_type(self, user_id: str, type_id: int) -> None:
        self._run(lambda s: AccountTypeService(s, user_id).delete(type_id))

    # accounts

    def list_accounts(self, user_id: str) -> list[AccountOut]:
        return self._run(lambda s: AccountService(s, user_id).list_visible(), AccountOut)

    def get_account(self, user_id: str, account_id: int) -> AccountOut:
        return self._run(lambda s: AccountService(s, user_id).get(account_id), AccountOut)

    def create_account(self, user_id: str, data: AccountIn) -> AccountOut:
        return self._run(lambda s: AccountService(s, user_id).create(data), AccountOut)

    def update_account(
        self, user_id: str, account_id: int, data: AccountUpdate
    ) -> AccountOut:
        return self._run_locked(
            account_id,
            lambda s: AccountService(s, user_id).update(account_id, data),
            AccountOut,
        )

    def delete_account(self, user_id: str, account_id: int) -> None:
        self._run_locked(
            account_id, lambda s: AccountService(s, user_id).delete(account_id)
        )

    def share_account(
        self, user_id: str, account_id: int, collaborator_id: str
    ) -> AccountOut:
        return self._run(
            lambda s: AccountService(s, user_id).share(account_id, collaborator_id),
            AccountOut,
        )

    def unshare_account(
        self, user_id: str, account_id: int, collaborator_id: str
    ) -> AccountOut:
        return self._run(
            lambda s: AccountService(s, user_id).unshare(account_id, collaborator_id),
            AccountOut,
        )

    # transactions

    def create_transaction(self, user_id: str, data: TransactionIn) -> TransactionOut:
        return self._run_locked(
            data.account_id,
            lambda s: TransactionService(s, user_id).create(data),
            TransactionOut,
        )

    def update_transaction(
        self, user_id: str, transaction_id: int, data: TransactionUpdate
    ) -> TransactionOut:
        account_id = self._account_of_transaction(user_id, transaction_id)
        return self._run_locked(
            account_id,
            lambda s: TransactionService(s, user_id).update(transaction_id, data),
            TransactionOut,
        )

    def delete_transaction(self, user_id: str, transaction_id: int) -> None:
        account_id = self._account_of_transaction(user_id, transaction_id)
        self._run_locked(
            account_id, lambda s: TransactionService(s, user_id).delete(transaction_id)
        )

    def get_transaction(self, user_id: str, transaction_id: int) -> TransactionOut:
        return self._run(
            lambda s: TransactionService(s, user_id).get(transaction_id), TransactionOut
        )

    def list_transactions(self, user_id: str, account_id: int) -> list[TransactionOut]:
        return self._run(
            lambda s: TransactionService(s, user_id).list_by_account(account_id),
            TransactionOut,
        )

    def bulk_assign_tags(
        self, user_id: str, transaction_ids: Sequence[int], tag_ids: Sequence[int]
    ) -> list[TransactionOut]:
        return self._run(
            lambda s: TransactionService(s, user_id).bulk_assign_tags(
                transaction_ids, tag_ids
            ),
            TransactionOut,
        )

    # splits

    def split(
        self, user_id: str, transaction_id: int, specs: Sequence[SplitIn]
    ) -> SplitResult:
        account_id = self._account_of_transaction(user_id, transaction_id)
        return self._run_locked(
            account_id, lambda s: SplitService(s, user_id).split(transaction_id, specs)
        )

    def list_splits(self, user_id: str, transaction_id: int) -> list[SplitOut]:
        return self._run(
            lambda s: SplitService(s, user_id).list_for(transaction_id), SplitOut
        )

    def update_split(self, user_id: str, split_id: int, data: SplitUpdate) -> SplitOut:
        account_id = self._account_of_split(user_id, split_id)
        return self._run_locked(
            account_id,
            lambda s: SplitService(s, user_id).update_split(split_id, data),
            SplitOut,
        )

    def update_splits(
        self,
        user_id: str,
        transaction_id: int,
        updates: dict[int, SplitUpdate],
        remove: Sequence[int] = (),
    ) -> list[SplitOut]:
        account_id = self._account_of_transaction(user_id, transaction_id)
        return self._run_locked(
            account_id,
            lambda s: SplitService(s, user_id).update_splits(
                transaction_id, updates, remove
            ),
            SplitOut,
        )

    def delete_split(self, user_id: str, split_id: int) -> None:
        account_id = self._account_of_split(user_id, split_id)
        self._run_locked(
            account_id, lambda s: SplitService(s, user_id).delete_split(split_id)
        )

    def merge(self, user_id: str, transaction_id: int) -> TransactionOut:
        account_id = self._account_of_transaction(user_id, transaction_id)
        return self._run_locked(
            account_id,
            lambda s: SplitService(s, user_id).merge(transaction_id),
            TransactionOut,
        )

    # balances

    def recalculate(self, user_id: str, account_id: int) -> int:
        return self._run(lambda s: BalanceService(s, user_id).recalculate(account_id))

    def check_balance(self, user_id: str, account_id: int) -> BalanceCheck:
        return self._run(lambda s: BalanceService(s, user_id).check(account_id))

    def force_update(self, user_id: str, account_id: int) -> int:
        return self._run_locked(
            account_id, lambda s: BalanceService(s, user_id).force_update(account_id)
        )

    def update_asset_value(
        self,
        user_id: str,
        account_id: int,
        new_balance_cents: int,
        on: Optional[date] = None,
    ) -> Optional[TransactionOut]:
        return self._run_locked(
            account_id,
            lambda s: BalanceService(s, user_id).update_asset_value(
                account_id, new_balance_cents, on
            ),
            TransactionOut,
        )

    # tags

    def list_tags(self, user_id: str) -> list[TagOut]:
        return self._run(lambda s: TagService(s, user_id).list_all(), TagOut)

    def get_hierarchy_tree(self, user_id: str) -> list[TagNode]:
        return self._run(lambda s: TagService(s, user_id).get_hierarchy_tree())

    def create_tag(
        self,
        user_id: str,
        name: str,
        level: int,
        parent_id: Optional[int] = None,
        *,
        color: Optional[str] = None,
        order: int = 0,
    ) -> TagOut:
        return self._run(
            lambda s: TagService(s, user_id).create_item(
                name, level, parent_id, color=color, order=order
            ),
            TagOut,
        )

    def update_tag(self, user_id: str, tag_id: int, updates: TagUpdate) -> TagOut:
        return self._run(
            lambda s: TagService(s, user_id).update_item(tag_id, updates), TagOut
        )

    def bulk_update_tags(
        self, user_id: str, items: Sequence[TagBulkUpdate]
    ) -> list[TagOut]:
        return self._run(
            lambda s: TagService(s, user_id).bulk_update_items(items), TagOut
        )

    def move_tag(
        self,
        user_id: str,
        tag_id: int,
        new_level: int,
        new_parent_id: Optional[int] = None,
    ) -> TagOut:
        return self._run(
            lambda s: TagService(s, user_id).move_item_level(
                tag_id, new_level, new_parent_id
            ),
            TagOut,
        )

    def delete_tag(self, user_id: str, tag_id: int) -> None:
        self._run(lambda s: TagService(s, user_id).delete_item(tag_id))

    # budgets

    def list_budgets(
        self,
        user_id: str,
        *,
        month: Optional[int] = None,
        year: Optional[int] = None,
        active_only: bool = False,
    ) -> list[BudgetOut]:
        return self._run(
            lambda s: BudgetService(s, user_id).list(
                month=month, year=year, active_only=active_only
            ),
            BudgetOut,
        )

    def create_budget(self, user_id: str, data: BudgetIn) -> BudgetOut:
        return self._run(lambda s: BudgetService(s, user_id).create(data), BudgetOut)

    def update_budget(
        self, user_id: str, budget_id: int, data: BudgetUpdate
    ) -> BudgetOut:
        return self._run(
            lambda s: BudgetService(s, user_id).update(budget_id, data), BudgetOut
        )

    def delete_budget(self, user_id: str, budget_id: int) -> None:
        self._run(lambda s: BudgetService(s, user_id).delete(budget_id))

    def add_budget_item(
        self, user_id: str, budget_id: int, data: BudgetItemIn
    ) -> BudgetItemOut:
        return self._run(
            lambda s: BudgetService(s, user_id).add_item(budget_id, data),
            BudgetItemOut,
        )

    def update_budget_item(
        self, user_id: str, item_id: int, data: BudgetItemIn
    ) -> BudgetItemOut:
        return self._run(
            lambda s: BudgetService(s, user_id).update_item(item_id, data),
            BudgetItemOut,
        )

    def delete_budget_item(self, user_id: str, item_id: int) -> None:
        self._run(lambda s: BudgetService(s, user_id).delete_item(item_id))

    def get_budget_vs_actual(self, budget_id: int, owner_id: str) -> BudgetVsActual:
        return self._run(
            lambda s: BudgetService(s, owner_id).get_budget_vs_actual(budget_id)
        )

    # links

    def link_transactions(
        self, user_id: str, data: TransactionLinkIn
    ) -> TransactionLinkOut:
        return self._run(
            lambda s: TransactionLinkService(s, user_id).link(data), TransactionLinkOut
        )

    def links_for(self, user_id: str, transaction_id: int) -> list[TransactionLinkOut]:
        return self._run(
            lambda s: TransactionLinkService(s, user_id).links_for(transaction_id),
            TransactionLinkOut,
        )

    def unlink_transactions(self, user_id: str, link_id: int) -> None:
        self._run(lambda s: TransactionLinkService(s, user_id).unlink(link_id))
