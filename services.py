from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterable, Iterator, Optional, Sequence

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from config import get_settings
from models import (
    Account,
    AccountKind,
    AccountShare,
    AccountType,
    Budget,
    BudgetItem,
    budget_item_tags,
    MAX_TAG_LEVEL,
    Tag,
    Transaction,
    TransactionLink,
    TransactionSource,
    TransactionSplit,
)
from periods import month_period
from repository import Repository
from schemas import (
    AccountIn,
    AccountTypeIn,
    AccountUpdate,
    BalanceCheck,
    BudgetIn,
    BudgetItemIn,
    BudgetItemProgress,
    BudgetUpdate,
    BudgetVsActual,
    SplitIn,
    SplitResult,
    SplitUpdate,
    TagBulkUpdate,
    TagNode,
    TagUpdate,
    TransactionIn,
    TransactionLinkIn,
    TransactionUpdate,
)
from seed import SeedLoader, TagSeed

logger = logging.getLogger(__name__)


class LedgerError(ValueError):
    pass


class ValidationError(LedgerError):
    def __init__(
        self, message: str, *, rule: str = "invalid", remaining_cents: Optional[int] = None
    ) -> None:
        super().__init__(message)
        self.rule = rule
        self.remaining_cents = remaining_cents


class InUseError(LedgerError):
    pass


class NotFoundError(LedgerError):
    pass


@contextmanager
def atomic(session: Session) -> Iterator[None]:
    try:
        yield
        session.commit()
    except Exception:
        session.rollback()
        raise


def format_cents(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    return f"{sign}{abs(cents) // 100}.{abs(cents) % 100:02d}"


def split_percentage(amount_cents: int, parent_amount_cents: int) -> float:
    if parent_amount_cents == 0:
        return 0.0
    return round(amount_cents / parent_amount_cents * 100, 1)


def _percentage(part: int, whole: int) -> float:
    if whole == 0:
        return 0.0
    return round(part / whole * 100, 2)


class AccountTypeService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.repo = Repository(session, AccountType)

    def list_all(self) -> list[AccountType]:
        stmt = (
            select(AccountType)
            .where(
                or_(AccountType.owner_id.is_(None), AccountType.owner_id == self.user_id)
            )
            .order_by(AccountType.is_custom, AccountType.category, AccountType.name)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, type_id: int) -> AccountType:
        account_type = self.repo.get_by_id(type_id)
        if not account_type or account_type.owner_id not in (None, self.user_id):
            raise NotFoundError("Account type not found")
        return account_type

    def _ensure_unique(self, name: str, exclude_id: Optional[int] = None) -> None:
        for existing in self.list_all():
            if existing.id != exclude_id and existing.name.lower() == name.lower():
                raise ValidationError(
                    "Account type with this name already exists", rule="duplicate"
                )

    def _require_custom(self, account_type: AccountType) -> None:
        if not account_type.is_custom:
            raise ValidationError(
                "Built-in account types are read-only", rule="read_only"
            )

    def create(self, data: AccountTypeIn) -> AccountType:
        name = data.name.strip()
        self._ensure_unique(name)
        with atomic(self.session):
            account_type = self.repo.insert(
                owner_id=self.user_id,
                name=name,
                category=data.category,
                default_sign=data.default_sign,
                is_custom=True,
            )
        logger.info(f"account_type_created: id={account_type.id} name={name}")
        return account_type

    def update(self, type_id: int, data: AccountTypeIn) -> AccountType:
        account_type = self.get(type_id)
        self._require_custom(account_type)
        name = data.name.strip()
        self._ensure_unique(name, exclude_id=type_id)
        with atomic(self.session):
            self.repo.update_fields(
                account_type,
                name=name,
                category=data.category,
                default_sign=data.default_sign,
            )
        return account_type

    def delete(self, type_id: int) -> None:
        account_type = self.get(type_id)
        self._require_custom(account_type)
        in_use = Repository(self.session, Account).count_where(
            ("account_type_id", "==", account_type.id)
        )
        if in_use:
            raise InUseError(
                f"Account type is used by {in_use} account(s) and cannot be deleted"
            )
        with atomic(self.session):
            self.repo.delete(account_type)
        logger.info(f"account_type_deleted: id={type_id}")


class AccountService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.repo = Repository(session, Account)

    def get(self, account_id: int) -> Account:
        account = self.repo.get_by_id(account_id)
        if not account or not account.is_visible_to(self.user_id):
            raise NotFoundError("Account not found")
        return account

    def _get_owned(self, account_id: int) -> Account:
        account = self.get(account_id)
        if account.owner_id != self.user_id:
            # Collaborators may read and post, but not reshape or remove.
            raise NotFoundError("Account not found")
        return account

    def list_visible(self) -> list[Account]:
        shared_ids = select(AccountShare.account_id).where(
            AccountShare.user_id == self.user_id
        )
        stmt = (
            select(Account)
            .options(selectinload(Account.account_type), selectinload(Account.shares))
            .where(or_(Account.owner_id == self.user_id, Account.id.in_(shared_ids)))
            .order_by(Account.category, Account.name, Account.id)
        )
        return list(self.session.scalars(stmt).all())

    def create(self, data: AccountIn) -> Account:
        account_type = AccountTypeService(self.session, self.user_id).get(
            data.account_type_id
        )
        currency = data.currency or get_settings().default_currency
        with atomic(self.session):
            account = self.repo.insert(
                owner_id=self.user_id,
                name=data.name.strip(),
                account_type_id=account_type.id,
                default_sign=data.default_sign or account_type.default_sign,
                initial_balance_cents=data.initial_balance_cents,
                balance_cents=data.initial_balance_cents,
                currency=currency,
                category=data.category,
                kind=data.kind,
            )
        logger.info(
            f"account_created: id={account.id} type={account_type.name} "
            f"initial={format_cents(account.initial_balance_cents)} {currency}"
        )
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        account = self._get_owned(account_id)
        fields = {
            name: getattr(data, name)
            for name in data.model_fields_set
            if getattr(data, name) is not None
        }
        if "name" in fields:
            fields["name"] = fields["name"].strip()
        if "currency" in fields:
            fields["currency"] = fields["currency"].upper()
        with atomic(self.session):
            self.repo.update_fields(account, **fields)
        return account

    def delete(self, account_id: int) -> None:
        account = self._get_owned(account_id)
        tags = TagService(self.session, self.user_id)
        txn_repo = Repository(self.session, Transaction)
        with atomic(self.session):
            for txn in txn_repo.query_where(
                "account_id", "==", account.id, ("deleted_at", "is", None)
            ):
                for split in txn.splits:
                    tags.detach(split.tags)
                tags.detach(txn.tags)
            self.repo.delete(account)
        logger.info(f"account_deleted: id={account_id}")

    def share(self, account_id: int, collaborator_id: str) -> Account:
        account = self._get_owned(account_id)
        collaborator_id = collaborator_id.strip()
        if not collaborator_id:
            raise ValidationError("Collaborator id cannot be empty", rule="missing_field")
        if collaborator_id == account.owner_id or collaborator_id in account.shared_with:
            return account
        with atomic(self.session):
            account.shares.append(AccountShare(user_id=collaborator_id))
        logger.info(f"account_shared: id={account.id} with={collaborator_id}")
        return account

    def unshare(self, account_id: int, collaborator_id: str) -> Account:
        account = self._get_owned(account_id)
        with atomic(self.session):
            account.shares = [s for s in account.shares if s.user_id != collaborator_id]
        return account


class TagService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.repo = Repository(session, Tag)

    def list_all(self) -> list[Tag]:
        """All tags of the user in display order: level, then name."""
        return self.repo.query_order_by(
            "level",
            "asc",
            where=[("owner_id", "==", self.user_id)],
            then_by=[("name", "asc"), ("id", "asc")],
        )

    def get(self, tag_id: int) -> Tag:
        tag = self.repo.get_by_id(tag_id)
        if not tag or tag.owner_id != self.user_id:
            raise NotFoundError(f"Tag {tag_id} not found")
        return tag

    def resolve(self, tag_ids: Iterable[int]) -> list[Tag]:
        seen: set[int] = set()
        tags: list[Tag] = []
        for tag_id in tag_ids:
            if tag_id in seen:
                continue
            seen.add(tag_id)
            tags.append(self.get(tag_id))
        return tags

    def _bump_usage(self, tag: Tag, delta: int) -> int:
        # Counted in SQL so concurrent writers on other accounts are not lost.
        stmt = (
            update(Tag)
            .where(Tag.id == tag.id)
            .values(usage_count=Tag.usage_count + delta)
            .execution_options(synchronize_session=False)
        )
        if delta < 0:
            stmt = stmt.where(Tag.usage_count >= -delta)
        result = self.session.execute(stmt)
        self.session.expire(tag, ["usage_count"])
        return result.rowcount

    def attach(self, tags: Iterable[Tag]) -> None:
        for tag in tags:
            self._bump_usage(tag, 1)

    def detach(self, tags: Iterable[Tag]) -> None:
        for tag in tags:
            if not self._bump_usage(tag, -1):
                logger.error(f"tag_usage_underflow: id={tag.id} name={tag.name}")

    def _require_mutable(self, tag: Tag) -> None:
        if tag.is_default:
            raise ValidationError(
                f"Default tag '{tag.name}' is read-only", rule="read_only"
            )

    def _validate_placement(
        self, level: int, parent_id: Optional[int], moving: Optional[Tag] = None
    ) -> Optional[Tag]:
        if not 0 <= level <= MAX_TAG_LEVEL:
            raise ValidationError(
                f"Tag level must be between 0 and {MAX_TAG_LEVEL}", rule="level_mismatch"
            )
        if parent_id is None:
            if level != 0:
                raise ValidationError(
                    "Only level 0 tags may be created without a parent",
                    rule="level_mismatch",
                )
            return None
        parent = self.get(parent_id)
        if parent.level + 1 != level:
            raise ValidationError(
                f"Tag level {level} does not follow parent level {parent.level}",
                rule="level_mismatch",
            )
        if moving is not None:
            ancestor: Optional[Tag] = parent
            while ancestor is not None:
                if ancestor.id == moving.id:
                    raise ValidationError(
                        "A tag cannot be moved under itself", rule="level_mismatch"
                    )
                ancestor = (
                    self.repo.get_by_id(ancestor.parent_id)
                    if ancestor.parent_id
                    else None
                )
        return parent

    def _ensure_unique_name(
        self, name: str, parent_id: Optional[int], exclude_id: Optional[int] = None
    ) -> None:
        parent_op = "is" if parent_id is None else "=="
        siblings = self.repo.query_where(
            "owner_id", "==", self.user_id, ("parent_id", parent_op, parent_id)
        )
        for sibling in siblings:
            if sibling.id != exclude_id and sibling.name.lower() == name.lower():
                raise ValidationError(
                    f"Tag '{name}' already exists at this position", rule="duplicate"
                )

    def create_item(
        self,
        name: str,
        level: int,
        parent_id: Optional[int] = None,
        *,
        color: Optional[str] = None,
        order: int = 0,
    ) -> Tag:
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("Tag name cannot be empty", rule="missing_field")
        self._validate_placement(level, parent_id)
        self._ensure_unique_name(clean_name, parent_id)
        with atomic(self.session):
            tag = self.repo.insert(
                owner_id=self.user_id,
                name=clean_name,
                level=level,
                parent_id=parent_id,
                color=color,
                order=order,
                is_default=False,
                usage_count=0,
            )
        logger.info(f"tag_created: id={tag.id} level={level} parent={parent_id}")
        return tag

    def _apply_update(self, tag: Tag, updates: TagUpdate) -> None:
        self._require_mutable(tag)
        fields = {name: getattr(updates, name) for name in updates.model_fields_set}
        if "name" in fields:
            if fields["name"] is None or not fields["name"].strip():
                raise ValidationError("Tag name cannot be empty", rule="missing_field")
            fields["name"] = fields["name"].strip()
            self._ensure_unique_name(fields["name"], tag.parent_id, exclude_id=tag.id)
        if fields.get("order") is None:
            fields.pop("order", None)
        self.repo.update_fields(tag, **fields)

    def update_item(self, tag_id: int, updates: TagUpdate) -> Tag:
        tag = self.get(tag_id)
        with atomic(self.session):
            self._apply_update(tag, updates)
        return tag

    def bulk_update_items(self, items: Sequence[TagBulkUpdate]) -> list[Tag]:
        tags = [self.get(item.id) for item in items]
        with atomic(self.session):
            for tag, item in zip(tags, items):
                self._apply_update(tag, item.updates)
        logger.info(f"tags_bulk_updated: count={len(tags)}")
        return tags

    def delete_item(self, tag_id: int) -> None:
        tag = self.get(tag_id)
        self._require_mutable(tag)
        self.session.refresh(tag)
        if tag.usage_count > 0:
            raise InUseError(
                f"Tag '{tag.name}' is used by {tag.usage_count} transaction(s)"
            )
        if self.repo.count_where(("parent_id", "==", tag.id)):
            raise InUseError(f"Tag '{tag.name}' has child tags")
        budget_refs = self.session.execute(
            select(func.count())
            .select_from(budget_item_tags)
            .where(budget_item_tags.c.tag_id == tag.id)
        ).scalar_one()
        if budget_refs:
            raise InUseError(
                f"Tag '{tag.name}' is used by {budget_refs} budget item(s)"
            )
        with atomic(self.session):
            self.repo.delete(tag)
        logger.info(f"tag_deleted: id={tag_id}")

    def move_item_level(
        self, tag_id: int, new_level: int, new_parent_id: Optional[int] = None
    ) -> Tag:
        tag = self.get(tag_id)
        self._require_mutable(tag)
        self._validate_placement(new_level, new_parent_id, moving=tag)
        self._ensure_unique_name(tag.name, new_parent_id, exclude_id=tag.id)

        arena = self._arena()
        delta = new_level - tag.level
        subtree = list(self._descendants(arena, tag.id))
        for node in subtree:
            if not 0 <= node.level + delta <= MAX_TAG_LEVEL:
                raise ValidationError(
                    f"Moving '{tag.name}' would push '{node.name}' past level {MAX_TAG_LEVEL}",
                    rule="level_mismatch",
                )
        with atomic(self.session):
            tag.level = new_level
            tag.parent_id = new_parent_id
            for node in subtree:
                node.level += delta
        logger.info(
            f"tag_moved: id={tag_id} level={new_level} parent={new_parent_id} "
            f"descendants={len(subtree)}"
        )
        return tag

    def _arena(self) -> tuple[dict[int, Tag], dict[Optional[int], list[int]]]:
        nodes: dict[int, Tag] = {}
        children: dict[Optional[int], list[int]] = {}
        for tag in self.list_all():
            nodes[tag.id] = tag
        for tag in nodes.values():
            parent = tag.parent_id if tag.parent_id in nodes else None
            children.setdefault(parent, []).append(tag.id)
        return nodes, children

    @staticmethod
    def _descendants(
        arena: tuple[dict[int, Tag], dict[Optional[int], list[int]]], tag_id: int
    ) -> Iterator[Tag]:
        nodes, children = arena
        stack = list(children.get(tag_id, []))
        while stack:
            current = stack.pop()
            yield nodes[current]
            stack.extend(children.get(current, []))

    def children_of(self, tag_id: Optional[int]) -> list[Tag]:
        nodes, children = self._arena()
        if tag_id is not None and tag_id not in nodes:
            raise NotFoundError(f"Tag {tag_id} not found")
        return [nodes[i] for i in children.get(tag_id, [])]

    def path_of(self, tag_id: int) -> list[Tag]:
        nodes, _ = self._arena()
        if tag_id not in nodes:
            raise NotFoundError(f"Tag {tag_id} not found")
        path: list[Tag] = []
        current: Optional[Tag] = nodes[tag_id]
        while current is not None:
            path.append(current)
            current = nodes.get(current.parent_id) if current.parent_id else None
        path.reverse()
        return path

    def get_hierarchy_tree(self) -> list[TagNode]:
        """Root nodes with nested children, siblings ordered by name."""
        nodes, children = self._arena()
        built: dict[int, TagNode] = {
            tag.id: TagNode(
                id=tag.id,
                name=tag.name,
                level=tag.level,
                parent_id=tag.parent_id,
                color=tag.color,
                is_default=tag.is_default,
                usage_count=tag.usage_count,
            )
            for tag in nodes.values()
        }
        for parent_id, child_ids in children.items():
            if parent_id is None:
                continue
            built[parent_id].children = [built[i] for i in child_ids]
        return [built[i] for i in children.get(None, [])]


class TransactionService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.repo = Repository(session, Transaction)

    def get(self, transaction_id: int) -> Transaction:
        txn = self.repo.get_by_id(transaction_id)
        if (
            not txn
            or txn.deleted_at is not None
            or not txn.account.is_visible_to(self.user_id)
        ):
            raise NotFoundError("Transaction not found")
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        account = AccountService(self.session, self.user_id).get(data.account_id)
        description = data.description.strip()
        if not description:
            raise ValidationError("Description is required", rule="missing_field")
        tag_service = TagService(self.session, self.user_id)
        tags = tag_service.resolve(data.tag_ids)
        with atomic(self.session):
            txn = self.repo.insert(
                account_id=account.id,
                owner_id=self.user_id,
                amount_cents=data.amount_cents,
                description=description,
                date=data.date,
                is_manual=data.source == TransactionSource.manual,
                source=data.source,
                tags=tags,
            )
            tag_service.attach(tags)
        logger.info(
            f"transaction_created: id={txn.id} account={account.id} "
            f"amount={format_cents(txn.amount_cents)}"
        )
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        """Apply a partial update.

        While a transaction is split its amount and tags are owned by the
        splits, so changing either is rejected until the splits are merged.
        """
        txn = self.get(transaction_id)
        fields = {name: getattr(data, name) for name in data.model_fields_set}
        tag_ids = fields.pop("tag_ids", None)
        if txn.is_split:
            if tag_ids is not None:
                raise ValidationError(
                    "Tags of a split transaction are set on its splits",
                    rule="split_locked",
                )
            if "amount_cents" in fields and fields["amount_cents"] != txn.amount_cents:
                raise ValidationError(
                    "Merge the splits before changing the amount", rule="split_locked"
                )
        if "description" in fields:
            if fields["description"] is None or not fields["description"].strip():
                raise ValidationError("Description is required", rule="missing_field")
            fields["description"] = fields["description"].strip()
        for name in ("amount_cents", "date"):
            if name in fields and fields[name] is None:
                raise ValidationError(f"{name} cannot be cleared", rule="missing_field")

        tag_service = TagService(self.session, self.user_id)
        new_tags = tag_service.resolve(tag_ids) if tag_ids is not None else None
        with atomic(self.session):
            self.repo.update_fields(txn, **fields)
            if new_tags is not None:
                self._replace_tags(txn, new_tags, tag_service)
        logger.info(f"transaction_updated: id={txn.id} fields={sorted(data.model_fields_set)}")
        return txn

    def _replace_tags(
        self, txn: Transaction, new_tags: list[Tag], tag_service: TagService
    ) -> None:
        old_ids = txn.tag_ids
        new_ids = {tag.id for tag in new_tags}
        tag_service.detach(tag for tag in txn.tags if tag.id not in new_ids)
        tag_service.attach(tag for tag in new_tags if tag.id not in old_ids)
        txn.tags = new_tags
        self.session.flush()

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        tag_service = TagService(self.session, self.user_id)
        with atomic(self.session):
            for split in txn.splits:
                tag_service.detach(split.tags)
            txn.splits.clear()
            tag_service.detach(txn.tags)
            txn.tags = []
            txn.is_split = False
            txn.deleted_at = datetime.utcnow()
            self.session.execute(
                delete(TransactionLink).where(
                    or_(
                        TransactionLink.first_transaction_id == txn.id,
                        TransactionLink.second_transaction_id == txn.id,
                    )
                )
            )
        logger.info(f"transaction_deleted: id={txn.id} account={txn.account_id}")

    def list_by_account(self, account_id: int) -> list[Transaction]:
        account = AccountService(self.session, self.user_id).get(account_id)
        return self.repo.query_order_by(
            "date",
            "desc",
            where=[("account_id", "==", account.id), ("deleted_at", "is", None)],
            then_by=[("id", "desc")],
            options=[selectinload(Transaction.tags)],
        )

    def add_tag(self, transaction_id: int, tag_id: int) -> Transaction:
        txn = self.get(transaction_id)
        if tag_id in txn.tag_ids:
            return txn
        return self.update(
            transaction_id, TransactionUpdate(tag_ids=[*txn.tag_ids, tag_id])
        )

    def remove_tag(self, transaction_id: int, tag_id: int) -> Transaction:
        txn = self.get(transaction_id)
        if tag_id not in txn.tag_ids:
            return txn
        return self.update(
            transaction_id,
            TransactionUpdate(tag_ids=[i for i in txn.tag_ids if i != tag_id]),
        )

    def bulk_assign_tags(
        self, transaction_ids: Sequence[int], tag_ids: Sequence[int]
    ) -> list[Transaction]:
        txns = [self.get(txn_id) for txn_id in dict.fromkeys(transaction_ids)]
        split_ids = [txn.id for txn in txns if txn.is_split]
        if split_ids:
            raise ValidationError(
                f"Split transactions cannot be tagged in bulk: {split_ids}",
                rule="split_locked",
            )
        tag_service = TagService(self.session, self.user_id)
        tags = tag_service.resolve(tag_ids)
        with atomic(self.session):
            for txn in txns:
                missing = [tag for tag in tags if tag.id not in txn.tag_ids]
                tag_service.attach(missing)
                txn.tags = [*txn.tags, *missing]
        logger.info(
            f"transactions_bulk_tagged: transactions={len(txns)} tags={len(tags)}"
        )
        return txns


class SplitService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.repo = Repository(session, TransactionSplit)

    @staticmethod
    def validate_splits(parent_amount_cents: int, specs: Sequence[SplitIn]) -> None:
        if not specs:
            raise ValidationError("At least one split is required", rule="missing_field")
        remaining = parent_amount_cents - sum(spec.amount_cents for spec in specs)
        if remaining != 0:
            raise ValidationError(
                "Split amounts must equal original amount. "
                f"Remaining: {format_cents(remaining)}",
                rule="amount_mismatch",
                remaining_cents=remaining,
            )
        for spec in specs:
            if spec.amount_cents == 0:
                raise ValidationError(
                    "All split amounts must be non-zero", rule="non_positive_amount"
                )
            if parent_amount_cents and (spec.amount_cents > 0) != (
                parent_amount_cents > 0
            ):
                raise ValidationError(
                    "All split amounts must have the same sign as the transaction",
                    rule="non_positive_amount",
                )
        if any(not spec.description.strip() for spec in specs):
            raise ValidationError(
                "All splits must have a description", rule="missing_field"
            )

    def list_for(self, transaction_id: int) -> list[TransactionSplit]:
        txn = TransactionService(self.session, self.user_id).get(transaction_id)
        return self.repo.query_order_by(
            "position",
            where=[("transaction_id", "==", txn.id)],
            options=[selectinload(TransactionSplit.tags)],
        )

    def split(self, transaction_id: int, specs: Sequence[SplitIn]) -> SplitResult:
        txn = TransactionService(self.session, self.user_id).get(transaction_id)
        if txn.is_split:
            raise ValidationError(
                "Transaction is already split; merge it first", rule="already_split"
            )
        self.validate_splits(txn.amount_cents, specs)
        tag_service = TagService(self.session, self.user_id)
        resolved = [tag_service.resolve(spec.tag_ids) for spec in specs]

        with atomic(self.session):
            created: list[TransactionSplit] = []
            for position, (spec, tags) in enumerate(zip(specs, resolved)):
                split = TransactionSplit(
                    amount_cents=spec.amount_cents,
                    description=spec.description.strip(),
                    position=position,
                    tags=tags,
                )
                txn.splits.append(split)
                created.append(split)
                tag_service.attach(tags)
            txn.is_split = True
            self.session.flush()
        logger.info(f"split_created: transaction_id={txn.id} splits={len(created)}")
        return SplitResult(
            transaction_id=txn.id,
            split_ids=[split.id for split in created],
            total_cents=sum(split.amount_cents for split in created),
        )

    def get(self, split_id: int) -> TransactionSplit:
        split = self.repo.get_by_id(split_id)
        if not split:
            raise NotFoundError("Split not found")
        # Visibility follows the parent transaction.
        txn = TransactionService(self.session, self.user_id).get(split.transaction_id)
        if not txn.is_split:
            raise ValidationError("Transaction is not split", rule="not_split")
        return split

    def _apply_split_update(
        self, split: TransactionSplit, data: SplitUpdate, tag_service: TagService
    ) -> None:
        fields = {name: getattr(data, name) for name in data.model_fields_set}
        tag_ids = fields.pop("tag_ids", None)
        if "amount_cents" in fields:
            amount = fields["amount_cents"]
            if not amount:
                raise ValidationError(
                    "All split amounts must be non-zero", rule="non_positive_amount"
                )
            parent_amount = split.transaction.amount_cents
            if parent_amount and (amount > 0) != (parent_amount > 0):
                raise ValidationError(
                    "All split amounts must have the same sign as the transaction",
                    rule="non_positive_amount",
                )
        if "description" in fields:
            if fields["description"] is None or not fields["description"].strip():
                raise ValidationError(
                    "All splits must have a description", rule="missing_field"
                )
            fields["description"] = fields["description"].strip()
        self.repo.update_fields(split, **fields)
        if tag_ids is not None:
            new_tags = tag_service.resolve(tag_ids)
            new_ids = {tag.id for tag in new_tags}
            old_ids = split.tag_ids
            tag_service.detach(tag for tag in split.tags if tag.id not in new_ids)
            tag_service.attach(tag for tag in new_tags if tag.id not in old_ids)
            split.tags = new_tags
            self.session.flush()

    def update_split(self, split_id: int, data: SplitUpdate) -> TransactionSplit:
        """Edit a single split without re-checking the group total.

        Use ``update_splits`` to persist a batch that is validated as a whole.
        """
        split = self.get(split_id)
        tag_service = TagService(self.session, self.user_id)
        with atomic(self.session):
            self._apply_split_update(split, data, tag_service)
        return split

    def _validate_group(self, txn: Transaction) -> None:
        self.validate_splits(
            txn.amount_cents,
            [
                SplitIn(
                    amount_cents=split.amount_cents,
                    description=split.description,
                    tag_ids=sorted(split.tag_ids),
                )
                for split in txn.splits
            ],
        )

    def update_splits(
        self,
        transaction_id: int,
        updates: dict[int, SplitUpdate],
        remove: Sequence[int] = (),
    ) -> list[TransactionSplit]:
        """Edit and remove splits as one unit, validated against the parent.

        Removing every split returns the parent to unsplit.
        """
        txn = TransactionService(self.session, self.user_id).get(transaction_id)
        if not txn.is_split:
            raise ValidationError("Transaction is not split", rule="not_split")
        by_id = {split.id: split for split in txn.splits}
        removed = set(remove)
        unknown = (set(updates) | removed) - set(by_id)
        if unknown:
            raise NotFoundError(f"Splits {sorted(unknown)} not found on transaction")
        if removed & set(updates):
            raise ValidationError(
                "A split cannot be updated and removed together", rule="invalid"
            )
        tag_service = TagService(self.session, self.user_id)
        with atomic(self.session):
            for split_id in removed:
                split = by_id[split_id]
                tag_service.detach(split.tags)
                txn.splits.remove(split)
            for split_id, data in updates.items():
                self._apply_split_update(by_id[split_id], data, tag_service)
            self.session.flush()
            if txn.splits:
                self._validate_group(txn)
            else:
                txn.is_split = False
        logger.info(
            f"splits_updated: transaction_id={txn.id} "
            f"updated={len(updates)} removed={len(removed)}"
        )
        return list(txn.splits)

    def delete_split(self, split_id: int) -> None:
        """Remove one split; the rest must still add up to the parent.

        Removing the last split returns the parent to unsplit.
        """
        split = self.get(split_id)
        transaction_id = split.transaction_id
        self.update_splits(transaction_id, {}, remove=[split_id])
        logger.info(f"split_deleted: id={split_id} transaction_id={transaction_id}")

    def merge(self, transaction_id: int) -> Transaction:
        txn = TransactionService(self.session, self.user_id).get(transaction_id)
        if not txn.is_split:
            raise ValidationError("Transaction is not split", rule="not_split")
        tag_service = TagService(self.session, self.user_id)
        count = len(txn.splits)
        with atomic(self.session):
            for split in list(txn.splits):
                tag_service.detach(split.tags)
            txn.splits.clear()
            txn.is_split = False
            self.session.flush()
        logger.info(f"splits_merged: transaction_id={txn.id} removed={count}")
        return txn


class BalanceService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def recalculate(self, account_id: int) -> int:
        account = AccountService(self.session, self.user_id).get(account_id)
        total = self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                Transaction.account_id == account.id,
                Transaction.deleted_at.is_(None),
            )
        ).scalar_one()
        return account.initial_balance_cents + int(total)

    def check(self, account_id: int) -> BalanceCheck:
        account = AccountService(self.session, self.user_id).get(account_id)
        return BalanceCheck(
            account_id=account.id,
            cached_cents=account.balance_cents,
            recalculated_cents=self.recalculate(account.id),
        )

    def force_update(self, account_id: int) -> int:
        status = self.check(account_id)
        if status.has_drift:
            logger.warning(
                f"balance_drift: account={account_id} "
                f"cached={format_cents(status.cached_cents)} "
                f"recalculated={format_cents(status.recalculated_cents)}"
            )
        account = AccountService(self.session, self.user_id).get(account_id)
        with atomic(self.session):
            account.balance_cents = status.recalculated_cents
        return status.recalculated_cents

    def update_asset_value(
        self, account_id: int, new_balance_cents: int, on: Optional[date] = None
    ) -> Optional[Transaction]:
        """Record a revaluation of an asset account as an adjustment transaction."""
        account = AccountService(self.session, self.user_id).get(account_id)
        if account.kind != AccountKind.asset:
            raise ValidationError(
                "Only asset accounts can be revalued", rule="invalid_account"
            )
        difference = new_balance_cents - self.recalculate(account.id)
        if difference == 0:
            return None
        txn = TransactionService(self.session, self.user_id).create(
            TransactionIn(
                account_id=account.id,
                amount_cents=difference,
                description="Asset value update",
                date=on or date.today(),
                source=TransactionSource.adjustment,
            )
        )
        self.force_update(account.id)
        return txn


class BudgetService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.repo = Repository(session, Budget)
        self.items = Repository(session, BudgetItem)

    def get(self, budget_id: int) -> Budget:
        budget = self.repo.get_by_id(budget_id)
        if not budget or budget.owner_id != self.user_id:
            raise NotFoundError("Budget not found")
        return budget

    def list(
        self,
        *,
        month: Optional[int] = None,
        year: Optional[int] = None,
        active_only: bool = False,
    ) -> list[Budget]:
        where: list[tuple] = [("owner_id", "==", self.user_id)]
        if month is not None:
            where.append(("month", "==", month))
        if year is not None:
            where.append(("year", "==", year))
        if active_only:
            where.append(("is_active", "is", True))
        return self.repo.query_order_by(
            "year", "desc", where=where, then_by=[("month", "desc"), ("name", "asc")]
        )

    def create(self, data: BudgetIn) -> Budget:
        with atomic(self.session):
            budget = self.repo.insert(
                owner_id=self.user_id,
                name=data.name.strip(),
                month=data.month,
                year=data.year,
                is_active=data.is_active,
            )
        logger.info(f"budget_created: id={budget.id} period={data.year:04d}-{data.month:02d}")
        return budget

    def update(self, budget_id: int, data: BudgetUpdate) -> Budget:
        budget = self.get(budget_id)
        fields = {
            name: getattr(data, name)
            for name in data.model_fields_set
            if getattr(data, name) is not None
        }
        with atomic(self.session):
            self.repo.update_fields(budget, **fields)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        with atomic(self.session):
            self.repo.delete(budget)
        logger.info(f"budget_deleted: id={budget_id}")

    def _get_item(self, item_id: int) -> BudgetItem:
        item = self.items.get_by_id(item_id)
        if not item or item.budget.owner_id != self.user_id:
            raise NotFoundError("Budget item not found")
        return item

    def add_item(self, budget_id: int, data: BudgetItemIn) -> BudgetItem:
        budget = self.get(budget_id)
        tags = TagService(self.session, self.user_id).resolve(data.tag_ids)
        with atomic(self.session):
            item = BudgetItem(
                category=data.category,
                budgeted_cents=data.budgeted_cents,
                tags=tags,
            )
            budget.items.append(item)
            self.session.flush()
        return item

    def update_item(self, item_id: int, data: BudgetItemIn) -> BudgetItem:
        item = self._get_item(item_id)
        tags = TagService(self.session, self.user_id).resolve(data.tag_ids)
        with atomic(self.session):
            self.items.update_fields(
                item, category=data.category, budgeted_cents=data.budgeted_cents
            )
            item.tags = tags
        return item

    def delete_item(self, item_id: int) -> None:
        item = self._get_item(item_id)
        with atomic(self.session):
            self.items.delete(item)

    def _categorized_amounts(self, year: int, month: int) -> list[tuple[int, set[int]]]:
        """(amount, tag ids) per categorization unit in the month.

        A split transaction contributes its splits; any other transaction
        contributes itself.
        """
        period = month_period(year, month)
        shared_ids = select(AccountShare.account_id).where(
            AccountShare.user_id == self.user_id
        )
        visible_accounts = select(Account.id).where(
            or_(Account.owner_id == self.user_id, Account.id.in_(shared_ids))
        )
        stmt = (
            select(Transaction)
            .options(
                selectinload(Transaction.tags),
                selectinload(Transaction.splits).selectinload(TransactionSplit.tags),
            )
            .where(
                Transaction.account_id.in_(visible_accounts),
                Transaction.deleted_at.is_(None),
                Transaction.date.between(period.start, period.end),
            )
        )
        units: list[tuple[int, set[int]]] = []
        for txn in self.session.scalars(stmt):
            if txn.is_split and txn.splits:
                units.extend((split.amount_cents, split.tag_ids) for split in txn.splits)
            else:
                units.append((txn.amount_cents, txn.tag_ids))
        return units

    def get_budget_vs_actual(self, budget_id: int) -> BudgetVsActual:
        budget = self.get(budget_id)
        units = self._categorized_amounts(budget.year, budget.month)
        rows: list[BudgetItemProgress] = []
        for item in budget.items:
            wanted = item.tag_ids
            # Overlapping items each count the same unit.
            spent = sum(abs(amount) for amount, tag_ids in units if tag_ids & wanted)
            percentage = _percentage(spent, item.budgeted_cents)
            rows.append(
                BudgetItemProgress(
                    id=item.id,
                    category=item.category,
                    tag_ids=sorted(wanted),
                    budgeted_cents=item.budgeted_cents,
                    actual_spent_cents=spent,
                    remaining_cents=item.budgeted_cents - spent,
                    percentage_used=percentage,
                    display_percentage=min(percentage, 100.0),
                )
            )
        total_budgeted = sum(row.budgeted_cents for row in rows)
        total_spent = sum(row.actual_spent_cents for row in rows)
        return BudgetVsActual(
            budget_id=budget.id,
            month=budget.month,
            year=budget.year,
            total_budgeted_cents=total_budgeted,
            total_spent_cents=total_spent,
            total_remaining_cents=total_budgeted - total_spent,
            overall_percentage_used=_percentage(total_spent, total_budgeted),
            budget_items=rows,
        )


class TransactionLinkService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.repo = Repository(session, TransactionLink)

    def link(self, data: TransactionLinkIn) -> TransactionLink:
        if data.transaction_id == data.other_transaction_id:
            raise ValidationError(
                "A transaction cannot be linked to itself", rule="self_link"
            )
        txns = TransactionService(self.session, self.user_id)
        first, second = sorted(
            (txns.get(data.transaction_id).id, txns.get(data.other_transaction_id).id)
        )
        if self.repo.count_where(
            ("first_transaction_id", "==", first),
            ("second_transaction_id", "==", second),
        ):
            raise ValidationError("Transactions are already linked", rule="duplicate")
        with atomic(self.session):
            link = self.repo.insert(
                owner_id=self.user_id,
                first_transaction_id=first,
                second_transaction_id=second,
                link_type=data.link_type,
                note=data.note,
            )
        logger.info(
            f"transactions_linked: id={link.id} pair={first},{second} "
            f"type={data.link_type.value}"
        )
        return link

    def links_for(self, transaction_id: int) -> list[TransactionLink]:
        txn = TransactionService(self.session, self.user_id).get(transaction_id)
        stmt = (
            select(TransactionLink)
            .where(
                or_(
                    TransactionLink.first_transaction_id == txn.id,
                    TransactionLink.second_transaction_id == txn.id,
                )
            )
            .order_by(TransactionLink.created_at, TransactionLink.id)
        )
        return list(self.session.scalars(stmt).all())

    def unlink(self, link_id: int) -> None:
        link = self.repo.get_by_id(link_id)
        if not link:
            raise NotFoundError("Link not found")
        TransactionService(self.session, self.user_id).get(link.first_transaction_id)
        with atomic(self.session):
            self.repo.delete(link)


class SeedService:
    def __init__(
        self, session: Session, user_id: str, loader: Optional[SeedLoader] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.loader = loader or SeedLoader()

    def ensure_builtin_account_types(self) -> int:
        repo = Repository(self.session, AccountType)
        existing = {t.name for t in repo.query_where("owner_id", "is", None)}
        created = 0
        with atomic(self.session):
            for seed in self.loader.account_types():
                if seed.name in existing:
                    continue
                repo.insert(
                    owner_id=None,
                    name=seed.name,
                    category=seed.category,
                    default_sign=seed.default_sign,
                    is_custom=False,
                )
                created += 1
        return created

    def seed_default_tags(self) -> int:
        repo = Repository(self.session, Tag)
        if repo.count_where(("owner_id", "==", self.user_id), ("is_default", "is", True)):
            return 0
        created = 0

        def plant(seed: TagSeed, level: int, parent_id: Optional[int], order: int) -> None:
            nonlocal created
            tag = repo.insert(
                owner_id=self.user_id,
                name=seed.name,
                color=seed.color,
                level=level,
                parent_id=parent_id,
                is_default=True,
                usage_count=0,
                order=order,
            )
            created += 1
            for child_order, child in enumerate(seed.children):
                plant(child, level + 1, tag.id, child_order)

        with atomic(self.session):
            for order, seed in enumerate(self.loader.tags()):
                plant(seed, 0, None, order)
        logger.info(f"default_tags_seeded: user={self.user_id} count={created}")
        return created
