"""Persistence primitives used by the services.

Every entity is reached through a ``Repository`` exposing insert/get/update/
delete plus filtered and ordered queries. The services never build queries
beyond these primitives for plain CRUD, so any store able to answer them can
stand in for the SQLAlchemy-backed one below.
"""

from __future__ import annotations

import operator
from typing import Any, Callable, Generic, Iterable, Optional, Sequence, TypeVar

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from database import Base

ModelT = TypeVar("ModelT", bound=Base)

Condition = tuple[str, str, Any]

_OPERATORS: dict[str, Callable[[Any, Any], Any]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


class Repository(Generic[ModelT]):
    def __init__(self, session: Session, model: type[ModelT]) -> None:
        self.session = session
        self.model = model

    def _column(self, field: str):
        try:
            return getattr(self.model, field)
        except AttributeError as exc:
            raise KeyError(f"{self.model.__name__} has no field {field!r}") from exc

    def _clause(self, field: str, op: str, value: Any):
        column = self._column(field)
        if op == "is":
            return column.is_(value)
        try:
            return _OPERATORS[op](column, value)
        except KeyError as exc:
            raise KeyError(f"Unsupported query operator {op!r}") from exc

    def insert(self, **fields: Any) -> ModelT:
        obj = self.model(**fields)
        self.session.add(obj)
        self.session.flush()
        return obj

    def get_by_id(self, obj_id: int) -> Optional[ModelT]:
        return self.session.get(self.model, obj_id)

    def update_fields(self, obj: ModelT, **fields: Any) -> ModelT:
        for name, value in fields.items():
            self._column(name)
            setattr(obj, name, value)
        self.session.flush()
        return obj

    def delete(self, obj: ModelT) -> None:
        self.session.delete(obj)
        self.session.flush()

    def query_where(
        self, field: str, op: str, value: Any, *more: Condition
    ) -> list[ModelT]:
        return self.query_order_by("id", "asc", where=((field, op, value), *more))

    def query_order_by(
        self,
        field: str,
        direction: str = "asc",
        *,
        where: Iterable[Condition] = (),
        then_by: Sequence[tuple[str, str]] = (),
        options: Sequence[Any] = (),
    ) -> list[ModelT]:
        stmt = select(self.model).options(*options)
        for cond in where:
            stmt = stmt.where(self._clause(*cond))
        for name, dir_ in ((field, direction), *then_by):
            column = self._column(name)
            stmt = stmt.order_by(column.desc() if dir_ == "desc" else column.asc())
        return list(self.session.scalars(stmt).all())

    def count_where(self, *conditions: Condition) -> int:
        stmt = select(func.count()).select_from(self.model)
        for cond in conditions:
            stmt = stmt.where(self._clause(*cond))
        return int(self.session.execute(stmt).scalar_one())
