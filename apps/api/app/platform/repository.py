from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Literal

from sqlalchemy import func, inspect, select
from sqlalchemy.orm import Session
from sqlalchemy.sql import ColumnElement, Select

from app.core.errors import DomainValidationError
from app.platform.security.context import AuthContext
from app.platform.security.rls import apply_company_scope


Operator = Literal["eq", "neq", "gt", "gte", "lt", "lte", "like", "ilike", "in", "not_in", "is_null", "between"]


@dataclass(frozen=True, slots=True)
class Predicate:
    field: str
    op: Operator
    value: Any = None


class BaseRepository:
    """CRUD over one model with predicate filters and company scoping."""

    resource = ""
    model: Any = None

    def get(
        self,
        session: Session,
        entity_id: uuid.UUID,
        ctx: AuthContext | None = None,
        *,
        for_update: bool = False,
    ) -> Any | None:
        query = select(self.model).where(self.model.id == entity_id)
        if ctx is not None:
            query = apply_company_scope(query, self.model, ctx)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        return session.scalar(query)

    def find(
        self,
        session: Session,
        predicates: Iterable[Predicate] = (),
        *,
        ctx: AuthContext | None = None,
        order_by: Sequence[str] = (),
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Any]:
        query = self.build_query(predicates, ctx=ctx)
        for item in order_by:
            descending = item.startswith("-")
            column = self._column(item.lstrip("-"))
            query = query.order_by(column.desc() if descending else column.asc())
        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return list(session.scalars(query))

    def count(self, session: Session, predicates: Iterable[Predicate] = (), *, ctx: AuthContext | None = None) -> int:
        query = self.build_query(predicates, ctx=ctx)
        return int(session.scalar(select(func.count()).select_from(query.subquery())) or 0)

    def add(self, session: Session, entity: Any) -> Any:
        session.add(entity)
        session.flush()
        return entity

    def update(self, session: Session, entity: Any, values: dict[str, Any]) -> Any:
        for field_name, value in values.items():
            self._column(field_name)
            setattr(entity, field_name, value)
        session.add(entity)
        session.flush()
        return entity

    def delete(self, session: Session, entity: Any) -> None:
        session.delete(entity)
        session.flush()

    def build_query(self, predicates: Iterable[Predicate] = (), *, ctx: AuthContext | None = None) -> Select[Any]:
        query = select(self.model)
        for predicate in predicates:
            query = query.where(self._condition(predicate))
        if ctx is not None:
            query = apply_company_scope(query, self.model, ctx)
        return query

    def _column(self, field_name: str) -> Any:
        if field_name not in inspect(self.model).columns:
            raise DomainValidationError(f"unknown field '{field_name}' for {self.resource}")
        return getattr(self.model, field_name)

    def _condition(self, predicate: Predicate) -> ColumnElement[bool]:
        column = self._column(predicate.field)
        value = predicate.value
        op = predicate.op
        if op == "eq":
            return column.is_(None) if value is None else column == value
        if op == "neq":
            return column.is_not(None) if value is None else column != value
        if op == "gt":
            return column > value
        if op == "gte":
            return column >= value
        if op == "lt":
            return column < value
        if op == "lte":
            return column <= value
        if op == "like":
            return column.like(value)
        if op == "ilike":
            return column.ilike(value)
        if op == "in":
            return column.in_(list(value))
        if op == "not_in":
            return column.not_in(list(value))
        if op == "is_null":
            return column.is_(None) if value in (None, True) else column.is_not(None)
        if op == "between":
            lower, upper = value
            return column.between(lower, upper)
        raise DomainValidationError(f"unsupported operator '{predicate.op}'")
