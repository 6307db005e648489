"""Shared repository contract for persisted cluster resources.

Every entity repository exposes the same verbs (create, find_by_id,
find_many, update, delete, create_many, update_many, delete_many, count,
exists, health) over one ORM model. Subclasses declare the model, a
:class:`~clusterstate.validation.Validator`, and optionally a parent field
whose value must reference an existing node.

Filters (``where``) are plain mappings of column name to either a value
(equality) or an operator mapping::

    {"status": "running"}
    {"cpu_usage": {"gte": 0.8}, "status": {"in": ["running", "paused"]}}

Supported operators: eq, ne, in, not_in, gt, gte, lt, lte, contains.
A SQLAlchemy boolean expression (or a list of them) is accepted as well.

Each call opens its own short-lived session from the injected session
factory. There is no transaction spanning a referential check and the
write that follows it.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Generic, TypeVar

from sqlalchemy import ColumnElement, delete, func, inspect, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from clusterstate import models
from clusterstate.config import settings
from clusterstate.errors import NotFoundError, ValidationError
from clusterstate.metrics import bulk_create_failures
from clusterstate.timing import TimedOperation
from clusterstate.validation import Validator, known_fields

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=models.Base)

# Columns the repository stamps itself; callers may not supply them
SERVER_ASSIGNED_FIELDS = frozenset({"created_at", "updated_at"})


@dataclass
class FindManyResult(Generic[ModelT]):
    """One page of a filtered, ordered listing."""

    data: list[ModelT]
    total: int
    page: int
    limit: int
    has_more: bool


@dataclass
class BulkFailure:
    index: int
    resource_id: Any
    error: str
    code: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "resource_id": self.resource_id,
            "error": self.error,
            "code": self.code,
        }


@dataclass
class BulkCreateResult(Generic[ModelT]):
    """Outcome of a best-effort bulk insert.

    Behaves like the list of created entities (``len``, iteration, indexing)
    while also carrying the per-item failures, so callers can tell "nothing
    happened" apart from "some items succeeded".
    """

    created: list[ModelT] = field(default_factory=list)
    failures: list[BulkFailure] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures

    def __len__(self) -> int:
        return len(self.created)

    def __iter__(self) -> Iterator[ModelT]:
        return iter(self.created)

    def __getitem__(self, index: int) -> ModelT:
        return self.created[index]


@dataclass
class HealthStatus:
    status: str
    timestamp: datetime
    error: str | None = None

    @property
    def is_healthy(self) -> bool:
        return self.status == "healthy"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status, "timestamp": self.timestamp.isoformat()}
        if self.error:
            data["error"] = self.error
        return data


def _eq(column, value):
    return column.is_(None) if value is None else column == value


def _ne(column, value):
    return column.is_not(None) if value is None else column != value


_OPERATORS = {
    "eq": _eq,
    "ne": _ne,
    "not": _ne,
    "in": lambda column, value: column.in_(list(value)),
    "not_in": lambda column, value: column.not_in(list(value)),
    "gt": lambda column, value: column > value,
    "gte": lambda column, value: column >= value,
    "lt": lambda column, value: column < value,
    "lte": lambda column, value: column <= value,
    "contains": lambda column, value: column.contains(value),
}


class BaseRepository(Generic[ModelT]):
    """Validated CRUD over one resource table."""

    model: ClassVar[type[models.Base]]
    entity: ClassVar[str]  # metrics/log label, e.g. "vm"
    resource_name: ClassVar[str]  # human label, e.g. "VM"
    plural: ClassVar[str]
    parent_field: ClassVar[str | None] = None
    default_order: ClassVar[tuple[tuple[str, str], ...]] = (("created_at", "desc"),)
    relations: ClassVar[tuple[str, ...]] = ()
    id_label: ClassVar[str] = "ID"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        mapper = inspect(self.model)
        self.id_field: str = mapper.primary_key[0].name
        self._columns = {column.key: column for column in mapper.columns}
        self._writable = frozenset(self._columns) - SERVER_ASSIGNED_FIELDS
        self._required_columns = frozenset(
            name
            for name, column in self._columns.items()
            if not column.nullable and name not in SERVER_ASSIGNED_FIELDS
        )
        self.validator = Validator([known_fields(self._writable)])
        for rule in self.build_validator().rules:
            self.validator.add_rule(rule)

    def build_validator(self) -> Validator:
        """Rules for create payloads; patches reuse them with ``partial=True``."""
        return Validator()

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    def _column(self, name: str):
        column = getattr(self.model, name, None)
        if name not in self._columns or column is None:
            raise ValidationError(f"Unknown field: {name}", field=name)
        return column

    def _conditions(self, where: Any) -> list[ColumnElement[bool]]:
        if where is None:
            return []
        if isinstance(where, ColumnElement):
            return [where]
        if isinstance(where, Mapping):
            conditions = []
            for name, value in where.items():
                column = self._column(name)
                if isinstance(value, Mapping):
                    for op, operand in value.items():
                        builder = _OPERATORS.get(op)
                        if builder is None:
                            raise ValidationError(f"Unsupported filter operator: {op}", field=name)
                        conditions.append(builder(column, operand))
                else:
                    conditions.append(_eq(column, value))
            return conditions
        if isinstance(where, (list, tuple)):
            return list(where)
        raise ValidationError("where must be a mapping or SQL expression")

    def _ordering(self, order_by: Any) -> list:
        if order_by is None:
            order_by = self.default_order
        if isinstance(order_by, Mapping):
            order_by = list(order_by.items())
        clauses = []
        for name, direction in order_by:
            column = self._column(name)
            direction = str(direction).lower()
            if direction not in ("asc", "desc"):
                raise ValidationError(f"Invalid sort direction for {name}: {direction}", field=name)
            clauses.append(column.desc() if direction == "desc" else column.asc())
        # Stable order across pages
        clauses.append(self._column(self.id_field).asc())
        return clauses

    def _loader_options(self, include: Iterable[str] | None) -> list:
        options = []
        for name in include or ():
            attr = getattr(self.model, name, None)
            if name not in inspect(self.model).relationships or attr is None:
                raise ValidationError(f"Unknown relation: {name}", field=name)
            options.append(selectinload(attr))
        return options

    async def _find_all(
        self,
        where: Any = None,
        order_by: Any = None,
        include: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[ModelT]:
        stmt = (
            select(self.model)
            .where(*self._conditions(where))
            .order_by(*self._ordering(order_by))
            .options(*self._loader_options(include))
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def _ensure_parent_exists(self, session: AsyncSession, node_id: Any) -> None:
        """Raise ValidationError unless ``node_id`` names an existing node."""
        found = await session.scalar(select(models.Node.id).where(models.Node.id == node_id))
        if found is None:
            raise ValidationError(f"Node {node_id} does not exist", field=self.parent_field)

    async def _check_delete(self, session: AsyncSession, entity: ModelT) -> None:
        """Hook for dependency checks before a single delete."""

    async def _check_delete_many(self, session: AsyncSession, conditions: list) -> None:
        """Hook for dependency checks before a set-based delete."""

    def _check_patch(self, patch: Any) -> None:
        if not isinstance(patch, Mapping):
            raise ValidationError("payload must be a mapping")
        if self.id_field in patch:
            raise ValidationError(f"{self.id_field} cannot be changed", field=self.id_field)
        for name, value in patch.items():
            if value is None and name in self._required_columns:
                raise ValidationError(f"{name} cannot be null", field=name)
        self.validator.validate(patch, partial=True)

    def _new_instance(self, data: Mapping[str, Any]) -> ModelT:
        now = models.utcnow()
        stamps = {name: now for name in SERVER_ASSIGNED_FIELDS if name in self._columns}
        return self.model(**dict(data), **stamps)

    def _duplicate_error(self, data: Mapping[str, Any], exc: IntegrityError) -> ValidationError:
        return ValidationError(
            f"{self.resource_name} with {self.id_label} {data.get(self.id_field)} already exists",
            field=self.id_field,
            cause=exc,
        )

    # ------------------------------------------------------------------
    # Core CRUD
    # ------------------------------------------------------------------

    async def create(self, data: Mapping[str, Any]) -> ModelT:
        self.validator.validate(data)
        async with TimedOperation(
            entity=self.entity,
            operation="create",
            log_extras={"resource_id": data.get(self.id_field)},
        ):
            async with self._session_factory() as session:
                if self.parent_field:
                    await self._ensure_parent_exists(session, data[self.parent_field])
                entity = self._new_instance(data)
                session.add(entity)
                try:
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    raise self._duplicate_error(data, e) from e
                return entity

    async def find_by_id(self, resource_id: Any, include: Iterable[str] | None = None) -> ModelT | None:
        stmt = (
            select(self.model)
            .where(self._column(self.id_field) == resource_id)
            .options(*self._loader_options(include))
        )
        async with self._session_factory() as session:
            return await session.scalar(stmt)

    async def find_many(
        self,
        where: Any = None,
        order_by: Any = None,
        page: int = 1,
        limit: int | None = None,
        offset: int | None = None,
        include: Iterable[str] | None = None,
    ) -> FindManyResult[ModelT]:
        """Return one page of matching rows plus the total match count.

        ``offset`` takes precedence over ``page`` when both are given.
        """
        limit = settings.default_page_limit if limit is None else limit
        if limit < 1:
            raise ValidationError("limit must be at least 1", field="limit")
        if page < 1:
            raise ValidationError("page must be at least 1", field="page")
        if offset is not None and offset < 0:
            raise ValidationError("offset cannot be negative", field="offset")
        skip = offset if offset is not None else (page - 1) * limit

        conditions = self._conditions(where)
        stmt = (
            select(self.model)
            .where(*conditions)
            .order_by(*self._ordering(order_by))
            .options(*self._loader_options(include))
            .offset(skip)
            .limit(limit)
        )
        count_stmt = select(func.count()).select_from(self.model).where(*conditions)
        async with self._session_factory() as session:
            data = list((await session.execute(stmt)).scalars().all())
            total = await session.scalar(count_stmt) or 0

        return FindManyResult(
            data=data,
            total=total,
            page=page,
            limit=limit,
            has_more=skip + len(data) < total,
        )

    async def update(self, resource_id: Any, patch: Mapping[str, Any]) -> ModelT:
        self._check_patch(patch)
        async with TimedOperation(
            entity=self.entity, operation="update", log_extras={"resource_id": resource_id}
        ):
            async with self._session_factory() as session:
                entity = await session.get(self.model, resource_id)
                if entity is None:
                    raise NotFoundError(self.resource_name, resource_id)

                # Cross-field rules must hold for the stored row after the patch
                merged = {name: getattr(entity, name) for name in self._writable}
                merged.update(patch)
                self.validator.validate(merged, partial=True)

                if self.parent_field and self.parent_field in patch:
                    new_parent = patch[self.parent_field]
                    if new_parent != getattr(entity, self.parent_field):
                        await self._ensure_parent_exists(session, new_parent)

                for name, value in patch.items():
                    setattr(entity, name, value)
                if "updated_at" in self._columns:
                    entity.updated_at = models.utcnow()
                await session.commit()
                return entity

    async def delete(self, resource_id: Any) -> None:
        async with TimedOperation(
            entity=self.entity, operation="delete", log_extras={"resource_id": resource_id}
        ):
            async with self._session_factory() as session:
                entity = await session.get(self.model, resource_id)
                if entity is None:
                    raise NotFoundError(self.resource_name, resource_id)
                await self._check_delete(session, entity)
                await session.delete(entity)
                await session.commit()

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    def _item_label(self, item: Mapping[str, Any]) -> Any:
        """Identifier used when reporting a bulk-create failure."""
        return item.get(self.id_field)

    def _bulk_remediation(self) -> list[str]:
        return [f"Continue with remaining {self.plural}", "Check database connectivity"]

    async def create_many(self, items: Iterable[Mapping[str, Any]]) -> BulkCreateResult[ModelT]:
        """Insert items one by one, skipping (and logging) items that fail.

        Every item is validated before anything is written; a single invalid
        payload rejects the whole batch. After that, insert failures such as
        duplicate keys or a missing parent node are isolated per item.
        """
        items = list(items)
        for index, item in enumerate(items):
            try:
                self.validator.validate(item)
            except ValidationError as e:
                raise ValidationError(f"Item {index}: {e.message}", field=e.field) from e

        result: BulkCreateResult[ModelT] = BulkCreateResult()
        for index, item in enumerate(items):
            resource_id = self._item_label(item)
            try:
                result.created.append(await self.create(item))
            except Exception as e:
                code = getattr(e, "code", type(e).__name__)
                result.failures.append(
                    BulkFailure(index=index, resource_id=resource_id, error=str(e), code=code)
                )
                bulk_create_failures.labels(entity=self.entity).inc()
                logger.error(
                    f"Failed to create {self.resource_name} {resource_id} in bulk operation: {e}",
                    extra={
                        "event": "bulk_create_failed",
                        "operation": f"{self.entity}.create_many",
                        "resources_affected": [str(resource_id)],
                        "remediation": self._bulk_remediation(),
                        "error": str(e),
                        "error_code": code,
                    },
                )

        if result.failures:
            logger.warning(
                f"Bulk create of {self.plural}: {len(result.created)} created, "
                f"{len(result.failures)} failed"
            )
        return result

    async def update_many(self, where: Any, patch: Mapping[str, Any]) -> int:
        self._check_patch(patch)
        values = dict(patch)
        if "updated_at" in self._columns:
            values["updated_at"] = models.utcnow()
        stmt = (
            update(self.model)
            .where(*self._conditions(where))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            if self.parent_field and patch.get(self.parent_field) is not None:
                await self._ensure_parent_exists(session, patch[self.parent_field])
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount

    async def delete_many(self, where: Any) -> int:
        conditions = self._conditions(where)
        stmt = delete(self.model).where(*conditions).execution_options(synchronize_session=False)
        async with self._session_factory() as session:
            await self._check_delete_many(session, conditions)
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount

    # ------------------------------------------------------------------
    # Utility probes
    # ------------------------------------------------------------------

    async def count(self, where: Any = None) -> int:
        stmt = select(func.count()).select_from(self.model).where(*self._conditions(where))
        async with self._session_factory() as session:
            return await session.scalar(stmt) or 0

    async def exists(self, resource_id: Any) -> bool:
        id_column = self._column(self.id_field)
        async with self._session_factory() as session:
            found = await session.scalar(select(id_column).where(id_column == resource_id))
        return found is not None

    async def health(self) -> HealthStatus:
        """Trivial count query; reports unhealthy instead of raising."""
        try:
            await self.count()
        except Exception as e:
            logger.warning(f"{self.resource_name} repository health check failed: {e}")
            return HealthStatus(status="unhealthy", timestamp=models.utcnow(), error=str(e))
        return HealthStatus(status="healthy", timestamp=models.utcnow())

    async def find_with_relations(self, resource_id: Any) -> ModelT | None:
        return await self.find_by_id(resource_id, include=self.relations)

    async def _scan(self, where: Any = None) -> list[ModelT]:
        """Load every matching row for in-process aggregation."""
        stmt = select(self.model).where(*self._conditions(where))
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())


def distribution(values: Iterable[Any]) -> dict[str, int]:
    """Group-by-count of non-empty values, in first-seen order."""
    counts: dict[str, int] = {}
    for value in values:
        if value:
            counts[value] = counts.get(value, 0) + 1
    return counts


def average(values: Iterable[float]) -> float:
    values = list(values)
    return sum(values) / len(values) if values else 0
