"""
SQLAlchemy Entity Source

Exposes an ORM-mapped TrackedEntity model to the hashing engine with
keyset paging and optional soft-delete awareness.
"""

from typing import Any, Dict, List, Optional, Sequence, Type
from datetime import datetime

from sqlalchemy import select

from changedetect.core.domain.contracts import EntitySource
from changedetect.core.domain.entities import TrackedEntity
from changedetect.infrastructure.database.repositories.base import chunked

class SQLAlchemyEntitySource(EntitySource):
    """
    Entity source backed by a mapped model.

    Args:
        model: Mapped class that also mixes in TrackedEntity
        id_column: Attribute used for keyset paging and lookups
        deleted_at_column: Soft-delete timestamp attribute, if the model has one
        options: Loader options (e.g. selectinload) applied to every query
    """

    IN_CLAUSE_CHUNK = 500

    def __init__(
        self,
        model: Type[TrackedEntity],
        id_column: str = "id",
        deleted_at_column: Optional[str] = None,
        options: Sequence[Any] = ()
    ):
        self.model = model
        self.entity_type = model.entity_type
        self.id_column = id_column
        self.deleted_at_column = deleted_at_column
        self.options = list(options)

    @property
    def _pk(self):
        return getattr(self.model, self.id_column)

    @property
    def _deleted_at(self):
        return getattr(self.model, self.deleted_at_column) if self.deleted_at_column else None

    def _coerce_id(self, value: Any) -> Any:
        try:
            python_type = self._pk.property.columns[0].type.python_type
        except NotImplementedError:
            return value
        if python_type is int:
            return int(value)
        return python_type(value) if not isinstance(value, python_type) else value

    def _live(self, stmt):
        if self._deleted_at is not None:
            stmt = stmt.where(self._deleted_at.is_(None))
        if self.options:
            stmt = stmt.options(*self.options)
        return stmt

    def fetch_page(self, session, after_id: Optional[str], limit: int) -> List[TrackedEntity]:
        stmt = self._live(select(self.model))
        if after_id is not None:
            stmt = stmt.where(self._pk > self._coerce_id(after_id))
        stmt = stmt.order_by(self._pk).limit(limit)
        return list(session.scalars(stmt))

    def get_many(self, session, ids: Sequence[str]) -> Dict[str, TrackedEntity]:
        found: Dict[str, TrackedEntity] = {}
        for chunk in chunked([self._coerce_id(i) for i in ids], self.IN_CLAUSE_CHUNK):
            stmt = self._live(select(self.model).where(self._pk.in_(chunk)))
            for entity in session.scalars(stmt):
                found[str(entity.entity_id)] = entity
        return found

    def soft_deleted(self, session, ids: Sequence[str]) -> Dict[str, datetime]:
        if self._deleted_at is None:
            return {}
        deleted: Dict[str, datetime] = {}
        for chunk in chunked([self._coerce_id(i) for i in ids], self.IN_CLAUSE_CHUNK):
            stmt = select(self._pk, self._deleted_at).where(
                self._pk.in_(chunk),
                self._deleted_at.is_not(None),
            )
            for entity_id, deleted_at in session.execute(stmt):
                deleted[str(entity_id)] = deleted_at
        return deleted

__all__ = ['SQLAlchemyEntitySource']
