"""
Hash Record Repository

Reads and writes HashRecord rows and their DependencyLink edges.
"""

from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from datetime import datetime
from collections import defaultdict

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from changedetect.core.domain.entities import CompositeHashResult, DependencyHash
from changedetect.core.enums import UpsertOutcome
from changedetect.infrastructure.database.models import DeliveryTask, DependencyLink, HashRecord
from changedetect.infrastructure.database.repositories.base import SQLAlchemyBaseRepository, chunked

class HashRecordRepository(SQLAlchemyBaseRepository):
    """Hash store access. Tombstoned rows are included unless a method says otherwise."""

    def __init__(self, session: Session):
        super().__init__(session, HashRecord)

    # ======================== LOOKUPS ========================

    def get(self, entity_type: str, entity_id: str) -> Optional[HashRecord]:
        stmt = select(HashRecord).where(
            HashRecord.entity_type == entity_type,
            HashRecord.entity_id == str(entity_id),
        )
        return self.session.scalars(stmt).first()

    def get_active(self, entity_type: str, entity_id: str) -> Optional[HashRecord]:
        record = self.get(entity_type, entity_id)
        if record is None or record.tombstoned_at is not None:
            return None
        return record

    def get_many(self, entity_type: str, entity_ids: Sequence[str]) -> Dict[str, HashRecord]:
        records: Dict[str, HashRecord] = {}
        for chunk in chunked([str(i) for i in entity_ids], self.IN_CLAUSE_CHUNK):
            stmt = select(HashRecord).where(
                HashRecord.entity_type == entity_type,
                HashRecord.entity_id.in_(chunk),
            )
            for record in self.session.scalars(stmt):
                records[record.entity_id] = record
        return records

    def tombstoned_composite(self, entity_type: str, entity_id: str) -> Optional[str]:
        """Last-known composite of a tombstoned record, None if active or absent."""
        stmt = select(HashRecord.composite_hash).where(
            HashRecord.entity_type == entity_type,
            HashRecord.entity_id == str(entity_id),
            HashRecord.tombstoned_at.is_not(None),
        )
        return self.session.scalar(stmt)

    def composite_hashes(self, refs: Iterable[Tuple[str, str]]) -> Dict[Tuple[str, str], str]:
        """Stored composite hash for each (entity_type, entity_id) that has a record."""
        by_type: Dict[str, set] = defaultdict(set)
        for entity_type, entity_id in refs:
            by_type[entity_type].add(str(entity_id))

        hashes: Dict[Tuple[str, str], str] = {}
        for entity_type, ids in by_type.items():
            for chunk in chunked(sorted(ids), self.IN_CLAUSE_CHUNK):
                stmt = select(HashRecord.entity_id, HashRecord.composite_hash).where(
                    HashRecord.entity_type == entity_type,
                    HashRecord.entity_id.in_(chunk),
                )
                for entity_id, composite_hash in self.session.execute(stmt):
                    hashes[(entity_type, entity_id)] = composite_hash
        return hashes

    def active_page(self, entity_type: str, after_record_id: Optional[int], limit: int) -> List[HashRecord]:
        """Active records of a type in primary key order."""
        stmt = select(HashRecord).where(
            HashRecord.entity_type == entity_type,
            HashRecord.tombstoned_at.is_(None),
        )
        if after_record_id is not None:
            stmt = stmt.where(HashRecord.id > after_record_id)
        stmt = stmt.order_by(HashRecord.id).limit(limit)
        return list(self.session.scalars(stmt))

    # ======================== WRITES ========================

    def upsert(self, result: CompositeHashResult) -> Tuple[HashRecord, UpsertOutcome]:
        """Write computed hashes. Unchanged active records are left untouched."""
        record = self.get(result.entity_type, result.entity_id)

        if record is None:
            record = HashRecord(
                entity_type=result.entity_type,
                entity_id=str(result.entity_id),
                attribute_hash=result.attribute_hash,
                composite_hash=result.composite_hash,
            )
            self.session.add(record)
            self.session.flush()
            return record, UpsertOutcome.CREATED

        if record.tombstoned_at is not None:
            record.tombstoned_at = None
            record.attribute_hash = result.attribute_hash
            record.composite_hash = result.composite_hash
            self.session.flush()
            return record, UpsertOutcome.RESTORED

        if (record.attribute_hash == result.attribute_hash
                and record.composite_hash == result.composite_hash):
            return record, UpsertOutcome.UNCHANGED

        record.attribute_hash = result.attribute_hash
        record.composite_hash = result.composite_hash
        self.session.flush()
        return record, UpsertOutcome.UPDATED

    def replace_links(self, record: HashRecord, dependencies: Sequence[DependencyHash]) -> None:
        self.session.execute(
            delete(DependencyLink).where(DependencyLink.hash_id == record.id)
        )
        self.session.add_all([
            DependencyLink(
                hash_id=record.id,
                dependent_type=dependency.entity_type,
                dependent_id=str(dependency.entity_id),
                relation_name=dependency.relation,
            )
            for dependency in dependencies
        ])
        self.session.flush()

    def tombstone(self, record: HashRecord, at: Optional[datetime] = None) -> None:
        record.tombstoned_at = at or datetime.utcnow()
        self.session.flush()

    # ======================== DEPENDENCY LINKS ========================

    def links_for(self, record_ids: Sequence[int]) -> Dict[int, List[DependencyLink]]:
        links: Dict[int, List[DependencyLink]] = {record_id: [] for record_id in record_ids}
        for chunk in chunked(list(record_ids), self.IN_CLAUSE_CHUNK):
            stmt = select(DependencyLink).where(DependencyLink.hash_id.in_(chunk))
            for link in self.session.scalars(stmt):
                links[link.hash_id].append(link)
        return links

    def dependents_of(self, entity_type: str, entity_id: str) -> List[HashRecord]:
        """Active records whose composite consumed the given entity."""
        stmt = (
            select(HashRecord)
            .join(DependencyLink, DependencyLink.hash_id == HashRecord.id)
            .where(
                DependencyLink.dependent_type == entity_type,
                DependencyLink.dependent_id == str(entity_id),
                HashRecord.tombstoned_at.is_(None),
            )
            .distinct()
            .order_by(HashRecord.id)
        )
        return list(self.session.scalars(stmt))

    # ======================== PURGING ========================

    def _purgeable(self, stmt, older_than: Optional[datetime], entity_types: Optional[Sequence[str]]):
        stmt = stmt.where(HashRecord.tombstoned_at.is_not(None))
        if older_than is not None:
            stmt = stmt.where(HashRecord.tombstoned_at < older_than)
        if entity_types:
            stmt = stmt.where(HashRecord.entity_type.in_(list(entity_types)))
        return stmt

    def purgeable_ids(
        self,
        older_than: Optional[datetime] = None,
        entity_types: Optional[Sequence[str]] = None,
        limit: Optional[int] = None
    ) -> List[int]:
        stmt = self._purgeable(select(HashRecord.id), older_than, entity_types).order_by(HashRecord.id)
        if limit:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt))

    def count_purgeable_by_type(
        self,
        older_than: Optional[datetime] = None,
        entity_types: Optional[Sequence[str]] = None
    ) -> Dict[str, int]:
        stmt = self._purgeable(
            select(HashRecord.entity_type, func.count(HashRecord.id)),
            older_than,
            entity_types,
        ).group_by(HashRecord.entity_type)
        return {entity_type: count for entity_type, count in self.session.execute(stmt)}

    def delete_records(self, record_ids: Sequence[int]) -> int:
        """Hard delete records with their links and delivery tasks."""
        deleted = 0
        for chunk in chunked(list(record_ids), self.IN_CLAUSE_CHUNK):
            self.session.execute(delete(DeliveryTask).where(DeliveryTask.hash_id.in_(chunk)))
            self.session.execute(delete(DependencyLink).where(DependencyLink.hash_id.in_(chunk)))
            result = self.session.execute(delete(HashRecord).where(HashRecord.id.in_(chunk)))
            deleted += result.rowcount or 0
        self.session.flush()
        return deleted

    # ======================== STATISTICS ========================

    def statistics(self) -> Dict[str, Dict[str, int]]:
        stmt = select(
            HashRecord.entity_type,
            HashRecord.tombstoned_at.is_(None),
            func.count(HashRecord.id),
        ).group_by(HashRecord.entity_type, HashRecord.tombstoned_at.is_(None))

        stats: Dict[str, Dict[str, int]] = defaultdict(lambda: {"active": 0, "tombstoned": 0})
        for entity_type, active, count in self.session.execute(stmt):
            stats[entity_type]["active" if active else "tombstoned"] += count
        return dict(stats)

__all__ = ['HashRecordRepository']
