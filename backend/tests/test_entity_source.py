"""
SQLAlchemy Entity Source Test Suite
"""

from datetime import datetime

import pytest
from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import declarative_base

from changedetect.core.domain.entities import TrackedEntity
from changedetect.core.enums import OrphanReason
from changedetect.infrastructure.database.entity_source import SQLAlchemyEntitySource
from changedetect.services.hashing.bulk_processor import BulkHashProcessor
from changedetect.services.hashing.orphans import OrphanedHashDetector
from changedetect.services.registry import EntityRegistry

GaugeBase = declarative_base()

class Gauge(GaugeBase, TrackedEntity):
    __tablename__ = "gauges"

    entity_type = "gauge"
    hash_attributes = ("label", "reading")

    id = Column(Integer, primary_key=True)
    label = Column(String(50), nullable=False)
    reading = Column(Integer, nullable=False, default=0)
    deleted_at = Column(DateTime, nullable=True)

@pytest.fixture
def gauges(engine, session):
    GaugeBase.metadata.create_all(engine)
    rows = [Gauge(id=i, label=f"G{i}", reading=i * 10) for i in (1, 2, 10)]
    rows.append(Gauge(id=11, label="G11", reading=0, deleted_at=datetime(2025, 2, 1)))
    session.add_all(rows)
    session.commit()
    return rows

@pytest.fixture
def source():
    return SQLAlchemyEntitySource(Gauge, deleted_at_column="deleted_at")

class TestSQLAlchemyEntitySource:

    def test_keyset_pages_by_numeric_id(self, session, source, gauges):
        first = source.fetch_page(session, None, 2)
        second = source.fetch_page(session, "2", 2)

        assert [gauge.entity_id for gauge in first] == ["1", "2"]
        assert [gauge.entity_id for gauge in second] == ["10"]

    def test_iterate_skips_soft_deleted(self, session, source, gauges):
        assert [gauge.entity_id for gauge in source.iterate(session, page_size=2)] == ["1", "2", "10"]

    def test_get_many_uses_string_ids(self, session, source, gauges):
        found = source.get_many(session, ["2", "10", "11", "99"])

        assert sorted(found) == ["10", "2"]
        assert source.get(session, "1").label == "G1"
        assert source.get(session, "11") is None

    def test_soft_deleted_lookup(self, session, source, gauges):
        assert source.soft_deleted(session, ["1", "11"]) == {"11": datetime(2025, 2, 1)}
        assert SQLAlchemyEntitySource(Gauge).soft_deleted(session, ["11"]) == {}

    def test_hashing_through_mapped_models(self, session, source, gauges):
        registry = EntityRegistry()
        registry.register(source)
        processor = BulkHashProcessor(session, registry)

        assert processor.process_changed("gauge").created == 3

        gauges[1].reading = 99
        session.flush()
        result = processor.process_changed("gauge")
        assert result.updated == 1

        orphans = OrphanedHashDetector(session, registry).detect_orphaned_hashes("gauge")
        assert orphans == []

        gauges[0].deleted_at = datetime(2025, 3, 1)
        session.flush()
        orphans = OrphanedHashDetector(session, registry).detect_orphaned_hashes("gauge")
        assert [(orphan.entity_id, orphan.reason) for orphan in orphans] == [("1", OrphanReason.SOFT_DELETED)]
