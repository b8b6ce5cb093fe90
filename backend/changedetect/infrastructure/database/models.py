"""
Database Models - Pure SQLAlchemy ORM

These models contain ONLY:
- Table definitions
- Column mappings
- Relationships
- Database constraints

NO business logic.
Hashing and delivery rules belong in the services.
"""

from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, JSON, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

from changedetect.core.enums import DeliveryStatus, TargetStatus

Base = declarative_base()

# ======================== HASH STORE ========================

class HashRecord(Base):
    """
    Stored fingerprint of one tracked entity.

    At most one row per (entity_type, entity_id); a tombstoned row is
    restored in place when the entity comes back.
    """
    __tablename__ = "hash_records"

    id = Column(Integer, primary_key=True)

    entity_type = Column(String(255), nullable=False)
    entity_id = Column(String(255), nullable=False)

    attribute_hash = Column(String(64), nullable=False)
    composite_hash = Column(String(64), nullable=False)

    tombstoned_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    links = relationship(
        "DependencyLink",
        back_populates="owner",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint('entity_type', 'entity_id', name='uq_hash_entity'),
        Index('idx_hash_type_tombstoned', 'entity_type', 'tombstoned_at'),
    )

class DependencyLink(Base):
    """
    Edge recording that the owner's composite hash consumed a dependency.

    Rewritten wholesale whenever the owner's composite is recomputed.
    """
    __tablename__ = "dependency_links"

    id = Column(Integer, primary_key=True)
    hash_id = Column(Integer, ForeignKey("hash_records.id", ondelete="CASCADE"), nullable=False)

    dependent_type = Column(String(255), nullable=False)
    dependent_id = Column(String(255), nullable=False)
    relation_name = Column(String(255), nullable=False)

    owner = relationship("HashRecord", back_populates="links")

    __table_args__ = (
        UniqueConstraint('hash_id', 'dependent_type', 'dependent_id', 'relation_name', name='uq_link_edge'),
        Index('idx_link_dependent', 'dependent_type', 'dependent_id'),
    )

# ======================== DELIVERY ========================

class DeliveryTarget(Base):
    """External system that receives change notifications for one entity type."""
    __tablename__ = "delivery_targets"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False, unique=True)
    entity_type = Column(String(255), nullable=False, index=True)
    contract_name = Column(String(255), nullable=False)
    config = Column(JSON, default=dict)
    status = Column(String(20), nullable=False, default=TargetStatus.ACTIVE.value, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    tasks = relationship("DeliveryTask", back_populates="target", passive_deletes=True)

class DeliveryTask(Base):
    """Obligation to deliver one hash record to one target."""
    __tablename__ = "delivery_tasks"

    id = Column(Integer, primary_key=True)
    hash_id = Column(Integer, ForeignKey("hash_records.id", ondelete="CASCADE"), nullable=True)
    target_id = Column(Integer, ForeignKey("delivery_targets.id", ondelete="CASCADE"), nullable=False)

    status = Column(String(20), nullable=False, default=DeliveryStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)

    delivered_hash = Column(String(64))
    delivered_at = Column(DateTime)
    next_attempt_at = Column(DateTime)

    last_error = Column(Text)
    last_response_code = Column(Integer)
    error_kind = Column(String(20))

    task_metadata = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    hash_record = relationship("HashRecord")
    target = relationship("DeliveryTarget", back_populates="tasks")

    __table_args__ = (
        UniqueConstraint('hash_id', 'target_id', name='uq_task_hash_target'),
        Index('idx_task_due', 'target_id', 'status', 'next_attempt_at'),
        Index('idx_task_created', 'target_id', 'created_at'),
    )

__all__ = ['Base', 'HashRecord', 'DependencyLink', 'DeliveryTarget', 'DeliveryTask']
