"""
Delivery Target Repository
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from changedetect.core.enums import TargetStatus
from changedetect.infrastructure.database.models import DeliveryTarget
from changedetect.infrastructure.database.repositories.base import SQLAlchemyBaseRepository

class DeliveryTargetRepository(SQLAlchemyBaseRepository):
    """Delivery target configuration rows."""

    def __init__(self, session: Session):
        super().__init__(session, DeliveryTarget)

    def get_by_name(self, name: str) -> Optional[DeliveryTarget]:
        stmt = select(DeliveryTarget).where(DeliveryTarget.name == name)
        return self.session.scalars(stmt).first()

    def active(self, entity_type: Optional[str] = None) -> List[DeliveryTarget]:
        stmt = select(DeliveryTarget).where(DeliveryTarget.status == TargetStatus.ACTIVE.value)
        if entity_type is not None:
            stmt = stmt.where(DeliveryTarget.entity_type == entity_type)
        return list(self.session.scalars(stmt.order_by(DeliveryTarget.id)))

    def create(
        self,
        name: str,
        entity_type: str,
        contract_name: str,
        config: Optional[Dict[str, Any]] = None,
        status: TargetStatus = TargetStatus.ACTIVE
    ) -> DeliveryTarget:
        target = DeliveryTarget(
            name=name,
            entity_type=entity_type,
            contract_name=contract_name,
            config=config or {},
            status=TargetStatus(status).value,
        )
        self.session.add(target)
        self.session.flush()
        self.logger.info(
            f"Registered delivery target: {name}",
            extra={"target": name, "entity_type": entity_type, "contract": contract_name}
        )
        return target

    def set_status(self, target: DeliveryTarget, status: TargetStatus) -> None:
        target.status = TargetStatus(status).value
        self.session.flush()

__all__ = ['DeliveryTargetRepository']
