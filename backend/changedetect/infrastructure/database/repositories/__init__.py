from changedetect.infrastructure.database.repositories.hash_record import HashRecordRepository
from changedetect.infrastructure.database.repositories.delivery_task import DeliveryTaskRepository
from changedetect.infrastructure.database.repositories.delivery_target import DeliveryTargetRepository

__all__ = ['HashRecordRepository', 'DeliveryTaskRepository', 'DeliveryTargetRepository']
