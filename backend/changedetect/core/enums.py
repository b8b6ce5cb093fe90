"""
Centralized Enums for ChangeDetect

All application enums in one place for:
- Consistency across hashing and publishing services
- Type safety and IDE support
- Stable string values for database columns
"""

from enum import Enum
from typing import List

# ======================== APPLICATION ENUMS ========================

class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

# ======================== HASHING ENUMS ========================

class HashAlgorithm(str, Enum):
    """Digest algorithms accepted for fingerprints."""
    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"

    @property
    def hex_length(self) -> int:
        return {"md5": 32, "sha1": 40, "sha256": 64}[self.value]

class UpsertOutcome(str, Enum):
    """What happened to a hash record when new hashes were written."""
    CREATED = "created"
    UPDATED = "updated"
    RESTORED = "restored"
    UNCHANGED = "unchanged"

    @property
    def changed(self) -> bool:
        return self is not UpsertOutcome.UNCHANGED

class OrphanReason(str, Enum):
    """Why a hash record no longer has a live entity behind it."""
    MISSING = "missing"
    SOFT_DELETED = "soft_deleted"
    OUT_OF_SCOPE = "out_of_scope"

# ======================== PUBLISHING ENUMS ========================

class DeliveryStatus(str, Enum):
    """Lifecycle states of a delivery task."""
    PENDING = "pending"
    DISPATCHED = "dispatched"
    DEFERRED = "deferred"
    PUBLISHED = "published"
    FAILED = "failed"
    SOURCE_DELETED = "source-deleted"

    @property
    def is_terminal(self) -> bool:
        return self in (
            DeliveryStatus.PUBLISHED,
            DeliveryStatus.FAILED,
            DeliveryStatus.SOURCE_DELETED,
        )

    @property
    def can_dispatch(self) -> bool:
        return self in (DeliveryStatus.PENDING, DeliveryStatus.DEFERRED)

    @classmethod
    def open_statuses(cls) -> List["DeliveryStatus"]:
        """Statuses of tasks that still owe a delivery."""
        return [cls.PENDING, cls.DISPATCHED, cls.DEFERRED]

    @classmethod
    def values(cls) -> List[str]:
        return [status.value for status in cls]

class ErrorKind(str, Enum):
    """Classification of a delivery failure."""
    VALIDATION = "validation"
    INFRASTRUCTURE = "infrastructure"
    DATA = "data"
    UNKNOWN = "unknown"

    @property
    def is_retryable(self) -> bool:
        """Validation and data problems will not fix themselves."""
        return self in (ErrorKind.INFRASTRUCTURE, ErrorKind.UNKNOWN)

    @property
    def counts_as_infrastructure(self) -> bool:
        return self in (ErrorKind.INFRASTRUCTURE, ErrorKind.UNKNOWN)

class TargetStatus(str, Enum):
    """Delivery target activation state."""
    ACTIVE = "active"
    INACTIVE = "inactive"

class Disposition(str, Enum):
    """What a delivery contract wants done with a failed task."""
    STOP_JOB = "stop_job"
    DEFER_RECORD = "defer_record"
    FAIL_RECORD = "fail_record"

__all__ = [
    'LogLevel',
    'HashAlgorithm',
    'UpsertOutcome',
    'OrphanReason',
    'DeliveryStatus',
    'ErrorKind',
    'TargetStatus',
    'Disposition',
]
