"""
Exception Hierarchy

Features:
- Structured exception hierarchy
- Error codes and categories
- Context preservation
- Delivery error kinds and response codes for the publish state machine
"""

from typing import Any, Dict, Optional, List, Sequence, Tuple
from enum import Enum
import traceback
from datetime import datetime

from changedetect.core.enums import ErrorKind

class ErrorCategory(str, Enum):
    """High-level error categories for monitoring."""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    EXTERNAL_SERVICE = "external_service"
    DATABASE = "database"
    CONFIGURATION = "configuration"
    BUSINESS_LOGIC = "business_logic"
    SYSTEM = "system"

class ErrorSeverity(str, Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

# ======================== BASE EXCEPTION ========================

class ChangeDetectionError(Exception):
    """
    Base exception for all ChangeDetect errors.

    Provides structured error handling with:
    - Error codes and categories
    - Context preservation
    - Debugging information
    """

    def __init__(
        self,
        message: str,
        error_code: str = "GENERIC_ERROR",
        category: ErrorCategory = ErrorCategory.SYSTEM,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        suggestions: Optional[List[str]] = None,
        cause: Optional[Exception] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.category = category
        self.severity = severity
        self.context = context or {}
        self.suggestions = suggestions or []
        self.cause = cause
        self.timestamp = datetime.utcnow()
        self.traceback_str = traceback.format_exc() if cause else None

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "category": self.category.value,
                "severity": self.severity.value,
                "timestamp": self.timestamp.isoformat(),
                "context": self.context,
                "suggestions": self.suggestions,
                "cause": str(self.cause) if self.cause else None
            }
        }

    def __str__(self) -> str:
        """String representation with error code."""
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message='{self.message}', "
            f"error_code='{self.error_code}', "
            f"category='{self.category.value}', "
            f"severity='{self.severity.value}'"
            f")"
        )

# ======================== HASHING EXCEPTIONS ========================

class NoHashableAttributes(ChangeDetectionError):
    """Entity declares no attributes to fingerprint."""

    def __init__(self, entity_type: str, entity_id: Any = None, **kwargs):
        super().__init__(
            message=f"Entity type '{entity_type}' declares no hashable attributes",
            error_code="NO_HASHABLE_ATTRIBUTES",
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.MEDIUM,
            context={"entity_type": entity_type, "entity_id": str(entity_id) if entity_id is not None else None},
            suggestions=["Return at least one attribute name from hashable_attributes()"],
            **kwargs
        )

class CyclicDependency(ChangeDetectionError):
    """Composite dependency graph loops back onto an entity already on the path."""

    def __init__(self, path: Sequence[Tuple[str, str]], **kwargs):
        self.path = [tuple(step) for step in path]
        rendered = " -> ".join(f"{entity_type}#{entity_id}" for entity_type, entity_id in self.path)
        super().__init__(
            message=f"Cyclic composite dependency: {rendered}",
            error_code="CYCLIC_DEPENDENCY",
            category=ErrorCategory.BUSINESS_LOGIC,
            severity=ErrorSeverity.HIGH,
            context={"path": [list(step) for step in self.path]},
            suggestions=["Move one side of the loop to parent_relations()"],
            **kwargs
        )

class EntityTypeNotRegistered(ChangeDetectionError):
    """No entity source registered for a type discriminator."""

    def __init__(self, entity_type: str, **kwargs):
        super().__init__(
            message=f"No entity source registered for '{entity_type}'",
            error_code="ENTITY_TYPE_NOT_REGISTERED",
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.HIGH,
            context={"entity_type": entity_type},
            suggestions=["Add the registering module to HASHING_REGISTRY_MODULES"],
            **kwargs
        )

class ContractNotRegistered(ChangeDetectionError):
    """No delivery contract factory registered under a name."""

    def __init__(self, contract_name: str, **kwargs):
        super().__init__(
            message=f"No delivery contract registered as '{contract_name}'",
            error_code="CONTRACT_NOT_REGISTERED",
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.HIGH,
            context={"contract": contract_name},
            **kwargs
        )

# ======================== INFRASTRUCTURE EXCEPTIONS ========================

class DatabaseError(ChangeDetectionError):
    """Database operation errors."""

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if operation:
            context['operation'] = operation

        super().__init__(
            message=message,
            error_code=kwargs.pop('error_code', 'DATABASE_ERROR'),
            category=ErrorCategory.DATABASE,
            severity=ErrorSeverity.HIGH,
            context=context,
            **kwargs
        )

class LeaseError(ChangeDetectionError):
    """Distributed lease could not be acquired or kept."""

    def __init__(self, key: str, message: Optional[str] = None, **kwargs):
        super().__init__(
            message=message or f"Lease '{key}' is held by another runner",
            error_code=kwargs.pop('error_code', 'LEASE_UNAVAILABLE'),
            category=ErrorCategory.CONFLICT,
            severity=ErrorSeverity.LOW,
            context={"key": key},
            **kwargs
        )

# ======================== DELIVERY EXCEPTIONS ========================

class DeliveryError(ChangeDetectionError):
    """
    Raised by delivery contracts to report a classified failure.

    The kind drives retry and circuit-breaker policy; the response code
    is recorded on the task for operators.
    """

    default_kind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        kind: Optional[ErrorKind] = None,
        response_code: Optional[int] = None,
        **kwargs
    ):
        self.kind = ErrorKind(kind) if kind is not None else self.default_kind
        self.response_code = response_code

        context = kwargs.pop('context', {})
        context.update({"kind": self.kind.value, "response_code": response_code})

        super().__init__(
            message=message,
            error_code=kwargs.pop('error_code', 'DELIVERY_ERROR'),
            category=kwargs.pop('category', ErrorCategory.EXTERNAL_SERVICE),
            severity=kwargs.pop('severity', ErrorSeverity.MEDIUM),
            context=context,
            **kwargs
        )

class DeliveryValidationError(DeliveryError):
    """Target rejected the payload."""
    default_kind = ErrorKind.VALIDATION

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            error_code='DELIVERY_VALIDATION_ERROR',
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
            **kwargs
        )

class DeliveryInfrastructureError(DeliveryError):
    """Transport, authentication or availability problem."""
    default_kind = ErrorKind.INFRASTRUCTURE

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            error_code='DELIVERY_INFRASTRUCTURE_ERROR',
            severity=ErrorSeverity.HIGH,
            **kwargs
        )

class DeliveryDataError(DeliveryError):
    """Source data missing or unusable for this target."""
    default_kind = ErrorKind.DATA

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            error_code='DELIVERY_DATA_ERROR',
            category=ErrorCategory.NOT_FOUND,
            severity=ErrorSeverity.LOW,
            **kwargs
        )

# ======================== UTILITIES ========================

def handle_exception(
    exc: Exception,
    logger,
    default_error_code: str = "UNEXPECTED_ERROR",
    context: Optional[Dict[str, Any]] = None
) -> ChangeDetectionError:
    """
    Convert any exception to a ChangeDetectionError with proper logging.

    Args:
        exc: The original exception
        logger: Logger instance
        default_error_code: Error code if not a ChangeDetectionError
        context: Additional context

    Returns:
        ChangeDetectionError instance
    """

    if isinstance(exc, ChangeDetectionError):
        logger.error(
            exc.message,
            extra={
                "error_code": exc.error_code,
                "category": exc.category.value,
                "severity": exc.severity.value,
                "context": {**exc.context, **(context or {})}
            },
            exc_info=True
        )
        return exc

    wrapped = ChangeDetectionError(
        message=f"Unexpected error: {str(exc)}",
        error_code=default_error_code,
        category=ErrorCategory.SYSTEM,
        severity=ErrorSeverity.HIGH,
        context=context or {},
        cause=exc
    )

    logger.error(
        wrapped.message,
        extra={
            "error_code": wrapped.error_code,
            "original_exception": type(exc).__name__,
            "context": wrapped.context
        },
        exc_info=True
    )

    return wrapped

__all__ = [
    # Base
    'ChangeDetectionError',
    'ErrorCategory',
    'ErrorSeverity',

    # Hashing
    'NoHashableAttributes',
    'CyclicDependency',
    'EntityTypeNotRegistered',
    'ContractNotRegistered',

    # Infrastructure
    'DatabaseError',
    'LeaseError',

    # Delivery
    'DeliveryError',
    'DeliveryValidationError',
    'DeliveryInfrastructureError',
    'DeliveryDataError',

    # Utilities
    'handle_exception',
]
