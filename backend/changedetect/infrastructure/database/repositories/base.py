"""
Base Repository Implementation
"""

from typing import Any, Iterator, List, Optional, Sequence, Type, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from changedetect.core.exceptions import DatabaseError, handle_exception
from changedetect.core.logging_config import get_logger

T = TypeVar("T")

def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Split a sequence into lists of at most ``size`` items."""
    items = list(items)
    size = max(1, int(size))
    for start in range(0, len(items), size):
        yield items[start:start + size]

class SQLAlchemyBaseRepository:
    """Base repository with common database operations."""

    # Keeps IN (...) lists under driver parameter limits
    IN_CLAUSE_CHUNK = 500

    def __init__(self, session: Session, model_class: Type):
        self.session = session
        self.model_class = model_class
        self.logger = get_logger(f"{self.__class__.__name__}")

    def get_by_id(self, record_id: int) -> Optional[Any]:
        return self.session.get(self.model_class, record_id)

    def refresh(self, instance: Any) -> None:
        self.session.refresh(instance)

    def commit(self) -> None:
        """Commit current transaction."""
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            handle_exception(e, self.logger, context={"operation": "commit"})
            raise DatabaseError("Failed to commit transaction", operation="commit", cause=e)

