from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session


class StorageError(Exception):
    """Raised when a datastore read or write fails."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"Storage operation failed: {operation}")
        self.operation = operation


@contextmanager
def storage_errors(session: Session, operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        session.rollback()
        raise StorageError(operation) from exc
