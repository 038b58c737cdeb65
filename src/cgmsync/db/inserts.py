"""
Idempotent insert primitive.

insert_or_ignore() writes one row in its own transaction and classifies the
outcome so callers never have to read driver error strings:

  INSERTED        the row is new and committed
  ALREADY_EXISTS  a unique constraint fired and a row with the same
                  identity is present: a successful no-op
  ERROR           anything else (NOT NULL, FK, type, connection errors)

The identity lookup after a failed insert is what separates a duplicate
from a different constraint violation on the same row.
"""
import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, SQLModel, select


class InsertStatus(str, enum.Enum):
    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"
    ERROR = "error"


@dataclass
class InsertResult:
    status: InsertStatus
    error: Optional[str] = None
    row_id: Optional[int] = None

    @property
    def inserted(self) -> bool:
        return self.status is InsertStatus.INSERTED


def insert_or_ignore(engine, row: SQLModel, identity: Dict[str, Any]) -> InsertResult:
    """Insert ``row`` unless a row of the same model matches ``identity``.

    Args:
        engine: SQLAlchemy engine.
        row: Unsaved SQLModel instance.
        identity: Column name → value pairs forming the row's natural key.

    Returns:
        InsertResult describing what happened. Never raises for
        database errors.
    """
    model = type(row)
    with Session(engine) as s:
        s.add(row)
        try:
            s.commit()
        except IntegrityError as exc:
            s.rollback()
            if _exists(s, model, identity):
                return InsertResult(InsertStatus.ALREADY_EXISTS)
            return InsertResult(
                InsertStatus.ERROR, error=f"integrity error: {exc.orig}"
            )
        except SQLAlchemyError as exc:
            s.rollback()
            return InsertResult(
                InsertStatus.ERROR, error=f"{type(exc).__name__}: {exc}"
            )
        return InsertResult(InsertStatus.INSERTED, row_id=getattr(row, "id", None))


def _exists(s: Session, model, identity: Dict[str, Any]) -> bool:
    stmt = select(model)
    for column, value in identity.items():
        stmt = stmt.where(getattr(model, column) == value)
    return s.exec(stmt).first() is not None
