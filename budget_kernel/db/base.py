"""
Declarative base for the budget kernel's ORM models.

Every table gets a uuid4 primary key stored as text, so the same schema
runs on PostgreSQL and SQLite.  Money columns are ``Numeric(38, 9)``;
budget amounts never pass through float.  Nothing here may import from
models, services or outer layers.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Actor ids come from the caller's identity layer and are stored verbatim.
ACTOR_ID_LENGTH = 64


class UUIDString(TypeDecorator):
    """``uuid.UUID`` in Python, ``VARCHAR(36)`` in the database."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else PyUUID(value)


class Base(DeclarativeBase):
    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(38, 9),
        datetime: DateTime(timezone=True),
        PyUUID: UUIDString(),
        # Document counters can outgrow 32 bits on long-lived scopes
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TrackedBase(Base):
    """
    Adds who/when audit columns.

    ``created_at`` and ``updated_at`` are filled by the database clock;
    ``created_by_id`` is mandatory, ``updated_by_id`` is set by services
    on the first modification.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now()
    )
    created_by_id: Mapped[str] = mapped_column(String(ACTOR_ID_LENGTH))
    updated_by_id: Mapped[str | None] = mapped_column(String(ACTOR_ID_LENGTH))


UUID = PyUUID
