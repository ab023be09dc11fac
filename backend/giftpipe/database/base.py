"""
SQLAlchemy declarative base and common model mixins.

This module provides the SQLAlchemy DeclarativeBase, mixins for UUID keys
and timestamps, and a helper for mapping ``str`` enums onto PostgreSQL enum
types by value. Append-only tables (processing signals) use the created-at
mixin alone; mutable tables use the full ``BaseModel``.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Type

from sqlalchemy import DateTime, Enum as SQLEnum, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """
    Base class for all SQLAlchemy models with async support.

    Provides common functionality for all database models including
    async attribute loading and serialization helpers.
    """

    __abstract__ = True

    def to_dict(self, exclude: Optional[set[str]] = None) -> Dict[str, Any]:
        """
        Convert model instance to a JSON-friendly dictionary.

        Keys are mapped attribute names, which differ from column names
        where a column name collides with a reserved attribute.

        Args:
            exclude: Set of attribute names to exclude from output

        Returns:
            Dictionary representation of the model
        """
        exclude = exclude or set()
        result: Dict[str, Any] = {}

        for attr in self.__mapper__.column_attrs:
            if attr.key in exclude:
                continue
            value = getattr(self, attr.key)
            if isinstance(value, (datetime, date)):
                result[attr.key] = value.isoformat()
            elif isinstance(value, uuid.UUID):
                result[attr.key] = str(value)
            elif isinstance(value, Decimal):
                result[attr.key] = str(value)
            elif isinstance(value, Enum):
                result[attr.key] = value.value
            else:
                result[attr.key] = value

        return result

    def __repr__(self) -> str:
        pk_values = []
        for column in self.__table__.primary_key.columns:
            value = getattr(self, column.name, None)
            if value is not None:
                pk_values.append(f"{column.name}={value!r}")

        pk_str = ", ".join(pk_values) if pk_values else "no primary key"
        return f"<{self.__class__.__name__}({pk_str})>"


def pg_enum(enum_cls: Type[Enum], name: str) -> SQLEnum:
    """
    Build a PostgreSQL enum column type that stores member values.

    SQLAlchemy persists member names by default; the migrations create the
    types with the lowercase values the rest of the system speaks.

    Args:
        enum_cls: Python enum class
        name: Database enum type name

    Returns:
        Configured SQLAlchemy Enum type
    """
    return SQLEnum(
        enum_cls,
        name=name,
        create_constraint=True,
        values_callable=lambda members: [member.value for member in members],
    )


class CreatedAtMixin:
    """Mixin adding a server-managed creation timestamp."""

    @declared_attr
    def created_at(cls) -> Mapped[datetime]:
        return mapped_column(
            DateTime(timezone=True),
            nullable=False,
            server_default=func.now(),
            comment="Timestamp when record was created",
        )


class TimestampMixin(CreatedAtMixin):
    """
    Mixin for automatic timestamp management.

    Adds updated_at on top of created_at. For orders ``updated_at`` doubles
    as the "last orchestration touch" the timeout monitor measures, so
    repository writes always set it explicitly rather than relying on the
    ORM ``onupdate`` hook alone.
    """

    @declared_attr
    def updated_at(cls) -> Mapped[datetime]:
        return mapped_column(
            DateTime(timezone=True),
            nullable=False,
            server_default=func.now(),
            onupdate=func.now(),
            comment="Timestamp when record was last updated",
        )


class UUIDMixin:
    """
    Mixin for UUID primary key.

    Uses PostgreSQL's native UUID type with client-side uuid4 generation.
    """

    @declared_attr
    def id(cls) -> Mapped[uuid.UUID]:
        return mapped_column(
            UUID(as_uuid=True),
            primary_key=True,
            default=uuid.uuid4,
            nullable=False,
            comment="Unique identifier for the record",
        )


class BaseModel(Base, UUIDMixin, TimestampMixin):
    """
    Base model with UUID primary key and timestamps.

    Example:
        class Alert(BaseModel):
            __tablename__ = "alerts"

            message: Mapped[str] = mapped_column(Text)
    """

    __abstract__ = True
