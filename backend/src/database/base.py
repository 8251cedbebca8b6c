"""
SQLAlchemy declarative base and common model mixins.

This module provides the SQLAlchemy DeclarativeBase and the mixins for UUID
primary keys and timestamps shared by every table. Column types are the
dialect-neutral SQLAlchemy 2.0 types so the same models run on PostgreSQL
and on SQLite.
"""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, DateTime, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(AsyncAttrs, DeclarativeBase):
    """
    Base class for all SQLAlchemy models with async support.
    """

    __abstract__ = True

    def __repr__(self) -> str:
        pk_values = []
        for column in self.__table__.primary_key.columns:
            value = getattr(self, column.key, None)
            if value is not None:
                pk_values.append(f"{column.name}={value!r}")

        pk_str = ", ".join(pk_values) if pk_values else "no primary key"
        return f"<{self.__class__.__name__}({pk_str})>"


class TimestampMixin:
    """
    Mixin for created_at/updated_at columns.

    Both default to the database clock on insert. There is no ``onupdate``
    hook: every conditional update writes ``updated_at`` itself.
    """

    @declared_attr
    def created_at(cls) -> Mapped[datetime]:
        return mapped_column(
            DateTime(timezone=True),
            nullable=False,
            server_default=func.now(),
            comment="Timestamp when record was created",
        )

    @declared_attr
    def updated_at(cls) -> Mapped[datetime]:
        return mapped_column(
            DateTime(timezone=True),
            nullable=False,
            server_default=func.now(),
            comment="Timestamp when record was last updated",
        )


class UUIDMixin:
    """
    Mixin for UUID primary key.
    """

    @declared_attr
    def id(cls) -> Mapped[uuid.UUID]:
        return mapped_column(
            Uuid(as_uuid=True),
            primary_key=True,
            default=uuid.uuid4,
            nullable=False,
            comment="Unique identifier for the record",
        )


class BaseModel(Base, UUIDMixin, TimestampMixin):
    """
    Base model with UUID primary key and timestamps.

    Example:
        class PlatformSetting(BaseModel):
            __tablename__ = "platform_settings"

            key: Mapped[str] = mapped_column(String(100), unique=True)
    """

    __abstract__ = True


def enum_values(enum_cls: type[Enum]) -> list[str]:
    """Persist enums by their lowercase values rather than member names."""
    return [member.value for member in enum_cls]
