"""
Key/value settings maintained from the admin back office.
"""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import BaseModel

COMMISSION_RATE_KEY = "commission_rate"


class PlatformSetting(BaseModel):
    """
    A single admin-configurable value, stored as text.

    Attributes:
        key: Unique setting name (e.g. ``commission_rate``)
        value: Setting value
    """

    __tablename__ = "platform_settings"

    key: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
        comment="Setting name",
    )

    value: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Setting value",
    )

    def __repr__(self) -> str:
        return f"<PlatformSetting(key={self.key!r}, value={self.value!r})>"
