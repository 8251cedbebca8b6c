"""
Database models package initialization.

Models are imported here so they are registered with the Base metadata for
Alembic and for ``Base.metadata.create_all`` in tests.
"""

from src.database.base import Base, BaseModel, TimestampMixin, UUIDMixin
from src.database.models.order import FinancialTransaction, Order, OrderStatusHistory
from src.database.models.platform_setting import PlatformSetting

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "UUIDMixin",
    "FinancialTransaction",
    "Order",
    "OrderStatusHistory",
    "PlatformSetting",
]
