"""
API v1 package initialization.
"""

from src.api.v1.admin import router as admin_router
from src.api.v1.orders import router as orders_router

__all__ = ["admin_router", "orders_router"]
