"""
Database package initialization.

The package is split into:
- base: declarative base and shared column mixins
- connection: async engine, session factory and FastAPI session dependency
- models: ORM models for orders, their history and ledger, and platform settings
"""

__all__ = []
