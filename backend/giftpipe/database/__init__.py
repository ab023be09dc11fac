"""
Database package initialization.

The package follows a modular structure:
- base: declarative base and common mixins
- connection: async engine and session management
- models: ORM models for orders, signals, auto-gifts and alerts
"""

__all__ = []
