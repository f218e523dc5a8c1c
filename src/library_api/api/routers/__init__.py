"""HTTP routers, one per resource."""

from . import auth, books, borrowings, dashboard, health, users

__all__ = ["auth", "books", "borrowings", "dashboard", "health", "users"]
