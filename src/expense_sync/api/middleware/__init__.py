"""API middleware package."""

from src.expense_sync.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
