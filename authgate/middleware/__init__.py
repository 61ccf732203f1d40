"""Middleware package exports."""

from authgate.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
