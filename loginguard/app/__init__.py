"""FastAPI application package for the login guard service."""

from .logging import setup_logging

setup_logging()

__all__ = ["setup_logging"]
