"""HTTP layer for the connect service."""

from .app import create_app

__all__ = ["create_app"]
