"""Edge caching reverse proxy."""

from .app import create_app

__all__ = ["create_app"]
