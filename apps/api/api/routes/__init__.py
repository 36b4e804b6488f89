"""API routes module."""

from . import health, library, player

__all__ = ["health", "library", "player"]
