"""Persistence layer."""

from bourse.storage.database import Database

__all__ = ["Database"]
