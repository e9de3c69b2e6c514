"""Storage helpers for Cloudfiles."""

from .db import Database, ItemRecord

__all__ = ["Database", "ItemRecord"]
