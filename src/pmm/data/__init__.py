"""Database module for pmm."""

from pmm.data.database import get_async_db, get_db, init_async_db, init_db, set_db_path
from pmm.data.repositories import FillRepository, InventoryRepository

__all__ = [
    "get_async_db",
    "get_db",
    "init_async_db",
    "init_db",
    "set_db_path",
    "FillRepository",
    "InventoryRepository",
]
