"""Repository classes for database operations."""

import time
from typing import Any, Optional

from pmm.data.database import get_async_db, get_db
from pmm.utils.logging import get_logger

log = get_logger(__name__)


class InventoryRepository:
    """Synchronous repository for per-token positions.

    Writes are small single-row upserts, so they run inline right after the
    in-memory mutation without a suspension point in between.
    """

    @staticmethod
    def save(token_id: str, shares: float, updated_at: Optional[float] = None) -> None:
        """Upsert one position."""
        with get_db() as conn:
            conn.execute(
                """
                INSERT INTO inventory (token_id, shares, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(token_id) DO UPDATE SET
                    shares = excluded.shares,
                    updated_at = excluded.updated_at
                """,
                (token_id, shares, updated_at if updated_at is not None else time.time()),
            )

    @staticmethod
    def save_many(positions: dict[str, float]) -> None:
        """Upsert several positions in one transaction."""
        now = time.time()
        with get_db() as conn:
            conn.executemany(
                """
                INSERT INTO inventory (token_id, shares, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(token_id) DO UPDATE SET
                    shares = excluded.shares,
                    updated_at = excluded.updated_at
                """,
                [(token_id, shares, now) for token_id, shares in positions.items()],
            )

    @staticmethod
    def delete(token_id: str) -> None:
        """Remove one position."""
        with get_db() as conn:
            conn.execute("DELETE FROM inventory WHERE token_id = ?", (token_id,))

    @staticmethod
    def load_all() -> dict[str, float]:
        """Load every stored position."""
        with get_db() as conn:
            rows = conn.execute("SELECT token_id, shares FROM inventory").fetchall()
            return {row["token_id"]: row["shares"] for row in rows}


class FillRepository:
    """Async repository for fill records."""

    @staticmethod
    async def insert(
        fill_key: str,
        order_id: str,
        token_id: str,
        side: str,
        price: float,
        size: float,
        fee: float,
        timestamp: float,
        market_slug: Optional[str] = None,
    ) -> bool:
        """Insert a fill. Returns False if the fill key was already stored."""
        async with get_async_db() as conn:
            cursor = await conn.execute(
                """
                INSERT OR IGNORE INTO fills (
                    fill_key, order_id, token_id, side, price, size, fee,
                    timestamp, market_slug
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (fill_key, order_id, token_id, side, price, size, fee, timestamp, market_slug),
            )
            return cursor.rowcount > 0

    @staticmethod
    async def get_all(token_ids: Optional[list[str]] = None) -> list[dict[str, Any]]:
        """Get fills in time order, optionally restricted to some tokens."""
        async with get_async_db() as conn:
            query = "SELECT * FROM fills"
            params: list[Any] = []
            if token_ids:
                placeholders = ",".join("?" for _ in token_ids)
                query += f" WHERE token_id IN ({placeholders})"
                params.extend(token_ids)
            query += " ORDER BY timestamp ASC, id ASC"

            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    @staticmethod
    def get_all_sync() -> list[dict[str, Any]]:
        """Sync variant for the CLI status command."""
        with get_db() as conn:
            rows = conn.execute("SELECT * FROM fills ORDER BY timestamp ASC, id ASC").fetchall()
            return [dict(row) for row in rows]
