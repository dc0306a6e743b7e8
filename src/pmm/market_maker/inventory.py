"""Outcome-token positions: fill-driven counts backed by on-chain reads."""

import sqlite3
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

from pmm.config import Settings
from pmm.data.repositories import InventoryRepository
from pmm.executor.chain import ChainReader
from pmm.market_maker.errors import StaleDataError
from pmm.market_maker.types import Fill, Side
from pmm.utils.logging import get_logger, short_id

log = get_logger(__name__)

T = TypeVar("T")

# Fill keys remembered for deduplication
MAX_REMEMBERED_FILLS = 10_000


@dataclass
class CachedValue(Generic[T]):
    """A value read from a slow source, tagged with when it was read."""

    value: T
    fetched_at: float

    def age(self, now: float) -> float:
        return now - self.fetched_at


class InventoryLedger:
    """
    Tracks signed share positions per outcome token.

    Fills are the fast path; periodic on-chain reads overwrite the local
    count. Every mutation is written through to SQLite.
    """

    def __init__(
        self,
        settings: Settings,
        chain: Optional[ChainReader] = None,
        clock: Callable[[], float] = time.time,
        persist: bool = True,
    ):
        self.settings = settings
        self.chain = chain
        self._clock = clock
        self.persist = persist
        self.max_inventory = settings.max_inventory
        self.allow_short = settings.allow_short
        self.cache_ttl = settings.onchain_cache_ttl_ms / 1000
        self.stale_ceiling = settings.onchain_stale_ceiling_ms / 1000

        self._positions: dict[str, float] = {}
        self._onchain: dict[str, CachedValue[float]] = {}
        self._applied_fills: "OrderedDict[str, None]" = OrderedDict()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self, token_ids: Optional[list[str]] = None) -> dict[str, float]:
        """Restore positions saved before a restart."""
        if not self.persist:
            return dict(self._positions)
        try:
            stored = InventoryRepository.load_all()
        except sqlite3.Error as e:
            log.error("Failed to load inventory", error=str(e))
            return {}
        for token_id, shares in stored.items():
            if token_ids is None or token_id in token_ids:
                self._positions[token_id] = shares
        log.info("Inventory loaded", tokens=len(self._positions))
        return dict(self._positions)

    def _persist(self, token_id: str) -> None:
        if not self.persist:
            return
        try:
            InventoryRepository.save(token_id, self._positions.get(token_id, 0.0), self._clock())
        except sqlite3.Error as e:
            log.error("Failed to persist inventory", token_id=short_id(token_id), error=str(e))

    def persist_all(self) -> None:
        if not self.persist or not self._positions:
            return
        try:
            InventoryRepository.save_many(self._positions)
        except sqlite3.Error as e:
            log.error("Failed to persist inventory", error=str(e))

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def get(self, token_id: str) -> float:
        return self._positions.get(token_id, 0.0)

    def positions(self) -> dict[str, float]:
        return dict(self._positions)

    def apply_fill(self, fill: Fill) -> bool:
        """
        Apply a fill to the position. Returns False for a fill already applied.
        """
        key = fill.fill_key
        if key in self._applied_fills:
            log.debug("Duplicate fill ignored", fill_key=key[:40])
            return False
        self._applied_fills[key] = None
        if len(self._applied_fills) > MAX_REMEMBERED_FILLS:
            self._applied_fills.popitem(last=False)

        delta = fill.size if fill.side == Side.BUY else -fill.size
        previous = self.get(fill.token_id)
        self._positions[fill.token_id] = previous + delta
        self._persist(fill.token_id)

        log.info(
            "Inventory updated from fill",
            token_id=short_id(fill.token_id),
            side=fill.side.value,
            size=fill.size,
            previous=round(previous, 4),
            current=round(self._positions[fill.token_id], 4),
        )
        return True

    def set_position(self, token_id: str, shares: float, source: str = "manual") -> None:
        """Overwrite a position (on-chain resync is the source of truth)."""
        previous = self.get(token_id)
        self._positions[token_id] = shares
        self._persist(token_id)
        if abs(previous - shares) > 1e-9:
            log.info(
                "Inventory overwritten",
                token_id=short_id(token_id),
                previous=round(previous, 4),
                current=round(shares, 4),
                source=source,
            )

    def can_buy(self, token_id: str, size: float) -> bool:
        """Projected position stays under the cap, or we are short."""
        current = self.get(token_id)
        return current + size <= self.max_inventory or current < 0

    def can_sell(self, token_id: str, size: float) -> bool:
        """Held shares cover the sell (or, with shorting on, the short stays capped)."""
        current = self.get(token_id)
        if current >= size:
            return True
        return self.allow_short and current - size >= -self.max_inventory

    def available_to_sell(self, token_id: str) -> float:
        return max(self.get(token_id), 0.0)

    # ------------------------------------------------------------------
    # On-chain source of truth
    # ------------------------------------------------------------------

    async def onchain_balance(self, token_id: str, force: bool = False) -> float:
        """
        On-chain share balance, served from cache while fresh.

        On a failed read the last good value is used as long as it is under
        the staleness ceiling; past it StaleDataError is raised.
        """
        now = self._clock()
        cached = self._onchain.get(token_id)
        if cached is not None and not force and cached.age(now) <= self.cache_ttl:
            return cached.value

        if self.chain is None:
            raise StaleDataError(f"onchain balance {short_id(token_id)}", float("inf"), self.stale_ceiling)

        try:
            value = await self.chain.token_balance(token_id)
        except Exception as e:
            if cached is not None and cached.age(now) <= self.stale_ceiling:
                log.warning(
                    "On-chain read failed, using cached balance",
                    token_id=short_id(token_id),
                    age_s=round(cached.age(now), 1),
                    error=str(e) or type(e).__name__,
                )
                return cached.value
            age = cached.age(now) if cached is not None else float("inf")
            raise StaleDataError(f"onchain balance {short_id(token_id)}", age, self.stale_ceiling) from e

        self._onchain[token_id] = CachedValue(value=value, fetched_at=self._clock())
        return value

    async def resync(self, token_ids: list[str]) -> dict[str, float]:
        """Overwrite local positions with fresh on-chain balances."""
        synced: dict[str, float] = {}
        for token_id in token_ids:
            try:
                balance = await self.onchain_balance(token_id, force=True)
            except StaleDataError as e:
                log.warning("Inventory resync skipped", token_id=short_id(token_id), reason=str(e))
                continue
            self.set_position(token_id, balance, source="onchain")
            synced[token_id] = balance
        return synced

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def cleanup(self) -> int:
        """Drop negligible positions."""
        negligible = [
            token_id for token_id, shares in self._positions.items()
            if abs(shares) < self.settings.min_inventory_cleanup
        ]
        for token_id in negligible:
            del self._positions[token_id]
            if self.persist:
                try:
                    InventoryRepository.delete(token_id)
                except sqlite3.Error as e:
                    log.error("Failed to delete inventory row", token_id=short_id(token_id), error=str(e))
        if negligible:
            log.info("Inventory cleanup completed", cleaned=len(negligible))
        return len(negligible)

    def summary(self) -> dict:
        long_positions = {t: s for t, s in self._positions.items() if s > 0}
        short_positions = {t: s for t, s in self._positions.items() if s < 0}
        return {
            "tokens": len(self._positions),
            "long_count": len(long_positions),
            "short_count": len(short_positions),
            "total_long": round(sum(long_positions.values()), 4),
            "total_short": round(sum(short_positions.values()), 4),
            "positions": {short_id(t): round(s, 4) for t, s in self._positions.items()},
        }
