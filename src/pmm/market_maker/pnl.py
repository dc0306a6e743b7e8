"""Fill-based PnL tracking."""

import sqlite3
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional

from pmm.data.repositories import FillRepository
from pmm.market_maker.types import Fill, Side
from pmm.utils.logging import get_logger, short_id

log = get_logger(__name__)


@dataclass
class TokenPnL:
    """Realized PnL for one token."""

    token_id: str
    realized: float = 0.0
    fees: float = 0.0
    trade_count: int = 0
    buy_volume: float = 0.0
    sell_volume: float = 0.0
    buy_notional: float = 0.0
    sell_notional: float = 0.0

    @property
    def avg_buy_price(self) -> float:
        return self.buy_notional / self.buy_volume if self.buy_volume else 0.0

    @property
    def avg_sell_price(self) -> float:
        return self.sell_notional / self.sell_volume if self.sell_volume else 0.0


class PnLTracker:
    """
    Records fills and derives realized PnL.

    Realized PnL per token is ``sell notional - buy notional - fees``; it
    ignores the mark of open inventory.
    """

    def __init__(self, market_slug: Optional[str] = None, persist: bool = True):
        self.market_slug = market_slug
        self.persist = persist
        self._fills: list[Fill] = []
        self._keys: set[str] = set()

    async def load(self, token_ids: Optional[list[str]] = None) -> int:
        """Load stored fills for these tokens."""
        if not self.persist:
            return 0
        try:
            rows = await FillRepository.get_all(token_ids)
        except sqlite3.Error as e:
            log.error("Failed to load fill history", error=str(e))
            return 0
        for row in rows:
            if row["fill_key"] in self._keys:
                continue
            self._keys.add(row["fill_key"])
            self._fills.append(
                Fill(
                    order_id=row["order_id"],
                    token_id=row["token_id"],
                    side=Side(row["side"]),
                    price=row["price"],
                    size=row["size"],
                    fee=row["fee"],
                    timestamp=row["timestamp"],
                    trade_id=row["fill_key"],
                )
            )
        log.info("Fill history loaded", count=len(rows))
        return len(rows)

    async def record(self, fill: Fill) -> bool:
        """Record a fill once. Returns False for a duplicate."""
        key = fill.fill_key
        if key in self._keys:
            return False
        self._keys.add(key)
        self._fills.append(fill)

        log.info(
            "Fill recorded",
            token_id=short_id(fill.token_id),
            side=fill.side.value,
            price=round(fill.price, 4),
            size=round(fill.size, 2),
            notional=round(fill.notional, 4),
            fee=round(fill.fee, 6),
            order_id=short_id(fill.order_id, 16),
        )

        if self.persist:
            try:
                await FillRepository.insert(
                    fill_key=key,
                    order_id=fill.order_id,
                    token_id=fill.token_id,
                    side=fill.side.value,
                    price=fill.price,
                    size=fill.size,
                    fee=fill.fee,
                    timestamp=fill.timestamp,
                    market_slug=self.market_slug,
                )
            except sqlite3.Error as e:
                log.error("Failed to persist fill", fill_key=key[:40], error=str(e))
        return True

    @property
    def fills(self) -> list[Fill]:
        return list(self._fills)

    def realized_pnl(self) -> dict[str, TokenPnL]:
        return realized_pnl(self._fills)

    def spread_captured(self) -> float:
        return spread_captured(self._fills)

    def summary(self) -> dict:
        return pnl_summary(self._fills)


def realized_pnl(fills: list[Fill]) -> dict[str, TokenPnL]:
    by_token: dict[str, TokenPnL] = {}
    for fill in fills:
        pnl = by_token.setdefault(fill.token_id, TokenPnL(token_id=fill.token_id))
        pnl.trade_count += 1
        pnl.fees += fill.fee
        if fill.side == Side.BUY:
            pnl.buy_volume += fill.size
            pnl.buy_notional += fill.notional
        else:
            pnl.sell_volume += fill.size
            pnl.sell_notional += fill.notional
    for pnl in by_token.values():
        pnl.realized = pnl.sell_notional - pnl.buy_notional - pnl.fees
    return by_token


def spread_captured(fills: list[Fill]) -> float:
    """Average SELL - BUY price over consecutive BUY->SELL pairs per token."""
    by_token: dict[str, list[Fill]] = defaultdict(list)
    for fill in fills:
        by_token[fill.token_id].append(fill)

    total = 0.0
    pairs = 0
    for token_fills in by_token.values():
        last_buy: Optional[Fill] = None
        for fill in sorted(token_fills, key=lambda f: f.timestamp):
            if fill.side == Side.BUY:
                last_buy = fill
            elif last_buy is not None:
                total += fill.price - last_buy.price
                pairs += 1
                last_buy = None
    return total / pairs if pairs else 0.0


def pnl_summary(fills: list[Fill]) -> dict:
    per_token = realized_pnl(fills)
    return {
        "total_realized": round(sum(p.realized for p in per_token.values()), 6),
        "total_fees": round(sum(p.fees for p in per_token.values()), 6),
        "total_trades": sum(p.trade_count for p in per_token.values()),
        "avg_spread_captured": round(spread_captured(fills), 6),
        "tokens": len(per_token),
    }
