"""Market data feed: top of book per token."""

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from pmm.config import Settings
from pmm.feeds.base import FeedSupervisor
from pmm.market_maker.types import FeedEvent, PriceUpdate, QuoteSnapshot
from pmm.utils.logging import get_logger, short_id

log = get_logger(__name__)

# Placeholder book the exchange reports for empty markets
SENTINEL_PAIRS = {(0.01, 0.99)}


@dataclass
class _TopOfBook:
    best_bid: Optional[float] = None
    best_ask: Optional[float] = None


def is_valid_quote(best_bid: Optional[float], best_ask: Optional[float]) -> bool:
    """Reject missing, out-of-range, crossed and placeholder quotes."""
    if best_bid is None or best_ask is None:
        return False
    if best_bid <= 0 or best_ask >= 1:
        return False
    if best_bid >= best_ask:
        return False
    if (round(best_bid, 4), round(best_ask, 4)) in SENTINEL_PAIRS:
        return False
    return True


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _best_levels(levels: Any, best: Callable) -> Optional[float]:
    prices = []
    for level in levels or []:
        price = _to_float(level.get("price") if isinstance(level, dict) else None)
        if price is not None:
            prices.append(price)
    return best(prices) if prices else None


class MarketFeed(FeedSupervisor):
    """
    Subscribes to a fixed set of token ids.

    Keeps a last-known-good snapshot per token; updates that fail
    validation are discarded and never replace it. Only changes of the
    validated top of book are forwarded as PriceUpdate events.
    """

    name = "market"

    def __init__(
        self,
        token_ids: list[str],
        queue: "asyncio.Queue[FeedEvent]",
        settings: Settings,
        clock: Callable[[], float] = time.time,
        connect: Optional[Callable[..., Any]] = None,
    ):
        super().__init__(settings.ws_market_url, queue, settings, clock=clock, connect=connect)
        self.token_ids = list(token_ids)
        self._raw: dict[str, _TopOfBook] = {t: _TopOfBook() for t in self.token_ids}
        self._tick_sizes: dict[str, float] = {t: settings.default_tick_size for t in self.token_ids}
        self.last_good: dict[str, QuoteSnapshot] = {}
        self.last_update: dict[str, float] = {}
        self.discarded = 0
        self._all_priced = asyncio.Event()

    async def subscribe(self, ws: Any) -> None:
        await ws.send(json.dumps({"type": "MARKET", "assets_ids": self.token_ids}))
        log.info("Market feed subscribed", tokens=len(self.token_ids))

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    async def handle_message(self, raw: str) -> None:
        try:
            msg = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            log.debug("Unparseable market message", data=str(raw)[:100])
            return
        events = msg if isinstance(msg, list) else [msg]
        for event in events:
            if isinstance(event, dict):
                await self._handle_event(event)

    async def _handle_event(self, event: dict) -> None:
        event_type = event.get("event_type")

        if event_type == "book":
            token_id = event.get("asset_id")
            bid = _best_levels(event.get("bids"), max)
            ask = _best_levels(event.get("asks"), min)
            tick = _to_float(event.get("tick_size"))
            if tick:
                self.set_tick_size(token_id, tick)
            await self._update(token_id, bid, ask)

        elif event_type == "price_change" or "price_changes" in event:
            for change in event.get("price_changes") or []:
                await self._update(
                    change.get("asset_id"),
                    _to_float(change.get("best_bid")),
                    _to_float(change.get("best_ask")),
                )

        elif event_type == "best_bid_ask":
            await self._update(
                event.get("asset_id"),
                _to_float(event.get("best_bid")),
                _to_float(event.get("best_ask")),
            )

        elif event_type == "tick_size_change":
            tick = _to_float(event.get("new_tick_size"))
            if tick:
                self.set_tick_size(event.get("asset_id"), tick)

    def set_tick_size(self, token_id: Optional[str], tick_size: float) -> None:
        if token_id not in self._tick_sizes or tick_size <= 0:
            return
        if self._tick_sizes[token_id] != tick_size:
            log.info("Tick size changed", token_id=short_id(token_id), tick_size=tick_size)
        self._tick_sizes[token_id] = tick_size

    async def _update(self, token_id: Optional[str], bid: Optional[float], ask: Optional[float]) -> None:
        if token_id not in self._raw:
            return
        now = self._clock()
        self.last_update[token_id] = now

        # Partial updates carry one side; merge with the last raw values.
        raw = self._raw[token_id]
        candidate_bid = bid if bid is not None else raw.best_bid
        candidate_ask = ask if ask is not None else raw.best_ask

        if not is_valid_quote(candidate_bid, candidate_ask):
            self.discarded += 1
            log.debug(
                "Discarded invalid quote",
                token_id=short_id(token_id),
                best_bid=candidate_bid,
                best_ask=candidate_ask,
            )
            return

        raw.best_bid, raw.best_ask = candidate_bid, candidate_ask
        snapshot = QuoteSnapshot(
            best_bid=candidate_bid,
            best_ask=candidate_ask,
            tick_size=self._tick_sizes[token_id],
            timestamp=now,
        )
        previous = self.last_good.get(token_id)
        self.last_good[token_id] = snapshot
        if len(self.last_good) == len(self.token_ids):
            self._all_priced.set()

        if (
            previous is not None
            and previous.best_bid == snapshot.best_bid
            and previous.best_ask == snapshot.best_ask
            and previous.tick_size == snapshot.tick_size
        ):
            return
        await self.emit(PriceUpdate(token_id=token_id, snapshot=snapshot))

    async def seed(self, token_id: str, snapshot: QuoteSnapshot) -> bool:
        """Inject a snapshot from another source (REST book) through validation."""
        if snapshot.tick_size:
            self.set_tick_size(token_id, snapshot.tick_size)
        before = self.discarded
        await self._update(token_id, snapshot.best_bid, snapshot.best_ask)
        return self.discarded == before and token_id in self.last_good

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def wait_for_prices(self, timeout: float) -> bool:
        """Wait until every token has a valid snapshot. False on timeout."""
        try:
            await asyncio.wait_for(self._all_priced.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def missing_tokens(self) -> list[str]:
        return [t for t in self.token_ids if t not in self.last_good]

    def get_snapshot(self, token_id: str) -> Optional[QuoteSnapshot]:
        return self.last_good.get(token_id)

    def token_is_stale(self, token_id: str, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        last = self.last_update.get(token_id)
        return last is None or now - last > self.stale_after
