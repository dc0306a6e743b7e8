"""Reconciliation of local order belief against the exchange listing."""

import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Optional

from pmm.config import Settings
from pmm.executor.async_clob import AsyncClobClient, AuthenticationError, ClobError
from pmm.market_maker.builder import ClientOrderIdLedger
from pmm.market_maker.errors import MarketHaltedError
from pmm.market_maker.lifecycle import OrderLifecycleManager
from pmm.market_maker.store import MarketStore, TokenState
from pmm.market_maker.types import ActiveOrder, DoubtRecord, Side, SlotState
from pmm.utils.logging import get_logger, short_id

log = get_logger(__name__)


@dataclass
class ReconcileReport:
    expired: int = 0
    dropped: int = 0
    adopted: int = 0
    doubts_opened: int = 0
    doubts_resolved: int = 0
    failed_tokens: int = 0


def parse_remote_order(raw: dict[str, Any], now: float) -> Optional[ActiveOrder]:
    """Convert one open-order listing entry into an ActiveOrder."""
    order_id = raw.get("id") or raw.get("orderID") or raw.get("order_id")
    token_id = raw.get("asset_id") or raw.get("asset") or raw.get("token_id")
    if not order_id or not token_id:
        return None
    try:
        side = Side(str(raw.get("side", "")).upper())
        price = float(raw["price"])
        size = float(raw.get("original_size") or raw.get("size") or 0)
        matched = float(raw.get("size_matched") or 0)
    except (KeyError, TypeError, ValueError):
        log.warning("Unparseable open order", order_id=short_id(str(order_id), 16))
        return None
    if size <= 0:
        return None

    placed_at = now
    created = raw.get("created_at")
    if created is not None:
        try:
            placed_at = float(created)
        except (TypeError, ValueError):
            pass

    return ActiveOrder(
        order_id=str(order_id),
        token_id=str(token_id),
        side=side,
        price=price,
        size=size,
        client_order_id=f"remote-{order_id}",
        placed_at=placed_at,
        filled_size=matched,
    )


class ReconciliationEngine:
    """
    Periodically diffs the store against the exchange's open orders.

    The exchange listing wins for tokens it reports orders for. A token
    that locally shows orders but is listed empty enters IN_DOUBT: the
    listing is re-queried once after a short delay, and a hard duration
    ceiling forces a cancel and requote if nothing resolves it.
    """

    def __init__(
        self,
        settings: Settings,
        store: MarketStore,
        lifecycle: OrderLifecycleManager,
        ledger: ClientOrderIdLedger,
        clob: AsyncClobClient,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.store = store
        self.lifecycle = lifecycle
        self.ledger = ledger
        self.clob = clob
        self._clock = clock
        self.requery_delay = settings.doubt_requery_delay_ms / 1000
        self.max_doubt_duration = settings.doubt_max_duration_ms / 1000
        self.resolved: deque[DoubtRecord] = deque(maxlen=100)

    async def _fetch(self, token_id: str) -> Optional[list[ActiveOrder]]:
        try:
            raw_orders = await self.clob.get_open_orders(asset_id=token_id)
        except AuthenticationError as e:
            raise MarketHaltedError("authentication", self.lifecycle.market.slug) from e
        except ClobError as e:
            log.warning(
                "Open order listing failed",
                token_id=short_id(token_id),
                error=str(e)[:200],
                status=e.status,
            )
            return None
        now = self._clock()
        orders = []
        for raw in raw_orders:
            order = parse_remote_order(raw, now)
            if order is not None and order.token_id == token_id:
                orders.append(order)
        return orders

    async def run(self) -> ReconcileReport:
        """One full reconciliation pass."""
        report = ReconcileReport()
        report.expired = await self.lifecycle.expire_orders()
        if self.settings.dry_run:
            # Dry-run orders never reach the exchange listing.
            return report

        for token_id in self.store.token_ids:
            if self.store.in_doubt(token_id):
                continue
            remote = await self._fetch(token_id)
            if remote is None:
                report.failed_tokens += 1
                continue
            # The listing await may have raced a doubt transition.
            if self.store.in_doubt(token_id):
                continue

            local = self.store.active_orders(token_id)
            if local and not remote:
                self._enter_doubt(token_id, local)
                report.doubts_opened += 1
                continue

            dropped, adopted = await self._converge(token_id, remote)
            report.dropped += dropped
            report.adopted += adopted

        report.doubts_resolved = await self.process_doubts()

        log.info(
            "Reconciliation complete",
            market=self.lifecycle.market.slug,
            expired=report.expired,
            dropped=report.dropped,
            adopted=report.adopted,
            doubts_opened=report.doubts_opened,
            doubts_resolved=report.doubts_resolved,
        )
        return report

    async def _converge(self, token_id: str, remote: list[ActiveOrder]) -> tuple[int, int]:
        """Make the token's slots equal the remote listing (one order per side)."""
        remote_by_id = {o.order_id: o for o in remote}
        dropped = 0
        for order in self.store.active_orders(token_id):
            if order.order_id in remote_by_id:
                order.filled_size = max(order.filled_size, remote_by_id[order.order_id].filled_size)
                continue
            self.store.clear_order(token_id, order.side, SlotState.CANCELLED)
            self.ledger.confirm(order.client_order_id)
            dropped += 1
            log.info(
                "Order gone from exchange, dropped",
                token_id=short_id(token_id),
                side=order.side.value,
                order_id=short_id(order.order_id, 16),
            )

        adopted = 0
        extras: list[ActiveOrder] = []
        for order in remote:
            current = self.store.get_order(token_id, order.side)
            if current is not None:
                if current.order_id != order.order_id:
                    extras.append(order)
                continue
            if order.side in self.store.state(token_id).placing:
                # Its ack is in flight; the placement records it.
                continue
            snapshot = self.store.snapshot(token_id)
            order.mid_at_placement = snapshot.mid if snapshot else None
            self.store.set_order(order)
            adopted += 1
            log.info(
                "Adopted untracked exchange order",
                token_id=short_id(token_id),
                side=order.side.value,
                price=order.price,
                size=order.size,
                order_id=short_id(order.order_id, 16),
            )

        if extras:
            log.warning(
                "Extra orders on an occupied side, cancelling",
                token_id=short_id(token_id),
                count=len(extras),
            )
            await self.lifecycle.cancel_order_ids([o.order_id for o in extras])
        return dropped, adopted

    # ------------------------------------------------------------------
    # Orders in doubt
    # ------------------------------------------------------------------

    def _enter_doubt(self, token_id: str, local: list[ActiveOrder]) -> None:
        now = self._clock()
        record = DoubtRecord(
            token_id=token_id,
            original_orders=list(local),
            start_time=now,
            requery_at=now + self.requery_delay,
        )
        state = self.store.state(token_id)
        state.doubt = record
        self.ledger.unconfirm([o.client_order_id for o in local])
        for order in local:
            self.store.clear_order(token_id, order.side, SlotState.IN_DOUBT)
        log.warning(
            "Exchange lists no orders for token with live orders, entering doubt",
            token_id=short_id(token_id),
            orders=[short_id(o.order_id, 16) for o in local],
            requery_in_s=self.requery_delay,
        )

    def _resolve(self, record: DoubtRecord, resolution: str) -> None:
        record.resolution = resolution
        state = self.store.state(record.token_id)
        if state.doubt is record:
            state.doubt = None
        for side, outcome in list(state.last_outcome.items()):
            if outcome == SlotState.IN_DOUBT:
                state.last_outcome[side] = SlotState.CANCELLED
        self.resolved.append(record)
        log.info(
            "Doubt resolved",
            token_id=short_id(record.token_id),
            resolution=resolution,
            duration_s=round(self._clock() - record.start_time, 2),
        )

    async def _cancel_and_requote(self, record: DoubtRecord, resolution: str) -> None:
        await self.lifecycle.cancel_order_ids([o.order_id for o in record.original_orders])
        for order in record.original_orders:
            self.ledger.confirm(order.client_order_id)
        record.force_quote_triggered = True
        self._resolve(record, resolution)
        await self.lifecycle.replay_hedges(record.token_id)
        self.store.state(record.token_id).force_requote = True
        await self.lifecycle.requote(record.token_id, force=True)

    async def process_doubts(self) -> int:
        """Re-query due doubts and apply the duration circuit breaker."""
        resolved = 0
        for state in list(self.store):
            record = state.doubt
            # Another pass (timer or reconcile run) already holds this record.
            if record is None or record.in_progress:
                continue
            record.in_progress = True
            try:
                if await self._process_doubt(state, record):
                    resolved += 1
            finally:
                record.in_progress = False
        return resolved

    async def _process_doubt(self, state: TokenState, record: DoubtRecord) -> bool:
        now = self._clock()
        if now - record.start_time >= self.max_doubt_duration:
            log.warning(
                "Doubt exceeded maximum duration, forcing requote",
                token_id=short_id(record.token_id),
                elapsed_s=round(now - record.start_time, 2),
            )
            await self._cancel_and_requote(record, "circuit_breaker")
            return True

        if now < record.requery_at:
            return False

        remote = await self._fetch(record.token_id)
        if state.doubt is not record:
            return False
        if remote is None:
            record.requery_at = self._clock() + self.requery_delay
            return False

        if remote:
            self._restore(record, remote)
            self._resolve(record, "api_found_orders")
            await self.lifecycle.replay_hedges(record.token_id)
        else:
            await self._cancel_and_requote(record, "cancelled_and_requoted")
        return True

    def _restore(self, record: DoubtRecord, remote: list[ActiveOrder]) -> None:
        originals = {o.order_id: o for o in record.original_orders}
        for order in remote:
            if self.store.get_order(record.token_id, order.side) is not None:
                continue
            original = originals.get(order.order_id)
            if original is not None:
                original.filled_size = max(original.filled_size, order.filled_size)
                order = original
            self.store.set_order(order)
            self.ledger.confirm(order.client_order_id)
            log.info(
                "Order restored from exchange",
                token_id=short_id(record.token_id),
                side=order.side.value,
                order_id=short_id(order.order_id, 16),
            )
