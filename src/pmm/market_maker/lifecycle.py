"""Order lifecycle: placement, replacement, expiry, cancellation and fills.

Each (token, side) slot moves EMPTY -> PLACING -> LIVE and then to FILLED,
CANCELLED or IN_DOUBT. All mutations of the market store happen here or in
the reconciliation engine, on the event loop's single thread. Every await
is a point where the book, the store or the id ledger may have changed, so
the conditions that allowed a placement are checked again after it.
"""

import dataclasses
import time
from typing import Callable, Optional

from pmm.api.models import Market
from pmm.config import Settings
from pmm.executor.async_clob import (
    AsyncClobClient,
    AuthenticationError,
    ClobError,
    OrderRejectedError,
    RateLimitedError,
)
from pmm.market_maker.amounts import (
    calculate_max_size_with_inventory,
    calculate_safe_size,
    calculate_sell_size_shares,
    round_price,
    round_size,
)
from pmm.market_maker.builder import ClientOrderIdLedger, OrderBuilder
from pmm.market_maker.errors import DuplicateClientOrderIdError, MarketHaltedError, StaleDataError
from pmm.market_maker.inventory import InventoryLedger
from pmm.market_maker.pnl import PnLTracker
from pmm.market_maker.pricing import ParityCheck, QuoteEngine, anti_crossing_check, check_parity
from pmm.market_maker.solvency import SolvencyCheck, SolvencyGate
from pmm.market_maker.store import MarketStore
from pmm.market_maker.types import (
    ActiveOrder,
    Fill,
    OrderRequest,
    OrderStatusEvent,
    PlacementResult,
    PriceUpdate,
    QuoteSnapshot,
    Side,
    SlotState,
)
from pmm.utils.logging import get_logger, short_id

log = get_logger(__name__)

EPSILON = 1e-9


class OrderLifecycleManager:
    """Decides what to place, replace and cancel for one market."""

    def __init__(
        self,
        settings: Settings,
        market: Market,
        store: MarketStore,
        builder: OrderBuilder,
        ledger: ClientOrderIdLedger,
        clob: AsyncClobClient,
        inventory: InventoryLedger,
        solvency: SolvencyGate,
        pnl: PnLTracker,
        quote_engine: Optional[QuoteEngine] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.market = market
        self.store = store
        self.builder = builder
        self.ledger = ledger
        self.clob = clob
        self.inventory = inventory
        self.solvency = solvency
        self.pnl = pnl
        self.quote_engine = quote_engine or QuoteEngine(settings)
        self._clock = clock

        self.dry_run = settings.dry_run
        self.placement_cooldown = settings.placement_cooldown_ms / 1000
        self.replace_cooldown = settings.replace_cooldown_ms / 1000
        self.order_ttl = settings.order_ttl_ms / 1000

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def on_price_update(self, update: PriceUpdate) -> None:
        if update.token_id not in self.store:
            return
        self.store.state(update.token_id).snapshot = update.snapshot
        await self.requote(update.token_id)

    def parity(self) -> Optional[ParityCheck]:
        yes = self.store.snapshot(self.market.yes_token.token_id)
        no = self.store.snapshot(self.market.no_token.token_id)
        if yes is None or no is None:
            return None
        check = check_parity(yes.mid, no.mid, self.settings.parity_threshold)
        if not check.valid:
            log.debug("Parity breach", market=self.market.slug, warning=check.warning, bias=check.bias)
        return check

    # ------------------------------------------------------------------
    # Quoting
    # ------------------------------------------------------------------

    def replace_reason(self, order: ActiveOrder, snapshot: QuoteSnapshot) -> Optional[str]:
        """Why a resting order should be replaced, or None to keep it."""
        now = self._clock()
        if now - order.placed_at > self.order_ttl:
            return "ttl"
        if order.side == Side.BUY and (order.price < snapshot.best_bid or order.price >= snapshot.best_ask):
            return "not_best"
        if order.side == Side.SELL and (order.price > snapshot.best_ask or order.price <= snapshot.best_bid):
            return "not_best"
        if order.mid_at_placement is not None:
            if abs(snapshot.mid - order.mid_at_placement) > self.settings.price_change_threshold:
                return "mid_moved"
        return None

    async def requote(self, token_id: str, force: bool = False) -> None:
        """Bring both sides of one token in line with the current book."""
        state = self.store.state(token_id)
        if state.doubt is not None:
            log.debug("Requote skipped, orders in doubt", token_id=short_id(token_id))
            return
        snapshot = state.snapshot
        if snapshot is None:
            return

        plan = self.quote_engine.compute_quote(
            token_id, snapshot, self.inventory.get(token_id), self.parity()
        )
        force = force or state.force_requote
        state.force_requote = False

        for side, guard in ((Side.BUY, plan.bid), (Side.SELL, plan.ask)):
            existing = self.store.get_order(token_id, side)
            if existing is not None:
                reason = self.replace_reason(existing, snapshot)
                if reason is None:
                    continue
                now = self._clock()
                if now - state.last_replace.get(side, 0.0) < self.replace_cooldown:
                    log.debug(
                        "Replace skipped, cooldown",
                        token_id=short_id(token_id),
                        side=side.value,
                        reason=reason,
                    )
                    continue
                state.last_replace[side] = now
                if not await self.cancel(existing, reason):
                    continue

            if not guard.valid or guard.price is None:
                log.debug(
                    "No quote for side",
                    token_id=short_id(token_id),
                    side=side.value,
                    reason=guard.reason,
                )
                continue

            await self.place_quote(token_id, side, guard.price, bypass_cooldown=force)

    def _quote_size(self, token_id: str, side: Side, price: float) -> Optional[float]:
        s = self.settings
        if side == Side.BUY:
            return calculate_max_size_with_inventory(
                s.notional_per_order_usdc,
                price,
                self.inventory.get(token_id),
                s.max_inventory,
                s.min_size_shares,
                s.min_notional_usdc,
            )
        size = calculate_sell_size_shares(
            self.inventory.available_to_sell(token_id),
            price,
            s.max_sell_per_order_shares,
            s.min_size_shares,
            s.min_notional_usdc,
        )
        if size is None and s.allow_short:
            size = calculate_safe_size(s.notional_per_order_usdc, price, s.min_size_shares, s.min_notional_usdc)
        return size

    async def place_quote(
        self, token_id: str, side: Side, price: float, bypass_cooldown: bool = False
    ) -> PlacementResult:
        size = self._quote_size(token_id, side, price)
        if size is None:
            # Usually a SELL with nothing held; too frequent for info.
            log.debug("No size for quote", token_id=short_id(token_id), side=side.value, price=price)
            return PlacementResult(placed=False, reason="size_unavailable")
        if side == Side.BUY and not self.inventory.can_buy(token_id, size):
            return self._skip(token_id, side, price, size, "inventory_cap")
        if side == Side.SELL and not self.inventory.can_sell(token_id, size):
            return self._skip(token_id, side, price, size, "insufficient_inventory")

        request = self.builder.quote_request(token_id, side, price, size)
        return await self.submit(request, bypass_cooldown=bypass_cooldown)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def _skip(
        self, token_id: str, side: Side, price: Optional[float], size: Optional[float], reason: str, **extra
    ) -> PlacementResult:
        log.info(
            "Placement skipped",
            token_id=short_id(token_id),
            side=side.value,
            price=price,
            size=size,
            reason=reason,
            **extra,
        )
        return PlacementResult(placed=False, reason=reason, details=extra)

    def _admission_reason(
        self, request: OrderRequest, bypass_cooldown: bool, replacing: Optional[ActiveOrder] = None
    ) -> Optional[str]:
        """
        Why the request may not be placed now, or None.

        ``replacing`` is an order on the same side that will be cancelled
        first; its slot, count and notional do not count against the request.
        """
        state = self.store.state(request.token_id)
        slot = state.slot_state(request.side)
        if slot == SlotState.IN_DOUBT:
            return "in_doubt"
        if slot == SlotState.LIVE and (replacing is None or state.orders[request.side] is not replacing):
            return "slot_occupied"
        if self.ledger.is_placed(request.client_order_id):
            return "duplicate_client_order_id"
        count = self.store.order_count()
        at_risk = self.store.notional_at_risk()
        if replacing is not None:
            count -= 1
            at_risk -= replacing.notional
        if count >= self.settings.max_active_orders:
            return "max_active_orders"
        if at_risk + request.notional > self.settings.max_notional_at_risk_usdc:
            return "notional_ceiling"
        if not bypass_cooldown:
            last = state.last_placement.get(request.side)
            if last is not None and self._clock() - last < self.placement_cooldown:
                return "placement_cooldown"
        return None

    async def _check_solvency(self, request: OrderRequest, verify_onchain: bool = True) -> SolvencyCheck:
        if request.side == Side.BUY:
            return await self.solvency.check_buy(request.notional)
        return await self.solvency.check_sell(request.token_id, request.size, verify_onchain=verify_onchain)

    async def submit(
        self,
        request: OrderRequest,
        bypass_cooldown: bool = False,
        verify_onchain: bool = True,
    ) -> PlacementResult:
        """
        Place one order through solvency, anti-crossing and idempotency gates.

        A client order id reaches the exchange at most once. Transient and
        rate-limit failures skip this cycle; an auth failure halts the market.
        """
        token_id, side = request.token_id, request.side
        state = self.store.state(token_id)

        if side in state.placing:
            return self._skip(token_id, side, request.price, request.size, "placement_in_flight")
        reason = self._admission_reason(request, bypass_cooldown)
        if reason is not None:
            return self._skip(token_id, side, request.price, request.size, reason)

        state.placing.add(side)
        try:
            check = await self._check_solvency(request, verify_onchain)
            if not check.ok:
                return self._skip(token_id, side, request.price, request.size, check.reason or "solvency")

            latest = state.snapshot
            if latest is not None:
                safe_price = anti_crossing_check(side, request.price, latest)
                if safe_price is None:
                    return self._skip(
                        token_id, side, request.price, request.size, "would_cross",
                        best_bid=latest.best_bid, best_ask=latest.best_ask,
                    )
                if safe_price != request.price:
                    log.info(
                        "Price adjusted to avoid crossing",
                        token_id=short_id(token_id),
                        side=side.value,
                        original=request.price,
                        adjusted=safe_price,
                    )
                    request = dataclasses.replace(request, price=safe_price)

            # State may have moved during the solvency await.
            reason = self._admission_reason(request, bypass_cooldown=True)
            if reason is not None:
                return self._skip(token_id, side, request.price, request.size, reason)

            try:
                order_data = self.builder.build(request)
            except DuplicateClientOrderIdError:
                return self._skip(token_id, side, request.price, request.size, "duplicate_client_order_id")
            self.ledger.mark_placed(request.client_order_id)
            state.last_placement[side] = self._clock()

            if self.dry_run:
                order_id = f"dry-{request.client_order_id}"
                log.info(
                    "Dry run: would place order",
                    token_id=short_id(token_id),
                    side=side.value,
                    price=request.price,
                    size=request.size,
                )
            else:
                signed = await self.clob.sign_order(order_data, neg_risk=self.market.neg_risk)
                response = await self.clob.post_order(signed, request.order_type.value)
                order_id = response.get("orderID") or response.get("orderId")
                if not order_id:
                    log.error(
                        "Order response without id",
                        token_id=short_id(token_id),
                        side=side.value,
                        response=str(response)[:200],
                    )
                    return PlacementResult(placed=False, reason="no_order_id")

            self.ledger.confirm(request.client_order_id)
            order = ActiveOrder(
                order_id=order_id,
                token_id=token_id,
                side=side,
                price=request.price,
                size=request.size,
                client_order_id=request.client_order_id,
                placed_at=self._clock(),
                mid_at_placement=latest.mid if latest is not None else None,
            )
            existing = self.store.get_order(token_id, side)
            if existing is not None and existing.order_id != order_id:
                # Slot was filled (reconciliation adoption) while we awaited the post.
                log.warning(
                    "Slot taken during placement, cancelling new order",
                    token_id=short_id(token_id),
                    side=side.value,
                    order_id=short_id(order_id, 16),
                )
                await self.cancel_order_ids([order_id])
                return PlacementResult(placed=False, reason="slot_taken")
            self.store.set_order(order)

            log.info(
                "Order placed",
                token_id=short_id(token_id),
                side=side.value,
                price=request.price,
                size=request.size,
                order_id=short_id(order_id, 16),
                hedge=request.is_hedge,
            )
            return PlacementResult(placed=True, reason="placed", order=order)

        except AuthenticationError as e:
            log.error("Authentication rejected, halting market", market=self.market.slug, status=e.status)
            raise MarketHaltedError("authentication", self.market.slug) from e
        except RateLimitedError as e:
            return self._skip(token_id, side, request.price, request.size, "rate_limited", status=e.status)
        except OrderRejectedError as e:
            return self._skip(
                token_id, side, request.price, request.size, "rejected", status=e.status, error=str(e)[:200]
            )
        except ClobError as e:
            return self._skip(
                token_id, side, request.price, request.size, "transient_error", status=e.status, error=str(e)[:200]
            )
        finally:
            state.placing.discard(side)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_order_ids(self, order_ids: list[str]) -> bool:
        if self.dry_run or not order_ids:
            return True
        try:
            response = await self.clob.cancel_orders(order_ids)
        except AuthenticationError as e:
            raise MarketHaltedError("authentication", self.market.slug) from e
        except ClobError as e:
            log.warning("Cancel failed", count=len(order_ids), error=str(e)[:200], status=e.status)
            return False
        not_canceled = (response.get("not_canceled") if isinstance(response, dict) else None) or {}
        if not_canceled:
            # Already filled or cancelled on the exchange; nothing left to cancel.
            log.debug("Orders not cancelable", orders={short_id(k, 16): v for k, v in not_canceled.items()})
        return True

    def _drop(self, order: ActiveOrder, outcome: SlotState) -> None:
        current = self.store.get_order(order.token_id, order.side)
        if current is not None and current.order_id == order.order_id:
            self.store.clear_order(order.token_id, order.side, outcome)
        self.ledger.confirm(order.client_order_id)

    async def cancel(self, order: ActiveOrder, reason: str) -> bool:
        """Cancel one order and free its slot."""
        if not await self.cancel_order_ids([order.order_id]):
            return False
        self._drop(order, SlotState.CANCELLED)
        log.info(
            "Order cancelled",
            token_id=short_id(order.token_id),
            side=order.side.value,
            price=order.price,
            order_id=short_id(order.order_id, 16),
            reason=reason,
        )
        return True

    async def expire_orders(self) -> int:
        """Cancel orders older than the TTL."""
        now = self._clock()
        expired = [o for o in self.store.active_orders() if now - o.placed_at > self.order_ttl]
        count = 0
        for order in expired:
            if await self.cancel(order, "ttl"):
                count += 1
        return count

    async def cancel_all(self) -> int:
        """Cancel every order of this market, tracked or not."""
        orders = self.store.active_orders()
        if not await self.cancel_order_ids([o.order_id for o in orders]):
            return 0
        for order in orders:
            self._drop(order, SlotState.CANCELLED)
        if not self.dry_run:
            for token_id in self.store.token_ids:
                try:
                    await self.clob.cancel_market_orders(token_id)
                except ClobError as e:
                    log.warning("Cancel market orders failed", token_id=short_id(token_id), error=str(e)[:200])
        log.info("All market orders cancelled", market=self.market.slug, count=len(orders))
        return len(orders)

    # ------------------------------------------------------------------
    # User feed events
    # ------------------------------------------------------------------

    async def on_fill(self, fill: Fill) -> None:
        """Apply a fill: inventory, PnL, slot update, hedge, balance refresh."""
        if fill.token_id not in self.store:
            return
        if not self.inventory.apply_fill(fill):
            return
        await self.pnl.record(fill)
        self.solvency.mark_dirty()

        order = self.store.find_order(fill.order_id)
        if order is not None:
            # Reconciliation may already have counted this fill from the listing.
            order.applied_fills += fill.size
            order.filled_size = max(order.filled_size, order.applied_fills)
            if order.remaining <= EPSILON:
                self._drop(order, SlotState.FILLED)
                log.info(
                    "Order filled",
                    token_id=short_id(order.token_id),
                    side=order.side.value,
                    order_id=short_id(order.order_id, 16),
                )

        await self.hedge(fill)

        try:
            await self.solvency.refresh(force=True)
        except StaleDataError as e:
            log.warning("Balance refresh after fill failed", reason=str(e))

    async def hedge(self, fill: Fill) -> PlacementResult:
        """Same-size opposite order one tick better than the fill price."""
        snapshot = self.store.snapshot(fill.token_id)
        tick = snapshot.tick_size if snapshot else self.settings.default_tick_size
        side = fill.side.opposite
        raw = fill.price + tick if side == Side.SELL else fill.price - tick
        price = round_price(raw, tick)
        size = round_size(fill.size)

        if not 0 < price < 1:
            return self._skip(fill.token_id, side, price, size, "hedge_price_out_of_bounds")
        if size < self.settings.min_size_shares or price * size < self.settings.min_notional_usdc:
            return self._skip(fill.token_id, side, price, size, "hedge_below_minimum")

        request = self.builder.hedge_request(fill.token_id, side, price, size, fill.fill_key)
        return await self._submit_hedge(request)

    async def _submit_hedge(self, request: OrderRequest) -> PlacementResult:
        """
        Place a hedge, replacing any resting order on its side.

        The resting order is only cancelled once the hedge has passed every
        gate that does not depend on the cancel. Hedges for a token in doubt
        are queued and replayed when the doubt resolves.
        """
        token_id, side = request.token_id, request.side
        state = self.store.state(token_id)
        if state.doubt is not None:
            return self._queue_hedge(request)
        if side in state.placing:
            return self._skip(token_id, side, request.price, request.size, "placement_in_flight")

        reason = self._admission_reason(request, bypass_cooldown=True, replacing=state.orders.get(side))
        if reason is None:
            check = await self._check_solvency(request, verify_onchain=False)
            reason = None if check.ok else check.reason or "solvency"
        if reason is None and state.doubt is not None:
            return self._queue_hedge(request)
        if reason is None and state.snapshot is not None:
            if anti_crossing_check(side, request.price, state.snapshot) is None:
                reason = "would_cross"
        if reason is not None:
            return self._skip(token_id, side, request.price, request.size, reason, hedge=True)

        existing = state.orders.get(side)
        if existing is not None and not await self.cancel(existing, "hedge"):
            return self._skip(token_id, side, request.price, request.size, "slot_occupied", hedge=True)

        return await self.submit(request, bypass_cooldown=True, verify_onchain=False)

    def _queue_hedge(self, request: OrderRequest) -> PlacementResult:
        state = self.store.state(request.token_id)
        if all(r.client_order_id != request.client_order_id for r in state.pending_hedges):
            state.pending_hedges.append(request)
        return self._skip(
            request.token_id, request.side, request.price, request.size, "in_doubt_queued",
            queued=len(state.pending_hedges),
        )

    async def replay_hedges(self, token_id: str) -> int:
        """Submit hedges held back while the token was in doubt."""
        state = self.store.state(token_id)
        if state.doubt is not None or not state.pending_hedges:
            return 0
        pending, state.pending_hedges = state.pending_hedges, []
        log.info("Replaying queued hedges", token_id=short_id(token_id), count=len(pending))
        placed = 0
        for request in pending:
            result = await self._submit_hedge(request)
            if result.placed:
                placed += 1
        return placed

    def on_order_status(self, event: OrderStatusEvent) -> None:
        order = self.store.find_order(event.order_id)
        if order is None:
            return
        if event.status == "LIVE":
            self.ledger.confirm(order.client_order_id)
        elif event.status in {"CANCELLED", "CANCELED", "EXPIRED"}:
            self._drop(order, SlotState.CANCELLED)
            log.info(
                "Order cancelled by exchange",
                token_id=short_id(order.token_id),
                side=order.side.value,
                order_id=short_id(order.order_id, 16),
            )
        elif event.status == "MATCHED":
            matched = event.size_matched if event.size_matched is not None else order.size
            if matched >= order.size - EPSILON:
                self._drop(order, SlotState.FILLED)
