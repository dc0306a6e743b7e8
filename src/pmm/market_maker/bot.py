"""Per-market orchestration: event channel, timers, health and shutdown."""

import asyncio
import signal
import time
from typing import Awaitable, Callable, Optional

from pmm.api.gamma import GammaClient
from pmm.api.models import Market
from pmm.config import Settings, get_settings
from pmm.data.database import close_async_db, init_async_db, init_db, set_db_path
from pmm.executor.async_clob import AsyncClobClient, ClobError, create_async_clob_client
from pmm.executor.chain import ChainReader
from pmm.executor.signer import ZERO_ADDRESS, OrderSigner
from pmm.feeds.base import FeedSupervisor
from pmm.feeds.market import MarketFeed
from pmm.feeds.user import UserFeed
from pmm.market_maker.builder import ClientOrderIdLedger, OrderBuilder
from pmm.market_maker.errors import MarketHaltedError
from pmm.market_maker.inventory import InventoryLedger
from pmm.market_maker.lifecycle import OrderLifecycleManager
from pmm.market_maker.pnl import PnLTracker
from pmm.market_maker.reconcile import ReconciliationEngine
from pmm.market_maker.solvency import SolvencyGate
from pmm.market_maker.store import MarketStore
from pmm.market_maker.types import FeedEvent, FeedStatus, Fill, OrderStatusEvent, PriceUpdate, QuoteSnapshot
from pmm.utils.logging import get_logger, setup_logging, short_id

log = get_logger(__name__)


class MarketMakerBot:
    """
    Market maker for one binary market.

    Feeds push typed events onto a queue drained by a single consumer
    task; periodic tasks run on their own intervals. Both only touch
    state through the lifecycle manager, ledger and reconciliation engine
    owned by this instance.
    """

    def __init__(
        self,
        market: Market,
        settings: Optional[Settings] = None,
        clob: Optional[AsyncClobClient] = None,
        chain: Optional[ChainReader] = None,
        market_feed: Optional[FeedSupervisor] = None,
        user_feed: Optional[FeedSupervisor] = None,
        clock: Callable[[], float] = time.time,
        persist: bool = True,
    ):
        self.settings = settings or get_settings()
        self.market = market
        self.clob = clob
        self.chain = chain
        self._clock = clock

        self.queue: "asyncio.Queue[FeedEvent]" = asyncio.Queue()
        self.store = MarketStore(market.token_ids)
        self.ids = ClientOrderIdLedger(clock)

        maker, signer_address = self._addresses()
        self.builder = OrderBuilder(
            self.ids, maker, signer_address, self.settings.signature_type, clock=clock
        )
        self.inventory = InventoryLedger(self.settings, chain, clock=clock, persist=persist)
        self.solvency = SolvencyGate(self.settings, clob, chain, self.inventory, clock=clock)
        self.pnl = PnLTracker(market.slug, persist=persist)
        self.lifecycle = OrderLifecycleManager(
            self.settings,
            market,
            self.store,
            self.builder,
            self.ids,
            clob,
            self.inventory,
            self.solvency,
            self.pnl,
            clock=clock,
        )
        self.reconciler = ReconciliationEngine(
            self.settings, self.store, self.lifecycle, self.ids, clob, clock=clock
        )

        self.market_feed = market_feed or MarketFeed(market.token_ids, self.queue, self.settings, clock=clock)
        if user_feed is None and self.settings.poly_api_key and self.settings.poly_api_secret:
            user_feed = UserFeed(
                self.queue,
                self.settings,
                condition_ids=[market.condition_id],
                address=signer_address,
                clock=clock,
            )
        self.user_feed = user_feed

        self.halt_reason: Optional[str] = None
        self._feed_tasks: list[asyncio.Task] = []
        self._tasks: list[asyncio.Task] = []
        self._stop_task: Optional[asyncio.Task] = None
        self._stopping = False
        self._stopped = asyncio.Event()

    def _addresses(self) -> tuple[str, str]:
        if self.clob is not None:
            return self.clob.signer.funder, self.clob.signer.address
        signer = self.settings.wallet_address or ZERO_ADDRESS
        return self.settings.proxy_address or signer, signer

    @property
    def feeds(self) -> list[FeedSupervisor]:
        return [f for f in (self.market_feed, self.user_feed) if f is not None]

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Restore state, connect feeds, start the consumer and timers."""
        token_ids = self.market.token_ids
        log.info(
            "Starting market maker",
            market=self.market.slug,
            question=self.market.question[:60],
            dry_run=self.settings.dry_run,
        )

        self.inventory.load(token_ids)
        await self.pnl.load(token_ids)
        if self.chain is not None:
            await self.inventory.resync(token_ids)
            await self.solvency.ensure_usdc_allowance()

        for feed in self.feeds:
            self._feed_tasks.append(asyncio.create_task(feed.run(), name=f"{self.market.slug}-{feed.name}"))

        if isinstance(self.market_feed, MarketFeed):
            timeout = self.settings.first_price_timeout_seconds
            if not await self.market_feed.wait_for_prices(timeout):
                log.warning(
                    "No feed prices before timeout, using order book snapshots",
                    market=self.market.slug,
                    missing=len(self.market_feed.missing_tokens()),
                )
                await self._seed_from_order_books()

        if not self.settings.dry_run and self.clob is not None:
            await self.reconciler.run()
        if self._stopping:
            return

        s = self.settings
        self._tasks = [
            asyncio.create_task(self._consume(), name=f"{self.market.slug}-consumer"),
            self._every("reconcile", s.reconcile_interval_ms, self.reconciler.run),
            self._every("doubts", s.doubt_requery_delay_ms, self.reconciler.process_doubts),
            self._every("allowance", s.allowance_check_cooldown_ms, self.solvency.periodic_check),
            self._every("health", s.health_check_interval_ms, self.check_health),
            self._every("metrics", s.metrics_log_interval_ms, self.log_metrics),
            self._every("id_cleanup", s.id_cleanup_interval_ms, self.cleanup),
        ]
        if self.chain is not None:
            self._tasks.append(
                self._every("inventory_resync", s.inventory_resync_interval_ms, self.resync_inventory)
            )
        log.info("Market maker started", market=self.market.slug, timers=len(self._tasks) - 1)

    async def _seed_from_order_books(self) -> None:
        if self.clob is None or not isinstance(self.market_feed, MarketFeed):
            log.warning("No exchange client for order book fallback", market=self.market.slug)
            return
        for token_id in self.market_feed.missing_tokens():
            try:
                book = await self.clob.get_order_book(token_id)
            except ClobError as e:
                log.warning("Order book fallback failed", token_id=short_id(token_id), error=str(e)[:200])
                continue
            if book.best_bid is None or book.best_ask is None:
                log.warning("Order book fallback has an empty side", token_id=short_id(token_id))
                continue
            snapshot = QuoteSnapshot(
                best_bid=float(book.best_bid),
                best_ask=float(book.best_ask),
                tick_size=float(book.tick_size) if book.tick_size else self.settings.default_tick_size,
                timestamp=self._clock(),
            )
            if not await self.market_feed.seed(token_id, snapshot):
                log.warning(
                    "Order book fallback rejected",
                    token_id=short_id(token_id),
                    best_bid=snapshot.best_bid,
                    best_ask=snapshot.best_ask,
                )

    # ------------------------------------------------------------------
    # Event channel
    # ------------------------------------------------------------------

    async def dispatch(self, event: FeedEvent) -> None:
        if isinstance(event, PriceUpdate):
            await self.lifecycle.on_price_update(event)
        elif isinstance(event, Fill):
            await self.lifecycle.on_fill(event)
        elif isinstance(event, OrderStatusEvent):
            self.lifecycle.on_order_status(event)
        elif isinstance(event, FeedStatus):
            await self._on_feed_status(event)

    async def _on_feed_status(self, status: FeedStatus) -> None:
        if status.unrecoverable:
            log.error("Feed unrecoverable, stopping market", market=self.market.slug, feed=status.feed)
            self.request_stop(f"feed_unrecoverable:{status.feed}")
        elif status.up and status.reconnected and status.feed == "user":
            # Fills missed while disconnected are not replayed.
            log.info("User feed reconnected, reconciling", market=self.market.slug)
            await self.reconciler.run()
        elif not status.up:
            log.warning("Feed down", market=self.market.slug, feed=status.feed, reason=status.reason)

    async def _consume(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                await self.dispatch(event)
            except MarketHaltedError as e:
                self.request_stop(f"halted:{e.reason}")
                return
            except Exception as e:
                log.error(
                    "Event handling failed",
                    market=self.market.slug,
                    event=type(event).__name__,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                self.queue.task_done()

    def _every(self, name: str, interval_ms: int, fn: Callable[[], Awaitable]) -> asyncio.Task:
        async def loop() -> None:
            interval = interval_ms / 1000
            while True:
                await asyncio.sleep(interval)
                try:
                    await fn()
                except MarketHaltedError as e:
                    self.request_stop(f"halted:{e.reason}")
                    return
                except Exception as e:
                    log.error("Periodic task failed", task=name, error=str(e), exc_info=True)

        return asyncio.create_task(loop(), name=f"{self.market.slug}-{name}")

    # ------------------------------------------------------------------
    # Periodic tasks
    # ------------------------------------------------------------------

    async def check_health(self) -> bool:
        """Stop the market if every feed is stale or one is unrecoverable."""
        now = self._clock()
        feeds = self.feeds
        unrecoverable = [f.name for f in feeds if f.unrecoverable]
        stale = [f.name for f in feeds if f.is_stale(now)]

        if unrecoverable:
            self.request_stop(f"feed_unrecoverable:{','.join(unrecoverable)}")
            return False
        if feeds and len(stale) == len(feeds):
            log.error("All feeds stale, stopping market", market=self.market.slug, feeds=stale)
            self.request_stop("feeds_stale")
            return False
        if stale:
            log.warning("Feed stale", market=self.market.slug, feeds=stale)
        return True

    async def resync_inventory(self) -> None:
        await self.inventory.resync(self.market.token_ids)

    async def cleanup(self) -> None:
        evicted = self.ids.cleanup(self.settings.id_cleanup_interval_ms / 1000)
        cleaned = self.inventory.cleanup()
        log.debug("Housekeeping", market=self.market.slug, ids_evicted=evicted, positions_cleaned=cleaned)

    async def log_metrics(self) -> None:
        log.info(
            "Market maker metrics",
            market=self.market.slug,
            open_orders=self.store.order_count(),
            notional_at_risk=round(self.store.notional_at_risk(), 4),
            pnl=self.pnl.summary(),
            inventory=self.inventory.summary(),
            solvency=self.solvency.summary(),
            feeds=[f.get_stats() for f in self.feeds],
        )

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def request_stop(self, reason: str) -> None:
        """Schedule shutdown from inside one of this bot's own tasks."""
        if self._stopping or self._stop_task is not None:
            return
        self.halt_reason = reason
        self._stop_task = asyncio.create_task(self.stop(reason))

    async def stop(self, reason: str = "requested") -> None:
        """Graceful shutdown: timers, orders, inventory, summary, feeds."""
        if self._stopping:
            await self._stopped.wait()
            return
        self._stopping = True
        if self.halt_reason is None:
            self.halt_reason = reason
        log.info("Stopping market maker", market=self.market.slug, reason=reason)

        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self.settings.cancel_on_stop:
            try:
                await self.lifecycle.cancel_all()
            except (MarketHaltedError, ClobError) as e:
                log.error("Failed to cancel orders on stop", market=self.market.slug, error=str(e))

        self.inventory.persist_all()

        log.info(
            "Final summary",
            market=self.market.slug,
            reason=reason,
            pnl=self.pnl.summary(),
            inventory=self.inventory.summary(),
        )

        for feed in self.feeds:
            await feed.stop()
        for task in self._feed_tasks:
            task.cancel()
        await asyncio.gather(*self._feed_tasks, return_exceptions=True)

        self._stopped.set()
        log.info("Market maker stopped", market=self.market.slug)

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def run(self) -> None:
        """Start and run until stopped."""
        try:
            await self.start()
        except MarketHaltedError as e:
            await self.stop(f"halted:{e.reason}")
            return
        await self.wait_stopped()


async def resolve_markets(settings: Settings, gamma: GammaClient) -> list[Market]:
    """Configured slugs, or the highest-volume discovered markets."""
    if settings.market_slugs:
        markets = []
        for slug in settings.market_slugs:
            market = await gamma.get_market_by_slug(slug)
            if market is None:
                log.warning("Market not found", slug=slug)
                continue
            markets.append(market)
        return markets

    discovered = await gamma.discover_markets(
        min_volume=settings.min_volume_usdc, limit=settings.max_active_markets
    )
    return discovered[: settings.max_active_markets]


def setup_signal_handlers(bots: list[MarketMakerBot]) -> None:
    """Setup handlers for SIGINT and SIGTERM."""
    loop = asyncio.get_running_loop()

    def _stop_all() -> None:
        for bot in bots:
            bot.request_stop("signal")

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _stop_all)


async def run_market_makers(settings: Optional[Settings] = None) -> None:
    """Entry point: one MarketMakerBot per selected market."""
    settings = settings or get_settings()
    setup_logging(settings.log_level, json=settings.log_json)

    set_db_path(settings.db_path)
    init_db()
    await init_async_db()

    clob: Optional[AsyncClobClient] = None
    if settings.is_trading_enabled():
        clob = create_async_clob_client(OrderSigner())
    elif not settings.dry_run:
        raise RuntimeError("Live trading requires PRIVATE_KEY and POLY_API_* credentials")

    owner = settings.proxy_address or settings.wallet_address
    async with GammaClient() as gamma:
        markets = await resolve_markets(settings, gamma)
    if not markets:
        log.error("No markets to quote")
        return

    bots = []
    for market in markets:
        chain = ChainReader(owner, neg_risk=market.neg_risk) if owner else None
        bots.append(MarketMakerBot(market, settings, clob=clob, chain=chain))

    setup_signal_handlers(bots)
    try:
        await asyncio.gather(*(bot.run() for bot in bots))
    finally:
        if clob is not None:
            await clob.close()
        await close_async_db()
        log.info("All market makers stopped", markets=len(bots))
