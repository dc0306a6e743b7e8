"""Tests for the per-market orchestrator."""

import asyncio
from typing import Optional
from unittest.mock import AsyncMock

import pytest

from pmm.market_maker.bot import MarketMakerBot, resolve_markets
from pmm.market_maker.types import FeedStatus, Fill, PriceUpdate, QuoteSnapshot, Side
from tests.conftest import NO_TOKEN, YES_TOKEN, make_book, remote_order


class FakeFeed:
    """Feed stand-in whose health is set by the test."""

    def __init__(self, name: str):
        self.name = name
        self.stale = False
        self.unrecoverable = False
        self.running = False
        self.stopped = False

    def is_stale(self, now: Optional[float] = None) -> bool:
        return self.stale

    async def run(self) -> None:
        self.running = True
        await asyncio.Event().wait()

    async def stop(self) -> None:
        self.stopped = True

    def get_stats(self) -> dict:
        return {"feed": self.name}


@pytest.fixture
def feeds():
    return FakeFeed("market"), FakeFeed("user")


@pytest.fixture
def bot(settings, market, clock, fake_clob, fake_chain, feeds) -> MarketMakerBot:
    market_feed, user_feed = feeds
    return MarketMakerBot(
        market,
        settings,
        clob=fake_clob,
        chain=fake_chain,
        market_feed=market_feed,
        user_feed=user_feed,
        clock=clock,
        persist=False,
    )


def price_update(clock, token_id=YES_TOKEN, bid=0.40, ask=0.42) -> PriceUpdate:
    return PriceUpdate(
        token_id=token_id,
        snapshot=QuoteSnapshot(best_bid=bid, best_ask=ask, tick_size=0.001, timestamp=clock()),
    )


class TestDispatch:
    async def test_price_update_places_quotes(self, bot, clock, fake_clob):
        await bot.dispatch(price_update(clock))

        assert len(fake_clob.posted) == 1
        assert bot.store.get_order(YES_TOKEN, Side.BUY) is not None

    async def test_fill_updates_inventory(self, bot, clock):
        await bot.dispatch(price_update(clock))
        order = bot.store.get_order(YES_TOKEN, Side.BUY)

        await bot.dispatch(
            Fill(
                order_id=order.order_id,
                token_id=YES_TOKEN,
                side=Side.BUY,
                price=order.price,
                size=order.size,
                timestamp=clock(),
                trade_id="trade-1",
            )
        )

        assert bot.inventory.get(YES_TOKEN) == pytest.approx(order.size)
        assert bot.pnl.summary()["total_trades"] == 1

    async def test_user_reconnect_reconciles(self, bot, clock, fake_clob):
        await bot.dispatch(price_update(clock))
        order = bot.store.get_order(YES_TOKEN, Side.BUY)
        fake_clob.open_orders = [remote_order(order.order_id), remote_order("0xextra", price=0.399)]

        await bot.dispatch(FeedStatus(feed="user", up=True, reconnected=True))

        assert fake_clob.cancelled == [["0xextra"]]

    async def test_market_reconnect_does_not_reconcile(self, bot, fake_clob):
        fake_clob.list_error = AssertionError("unexpected listing")

        await bot.dispatch(FeedStatus(feed="market", up=True, reconnected=True))

        assert bot.halt_reason is None

    async def test_unrecoverable_feed_stops_market(self, bot, feeds):
        await bot.dispatch(FeedStatus(feed="market", up=False, unrecoverable=True))
        await asyncio.wait_for(bot.wait_stopped(), 1)

        assert bot.halt_reason == "feed_unrecoverable:market"
        assert all(feed.stopped for feed in feeds)


class TestHealth:
    async def test_healthy(self, bot):
        assert await bot.check_health()
        assert bot.halt_reason is None

    async def test_one_stale_feed_keeps_running(self, bot, feeds):
        feeds[1].stale = True

        assert await bot.check_health()
        assert bot.halt_reason is None

    async def test_all_feeds_stale_stops(self, bot, feeds):
        for feed in feeds:
            feed.stale = True

        assert not await bot.check_health()
        await asyncio.wait_for(bot.wait_stopped(), 1)
        assert bot.halt_reason == "feeds_stale"

    async def test_unrecoverable_feed_stops(self, bot, feeds):
        feeds[0].unrecoverable = True

        assert not await bot.check_health()
        await asyncio.wait_for(bot.wait_stopped(), 1)
        assert bot.halt_reason == "feed_unrecoverable:market"


class TestLifecycle:
    async def test_start_and_stop(self, bot, feeds, fake_chain):
        fake_chain.tokens[YES_TOKEN] = 4.0

        await bot.start()
        await asyncio.sleep(0)

        assert all(feed.running for feed in feeds)
        assert bot.inventory.get(YES_TOKEN) == 4.0
        assert len(bot._tasks) == 8

        await bot.stop("test")

        assert all(task.done() for task in bot._tasks)
        assert all(feed.stopped for feed in feeds)
        assert bot.halt_reason == "test"

    async def test_stop_cancels_orders(self, bot, clock, fake_clob):
        await bot.dispatch(price_update(clock))
        order = bot.store.get_order(YES_TOKEN, Side.BUY)

        await bot.stop()

        assert fake_clob.cancelled == [[order.order_id]]
        assert fake_clob.market_cancels == [YES_TOKEN, NO_TOKEN]
        assert bot.store.order_count() == 0

    async def test_stop_is_idempotent(self, bot, fake_clob):
        await bot.stop()
        await bot.stop()

        assert fake_clob.market_cancels == [YES_TOKEN, NO_TOKEN]


class TestOrderBookFallback:
    async def test_seeds_missing_tokens(self, settings, market, clock, fake_clob):
        bot = MarketMakerBot(market, settings, clob=fake_clob, clock=clock, persist=False)
        fake_clob.books[YES_TOKEN] = make_book(YES_TOKEN, "0.40", "0.42")

        await bot._seed_from_order_books()

        snapshot = bot.market_feed.get_snapshot(YES_TOKEN)
        assert snapshot.best_bid == pytest.approx(0.40)
        assert snapshot.best_ask == pytest.approx(0.42)
        assert bot.market_feed.missing_tokens() == [NO_TOKEN]
        assert isinstance(bot.queue.get_nowait(), PriceUpdate)

    async def test_crossed_book_is_rejected(self, settings, market, clock, fake_clob):
        bot = MarketMakerBot(market, settings, clob=fake_clob, clock=clock, persist=False)
        fake_clob.books[YES_TOKEN] = make_book(YES_TOKEN, "0.45", "0.42")

        await bot._seed_from_order_books()

        assert bot.market_feed.get_snapshot(YES_TOKEN) is None
        assert bot.queue.empty()


class TestResolveMarkets:
    async def test_configured_slugs(self, settings, market):
        configured = settings.model_copy(update={"market_slugs": [market.slug, "missing-market"]})
        gamma = AsyncMock()
        gamma.get_market_by_slug.side_effect = [market, None]

        assert await resolve_markets(configured, gamma) == [market]
        gamma.discover_markets.assert_not_called()

    async def test_discovery(self, settings, market):
        gamma = AsyncMock()
        gamma.discover_markets.return_value = [market]

        assert await resolve_markets(settings, gamma) == [market]
        gamma.discover_markets.assert_awaited_once_with(
            min_volume=settings.min_volume_usdc, limit=settings.max_active_markets
        )
