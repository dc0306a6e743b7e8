"""Tests for the inventory ledger."""

import pytest

from pmm.market_maker.errors import StaleDataError
from pmm.market_maker.inventory import InventoryLedger
from pmm.market_maker.types import Fill, Side
from tests.conftest import NO_TOKEN, YES_TOKEN


def make_fill(side: Side, size: float, trade_id: str, token_id: str = YES_TOKEN, price: float = 0.5) -> Fill:
    return Fill(
        order_id=f"order-{trade_id}",
        token_id=token_id,
        side=side,
        price=price,
        size=size,
        timestamp=1_700_000_000.0,
        trade_id=trade_id,
    )


@pytest.fixture
def ledger(settings, fake_chain, clock) -> InventoryLedger:
    return InventoryLedger(settings, fake_chain, clock=clock, persist=False)


class TestFills:
    def test_position_is_sum_of_fills(self, ledger):
        fills = [
            make_fill(Side.BUY, 10.0, "t1"),
            make_fill(Side.BUY, 7.5, "t2"),
            make_fill(Side.SELL, 4.25, "t3"),
            make_fill(Side.BUY, 3.0, "t4", token_id=NO_TOKEN),
        ]
        for fill in fills:
            assert ledger.apply_fill(fill)

        assert ledger.get(YES_TOKEN) == pytest.approx(13.25)
        assert ledger.get(NO_TOKEN) == pytest.approx(3.0)

    def test_redelivered_fill_counts_once(self, ledger):
        fill = make_fill(Side.BUY, 10.0, "t1")

        assert ledger.apply_fill(fill)
        assert not ledger.apply_fill(fill)
        assert ledger.get(YES_TOKEN) == pytest.approx(10.0)

    def test_partial_fills_of_one_trade_are_distinct(self, ledger):
        first = Fill("order-1", YES_TOKEN, Side.BUY, 0.5, 2.0, timestamp=1.0)
        second = Fill("order-1", YES_TOKEN, Side.BUY, 0.5, 3.0, timestamp=2.0)

        ledger.apply_fill(first)
        ledger.apply_fill(second)

        assert ledger.get(YES_TOKEN) == pytest.approx(5.0)


class TestLimits:
    def test_can_buy_under_cap(self, ledger):
        ledger.set_position(YES_TOKEN, 90.0)

        assert ledger.can_buy(YES_TOKEN, 10.0)
        assert not ledger.can_buy(YES_TOKEN, 10.01)

    def test_short_position_can_always_buy(self, ledger):
        ledger.set_position(YES_TOKEN, -5.0)

        assert ledger.can_buy(YES_TOKEN, 500.0)

    def test_can_sell_needs_holdings(self, ledger):
        ledger.set_position(YES_TOKEN, 5.0)

        assert ledger.can_sell(YES_TOKEN, 5.0)
        assert not ledger.can_sell(YES_TOKEN, 5.01)
        assert ledger.available_to_sell(NO_TOKEN) == 0.0

    def test_shorting_allowed_within_cap(self, settings, fake_chain, clock):
        ledger = InventoryLedger(
            settings.model_copy(update={"allow_short": True}), fake_chain, clock=clock, persist=False
        )

        assert ledger.can_sell(YES_TOKEN, 50.0)
        assert not ledger.can_sell(YES_TOKEN, 100.01)


class TestOnchain:
    async def test_balance_is_cached(self, ledger, fake_chain, clock):
        fake_chain.tokens[YES_TOKEN] = 12.0

        assert await ledger.onchain_balance(YES_TOKEN) == 12.0
        fake_chain.tokens[YES_TOKEN] = 20.0
        clock.advance(5)
        assert await ledger.onchain_balance(YES_TOKEN) == 12.0
        clock.advance(6)
        assert await ledger.onchain_balance(YES_TOKEN) == 20.0
        assert fake_chain.calls == 2

    async def test_failed_read_falls_back_to_cache(self, ledger, fake_chain, clock):
        fake_chain.tokens[YES_TOKEN] = 12.0
        await ledger.onchain_balance(YES_TOKEN)
        fake_chain.fail = True
        clock.advance(60)

        assert await ledger.onchain_balance(YES_TOKEN) == 12.0

    async def test_cache_past_ceiling_is_refused(self, ledger, fake_chain, clock):
        fake_chain.tokens[YES_TOKEN] = 12.0
        await ledger.onchain_balance(YES_TOKEN)
        fake_chain.fail = True
        clock.advance(301)

        with pytest.raises(StaleDataError):
            await ledger.onchain_balance(YES_TOKEN)

    async def test_no_reader(self, settings, clock):
        ledger = InventoryLedger(settings, None, clock=clock, persist=False)

        with pytest.raises(StaleDataError):
            await ledger.onchain_balance(YES_TOKEN)

    async def test_resync_overwrites_local(self, ledger, fake_chain):
        ledger.apply_fill(make_fill(Side.BUY, 10.0, "t1"))
        fake_chain.tokens[YES_TOKEN] = 8.0
        fake_chain.tokens[NO_TOKEN] = 2.0

        synced = await ledger.resync([YES_TOKEN, NO_TOKEN])

        assert synced == {YES_TOKEN: 8.0, NO_TOKEN: 2.0}
        assert ledger.get(YES_TOKEN) == 8.0

    async def test_resync_keeps_local_when_chain_unavailable(self, ledger, fake_chain):
        ledger.apply_fill(make_fill(Side.BUY, 10.0, "t1"))
        fake_chain.fail = True

        assert await ledger.resync([YES_TOKEN]) == {}
        assert ledger.get(YES_TOKEN) == 10.0


class TestHousekeeping:
    def test_cleanup_drops_dust(self, ledger):
        ledger.set_position(YES_TOKEN, 0.001)
        ledger.set_position(NO_TOKEN, 4.0)

        assert ledger.cleanup() == 1
        assert ledger.positions() == {NO_TOKEN: 4.0}

    def test_summary(self, ledger):
        ledger.set_position(YES_TOKEN, 10.0)
        ledger.set_position(NO_TOKEN, -3.0)

        summary = ledger.summary()

        assert summary["long_count"] == 1
        assert summary["short_count"] == 1
        assert summary["total_long"] == 10.0
        assert summary["total_short"] == -3.0


class TestPersistence:
    def test_positions_survive_restart(self, settings, fake_chain, clock, db_path):
        ledger = InventoryLedger(settings, fake_chain, clock=clock)
        ledger.apply_fill(make_fill(Side.BUY, 10.0, "t1"))
        ledger.apply_fill(make_fill(Side.SELL, 2.5, "t2"))

        restarted = InventoryLedger(settings, fake_chain, clock=clock)
        restored = restarted.load([YES_TOKEN, NO_TOKEN])

        assert restored == {YES_TOKEN: pytest.approx(7.5)}
        assert restarted.get(YES_TOKEN) == pytest.approx(7.5)

    def test_cleanup_deletes_rows(self, settings, fake_chain, clock, db_path):
        ledger = InventoryLedger(settings, fake_chain, clock=clock)
        ledger.set_position(YES_TOKEN, 0.001)
        ledger.cleanup()

        assert InventoryLedger(settings, fake_chain, clock=clock).load() == {}
