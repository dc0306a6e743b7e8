"""Tests for the solvency gate."""

import asyncio

import pytest

from pmm.market_maker.errors import StaleDataError
from pmm.market_maker.inventory import InventoryLedger
from pmm.market_maker.solvency import SolvencyGate
from tests.conftest import YES_TOKEN


@pytest.fixture
def inventory(settings, fake_chain, clock) -> InventoryLedger:
    return InventoryLedger(settings, fake_chain, clock=clock, persist=False)


@pytest.fixture
def gate(settings, fake_clob, fake_chain, inventory, clock) -> SolvencyGate:
    return SolvencyGate(settings, fake_clob, fake_chain, inventory, clock=clock)


class TestCollateral:
    async def test_funded_buy_passes(self, gate):
        assert (await gate.check_buy(3.0)).ok

    async def test_insufficient_balance(self, gate, fake_chain):
        fake_chain.usdc = 2.0

        check = await gate.check_buy(3.0)

        assert not check.ok
        assert check.reason == "insufficient_balance"

    async def test_insufficient_allowance(self, gate, fake_chain):
        fake_chain.allowance = 2.0

        check = await gate.check_buy(3.0)

        assert check.reason == "insufficient_allowance"

    async def test_low_allowance_requests_top_up(self, gate, fake_chain, fake_clob):
        fake_chain.allowance = 5.0

        await gate.check_buy(3.0)

        assert fake_clob.allowance_updates == [("COLLATERAL", None)]

    async def test_concurrent_top_ups_send_one_request(self, gate, fake_chain, fake_clob):
        fake_chain.allowance = 5.0
        read_balance = fake_chain.usdc_balance

        async def slow_balance():
            await asyncio.sleep(0.01)
            return await read_balance()

        fake_chain.usdc_balance = slow_balance

        results = await asyncio.gather(gate.ensure_usdc_allowance(), gate.ensure_usdc_allowance())

        assert results == [True, True]
        assert fake_clob.allowance_updates == [("COLLATERAL", None)]
        assert not gate.summary()["updating"]

    async def test_no_top_up_without_balance(self, gate, fake_chain, fake_clob):
        fake_chain.allowance = 5.0
        fake_chain.usdc = 5.0

        assert not await gate.ensure_usdc_allowance()
        assert fake_clob.allowance_updates == []

    async def test_snapshot_is_cached_until_dirty(self, gate, fake_chain):
        await gate.refresh()
        calls = fake_chain.calls

        await gate.refresh()
        assert fake_chain.calls == calls

        gate.mark_dirty()
        await gate.refresh()
        assert fake_chain.calls == calls + 2

    async def test_stale_snapshot_blocks_buys(self, gate, fake_chain, clock):
        await gate.refresh()
        fake_chain.fail = True
        clock.advance(301)

        check = await gate.check_buy(3.0)

        assert not check.ok
        assert check.reason.startswith("stale_data")

    async def test_failed_read_uses_recent_snapshot(self, gate, fake_chain, clock):
        await gate.refresh()
        fake_chain.fail = True
        clock.advance(30)

        snapshot = await gate.refresh(force=True)

        assert snapshot.balance == 1000.0

    async def test_periodic_check_respects_cooldown(self, gate, fake_chain, fake_clob, clock):
        fake_chain.allowance = 5.0
        await gate.periodic_check()
        gate.mark_dirty()
        clock.advance(1)
        await gate.periodic_check()

        assert len(fake_clob.allowance_updates) == 1

    async def test_dry_run_does_not_request(self, settings, fake_clob, fake_chain, inventory, clock):
        gate = SolvencyGate(
            settings.model_copy(update={"dry_run": True}), fake_clob, fake_chain, inventory, clock=clock
        )
        fake_chain.allowance = 5.0

        assert await gate.ensure_usdc_allowance()
        assert fake_clob.allowance_updates == []

    async def test_dry_run_without_wallet_is_unchecked(self, settings, fake_clob, inventory, clock):
        gate = SolvencyGate(settings.model_copy(update={"dry_run": True}), fake_clob, None, inventory, clock=clock)

        assert (await gate.check_buy(1_000_000.0)).ok

    async def test_live_without_wallet_refuses(self, settings, fake_clob, inventory, clock):
        gate = SolvencyGate(settings, fake_clob, None, inventory, clock=clock)

        with pytest.raises(StaleDataError):
            await gate.refresh()
        assert not (await gate.check_buy(1.0)).ok


class TestOutcomeTokens:
    async def test_sell_needs_inventory(self, gate):
        check = await gate.check_sell(YES_TOKEN, 5.0)

        assert check.reason == "insufficient_inventory"

    async def test_sell_checks_onchain_shares(self, gate, inventory, fake_chain):
        inventory.set_position(YES_TOKEN, 10.0)
        fake_chain.tokens[YES_TOKEN] = 4.0

        assert (await gate.check_sell(YES_TOKEN, 5.0)).reason == "insufficient_onchain_shares"
        assert (await gate.check_sell(YES_TOKEN, 5.0, verify_onchain=False)).ok

    async def test_missing_approval_requested_once(self, gate, inventory, fake_chain, fake_clob):
        inventory.set_position(YES_TOKEN, 10.0)
        fake_chain.tokens[YES_TOKEN] = 10.0
        fake_chain.approved = False

        first = await gate.check_sell(YES_TOKEN, 5.0)
        second = await gate.check_sell(YES_TOKEN, 5.0)

        assert first.reason == "missing_token_approval"
        assert second.reason == "missing_token_approval"
        assert fake_clob.allowance_updates == [("CONDITIONAL", YES_TOKEN)]

    async def test_summary(self, gate):
        await gate.refresh()

        summary = gate.summary()

        assert summary["usdc_balance"] == 1000.0
        assert summary["threshold"] == 10.0
