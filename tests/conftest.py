"""Shared fixtures: simulated clock, in-memory exchange and chain fakes."""

import asyncio
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Optional

import pytest

from pmm.api.models import Market, OrderBook, OrderBookLevel, Token
from pmm.config import Settings
from pmm.data.database import close_async_db, init_db, set_db_path
from pmm.executor.async_clob import ClobError
from pmm.market_maker.builder import ClientOrderIdLedger, OrderBuilder
from pmm.market_maker.inventory import InventoryLedger
from pmm.market_maker.lifecycle import OrderLifecycleManager
from pmm.market_maker.pnl import PnLTracker
from pmm.market_maker.reconcile import ReconciliationEngine
from pmm.market_maker.solvency import SolvencyGate
from pmm.market_maker.store import MarketStore
from pmm.market_maker.types import QuoteSnapshot

YES_TOKEN = "1111111111111111111111111111111111111111111111111111111111111111"
NO_TOKEN = "2222222222222222222222222222222222222222222222222222222222222222"
MAKER = "0x" + "ab" * 20


class FakeClock:
    """Controllable time source in seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeClob:
    """In-memory exchange client that records every call."""

    def __init__(self) -> None:
        self.signer = SimpleNamespace(address=MAKER, funder=MAKER)
        self.posted: list[Any] = []
        self.cancelled: list[list[str]] = []
        self.market_cancels: list[str] = []
        self.allowance_updates: list[tuple[str, Optional[str]]] = []
        self.open_orders: list[dict] = []
        self.listings: list[list[dict]] = []
        self.books: dict[str, OrderBook] = {}
        self.post_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        self.post_gate: Optional[asyncio.Event] = None
        self._next_id = 0

    async def sign_order(self, order: Any, neg_risk: bool = False) -> Any:
        return SimpleNamespace(order=order, neg_risk=neg_risk)

    async def post_order(self, signed: Any, order_type: str = "GTC") -> dict:
        self.posted.append(signed)
        if self.post_gate is not None:
            await self.post_gate.wait()
        if self.post_error is not None:
            raise self.post_error
        self._next_id += 1
        return {"success": True, "orderID": f"0xorder{self._next_id:04d}", "status": "live"}

    async def cancel_orders(self, order_ids: list[str]) -> dict:
        self.cancelled.append(list(order_ids))
        return {"canceled": list(order_ids), "not_canceled": {}}

    async def cancel_market_orders(self, asset_id: str) -> dict:
        self.market_cancels.append(asset_id)
        return {"canceled": [], "not_canceled": {}}

    async def cancel_all(self) -> dict:
        return {"canceled": [], "not_canceled": {}}

    async def get_open_orders(self, asset_id: Optional[str] = None) -> list[dict]:
        if self.list_error is not None:
            raise self.list_error
        orders = self.listings.pop(0) if self.listings else self.open_orders
        return [o for o in orders if asset_id is None or o.get("asset_id") == asset_id]

    async def update_balance_allowance(self, asset_type: str, token_id: Optional[str] = None) -> dict:
        self.allowance_updates.append((asset_type, token_id))
        return {}

    async def get_order_book(self, token_id: str) -> OrderBook:
        if token_id not in self.books:
            raise ClobError(f"no book for {token_id}", 404)
        return self.books[token_id]


class FakeChain:
    """Balances returned by the on-chain reader."""

    def __init__(self, usdc: float = 1000.0, allowance: float = 1000.0, approved: bool = True):
        self.usdc = usdc
        self.allowance = allowance
        self.approved = approved
        self.tokens: dict[str, float] = {}
        self.fail = False
        self.calls = 0

    def _check(self) -> None:
        self.calls += 1
        if self.fail:
            raise asyncio.TimeoutError()

    async def usdc_balance(self) -> float:
        self._check()
        return self.usdc

    async def usdc_allowance(self, spender: Optional[str] = None) -> float:
        self._check()
        return self.allowance

    async def token_balance(self, token_id: str) -> float:
        self._check()
        return self.tokens.get(token_id, 0.0)

    async def is_approved_for_all(self, operator: Optional[str] = None) -> bool:
        self._check()
        return self.approved


def remote_order(
    order_id: str,
    side: str = "BUY",
    price: float = 0.401,
    size: float = 7.49,
    token_id: str = YES_TOKEN,
    matched: float = 0.0,
) -> dict:
    """An entry of the exchange's open-order listing."""
    return {
        "id": order_id,
        "asset_id": token_id,
        "side": side,
        "price": str(price),
        "original_size": str(size),
        "size_matched": str(matched),
        "status": "LIVE",
    }


def make_book(token_id: str, bid: str, ask: str, tick: str = "0.001") -> OrderBook:
    return OrderBook(
        token_id=token_id,
        bids=[OrderBookLevel(price=Decimal(bid), size=Decimal("100"))],
        asks=[OrderBookLevel(price=Decimal(ask), size=Decimal("100"))],
        tick_size=Decimal(tick),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        dry_run=False,
        wallet_address=MAKER,
        notional_per_order_usdc=3.0,
        max_notional_at_risk_usdc=50.0,
        allowance_threshold_usdc=10.0,
    )


@pytest.fixture
def market() -> Market:
    return Market(
        id="100",
        condition_id="0x" + "cd" * 32,
        question="Will it rain tomorrow?",
        slug="will-it-rain-tomorrow",
        yes_token=Token(token_id=YES_TOKEN, outcome="Yes", price=Decimal("0.41")),
        no_token=Token(token_id=NO_TOKEN, outcome="No", price=Decimal("0.59")),
        volume=Decimal("25000"),
    )


@pytest.fixture
def tight_snapshot(clock: FakeClock) -> QuoteSnapshot:
    return QuoteSnapshot(best_bid=0.400, best_ask=0.420, tick_size=0.001, timestamp=clock())


@pytest.fixture
def fake_clob() -> FakeClob:
    return FakeClob()


@pytest.fixture
def fake_chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "pmm.db"
    set_db_path(path)
    init_db()
    return path


@pytest.fixture
async def async_db(db_path):
    yield db_path
    await close_async_db()


class Harness(SimpleNamespace):
    """One market's components wired together over fakes."""


def build_harness(settings, market, clock, fake_clob, fake_chain) -> Harness:
    store = MarketStore(market.token_ids)
    ids = ClientOrderIdLedger(clock)
    builder = OrderBuilder(ids, MAKER, MAKER, clock=clock)
    inventory = InventoryLedger(settings, fake_chain, clock=clock, persist=False)
    solvency = SolvencyGate(settings, fake_clob, fake_chain, inventory, clock=clock)
    pnl = PnLTracker(market.slug, persist=False)
    lifecycle = OrderLifecycleManager(
        settings, market, store, builder, ids, fake_clob, inventory, solvency, pnl, clock=clock
    )
    reconciler = ReconciliationEngine(settings, store, lifecycle, ids, fake_clob, clock=clock)
    return Harness(
        settings=settings,
        market=market,
        clock=clock,
        clob=fake_clob,
        chain=fake_chain,
        store=store,
        ids=ids,
        builder=builder,
        inventory=inventory,
        solvency=solvency,
        pnl=pnl,
        lifecycle=lifecycle,
        reconciler=reconciler,
    )


@pytest.fixture
def harness(settings, market, clock, fake_clob, fake_chain) -> Harness:
    return build_harness(settings, market, clock, fake_clob, fake_chain)


@pytest.fixture
def make_harness(settings, market, clock, fake_clob, fake_chain):
    """Build a harness with settings overrides (and optionally no chain)."""

    def _make(chain=fake_chain, **overrides) -> Harness:
        custom = settings.model_copy(update=overrides)
        return build_harness(custom, market, clock, fake_clob, chain)

    return _make
