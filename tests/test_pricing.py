"""Tests for the post-only guard, parity and quote computation."""

import pytest

from pmm.config import Settings
from pmm.market_maker.pricing import (
    QuoteEngine,
    anti_crossing_check,
    check_parity,
    dynamic_spread,
    ensure_post_only,
    inventory_skew,
    validate_quote_prices,
)
from pmm.market_maker.types import QuoteSnapshot, Side


def snap(bid: float, ask: float, tick: float = 0.001) -> QuoteSnapshot:
    return QuoteSnapshot(best_bid=bid, best_ask=ask, tick_size=tick)


class TestEnsurePostOnly:
    """Prices are clamped strictly inside the book."""

    def test_buy_improves_best_bid_by_one_tick(self):
        result = ensure_post_only(Side.BUY, snap(0.40, 0.42), desired_price=0.40)

        assert result.valid
        assert result.price == pytest.approx(0.401)
        assert result.improvement_ticks == 1
        assert not result.would_cross

    def test_sell_improves_best_ask_by_one_tick(self):
        result = ensure_post_only(Side.SELL, snap(0.40, 0.42), desired_price=0.42)

        assert result.valid
        assert result.price == pytest.approx(0.419)

    def test_crossing_buy_is_clamped_below_ask(self):
        result = ensure_post_only(Side.BUY, snap(0.40, 0.42), desired_price=0.45)

        assert result.valid
        assert result.would_cross
        assert result.was_clamped
        assert result.price == pytest.approx(0.419)
        assert result.price < 0.42

    def test_crossing_sell_is_clamped_above_bid(self):
        result = ensure_post_only(Side.SELL, snap(0.40, 0.42), desired_price=0.38)

        assert result.valid
        assert result.would_cross
        assert result.price == pytest.approx(0.401)

    def test_one_tick_spread_has_no_room(self):
        for side in (Side.BUY, Side.SELL):
            result = ensure_post_only(side, snap(0.400, 0.401), desired_price=0.4005)

            assert not result.valid
            assert result.price is None
            assert result.reason == "no_room_inside_spread"

    def test_crossed_book_is_rejected(self):
        result = ensure_post_only(Side.BUY, snap(0.42, 0.40), desired_price=0.41)

        assert not result.valid
        assert result.reason == "crossed_book"

    def test_too_far_from_mid(self):
        result = ensure_post_only(
            Side.BUY, snap(0.20, 0.40), desired_price=0.21, max_distance_from_mid=0.05
        )

        assert not result.valid
        assert result.reason == "too_far_from_mid"
        assert result.price == pytest.approx(0.21)

    def test_price_lands_on_tick_grid(self):
        result = ensure_post_only(Side.BUY, snap(0.40, 0.44, tick=0.01), desired_price=0.4137)

        assert result.valid
        assert result.price == pytest.approx(0.41)

    def test_guard_never_crosses_over_a_range_of_books(self):
        """Whatever the desired price, a valid BUY stays below ask and SELL above bid."""
        for bid_ticks in range(10, 990, 37):
            for width in (2, 3, 5, 20):
                bid = bid_ticks / 1000
                ask = (bid_ticks + width) / 1000
                book = snap(bid, ask)
                for desired in (0.001, bid, (bid + ask) / 2, ask, 0.999):
                    buy = ensure_post_only(Side.BUY, book, desired, max_distance_from_mid=1.0)
                    sell = ensure_post_only(Side.SELL, book, desired, max_distance_from_mid=1.0)
                    if buy.valid:
                        assert buy.price < ask
                    if sell.valid:
                        assert sell.price > bid


class TestValidateQuotePrices:
    def test_valid_pair(self):
        assert validate_quote_prices(0.401, 0.419, 0.40, 0.42, 0.41, 0.05).valid

    def test_inverted_pair(self):
        result = validate_quote_prices(0.41, 0.41, 0.40, 0.42, 0.41, 0.05)
        assert not result.valid
        assert result.reason == "bid >= ask"

    def test_bid_crossing_book(self):
        result = validate_quote_prices(0.42, 0.43, 0.40, 0.42, 0.41, 0.05)
        assert not result.valid
        assert "cross" in result.reason

    def test_far_from_mid(self):
        result = validate_quote_prices(0.30, 0.419, 0.29, 0.42, 0.41, 0.05)
        assert not result.valid
        assert "too far" in result.reason


class TestParity:
    def test_balanced_pair_is_valid(self):
        check = check_parity(0.41, 0.59, tolerance=0.06)

        assert check.valid
        assert check.bias is None
        assert check.allows(Side.BUY) and check.allows(Side.SELL)

    def test_rich_pair_biases_to_sell(self):
        check = check_parity(0.55, 0.55, tolerance=0.06)

        assert not check.valid
        assert check.bias == Side.SELL
        assert check.deviation == pytest.approx(0.10)
        assert not check.allows(Side.BUY)
        assert check.warning is not None

    def test_cheap_pair_biases_to_buy(self):
        check = check_parity(0.40, 0.50, tolerance=0.06)

        assert check.bias == Side.BUY
        assert not check.allows(Side.SELL)

    def test_small_breach_stays_valid(self):
        check = check_parity(0.60, 0.45, tolerance=0.06)

        assert check.parity == pytest.approx(1.05)
        assert check.deviation == pytest.approx(0.05)
        assert check.valid

        check = check_parity(0.65, 0.45, tolerance=0.06)

        assert check.parity == pytest.approx(1.10)
        assert not check.valid
        assert check.bias == Side.SELL

    def test_deviation_at_tolerance_is_valid(self):
        assert check_parity(0.50, 0.56, tolerance=0.06).valid


class TestSpreadAndSkew:
    def test_dynamic_spread_follows_market_inside_bounds(self):
        assert dynamic_spread(0.03, 0.02) == pytest.approx(0.02)
        assert dynamic_spread(0.03, 0.20) == pytest.approx(0.06)
        assert dynamic_spread(0.03, 0.001) == pytest.approx(0.015)

    def test_long_inventory_skews_down(self):
        assert inventory_skew(100, 0.002) == pytest.approx(-0.002)
        assert inventory_skew(-50, 0.002) == pytest.approx(0.001)
        assert inventory_skew(0, 0.002) == 0


class TestAntiCrossing:
    def test_non_crossing_price_unchanged(self):
        assert anti_crossing_check(Side.BUY, 0.401, snap(0.40, 0.42)) == 0.401

    def test_touching_buy_moves_one_tick(self):
        assert anti_crossing_check(Side.BUY, 0.42, snap(0.40, 0.42)) == pytest.approx(0.419)

    def test_deep_crossing_buy_is_dropped(self):
        assert anti_crossing_check(Side.BUY, 0.43, snap(0.40, 0.42)) is None

    def test_touching_sell_moves_one_tick(self):
        assert anti_crossing_check(Side.SELL, 0.40, snap(0.40, 0.42)) == pytest.approx(0.401)

    def test_deep_crossing_sell_is_dropped(self):
        assert anti_crossing_check(Side.SELL, 0.38, snap(0.40, 0.42)) is None


class TestQuoteEngine:
    @pytest.fixture
    def engine(self) -> QuoteEngine:
        return QuoteEngine(Settings(_env_file=None))

    def test_two_cent_book(self, engine):
        """A 0.40/0.42 book is quoted at 0.401/0.419."""
        plan = engine.compute_quote("token", snap(0.40, 0.42))

        assert plan.target_spread == pytest.approx(0.02)
        assert plan.bid.valid and plan.ask.valid
        assert plan.bid.price == pytest.approx(0.401)
        assert plan.ask.price == pytest.approx(0.419)

    def test_two_tick_book_gives_no_pair(self, engine):
        plan = engine.compute_quote("token", snap(0.400, 0.402))

        assert not plan.bid.valid
        assert not plan.ask.valid

    def test_parity_bias_disables_one_side(self, engine):
        plan = engine.compute_quote("token", snap(0.40, 0.42), parity=check_parity(0.55, 0.55))

        assert not plan.bid.valid
        assert plan.bid.reason == "parity_bias"
        assert plan.ask.valid

    def test_wide_book_quotes_around_mid(self, engine):
        plan = engine.compute_quote("token", snap(0.30, 0.50))

        assert plan.target_spread == pytest.approx(0.06)
        assert plan.bid.price == pytest.approx(0.37)
        assert plan.ask.price == pytest.approx(0.43)

    def test_long_position_lowers_quotes(self, engine):
        flat = engine.compute_quote("token", snap(0.30, 0.50))
        long = engine.compute_quote("token", snap(0.30, 0.50), position=500)

        assert long.bid.price < flat.bid.price
        assert long.ask.price < flat.ask.price
