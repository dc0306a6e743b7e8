"""Quote guard and pricing.

Polymarket has no native post-only flag. Quotes are kept post-only on the
client by clamping them strictly inside the current book, one or more ticks
better than the best price on our side for queue priority.
"""

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Optional

from pmm.config import Settings
from pmm.market_maker.types import QuoteSnapshot, Side
from pmm.utils.logging import get_logger

log = get_logger(__name__)


def _dec(x: float) -> Decimal:
    return Decimal(str(x))


def _ticks(value: Decimal, tick: Decimal, rounding: str) -> int:
    return int((value / tick).to_integral_value(rounding=rounding))


@dataclass(frozen=True)
class GuardResult:
    """Outcome of the post-only guard for one side."""

    side: Side
    price: Optional[float]
    valid: bool
    reason: Optional[str] = None
    would_cross: bool = False
    was_clamped: bool = False
    improvement_ticks: int = 0
    distance_from_mid: float = 0.0


def ensure_post_only(
    side: Side,
    snapshot: QuoteSnapshot,
    desired_price: float,
    tick_improvement: int = 1,
    max_distance_from_mid: float = 0.05,
) -> GuardResult:
    """
    Clamp a desired price into the post-only band for ``side``.

    BUY is clamped to ``[best_bid + n*tick, best_ask - tick]`` and SELL to
    ``[best_bid + tick, best_ask - n*tick]``, then rounded to the tick grid.
    When the band is empty (no price strictly inside the book) the result is
    invalid with no price. If the improvement would overshoot the band, the
    price sits on the far edge of the band instead.
    """
    tick = _dec(snapshot.tick_size)
    bid = _dec(snapshot.best_bid)
    ask = _dec(snapshot.best_ask)
    desired = _dec(desired_price)

    if tick <= 0:
        return GuardResult(side=side, price=None, valid=False, reason="invalid_tick_size")
    if bid >= ask:
        return GuardResult(side=side, price=None, valid=False, reason="crossed_book")

    bid_floor = _ticks(bid, tick, ROUND_FLOOR)
    ask_ceil = _ticks(ask, tick, ROUND_CEILING)

    if side == Side.BUY:
        upper = ask_ceil - 1
        lower = bid_floor + tick_improvement
        if upper <= bid_floor:
            return GuardResult(side=side, price=None, valid=False, reason="no_room_inside_spread")
        would_cross = desired >= ask
    else:
        lower = bid_floor + 1
        upper = ask_ceil - tick_improvement
        if lower >= ask_ceil:
            return GuardResult(side=side, price=None, valid=False, reason="no_room_inside_spread")
        would_cross = desired <= bid

    desired_ticks = desired / tick
    if lower > upper:
        # Improvement overshoots the band: take the edge nearest our own side.
        clamped = Decimal(upper if side == Side.BUY else lower)
    else:
        clamped = min(max(desired_ticks, Decimal(lower)), Decimal(upper))
    was_clamped = would_cross or clamped != desired_ticks

    final_ticks = int(clamped.to_integral_value(rounding=ROUND_HALF_UP))
    final_dec = final_ticks * tick
    final = float(final_dec)

    mid = (bid + ask) / 2
    distance = float(abs(final_dec - mid))
    improvement = final_ticks - bid_floor if side == Side.BUY else ask_ceil - final_ticks

    if not 0 < final < 1:
        return GuardResult(
            side=side, price=None, valid=False, reason="price_out_of_bounds",
            would_cross=would_cross, was_clamped=was_clamped,
        )
    if distance > max_distance_from_mid:
        return GuardResult(
            side=side, price=final, valid=False, reason="too_far_from_mid",
            would_cross=would_cross, was_clamped=was_clamped,
            improvement_ticks=improvement, distance_from_mid=distance,
        )

    return GuardResult(
        side=side,
        price=final,
        valid=True,
        would_cross=would_cross,
        was_clamped=was_clamped,
        improvement_ticks=improvement,
        distance_from_mid=distance,
    )


@dataclass(frozen=True)
class QuoteValidation:
    valid: bool
    reason: Optional[str] = None


def validate_quote_prices(
    bid_price: float,
    ask_price: float,
    best_bid: float,
    best_ask: float,
    mid_price: float,
    max_distance_from_mid: float,
) -> QuoteValidation:
    """Sanity-check a computed bid/ask pair against the book."""
    if bid_price >= ask_price:
        return QuoteValidation(False, "bid >= ask")
    if bid_price >= best_ask:
        return QuoteValidation(False, "bid would cross the book")
    if ask_price <= best_bid:
        return QuoteValidation(False, "ask would cross the book")
    if abs(bid_price - mid_price) > max_distance_from_mid:
        return QuoteValidation(False, f"bid too far from mid ({abs(bid_price - mid_price):.4f})")
    if abs(ask_price - mid_price) > max_distance_from_mid:
        return QuoteValidation(False, f"ask too far from mid ({abs(ask_price - mid_price):.4f})")
    if not 0 < bid_price < 1:
        return QuoteValidation(False, "bid out of bounds")
    if not 0 < ask_price < 1:
        return QuoteValidation(False, "ask out of bounds")
    return QuoteValidation(True)


@dataclass(frozen=True)
class ParityCheck:
    valid: bool
    parity: float
    deviation: float
    bias: Optional[Side] = None
    warning: Optional[str] = None

    def allows(self, side: Side) -> bool:
        """Soft bias: only the favored side may place while parity is broken."""
        return self.bias is None or side == self.bias


def check_parity(mid_yes: float, mid_no: float, tolerance: float = 0.06) -> ParityCheck:
    """
    Check that mid(YES) + mid(NO) stays close to 1.

    Outside ``tolerance`` the result is invalid and carries a bias: SELL when
    the pair is rich (sum above 1), BUY when it is cheap.
    """
    parity_dec = _dec(mid_yes) + _dec(mid_no)
    deviation_dec = abs(parity_dec - 1)
    parity = float(parity_dec)
    deviation = float(deviation_dec)

    if deviation_dec > _dec(tolerance):
        bias = Side.SELL if parity_dec > 1 else Side.BUY
        return ParityCheck(
            valid=False,
            parity=parity,
            deviation=deviation,
            bias=bias,
            warning=f"YES + NO = {parity:.4f} (deviation {deviation:.4f} > {tolerance})",
        )
    return ParityCheck(valid=True, parity=parity, deviation=deviation)


def dynamic_spread(
    base_spread: float,
    market_spread: float,
    min_multiplier: float = 0.5,
    max_multiplier: float = 2.0,
) -> float:
    """Target spread follows the market spread within [base*min, base*max]."""
    low = base_spread * min_multiplier
    high = base_spread * max_multiplier
    return min(max(market_spread, low), high)


def inventory_skew(position: float, skew_lambda: float) -> float:
    """Price shift for a position; long positions shift quotes down."""
    return -skew_lambda * position / 100


def anti_crossing_check(side: Side, price: float, latest: QuoteSnapshot) -> Optional[float]:
    """
    Re-validate a price against the latest book right before sending.

    A crossing price is moved one tick away from the book; if it still
    crosses, None is returned and the order must be dropped.
    """
    tick = _dec(latest.tick_size)
    p = _dec(price)
    bid = _dec(latest.best_bid)
    ask = _dec(latest.best_ask)

    if side == Side.BUY:
        if p < ask:
            return price
        adjusted = p - tick
        if adjusted >= ask or adjusted <= 0:
            return None
    else:
        if p > bid:
            return price
        adjusted = p + tick
        if adjusted <= bid or adjusted >= 1:
            return None
    return float(adjusted)


@dataclass(frozen=True)
class QuotePlan:
    """Guarded two-sided quote for one token."""

    token_id: str
    snapshot: QuoteSnapshot
    target_spread: float
    bid: GuardResult
    ask: GuardResult


class QuoteEngine:
    """Computes post-only quotes from the book, inventory and pair parity."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def compute_quote(
        self,
        token_id: str,
        snapshot: QuoteSnapshot,
        position: float = 0.0,
        parity: Optional[ParityCheck] = None,
    ) -> QuotePlan:
        s = self.settings
        spread = dynamic_spread(
            s.target_spread,
            snapshot.spread,
            s.min_spread_multiplier,
            s.max_spread_multiplier,
        )
        skew = inventory_skew(position, s.inventory_skew_lambda)
        desired_bid = snapshot.mid - spread / 2 + skew
        desired_ask = snapshot.mid + spread / 2 + skew

        bid = ensure_post_only(
            Side.BUY, snapshot, desired_bid, s.tick_improvement, s.max_distance_from_mid
        )
        ask = ensure_post_only(
            Side.SELL, snapshot, desired_ask, s.tick_improvement, s.max_distance_from_mid
        )

        if bid.valid and ask.valid:
            check = validate_quote_prices(
                bid.price, ask.price, snapshot.best_bid, snapshot.best_ask,
                snapshot.mid, s.max_distance_from_mid,
            )
            if not check.valid:
                # One-tick spreads leave no room for both sides.
                log.debug("Quote pair rejected", token_id=token_id[:20], reason=check.reason)
                bid = GuardResult(side=Side.BUY, price=None, valid=False, reason=check.reason)
                ask = GuardResult(side=Side.SELL, price=None, valid=False, reason=check.reason)

        if parity is not None and parity.bias is not None:
            if not parity.allows(Side.BUY) and bid.valid:
                bid = GuardResult(side=Side.BUY, price=bid.price, valid=False, reason="parity_bias")
            if not parity.allows(Side.SELL) and ask.valid:
                ask = GuardResult(side=Side.SELL, price=ask.price, valid=False, reason="parity_bias")

        return QuotePlan(
            token_id=token_id,
            snapshot=snapshot,
            target_spread=spread,
            bid=bid,
            ask=ask,
        )
