"""Order amount quantization and sizing.

The CLOB accepts share sizes with 2 decimals and USDC notionals with 5
decimals; both are then sent as integer micro-units (x 1e6).
"""

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Optional, Union

from pmm.market_maker.types import Side
from pmm.utils.logging import get_logger

log = get_logger(__name__)

MICRO = Decimal("1000000")
SIZE_DECIMALS = 2
NOTIONAL_DECIMALS = 5

Number = Union[int, float, Decimal]


def _dec(x: Number) -> Decimal:
    return x if isinstance(x, Decimal) else Decimal(str(x))


def _quantum(decimals: int) -> Decimal:
    return Decimal(1).scaleb(-decimals)


def round_to(x: Number, decimals: int) -> float:
    """Round half-up to ``decimals`` places."""
    return float(_dec(x).quantize(_quantum(decimals), rounding=ROUND_HALF_UP))


def to_micro(x: Number) -> int:
    """Convert a decimal amount to integer micro-units."""
    return int((_dec(x) * MICRO).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def round_price(price: float, tick_size: float = 0.001) -> float:
    """Round a price to the nearest tick."""
    tick = _dec(tick_size)
    ticks = (_dec(price) / tick).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return float(ticks * tick)


def round_size(size: float) -> float:
    """Floor a share size to 2 decimals."""
    return float(_dec(size).quantize(_quantum(SIZE_DECIMALS), rounding=ROUND_FLOOR))


def _ceil_size(size: Decimal) -> Decimal:
    return size.quantize(_quantum(SIZE_DECIMALS), rounding=ROUND_CEILING)


@dataclass(frozen=True)
class Amounts:
    """Quantized maker/taker amounts for one order."""

    side: Side
    maker_amount: int
    taker_amount: int
    size: float
    notional: float


def build_amounts(side: Side, price: float, size: float) -> Amounts:
    """
    Quantize an order into exchange amounts.

    BUY pays the notional (maker) and receives shares (taker); SELL is the
    mirror.
    """
    size2 = _dec(size).quantize(_quantum(SIZE_DECIMALS), rounding=ROUND_HALF_UP)
    notional5 = (_dec(price) * size2).quantize(_quantum(NOTIONAL_DECIMALS), rounding=ROUND_HALF_UP)

    if side == Side.BUY:
        maker, taker = to_micro(notional5), to_micro(size2)
    else:
        maker, taker = to_micro(size2), to_micro(notional5)

    return Amounts(
        side=side,
        maker_amount=maker,
        taker_amount=taker,
        size=float(size2),
        notional=float(notional5),
    )


def recover_price_size(side: Side, maker_amount: int, taker_amount: int) -> tuple[float, float]:
    """Inverse of build_amounts: (price, size) implied by the micro amounts."""
    if side == Side.BUY:
        notional, shares = _dec(maker_amount), _dec(taker_amount)
    else:
        shares, notional = _dec(maker_amount), _dec(taker_amount)
    if shares == 0:
        raise ValueError("share amount is zero")
    return float(notional / shares), float(shares / MICRO)


def enforce_min_size(size: float, min_size: float) -> Optional[float]:
    """Floor to 2 decimals; None if that falls below ``min_size``."""
    q_size = round_size(size)
    if q_size < min_size:
        return None
    return q_size


def calculate_safe_size(
    notional_usdc: float,
    price: float,
    min_size: float = 5.0,
    min_notional: float = 1.0,
) -> Optional[float]:
    """
    Size a BUY from a target notional.

    The raw size is rounded up to 2 decimals so the quantized notional never
    drops under ``min_notional``. Returns None if the constraints cannot be met.
    """
    if price <= 0 or notional_usdc < min_notional:
        log.debug("Target notional too low", notional=notional_usdc, min_notional=min_notional)
        return None

    ceil_size = _ceil_size(_dec(notional_usdc) / _dec(price))
    if ceil_size < _dec(min_size):
        log.debug("Rounded size below minimum", size=float(ceil_size), min_size=min_size)
        return None

    final_notional = (_dec(price) * ceil_size).quantize(_quantum(NOTIONAL_DECIMALS))
    if final_notional < _dec(min_notional):
        return None

    return float(ceil_size)


def calculate_sell_size_shares(
    available_shares: float,
    price: float,
    max_shares_per_order: float = 50.0,
    min_shares: float = 5.0,
    min_notional: float = 1.0,
) -> Optional[float]:
    """Size a SELL from held inventory, or None if too little is held."""
    if available_shares < min_shares or price <= 0:
        return None

    size = _dec(min(available_shares, max_shares_per_order)).quantize(
        _quantum(SIZE_DECIMALS), rounding=ROUND_FLOOR
    )
    if size < _dec(min_shares):
        return None

    if _dec(price) * size < _dec(min_notional):
        size = _ceil_size(_dec(min_notional) / _dec(price))
        if size > _dec(available_shares):
            return None

    return float(size)


def calculate_max_size_with_inventory(
    notional_usdc: float,
    price: float,
    current_inventory: float,
    max_inventory: float,
    min_size: float = 5.0,
    min_notional: float = 1.0,
) -> Optional[float]:
    """BUY size capped by the remaining room under ``max_inventory``."""
    by_notional = calculate_safe_size(notional_usdc, price, min_size, min_notional)
    if by_notional is None:
        return None

    room = round_size(max_inventory - current_inventory)
    size = min(by_notional, room)
    if size < min_size or price * size < min_notional:
        log.debug(
            "Size limited by inventory",
            by_notional=by_notional,
            room=room,
            current=current_inventory,
        )
        return None
    return size
