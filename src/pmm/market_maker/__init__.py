"""Market making engine: pricing, order lifecycle, reconciliation and ledgers."""

from pmm.market_maker.errors import (
    DuplicateClientOrderIdError,
    FeedUnrecoverableError,
    MarketHaltedError,
    MarketMakerError,
    StaleDataError,
)
from pmm.market_maker.types import (
    ActiveOrder,
    Fill,
    OrderRequest,
    OrderStatusEvent,
    QuoteSnapshot,
    Side,
    SlotState,
)

__all__ = [
    "ActiveOrder",
    "DuplicateClientOrderIdError",
    "FeedUnrecoverableError",
    "Fill",
    "MarketHaltedError",
    "MarketMakerError",
    "OrderRequest",
    "OrderStatusEvent",
    "QuoteSnapshot",
    "Side",
    "SlotState",
    "StaleDataError",
]
