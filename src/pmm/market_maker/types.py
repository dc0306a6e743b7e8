"""Core value types shared by the market maker components."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union


class Side(str, Enum):
    """Order side."""

    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


class OrderType(str, Enum):
    """Supported time-in-force. Makers only rest GTC orders."""

    GTC = "GTC"


class SlotState(str, Enum):
    """State of one (token, side) order slot."""

    EMPTY = "EMPTY"
    PLACING = "PLACING"
    LIVE = "LIVE"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    IN_DOUBT = "IN_DOUBT"


@dataclass(frozen=True)
class QuoteSnapshot:
    """Top of book for one token."""

    best_bid: float
    best_ask: float
    tick_size: float
    timestamp: float = 0.0

    @property
    def mid(self) -> float:
        return (self.best_bid + self.best_ask) / 2

    @property
    def spread(self) -> float:
        return self.best_ask - self.best_bid


@dataclass(frozen=True)
class OrderRequest:
    """A validated GTC limit order ready to be built and signed."""

    token_id: str
    side: Side
    price: float
    size: float
    client_order_id: str
    order_type: OrderType = OrderType.GTC
    parent_fill_id: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.token_id:
            raise ValueError("token_id is required")
        if not isinstance(self.side, Side):
            raise ValueError(f"side must be a Side, got {self.side!r}")
        if not isinstance(self.order_type, OrderType):
            raise ValueError(f"unsupported order type {self.order_type!r}")
        if not 0 < self.price < 1:
            raise ValueError(f"price must be in (0, 1), got {self.price}")
        if self.size <= 0:
            raise ValueError(f"size must be positive, got {self.size}")
        if not self.client_order_id:
            raise ValueError("client_order_id is required")

    @property
    def notional(self) -> float:
        return self.price * self.size

    @property
    def is_hedge(self) -> bool:
        return self.parent_fill_id is not None


@dataclass
class ActiveOrder:
    """An order we believe is resting on the exchange."""

    order_id: str
    token_id: str
    side: Side
    price: float
    size: float
    client_order_id: str
    placed_at: float
    mid_at_placement: Optional[float] = None
    filled_size: float = 0.0
    # Sum of deduplicated fills seen on the user feed
    applied_fills: float = 0.0

    @property
    def remaining(self) -> float:
        return max(self.size - self.filled_size, 0.0)

    @property
    def notional(self) -> float:
        return self.price * self.remaining


@dataclass(frozen=True)
class Fill:
    """An execution against one of our orders."""

    order_id: str
    token_id: str
    side: Side
    price: float
    size: float
    fee: float = 0.0
    timestamp: float = 0.0
    trade_id: Optional[str] = None

    @property
    def fill_key(self) -> str:
        """Identity of this fill quantum, used for deduplication."""
        if self.trade_id:
            return f"{self.trade_id}:{self.order_id}"
        return f"{self.order_id}:{self.price:.6f}:{self.size:.6f}:{self.timestamp:.3f}"

    @property
    def notional(self) -> float:
        return self.price * self.size


@dataclass(frozen=True)
class OrderStatusEvent:
    """Order status update from the user feed (LIVE, MATCHED, CANCELLED...)."""

    order_id: str
    status: str
    token_id: Optional[str] = None
    side: Optional[Side] = None
    price: Optional[float] = None
    size: Optional[float] = None
    size_matched: Optional[float] = None
    timestamp: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.status in {"MATCHED", "CANCELLED", "CANCELED", "EXPIRED"}


@dataclass(frozen=True)
class PriceUpdate:
    """A validated top-of-book update from the market feed."""

    token_id: str
    snapshot: QuoteSnapshot


@dataclass(frozen=True)
class FeedStatus:
    """Connection state change of a feed."""

    feed: str  # "market" or "user"
    up: bool
    reconnected: bool = False
    unrecoverable: bool = False
    reason: Optional[str] = None


FeedEvent = Union[PriceUpdate, Fill, OrderStatusEvent, FeedStatus]


@dataclass
class DoubtRecord:
    """Orders we believed live while the exchange listed none for the token."""

    token_id: str
    original_orders: list[ActiveOrder]
    start_time: float
    requery_at: float
    force_quote_triggered: bool = False
    resolution: Optional[str] = None
    in_progress: bool = False


@dataclass
class PlacementResult:
    """Outcome of one placement attempt."""

    placed: bool
    reason: str
    order: Optional[ActiveOrder] = None
    details: dict = field(default_factory=dict)
