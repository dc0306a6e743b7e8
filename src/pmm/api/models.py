"""Data models for Polymarket API responses."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional


@dataclass
class Token:
    """Represents a YES or NO outcome token."""

    token_id: str
    outcome: str  # "Yes" or "No"
    price: Decimal = Decimal("0")


@dataclass
class OrderBookLevel:
    """A single price level in the order book."""

    price: Decimal
    size: Decimal


@dataclass
class OrderBook:
    """Order book snapshot for a single token."""

    token_id: str
    bids: list[OrderBookLevel] = field(default_factory=list)
    asks: list[OrderBookLevel] = field(default_factory=list)
    tick_size: Optional[Decimal] = None

    @property
    def best_bid(self) -> Optional[Decimal]:
        """Get the best (highest) bid price."""
        if not self.bids:
            return None
        return max(level.price for level in self.bids)

    @property
    def best_ask(self) -> Optional[Decimal]:
        """Get the best (lowest) ask price."""
        if not self.asks:
            return None
        return min(level.price for level in self.asks)


@dataclass
class Market:
    """A binary Polymarket market: one condition, a YES and a NO token."""

    id: str
    condition_id: str
    question: str
    slug: str

    yes_token: Token
    no_token: Token

    volume: Decimal = Decimal("0")
    liquidity: Decimal = Decimal("0")

    active: bool = True
    closed: bool = False

    end_date: Optional[datetime] = None
    neg_risk: bool = False

    @property
    def token_ids(self) -> list[str]:
        """YES and NO token ids, in that order."""
        return [self.yes_token.token_id, self.no_token.token_id]
