"""Market maker error types."""

from typing import Optional


class MarketMakerError(Exception):
    """Base class for market maker errors."""


class DuplicateClientOrderIdError(MarketMakerError):
    """A client order id was already submitted once."""

    def __init__(self, client_order_id: str) -> None:
        super().__init__(f"client order id already placed: {client_order_id}")
        self.client_order_id = client_order_id


class StaleDataError(MarketMakerError):
    """A cached value is older than its hard staleness ceiling."""

    def __init__(self, what: str, age_seconds: float, ceiling_seconds: float) -> None:
        super().__init__(
            f"{what} is stale: age {age_seconds:.1f}s exceeds ceiling {ceiling_seconds:.1f}s"
        )
        self.what = what
        self.age_seconds = age_seconds
        self.ceiling_seconds = ceiling_seconds


class MarketHaltedError(MarketMakerError):
    """The market's maker must stop (auth failure, feed loss, health check)."""

    def __init__(self, reason: str, market: Optional[str] = None) -> None:
        super().__init__(f"market halted: {reason}")
        self.reason = reason
        self.market = market


class FeedUnrecoverableError(MarketMakerError):
    """A feed exhausted its reconnect attempts."""

    def __init__(self, feed: str, attempts: int) -> None:
        super().__init__(f"{feed} feed unrecoverable after {attempts} attempts")
        self.feed = feed
        self.attempts = attempts
