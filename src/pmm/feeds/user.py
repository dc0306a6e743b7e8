"""Authenticated user feed: fills and order status for the account."""

import asyncio
import json
import time
from typing import Any, Callable, Optional

from pmm.config import Settings
from pmm.executor.async_clob import build_hmac_signature
from pmm.feeds.base import FeedSupervisor
from pmm.market_maker.types import FeedEvent, Fill, OrderStatusEvent, Side
from pmm.utils.logging import get_logger, short_id

log = get_logger(__name__)

USER_WS_PATH = "/ws/user"
FILL_EVENT_TYPES = {"trade", "match", "fill"}
FAILED_TRADE_STATUSES = {"FAILED", "RETRYING"}


def _float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _timestamp(value: Any, fallback: float) -> float:
    """Seconds since epoch; millisecond stamps are scaled down."""
    ts = _float(value, fallback)
    return ts / 1000 if ts > 1e12 else ts


def _side(value: Any) -> Optional[Side]:
    try:
        return Side(str(value).upper())
    except ValueError:
        return None


def fill_fee(price: float, size: float, fee_rate_bps: Any) -> float:
    return price * size * _float(fee_rate_bps) / 10000


def parse_fills(msg: dict, api_key: Optional[str], now: float) -> list[Fill]:
    """
    Fills for our orders in one trade message.

    Trade messages list the resting (maker) orders they matched; ours are
    the ones owned by our API key. A message without maker orders is a
    flat fill record keyed by ``order_id``.
    """
    trade_id = msg.get("id") or msg.get("trade_id")
    timestamp = _timestamp(msg.get("timestamp") or msg.get("match_time"), now)
    fee_rate = msg.get("fee_rate_bps")
    fills: list[Fill] = []

    maker_orders = msg.get("maker_orders")
    if isinstance(maker_orders, list) and maker_orders:
        taker_side = _side(msg.get("side"))
        for maker in maker_orders:
            if api_key and maker.get("owner") not in (None, api_key):
                continue
            side = _side(maker.get("side")) or (taker_side.opposite if taker_side else None)
            price = _float(maker.get("price"))
            size = _float(maker.get("matched_amount") or maker.get("size"))
            order_id = maker.get("order_id")
            token_id = maker.get("asset_id") or msg.get("asset_id")
            if not order_id or not token_id or side is None or price <= 0 or size <= 0:
                continue
            fills.append(
                Fill(
                    order_id=order_id,
                    token_id=token_id,
                    side=side,
                    price=price,
                    size=size,
                    fee=fill_fee(price, size, maker.get("fee_rate_bps", fee_rate)),
                    timestamp=timestamp,
                    trade_id=trade_id,
                )
            )
        taker_owned = api_key is not None and msg.get("owner") == api_key
        if not taker_owned:
            return fills

    order_id = msg.get("taker_order_id") if maker_orders else (msg.get("order_id") or msg.get("orderId"))
    token_id = msg.get("asset_id") or msg.get("asset")
    side = _side(msg.get("side"))
    price = _float(msg.get("price"))
    size = _float(msg.get("size") or msg.get("size_matched") or msg.get("amount"))
    if not order_id or not token_id or side is None or price <= 0 or size <= 0:
        if not fills:
            log.warning("Skipping incomplete fill event", data=json.dumps(msg)[:200])
        return fills
    fills.append(
        Fill(
            order_id=order_id,
            token_id=token_id,
            side=side,
            price=price,
            size=size,
            fee=fill_fee(price, size, fee_rate),
            timestamp=timestamp,
            trade_id=trade_id,
        )
    )
    return fills


def parse_order_status(msg: dict, now: float) -> Optional[OrderStatusEvent]:
    order_id = msg.get("id") or msg.get("order_id") or msg.get("orderId")
    if not order_id:
        return None
    size = _float(msg.get("original_size") or msg.get("size"), 0.0) or None
    size_matched = msg.get("size_matched")
    matched = _float(size_matched) if size_matched is not None else None

    status = str(msg.get("status") or "").upper()
    if not status:
        kind = str(msg.get("type") or "").upper()
        if kind == "CANCELLATION":
            status = "CANCELLED"
        elif kind == "UPDATE" and size is not None and matched is not None and matched >= size:
            status = "MATCHED"
        else:
            status = "LIVE"

    return OrderStatusEvent(
        order_id=order_id,
        status=status,
        token_id=msg.get("asset_id") or msg.get("asset"),
        side=_side(msg.get("side")),
        price=_float(msg.get("price"), 0.0) or None,
        size=size,
        size_matched=matched,
        timestamp=_timestamp(msg.get("timestamp"), now),
    )


class UserFeed(FeedSupervisor):
    """
    Account fills and order statuses.

    The exchange does not replay history on reconnect; the FeedStatus
    event carrying ``reconnected=True`` tells the owner to reconcile.
    """

    name = "user"

    def __init__(
        self,
        queue: "asyncio.Queue[FeedEvent]",
        settings: Settings,
        condition_ids: Optional[list[str]] = None,
        address: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        connect: Optional[Callable[..., Any]] = None,
    ):
        super().__init__(settings.ws_user_url, queue, settings, clock=clock, connect=connect)
        self.condition_ids = list(condition_ids or [])
        self.address = address or settings.wallet_address or ""
        self.api_key = settings.poly_api_key
        self._secret = settings.poly_api_secret.get_secret_value() if settings.poly_api_secret else ""
        self._passphrase = (
            settings.poly_api_passphrase.get_secret_value() if settings.poly_api_passphrase else ""
        )
        self.fills_received = 0

    def auth_headers(self) -> dict[str, str]:
        timestamp = int(self._clock())
        signature = build_hmac_signature(self._secret, timestamp, "GET", USER_WS_PATH)
        return {
            "POLY_ADDRESS": self.address,
            "POLY_API_KEY": self.api_key or "",
            "POLY_PASSPHRASE": self._passphrase,
            "POLY_TIMESTAMP": str(timestamp),
            "POLY_SIGNATURE": signature,
        }

    def connect_kwargs(self) -> dict[str, Any]:
        return {"additional_headers": self.auth_headers()}

    async def subscribe(self, ws: Any) -> None:
        await ws.send(
            json.dumps(
                {
                    "auth": {
                        "apiKey": self.api_key,
                        "secret": self._secret,
                        "passphrase": self._passphrase,
                    },
                    "type": "user",
                    "markets": self.condition_ids,
                }
            )
        )

    async def handle_message(self, raw: str) -> None:
        try:
            msg = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            log.warning("User feed parse error", data=str(raw)[:100])
            return
        events = msg if isinstance(msg, list) else [msg]
        for event in events:
            if isinstance(event, dict):
                await self._handle_event(event)

    async def _handle_event(self, msg: dict) -> None:
        event_type = str(msg.get("event_type") or msg.get("type") or "").lower()
        now = self._clock()

        if event_type in FILL_EVENT_TYPES:
            if str(msg.get("status") or "").upper() in FAILED_TRADE_STATUSES:
                log.warning("Trade failed on chain", trade_id=msg.get("id"), status=msg.get("status"))
                return
            for fill in parse_fills(msg, self.api_key, now):
                self.fills_received += 1
                log.info(
                    "Fill event",
                    order_id=short_id(fill.order_id, 16),
                    token_id=short_id(fill.token_id),
                    side=fill.side.value,
                    price=fill.price,
                    size=fill.size,
                )
                await self.emit(fill)

        elif event_type in {"order", "order_status"}:
            event = parse_order_status(msg, now)
            if event is not None:
                log.info(
                    "Order status",
                    order_id=short_id(event.order_id, 16),
                    status=event.status,
                    side=event.side.value if event.side else None,
                    price=event.price,
                )
                await self.emit(event)
