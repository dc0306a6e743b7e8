"""
Async CLOB client for the Polymarket order API.

Native async implementation using httpx for HTTP, with L2 (HMAC) request
authentication and EIP-712 signing offloaded to a small thread pool.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import time
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from pmm.api.models import OrderBook, OrderBookLevel
from pmm.config import get_settings
from pmm.executor.signer import OrderData, OrderSigner, SignedOrder
from pmm.utils.logging import get_logger

log = get_logger(__name__)

# Cursor value the CLOB returns on the last page
END_CURSOR = "LTE="


class ClobError(Exception):
    """Base error for CLOB API calls."""

    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.body = body


class TransientClobError(ClobError):
    """Timeouts, connection failures and 5xx responses."""


class RateLimitedError(ClobError):
    """HTTP 429."""


class AuthenticationError(ClobError):
    """HTTP 401/403: credentials rejected."""


class OrderRejectedError(ClobError):
    """Any other 4xx, e.g. invalid amounts or a crossing price."""


def classify_response(status: int, body: str, context: str) -> Optional[ClobError]:
    """Map an HTTP status to the error taxonomy (None for success)."""
    if 200 <= status < 300:
        return None
    message = f"{context} failed: {status} - {body[:200]}"
    if status == 429:
        return RateLimitedError(message, status, body)
    if status in (401, 403):
        return AuthenticationError(message, status, body)
    if status >= 500:
        return TransientClobError(message, status, body)
    return OrderRejectedError(message, status, body)


class AsyncClobClient:
    """
    Async CLOB client.

    Every call raises a ClobError subclass on failure; callers decide
    whether to skip, retry on the next cycle, or halt.
    """

    # Dedicated thread pool for CPU-bound signing
    _signing_executor: Optional[ThreadPoolExecutor] = None

    @classmethod
    def get_signing_executor(cls) -> ThreadPoolExecutor:
        """Get or create the shared signing thread pool."""
        if cls._signing_executor is None:
            cls._signing_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="signer")
            log.info("Created dedicated signing thread pool", max_workers=2)
        return cls._signing_executor

    def __init__(
        self,
        signer: OrderSigner,
        api_key: str,
        api_secret: str,
        api_passphrase: str,
        host: str = "https://clob.polymarket.com",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.signer = signer
        self.address = signer.address

        self.api_key = api_key
        self.api_secret = api_secret
        self.api_passphrase = api_passphrase

        self.host = host.rstrip("/")

        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=5.0),
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            transport=transport,
        )

        log.info("AsyncClobClient initialized", address=self.address, funder=signer.funder)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def _build_hmac_signature(
        self,
        timestamp: int,
        method: str,
        request_path: str,
        body: Optional[str] = None,
    ) -> str:
        """Build HMAC signature for L2 authentication."""
        return build_hmac_signature(self.api_secret, timestamp, method, request_path, body)

    def _get_l2_headers(self, method: str, path: str, body: Optional[str] = None) -> dict:
        """Generate L2 authentication headers."""
        timestamp = int(time.time())
        signature = self._build_hmac_signature(timestamp, method, path, body)

        return {
            "POLY_ADDRESS": self.address,
            "POLY_SIGNATURE": signature,
            "POLY_TIMESTAMP": str(timestamp),
            "POLY_API_KEY": self.api_key,
            "POLY_PASSPHRASE": self.api_passphrase,
            "Content-Type": "application/json",
        }

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        body: Any = None,
        auth: bool = True,
        context: Optional[str] = None,
    ) -> Any:
        body_str = None
        if body is not None:
            body_str = json.dumps(body, separators=(",", ":"), ensure_ascii=False)
        headers = self._get_l2_headers(method, path, body_str) if auth else None

        try:
            response = await self._client.request(
                method,
                f"{self.host}{path}",
                params=params,
                content=body_str,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise TransientClobError(f"{context or path} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientClobError(f"{context or path} transport error: {e}") from e

        error = classify_response(response.status_code, response.text, context or f"{method} {path}")
        if error is not None:
            raise error

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise TransientClobError(
                f"{context or path} returned invalid JSON", response.status_code, response.text
            ) from e

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def sign_order(self, order: OrderData, neg_risk: bool = False) -> SignedOrder:
        """Sign in the signing pool so the event loop is not blocked."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self.get_signing_executor(), self.signer.sign_order, order, neg_risk
        )

    async def post_order(self, signed_order: SignedOrder, order_type: str = "GTC") -> dict[str, Any]:
        """Submit a signed order. Returns the API response (``orderID`` etc.)."""
        body = {
            "order": signed_order.to_dict(),
            "owner": self.api_key,
            "orderType": order_type,
        }
        t0 = time.time()
        result = await self._request("POST", "/order", body=body, context="Order submission")
        elapsed_ms = int((time.time() - t0) * 1000)
        if elapsed_ms > 1000:
            log.warning("Slow order POST", elapsed_ms=elapsed_ms)

        if isinstance(result, dict) and result.get("success") is False:
            raise OrderRejectedError(
                f"Order rejected: {result.get('errorMsg') or result}", 200, json.dumps(result)
            )
        return result

    async def cancel_orders(self, order_ids: list[str]) -> dict[str, Any]:
        """Cancel orders by id. Unknown or already-gone ids are reported, not raised."""
        if not order_ids:
            return {"canceled": [], "not_canceled": {}}
        result = await self._request("DELETE", "/orders", body=list(order_ids), context="Cancel orders")
        log.debug(
            "Cancel orders response",
            requested=len(order_ids),
            canceled=len(result.get("canceled", []) if isinstance(result, dict) else []),
        )
        return result

    async def cancel_all(self) -> dict[str, Any]:
        """Cancel all open orders for the account."""
        return await self._request("DELETE", "/cancel-all", context="Cancel all")

    async def cancel_market_orders(self, asset_id: str) -> dict[str, Any]:
        """Cancel all open orders for one token."""
        return await self._request(
            "DELETE", "/cancel-market-orders", body={"asset_id": asset_id}, context="Cancel market orders"
        )

    async def get_open_orders(self, asset_id: Optional[str] = None) -> list[dict[str, Any]]:
        """List open orders, following pagination cursors."""
        orders: list[dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            params: dict[str, Any] = {}
            if asset_id:
                params["asset_id"] = asset_id
            if cursor:
                params["next_cursor"] = cursor

            data = await self._request("GET", "/data/orders", params=params or None, context="List orders")
            if isinstance(data, list):
                orders.extend(data)
                break
            orders.extend(data.get("data", []))
            cursor = data.get("next_cursor")
            if not cursor or cursor == END_CURSOR:
                break
        return orders

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def _balance_params(self, asset_type: str, token_id: Optional[str]) -> dict[str, Any]:
        params: dict[str, Any] = {
            "asset_type": asset_type,
            "signature_type": int(self.signer.signature_type),
        }
        if token_id:
            params["token_id"] = token_id
        return params

    async def update_balance_allowance(
        self, asset_type: str = "COLLATERAL", token_id: Optional[str] = None
    ) -> dict[str, Any]:
        """Ask the exchange to refresh/top up the allowance it tracks."""
        return await self._request(
            "GET",
            "/balance-allowance/update",
            params=self._balance_params(asset_type, token_id),
            context="Update balance allowance",
        )

    # ------------------------------------------------------------------
    # Market data (public)
    # ------------------------------------------------------------------

    async def get_order_book(self, token_id: str) -> OrderBook:
        """Fetch an order book snapshot."""
        data = await self._request(
            "GET", "/book", params={"token_id": token_id}, auth=False, context="Get order book"
        )
        return parse_order_book(token_id, data)


def build_hmac_signature(
    api_secret: str,
    timestamp: int,
    method: str,
    request_path: str,
    body: Optional[str] = None,
) -> str:
    """HMAC-SHA256 over timestamp + method + path [+ body] with the base64 secret."""
    secret_bytes = base64.urlsafe_b64decode(api_secret)
    message = f"{timestamp}{method}{request_path}"
    if body:
        message += body

    h = hmac.new(secret_bytes, message.encode("utf-8"), hashlib.sha256)
    return base64.urlsafe_b64encode(h.digest()).decode("utf-8")


def parse_order_book(token_id: str, data: dict[str, Any]) -> OrderBook:
    """Parse a /book response."""

    def levels(raw: list) -> list[OrderBookLevel]:
        parsed = []
        for level in raw or []:
            try:
                parsed.append(
                    OrderBookLevel(price=Decimal(str(level["price"])), size=Decimal(str(level["size"])))
                )
            except (KeyError, InvalidOperation):
                continue
        return parsed

    tick_size = None
    if data.get("tick_size") is not None:
        try:
            tick_size = Decimal(str(data["tick_size"]))
        except InvalidOperation:
            tick_size = None

    return OrderBook(
        token_id=token_id,
        bids=levels(data.get("bids", [])),
        asks=levels(data.get("asks", [])),
        tick_size=tick_size,
    )


def create_async_clob_client(signer: Optional[OrderSigner] = None) -> Optional[AsyncClobClient]:
    """Create an AsyncClobClient from settings."""
    settings = get_settings()

    if not settings.is_trading_enabled():
        log.warning("Missing API credentials for async CLOB client")
        return None

    return AsyncClobClient(
        signer=signer or OrderSigner(),
        api_key=settings.poly_api_key,
        api_secret=settings.poly_api_secret.get_secret_value(),
        api_passphrase=settings.poly_api_passphrase.get_secret_value(),
        host=settings.clob_base_url,
    )
