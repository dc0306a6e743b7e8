"""Order construction and client-order-id idempotency."""

import hashlib
import random
import time
from typing import Callable, Optional

from pmm.executor.signer import OrderData, OrderSide, SignatureType
from pmm.market_maker.amounts import build_amounts
from pmm.market_maker.errors import DuplicateClientOrderIdError
from pmm.market_maker.types import OrderRequest, Side
from pmm.utils.logging import get_logger

log = get_logger(__name__)


class ClientOrderIdLedger:
    """
    Tracks client order ids.

    ``placed`` holds every id ever submitted. ``live`` holds ids an
    authoritative signal (exchange ack, feed status, reconciliation listing)
    has confirmed as resting or terminal. Only confirmed ids are ever
    evicted from ``placed``; an unconfirmed submission blocks its id forever.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self.placed: set[str] = set()
        self.live: set[str] = set()
        self._placed_at: dict[str, float] = {}

    def is_placed(self, client_order_id: str) -> bool:
        return client_order_id in self.placed

    def mark_placed(self, client_order_id: str) -> None:
        """Record a submission. Raises if the id was submitted before."""
        if client_order_id in self.placed:
            raise DuplicateClientOrderIdError(client_order_id)
        self.placed.add(client_order_id)
        self._placed_at[client_order_id] = self._clock()

    def confirm(self, client_order_id: str) -> None:
        """An authoritative signal saw this order as live or terminal."""
        if client_order_id in self.placed:
            self.live.add(client_order_id)

    def unconfirm(self, client_order_ids: list[str]) -> None:
        """Drop ids from ``live`` without touching ``placed``."""
        for cid in client_order_ids:
            self.live.discard(cid)

    def cleanup(self, max_age_seconds: float) -> int:
        """Evict confirmed ids older than ``max_age_seconds``."""
        cutoff = self._clock() - max_age_seconds
        evictable = [
            cid for cid in self.live
            if self._placed_at.get(cid, cutoff) <= cutoff
        ]
        for cid in evictable:
            self.live.discard(cid)
            self.placed.discard(cid)
            self._placed_at.pop(cid, None)
        if evictable:
            log.debug(
                "Client order ids evicted",
                evicted=len(evictable),
                placed=len(self.placed),
                live=len(self.live),
            )
        return len(evictable)


class OrderBuilder:
    """Builds exchange orders from validated requests."""

    def __init__(
        self,
        ledger: ClientOrderIdLedger,
        maker_address: str,
        signer_address: str,
        signature_type: int = SignatureType.EOA,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        self.ledger = ledger
        self.maker_address = maker_address
        self.signer_address = signer_address
        self.signature_type = SignatureType(signature_type)
        self._clock = clock
        self._rng = rng or random.SystemRandom()

    def new_salt(self) -> int:
        """Millisecond timestamp with a random low part."""
        return int(self._clock() * 1000) * 1_000_000 + self._rng.randrange(1_000_000)

    def client_order_id(self, side: Side, token_id: str, price: float) -> str:
        """Id for a free-standing quote."""
        ms = int(self._clock() * 1000)
        suffix = f"{self._rng.getrandbits(32):08x}"
        return f"{side.value}-{token_id[:8]}-{price:.4f}-{ms}-{suffix}"

    @staticmethod
    def hedge_client_order_id(parent_fill_key: str, side: Side, size: float) -> str:
        """Content-addressed id: the same fill always yields the same hedge id."""
        digest = hashlib.sha256(f"{parent_fill_key}:{side.value}:{size:.2f}".encode()).hexdigest()
        return f"hedge-{digest[:16]}"

    def quote_request(self, token_id: str, side: Side, price: float, size: float) -> OrderRequest:
        return OrderRequest(
            token_id=token_id,
            side=side,
            price=price,
            size=size,
            client_order_id=self.client_order_id(side, token_id, price),
        )

    def hedge_request(
        self,
        token_id: str,
        side: Side,
        price: float,
        size: float,
        parent_fill_key: str,
    ) -> OrderRequest:
        return OrderRequest(
            token_id=token_id,
            side=side,
            price=price,
            size=size,
            client_order_id=self.hedge_client_order_id(parent_fill_key, side, size),
            parent_fill_id=parent_fill_key,
        )

    def build(self, request: OrderRequest, fee_rate_bps: int = 0) -> OrderData:
        """
        Quantize a request into signable order data.

        Raises DuplicateClientOrderIdError if the request's id was already
        submitted.
        """
        if self.ledger.is_placed(request.client_order_id):
            raise DuplicateClientOrderIdError(request.client_order_id)

        amounts = build_amounts(request.side, request.price, request.size)
        return OrderData(
            salt=self.new_salt(),
            maker=self.maker_address,
            signer=self.signer_address,
            token_id=request.token_id,
            maker_amount=amounts.maker_amount,
            taker_amount=amounts.taker_amount,
            side=OrderSide.BUY if request.side == Side.BUY else OrderSide.SELL,
            fee_rate_bps=fee_rate_bps,
            signature_type=self.signature_type,
        )
