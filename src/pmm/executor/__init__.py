"""Exchange and chain access for pmm."""

from pmm.executor.async_clob import (
    AsyncClobClient,
    AuthenticationError,
    ClobError,
    OrderRejectedError,
    RateLimitedError,
    TransientClobError,
    create_async_clob_client,
)
from pmm.executor.signer import OrderData, OrderSide, OrderSigner, SignatureType, SignedOrder

__all__ = [
    "AsyncClobClient",
    "AuthenticationError",
    "ClobError",
    "OrderRejectedError",
    "RateLimitedError",
    "TransientClobError",
    "create_async_clob_client",
    "OrderData",
    "OrderSide",
    "OrderSigner",
    "SignatureType",
    "SignedOrder",
]
