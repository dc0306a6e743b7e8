"""Polymarket API clients."""

from pmm.api.gamma import GammaClient
from pmm.api.models import Market, OrderBook, OrderBookLevel, Token

__all__ = ["GammaClient", "Market", "OrderBook", "OrderBookLevel", "Token"]
