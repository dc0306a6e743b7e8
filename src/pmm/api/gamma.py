"""Gamma API client for market discovery."""

import json
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import aiohttp

from pmm.api.models import Market, Token
from pmm.config import get_settings
from pmm.utils.logging import get_logger

log = get_logger(__name__)


def _json_list(value: Any) -> list:
    """The Gamma API sometimes returns list fields as JSON strings."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return []
    return value or []


class GammaClient:
    """Client for Polymarket Gamma API (market discovery)."""

    def __init__(self, base_url: Optional[str] = None) -> None:
        self.base_url = (base_url or get_settings().gamma_base_url).rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Accept": "application/json"},
                timeout=aiohttp.ClientTimeout(total=30),
            )
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def _get(self, endpoint: str, params: Optional[dict[str, Any]] = None) -> Any:
        """Make a GET request to the API."""
        session = await self._get_session()
        url = f"{self.base_url}{endpoint}"

        try:
            async with session.get(url, params=params) as response:
                response.raise_for_status()
                return await response.json()
        except aiohttp.ClientError as e:
            log.error("Gamma API request failed", url=url, error=str(e))
            raise

    async def get_markets(
        self,
        limit: int = 100,
        offset: int = 0,
        order: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Fetch one page of active, open markets."""
        params: dict[str, Any] = {
            "limit": limit,
            "offset": offset,
            "active": "true",
            "closed": "false",
        }
        if order:
            params["order"] = order
            params["ascending"] = "false"

        data = await self._get("/markets", params)

        # API may return list directly or nested
        if isinstance(data, list):
            return data
        elif isinstance(data, dict) and "markets" in data:
            return data["markets"]
        return []

    async def get_market_by_slug(self, slug: str) -> Optional[Market]:
        """Fetch a single market by its slug."""
        data = await self._get("/markets", {"slug": slug})
        if not isinstance(data, list) or not data:
            return None
        for m_data in data:
            if m_data.get("slug") == slug:
                return self.parse_market(m_data)
        return self.parse_market(data[0])

    def parse_market(self, data: dict[str, Any]) -> Optional[Market]:
        """
        Parse a market dictionary into a Market object.

        Only binary markets are supported: ``clobTokenIds`` must hold exactly
        two ids, YES first.

        Returns:
            Market object or None if parsing fails
        """
        clob_token_ids = _json_list(data.get("clobTokenIds"))
        if len(clob_token_ids) != 2:
            log.debug(
                "Skipping non-binary market",
                market_id=data.get("id"),
                outcomes=len(clob_token_ids),
            )
            return None

        yes_token = Token(token_id=str(clob_token_ids[0]), outcome="Yes")
        no_token = Token(token_id=str(clob_token_ids[1]), outcome="No")
        if not yes_token.token_id or not no_token.token_id:
            return None

        outcome_prices = _json_list(data.get("outcomePrices"))
        if len(outcome_prices) >= 2:
            try:
                yes_token.price = Decimal(str(outcome_prices[0]))
                no_token.price = Decimal(str(outcome_prices[1]))
            except InvalidOperation:
                log.debug("Unparseable outcome prices", market_id=data.get("id"))

        end_date = None
        end_date_raw = data.get("endDate") or data.get("end_date_iso")
        if isinstance(end_date_raw, str):
            if end_date_raw.endswith("Z"):
                end_date_raw = end_date_raw[:-1] + "+00:00"
            try:
                end_date = datetime.fromisoformat(end_date_raw)
            except ValueError as e:
                log.debug("Failed to parse end_date", raw=end_date_raw, error=str(e))

        try:
            volume = Decimal(str(data.get("volume24hrClob") or data.get("volume") or "0"))
            liquidity = Decimal(str(data.get("liquidity") or "0"))
        except InvalidOperation:
            log.warning("Failed to parse market volume", market_id=data.get("id"))
            return None

        return Market(
            id=str(data.get("id", "")),
            condition_id=str(data.get("conditionId", data.get("condition_id", ""))),
            question=data.get("question", ""),
            slug=data.get("slug", ""),
            yes_token=yes_token,
            no_token=no_token,
            volume=volume,
            liquidity=liquidity,
            active=data.get("active", True),
            closed=data.get("closed", False),
            end_date=end_date,
            neg_risk=bool(data.get("negRisk", False)),
        )

    async def discover_markets(
        self,
        min_volume: float = 0,
        limit: int = 2,
        page_size: int = 100,
        max_pages: int = 5,
    ) -> list[Market]:
        """
        Find tradable binary markets, highest volume first.

        Args:
            min_volume: Minimum 24h CLOB volume in USDC
            limit: Number of markets to return
            page_size: Markets per Gamma request
            max_pages: Upper bound on pages scanned

        Returns:
            List of Market objects
        """
        markets: list[Market] = []
        for page in range(max_pages):
            raw_markets = await self.get_markets(
                limit=page_size,
                offset=page * page_size,
                order="volume24hrClob",
            )
            if not raw_markets:
                break

            for raw in raw_markets:
                if raw.get("enableOrderBook") is False:
                    continue
                market = self.parse_market(raw)
                if market is None or market.closed:
                    continue
                if market.volume < Decimal(str(min_volume)):
                    continue
                markets.append(market)

            if len(raw_markets) < page_size:
                break

        markets.sort(key=lambda m: m.volume, reverse=True)
        selected = markets[:limit]
        log.info(
            "Discovered markets",
            candidates=len(markets),
            selected=len(selected),
            min_volume=min_volume,
        )
        return selected

    async def __aenter__(self) -> "GammaClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.close()
