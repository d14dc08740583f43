"""Gamma API client for five-minute market discovery."""

import logging
from typing import Any

import orjson

from .errors import ExchangeRequestError
from .http_client import JsonHttpClient
from .types import MarketRef, Window

logger = logging.getLogger(__name__)


class GammaAPIError(ExchangeRequestError):
    """Error from Gamma API."""
    pass


def _as_list(value: Any) -> list:
    """Gamma returns some list fields as JSON-encoded strings."""
    if isinstance(value, str):
        return orjson.loads(value) if value else []
    return list(value or [])


class MarketDiscovery(JsonHttpClient):
    """
    Resolves the market traded for a (symbol, window) pair.

    Five-minute up/down markets are published as one event per window with
    the slug "{symbol}-updown-5m-{window_start_unix_seconds}".
    """

    DEFAULT_BASE_URL = "https://gamma-api.polymarket.com"

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        slug_template: str = "{symbol}-updown-5m-{window_start_s}",
        **kwargs,
    ):
        super().__init__(base_url, **kwargs)
        self.slug_template = slug_template

    def slug_for(self, symbol: str, window: Window) -> str:
        """
        Derive the event slug of a window.

        Example: btc-updown-5m-1769090700
        """
        return self.slug_template.format(symbol=symbol.lower(), window_start_s=window.start_ms // 1000)

    async def find_market(self, symbol: str, window: Window) -> MarketRef:
        """
        Find the market for a symbol and window.

        Args:
            symbol: Underlying symbol (btc, eth, ...)
            window: Target window

        Returns:
            MarketRef with the "Up" and "Down" tokens

        Raises:
            GammaAPIError: if no tradable market is listed
        """
        slug = self.slug_for(symbol, window)
        data = await self.get_json("/events", params={"slug": slug})

        events = data if isinstance(data, list) else ([data] if data else [])
        if not events:
            raise GammaAPIError(f"No event found for {slug}")

        markets = events[0].get("markets", [])
        if not markets:
            raise GammaAPIError(f"No markets in event {slug}")

        market = markets[0]
        token_ids = _as_list(market.get("clobTokenIds"))
        outcomes = _as_list(market.get("outcomes"))
        if len(token_ids) < 2:
            raise GammaAPIError(f"Market {slug} has no CLOB tokens")

        up_idx = self._up_index(outcomes)
        down_idx = 1 if up_idx == 0 else 0
        tick_size = float(market.get("orderPriceMinTickSize") or 0.01)

        ref = MarketRef(
            symbol=symbol.lower(),
            market_id=market.get("conditionId", ""),
            token_id=str(token_ids[up_idx]),
            slug=slug,
            window=window,
            closed=bool(market.get("closed", False)),
            tick_size=tick_size,
            down_token_id=str(token_ids[down_idx]),
        )
        logger.debug(
            f"Resolved {slug} -> {ref.market_id} "
            f"(up {ref.token_id[:16]}..., down {ref.down_token_id[:16]}...)"
        )
        return ref

    @staticmethod
    def _up_index(outcomes: list) -> int:
        # clobTokenIds follows the order of outcomes
        for i, outcome in enumerate(outcomes):
            if str(outcome).lower() in ("up", "yes"):
                return i
        return 0

    async def healthcheck(self) -> bool:
        """
        Check if the Gamma API is reachable.

        Returns:
            True if healthy
        """
        try:
            await self._request_json("/events", params={"limit": 1})
            return True
        except Exception as e:
            logger.warning(f"Gamma healthcheck failed: {e}")
            return False
