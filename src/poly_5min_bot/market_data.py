"""CLOB market data client."""

import logging
from typing import Optional

from .errors import StaleDataError
from .http_client import JsonHttpClient
from .time_utils import Clock
from .types import MarketRef, MarketSnapshot, MarketStatus

logger = logging.getLogger(__name__)


def derive_status(market: MarketRef, now_ms: int, wind_down_ms: int) -> MarketStatus:
    """
    Market status at a point in time.

    RESOLVED once the market is closed or its window has ended, CLOSING
    inside the wind-down period before the end, otherwise OPEN.
    """
    if market.closed or market.window.is_closed(now_ms):
        return MarketStatus.RESOLVED
    if market.window.ms_remaining(now_ms) <= wind_down_ms:
        return MarketStatus.CLOSING
    return MarketStatus.OPEN


def _best(levels: list, highest: bool) -> Optional[float]:
    prices = [float(level["price"]) for level in levels or [] if float(level.get("size", 0)) > 0]
    if not prices:
        return None
    return max(prices) if highest else min(prices)


def _book_ts_ms(book: dict) -> int:
    """Exchange timestamp of a book in ms, 0 when the book carries none."""
    ts = int(float(book.get("timestamp") or 0))
    if 0 < ts < 10**12:
        ts *= 1000  # seconds
    return max(0, ts)


class MarketDataClient(JsonHttpClient):
    """
    Fetches order book state for the outcome tokens of a market.

    Snapshots are stamped with the books' exchange timestamp, so their age
    reflects how old the prices really are. A book without one is stale.
    """

    DEFAULT_BASE_URL = "https://clob.polymarket.com"

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        clock: Optional[Clock] = None,
        stale_threshold_ms: int = 150_000,
        wind_down_ms: int = 60_000,
        **kwargs,
    ):
        """
        Initialize the client.

        Args:
            base_url: CLOB REST base URL
            clock: Time source
            stale_threshold_ms: Maximum snapshot age usable for trading
            wind_down_ms: Period before window end reported as CLOSING
            **kwargs: Passed to JsonHttpClient (timeouts, retries)
        """
        self.clock = clock or Clock()
        kwargs.setdefault("sleep", self.clock.sleep)
        super().__init__(base_url, **kwargs)
        self.stale_threshold_ms = stale_threshold_ms
        self.wind_down_ms = wind_down_ms

    async def fetch(self, market: MarketRef) -> MarketSnapshot:
        """
        Fetch the current snapshot of a market.

        Args:
            market: Resolved market

        Returns:
            MarketSnapshot

        Raises:
            TransientNetworkError: after max_attempts transient failures
            AuthError: on 401/403
            ExchangeRequestError: on any other 4xx
        """
        book = await self.get_json("/book", params={"token_id": market.token_id}) or {}
        down_book = {}
        if market.down_token_id:
            down_book = await self.get_json("/book", params={"token_id": market.down_token_id}) or {}
        last = await self.get_json(
            "/last-trade-price", params={"token_id": market.token_id}, allow_not_found=True
        )
        now_ms = self.clock.now_ms()

        ts_ms = _book_ts_ms(book)
        if market.down_token_id:
            ts_ms = min(ts_ms, _book_ts_ms(down_book))

        last_price = None
        if last and last.get("price") not in (None, ""):
            last_price = float(last["price"])

        snapshot = MarketSnapshot(
            market_id=market.market_id,
            token_id=market.token_id,
            symbol=market.symbol,
            window_start_ms=market.window.start_ms,
            window_end_ms=market.window.end_ms,
            best_bid=_best(book.get("bids"), highest=True),
            best_ask=_best(book.get("asks"), highest=False),
            last_trade_price=last_price,
            status=derive_status(market, now_ms, self.wind_down_ms),
            ts_ms=ts_ms,
            tick_size=float(book.get("tick_size") or market.tick_size),
            down_token_id=market.down_token_id,
            down_best_bid=_best(down_book.get("bids"), highest=True),
            down_best_ask=_best(down_book.get("asks"), highest=False),
        )
        logger.debug(
            f"{market.symbol} book: bid={snapshot.best_bid} ask={snapshot.best_ask} "
            f"last={snapshot.last_trade_price} age={snapshot.age_ms(now_ms)}ms"
        )
        return snapshot

    def check_fresh(self, snapshot: MarketSnapshot, now_ms: int) -> None:
        """
        Raises:
            StaleDataError: if the snapshot is older than the threshold
        """
        if snapshot.ts_ms <= 0:
            raise StaleDataError(f"{snapshot.symbol} book has no exchange timestamp")
        if snapshot.is_stale(now_ms, self.stale_threshold_ms):
            raise StaleDataError(
                f"{snapshot.symbol} snapshot is {snapshot.age_ms(now_ms)}ms old "
                f"(threshold {self.stale_threshold_ms}ms)"
            )
