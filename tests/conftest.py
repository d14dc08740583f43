"""Shared fixtures: fake clock, paper exchange wiring and sample markets."""

import asyncio
from typing import Optional

import pytest

from poly_5min_bot.decision import DecisionEngine, RiskLimits
from poly_5min_bot.execution import OrderExecutionEngine
from poly_5min_bot.ledger import PositionLedger
from poly_5min_bot.paper_exchange import PaperExchange
from poly_5min_bot.strategy import ThresholdStrategy
from poly_5min_bot.telemetry import TelemetrySink
from poly_5min_bot.time_utils import Clock
from poly_5min_bot.types import (
    MarketRef, MarketSnapshot, MarketStatus, OrderIntent, Side, Window,
    make_idempotency_key,
)

# 2026-01-22T14:05:00Z, a window boundary
T0 = 1769090700000
WINDOW_MS = 300_000


class FakeClock(Clock):
    """Manually advanced clock. sleep() advances time instantly."""

    def __init__(self, start_ms: int = T0):
        self.now = start_ms
        self.sleeps: list[float] = []

    def now_ms(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += int(seconds * 1000)
        await asyncio.sleep(0)


class RecordingSink(TelemetrySink):
    """Keeps every emitted report."""

    def __init__(self):
        self.reports = []

    def emit(self, report) -> None:
        self.reports.append(report)


def make_market(
    symbol: str = "btc",
    start_ms: int = T0,
    closed: bool = False,
    market_id: Optional[str] = None,
    two_sided: bool = False,
) -> MarketRef:
    window = Window(start_ms=start_ms, end_ms=start_ms + WINDOW_MS)
    return MarketRef(
        symbol=symbol,
        market_id=market_id or f"0x{symbol}{start_ms // 1000}",
        token_id=f"tok-{symbol}-{start_ms // 1000}",
        slug=f"{symbol}-updown-5m-{start_ms // 1000}",
        window=window,
        closed=closed,
        down_token_id=f"tok-{symbol}-{start_ms // 1000}-down" if two_sided else "",
    )


def make_snapshot(
    market: Optional[MarketRef] = None,
    best_bid: Optional[float] = 0.40,
    best_ask: Optional[float] = 0.42,
    status: MarketStatus = MarketStatus.OPEN,
    ts_ms: Optional[int] = None,
    down_bid: Optional[float] = None,
    down_ask: Optional[float] = None,
) -> MarketSnapshot:
    market = market or make_market()
    return MarketSnapshot(
        market_id=market.market_id,
        token_id=market.token_id,
        symbol=market.symbol,
        window_start_ms=market.window.start_ms,
        window_end_ms=market.window.end_ms,
        best_bid=best_bid,
        best_ask=best_ask,
        last_trade_price=None,
        status=status,
        ts_ms=market.window.start_ms + 1_000 if ts_ms is None else ts_ms,
        down_token_id=market.down_token_id,
        down_best_bid=down_bid,
        down_best_ask=down_ask,
    )


def make_intent(
    market: Optional[MarketRef] = None,
    side: Side = Side.BUY,
    size: float = 10.0,
    price: float = 0.45,
    version: str = "threshold-v1",
) -> OrderIntent:
    market = market or make_market()
    return OrderIntent(
        market_id=market.market_id,
        token_id=market.token_id,
        side=side,
        size=size,
        limit_price=price,
        idempotency_key=make_idempotency_key(
            market.market_id, market.window.start_ms, version, market.token_id
        ),
        window_start_ms=market.window.start_ms,
        strategy_version=version,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def market():
    return make_market()


@pytest.fixture
def limits():
    return RiskLimits(max_position=100.0, max_order_size=50.0, min_order_size=5.0)


@pytest.fixture
def paper():
    return PaperExchange()


@pytest.fixture
def ledger():
    return PositionLedger()


@pytest.fixture
def engine(paper, ledger, limits, clock):
    return OrderExecutionEngine(
        exchange=paper,
        ledger=ledger,
        limits=limits,
        clock=clock,
        max_attempts=3,
        backoff_base_seconds=0.01,
        backoff_max_seconds=0.05,
    )


@pytest.fixture
def decision_engine(limits):
    return DecisionEngine(
        strategy=ThresholdStrategy(),
        limits=limits,
        strategy_version="threshold-v1",
        stale_threshold_ms=150_000,
    )
