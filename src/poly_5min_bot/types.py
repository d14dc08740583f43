"""Type definitions for the five-minute bot."""

import hashlib
from dataclasses import dataclass, field, replace
from enum import Enum, auto
from typing import Optional, Union

from .time_utils import DEFAULT_WINDOW_MS, get_window_boundaries_ms, get_window_id

__all__ = [
    "MarketStatus", "Side", "OrderStatus", "OverrunPolicy", "CycleOutcome",
    "TERMINAL_STATUSES",
    "Window", "MarketRef", "MarketSnapshot", "Position", "Fill",
    "OrderIntent", "NoOp", "Decision", "OrderRecord", "CycleReport",
    "make_idempotency_key",
]


# ============== Enums ==============

class MarketStatus(Enum):
    """Lifecycle of a five-minute market."""
    OPEN = auto()
    CLOSING = auto()  # Inside the wind-down period before window end
    RESOLVED = auto()


class Side(Enum):
    """Order side."""
    BUY = auto()
    SELL = auto()


class OrderStatus(Enum):
    """Submission state of an order intent."""
    PENDING = auto()
    ACKNOWLEDGED = auto()
    PARTIALLY_FILLED = auto()
    FILLED = auto()
    CANCELLED = auto()
    REJECTED = auto()
    UNKNOWN = auto()  # Ambiguous outcome; resolved by status query only


TERMINAL_STATUSES = frozenset({
    OrderStatus.FILLED,
    OrderStatus.CANCELLED,
    OrderStatus.REJECTED,
})


class OverrunPolicy(Enum):
    """What to do when a cycle is still running at the next boundary."""
    CANCEL_PRIOR = "cancel_prior"
    SKIP_NEW = "skip_new"


class CycleOutcome(Enum):
    """Final outcome of one cycle."""
    TRADED = "traded"
    NO_TRADE = "no_trade"
    SKIPPED = "skipped"
    ABORTED = "aborted"
    FAILED = "failed"
    HALTED = "halted"


# ============== Market Types ==============

@dataclass(frozen=True, slots=True)
class Window:
    """One resolution window."""
    start_ms: int
    end_ms: int

    @classmethod
    def containing(cls, ts_ms: int, window_ms: int = DEFAULT_WINDOW_MS) -> "Window":
        start, end = get_window_boundaries_ms(ts_ms, window_ms)
        return cls(start_ms=start, end_ms=end)

    @property
    def window_id(self) -> str:
        return get_window_id(self.start_ms, self.end_ms - self.start_ms)

    @property
    def length_ms(self) -> int:
        return self.end_ms - self.start_ms

    def is_closed(self, now_ms: int) -> bool:
        return now_ms >= self.end_ms

    def ms_remaining(self, now_ms: int) -> int:
        return max(0, self.end_ms - now_ms)


@dataclass(frozen=True, slots=True)
class MarketRef:
    """A concrete market resolved for one (symbol, window) pair."""
    symbol: str
    market_id: str  # condition id
    token_id: str  # "Up" outcome token
    slug: str
    window: Window
    closed: bool = False
    tick_size: float = 0.01
    down_token_id: str = ""  # complementary "Down" outcome token

    @property
    def token_ids(self) -> tuple[str, ...]:
        """Outcome tokens of the market, Up first."""
        if self.down_token_id:
            return (self.token_id, self.down_token_id)
        return (self.token_id,)


@dataclass(frozen=True, slots=True)
class MarketSnapshot:
    """
    Timestamped view of one market.

    ts_ms is the exchange timestamp of the book, not the local receipt
    time, so staleness reflects how old the prices really are. With both
    books fetched it is the older of the two. A book without an exchange
    timestamp has ts_ms 0 and is always stale.

    best_bid/best_ask are the Up token's book; the down_* fields carry the
    Down token's book when the market has one.
    """
    market_id: str
    token_id: str
    symbol: str
    window_start_ms: int
    window_end_ms: int
    best_bid: Optional[float]
    best_ask: Optional[float]
    last_trade_price: Optional[float]
    status: MarketStatus
    ts_ms: int
    tick_size: float = 0.01
    down_token_id: str = ""
    down_best_bid: Optional[float] = None
    down_best_ask: Optional[float] = None

    @property
    def token_ids(self) -> tuple[str, ...]:
        if self.down_token_id:
            return (self.token_id, self.down_token_id)
        return (self.token_id,)

    def book(self, token_id: str) -> tuple[Optional[float], Optional[float]]:
        """
        Top of book of one outcome token.

        Returns:
            (best_bid, best_ask)

        Raises:
            KeyError: if the token is not part of this market
        """
        if token_id == self.token_id:
            return self.best_bid, self.best_ask
        if self.down_token_id and token_id == self.down_token_id:
            return self.down_best_bid, self.down_best_ask
        raise KeyError(token_id)

    def age_ms(self, now_ms: int) -> int:
        return max(0, now_ms - self.ts_ms)

    def is_stale(self, now_ms: int, threshold_ms: int) -> bool:
        return self.ts_ms <= 0 or self.age_ms(now_ms) > threshold_ms


# ============== Position / Fill ==============

@dataclass(slots=True)
class Position:
    """Believed exposure in one outcome token of a market. Written only by the ledger."""
    market_id: str
    token_id: str = ""
    quantity: float = 0.0
    avg_entry_price: float = 0.0
    realized_pnl: float = 0.0
    fill_count: int = 0

    @property
    def is_flat(self) -> bool:
        return abs(self.quantity) < 1e-9

    def unrealized_pnl(self, mark_price: Optional[float]) -> float:
        """Unrealized PnL at the given mark price (0 without a mark)."""
        if mark_price is None or self.is_flat:
            return 0.0
        return (mark_price - self.avg_entry_price) * self.quantity

    def copy(self) -> "Position":
        return replace(self)


@dataclass(frozen=True, slots=True)
class Fill:
    """A confirmed (partial or complete) execution reported by the exchange."""
    fill_id: str
    order_id: str
    market_id: str
    token_id: str
    side: Side
    quantity: float
    price: float
    sequence: int = 0
    ts_ms: int = 0

    @property
    def signed_quantity(self) -> float:
        return self.quantity if self.side == Side.BUY else -self.quantity


# ============== Decision Types ==============

def make_idempotency_key(
    market_id: str,
    window_start_ms: int,
    strategy_version: str,
    token_id: str = "",
    slot: int = 0,
) -> str:
    """
    Deterministic key for the intent of one market in one window.

    The same (market, window, strategy version) always yields the same
    key, so a resubmitted intent can be recognized as a duplicate. token_id
    separates the legs of a two-outcome trade; slot numbers the
    re-evaluations inside the window (0 for the opening one).
    """
    raw = f"{market_id}|{window_start_ms}|{strategy_version}|{token_id}|{slot}".encode()
    return hashlib.sha256(raw).hexdigest()[:32]


@dataclass(frozen=True, slots=True)
class OrderIntent:
    """Decision engine output. Superseded by later intents, never mutated."""
    market_id: str
    token_id: str
    side: Side
    size: float
    limit_price: float
    idempotency_key: str
    window_start_ms: int
    strategy_version: str
    reduce_only: bool = False

    @property
    def signed_size(self) -> float:
        return self.size if self.side == Side.BUY else -self.size


@dataclass(frozen=True, slots=True)
class NoOp:
    """Decision to do nothing this cycle."""
    reason: str


Decision = Union[OrderIntent, NoOp]


# ============== Order Record ==============

@dataclass
class OrderRecord:
    """
    Submission state of one OrderIntent.

    Only the execution engine writes these.
    """
    intent: OrderIntent
    status: OrderStatus = OrderStatus.PENDING
    order_id: Optional[str] = None
    filled_quantity: float = 0.0
    applied_fill_ids: set[str] = field(default_factory=set)
    created_ms: int = 0
    updated_ms: int = 0
    submitted_ms: int = 0
    last_error: Optional[str] = None

    @property
    def idempotency_key(self) -> str:
        return self.intent.idempotency_key

    @property
    def market_id(self) -> str:
        return self.intent.market_id

    @property
    def token_id(self) -> str:
        return self.intent.token_id

    @property
    def remaining(self) -> float:
        return max(0.0, self.intent.size - self.filled_quantity)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        intent = self.intent
        return {
            "idempotency_key": intent.idempotency_key,
            "market_id": intent.market_id,
            "token_id": intent.token_id,
            "side": intent.side.name,
            "size": intent.size,
            "limit_price": intent.limit_price,
            "window_start_ms": intent.window_start_ms,
            "strategy_version": intent.strategy_version,
            "reduce_only": intent.reduce_only,
            "status": self.status.name,
            "order_id": self.order_id,
            "filled_quantity": self.filled_quantity,
            "applied_fill_ids": sorted(self.applied_fill_ids),
            "created_ms": self.created_ms,
            "updated_ms": self.updated_ms,
            "submitted_ms": self.submitted_ms,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OrderRecord":
        intent = OrderIntent(
            market_id=data["market_id"],
            token_id=data["token_id"],
            side=Side[data["side"]],
            size=float(data["size"]),
            limit_price=float(data["limit_price"]),
            idempotency_key=data["idempotency_key"],
            window_start_ms=int(data["window_start_ms"]),
            strategy_version=data["strategy_version"],
            reduce_only=bool(data.get("reduce_only", False)),
        )
        return cls(
            intent=intent,
            status=OrderStatus[data["status"]],
            order_id=data.get("order_id"),
            filled_quantity=float(data.get("filled_quantity", 0.0)),
            applied_fill_ids=set(data.get("applied_fill_ids", [])),
            created_ms=int(data.get("created_ms", 0)),
            updated_ms=int(data.get("updated_ms", 0)),
            submitted_ms=int(data.get("submitted_ms", 0)),
            last_error=data.get("last_error"),
        )


# ============== Telemetry ==============

@dataclass(slots=True)
class CycleReport:
    """Structured per-cycle event handed to the telemetry sink."""
    window_id: str
    symbol: str
    outcome: CycleOutcome = CycleOutcome.NO_TRADE
    market_id: str = ""
    decision: str = ""
    order_status: Optional[str] = None
    latency_ms: int = 0
    error: Optional[str] = None
    started_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "window": self.window_id,
            "market": self.symbol,
            "market_id": self.market_id,
            "outcome": self.outcome.value,
            "decision": self.decision,
            "order_status": self.order_status,
            "latency_ms": self.latency_ms,
            "error": self.error,
            "started_ms": self.started_ms,
        }
