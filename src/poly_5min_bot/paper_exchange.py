"""
In-memory simulated exchange.

Used for dry runs and tests. Orders that cross the configured book fill
immediately at the book price; everything else rests until filled by
fill_order() or a later book update. Faults (submit errors, rejections,
position drift) can be injected.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from .errors import OrderRejected
from .exchange import Exchange, OrderStatusReport
from .types import Fill, OrderIntent, OrderRecord, OrderStatus, Side, TERMINAL_STATUSES

logger = logging.getLogger(__name__)


@dataclass
class PaperOrder:
    """Order resting on the paper exchange."""
    order_id: str
    intent: OrderIntent
    status: OrderStatus = OrderStatus.ACKNOWLEDGED
    fills: list[Fill] = field(default_factory=list)

    @property
    def filled_quantity(self) -> float:
        return sum(f.quantity for f in self.fills)

    @property
    def remaining(self) -> float:
        return max(0.0, self.intent.size - self.filled_quantity)

    def report(self) -> OrderStatusReport:
        return OrderStatusReport(
            order_id=self.order_id,
            status=self.status,
            filled_quantity=self.filled_quantity,
            fills=list(self.fills),
        )


@dataclass
class _SubmitFault:
    error: Exception
    accept: bool  # order is created before the error is raised


class PaperExchange(Exchange):
    """
    Simulated exchange with idempotency-key support.

    Args:
        idempotent: Whether to honor intent.idempotency_key
        auto_fill: Fill crossing orders on submission
    """

    def __init__(self, idempotent: bool = True, auto_fill: bool = True):
        self._idempotent = idempotent
        self.auto_fill = auto_fill

        self.orders: dict[str, PaperOrder] = {}
        self._by_key: dict[str, str] = {}
        self._books: dict[str, tuple[Optional[float], Optional[float]]] = {}
        self._position_offsets: dict[str, float] = {}

        self._submit_faults: deque[_SubmitFault] = deque()
        self._status_faults: deque[Exception] = deque()
        self._reject_reason: Optional[str] = None

        self._order_seq = 0
        self._fill_seq = 0

        self.submit_calls = 0
        self.status_calls = 0
        self.cancel_calls = 0

    @property
    def supports_idempotency(self) -> bool:
        return self._idempotent

    # ============== Simulation controls ==============

    def set_book(self, token_id: str, best_bid: Optional[float], best_ask: Optional[float]) -> None:
        """Set the top of book used to match new orders."""
        self._books[token_id] = (best_bid, best_ask)

    def inject_submit_error(self, error: Exception, accept: bool = False) -> None:
        """
        Make the next place_order raise an error.

        Args:
            error: Exception to raise
            accept: Create the order before raising (lost response)
        """
        self._submit_faults.append(_SubmitFault(error=error, accept=accept))

    def inject_status_error(self, error: Exception) -> None:
        """Make the next get_order_status raise an error."""
        self._status_faults.append(error)

    def reject_next(self, reason: str = "order rejected") -> None:
        """Reject the next submitted order."""
        self._reject_reason = reason

    def set_position_offset(self, token_id: str, offset: float) -> None:
        """Shift the reported position of a token to simulate drift."""
        self._position_offsets[token_id] = offset

    def fill_order(self, order_id: str, quantity: Optional[float] = None, price: Optional[float] = None) -> Fill:
        """
        Execute (part of) a resting order.

        Args:
            order_id: Order to fill
            quantity: Shares to fill (defaults to the remainder)
            price: Execution price (defaults to the limit price)

        Returns:
            The generated fill
        """
        order = self.orders[order_id]
        if order.status in TERMINAL_STATUSES:
            raise ValueError(f"Order {order_id} is {order.status.name}")
        qty = order.remaining if quantity is None else min(quantity, order.remaining)
        return self._fill(order, qty, order.intent.limit_price if price is None else price)

    def order_count(self) -> int:
        return len(self.orders)

    # ============== Exchange API ==============

    async def place_order(self, intent: OrderIntent) -> OrderStatusReport:
        self.submit_calls += 1

        if self._idempotent and intent.idempotency_key in self._by_key:
            existing = self.orders[self._by_key[intent.idempotency_key]]
            logger.info(f"Paper: duplicate key {intent.idempotency_key}, returning {existing.order_id}")
            return existing.report()

        fault = self._submit_faults.popleft() if self._submit_faults else None
        if fault is not None and not fault.accept:
            raise fault.error

        if self._reject_reason is not None:
            reason, self._reject_reason = self._reject_reason, None
            raise OrderRejected(reason)

        order = self._create(intent)
        if self.auto_fill:
            self._match(order)

        if fault is not None:
            raise fault.error
        return order.report()

    async def get_order_status(self, record: OrderRecord) -> Optional[OrderStatusReport]:
        self.status_calls += 1
        if self._status_faults:
            raise self._status_faults.popleft()

        order_id = record.order_id or self._by_key.get(record.idempotency_key)
        order = self.orders.get(order_id) if order_id else None
        return order.report() if order else None

    async def cancel_order(self, order_id: str) -> bool:
        self.cancel_calls += 1
        order = self.orders.get(order_id)
        if order is None or order.status in TERMINAL_STATUSES:
            return False
        order.status = OrderStatus.CANCELLED
        logger.info(f"Paper: cancelled {order_id}")
        return True

    async def get_position(self, market_id: str, token_id: str) -> float:
        total = 0.0
        for order in self.orders.values():
            if order.intent.token_id == token_id:
                total += sum(f.signed_quantity for f in order.fills)
        return total + self._position_offsets.get(token_id, 0.0)

    # ============== Internals ==============

    def _create(self, intent: OrderIntent) -> PaperOrder:
        self._order_seq += 1
        order = PaperOrder(order_id=f"paper-{self._order_seq}", intent=intent)
        self.orders[order.order_id] = order
        self._by_key[intent.idempotency_key] = order.order_id
        logger.info(
            f"Paper: accepted {order.order_id} {intent.side.name} {intent.size} @ {intent.limit_price}"
        )
        return order

    def _match(self, order: PaperOrder) -> None:
        best_bid, best_ask = self._books.get(order.intent.token_id, (None, None))
        intent = order.intent
        if intent.side == Side.BUY and best_ask is not None and intent.limit_price >= best_ask:
            self._fill(order, order.remaining, best_ask)
        elif intent.side == Side.SELL and best_bid is not None and intent.limit_price <= best_bid:
            self._fill(order, order.remaining, best_bid)

    def _fill(self, order: PaperOrder, quantity: float, price: float) -> Fill:
        self._fill_seq += 1
        fill = Fill(
            fill_id=f"{order.order_id}-f{len(order.fills) + 1}",
            order_id=order.order_id,
            market_id=order.intent.market_id,
            token_id=order.intent.token_id,
            side=order.intent.side,
            quantity=quantity,
            price=price,
            sequence=self._fill_seq,
        )
        order.fills.append(fill)
        if order.remaining <= 1e-9:
            order.status = OrderStatus.FILLED
        else:
            order.status = OrderStatus.PARTIALLY_FILLED
        return fill
