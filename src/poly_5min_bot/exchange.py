"""Exchange interface used by the execution engine."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from .types import Fill, OrderIntent, OrderRecord, OrderStatus


@dataclass
class OrderStatusReport:
    """
    Exchange view of one order.

    fills lists every execution the exchange knows of for the order, each
    with its exchange sequence number. Consumers deduplicate by fill id.
    """
    order_id: str
    status: OrderStatus
    filled_quantity: float = 0.0
    fills: list[Fill] = field(default_factory=list)
    error_msg: str = ""


class Exchange(ABC):
    """
    Abstract exchange.

    Error contract for every method:
    - TransientNetworkError: retryable; request_sent=False means the call
      provably never reached the exchange
    - AmbiguousOrderOutcome: the call may or may not have taken effect
    - AuthError: credentials rejected
    - OrderRejected: the exchange definitively refused the order
    - ExchangeRequestError: any other non-retryable failure
    """

    @property
    @abstractmethod
    def supports_idempotency(self) -> bool:
        """Whether place_order deduplicates on intent.idempotency_key."""
        ...

    @abstractmethod
    async def place_order(self, intent: OrderIntent) -> OrderStatusReport:
        """
        Submit a limit order for an intent.

        Returns:
            Report with the exchange order id
        """
        ...

    @abstractmethod
    async def get_order_status(self, record: OrderRecord) -> Optional[OrderStatusReport]:
        """
        Query the state of an order.

        Records without an order id (ambiguous submissions) are located by
        whatever means the exchange offers.

        Returns:
            Report, or None if the exchange has no such order
        """
        ...

    @abstractmethod
    async def cancel_order(self, order_id: str) -> bool:
        """
        Request cancellation.

        Returns:
            True only if the exchange confirmed the cancellation
        """
        ...

    @abstractmethod
    async def get_position(self, market_id: str, token_id: str) -> float:
        """Exchange-reported position in shares."""
        ...

    async def initialize(self) -> None:
        """Connect and authenticate. Default is no-op."""
        pass

    async def close(self) -> None:
        """Release resources. Default is no-op."""
        pass
