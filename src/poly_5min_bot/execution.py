"""
Order execution engine.

Turns OrderIntents into exchange orders and tracks each one through its
state machine:

    PENDING --ack--> ACKNOWLEDGED --fill--> PARTIALLY_FILLED --fill--> FILLED
    PENDING --timeout--> UNKNOWN --status query--> any resolved state
    ACKNOWLEDGED | PARTIALLY_FILLED --cancel confirmed--> CANCELLED
    any non-terminal --exchange rejects--> REJECTED

UNKNOWN is never treated as success or failure. It is resolved by a status
query during reconcile(), never by blind resubmission.
"""

import asyncio
import logging
from typing import Iterable, Optional

from .decision import RiskLimits
from .errors import (
    AmbiguousOrderOutcome, AuthError, BotError, ExchangeRequestError, IdempotencyConflict,
    InvalidTransition, OrderRejected, RiskLimitExceeded, TransientNetworkError,
)
from .exchange import Exchange, OrderStatusReport
from .journal_sqlite import EventJournalSQLite
from .ledger import PositionLedger
from .time_utils import Clock, utc_day
from .types import OrderIntent, OrderRecord, OrderStatus, Side
from .util import ExponentialBackoff, retry_transient

logger = logging.getLogger(__name__)

_EPS = 1e-9

_ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.ACKNOWLEDGED, OrderStatus.UNKNOWN, OrderStatus.REJECTED},
    OrderStatus.ACKNOWLEDGED: {
        OrderStatus.PARTIALLY_FILLED, OrderStatus.FILLED,
        OrderStatus.CANCELLED, OrderStatus.REJECTED,
    },
    OrderStatus.PARTIALLY_FILLED: {
        OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.REJECTED,
    },
    OrderStatus.UNKNOWN: {
        OrderStatus.ACKNOWLEDGED, OrderStatus.PARTIALLY_FILLED, OrderStatus.FILLED,
        OrderStatus.CANCELLED, OrderStatus.REJECTED,
    },
    OrderStatus.FILLED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.REJECTED: set(),
}


def check_transition(current: OrderStatus, new: OrderStatus) -> None:
    """
    Raises:
        InvalidTransition: if current -> new is not an edge of the state machine
    """
    if new not in _ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(f"{current.name} -> {new.name}")


class OrderExecutionEngine:
    """
    Sole writer of OrderRecord.

    Submission is idempotent per intent.idempotency_key: the first call
    creates the record, later calls return it without touching the
    exchange. Seen keys survive restarts through the journal.
    """

    def __init__(
        self,
        exchange: Exchange,
        ledger: PositionLedger,
        limits: RiskLimits,
        journal: Optional[EventJournalSQLite] = None,
        clock: Optional[Clock] = None,
        max_attempts: int = 4,
        backoff_base_seconds: float = 0.25,
        backoff_max_seconds: float = 4.0,
        max_trades_per_day: int = 0,
        unknown_grace_ms: int = 10_000,
        retention_ms: int = 86_400_000,
    ):
        """
        Initialize the engine.

        Args:
            exchange: Exchange adapter
            ledger: Position ledger receiving confirmed fills
            limits: Risk limits checked before every submission
            journal: Optional journal for order records
            clock: Time source
            max_attempts: Submission attempts for provably unsent requests
            backoff_base_seconds: First retry delay
            backoff_max_seconds: Retry delay cap
            max_trades_per_day: Submissions per UTC day (0 = unlimited)
            unknown_grace_ms: Minimum age before an UNKNOWN order the exchange
                has never heard of is declared REJECTED
            retention_ms: How long terminal records stay in memory
        """
        self.exchange = exchange
        self.ledger = ledger
        self.limits = limits
        self.journal = journal
        self.clock = clock or Clock()
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.max_trades_per_day = max_trades_per_day
        self.unknown_grace_ms = unknown_grace_ms
        self.retention_ms = retention_ms

        self._records: dict[str, OrderRecord] = {}
        self._trades_by_day: dict[str, int] = {}

        if journal is not None:
            for record in journal.load_orders(since_ms=self.clock.now_ms() - retention_ms):
                self._records[record.idempotency_key] = record
                day = utc_day(record.created_ms)
                self._trades_by_day[day] = self._trades_by_day.get(day, 0) + 1
            if self._records:
                logger.info(f"Restored {len(self._records)} order records from journal")

    # ============== Queries ==============

    def get(self, idempotency_key: str) -> Optional[OrderRecord]:
        return self._records.get(idempotency_key)

    def records(self, market_id: Optional[str] = None) -> list[OrderRecord]:
        return [r for r in self._records.values() if market_id is None or r.market_id == market_id]

    def open_records(self, market_id: Optional[str] = None, token_id: Optional[str] = None) -> list[OrderRecord]:
        """Non-terminal records, optionally for one market or one of its tokens."""
        return [
            r for r in self.records(market_id)
            if not r.is_terminal and (token_id is None or r.token_id == token_id)
        ]

    def is_blocked(self, market_id: str) -> bool:
        """True while the market has an unresolved UNKNOWN order."""
        return any(r.status == OrderStatus.UNKNOWN for r in self.records(market_id))

    def trades_today(self, now_ms: Optional[int] = None) -> int:
        day = utc_day(self.clock.now_ms() if now_ms is None else now_ms)
        return self._trades_by_day.get(day, 0)

    # ============== Risk ==============

    def check_risk(self, intent: OrderIntent, queued: int = 0) -> None:
        """
        Args:
            intent: Intent about to be submitted
            queued: Submissions of the same batch ahead of this one

        Raises:
            RiskLimitExceeded: if the intent breaks a limit
        """
        if intent.size <= 0:
            raise RiskLimitExceeded(f"Order size {intent.size} must be positive")

        if intent.size > self.limits.max_order_size + _EPS:
            raise RiskLimitExceeded(
                f"Order size {intent.size} exceeds max_order_size {self.limits.max_order_size}"
            )

        # Resting orders count as if they will fill
        exposure = self.ledger.snapshot(intent.market_id, intent.token_id).quantity
        for record in self.open_records(intent.market_id, intent.token_id):
            signed = record.remaining if record.intent.side == Side.BUY else -record.remaining
            exposure += signed
        projected = exposure + intent.signed_size
        if abs(projected) > self.limits.max_position + _EPS:
            raise RiskLimitExceeded(
                f"Projected position {projected} exceeds max_position {self.limits.max_position}"
            )

        if self.max_trades_per_day > 0 and self.trades_today() + queued >= self.max_trades_per_day:
            raise RiskLimitExceeded(f"Daily trade limit {self.max_trades_per_day} reached")

    def check_risk_all(self, intents: list[OrderIntent]) -> None:
        """
        Check a batch before any of it is submitted, so the legs of a
        paired trade go out together or not at all.

        Raises:
            RiskLimitExceeded: if any intent breaks a limit
        """
        queued = 0
        for intent in intents:
            if intent.idempotency_key in self._records:
                continue
            self.check_risk(intent, queued=queued)
            queued += 1

    # ============== Submission ==============

    async def execute(self, intent: OrderIntent) -> OrderRecord:
        """
        Submit an intent.

        Args:
            intent: Intent from the decision engine

        Returns:
            The order record for the intent's idempotency key

        Raises:
            RiskLimitExceeded: intent rejected locally, nothing submitted
            IdempotencyConflict: the key belongs to a recorded order for a
                different token or side; nothing submitted
            AuthError: credentials rejected (record is REJECTED)
        """
        existing = self._records.get(intent.idempotency_key)
        if existing is not None:
            prior = existing.intent
            if (prior.market_id, prior.token_id, prior.side) != (intent.market_id, intent.token_id, intent.side):
                logger.error(
                    f"Intent {intent.side.name} {intent.size} reuses key {intent.idempotency_key} "
                    f"of {prior.side.name} {prior.size} ({existing.status.name})"
                )
                raise IdempotencyConflict(
                    intent.idempotency_key,
                    f"recorded as {prior.side.name} on {prior.token_id}, "
                    f"new intent is {intent.side.name} on {intent.token_id}",
                )
            logger.info(
                f"Duplicate intent {intent.idempotency_key} ({existing.status.name}), not resubmitting"
            )
            return existing

        self.check_risk(intent)

        now_ms = self.clock.now_ms()
        record = OrderRecord(intent=intent, created_ms=now_ms, updated_ms=now_ms, submitted_ms=now_ms)
        self._records[intent.idempotency_key] = record
        day = utc_day(now_ms)
        self._trades_by_day[day] = self._trades_by_day.get(day, 0) + 1
        self._persist(record)

        logger.info(
            f"Submitting {intent.side.name} {intent.size} @ {intent.limit_price} "
            f"on {intent.market_id} key={intent.idempotency_key}"
        )

        try:
            report = await retry_transient(
                lambda: self.exchange.place_order(intent),
                max_attempts=self.max_attempts,
                backoff=ExponentialBackoff(self.backoff_base_seconds, self.backoff_max_seconds),
                sleep=self.clock.sleep,
                only_unsent=not self.exchange.supports_idempotency,
                description=f"submit {intent.idempotency_key}",
            )

        except asyncio.CancelledError:
            self._transition(record, OrderStatus.UNKNOWN, "cancelled during submission")
            raise

        except AmbiguousOrderOutcome as e:
            if e.order_id:
                record.order_id = e.order_id
            self._transition(record, OrderStatus.UNKNOWN, str(e))
            logger.warning(f"Submission of {intent.idempotency_key} ambiguous: {e}")
            return record

        except TransientNetworkError as e:
            if e.request_sent:
                self._transition(record, OrderStatus.UNKNOWN, str(e))
                logger.warning(f"Submission of {intent.idempotency_key} may have reached exchange: {e}")
            else:
                self._transition(record, OrderStatus.REJECTED, f"never sent: {e}")
                logger.error(f"Submission of {intent.idempotency_key} failed before sending: {e}")
            return record

        except AuthError as e:
            self._transition(record, OrderStatus.REJECTED, str(e))
            raise

        except (OrderRejected, ExchangeRequestError) as e:
            self._transition(record, OrderStatus.REJECTED, str(e))
            logger.warning(f"Order {intent.idempotency_key} rejected: {e}")
            return record

        self._apply_report(record, report)
        return record

    # ============== Reconciliation ==============

    async def reconcile(self, market_ids: Optional[Iterable[str]] = None) -> list[OrderRecord]:
        """
        Query the exchange for every non-terminal record, UNKNOWN first.

        Args:
            market_ids: Markets to reconcile (all when None)

        Returns:
            Records still non-terminal afterwards
        """
        wanted = set(market_ids) if market_ids is not None else None
        pending = [
            r for r in self._records.values()
            if not r.is_terminal and (wanted is None or r.market_id in wanted)
        ]
        pending.sort(key=lambda r: (r.status != OrderStatus.UNKNOWN, r.created_ms))

        for record in pending:
            try:
                report = await retry_transient(
                    lambda: self.exchange.get_order_status(record),
                    max_attempts=self.max_attempts,
                    backoff=ExponentialBackoff(self.backoff_base_seconds, self.backoff_max_seconds),
                    sleep=self.clock.sleep,
                    description=f"status {record.idempotency_key}",
                )
            except AuthError:
                raise
            except BotError as e:
                # One unanswerable query must not stall the other records
                record.last_error = f"{type(e).__name__}: {e}"
                logger.warning(f"Status query for {record.idempotency_key} failed: {e}")
                continue

            if report is None:
                self._handle_missing(record)
                continue

            self._apply_report(record, report)

        return [r for r in pending if not r.is_terminal]

    def _handle_missing(self, record: OrderRecord) -> None:
        if record.status != OrderStatus.UNKNOWN:
            logger.warning(f"Order {record.order_id} ({record.status.name}) not found at exchange")
            return

        age_ms = self.clock.now_ms() - record.submitted_ms
        if age_ms < self.unknown_grace_ms:
            logger.info(f"UNKNOWN order {record.idempotency_key} not visible yet ({age_ms}ms)")
            return

        self._transition(record, OrderStatus.REJECTED, "not found at exchange")
        logger.info(f"UNKNOWN order {record.idempotency_key} never reached the exchange, REJECTED")

    def _apply_report(self, record: OrderRecord, report: OrderStatusReport) -> None:
        """Apply new fills, then move the record to the reported state."""
        changed = False
        if report.order_id and record.order_id != report.order_id:
            record.order_id = report.order_id
            changed = True

        new_fills = sorted(
            (f for f in report.fills if f.fill_id not in record.applied_fill_ids),
            key=lambda f: (f.sequence, f.fill_id),
        )
        for fill in new_fills:
            self.ledger.apply_fill(fill)
            record.applied_fill_ids.add(fill.fill_id)
            record.filled_quantity += fill.quantity
            changed = True

        status = report.status
        if status in (OrderStatus.ACKNOWLEDGED, OrderStatus.PARTIALLY_FILLED, OrderStatus.FILLED):
            # Fill states follow the fills actually applied
            if record.filled_quantity >= record.intent.size - _EPS:
                status = OrderStatus.FILLED
            elif record.filled_quantity > _EPS:
                status = OrderStatus.PARTIALLY_FILLED
            else:
                status = OrderStatus.ACKNOWLEDGED

        if status == record.status:
            if changed:
                record.updated_ms = self.clock.now_ms()
                self._persist(record)
            return

        if record.status == OrderStatus.PENDING and status not in _ALLOWED_TRANSITIONS[OrderStatus.PENDING]:
            self._transition(record, OrderStatus.ACKNOWLEDGED)
        if status != record.status:
            self._transition(record, status, report.error_msg or None)
        else:
            record.updated_ms = self.clock.now_ms()
            self._persist(record)

    # ============== Cancellation ==============

    async def cancel(self, record: OrderRecord) -> bool:
        """
        Request cancellation of an order.

        The record becomes CANCELLED only once the exchange confirms.

        Returns:
            True if the cancellation was confirmed
        """
        if record.is_terminal:
            return False
        if not record.order_id:
            logger.warning(f"Cannot cancel {record.idempotency_key}: no exchange order id yet")
            return False

        confirmed = await retry_transient(
            lambda: self.exchange.cancel_order(record.order_id),
            max_attempts=self.max_attempts,
            backoff=ExponentialBackoff(self.backoff_base_seconds, self.backoff_max_seconds),
            sleep=self.clock.sleep,
            description=f"cancel {record.order_id}",
        )
        if not confirmed:
            logger.warning(f"Cancel of {record.order_id} not confirmed")
            return False

        # Pick up fills that landed before the cancel; without them the
        # record stays open and the next reconcile finishes it
        try:
            report = await self.exchange.get_order_status(record)
        except AuthError:
            raise
        except BotError as e:
            record.last_error = f"{type(e).__name__}: {e}"
            logger.warning(f"Cancel of {record.order_id} confirmed, status query failed: {e}")
            return True

        if report is not None:
            self._apply_report(record, report)
        if not record.is_terminal:
            self._transition(record, OrderStatus.CANCELLED)
        logger.info(f"Order {record.order_id} cancelled (filled {record.filled_quantity})")
        return True

    async def cancel_open(self, market_id: str) -> int:
        """Cancel every acknowledged order of a market. Returns confirmed count."""
        cancelled = 0
        for record in self.open_records(market_id):
            if record.status in (OrderStatus.ACKNOWLEDGED, OrderStatus.PARTIALLY_FILLED):
                if await self.cancel(record):
                    cancelled += 1
        return cancelled

    # ============== Housekeeping ==============

    def prune(self, now_ms: Optional[int] = None) -> int:
        """
        Drop terminal records older than the retention period.

        Their keys belong to closed windows, for which no intent is ever
        produced again. Records stay in the journal.

        Returns:
            Number of records dropped
        """
        now_ms = self.clock.now_ms() if now_ms is None else now_ms
        horizon = now_ms - self.retention_ms
        stale = [
            key for key, r in self._records.items()
            if r.is_terminal and r.updated_ms < horizon
        ]
        for key in stale:
            del self._records[key]

        today = utc_day(now_ms)
        for day in [d for d in self._trades_by_day if d < today]:
            del self._trades_by_day[day]

        if stale:
            logger.debug(f"Pruned {len(stale)} terminal order records")
        return len(stale)

    # ============== Internals ==============

    def _transition(self, record: OrderRecord, new: OrderStatus, error: Optional[str] = None) -> None:
        check_transition(record.status, new)
        logger.debug(f"Order {record.idempotency_key}: {record.status.name} -> {new.name}")
        record.status = new
        record.updated_ms = self.clock.now_ms()
        if error:
            record.last_error = error
        self._persist(record)

    def _persist(self, record: OrderRecord) -> None:
        if self.journal is not None:
            self.journal.upsert_order(record)
