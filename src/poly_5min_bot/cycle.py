"""
Per-market cycle runner.

One MarketWorker per symbol owns that symbol's cycles. A cycle is one
reconcile -> drift check -> fetch -> decide -> execute pass for a window,
repeated every eval_interval_ms until the deadline when re-evaluation is
enabled.
"""

import asyncio
import logging
from typing import Optional

from .decision import DecisionEngine
from .errors import (
    AuthError, BotError, LedgerDriftDetected, RiskLimitExceeded, StaleDataError,
    TransientNetworkError,
)
from .execution import OrderExecutionEngine
from .gamma_client import MarketDiscovery
from .ledger import PositionLedger
from .market_data import MarketDataClient
from .telemetry import TelemetrySink
from .time_utils import Clock
from .types import CycleOutcome, CycleReport, MarketRef, NoOp, OrderIntent, OrderStatus, Window

logger = logging.getLogger(__name__)


class MarketWorker:
    """
    Runs the cycles of one market symbol.

    Per-market errors never escape run_cycle(). AuthError and
    LedgerDriftDetected halt the worker; every later cycle reports HALTED
    until resume() is called.
    """

    def __init__(
        self,
        symbol: str,
        discovery: MarketDiscovery,
        market_data: MarketDataClient,
        decision_engine: DecisionEngine,
        execution: OrderExecutionEngine,
        ledger: PositionLedger,
        telemetry: TelemetrySink,
        clock: Optional[Clock] = None,
        drift_tolerance: float = 1e-6,
        kill_switch: bool = False,
        eval_interval_ms: int = 0,
    ):
        """
        Initialize the worker.

        Args:
            eval_interval_ms: Spacing of the evaluation passes inside one
                window (0 = a single pass per cycle)
        """
        self.symbol = symbol
        self.discovery = discovery
        self.market_data = market_data
        self.decision_engine = decision_engine
        self.execution = execution
        self.ledger = ledger
        self.telemetry = telemetry
        self.clock = clock or Clock()
        self.drift_tolerance = drift_tolerance
        self.kill_switch = kill_switch
        self.eval_interval_ms = eval_interval_ms

        self._halt_reason: Optional[str] = None
        self._market_ids: set[str] = set()

    # ============== Halt control ==============

    @property
    def halted(self) -> bool:
        return self._halt_reason is not None

    @property
    def halt_reason(self) -> Optional[str]:
        return self._halt_reason

    def halt(self, reason: str) -> None:
        if self._halt_reason is None:
            logger.critical(f"[{self.symbol}] HALTED: {reason}")
        self._halt_reason = reason

    def resume(self) -> None:
        """Operator action: allow trading again after a halt."""
        if self._halt_reason is not None:
            logger.warning(f"[{self.symbol}] resumed by operator (was: {self._halt_reason})")
        self._halt_reason = None

    @property
    def tracked_markets(self) -> frozenset[str]:
        """Markets whose orders are reconciled at the start of every cycle."""
        return frozenset(self._market_ids)

    # ============== Cycle ==============

    async def run_cycle(self, window: Window, deadline_ms: Optional[int] = None) -> CycleReport:
        """
        Run one cycle for a window.

        Args:
            window: Target window
            deadline_ms: Hard deadline; the cycle is cancelled at its next
                await once exceeded. Re-evaluation passes stop before it.

        Returns:
            CycleReport (also emitted to telemetry)

        Raises:
            asyncio.CancelledError: if cancelled from outside (the report
                is still emitted)
        """
        started_ms = self.clock.now_ms()
        report = CycleReport(window_id=window.window_id, symbol=self.symbol, started_ms=started_ms)

        try:
            if deadline_ms is None:
                report.outcome = await self._run(window, report, deadline_ms)
            else:
                timeout = max(0.0, (deadline_ms - started_ms) / 1000)
                report.outcome = await asyncio.wait_for(self._run(window, report, deadline_ms), timeout)

        except asyncio.TimeoutError:
            report.outcome = CycleOutcome.ABORTED
            report.error = "deadline exceeded"
            logger.warning(f"[{self.symbol}] cycle {window.window_id} exceeded its deadline")

        except asyncio.CancelledError:
            report.outcome = CycleOutcome.ABORTED
            report.error = "cancelled"
            logger.warning(f"[{self.symbol}] cycle {window.window_id} cancelled")
            raise

        except (AuthError, LedgerDriftDetected) as e:
            self.halt(str(e))
            report.outcome = CycleOutcome.HALTED
            report.error = f"{type(e).__name__}: {e}"

        except StaleDataError as e:
            report.outcome = CycleOutcome.SKIPPED
            report.error = str(e)
            logger.warning(f"[{self.symbol}] skipping {window.window_id}: {e}")

        except RiskLimitExceeded as e:
            report.outcome = CycleOutcome.NO_TRADE
            report.error = f"RiskLimitExceeded: {e}"
            logger.warning(f"[{self.symbol}] intent rejected locally: {e}")

        except BotError as e:
            report.outcome = CycleOutcome.FAILED
            report.error = f"{type(e).__name__}: {e}"
            logger.error(f"[{self.symbol}] cycle {window.window_id} failed: {e}")

        except Exception as e:
            report.outcome = CycleOutcome.FAILED
            report.error = f"{type(e).__name__}: {e}"
            logger.exception(f"[{self.symbol}] unexpected error in cycle {window.window_id}")

        finally:
            report.latency_ms = self.clock.now_ms() - started_ms
            self.telemetry.emit(report)

        return report

    async def _run(self, window: Window, report: CycleReport, deadline_ms: Optional[int]) -> CycleOutcome:
        if self.halted:
            report.error = f"halted: {self._halt_reason}"
            return CycleOutcome.HALTED

        if window.is_closed(self.clock.now_ms()):
            report.error = "window closed before cycle start"
            return CycleOutcome.ABORTED

        market = await self.discovery.find_market(self.symbol, window)
        report.market_id = market.market_id
        self._market_ids.add(market.market_id)

        # Settle every outstanding order of this symbol before acting again
        await self.execution.reconcile(self._market_ids)
        blocked = [m for m in self._market_ids if self.execution.is_blocked(m)]
        if blocked:
            report.error = "unresolved UNKNOWN order"
            return CycleOutcome.SKIPPED

        self.execution.prune()
        self._forget_settled(market.market_id)

        await self._check_drift(market)

        if self.kill_switch:
            report.decision = "kill switch engaged"
            return CycleOutcome.NO_TRADE

        slot = self._slot(window, self.clock.now_ms())
        outcome, note = await self._evaluate(market, window, report, slot)
        if self.eval_interval_ms <= 0:
            report.decision = note
            return outcome

        end_ms = window.end_ms if deadline_ms is None else min(deadline_ms, window.end_ms)
        notes = [note]
        traded = outcome == CycleOutcome.TRADED

        while outcome in (CycleOutcome.TRADED, CycleOutcome.NO_TRADE):
            next_ms = window.start_ms + (slot + 1) * self.eval_interval_ms
            if next_ms >= end_ms:
                break
            await self.clock.sleep(max(0, next_ms - self.clock.now_ms()) / 1000)
            slot = self._slot(window, self.clock.now_ms())

            # Orders of the previous pass are settled or pulled before re-deciding
            await self.execution.reconcile([market.market_id])
            if self.execution.is_blocked(market.market_id):
                notes.append(f"pass {slot}: unresolved UNKNOWN order")
                break
            await self.execution.cancel_open(market.market_id)
            if self.execution.open_records(market.market_id):
                notes.append(f"pass {slot}: orders still open")
                continue

            try:
                outcome, note = await self._evaluate(market, window, report, slot)
            except (StaleDataError, TransientNetworkError, RiskLimitExceeded) as e:
                logger.warning(f"[{self.symbol}] pass {slot} of {window.window_id} ended re-evaluation: {e}")
                notes.append(f"pass {slot}: {e}")
                break
            notes.append(note)
            traded = traded or outcome == CycleOutcome.TRADED

        report.decision = "; ".join(notes)
        if traded and outcome != CycleOutcome.ABORTED:
            return CycleOutcome.TRADED
        return outcome

    async def _evaluate(
        self,
        market: MarketRef,
        window: Window,
        report: CycleReport,
        slot: int,
    ) -> tuple[CycleOutcome, str]:
        """
        One fetch -> decide -> execute pass.

        Returns:
            (outcome of the pass, description of its decisions)
        """
        snapshot = await self.market_data.fetch(market)
        now_ms = self.clock.now_ms()
        self.market_data.check_fresh(snapshot, now_ms)

        if window.is_closed(now_ms):
            report.error = "window closed during cycle"
            return CycleOutcome.ABORTED, "window closed"

        positions = {
            token_id: self.ledger.snapshot(market.market_id, token_id)
            for token_id in market.token_ids
        }
        decisions = self.decision_engine.decide_legs(snapshot, positions, now_ms, slot)

        intents = [d for d in decisions if isinstance(d, OrderIntent)]
        if not intents:
            reasons = ", ".join(d.reason for d in decisions if isinstance(d, NoOp))
            return CycleOutcome.NO_TRADE, f"noop: {reasons}"

        self.execution.check_risk_all(intents)

        described = []
        submitted = 0
        rejected = 0
        for intent in intents:
            label = f"{intent.side.name} {intent.size} @ {intent.limit_price}"
            if self.execution.get(intent.idempotency_key) is not None:
                # Returns the recorded order; raises on a conflicting intent
                record = await self.execution.execute(intent)
                described.append(f"duplicate {label} ({record.status.name})")
                continue

            described.append(label)
            record = await self.execution.execute(intent)
            report.order_status = record.status.name
            submitted += 1
            if record.status == OrderStatus.REJECTED:
                rejected += 1
                report.error = record.last_error
            elif record.status == OrderStatus.UNKNOWN:
                report.error = record.last_error

        note = ", ".join(described)
        if submitted == 0:
            return CycleOutcome.NO_TRADE, note
        if rejected == submitted:
            return CycleOutcome.FAILED, note
        return CycleOutcome.TRADED, note

    async def _check_drift(self, market: MarketRef) -> None:
        """
        Raises:
            LedgerDriftDetected: if any outcome token disagrees with the exchange
        """
        for token_id in market.token_ids:
            exchange_qty = await self.execution.exchange.get_position(market.market_id, token_id)
            self.ledger.check_drift(market.market_id, token_id, exchange_qty, self.drift_tolerance)

    def _slot(self, window: Window, now_ms: int) -> int:
        if self.eval_interval_ms <= 0:
            return 0
        return max(0, now_ms - window.start_ms) // self.eval_interval_ms

    def _forget_settled(self, current_market_id: str) -> None:
        """Stop reconciling past markets with nothing left open."""
        settled = [
            m for m in self._market_ids
            if m != current_market_id and not self.execution.open_records(m)
        ]
        for market_id in settled:
            self._market_ids.discard(market_id)
        if settled:
            logger.debug(f"[{self.symbol}] no longer tracking {len(settled)} settled markets")
