"""Cycle scheduler: one cycle per (market, window), aligned to window boundaries."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .cycle import MarketWorker
from .time_utils import Clock, next_window_start_ms
from .types import CycleOutcome, CycleReport, OverrunPolicy, Window

logger = logging.getLogger(__name__)


@dataclass
class _RunningCycle:
    window: Window
    task: asyncio.Task


class CycleScheduler:
    """
    Drives the market workers.

    Guarantees:
    - At most one cycle start per (market, window); tick() may be called
      any number of times
    - One active cycle per market; the overrun policy decides what happens
      when the previous one is still running at the next boundary
    - Each cycle runs under a hard deadline of window end minus a margin
    - Cycle failures are reported, never propagated
    """

    def __init__(
        self,
        workers: list[MarketWorker],
        clock: Optional[Clock] = None,
        window_ms: int = 300_000,
        deadline_margin_ms: int = 5_000,
        start_delay_ms: int = 1_000,
        overrun_policy: OverrunPolicy = OverrunPolicy.CANCEL_PRIOR,
        shutdown_grace_secs: float = 10.0,
    ):
        """
        Initialize the scheduler.

        Args:
            workers: One worker per market symbol
            clock: Time source
            window_ms: Window length
            deadline_margin_ms: Cycle deadline before window end
            start_delay_ms: Delay after the boundary before ticking
            overrun_policy: cancel_prior or skip_new
            shutdown_grace_secs: Time in-flight cycles get to finish on shutdown
        """
        self.workers = {w.symbol: w for w in workers}
        self.clock = clock or Clock()
        self.window_ms = window_ms
        self.deadline_margin_ms = deadline_margin_ms
        self.start_delay_ms = start_delay_ms
        self.overrun_policy = overrun_policy
        self.shutdown_grace_secs = shutdown_grace_secs

        self._started: set[tuple[str, int]] = set()
        self._running: dict[str, _RunningCycle] = {}
        self._loop_task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def running_cycles(self) -> dict[str, Window]:
        """Windows of the cycles currently in flight, per symbol."""
        return {s: rc.window for s, rc in self._running.items() if not rc.task.done()}

    # ============== Ticking ==============

    def tick(self, now_ms: int) -> list[asyncio.Task]:
        """
        Start the cycle of the window containing now_ms for every market
        that has not started it yet.

        Args:
            now_ms: Current time

        Returns:
            Tasks of the cycles started by this call
        """
        if self._stopping:
            return []

        window = Window.containing(now_ms, self.window_ms)
        started = []

        for symbol, worker in self.workers.items():
            key = (symbol, window.start_ms)
            if key in self._started:
                continue
            self._started.add(key)

            prior = self._running.get(symbol)
            prior_task = prior.task if prior is not None and not prior.task.done() else None

            if prior_task is not None:
                if self.overrun_policy == OverrunPolicy.SKIP_NEW:
                    logger.warning(
                        f"[{symbol}] cycle {prior.window.window_id} still running, "
                        f"skipping {window.window_id}"
                    )
                    worker.telemetry.emit(CycleReport(
                        window_id=window.window_id,
                        symbol=symbol,
                        outcome=CycleOutcome.SKIPPED,
                        error=f"overrun: cycle {prior.window.window_id} still running",
                        started_ms=now_ms,
                    ))
                    continue

                logger.warning(
                    f"[{symbol}] cycle {prior.window.window_id} overran, cancelling it "
                    f"for {window.window_id}"
                )
                prior_task.cancel()

            deadline_ms = window.end_ms - self.deadline_margin_ms
            task = asyncio.create_task(
                self._run_cycle(worker, window, deadline_ms, prior_task),
                name=f"cycle-{symbol}-{window.window_id}",
            )
            self._running[symbol] = _RunningCycle(window=window, task=task)
            started.append(task)

        self._prune(window.start_ms)
        return started

    async def _run_cycle(
        self,
        worker: MarketWorker,
        window: Window,
        deadline_ms: int,
        prior_task: Optional[asyncio.Task],
    ) -> Optional[CycleReport]:
        if prior_task is not None:
            await asyncio.wait([prior_task])
        try:
            return await worker.run_cycle(window, deadline_ms)
        except asyncio.CancelledError:
            raise
        except Exception:
            # run_cycle reports its own failures; this only guards the loop
            logger.exception(f"[{worker.symbol}] cycle {window.window_id} crashed")
            return None

    def _prune(self, current_start_ms: int) -> None:
        horizon = current_start_ms - self.window_ms
        self._started = {k for k in self._started if k[1] >= horizon}

    # ============== Lifecycle ==============

    async def run(self) -> None:
        """Tick at every window boundary until shutdown."""
        logger.info(
            f"Scheduler started: {len(self.workers)} markets, "
            f"{self.window_ms // 1000}s windows, overrun={self.overrun_policy.value}"
        )
        while not self._stopping:
            now_ms = self.clock.now_ms()
            self.tick(now_ms)
            wake_ms = next_window_start_ms(now_ms, self.window_ms) + self.start_delay_ms
            await self.clock.sleep((wake_ms - now_ms) / 1000)

    def start(self) -> asyncio.Task:
        """Start the scheduling loop as a background task."""
        if self._loop_task is None or self._loop_task.done():
            self._stopping = False
            self._loop_task = asyncio.create_task(self.run(), name="cycle-scheduler")
        return self._loop_task

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for in-flight cycles.

        Returns:
            True if all finished within the timeout
        """
        tasks = [rc.task for rc in self._running.values() if not rc.task.done()]
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        return not pending

    async def shutdown(self) -> None:
        """
        Stop ticking, let in-flight cycles finish within the grace period,
        then cancel the stragglers.
        """
        self._stopping = True

        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)

        tasks = [rc.task for rc in self._running.values() if not rc.task.done()]
        if tasks:
            logger.info(f"Draining {len(tasks)} in-flight cycles ({self.shutdown_grace_secs}s grace)")
            _, pending = await asyncio.wait(tasks, timeout=self.shutdown_grace_secs)
            for task in pending:
                logger.warning(f"Cancelling {task.get_name()} at shutdown")
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        logger.info("Scheduler stopped")
