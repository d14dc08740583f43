"""
Decision engine.

Maps (snapshot, position) to an OrderIntent or a NoOp. Pure and
deterministic: no I/O, no clock reads, no shared state mutation.
"""

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from .strategy import Strategy, Target
from .types import (
    Decision, MarketSnapshot, MarketStatus, NoOp, OrderIntent, Position, Side,
    make_idempotency_key,
)
from .util import clamp, round_to_tick

logger = logging.getLogger(__name__)

_EPS = 1e-9


@dataclass(frozen=True, slots=True)
class RiskLimits:
    """Hard sizing limits, in outcome shares."""
    max_position: float = 100.0
    max_order_size: float = 50.0
    min_order_size: float = 5.0


class DecisionEngine:
    """
    Wraps a pluggable Strategy with the decision contract.

    Guarantees:
    - NoOp when the snapshot is stale, the market is RESOLVED, the position
      is already at target, or the order would be below min_order_size
    - Intents never exceed max_order_size or take the position beyond
      max_position
    - Inside the wind-down period (CLOSING) only reduce-only intents
      toward flat are produced
    - Every intent carries the idempotency key of its (market, window,
      strategy version), extended by token and evaluation slot
    """

    def __init__(
        self,
        strategy: Strategy,
        limits: RiskLimits,
        strategy_version: str,
        stale_threshold_ms: int,
    ):
        self.strategy = strategy
        self.limits = limits
        self.strategy_version = strategy_version
        self.stale_threshold_ms = stale_threshold_ms

    def decide(self, snapshot: MarketSnapshot, position: Position, now_ms: int, slot: int = 0) -> Decision:
        """
        Decide what to do with the Up token of one market.

        Args:
            snapshot: Market snapshot
            position: Current Up position (copy from the ledger)
            now_ms: Current time, used only for the staleness check
            slot: Evaluation slot inside the window (part of the key)

        Returns:
            OrderIntent or NoOp
        """
        gate = self._gate(snapshot, now_ms)
        if gate is not None:
            return gate

        targets = self.strategy.targets(snapshot, {snapshot.token_id: position})
        target = targets.get(snapshot.token_id)
        if target is None:
            return NoOp("no target")
        return self._decide_leg(snapshot, snapshot.token_id, position, target, slot)

    def decide_legs(
        self,
        snapshot: MarketSnapshot,
        positions: Mapping[str, Position],
        now_ms: int,
        slot: int = 0,
    ) -> list[Decision]:
        """
        Decide for every outcome token the strategy targets.

        Args:
            snapshot: Market snapshot with both books
            positions: Current positions keyed by token id
            now_ms: Current time, used only for the staleness check
            slot: Evaluation slot inside the window (part of the keys)

        Returns:
            One decision per targeted token (Up first), or a single NoOp
        """
        gate = self._gate(snapshot, now_ms)
        if gate is not None:
            return [gate]

        targets = self.strategy.targets(snapshot, positions)
        if not targets:
            return [NoOp("no target")]

        decisions = []
        for token_id in snapshot.token_ids:
            target = targets.get(token_id)
            if target is None:
                continue
            position = Strategy.held(positions, snapshot, token_id)
            decisions.append(self._decide_leg(snapshot, token_id, position, target, slot))
        return decisions

    def _gate(self, snapshot: MarketSnapshot, now_ms: int) -> Optional[NoOp]:
        if snapshot.status == MarketStatus.RESOLVED:
            return NoOp("market resolved")
        if snapshot.is_stale(now_ms, self.stale_threshold_ms):
            return NoOp(f"stale snapshot ({snapshot.age_ms(now_ms)}ms old)")
        return None

    def _decide_leg(
        self,
        snapshot: MarketSnapshot,
        token_id: str,
        position: Position,
        target: Target,
        slot: int,
    ) -> Decision:
        held = position.quantity
        desired = clamp(target.quantity, -self.limits.max_position, self.limits.max_position)
        limit_price = target.limit_price
        best_bid, best_ask = snapshot.book(token_id)

        if snapshot.status == MarketStatus.CLOSING:
            if abs(held) < _EPS:
                return NoOp("winding down, flat")
            if self.strategy.flatten_on_wind_down:
                desired = 0.0
                if abs(target.quantity) > _EPS or limit_price is None:
                    # Strategy still wants exposure; unwind at the touch
                    limit_price = best_bid if held > 0 else best_ask
            elif abs(desired) > abs(held) + _EPS or (abs(desired) > _EPS and (desired > 0) != (held > 0)):
                return NoOp("winding down, no new exposure")

        delta = desired - held
        if abs(delta) < _EPS:
            return NoOp("at target")

        if limit_price is None:
            return NoOp("no price to trade at")

        size = round(min(abs(delta), self.limits.max_order_size), 2)
        if size < self.limits.min_order_size or size <= 0:
            return NoOp(f"size {size} below minimum {self.limits.min_order_size}")

        side = Side.BUY if delta > 0 else Side.SELL
        reduce_only = abs(held) > _EPS and (delta > 0) != (held > 0) and size <= abs(held) + _EPS

        tick = snapshot.tick_size
        price = clamp(round_to_tick(limit_price, tick), tick, round_to_tick(1.0 - tick, tick))

        return OrderIntent(
            market_id=snapshot.market_id,
            token_id=token_id,
            side=side,
            size=size,
            limit_price=price,
            idempotency_key=make_idempotency_key(
                snapshot.market_id, snapshot.window_start_ms, self.strategy_version, token_id, slot
            ),
            window_start_ms=snapshot.window_start_ms,
            strategy_version=self.strategy_version,
            reduce_only=reduce_only,
        )
