"""Strategy interface and the bundled strategies."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Mapping, Optional

from .types import MarketSnapshot, Position

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Target:
    """
    Desired position in one outcome token.

    limit_price may be None when the strategy holds, i.e. when quantity
    equals the current position.
    """
    quantity: float
    limit_price: Optional[float] = None


class Strategy(ABC):
    """
    Abstract base class for strategies.

    PLUGGABLE interface - variants are swapped without touching the
    execution or ledger code. Implementations must be pure functions of
    their inputs.
    """

    # Inside the wind-down period: True unwinds every position at the
    # touch, False only stops new exposure (positions ride to resolution)
    flatten_on_wind_down = True

    @property
    @abstractmethod
    def name(self) -> str:
        """Strategy name."""
        ...

    @abstractmethod
    def targets(self, snapshot: MarketSnapshot, positions: Mapping[str, Position]) -> dict[str, Target]:
        """
        Compute the desired position per outcome token.

        Args:
            snapshot: Current market snapshot (both books when available)
            positions: Current positions keyed by token id (read-only copies)

        Returns:
            Targets keyed by token id; tokens left out are held as they are
        """
        ...

    @staticmethod
    def held(positions: Mapping[str, Position], snapshot: MarketSnapshot, token_id: str) -> Position:
        """Position in a token, flat when the caller passed none."""
        pos = positions.get(token_id)
        if pos is None:
            return Position(market_id=snapshot.market_id, token_id=token_id)
        return pos


class SingleOutcomeStrategy(Strategy):
    """Strategy that trades only the Up token."""

    @abstractmethod
    def target(self, snapshot: MarketSnapshot, position: Position) -> Target:
        """
        Compute the desired Up position.

        Args:
            snapshot: Current market snapshot
            position: Current Up position (read-only copy)

        Returns:
            Target quantity and the limit price to trade at
        """
        ...

    def targets(self, snapshot: MarketSnapshot, positions: Mapping[str, Position]) -> dict[str, Target]:
        position = self.held(positions, snapshot, snapshot.token_id)
        return {snapshot.token_id: self.target(snapshot, position)}


class ThresholdStrategy(SingleOutcomeStrategy):
    """
    Buy-the-dip threshold strategy on the "Up" token.

    - Flat or below target: buy up to target_size while ask <= entry_price
    - Long: exit everything at the bid once it reaches take_profit_price
      or falls to stop_loss_price
    - Otherwise hold
    """

    def __init__(
        self,
        entry_price: float = 0.45,
        take_profit_price: float = 0.60,
        stop_loss_price: float = 0.20,
        target_size: float = 20.0,
    ):
        """
        Initialize the strategy.

        Args:
            entry_price: Maximum ask at which to enter
            take_profit_price: Bid at which to take profit
            stop_loss_price: Bid at which to cut the position
            target_size: Position to build, in shares
        """
        self.entry_price = entry_price
        self.take_profit_price = take_profit_price
        self.stop_loss_price = stop_loss_price
        self.target_size = target_size

    @property
    def name(self) -> str:
        return "Threshold"

    def target(self, snapshot: MarketSnapshot, position: Position) -> Target:
        held = position.quantity
        bid = snapshot.best_bid
        ask = snapshot.best_ask

        # Shares cannot be shorted; buy back anything negative
        if held < 0:
            return Target(quantity=0.0, limit_price=ask)

        if held > 0 and bid is not None:
            if bid >= self.take_profit_price:
                return Target(quantity=0.0, limit_price=bid)
            if bid <= self.stop_loss_price:
                return Target(quantity=0.0, limit_price=bid)

        if held < self.target_size and ask is not None and ask <= self.entry_price:
            return Target(quantity=self.target_size, limit_price=ask)

        return Target(quantity=held)


class ArbitrageStrategy(Strategy):
    """
    Complete-set arbitrage on the Up/Down pair.

    One Up share plus one Down share pays out exactly 1 at resolution.
    When both legs can be bought for less than 1 - min_profit, at the asks
    plus slippage, both are bought up to target_size. A pair left uneven
    by more than balance_threshold shares (one leg filled, the other not)
    is completed on the lagging leg while the completed pair still costs
    less than 1 - min_profit. Pairs are held to resolution.
    """

    flatten_on_wind_down = False

    def __init__(
        self,
        min_profit: float = 0.001,
        slippage: tuple[float, float] = (0.0, 0.01),
        target_size: float = 20.0,
        balance_threshold: float = 2.0,
    ):
        """
        Initialize the strategy.

        Args:
            min_profit: Minimum edge per share pair, in price units
            slippage: Price allowance over the ask for the (Up, Down) legs
            target_size: Pairs to build, in shares per leg
            balance_threshold: Leg imbalance, in shares, that triggers
                completing the lagging leg
        """
        self.min_profit = min_profit
        self.slippage = slippage
        self.target_size = target_size
        self.balance_threshold = balance_threshold

    @property
    def name(self) -> str:
        return "Arbitrage"

    def targets(self, snapshot: MarketSnapshot, positions: Mapping[str, Position]) -> dict[str, Target]:
        if not snapshot.down_token_id:
            return {}
        if snapshot.best_ask is None or snapshot.down_best_ask is None:
            return {}

        up_token, down_token = snapshot.token_id, snapshot.down_token_id
        up = self.held(positions, snapshot, up_token)
        down = self.held(positions, snapshot, down_token)

        up_price = snapshot.best_ask + self.slippage[0]
        down_price = snapshot.down_best_ask + self.slippage[1]
        ceiling = 1.0 - self.min_profit

        gap = up.quantity - down.quantity
        if abs(gap) > self.balance_threshold:
            if gap > 0 and up.avg_entry_price + down_price < ceiling:
                return {down_token: Target(quantity=up.quantity, limit_price=down_price)}
            if gap < 0 and down.avg_entry_price + up_price < ceiling:
                return {up_token: Target(quantity=down.quantity, limit_price=up_price)}
            logger.debug(
                f"{snapshot.symbol} legs uneven by {gap:.2f} but completing the pair is unprofitable"
            )
            return {}

        if up_price + down_price >= ceiling:
            return {}

        size = max(self.target_size, up.quantity, down.quantity)
        logger.debug(
            f"{snapshot.symbol} pair cost {up_price + down_price:.4f} < {ceiling:.4f}, "
            f"targeting {size} per leg"
        )
        return {
            up_token: Target(quantity=size, limit_price=up_price),
            down_token: Target(quantity=size, limit_price=down_price),
        }
