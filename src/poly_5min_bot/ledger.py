"""
Position ledger.

Holds the bot's believed exposure per outcome token of each market, built
only from confirmed fills. Uses average-cost accounting for realized PnL.
"""

import logging
from typing import Optional

from .errors import LedgerDriftDetected
from .journal_sqlite import EventJournalSQLite
from .types import Fill, Position

logger = logging.getLogger(__name__)

_EPS = 1e-9


class PositionLedger:
    """
    Sole writer of Position.

    apply_fill() is idempotent by fill id, so replaying a fill stream any
    number of times yields the same positions as replaying it once.
    """

    def __init__(self, journal: Optional[EventJournalSQLite] = None):
        self._journal = journal
        self._positions: dict[tuple[str, str], Position] = {}
        self._applied: set[str] = set()
        self._fills: dict[tuple[str, str], list[Fill]] = {}

    @classmethod
    def load(cls, journal: EventJournalSQLite) -> "PositionLedger":
        """
        Rebuild a ledger from the fills stored in a journal.

        Args:
            journal: Initialized journal

        Returns:
            Ledger with every journaled fill applied
        """
        ledger = cls(journal)
        fills = journal.load_fills()
        for fill in fills:
            ledger._apply(fill)
        if fills:
            logger.info(f"Ledger replayed {len(fills)} fills from journal")
        return ledger

    def apply_fill(self, fill: Fill) -> bool:
        """
        Apply a confirmed fill.

        Args:
            fill: Fill reported by the exchange

        Returns:
            True if applied, False if the fill id was already applied
        """
        if fill.fill_id in self._applied:
            logger.debug(f"Fill {fill.fill_id} already applied, ignoring")
            return False
        if fill.quantity <= 0:
            raise ValueError(f"Fill {fill.fill_id} has non-positive quantity {fill.quantity}")

        self._apply(fill)
        if self._journal is not None:
            self._journal.append_fill(fill)

        pos = self._positions[(fill.market_id, fill.token_id)]
        logger.info(
            f"Fill {fill.fill_id}: {fill.side.name} {fill.quantity} @ {fill.price} "
            f"on {fill.market_id}/{fill.token_id[:16]} -> position={pos.quantity:.4f} "
            f"avg={pos.avg_entry_price:.4f} realized={pos.realized_pnl:.4f}"
        )
        return True

    def _apply(self, fill: Fill) -> None:
        self._applied.add(fill.fill_id)
        key = (fill.market_id, fill.token_id)
        self._fills.setdefault(key, []).append(fill)

        pos = self._positions.get(key)
        if pos is None:
            pos = Position(market_id=fill.market_id, token_id=fill.token_id)
            self._positions[key] = pos

        signed = fill.signed_quantity
        held = pos.quantity

        if abs(held) < _EPS or (held > 0) == (signed > 0):
            # Opening or adding: blend the entry price
            new_qty = held + signed
            pos.avg_entry_price = (
                abs(held) * pos.avg_entry_price + fill.quantity * fill.price
            ) / abs(new_qty)
            pos.quantity = new_qty
        else:
            # Reducing, possibly through zero
            closed = min(abs(held), fill.quantity)
            direction = 1.0 if held > 0 else -1.0
            pos.realized_pnl += (fill.price - pos.avg_entry_price) * closed * direction
            pos.quantity = held + signed
            if abs(pos.quantity) < _EPS:
                pos.quantity = 0.0
                pos.avg_entry_price = 0.0
            elif fill.quantity > abs(held):
                pos.avg_entry_price = fill.price

        pos.fill_count += 1

    def snapshot(self, market_id: str, token_id: str) -> Position:
        """
        Read-only view of the position in one outcome token.

        Returns:
            A copy; mutating it does not affect the ledger
        """
        pos = self._positions.get((market_id, token_id))
        if pos is None:
            return Position(market_id=market_id, token_id=token_id)
        return pos.copy()

    def positions(self) -> dict[tuple[str, str], Position]:
        """Copies of every tracked position, keyed by (market_id, token_id)."""
        return {key: pos.copy() for key, pos in self._positions.items()}

    def has_fill(self, fill_id: str) -> bool:
        return fill_id in self._applied

    def verify(self, market_id: str, token_id: str) -> bool:
        """Check that the sum of applied fills equals the position quantity."""
        total = sum(f.signed_quantity for f in self._fills.get((market_id, token_id), []))
        return abs(total - self.snapshot(market_id, token_id).quantity) < 1e-6

    def check_drift(
        self,
        market_id: str,
        token_id: str,
        exchange_quantity: float,
        tolerance: float = 1e-6,
    ) -> None:
        """
        Compare the ledger against an exchange-reported position.

        Never corrects the ledger.

        Raises:
            LedgerDriftDetected: if the difference exceeds tolerance
        """
        ledger_quantity = self.snapshot(market_id, token_id).quantity
        if abs(ledger_quantity - exchange_quantity) > tolerance:
            logger.critical(
                f"Ledger drift on {market_id} token {token_id}: "
                f"ledger={ledger_quantity} exchange={exchange_quantity}"
            )
            raise LedgerDriftDetected(market_id, ledger_quantity, exchange_quantity)
