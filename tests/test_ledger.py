"""Tests for PositionLedger."""

import pytest

from poly_5min_bot.errors import LedgerDriftDetected
from poly_5min_bot.journal_sqlite import EventJournalSQLite
from poly_5min_bot.ledger import PositionLedger
from poly_5min_bot.types import Fill, Side


def fill(fill_id, side, qty, price, market_id="m1", seq=0, token_id="t1"):
    return Fill(
        fill_id=fill_id,
        order_id="o1",
        market_id=market_id,
        token_id=token_id,
        side=side,
        quantity=qty,
        price=price,
        sequence=seq,
    )


FILLS = [
    fill("f1", Side.BUY, 10, 0.40, seq=1),
    fill("f2", Side.BUY, 10, 0.50, seq=2),
    fill("f3", Side.SELL, 5, 0.60, seq=3),
    fill("f4", Side.SELL, 20, 0.30, seq=4),
    fill("f5", Side.BUY, 5, 0.35, seq=5),
]


class TestApplyFill:

    def test_buy_sets_position_and_average(self, ledger):
        assert ledger.apply_fill(fill("f1", Side.BUY, 10, 0.40))
        assert ledger.apply_fill(fill("f2", Side.BUY, 10, 0.50))

        pos = ledger.snapshot("m1", "t1")
        assert pos.quantity == pytest.approx(20)
        assert pos.avg_entry_price == pytest.approx(0.45)
        assert pos.realized_pnl == 0

    def test_sell_realizes_against_average_cost(self, ledger):
        ledger.apply_fill(fill("f1", Side.BUY, 20, 0.45))
        ledger.apply_fill(fill("f2", Side.SELL, 5, 0.60))

        pos = ledger.snapshot("m1", "t1")
        assert pos.quantity == pytest.approx(15)
        assert pos.avg_entry_price == pytest.approx(0.45)
        assert pos.realized_pnl == pytest.approx(0.75)

    def test_close_to_flat_resets_average(self, ledger):
        ledger.apply_fill(fill("f1", Side.BUY, 10, 0.40))
        ledger.apply_fill(fill("f2", Side.SELL, 10, 0.50))

        pos = ledger.snapshot("m1", "t1")
        assert pos.is_flat
        assert pos.avg_entry_price == 0
        assert pos.realized_pnl == pytest.approx(1.0)

    def test_crossing_zero_opens_at_fill_price(self, ledger):
        ledger.apply_fill(fill("f1", Side.BUY, 10, 0.40))
        ledger.apply_fill(fill("f2", Side.SELL, 15, 0.30))

        pos = ledger.snapshot("m1", "t1")
        assert pos.quantity == pytest.approx(-5)
        assert pos.avg_entry_price == pytest.approx(0.30)
        assert pos.realized_pnl == pytest.approx(-1.0)

    def test_duplicate_fill_is_noop(self, ledger):
        assert ledger.apply_fill(fill("f1", Side.BUY, 10, 0.40)) is True
        assert ledger.apply_fill(fill("f1", Side.BUY, 10, 0.40)) is False

        assert ledger.snapshot("m1", "t1").quantity == pytest.approx(10)
        assert ledger.snapshot("m1", "t1").fill_count == 1

    def test_rejects_non_positive_quantity(self, ledger):
        with pytest.raises(ValueError):
            ledger.apply_fill(fill("f1", Side.BUY, 0, 0.40))

    def test_replaying_twice_equals_replaying_once(self):
        once = PositionLedger()
        for f in FILLS:
            once.apply_fill(f)

        twice = PositionLedger()
        for f in FILLS + FILLS:
            twice.apply_fill(f)

        assert twice.snapshot("m1", "t1") == once.snapshot("m1", "t1")

    def test_markets_are_independent(self, ledger):
        ledger.apply_fill(fill("f1", Side.BUY, 10, 0.40, market_id="a"))
        ledger.apply_fill(fill("f2", Side.BUY, 7, 0.40, market_id="b"))

        assert ledger.snapshot("a", "t1").quantity == pytest.approx(10)
        assert ledger.snapshot("b", "t1").quantity == pytest.approx(7)

    def test_tokens_of_one_market_are_independent(self, ledger):
        ledger.apply_fill(fill("f1", Side.BUY, 10, 0.40, token_id="up"))
        ledger.apply_fill(fill("f2", Side.BUY, 6, 0.55, token_id="down"))

        assert ledger.snapshot("m1", "up").quantity == pytest.approx(10)
        assert ledger.snapshot("m1", "down").quantity == pytest.approx(6)
        assert ledger.snapshot("m1", "down").avg_entry_price == pytest.approx(0.55)
        assert set(ledger.positions()) == {("m1", "up"), ("m1", "down")}


class TestSnapshot:

    def test_unknown_market_is_flat(self, ledger):
        pos = ledger.snapshot("nope", "t1")
        assert pos.market_id == "nope"
        assert pos.token_id == "t1"
        assert pos.is_flat

    def test_snapshot_is_a_copy(self, ledger):
        ledger.apply_fill(fill("f1", Side.BUY, 10, 0.40))
        pos = ledger.snapshot("m1", "t1")
        pos.quantity = 999

        assert ledger.snapshot("m1", "t1").quantity == pytest.approx(10)

    def test_unrealized_pnl(self, ledger):
        ledger.apply_fill(fill("f1", Side.BUY, 10, 0.40))
        assert ledger.snapshot("m1", "t1").unrealized_pnl(0.50) == pytest.approx(1.0)
        assert ledger.snapshot("m1", "t1").unrealized_pnl(None) == 0.0


class TestVerifyAndDrift:

    def test_verify_sum_of_fills(self, ledger):
        for f in FILLS:
            ledger.apply_fill(f)
        assert ledger.verify("m1", "t1")
        assert ledger.snapshot("m1", "t1").quantity == pytest.approx(sum(f.signed_quantity for f in FILLS))

    def test_no_drift_within_tolerance(self, ledger):
        ledger.apply_fill(fill("f1", Side.BUY, 10, 0.40))
        ledger.check_drift("m1", "t1", 10.0000001, tolerance=1e-6)

    def test_drift_is_checked_per_token(self, ledger):
        ledger.apply_fill(fill("f1", Side.BUY, 10, 0.40, token_id="up"))

        ledger.check_drift("m1", "up", 10.0)
        with pytest.raises(LedgerDriftDetected):
            ledger.check_drift("m1", "down", 10.0)

    def test_drift_raises_and_does_not_correct(self, ledger):
        ledger.apply_fill(fill("f1", Side.BUY, 10, 0.40))

        with pytest.raises(LedgerDriftDetected) as exc_info:
            ledger.check_drift("m1", "t1", 12.0)

        assert exc_info.value.ledger_quantity == pytest.approx(10)
        assert exc_info.value.exchange_quantity == pytest.approx(12)
        assert ledger.snapshot("m1", "t1").quantity == pytest.approx(10)


class TestPersistence:

    def test_load_replays_journal(self):
        journal = EventJournalSQLite(db_path=":memory:")
        journal.init_schema()

        ledger = PositionLedger(journal)
        for f in FILLS:
            ledger.apply_fill(f)

        restored = PositionLedger.load(journal)
        assert restored.snapshot("m1", "t1") == ledger.snapshot("m1", "t1")
        assert restored.has_fill("f3")
        assert restored.apply_fill(FILLS[0]) is False

        journal.close()
