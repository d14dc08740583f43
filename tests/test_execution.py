"""Tests for OrderExecutionEngine against the paper exchange."""

import asyncio
from unittest.mock import AsyncMock, call, patch

import pytest

from poly_5min_bot.errors import (
    AmbiguousOrderOutcome, AuthError, ExchangeRequestError, IdempotencyConflict,
    InvalidTransition, OrderRejected, RiskLimitExceeded, TransientNetworkError,
)
from poly_5min_bot.exchange import OrderStatusReport
from poly_5min_bot.execution import OrderExecutionEngine, check_transition
from poly_5min_bot.journal_sqlite import EventJournalSQLite
from poly_5min_bot.paper_exchange import PaperExchange
from poly_5min_bot.types import Fill, OrderStatus, Side

from conftest import make_intent, make_market


class TestStateMachine:

    @pytest.mark.parametrize("current,new", [
        (OrderStatus.PENDING, OrderStatus.ACKNOWLEDGED),
        (OrderStatus.PENDING, OrderStatus.UNKNOWN),
        (OrderStatus.ACKNOWLEDGED, OrderStatus.PARTIALLY_FILLED),
        (OrderStatus.PARTIALLY_FILLED, OrderStatus.FILLED),
        (OrderStatus.ACKNOWLEDGED, OrderStatus.CANCELLED),
        (OrderStatus.UNKNOWN, OrderStatus.FILLED),
        (OrderStatus.UNKNOWN, OrderStatus.REJECTED),
    ])
    def test_allowed(self, current, new):
        check_transition(current, new)

    @pytest.mark.parametrize("current,new", [
        (OrderStatus.PENDING, OrderStatus.FILLED),
        (OrderStatus.FILLED, OrderStatus.ACKNOWLEDGED),
        (OrderStatus.CANCELLED, OrderStatus.FILLED),
        (OrderStatus.REJECTED, OrderStatus.UNKNOWN),
        (OrderStatus.ACKNOWLEDGED, OrderStatus.UNKNOWN),
        (OrderStatus.PARTIALLY_FILLED, OrderStatus.ACKNOWLEDGED),
    ])
    def test_forbidden(self, current, new):
        with pytest.raises(InvalidTransition):
            check_transition(current, new)


class TestSubmission:

    @pytest.mark.asyncio
    async def test_crossing_order_fills(self, engine, paper, ledger, market):
        paper.set_book(market.token_id, 0.40, 0.42)
        record = await engine.execute(make_intent(market, size=10, price=0.45))

        assert record.status == OrderStatus.FILLED
        assert record.order_id == "paper-1"
        assert record.filled_quantity == pytest.approx(10)
        assert ledger.snapshot(market.market_id, market.token_id).quantity == pytest.approx(10)
        assert ledger.snapshot(market.market_id, market.token_id).avg_entry_price == pytest.approx(0.42)

    @pytest.mark.asyncio
    async def test_resting_order_acknowledged(self, engine, ledger, market):
        record = await engine.execute(make_intent(market))

        assert record.status == OrderStatus.ACKNOWLEDGED
        assert ledger.snapshot(market.market_id, market.token_id).is_flat

    @pytest.mark.asyncio
    async def test_duplicate_key_submits_once(self, engine, paper, market):
        intent = make_intent(market)

        first = await engine.execute(intent)
        second = await engine.execute(intent)

        assert second is first
        assert paper.submit_calls == 1
        assert paper.order_count() == 1

    @pytest.mark.asyncio
    async def test_key_reused_for_other_side_conflicts(self, engine, paper, market):
        buy = make_intent(market, side=Side.BUY)
        await engine.execute(buy)

        sell = make_intent(market, side=Side.SELL)
        assert sell.idempotency_key == buy.idempotency_key

        with pytest.raises(IdempotencyConflict) as exc_info:
            await engine.execute(sell)

        assert exc_info.value.idempotency_key == buy.idempotency_key
        assert engine.get(buy.idempotency_key).intent is buy
        assert paper.submit_calls == 1

    @pytest.mark.asyncio
    async def test_rejected(self, engine, paper, market):
        paper.reject_next("not enough balance")
        record = await engine.execute(make_intent(market))

        assert record.status == OrderStatus.REJECTED
        assert "balance" in record.last_error
        assert paper.order_count() == 0

    @pytest.mark.asyncio
    async def test_auth_error_propagates(self, engine, paper, market):
        paper.inject_submit_error(AuthError("401 Unauthorized"))
        intent = make_intent(market)

        with pytest.raises(AuthError):
            await engine.execute(intent)

        assert engine.get(intent.idempotency_key).status == OrderStatus.REJECTED

    @pytest.mark.asyncio
    async def test_request_error_rejects(self, engine, paper, market):
        paper.inject_submit_error(ExchangeRequestError("400 bad request", status=400))
        record = await engine.execute(make_intent(market))

        assert record.status == OrderStatus.REJECTED

    @pytest.mark.asyncio
    async def test_cancelled_during_submission_is_unknown(self, engine, paper, market):
        paper.inject_submit_error(asyncio.CancelledError())
        intent = make_intent(market)

        with pytest.raises(asyncio.CancelledError):
            await engine.execute(intent)

        assert engine.get(intent.idempotency_key).status == OrderStatus.UNKNOWN


class TestRetries:

    @pytest.mark.asyncio
    async def test_unsent_error_is_retried(self, engine, paper, clock, market):
        paper.inject_submit_error(TransientNetworkError("connection refused", request_sent=False))
        record = await engine.execute(make_intent(market))

        assert record.status == OrderStatus.ACKNOWLEDGED
        assert paper.submit_calls == 2
        assert paper.order_count() == 1
        assert clock.sleeps == [0.01]

    @pytest.mark.asyncio
    async def test_unsent_error_exhausted_rejects(self, engine, paper, market):
        for _ in range(3):
            paper.inject_submit_error(TransientNetworkError("connection refused", request_sent=False))
        record = await engine.execute(make_intent(market))

        assert record.status == OrderStatus.REJECTED
        assert record.last_error.startswith("never sent")
        assert paper.submit_calls == 3
        assert paper.order_count() == 0

    @pytest.mark.asyncio
    async def test_sent_error_retried_only_with_idempotency(self, engine, paper, market):
        # Order reached the exchange, response lost; the retry is deduplicated
        paper.inject_submit_error(TransientNetworkError("502 Bad Gateway", status=502), accept=True)
        record = await engine.execute(make_intent(market))

        assert record.status == OrderStatus.ACKNOWLEDGED
        assert paper.submit_calls == 2
        assert paper.order_count() == 1

    @pytest.mark.asyncio
    async def test_sent_error_without_idempotency_is_unknown(self, ledger, limits, clock, market):
        paper = PaperExchange(idempotent=False)
        engine = OrderExecutionEngine(paper, ledger, limits, clock=clock, max_attempts=3)
        paper.inject_submit_error(TransientNetworkError("502 Bad Gateway", status=502), accept=True)

        record = await engine.execute(make_intent(market))

        assert record.status == OrderStatus.UNKNOWN
        assert paper.submit_calls == 1
        assert paper.order_count() == 1


class TestUnknownResolution:

    @pytest.mark.asyncio
    async def test_timeout_then_fill_applies_once(self, engine, paper, ledger, market):
        paper.inject_submit_error(AmbiguousOrderOutcome("timeout"), accept=True)
        intent = make_intent(market, size=10)

        record = await engine.execute(intent)
        assert record.status == OrderStatus.UNKNOWN
        assert record.order_id is None
        assert engine.is_blocked(market.market_id)

        paper.fill_order("paper-1", 10)
        still_open = await engine.reconcile()

        assert still_open == []
        assert record.status == OrderStatus.FILLED
        assert record.order_id == "paper-1"
        assert ledger.snapshot(market.market_id, market.token_id).quantity == pytest.approx(10)
        assert not engine.is_blocked(market.market_id)

        await engine.reconcile()
        assert ledger.snapshot(market.market_id, market.token_id).quantity == pytest.approx(10)
        assert paper.order_count() == 1

    @pytest.mark.asyncio
    async def test_unknown_never_resubmitted(self, engine, paper, market):
        paper.inject_submit_error(AmbiguousOrderOutcome("timeout"), accept=True)
        intent = make_intent(market)

        await engine.execute(intent)
        await engine.execute(intent)

        assert paper.submit_calls == 1

    @pytest.mark.asyncio
    async def test_missing_unknown_rejected_after_grace(self, engine, paper, clock, market):
        paper.inject_submit_error(AmbiguousOrderOutcome("timeout"))
        record = await engine.execute(make_intent(market))
        assert record.status == OrderStatus.UNKNOWN

        await engine.reconcile()
        assert record.status == OrderStatus.UNKNOWN

        clock.advance(10_000)
        await engine.reconcile()

        assert record.status == OrderStatus.REJECTED
        assert not engine.is_blocked(market.market_id)

    @pytest.mark.asyncio
    async def test_failed_status_query_leaves_record(self, engine, paper, market):
        paper.inject_submit_error(AmbiguousOrderOutcome("timeout"), accept=True)
        record = await engine.execute(make_intent(market))

        paper.inject_status_error(ExchangeRequestError("400 bad request"))
        still_open = await engine.reconcile()

        assert still_open == [record]
        assert record.status == OrderStatus.UNKNOWN
        assert "bad request" in record.last_error

    @pytest.mark.asyncio
    async def test_rejected_status_query_does_not_stop_reconcile(self, engine, paper, ledger, market):
        first = await engine.execute(make_intent(market, version="a"))
        second = await engine.execute(make_intent(market, version="b"))
        paper.fill_order(second.order_id)

        paper.inject_status_error(OrderRejected("market closed / resolved"))
        still_open = await engine.reconcile()

        assert still_open == [first]
        assert first.status == OrderStatus.ACKNOWLEDGED
        assert first.last_error == "OrderRejected: market closed / resolved"
        assert second.status == OrderStatus.FILLED
        assert ledger.snapshot(market.market_id, market.token_id).quantity == pytest.approx(10)

        # The next pass answers normally
        await engine.reconcile()
        assert paper.status_calls == 3

    @pytest.mark.asyncio
    async def test_auth_error_in_reconcile_propagates(self, engine, paper, market):
        await engine.execute(make_intent(market))
        paper.inject_status_error(AuthError("401 Unauthorized"))

        with pytest.raises(AuthError):
            await engine.reconcile()

    @pytest.mark.asyncio
    async def test_reconcile_filters_markets(self, engine, paper, market):
        paper.inject_submit_error(AmbiguousOrderOutcome("timeout"), accept=True)
        await engine.execute(make_intent(market))

        await engine.reconcile(["other-market"])
        assert paper.status_calls == 0


class TestPartialFillsAndCancel:

    @pytest.mark.asyncio
    async def test_partial_then_full(self, engine, paper, ledger, market):
        record = await engine.execute(make_intent(market, size=10))

        paper.fill_order(record.order_id, 4)
        await engine.reconcile()
        assert record.status == OrderStatus.PARTIALLY_FILLED
        assert ledger.snapshot(market.market_id, market.token_id).quantity == pytest.approx(4)

        paper.fill_order(record.order_id)
        await engine.reconcile()
        assert record.status == OrderStatus.FILLED
        assert ledger.snapshot(market.market_id, market.token_id).quantity == pytest.approx(10)

    @pytest.mark.asyncio
    async def test_cancel_confirmed(self, engine, paper, market):
        record = await engine.execute(make_intent(market))

        assert await engine.cancel(record) is True
        assert record.status == OrderStatus.CANCELLED
        assert paper.cancel_calls == 1

    @pytest.mark.asyncio
    async def test_cancel_picks_up_prior_fills(self, engine, paper, ledger, market):
        record = await engine.execute(make_intent(market, size=10))
        paper.fill_order(record.order_id, 4)

        assert await engine.cancel(record) is True
        assert record.status == OrderStatus.CANCELLED
        assert record.filled_quantity == pytest.approx(4)
        assert ledger.snapshot(market.market_id, market.token_id).quantity == pytest.approx(4)

    @pytest.mark.asyncio
    async def test_cancel_with_failed_status_query_stays_open(self, engine, paper, market):
        record = await engine.execute(make_intent(market))
        paper.inject_status_error(OrderRejected("market closed"))

        assert await engine.cancel(record) is True
        assert record.status == OrderStatus.ACKNOWLEDGED
        assert "market closed" in record.last_error

        await engine.reconcile()
        assert record.status == OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_fills_applied_in_sequence_order(self, engine, paper, ledger, market):
        record = await engine.execute(make_intent(market, size=10))

        def fill(fill_id, qty, price, seq):
            return Fill(
                fill_id=fill_id, order_id=record.order_id, market_id=market.market_id,
                token_id=market.token_id, side=Side.BUY, quantity=qty, price=price, sequence=seq,
            )

        late, early, middle = fill("c", 2, 0.44, 3), fill("a", 5, 0.40, 1), fill("b", 3, 0.42, 2)
        report = OrderStatusReport(
            order_id=record.order_id,
            status=OrderStatus.FILLED,
            filled_quantity=10,
            fills=[late, early, middle],
        )

        with patch.object(paper, "get_order_status", AsyncMock(return_value=report)), \
                patch.object(ledger, "apply_fill", wraps=ledger.apply_fill) as applied:
            await engine.reconcile()

        assert applied.call_args_list == [call(early), call(middle), call(late)]
        assert record.applied_fill_ids == {"a", "b", "c"}
        assert record.status == OrderStatus.FILLED

        pos = ledger.snapshot(market.market_id, market.token_id)
        assert pos.quantity == pytest.approx(10)
        assert pos.avg_entry_price == pytest.approx((5 * 0.40 + 3 * 0.42 + 2 * 0.44) / 10)

    @pytest.mark.asyncio
    async def test_cancel_terminal_is_noop(self, engine, paper, market):
        paper.set_book(market.token_id, 0.40, 0.42)
        record = await engine.execute(make_intent(market))

        assert await engine.cancel(record) is False
        assert paper.cancel_calls == 0

    @pytest.mark.asyncio
    async def test_cancel_open(self, engine, market):
        await engine.execute(make_intent(market, version="a"))
        await engine.execute(make_intent(market, version="b"))

        assert await engine.cancel_open(market.market_id) == 2
        assert engine.open_records(market.market_id) == []


class TestRiskChecks:

    @pytest.mark.asyncio
    async def test_order_size_limit(self, engine, paper, market):
        with pytest.raises(RiskLimitExceeded):
            await engine.execute(make_intent(market, size=60))

        assert paper.submit_calls == 0
        assert engine.records() == []

    @pytest.mark.asyncio
    async def test_position_limit_counts_ledger(self, engine, ledger, market):
        ledger.apply_fill(Fill(
            fill_id="seed", order_id="o0", market_id=market.market_id, token_id=market.token_id,
            side=Side.BUY, quantity=95, price=0.40,
        ))

        with pytest.raises(RiskLimitExceeded):
            await engine.execute(make_intent(market, size=10))

        record = await engine.execute(make_intent(market, side=Side.SELL, size=10))
        assert record.intent.side == Side.SELL

    @pytest.mark.asyncio
    async def test_position_limit_counts_open_orders(self, engine, market):
        await engine.execute(make_intent(market, size=50, version="a"))
        await engine.execute(make_intent(market, size=50, version="b"))

        with pytest.raises(RiskLimitExceeded):
            await engine.execute(make_intent(market, size=10, version="c"))

    @pytest.mark.asyncio
    async def test_daily_trade_limit(self, paper, ledger, limits, clock, market):
        engine = OrderExecutionEngine(paper, ledger, limits, clock=clock, max_trades_per_day=1)
        await engine.execute(make_intent(market, version="a"))

        with pytest.raises(RiskLimitExceeded):
            await engine.execute(make_intent(market, version="b"))

        clock.advance(24 * 3600 * 1000)
        await engine.execute(make_intent(market, version="c"))
        assert paper.submit_calls == 2

    def test_batch_is_checked_as_a_whole(self, paper, ledger, limits, clock, market):
        engine = OrderExecutionEngine(paper, ledger, limits, clock=clock, max_trades_per_day=1)
        pair = [make_intent(market, version="a"), make_intent(market, version="b")]

        with pytest.raises(RiskLimitExceeded):
            engine.check_risk_all(pair)

        engine.check_risk_all(pair[:1])

    def test_exposure_is_per_token(self, engine, ledger, market):
        ledger.apply_fill(Fill(
            fill_id="seed", order_id="o0", market_id=market.market_id, token_id="other-token",
            side=Side.BUY, quantity=95, price=0.40,
        ))

        engine.check_risk(make_intent(market, size=10))


class TestHousekeeping:

    @pytest.mark.asyncio
    async def test_prune_drops_old_terminal_records(self, paper, ledger, limits, clock, market):
        engine = OrderExecutionEngine(paper, ledger, limits, clock=clock, retention_ms=60_000)
        paper.set_book(market.token_id, 0.40, 0.42)
        filled = await engine.execute(make_intent(market, version="a"))
        paper.set_book(market.token_id, None, None)
        resting = await engine.execute(make_intent(market, version="b"))
        assert filled.status == OrderStatus.FILLED

        assert engine.prune() == 0

        clock.advance(60_001)
        assert engine.prune() == 1
        assert engine.get(filled.idempotency_key) is None
        assert engine.get(resting.idempotency_key) is resting

    @pytest.mark.asyncio
    async def test_prune_forgets_previous_days(self, paper, ledger, limits, clock, market):
        engine = OrderExecutionEngine(paper, ledger, limits, clock=clock)
        await engine.execute(make_intent(market))

        clock.advance(24 * 3600 * 1000)
        engine.prune()

        assert engine.trades_today() == 0
        assert engine._trades_by_day == {}

    @pytest.mark.asyncio
    async def test_restart_skips_expired_records(self, paper, ledger, limits, clock):
        journal = EventJournalSQLite(db_path=":memory:")
        journal.init_schema()
        old_market = make_market(market_id="0xold")
        paper.set_book(old_market.token_id, 0.40, 0.42)

        first = OrderExecutionEngine(paper, ledger, limits, journal=journal, clock=clock, retention_ms=60_000)
        intent = make_intent(old_market)
        await first.execute(intent)

        clock.advance(120_000)
        restarted = OrderExecutionEngine(paper, ledger, limits, journal=journal, clock=clock, retention_ms=60_000)
        assert restarted.get(intent.idempotency_key) is None

        journal.close()


class TestPersistence:

    @pytest.mark.asyncio
    async def test_records_survive_restart(self, paper, ledger, limits, clock, market):
        journal = EventJournalSQLite(db_path=":memory:")
        journal.init_schema()
        intent = make_intent(market)

        first = OrderExecutionEngine(paper, ledger, limits, journal=journal, clock=clock)
        await first.execute(intent)

        restarted = OrderExecutionEngine(paper, ledger, limits, journal=journal, clock=clock)
        restored = restarted.get(intent.idempotency_key)

        assert restored.status == OrderStatus.ACKNOWLEDGED
        assert restored.order_id == "paper-1"
        assert restarted.trades_today() == 1

        await restarted.execute(intent)
        assert paper.submit_calls == 1

        journal.close()
