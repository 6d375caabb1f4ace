"""
Tests for the position ledger state machine.

Covers entries, the staged exit sequence, trailing stop ratchet,
single-position-per-asset, quantity conservation and cash reconciliation.
"""
from decimal import Decimal

import pytest

from cloudtrader.config.config import RiskConfig
from cloudtrader.domain.models import BlockReason, Metrics, PositionPhase, Side, TransactionType
from cloudtrader.portfolio.ledger import PositionLedger
from cloudtrader.portfolio.portfolio import Portfolio

D = Decimal


def make_ledger(**risk_overrides) -> PositionLedger:
    config = RiskConfig(**risk_overrides)
    portfolio = Portfolio(D(str(config.initial_capital)))
    return PositionLedger(config, portfolio, Metrics())


async def open_long(ledger, symbol="BTC/USDT", price="100", atr="2"):
    result = await ledger.open_position(symbol, Side.LONG, D(price), D(atr), "ichimoku")
    assert result.accepted, result.reason
    return result


async def open_short(ledger, symbol="BTC/USDT", price="100", atr="2"):
    result = await ledger.open_position(symbol, Side.SHORT, D(price), D(atr), "ichimoku")
    assert result.accepted, result.reason
    return result


class TestEntries:

    @pytest.mark.asyncio
    async def test_risk_override_sizes_single_entry(self):
        ledger = make_ledger()

        result = await ledger.open_position(
            "BTC/USDT", Side.LONG, D("100"), D("2"), "manual", risk_override=D("5")
        )
        assert result.position.entry_cost == D("50")
        assert ledger.portfolio.quote_balance == D("950")

        # Volatility throttle halves the override too
        result = await ledger.open_position(
            "ETH/USDT", Side.LONG, D("100"), D("12"), "manual", risk_override=D("5")
        )
        assert result.position.entry_cost == D("23.75")

        result = await ledger.open_position(
            "SOL/USDT", Side.LONG, D("100"), D("2"), "manual", risk_override=D("150")
        )
        assert not result.accepted
        assert result.reason == BlockReason.INSUFFICIENT_BALANCE
        assert ledger.portfolio.quote_balance == D("926.25")

        # Entries without an override keep the configured 3%
        result = await open_long(ledger, symbol="ADA/USDT")
        assert result.position.entry_cost == D("27.7875")

    @pytest.mark.asyncio
    async def test_long_entry_debits_balance_and_applies_fee(self):
        ledger = make_ledger()
        result = await open_long(ledger)

        position = result.position
        assert position.quantity == D("0.2997")
        assert position.entry_cost == D("30")
        assert position.stop_loss == D("96")
        assert position.trailing_stop == D("97")
        assert position.take_profit_1 == D("102.2")
        assert position.take_profit_2 == D("120")
        assert ledger.portfolio.quote_balance == D("970")
        assert ledger.portfolio.base_balances["BTC"] == D("0.2997")
        assert ledger.metrics.total_trades == 1
        assert ledger.state("BTC/USDT") == PositionPhase.LONG_OPEN

        tx = result.transaction
        assert tx.type == TransactionType.BUY
        assert tx.pnl is None
        assert tx.strategy_tag == "ichimoku"
        assert D(tx.portfolio["USDT"]) == D("970")

    @pytest.mark.asyncio
    async def test_short_entry_locks_collateral(self):
        ledger = make_ledger()
        result = await open_short(ledger)

        assert result.transaction.type == TransactionType.SHORT
        assert result.position.quantity == D("0.3")
        assert ledger.portfolio.quote_balance == D("970")
        assert ledger.portfolio.base_balances["BTC"] == D("-0.3")
        assert ledger.state("BTC/USDT") == PositionPhase.SHORT_OPEN

    @pytest.mark.asyncio
    async def test_single_position_per_asset(self):
        ledger = make_ledger()
        await open_long(ledger)

        short = await ledger.open_position("BTC/USDT", Side.SHORT, D("100"), D("2"), "breakout")
        again = await ledger.open_position("BTC/USDT", Side.LONG, D("100"), D("2"), "breakout")

        assert short.reason == BlockReason.POSITION_EXISTS
        assert again.reason == BlockReason.POSITION_EXISTS
        assert ledger.has_long("BTC/USDT") and not ledger.has_short("BTC/USDT")
        assert len(ledger.portfolio.history) == 1

    @pytest.mark.asyncio
    async def test_position_cap_rejects_without_transaction(self):
        ledger = make_ledger(max_positions=1)
        await open_long(ledger, "BTC/USDT")

        result = await ledger.open_position("ETH/USDT", Side.LONG, D("100"), D("2"), "ichimoku")

        assert not result.accepted
        assert result.reason == BlockReason.TOO_MANY_POSITIONS
        assert result.transaction is None
        assert len(ledger.portfolio.history) == 1
        assert ledger.metrics.total_trades == 1

    @pytest.mark.asyncio
    async def test_below_min_notional(self):
        ledger = make_ledger(initial_capital=200)
        result = await ledger.open_position("BTC/USDT", Side.LONG, D("100"), D("2"), "ichimoku")
        assert result.reason == BlockReason.BELOW_MIN_NOTIONAL
        assert ledger.portfolio.history == []


class TestExitSequence:

    @pytest.mark.asyncio
    async def test_tp1_sells_half_and_keeps_stop(self):
        ledger = make_ledger()
        await open_long(ledger)

        txs = ledger.evaluate_exits("BTC/USDT", D("103"), D("2"))

        assert [tx.type for tx in txs] == [TransactionType.TP1]
        position = ledger.get("BTC/USDT")
        assert txs[0].amount == D("0.14985")
        assert position.quantity == D("0.14985")
        assert position.tp1_filled
        assert position.stop_loss == D("96")
        # Same ATR multiple as at entry, measured from the new peak
        assert position.trailing_stop == D("100")
        assert txs[0].pnl > 0
        assert ledger.metrics.tp1_fills == 1
        # The partial counts as a win on its own; the position stays open
        assert ledger.metrics.winning_trades == 1
        assert ledger.metrics.losing_trades == 0
        assert ledger.state("BTC/USDT") == PositionPhase.LONG_PARTIAL

    @pytest.mark.asyncio
    async def test_trailing_breach_after_peak(self):
        ledger = make_ledger()
        await open_long(ledger)

        first = ledger.evaluate_exits("BTC/USDT", D("110"), D("2"))
        assert [tx.type for tx in first] == [TransactionType.TP1]
        assert ledger.get("BTC/USDT").trailing_stop == D("107")

        second = ledger.evaluate_exits("BTC/USDT", D("106.9"), D("2"))

        assert [tx.type for tx in second] == [TransactionType.TRAILING_STOP]
        assert ledger.get("BTC/USDT") is None
        assert ledger.state("BTC/USDT") == PositionPhase.FLAT
        assert "BTC" not in ledger.portfolio.base_balances
        assert ledger.metrics.winning_trades == 2
        assert ledger.metrics.losing_trades == 0

    @pytest.mark.asyncio
    async def test_tp2_closes_remainder(self):
        ledger = make_ledger()
        await open_long(ledger)

        txs = ledger.evaluate_exits("BTC/USDT", D("121"), D("2"))

        assert [tx.type for tx in txs] == [TransactionType.TP1, TransactionType.TP2]
        assert ledger.get("BTC/USDT") is None
        assert ledger.metrics.winning_trades == 2

    @pytest.mark.asyncio
    async def test_hard_stop_when_trailing_is_wider(self):
        ledger = make_ledger(trailing_atr_multiplier=3)
        await open_long(ledger)

        txs = ledger.evaluate_exits("BTC/USDT", D("95.5"), D("2"))

        assert [tx.type for tx in txs] == [TransactionType.STOP_LOSS]
        assert txs[0].pnl < 0
        assert ledger.metrics.losing_trades == 1

    @pytest.mark.asyncio
    async def test_short_exits_use_cover_types(self):
        ledger = make_ledger(trailing_atr_multiplier=3)
        await open_short(ledger)

        partial = ledger.evaluate_exits("BTC/USDT", D("97"), D("2"))
        assert [tx.type for tx in partial] == [TransactionType.COVER1]

        ledger_sl = make_ledger(trailing_atr_multiplier=3)
        await open_short(ledger_sl)
        stop = ledger_sl.evaluate_exits("BTC/USDT", D("104.5"), D("2"))
        assert [tx.type for tx in stop] == [TransactionType.COVER_SL]

    @pytest.mark.asyncio
    async def test_re_evaluation_without_price_change_is_noop(self):
        ledger = make_ledger()
        await open_long(ledger)
        ledger.evaluate_exits("BTC/USDT", D("103"), D("2"))
        before = ledger.get("BTC/USDT").to_dict()
        history_len = len(ledger.portfolio.history)

        assert ledger.evaluate_exits("BTC/USDT", D("103"), D("2")) == []
        assert ledger.get("BTC/USDT").to_dict() == before
        assert len(ledger.portfolio.history) == history_len

    @pytest.mark.asyncio
    async def test_flat_symbol_has_no_exits(self):
        ledger = make_ledger()
        assert ledger.evaluate_exits("BTC/USDT", D("100"), D("2")) == []


class TestInvariants:

    @pytest.mark.asyncio
    async def test_long_trailing_stop_never_decreases(self):
        ledger = make_ledger()
        await open_long(ledger)
        stops = []
        for price, atr in [("101", "2"), ("102", "2"), ("101.5", "2"), ("104", "2"), ("105", "4"), ("104.5", "1")]:
            ledger.evaluate_exits("BTC/USDT", D(price), D(atr))
            stops.append(ledger.get("BTC/USDT").trailing_stop)

        assert stops == sorted(stops)
        # A wider ATR at a new peak must not pull the stop down
        assert stops[4] == stops[3]

    @pytest.mark.asyncio
    async def test_short_trailing_stop_never_increases(self):
        ledger = make_ledger()
        await open_short(ledger)
        stops = []
        for price in ["99", "98.5", "99.2", "98", "98.4"]:
            ledger.evaluate_exits("BTC/USDT", D(price), D("2"))
            stops.append(ledger.get("BTC/USDT").trailing_stop)

        assert stops == sorted(stops, reverse=True)

    @pytest.mark.asyncio
    async def test_quantity_conservation(self):
        ledger = make_ledger()
        await open_long(ledger)
        ledger.evaluate_exits("BTC/USDT", D("103"), D("2"))

        position = ledger.get("BTC/USDT")
        sold = sum(tx.amount for tx in ledger.portfolio.history if not tx.type.is_entry)
        assert sold + position.quantity == position.original_quantity
        assert position.closed_quantity == sold

    @pytest.mark.asyncio
    async def test_quote_balance_reconciles_with_history(self):
        ledger = make_ledger()
        await open_long(ledger, "BTC/USDT")
        await open_short(ledger, "ETH/USDT")
        ledger.evaluate_exits("BTC/USDT", D("103"), D("2"))
        ledger.evaluate_exits("ETH/USDT", D("97"), D("2"))
        ledger.close_position("BTC/USDT", D("101"))
        ledger.close_position("ETH/USDT", D("99"))

        expected = ledger.portfolio.initial_quote
        for tx in ledger.portfolio.history:
            expected += tx.quote_delta
        assert expected == ledger.portfolio.quote_balance
        ledger.portfolio.reconcile()
        assert ledger.open_count == 0


class TestClosePosition:

    @pytest.mark.asyncio
    async def test_short_cover_returns_collateral_plus_pnl(self):
        ledger = make_ledger()
        await open_short(ledger)

        tx = ledger.close_position("BTC/USDT", D("90"), reason="force_close")

        assert tx.type == TransactionType.COVER
        # 30 * 0.999 - 0.3 * 90 * 1.001
        assert tx.pnl == D("2.943")
        assert ledger.portfolio.quote_balance == D("1002.943")
        assert ledger.metrics.winning_trades == 1
        assert ledger.get("BTC/USDT") is None

    @pytest.mark.asyncio
    async def test_long_close_emits_sell(self):
        ledger = make_ledger()
        await open_long(ledger)

        tx = ledger.close_position("BTC/USDT", D("99"))

        assert tx.type == TransactionType.SELL
        assert tx.pnl < 0
        assert ledger.metrics.losing_trades == 1

    def test_close_flat_returns_none(self):
        ledger = make_ledger()
        assert ledger.close_position("BTC/USDT", D("100")) is None


class TestEquity:

    @pytest.mark.asyncio
    async def test_equity_marks_to_last_price(self):
        ledger = make_ledger()
        await open_long(ledger, "BTC/USDT")
        await open_short(ledger, "ETH/USDT")

        ledger.mark("BTC/USDT", D("110"))
        ledger.mark("ETH/USDT", D("90"))

        # Short sized from the 970 left after the long: 29.1 notional, 0.291 quantity
        quote = D("1000") - D("30") - D("29.1")
        long_value = D("0.2997") * D("110")
        short_value = D("29.1") + D("0.291") * D("10")
        assert ledger.equity() == quote + long_value + short_value
