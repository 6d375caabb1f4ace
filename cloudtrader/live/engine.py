"""
Cycle orchestrator.

Each cycle:
1. Drawdown guard check (halts before touching any symbol).
2. Every configured symbol is processed concurrently, each under its own lock:
   fetch candles, run the exit sequence for an open position, otherwise
   evaluate entries behind the trend filter.
3. Cycle counter increments.

One symbol's failure never aborts the others. Only bookkeeping invariant
violations propagate.
"""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from cloudtrader.config.config import Config
from cloudtrader.domain.models import (
    BlockReason,
    EnterLong,
    EnterShort,
    ExitLong,
    Metrics,
    NoAction,
    Side,
    Transaction,
    TradeIntent,
)
from cloudtrader.domain.protocols import TransactionSink
from cloudtrader.exceptions import DataError, DrawdownHaltError, InvariantError, OperationalError
from cloudtrader.monitoring.logger import bind_cycle_context, clear_cycle_context, get_logger
from cloudtrader.portfolio.ledger import PositionLedger
from cloudtrader.portfolio.portfolio import Portfolio
from cloudtrader.risk.drawdown_guard import DrawdownGuard
from cloudtrader.risk.price_validator import validate_ticker
from cloudtrader.risk.risk_sizer import RiskSizer
from cloudtrader.storage.transaction_log import TransactionLog, export_csv
from cloudtrader.strategy.indicators import Indicators
from cloudtrader.strategy.signals import (
    cloud_signal,
    detect_breakout,
    trend_filter,
    vote_cloud_intent,
)

logger = get_logger(__name__)


class TradingEngine:
    """
    Owns the portfolio, ledger and drawdown guard, and exposes the
    status and control surface consumed by the dashboard and CLI.
    """

    def __init__(
        self,
        config: Config,
        market_data: Any,
        *,
        sink: Optional[TransactionSink] = None,
        guard: Optional[DrawdownGuard] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.config = config
        self.market_data = market_data
        self.sink = sink
        self._now = now

        risk = config.risk
        self.metrics = Metrics()
        self.portfolio = Portfolio(Decimal(str(risk.initial_capital)), config.exchange.quote_currency)
        self.ledger = PositionLedger(
            risk,
            self.portfolio,
            self.metrics,
            sizer=RiskSizer(risk),
            sink=sink,
            now=now,
        )
        self.guard = guard or DrawdownGuard(risk, self.metrics, config.engine.drawdown_state_path)

        self.symbols: List[str] = list(config.exchange.symbols)
        self.running = False
        self.started_at: Optional[datetime] = None
        self.last_cycle_at: Optional[datetime] = None
        self.last_block_reason: Dict[str, str] = {}
        self.symbol_errors: Dict[str, str] = {}
        self.last_prices: Dict[str, Decimal] = {}
        self._symbol_locks: Dict[str, asyncio.Lock] = {}

    @classmethod
    def from_config(cls, config: Config) -> "TradingEngine":
        """Wire the engine to the configured exchange and transaction log."""
        from cloudtrader.data.exchange_client import ExchangeClient
        from cloudtrader.data.market_data import MarketData

        client = ExchangeClient(
            config.exchange.name,
            config.exchange.api_key,
            config.exchange.api_secret,
            enable_rate_limit=config.exchange.enable_rate_limit,
            timeout_ms=config.exchange.timeout_ms,
        )
        return cls(
            config,
            MarketData(client, config.data),
            sink=TransactionLog(config.storage.transaction_log_path),
        )

    # ============ CONTROL ============

    @property
    def halted(self) -> bool:
        return self.guard.is_latched()

    def start(self) -> None:
        """Allow cycles to run. A latched drawdown halt must be acknowledged first."""
        if self.halted:
            raise DrawdownHaltError(
                f"Drawdown halt is latched ({self.guard.reason}); acknowledge it before restarting"
            )
        if not self.running:
            self.running = True
            self.started_at = self.started_at or self._now()
            logger.info("Engine started", symbols=len(self.symbols))

    def stop(self) -> None:
        """Graceful stop. The current cycle finishes; no further cycles are scheduled."""
        if self.running:
            self.running = False
            logger.info("Engine stopped", cycles=self.metrics.cycles)

    async def force_close(self, symbol: str) -> Optional[Transaction]:
        """Close a position through the ledger exit path, bypassing signals."""
        if self.ledger.get(symbol) is None:
            return None

        async with self._lock_for(symbol):
            position = self.ledger.get(symbol)
            if position is None:
                return None
            try:
                ticker = await self.market_data.fetch_ticker(symbol)
                price = ticker.last
            except (OperationalError, DataError) as e:
                price = self.last_prices.get(symbol) or position.last_price
                logger.warning(
                    "Ticker unavailable for force-close, using last price",
                    symbol=symbol,
                    price=str(price),
                    error=str(e),
                )
            self.last_prices[symbol] = price
            return self.ledger.close_position(symbol, price, reason="force_close")

    # ============ CYCLE ============

    async def run_cycle(self) -> bool:
        """
        Run one decision cycle.

        Returns:
            False if the drawdown guard halted the engine, else True
        """
        check = self.guard.check(self.ledger.equity())
        if check.halted:
            self.running = False
            logger.critical(
                "Cycle skipped: drawdown halt",
                drawdown_pct=f"{check.current_drawdown:.2f}",
                equity=str(check.equity),
            )
            return False

        # Symbol tasks inherit the bound cycle number
        bind_cycle_context(cycle=self.metrics.cycles + 1)
        try:
            await asyncio.gather(*(self.process_symbol(symbol) for symbol in self.symbols))
        finally:
            clear_cycle_context("cycle")

        self.metrics.cycles += 1
        self.last_cycle_at = self._now()
        logger.info(
            "Cycle complete",
            cycle=self.metrics.cycles,
            equity=str(self.ledger.equity()),
            open_positions=self.ledger.open_count,
            errors=len(self.symbol_errors),
        )
        return True

    async def process_symbol(self, symbol: str) -> None:
        """Analyse one symbol. Errors are recorded, never propagated (except invariants)."""
        async with self._lock_for(symbol):
            try:
                await self._analyze(symbol)
                self.symbol_errors.pop(symbol, None)
            except InvariantError:
                raise
            except Exception as e:
                self.symbol_errors[symbol] = f"{type(e).__name__}: {e}"
                logger.error(
                    "Symbol analysis failed",
                    symbol=symbol,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=not isinstance(e, OperationalError),
                )

    async def _analyze(self, symbol: str) -> None:
        strategy = self.config.strategy
        candles = await self.market_data.fetch_multi_timeframe(
            symbol, strategy.timeframes, strategy.candle_limit
        )

        execution = candles.get(strategy.execution_timeframe) or []
        if not execution:
            self._block(symbol, BlockReason.INSUFFICIENT_DATA)
            return

        price = execution[-1].close
        self.last_prices[symbol] = price
        self.ledger.mark(symbol, price)

        atr_values = Indicators.atr(candles.get(strategy.atr_timeframe) or [], self.config.risk.atr_period)
        atr = atr_values[-1] if atr_values else None

        clouds = {tf: Indicators.ichimoku(c, strategy.ichimoku) for tf, c in candles.items()}
        signals = {tf: cloud_signal(points[-1] if points else None, price) for tf, points in clouds.items()}

        # Open position: exits only
        if self.ledger.get(symbol) is not None:
            self.ledger.evaluate_exits(symbol, price, atr)
            if self.ledger.has_long(symbol):
                intent = signals[strategy.execution_timeframe].to_intent(has_long=True)
                if isinstance(intent, ExitLong):
                    self.ledger.close_position(symbol, price, reason=f"{intent.strategy}_exit")
            return

        if atr is None:
            self._block(symbol, BlockReason.INSUFFICIENT_DATA)
            return

        trend_candles = candles.get(strategy.trend_timeframe) or []
        adx_values = Indicators.adx(trend_candles, strategy.adx_period)
        trend_cloud = clouds.get(strategy.trend_timeframe)
        trend = trend_filter(
            adx_values[-1] if adx_values else None,
            trend_cloud[-1] if trend_cloud else None,
            price,
            Decimal(str(strategy.adx_threshold)),
        )
        if not trend.confirmed:
            self._block(symbol, BlockReason.TREND_NOT_CONFIRMED)
            return

        intents: List[TradeIntent] = [vote_cloud_intent(list(signals.values()), strategy.min_timeframe_votes)]
        if strategy.breakout_enabled:
            breakout = detect_breakout(execution, price, strategy.breakout_lookback)
            intents.append(
                breakout.to_intent(strategy.breakout_min_confidence) if breakout else NoAction("insufficient_data")
            )

        actionable = [i for i in intents if isinstance(i, (EnterLong, EnterShort))]
        if not actionable:
            self._block(symbol, BlockReason.NO_SIGNAL)
            return

        # At most one entry per symbol per cycle; the first accepted source wins
        for intent in actionable:
            if await self._enter(symbol, intent, price, atr):
                break

    async def _enter(self, symbol: str, intent: TradeIntent, price: Decimal, atr: Decimal) -> bool:
        side = Side.LONG if isinstance(intent, EnterLong) else Side.SHORT
        if side == Side.SHORT and not self.config.strategy.shorts_enabled:
            self._block(symbol, BlockReason.SHORTS_DISABLED)
            return False
        if self.ledger.get(symbol) is not None:
            self._block(symbol, BlockReason.POSITION_EXISTS)
            return False
        if self.ledger.open_count >= self.ledger.max_positions:
            self._block(symbol, BlockReason.TOO_MANY_POSITIONS)
            return False

        ticker = await self.market_data.fetch_ticker(symbol)
        rejection = validate_ticker(ticker, price, self.config.validation)
        if rejection is not None:
            self._block(symbol, rejection)
            return False

        result = await self.ledger.open_position(
            symbol, side, ticker.last, atr, intent.strategy, reason=intent.reason
        )
        if result.accepted:
            self.last_block_reason.pop(symbol, None)
            self.last_prices[symbol] = ticker.last
        else:
            self._block(symbol, result.reason)
        return result.accepted

    def _block(self, symbol: str, reason: BlockReason) -> None:
        self.last_block_reason[symbol] = reason.value
        logger.debug("No entry", symbol=symbol, reason=reason.value)

    def _lock_for(self, symbol: str) -> asyncio.Lock:
        lock = self._symbol_locks.get(symbol)
        if lock is None:
            lock = self._symbol_locks[symbol] = asyncio.Lock()
        return lock

    # ============ STATUS ============

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "halted": self.halted,
            "halt_reason": self.guard.reason,
            "cycles": self.metrics.cycles,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "equity": str(self.ledger.equity()),
            "initial_capital": str(self.portfolio.initial_quote),
            "portfolio": self.portfolio.snapshot(),
            "open_positions": self.ledger.open_count,
            "metrics": self.metrics.to_dict(),
            "last_block_reason": dict(self.last_block_reason),
            "symbol_errors": dict(self.symbol_errors),
        }

    def positions(self) -> Dict[str, List[Dict[str, Any]]]:
        fee = self.ledger.fee_rate
        return {
            "long": [p.to_dict(fee) for p in self.ledger.longs()],
            "short": [p.to_dict(fee) for p in self.ledger.shorts()],
        }

    def transactions(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return [tx.to_dict() for tx in self.portfolio.recent(limit)]

    def export_results(self, path: Optional[str | Path] = None) -> Path:
        return export_csv(self.portfolio.history, path or self.config.storage.results_csv_path)
