"""
Cycle scheduler.

Runs engine cycles on a fixed interval with an injectable clock and sleep,
so timing is deterministic under test. Stops on shutdown(), on a drawdown
halt, or when the configured cycle/duration limit is reached, and exports
the results CSV when it finishes.
"""
import asyncio
import time
from typing import Optional

from cloudtrader.domain.protocols import Clock, Sleeper
from cloudtrader.live.engine import TradingEngine
from cloudtrader.monitoring.logger import get_logger

logger = get_logger(__name__)


class CycleScheduler:
    """
    Drives TradingEngine.run_cycle().

    While the engine is stopped (dashboard stop) the scheduler idles and
    resumes when it is started again.
    """

    def __init__(
        self,
        engine: TradingEngine,
        *,
        interval_seconds: Optional[float] = None,
        max_cycles: Optional[int] = None,
        run_minutes: Optional[float] = None,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
        export_on_finish: bool = True,
    ):
        engine_cfg = engine.config.engine
        self.engine = engine
        self.interval = interval_seconds if interval_seconds is not None else engine_cfg.cycle_interval_seconds
        self.max_cycles = max_cycles if max_cycles is not None else engine_cfg.max_cycles
        self.run_minutes = run_minutes if run_minutes is not None else engine_cfg.run_minutes
        self._clock = clock
        self._sleep = sleep
        self.export_on_finish = export_on_finish
        self._shutdown = False
        self.finish_reason: Optional[str] = None

    def shutdown(self) -> None:
        """Request a graceful stop at the next cycle boundary."""
        self._shutdown = True
        self.engine.stop()

    def _limit_reached(self, started: float, cycles_run: int) -> Optional[str]:
        if self.max_cycles is not None and cycles_run >= self.max_cycles:
            return "max_cycles"
        if self.run_minutes is not None and self._clock() - started >= self.run_minutes * 60:
            return "run_minutes"
        return None

    async def run(self) -> str:
        """
        Run until stopped. Returns the reason the loop ended.
        """
        self.engine.start()
        started = self._clock()
        cycles_run = 0
        logger.info(
            "Scheduler started",
            interval_seconds=self.interval,
            max_cycles=self.max_cycles,
            run_minutes=self.run_minutes,
        )

        try:
            while not self._shutdown:
                cycle_start = self._clock()
                if self.engine.running:
                    if not await self.engine.run_cycle():
                        self.finish_reason = "drawdown_halt"
                        break
                    cycles_run += 1

                reason = self._limit_reached(started, cycles_run)
                if reason:
                    self.finish_reason = reason
                    break
                if self._shutdown:
                    break

                elapsed = self._clock() - cycle_start
                await self._sleep(max(0.0, self.interval - elapsed))

            if self.finish_reason is None:
                self.finish_reason = "shutdown"
        finally:
            self.engine.stop()
            if self.export_on_finish:
                try:
                    self.engine.export_results()
                except OSError as e:
                    logger.error("Failed to export results", error=str(e))

        logger.info("Scheduler finished", reason=self.finish_reason, cycles=cycles_run)
        return self.finish_reason
