"""
Drawdown guard.

Computes drawdown against initial capital (or the equity high-water mark)
before every cycle and latches a halt when the configured maximum is
exceeded. The latch survives restarts through an optional JSON state file
and is cleared only by an explicit acknowledge().
"""
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional

from cloudtrader.config.config import RiskConfig
from cloudtrader.constants import HUNDRED, ZERO
from cloudtrader.domain.models import Metrics
from cloudtrader.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class DrawdownCheck:
    equity: Decimal
    reference: Decimal
    current_drawdown: Decimal
    max_drawdown: Decimal
    halted: bool


class DrawdownGuard:
    """
    Latched drawdown halt.

    Not retryable: once latched the engine refuses to run until acknowledged.
    """

    def __init__(
        self,
        config: RiskConfig,
        metrics: Metrics,
        state_path: Optional[str | Path] = None,
    ):
        self.initial_capital = Decimal(str(config.initial_capital))
        self.max_drawdown_pct = Decimal(str(config.max_drawdown_pct))
        self.use_high_water_mark = config.drawdown_reference == "high_water_mark"
        self.metrics = metrics
        self.state_path = Path(state_path) if state_path else None

        self.high_water_mark = self.initial_capital
        self.latched = False
        self.reason: Optional[str] = None
        self.activated_at: Optional[datetime] = None

        self._load_state()

    @property
    def reference(self) -> Decimal:
        return self.high_water_mark if self.use_high_water_mark else self.initial_capital

    def check(self, equity: Decimal) -> DrawdownCheck:
        """
        Update drawdown metrics for `equity` and latch if the limit is breached.
        """
        if equity > self.high_water_mark:
            self.high_water_mark = equity
            if self.use_high_water_mark:
                self._save_state()

        reference = self.reference
        current = max(ZERO, (reference - equity) / reference * HUNDRED)
        self.metrics.current_drawdown = current
        if current > self.metrics.max_drawdown:
            self.metrics.max_drawdown = current

        if current > self.max_drawdown_pct and not self.latched:
            self.latched = True
            self.reason = f"drawdown {current:.2f}% exceeds {self.max_drawdown_pct}%"
            self.activated_at = datetime.now(timezone.utc)
            logger.critical(
                "Drawdown limit breached, halting",
                equity=str(equity),
                reference=str(reference),
                drawdown_pct=f"{current:.2f}",
                max_drawdown_pct=str(self.max_drawdown_pct),
            )
            self._save_state()

        return DrawdownCheck(
            equity=equity,
            reference=reference,
            current_drawdown=current,
            max_drawdown=self.metrics.max_drawdown,
            halted=self.latched,
        )

    def acknowledge(self) -> bool:
        """
        Manually acknowledge a drawdown halt to allow restart.

        Returns:
            True if acknowledged successfully
        """
        if not self.latched:
            logger.warning("Drawdown guard not latched, nothing to acknowledge")
            return False

        logger.info(
            "Drawdown halt acknowledged",
            reason=self.reason or "unknown",
            activated_at=self.activated_at.isoformat() if self.activated_at else "unknown",
        )
        self.latched = False
        self.reason = None
        self.activated_at = None
        self._save_state()
        return True

    def is_latched(self) -> bool:
        return self.latched

    def get_status(self) -> dict:
        return {
            "latched": self.latched,
            "reason": self.reason,
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "reference": str(self.reference),
            "high_water_mark": str(self.high_water_mark),
            "current_drawdown": str(self.metrics.current_drawdown),
            "max_drawdown": str(self.metrics.max_drawdown),
        }

    def _save_state(self) -> None:
        """Persist the latch. If persistence fails, crash: a lost latch could resume trading."""
        if self.state_path is None:
            return
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        state = {
            "latched": self.latched,
            "reason": self.reason,
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "high_water_mark": str(self.high_water_mark),
        }
        with open(self.state_path, "w") as f:
            json.dump(state, f)

    def _load_state(self) -> None:
        """Load a persisted latch. A corrupt file defaults to latched."""
        if self.state_path is None or not self.state_path.exists():
            return

        try:
            with open(self.state_path, "r") as f:
                state = json.load(f)
            high_water_mark = Decimal(str(state.get("high_water_mark") or ZERO))
        except (ValueError, TypeError, AttributeError, ArithmeticError) as e:
            logger.critical("Drawdown state file corrupt, defaulting to latched", error=str(e))
            self.latched = True
            self.reason = "corrupt drawdown state file"
            self.activated_at = datetime.now(timezone.utc)
            return

        self.latched = bool(state.get("latched", False))
        self.reason = state.get("reason")
        activated_at = state.get("activated_at")
        if activated_at:
            self.activated_at = datetime.fromisoformat(activated_at)
        self.high_water_mark = max(self.high_water_mark, high_water_mark)

        if self.latched:
            logger.warning(
                "Drawdown halt was latched on startup",
                reason=self.reason or "unknown",
                activated_at=activated_at,
            )
