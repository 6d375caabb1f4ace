"""
Signal generation.

Turns the latest indicator point and current price into a single tagged
TradeIntent. Two independent sources exist: the Ichimoku cloud (voted across
timeframes) and a breakout detector over recent candles. A trend filter on a
higher timeframe gates all entries.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence

from cloudtrader.constants import (
    BREAKOUT_CONFIDENCE,
    NO_BREAKOUT_CONFIDENCE,
    STRATEGY_BREAKOUT,
    STRATEGY_ICHIMOKU,
)
from cloudtrader.domain.models import (
    Candle,
    CloudPoint,
    EnterLong,
    EnterShort,
    ExitLong,
    NoAction,
    TradeIntent,
)


@dataclass(frozen=True)
class CloudSignal:
    enter_long: bool = False
    exit_long: bool = False
    enter_short: bool = False

    def to_intent(self, has_long: bool = False) -> TradeIntent:
        """
        Collapse the flags into one intent.

        An open long only cares about exit_long; a flat book prefers
        enter_long over enter_short (the two are mutually exclusive anyway).
        """
        if has_long:
            if self.exit_long:
                return ExitLong(STRATEGY_ICHIMOKU, reason="price_below_conversion")
            return NoAction()
        if self.enter_long:
            return EnterLong(STRATEGY_ICHIMOKU, reason="price_above_cloud")
        if self.enter_short:
            return EnterShort(STRATEGY_ICHIMOKU, reason="price_below_cloud")
        return NoAction()


NO_CLOUD_SIGNAL = CloudSignal()


def cloud_signal(point: Optional[CloudPoint], price: Decimal) -> CloudSignal:
    """Evaluate the cloud rules for one point. Missing data never signals."""
    if point is None:
        return NO_CLOUD_SIGNAL

    # "in cloud" means above both boundaries
    in_cloud = price > point.span_a and price > point.span_b
    return CloudSignal(
        enter_long=in_cloud and price > point.conversion and point.conversion > point.base,
        exit_long=not in_cloud and price < point.conversion,
        enter_short=not in_cloud and price < point.conversion and price < point.span_a,
    )


def vote_cloud_intent(signals: Sequence[CloudSignal], min_votes: int = 2) -> TradeIntent:
    """
    Entry intent from per-timeframe cloud signals.

    An entry needs at least `min_votes` timeframes agreeing. Long wins a tie.
    """
    long_votes = sum(1 for s in signals if s.enter_long)
    short_votes = sum(1 for s in signals if s.enter_short)

    if long_votes >= min_votes and long_votes >= short_votes:
        return EnterLong(STRATEGY_ICHIMOKU, reason=f"{long_votes}_timeframes_above_cloud")
    if short_votes >= min_votes:
        return EnterShort(STRATEGY_ICHIMOKU, reason=f"{short_votes}_timeframes_below_cloud")
    return NoAction()


@dataclass(frozen=True)
class BreakoutSignal:
    up: bool
    down: bool
    confidence: float

    def to_intent(self, min_confidence: float = 0.7) -> TradeIntent:
        if self.confidence < min_confidence:
            return NoAction()
        if self.up:
            return EnterLong(STRATEGY_BREAKOUT, reason="range_high_break")
        if self.down:
            return EnterShort(STRATEGY_BREAKOUT, reason="range_low_break")
        return NoAction()


def detect_breakout(candles: List[Candle], price: Decimal, lookback: int = 10) -> Optional[BreakoutSignal]:
    """
    Compare price to the range of the `lookback` candles before the current one.

    Returns None when there is not enough history.
    """
    if lookback < 1 or len(candles) < lookback + 1:
        return None

    window = candles[-(lookback + 1):-1]
    highest = max(c.high for c in window)
    lowest = min(c.low for c in window)

    up = price > highest
    down = price < lowest
    confidence = BREAKOUT_CONFIDENCE if (up or down) else NO_BREAKOUT_CONFIDENCE
    return BreakoutSignal(up=up, down=down, confidence=confidence)


@dataclass(frozen=True)
class TrendFilter:
    confirmed: bool
    direction: Optional[str]  # "up", "down" or None
    adx: Optional[Decimal]


def trend_filter(
    adx: Optional[Decimal],
    point: Optional[CloudPoint],
    price: Decimal,
    threshold: Decimal,
) -> TrendFilter:
    """
    Entry gate: ADX at or above threshold and price strictly on one side of the cloud.
    """
    if adx is None or point is None:
        return TrendFilter(confirmed=False, direction=None, adx=adx)

    if price > point.span_a and price > point.span_b:
        direction = "up"
    elif price < point.span_a and price < point.span_b:
        direction = "down"
    else:
        direction = None

    return TrendFilter(confirmed=adx >= threshold and direction is not None, direction=direction, adx=adx)
