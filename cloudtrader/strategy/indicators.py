"""
Technical indicators for signal generation.

Manual implementations using pandas (no pandas-ta dependency).
Every indicator returns an empty list (or None for the cloud) instead of
raising when history is shorter than its lookback.
"""
import pandas as pd
import numpy as np
from typing import List, Optional
from decimal import Decimal
from cloudtrader.config.config import IchimokuConfig
from cloudtrader.domain.models import Candle, CloudPoint
from cloudtrader.monitoring.logger import get_logger

logger = get_logger(__name__)


def _to_decimal_list(series: pd.Series) -> List[Decimal]:
    return [Decimal(str(round(float(v), 12))) for v in series.dropna()]


class Indicators:
    """
    Technical indicator calculations over spot candles.
    """

    @staticmethod
    def ichimoku(candles: List[Candle], params: Optional[IchimokuConfig] = None) -> Optional[List[CloudPoint]]:
        """
        Calculate the Ichimoku cloud.

        Spans are displaced forward by `displacement`, so each returned point
        carries the cloud that sits under that candle.

        Args:
            candles: List of spot candles, oldest first
            params: Ichimoku periods (default 9/26/52/26)

        Returns:
            One CloudPoint per candle with a complete cloud, or None when
            history is shorter than span_period + displacement
        """
        params = params or IchimokuConfig()
        required = params.span_period + params.displacement
        if len(candles) < required:
            logger.debug(
                "Insufficient candles for Ichimoku calculation",
                candles=len(candles),
                required=required,
            )
            return None

        df = Indicators._candles_to_df(candles)

        def midpoint(period: int) -> pd.Series:
            return (df['high'].rolling(period).max() + df['low'].rolling(period).min()) / 2

        conversion = midpoint(params.conversion_period)
        base = midpoint(params.base_period)
        span_a = ((conversion + base) / 2).shift(params.displacement)
        span_b = midpoint(params.span_period).shift(params.displacement)

        frame = pd.DataFrame({
            'conversion': conversion,
            'base': base,
            'span_a': span_a,
            'span_b': span_b,
        }).dropna()

        points = [
            CloudPoint(
                conversion=Decimal(str(row.conversion)),
                base=Decimal(str(row.base)),
                span_a=Decimal(str(row.span_a)),
                span_b=Decimal(str(row.span_b)),
            )
            for row in frame.itertuples(index=False)
        ]
        logger.debug("Ichimoku calculated", points=len(points))
        return points or None

    @staticmethod
    def atr(candles: List[Candle], period: int = 14) -> List[Decimal]:
        """
        Calculate Average True Range (ATR) for volatility measurement.

        Args:
            candles: List of spot candles
            period: ATR period (default 14)

        Returns:
            ATR values, oldest first; empty if fewer than period + 1 candles
        """
        if len(candles) < period + 1:
            logger.debug(
                "Insufficient candles for ATR calculation",
                candles=len(candles),
                period=period,
            )
            return []

        df = Indicators._candles_to_df(candles)
        tr = Indicators._true_range(df)
        atr = tr.iloc[1:].ewm(span=period, adjust=False).mean()
        return _to_decimal_list(atr)

    @staticmethod
    def adx(candles: List[Candle], period: int = 14) -> List[Decimal]:
        """
        Calculate Average Directional Index (ADX) for trend strength.

        Args:
            candles: List of spot candles
            period: ADX period (default 14)

        Returns:
            ADX values, oldest first; empty if fewer than 2 * period candles
        """
        if len(candles) < period * 2:
            logger.debug(
                "Insufficient candles for ADX calculation",
                candles=len(candles),
                period=period,
            )
            return []

        df = Indicators._candles_to_df(candles)
        tr = Indicators._true_range(df)

        # Calculate +DM and -DM
        high_diff = df['high'] - df['high'].shift()
        low_diff = df['low'].shift() - df['low']

        plus_dm = pd.Series(np.where((high_diff > low_diff) & (high_diff > 0), high_diff, 0.0), index=df.index)
        minus_dm = pd.Series(np.where((low_diff > high_diff) & (low_diff > 0), low_diff, 0.0), index=df.index)

        # Smooth with EMA, skipping the first row (no previous close)
        atr = tr.iloc[1:].ewm(span=period, adjust=False).mean()
        plus_di = 100 * (plus_dm.iloc[1:].ewm(span=period, adjust=False).mean() / atr.replace(0, np.nan))
        minus_di = 100 * (minus_dm.iloc[1:].ewm(span=period, adjust=False).mean() / atr.replace(0, np.nan))

        di_sum = (plus_di + minus_di).replace(0, np.nan)
        dx = (100 * np.abs(plus_di - minus_di) / di_sum).fillna(0.0)
        adx = dx.ewm(span=period, adjust=False).mean()

        return _to_decimal_list(adx)

    @staticmethod
    def _true_range(df: pd.DataFrame) -> pd.Series:
        # True Range = max(high-low, abs(high-prev_close), abs(low-prev_close))
        high_low = df['high'] - df['low']
        high_close = np.abs(df['high'] - df['close'].shift())
        low_close = np.abs(df['low'] - df['close'].shift())
        return pd.concat([high_low, high_close, low_close], axis=1).max(axis=1)

    @staticmethod
    def _candles_to_df(candles: List[Candle]) -> pd.DataFrame:
        """Convert candles to pandas DataFrame."""
        data = {
            'timestamp': [c.timestamp for c in candles],
            'open': [float(c.open) for c in candles],
            'high': [float(c.high) for c in candles],
            'low': [float(c.low) for c in candles],
            'close': [float(c.close) for c in candles],
            'volume': [float(c.volume) for c in candles],
        }
        return pd.DataFrame(data)
