"""
Pre-trade ticker validation: stale price and liquidity floor.
"""
from decimal import Decimal
from typing import Optional

from cloudtrader.config.config import ValidationConfig
from cloudtrader.constants import HUNDRED
from cloudtrader.domain.models import BlockReason, Ticker
from cloudtrader.monitoring.logger import get_logger

logger = get_logger(__name__)


def validate_ticker(ticker: Ticker, signal_price: Decimal, config: ValidationConfig) -> Optional[BlockReason]:
    """
    Compare a fresh ticker with the price the signal was computed on.

    Returns:
        None if tradable, else STALE_PRICE or LOW_VOLUME
    """
    if signal_price <= 0:
        return BlockReason.STALE_PRICE

    spread_pct = abs(ticker.last - signal_price) / signal_price * HUNDRED
    if spread_pct > Decimal(str(config.max_spread_percent)):
        logger.info(
            "Price moved since signal",
            symbol=ticker.symbol,
            signal_price=str(signal_price),
            ticker_price=str(ticker.last),
            spread_pct=f"{spread_pct:.4f}",
        )
        return BlockReason.STALE_PRICE

    volume = ticker.effective_quote_volume()
    if volume is None or volume < Decimal(str(config.min_quote_volume)):
        logger.info(
            "Quote volume below floor",
            symbol=ticker.symbol,
            quote_volume=str(volume),
            min_quote_volume=config.min_quote_volume,
        )
        return BlockReason.LOW_VOLUME

    return None
