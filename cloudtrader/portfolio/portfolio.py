"""
Simulated portfolio: quote balance, per-asset base balances and history.
"""
import asyncio
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from cloudtrader.constants import DUST_QUANTITY, ZERO
from cloudtrader.domain.models import Position, Transaction
from cloudtrader.exceptions import InvariantError


class Portfolio:
    """
    Quote currency balance plus base balances (negative for borrowed shorts).

    All balance mutation goes through adjust(). Entry check-then-spend must
    hold `lock`.
    """

    def __init__(self, initial_quote: Decimal, quote_currency: str = "USDT"):
        self.quote_currency = quote_currency
        self.initial_quote = initial_quote
        self.quote_balance = initial_quote
        self.base_balances: Dict[str, Decimal] = {}
        self.history: List[Transaction] = []
        self.lock = asyncio.Lock()

    def adjust(self, asset: str, quote_delta: Decimal, base_delta: Decimal) -> None:
        self.quote_balance += quote_delta

        base = self.base_balances.get(asset, ZERO) + base_delta
        if abs(base) <= DUST_QUANTITY:
            self.base_balances.pop(asset, None)
        else:
            self.base_balances[asset] = base

    def record(self, transaction: Transaction) -> None:
        self.history.append(transaction)

    def snapshot(self) -> Dict[str, str]:
        snap = {self.quote_currency: str(self.quote_balance)}
        for asset, amount in sorted(self.base_balances.items()):
            snap[asset] = str(amount)
        return snap

    def equity(self, positions: Iterable[Position], prices: Optional[Dict[str, Decimal]] = None) -> Decimal:
        """
        Quote balance plus mark-to-market value of open positions.

        Uses `prices[symbol]` when given, else each position's last observed price.
        """
        total = self.quote_balance
        for position in positions:
            price = (prices or {}).get(position.symbol) or position.last_price
            total += position.market_value(price)
        return total

    def reconcile(self) -> None:
        """Initial quote plus every recorded quote_delta must equal the balance."""
        expected = self.initial_quote
        for tx in self.history:
            expected += tx.quote_delta
        if expected != self.quote_balance:
            raise InvariantError(
                f"Quote balance {self.quote_balance} does not reconcile with history ({expected})"
            )

    def recent(self, limit: Optional[int] = None) -> List[Transaction]:
        if limit is None:
            return list(self.history)
        if limit <= 0:
            return []
        return self.history[-limit:]
