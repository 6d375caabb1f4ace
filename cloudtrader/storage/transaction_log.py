"""
Append-only JSONL transaction log and CSV results export.

One JSON object per line. The file is only ever opened for append, so it
stays readable across restarts. Write failures are logged and swallowed:
persistence never affects ledger state.
"""
import csv
import io
import json
from pathlib import Path
from typing import Iterable, List, Optional

from cloudtrader.domain.models import Transaction
from cloudtrader.monitoring.logger import get_logger

logger = get_logger(__name__)

CSV_HEADER = ["Timestamp", "Symbol", "Type", "Amount", "Price", "PnL", "Strategy"]


class TransactionLog:
    """JSONL-backed TransactionSink."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def append(self, transaction: Transaction) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(transaction.to_dict()) + "\n")
        except (OSError, TypeError, ValueError) as e:
            logger.error(
                "Failed to append transaction",
                path=str(self.path),
                symbol=transaction.symbol,
                type=transaction.type.value,
                error=str(e),
                error_type=type(e).__name__,
            )

    def read(self, limit: Optional[int] = None) -> List[Transaction]:
        """
        Load transactions, oldest first. Malformed lines (e.g. a torn final
        write) are skipped with a warning.
        """
        if not self.path.exists():
            return []

        transactions = []
        with open(self.path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    transactions.append(Transaction.from_dict(json.loads(line)))
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning(
                        "Skipping malformed transaction line",
                        path=str(self.path),
                        line=line_no,
                        error=str(e),
                    )

        if limit is not None:
            return transactions[-limit:] if limit > 0 else []
        return transactions

    def read_text(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_text(encoding="utf-8")


def render_csv(transactions: Iterable[Transaction]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for tx in transactions:
        writer.writerow([
            tx.timestamp.isoformat(),
            tx.symbol,
            tx.type.value,
            str(tx.amount),
            str(tx.price),
            "" if tx.pnl is None else str(tx.pnl),
            tx.strategy_tag,
        ])
    return buffer.getvalue()


def export_csv(transactions: Iterable[Transaction], path: str | Path) -> Path:
    """Write the results CSV. Unlike append(), failures propagate to the caller."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_csv(transactions), encoding="utf-8")
    logger.info("Results exported", path=str(path))
    return path
