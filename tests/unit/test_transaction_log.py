"""
Tests for the append-only transaction log and CSV export.
"""
from datetime import datetime, timezone
from decimal import Decimal

from cloudtrader.domain.models import Transaction, TransactionType
from cloudtrader.storage.transaction_log import CSV_HEADER, TransactionLog, export_csv


def make_tx(tx_type=TransactionType.BUY, pnl=None, symbol="BTC/USDT") -> Transaction:
    return Transaction(
        timestamp=datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
        symbol=symbol,
        type=tx_type,
        amount=Decimal("0.2997"),
        price=Decimal("100"),
        pnl=pnl,
        quote_delta=Decimal("-30"),
        portfolio={"USDT": "970", "BTC": "0.2997"},
        strategy_tag="ichimoku",
        reason="price_above_cloud",
    )


def test_append_and_read(tmp_path):
    log = TransactionLog(tmp_path / "data" / "transactions.jsonl")
    log.append(make_tx())
    log.append(make_tx(TransactionType.TP1, pnl=Decimal("0.42")))

    loaded = log.read()

    assert [tx.type for tx in loaded] == [TransactionType.BUY, TransactionType.TP1]
    assert loaded[0] == make_tx()
    assert loaded[1].pnl == Decimal("0.42")
    assert len(log.path.read_text().splitlines()) == 2


def test_append_survives_restart(tmp_path):
    path = tmp_path / "transactions.jsonl"
    TransactionLog(path).append(make_tx())
    TransactionLog(path).append(make_tx(TransactionType.SELL, pnl=Decimal("-1")))
    assert len(TransactionLog(path).read()) == 2


def test_read_limit(tmp_path):
    log = TransactionLog(tmp_path / "transactions.jsonl")
    for symbol in ["A/USDT", "B/USDT", "C/USDT"]:
        log.append(make_tx(symbol=symbol))
    assert [tx.symbol for tx in log.read(limit=2)] == ["B/USDT", "C/USDT"]
    assert log.read(limit=0) == []


def test_torn_last_line_is_skipped(tmp_path):
    log = TransactionLog(tmp_path / "transactions.jsonl")
    log.append(make_tx())
    with open(log.path, "a") as f:
        f.write('{"timestamp": "2024-01-01T12:')

    assert len(log.read()) == 1


def test_write_failure_is_swallowed(tmp_path):
    # A directory where the file should be makes open() fail
    path = tmp_path / "transactions.jsonl"
    path.mkdir()
    TransactionLog(path).append(make_tx())


def test_missing_file_reads_empty(tmp_path):
    log = TransactionLog(tmp_path / "nope.jsonl")
    assert log.read() == []
    assert log.read_text() == ""


def test_export_csv(tmp_path):
    path = export_csv([make_tx(), make_tx(TransactionType.TP1, pnl=Decimal("0.42"))], tmp_path / "out" / "results.csv")

    lines = path.read_text().splitlines()
    assert lines[0] == ",".join(CSV_HEADER)
    assert lines[1] == "2024-01-01T12:00:00+00:00,BTC/USDT,BUY,0.2997,100,,ichimoku"
    assert lines[2].endswith(",0.42,ichimoku")
