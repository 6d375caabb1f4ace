"""
FastAPI status and control surface for the paper trading engine.

The engine handle is injected through create_app(); there is no module-level
engine.
"""
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from cloudtrader.constants import HISTORY_PAGE_DEFAULT
from cloudtrader.exceptions import DrawdownHaltError
from cloudtrader.live.engine import TradingEngine
from cloudtrader.monitoring.logger import get_logger
from cloudtrader.storage.transaction_log import TransactionLog, render_csv

logger = get_logger(__name__)


def _normalize_symbol(symbol: str) -> str:
    # Accept BTC-USDT / BTC_USDT as well as BTC/USDT
    if "/" in symbol:
        return symbol
    return symbol.replace("_", "/").replace("-", "/")


def create_app(engine: TradingEngine, transaction_log: Optional[TransactionLog] = None) -> FastAPI:
    app = FastAPI(title="Cloud Trader")

    # CORS for local dev
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    log = transaction_log or TransactionLog(engine.config.storage.transaction_log_path)

    @app.get("/api/status")
    async def get_status() -> Dict[str, Any]:
        """Engine state, equity, portfolio snapshot and per-symbol diagnostics."""
        return engine.status()

    @app.get("/api/positions")
    async def get_positions() -> Dict[str, List[Dict[str, Any]]]:
        return engine.positions()

    @app.get("/api/transactions")
    async def get_transactions(limit: int = Query(HISTORY_PAGE_DEFAULT, ge=0, le=10000)) -> List[Dict[str, Any]]:
        return engine.transactions(limit)

    @app.get("/api/metrics")
    async def get_metrics() -> Dict[str, Any]:
        return engine.metrics.to_dict()

    @app.post("/api/control/start")
    async def start_engine() -> Dict[str, Any]:
        try:
            engine.start()
        except DrawdownHaltError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"running": engine.running}

    @app.post("/api/control/stop")
    async def stop_engine() -> Dict[str, Any]:
        engine.stop()
        return {"running": engine.running}

    @app.post("/api/positions/{symbol:path}/close")
    async def close_position(symbol: str) -> Dict[str, Any]:
        symbol = _normalize_symbol(symbol)
        tx = await engine.force_close(symbol)
        if tx is None:
            raise HTTPException(status_code=404, detail=f"No open position for {symbol}")
        logger.info("Position force-closed via dashboard", symbol=symbol, pnl=str(tx.pnl))
        return tx.to_dict()

    @app.get("/stats", response_class=PlainTextResponse)
    async def get_stats() -> str:
        """In-memory history as CSV."""
        return render_csv(engine.portfolio.history)

    @app.get("/transactions", response_class=PlainTextResponse)
    async def get_transaction_log() -> str:
        """Raw persisted transaction log (JSONL)."""
        return log.read_text()

    return app
