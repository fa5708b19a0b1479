"""Live candle, indicator and connection endpoints."""

from fastapi import APIRouter, HTTPException

from chartfeed.data_manager import MarketDataManager
from chartfeed.presentation import build_chart_payload

router = APIRouter(prefix="/api/market", tags=["market"])


def _manager(symbol: str) -> MarketDataManager:
    from chartfeed.api.main import app_state
    manager = app_state.get("manager")
    if manager is None:
        raise HTTPException(status_code=503, detail="Market data not started")
    if symbol.upper() != manager.symbol.upper():
        raise HTTPException(status_code=404, detail=f"No live subscription for {symbol}")
    return manager


@router.get("/{symbol}/candles")
async def get_candles(symbol: str):
    """Current candle window, oldest first."""
    manager = _manager(symbol)
    return {
        "symbol": manager.symbol,
        "timeframe": manager.timeframe,
        "candles": [c.ohlcv() for c in manager.get_candles()],
    }


@router.get("/{symbol}/indicators")
async def get_indicators(symbol: str):
    manager = _manager(symbol)
    return manager.get_indicators().model_dump(mode="json", by_alias=True)


@router.get("/{symbol}/connection")
async def get_connection(symbol: str):
    manager = _manager(symbol)
    conn = manager.connection
    return {
        "state": conn.state.value,
        "retry_count": conn.retry_count,
        "retry_pending": conn.retry_pending,
        "last_error": conn.last_error,
        "rejected_candles": manager.rejected,
    }


@router.get("/{symbol}/chart")
async def get_chart(symbol: str):
    """Render-ready candles and indicator series for the price chart."""
    manager = _manager(symbol)
    return build_chart_payload(
        manager.get_candles(),
        manager.get_indicators(),
        state=manager.get_connection_state(),
        params=manager.params,
        symbol=manager.symbol,
        timeframe=manager.timeframe,
    )


@router.post("/{symbol}/reconnect")
async def reconnect(symbol: str):
    """Manual reconnect — the only way out of FAILED_PERMANENT."""
    manager = _manager(symbol)
    if manager.stopped:
        raise HTTPException(status_code=409, detail="Market stream is stopped")
    manager.reconnect()
    return {"state": manager.get_connection_state().value}
