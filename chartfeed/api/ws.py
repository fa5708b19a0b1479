"""WebSocket handler for live chart updates."""

import asyncio
import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from loguru import logger

from chartfeed.models.market import Candle, ConnectionState, FeedMessage, IndicatorSeries

router = APIRouter()


class ClientManager:
    def __init__(self):
        self.active_connections: list[WebSocket] = []
        self._pending: set[asyncio.Task] = set()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"WS client connected ({len(self.active_connections)} total)")

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        logger.info(f"WS client disconnected ({len(self.active_connections)} total)")

    async def broadcast(self, message: dict):
        """Send message to all connected clients."""
        if not self.active_connections:
            return
        data = json.dumps(message, default=str)
        disconnected = []
        for connection in self.active_connections:
            try:
                await connection.send_text(data)
            except Exception:
                disconnected.append(connection)
        for conn in disconnected:
            self.disconnect(conn)

    def broadcast_soon(self, message: dict):
        """Schedule a broadcast from synchronous code running inside the event loop."""
        task = asyncio.create_task(self.broadcast(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


ws_manager = ClientManager()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for live chart updates."""
    from chartfeed.api.main import app_state

    await ws_manager.connect(websocket)
    manager = app_state.get("manager")
    if manager is not None:
        await websocket.send_text(json.dumps({
            "type": "initialData",
            "symbol": manager.symbol,
            "timeframe": manager.timeframe,
            "connection_state": manager.get_connection_state().value,
            "candles": [c.ohlcv() for c in manager.get_candles()],
            "indicators": manager.get_indicators().model_dump(mode="json", by_alias=True),
        }))
    try:
        while True:
            # Keep connection alive, handle client messages
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text(json.dumps({"type": "pong"}))
    except WebSocketDisconnect:
        ws_manager.disconnect(websocket)


# Helper functions for broadcasting events

async def broadcast_window(candles: tuple[Candle, ...], indicators: IndicatorSeries):
    if not candles:
        return
    await ws_manager.broadcast({
        "type": "candleUpdate",
        "timestamp": candles[-1].timestamp,
        "candle": candles[-1].ohlcv(),
        "indicators": indicators.model_dump(mode="json", by_alias=True),
    })


def broadcast_connection_state(old: ConnectionState, new: ConnectionState):
    ws_manager.broadcast_soon({
        "type": "connectionState",
        "previous": old.value,
        "state": new.value,
    })


async def broadcast_price(msg: FeedMessage):
    if msg.price is None:
        return
    await ws_manager.broadcast({
        "type": "priceUpdate",
        **msg.price.model_dump(mode="json", exclude_none=True),
    })
