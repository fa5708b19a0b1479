"""FastAPI application factory and lifespan management."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from chartfeed.config import settings
from chartfeed.connection import ConnectionManager
from chartfeed.data_manager import MarketDataManager
from chartfeed.exchange import ExchangeClient

# Global app state — accessible from route handlers
app_state: dict = {}


def build_manager() -> MarketDataManager:
    """Market data manager for the configured subscription."""
    return MarketDataManager(
        symbol=settings.symbol.upper(),
        timeframe=settings.timeframe,
        connection=ConnectionManager(settings.connection_options),
        capacity=settings.capacity,
        params=settings.indicator_params,
        exchange=ExchangeClient(settings.rest_base_url),
        backfill_limit=settings.backfill_limit,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    logger.info("Starting chart feed...")

    manager = app_state.get("manager") or build_manager()

    # Wire up broadcasts
    from chartfeed.api.ws import broadcast_connection_state, broadcast_price, broadcast_window

    manager.on_update(broadcast_window)
    manager.connection.on_state_change(broadcast_connection_state)
    manager.connection.subscribe("priceUpdate", broadcast_price)

    app_state["manager"] = manager
    await manager.start()

    logger.info(f"Chart feed ready: {manager.symbol}/{manager.timeframe}")
    yield

    # Shutdown
    logger.info("Shutting down chart feed...")
    await manager.stop()
    app_state.clear()


def create_app(manager: MarketDataManager | None = None) -> FastAPI:
    if manager is not None:
        app_state["manager"] = manager

    app = FastAPI(
        title="Chart Feed API",
        description="Live candles and technical indicators for the trading dashboard",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    async def health():
        manager = app_state.get("manager")
        return {
            "status": "ok",
            "connection_state": manager.get_connection_state().value if manager else None,
        }

    # Include routers
    from chartfeed.api.market import router as market_router
    from chartfeed.api.ws import router as ws_router

    app.include_router(market_router)
    app.include_router(ws_router)

    return app
