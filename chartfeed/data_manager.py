"""Data Manager — owns one (symbol, timeframe) candle window and its indicators.

Wires the feed connection into the candle window and recomputes the full
indicator set synchronously on every window change, so readers always see
indicators that match the candles they were computed from.
"""

import asyncio
from typing import Callable

from loguru import logger

from chartfeed.candle_window import CandleWindow
from chartfeed.config import IndicatorParams
from chartfeed.connection import ConnectionManager
from chartfeed.errors import (
    CapacityInvariantViolation,
    OutOfOrderCandleError,
    SymbolMismatchError,
)
from chartfeed.exchange import ExchangeClient
from chartfeed.indicators import compute_indicators
from chartfeed.models.market import (
    Candle,
    ConnectionState,
    FeedMessage,
    IndicatorSeries,
    MessageType,
    PriceUpdate,
)
from chartfeed.timeframes import is_aligned, timeframe_ms


class MarketDataManager:
    def __init__(
        self,
        symbol: str,
        timeframe: str,
        connection: ConnectionManager,
        capacity: int = 200,
        params: IndicatorParams | None = None,
        exchange: ExchangeClient | None = None,
        backfill_limit: int = 0,
    ):
        self.symbol = symbol
        self.timeframe = timeframe
        timeframe_ms(timeframe)  # raises ValueError for unknown timeframes
        self.connection = connection
        self.params = params or IndicatorParams()
        self.exchange = exchange
        self.backfill_limit = backfill_limit

        self.window = CandleWindow(capacity=capacity, symbol=symbol, timeframe=timeframe)
        self._indicators = compute_indicators((), self.params)
        self._last_price: PriceUpdate | None = None
        self._stopped = False
        self.rejected = 0

        # Callbacks for window updates: callback(candles, indicators)
        self._update_callbacks: list[Callable] = []

        self.window.on_change(self._recompute)
        self._unsubscribe: list[Callable[[], None]] = []

    def on_update(self, callback: Callable):
        """Register callback(candles, indicators), called once per window change."""
        self._update_callbacks.append(callback)

    # --- Lifecycle ---

    async def start(self):
        """Seed the window from the exchange (when configured), then go live."""
        self._stopped = False
        self._subscribe()
        if self.exchange and self.backfill_limit > 0:
            try:
                candles = await self.exchange.get_klines(
                    self.symbol, self.timeframe, self.backfill_limit
                )
                if candles:
                    self.window.seed(candles)
            except Exception as e:
                logger.warning(f"Backfill failed for {self.symbol}/{self.timeframe}: {e}")
        self.connection.connect()

    def _subscribe(self):
        if self._unsubscribe:
            return
        self._unsubscribe = [
            self.connection.subscribe(MessageType.CANDLE_UPDATE.value, self._on_candle_message),
            self.connection.subscribe(MessageType.PRICE_UPDATE.value, self._on_price_message),
        ]

    async def stop(self):
        self._stopped = True
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        await self.connection.stop()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def reconnect(self):
        self.connection.manual_reconnect()

    # --- Merging ---

    def merge(self, candle: Candle) -> bool:
        """Merge one candle. Returns True when the window changed.

        Out-of-order and cross-subscription candles are logged and rejected;
        they never tear down the subscription.
        """
        if self._stopped:
            logger.debug(f"Ignoring candle ts={candle.timestamp} after stop")
            return False
        if not is_aligned(candle.timestamp, self.timeframe):
            logger.debug(f"Candle ts={candle.timestamp} not on a {self.timeframe} boundary")
        before = self.window.snapshot()
        try:
            after = self.window.merge(candle)
        except (OutOfOrderCandleError, SymbolMismatchError) as e:
            self.rejected += 1
            logger.warning(f"Rejected candle for {self.symbol}/{self.timeframe}: {e}")
            return False
        except CapacityInvariantViolation as e:
            self._stopped = True
            logger.critical(f"Candle window corrupted, merging halted: {e}")
            raise
        return after is not before

    async def _on_candle_message(self, msg: FeedMessage):
        if msg.candle is None:
            return
        if self.merge(msg.candle):
            await self._notify_update()

    def _on_price_message(self, msg: FeedMessage):
        if msg.price is None:
            return
        if msg.price.symbol and msg.price.symbol.upper() != self.symbol.upper():
            return
        self._last_price = msg.price

    def _recompute(self, candles: tuple[Candle, ...]):
        self._indicators = compute_indicators(candles, self.params)

    async def _notify_update(self):
        candles, indicators = self.window.snapshot(), self._indicators
        for cb in list(self._update_callbacks):
            if self._stopped:
                return
            try:
                result = cb(candles, indicators)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Update callback error: {e}")

    # --- Read-only accessors ---

    def get_candles(self) -> tuple[Candle, ...]:
        return self.window.snapshot()

    def get_indicators(self) -> IndicatorSeries:
        return self._indicators

    def get_connection_state(self) -> ConnectionState:
        return self.connection.state

    def get_last_price(self) -> float | None:
        if self._last_price is not None:
            return self._last_price.price
        last = self.window.last
        return last.close if last else None
