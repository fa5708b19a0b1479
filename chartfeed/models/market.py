import math
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Candle(BaseModel):
    """One OHLCV bar. `timestamp` is the bucket open time in epoch milliseconds."""

    model_config = ConfigDict(frozen=True)

    timestamp: int = Field(ge=0)
    open: float
    high: float
    low: float
    close: float
    volume: float = Field(default=0.0, ge=0)
    symbol: str | None = None
    timeframe: str | None = None

    @model_validator(mode="after")
    def _check_ohlc(self):
        prices = (self.open, self.high, self.low, self.close, self.volume)
        if not all(math.isfinite(p) for p in prices):
            raise ValueError("candle prices and volume must be finite")
        if self.low > min(self.open, self.close):
            raise ValueError(f"low {self.low} above min(open, close)")
        if self.high < max(self.open, self.close):
            raise ValueError(f"high {self.high} below max(open, close)")
        return self

    def ohlcv(self) -> dict[str, float]:
        return {
            "timestamp": self.timestamp,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


class PriceUpdate(BaseModel):
    model_config = ConfigDict(frozen=True)

    price: float
    symbol: str | None = None
    change: float | None = None
    change_percent: float | None = None
    volume: float | None = None
    high: float | None = None
    low: float | None = None
    timestamp: int | None = None


class MessageType(str, Enum):
    PRICE_UPDATE = "priceUpdate"
    TRADE_EXECUTED = "tradeExecuted"
    CANDLE_UPDATE = "candleUpdate"
    PORTFOLIO_UPDATE = "portfolioUpdate"
    INITIAL_DATA = "initialData"


class FeedMessage(BaseModel):
    """A decoded inbound message, tagged by its `type` discriminator.

    `type` is kept as a plain string so unknown types pass through untouched.
    """

    model_config = ConfigDict(frozen=True)

    type: str
    data: dict[str, Any] = {}
    candle: Candle | None = None
    price: PriceUpdate | None = None


class BollingerBands(BaseModel):
    model_config = ConfigDict(frozen=True)

    upper: tuple[float, ...] = ()
    middle: tuple[float, ...] = ()
    lower: tuple[float, ...] = ()


class MACDSeries(BaseModel):
    model_config = ConfigDict(frozen=True)

    macd: tuple[float, ...] = ()
    signal: tuple[float, ...] = ()
    histogram: tuple[float, ...] = ()


class IndicatorSeries(BaseModel):
    """Indicator output for one candle window.

    Series are not index-aligned with each other: `sma`, `bollinger` and `rsi`
    start after their warm-up, `ema` and `macd` start at candle 0.
    """

    model_config = ConfigDict(frozen=True)

    sma: tuple[float, ...] = ()
    ema: tuple[float, ...] = ()
    rsi: tuple[float, ...] = ()
    bollinger: BollingerBands = Field(default=BollingerBands(), serialization_alias="bollingerBands")
    macd: MACDSeries = MACDSeries()


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    FAILED_PERMANENT = "FAILED_PERMANENT"
