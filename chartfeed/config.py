from pydantic_settings import BaseSettings
from pydantic import BaseModel, Field


class IndicatorParams(BaseModel):
    sma_period: int = Field(default=20, ge=1)
    ema_period: int = Field(default=20, ge=1)
    rsi_period: int = Field(default=14, ge=1)
    bollinger_period: int = Field(default=20, ge=1)
    bollinger_k: float = Field(default=2.0, ge=0)
    macd_fast: int = Field(default=12, ge=1)
    macd_slow: int = Field(default=26, ge=1)
    macd_signal: int = Field(default=9, ge=1)


class ConnectionOptions(BaseModel):
    url: str
    max_reconnect_attempts: int = Field(default=5, ge=0)
    reconnect_interval_ms: int = Field(default=3000, ge=0)
    auto_reconnect: bool = True

    @property
    def reconnect_interval(self) -> float:
        return self.reconnect_interval_ms / 1000


class Settings(BaseSettings):
    # Subscription
    symbol: str = "BTCUSDT"
    timeframe: str = "1h"

    # Candle window
    capacity: int = 200
    backfill_limit: int = 200  # 0 = start with an empty window

    # Indicators
    sma_period: int = 20
    ema_period: int = 20
    rsi_period: int = 14
    bollinger_period: int = 20
    bollinger_k: float = 2.0
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9

    # Live feed
    feed_ws_url: str = "wss://stream.binance.com:9443/ws"
    rest_base_url: str = "https://api.binance.com"
    max_reconnect_attempts: int = 5
    reconnect_interval_ms: int = 3000
    auto_reconnect: bool = True

    # Web server
    api_host: str = "0.0.0.0"
    api_port: int = 3001
    cors_origins: list[str] = ["http://localhost:3000"]

    # Logging
    log_level: str = "INFO"
    log_file: str = "data/chartfeed.log"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def stream_url(self) -> str:
        """Binance raw kline stream for the configured subscription."""
        return f"{self.feed_ws_url}/{self.symbol.lower()}@kline_{self.timeframe}"

    @property
    def indicator_params(self) -> IndicatorParams:
        return IndicatorParams(
            sma_period=self.sma_period,
            ema_period=self.ema_period,
            rsi_period=self.rsi_period,
            bollinger_period=self.bollinger_period,
            bollinger_k=self.bollinger_k,
            macd_fast=self.macd_fast,
            macd_slow=self.macd_slow,
            macd_signal=self.macd_signal,
        )

    @property
    def connection_options(self) -> ConnectionOptions:
        return ConnectionOptions(
            url=self.stream_url,
            max_reconnect_attempts=self.max_reconnect_attempts,
            reconnect_interval_ms=self.reconnect_interval_ms,
            auto_reconnect=self.auto_reconnect,
        )


settings = Settings()
