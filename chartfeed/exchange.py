"""Exchange REST client — historical klines used to seed the candle window."""

import httpx
from loguru import logger

from chartfeed.config import settings
from chartfeed.models.market import Candle


class ExchangeClient:
    def __init__(self, base_url: str | None = None, timeout: float = 10.0, transport=None):
        self.base_url = base_url or settings.rest_base_url
        self.timeout = timeout
        self._transport = transport

    async def get_klines(self, symbol: str, timeframe: str, limit: int = 200) -> list[Candle]:
        """Fetch recent klines, oldest first.

        Binance rows: [openTime, open, high, low, close, volume, closeTime, ...]
        """
        params = {"symbol": symbol.upper(), "interval": timeframe, "limit": int(limit)}
        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        ) as client:
            resp = await client.get("/api/v3/klines", params=params)
            resp.raise_for_status()
            rows = resp.json()

        candles = []
        for row in rows:
            try:
                candles.append(
                    Candle(
                        timestamp=int(row[0]),
                        open=float(row[1]),
                        high=float(row[2]),
                        low=float(row[3]),
                        close=float(row[4]),
                        volume=float(row[5]),
                        symbol=symbol.upper(),
                        timeframe=timeframe,
                    )
                )
            except (IndexError, TypeError, ValueError) as e:
                logger.warning(f"Skipping bad kline row for {symbol}/{timeframe}: {e}")

        candles.sort(key=lambda c: c.timestamp)
        return candles
