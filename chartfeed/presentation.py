"""Chart presentation adapter — candles + indicators to render-ready series.

Each indicator value is paired with the time of the candle it belongs to,
using the warm-up offset of its series, so the chart never has to guess how
sparse series line up.
"""

from typing import Any, Sequence

from chartfeed.config import IndicatorParams
from chartfeed.indicators import warmup_offsets
from chartfeed.models.market import Candle, ConnectionState, IndicatorSeries


def _chart_time(candle: Candle) -> int:
    # Chart library expects UNIX seconds
    return candle.timestamp // 1000


def _points(candles: Sequence[Candle], values: Sequence[float], offset: int) -> list[dict[str, float]]:
    return [
        {"time": _chart_time(candles[offset + i]), "value": v}
        for i, v in enumerate(values)
        if offset + i < len(candles)
    ]


def price_summary(candles: Sequence[Candle]) -> dict[str, float]:
    """Last close and its change against the previous close."""
    if not candles:
        return {"price": 0.0, "change": 0.0, "change_percent": 0.0}
    price = candles[-1].close
    if len(candles) < 2:
        return {"price": price, "change": 0.0, "change_percent": 0.0}
    prev = candles[-2].close
    change = price - prev
    pct = (change / prev) * 100 if prev else 0.0
    return {"price": price, "change": change, "change_percent": pct}


def build_chart_payload(
    candles: Sequence[Candle],
    indicators: IndicatorSeries,
    state: ConnectionState = ConnectionState.DISCONNECTED,
    params: IndicatorParams | None = None,
    symbol: str = "",
    timeframe: str = "",
) -> dict[str, Any]:
    offsets = warmup_offsets(params)
    bb = indicators.bollinger
    md = indicators.macd
    return {
        "symbol": symbol,
        "timeframe": timeframe,
        "connected": state == ConnectionState.CONNECTED,
        "connection_state": state.value,
        "summary": price_summary(candles),
        "candles": [
            {
                "time": _chart_time(c),
                "open": c.open,
                "high": c.high,
                "low": c.low,
                "close": c.close,
                "volume": c.volume,
            }
            for c in candles
        ],
        "indicators": {
            "sma": _points(candles, indicators.sma, offsets["sma"]),
            "ema": _points(candles, indicators.ema, offsets["ema"]),
            "rsi": _points(candles, indicators.rsi, offsets["rsi"]),
            "bollingerBands": {
                "upper": _points(candles, bb.upper, offsets["bollinger"]),
                "middle": _points(candles, bb.middle, offsets["bollinger"]),
                "lower": _points(candles, bb.lower, offsets["bollinger"]),
            },
            "macd": {
                "macd": _points(candles, md.macd, offsets["macd"]),
                "signal": _points(candles, md.signal, offsets["macd"]),
                "histogram": _points(candles, md.histogram, offsets["macd"]),
            },
        },
    }
