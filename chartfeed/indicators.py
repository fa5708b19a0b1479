"""Indicator calculator — pure functions from a candle window to indicator series.

Every call recomputes from scratch over the closes it is given; nothing is
carried between calls. Windowed indicators (SMA, RSI, Bollinger) return only
the indices where a full window exists, so their output is shorter than the
input. EMA and MACD are seeded with the first close and cover every candle.
"""

from typing import Sequence

import numpy as np
import pandas as pd
from numpy.lib.stride_tricks import sliding_window_view

from chartfeed.config import IndicatorParams
from chartfeed.models.market import BollingerBands, Candle, IndicatorSeries, MACDSeries


def _as_array(closes: Sequence[float]) -> np.ndarray:
    return np.asarray(closes, dtype=float)


def _windows(values: np.ndarray, period: int) -> np.ndarray:
    """Trailing windows of `period` values, one row per complete window."""
    if period < 1:
        raise ValueError(f"period must be >= 1, got {period}")
    if len(values) < period:
        return np.empty((0, period))
    return sliding_window_view(values, period)


def sma(closes: Sequence[float], period: int = 20) -> list[float]:
    """Simple moving average; first value corresponds to candle `period - 1`."""
    return _windows(_as_array(closes), period).mean(axis=1).tolist()


def ema(closes: Sequence[float], period: int = 20) -> list[float]:
    """Exponential moving average seeded with closes[0], k = 2 / (period + 1)."""
    if period < 1:
        raise ValueError(f"period must be >= 1, got {period}")
    if len(closes) == 0:
        return []
    s = pd.Series(_as_array(closes))
    return s.ewm(span=period, adjust=False).mean().tolist()


def rsi(closes: Sequence[float], period: int = 14) -> list[float]:
    """RSI over simple (non-smoothed) averages of the trailing `period` changes.

    First value corresponds to candle `period`. Returns 100 when the average
    loss is exactly zero.
    """
    arr = _as_array(closes)
    if len(arr) < period + 1:
        return []
    delta = np.diff(arr)
    gains = _windows(np.clip(delta, 0.0, None), period).mean(axis=1)
    losses = _windows(np.clip(-delta, 0.0, None), period).mean(axis=1)

    out = []
    for avg_gain, avg_loss in zip(gains, losses):
        if avg_loss == 0:
            out.append(100.0)
        else:
            rs = avg_gain / avg_loss
            out.append(float(100.0 - 100.0 / (1.0 + rs)))
    return out


def bollinger_bands(
    closes: Sequence[float], period: int = 20, k: float = 2.0
) -> BollingerBands:
    """Bands at middle ± k·σ, σ being the population stddev of the SMA window."""
    windows = _windows(_as_array(closes), period)
    middle = windows.mean(axis=1)
    std = windows.std(axis=1, ddof=0)
    return BollingerBands(
        upper=tuple((middle + k * std).tolist()),
        middle=tuple(middle.tolist()),
        lower=tuple((middle - k * std).tolist()),
    )


def macd(
    closes: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9
) -> MACDSeries:
    if len(closes) == 0:
        return MACDSeries()
    line = np.asarray(ema(closes, fast)) - np.asarray(ema(closes, slow))
    sig = np.asarray(ema(line.tolist(), signal))
    return MACDSeries(
        macd=tuple(line.tolist()),
        signal=tuple(sig.tolist()),
        histogram=tuple((line - sig).tolist()),
    )


def compute_indicators(
    candles: Sequence[Candle], params: IndicatorParams | None = None
) -> IndicatorSeries:
    """Recompute the full indicator set for a candle window snapshot."""
    p = params or IndicatorParams()
    closes = [c.close for c in candles]
    return IndicatorSeries(
        sma=tuple(sma(closes, p.sma_period)),
        ema=tuple(ema(closes, p.ema_period)),
        rsi=tuple(rsi(closes, p.rsi_period)),
        bollinger=bollinger_bands(closes, p.bollinger_period, p.bollinger_k),
        macd=macd(closes, p.macd_fast, p.macd_slow, p.macd_signal),
    )


def warmup_offsets(params: IndicatorParams | None = None) -> dict[str, int]:
    """Candle index of the first value of each series."""
    p = params or IndicatorParams()
    return {
        "sma": p.sma_period - 1,
        "ema": 0,
        "rsi": p.rsi_period,
        "bollinger": p.bollinger_period - 1,
        "macd": 0,
    }
