"""Timeframe strings (Binance style) and bucket alignment."""

# Map timeframe strings to milliseconds for bucket alignment
TF_MS = {
    "1m": 60_000,
    "3m": 180_000,
    "5m": 300_000,
    "15m": 900_000,
    "30m": 1_800_000,
    "1h": 3_600_000,
    "2h": 7_200_000,
    "4h": 14_400_000,
    "6h": 21_600_000,
    "8h": 28_800_000,
    "12h": 43_200_000,
    "1d": 86_400_000,
}


def timeframe_ms(timeframe: str) -> int:
    try:
        return TF_MS[timeframe]
    except KeyError:
        raise ValueError(f"Unknown timeframe: {timeframe}") from None


def align_timestamp(ts_ms: int, timeframe: str) -> int:
    """Floor an epoch-ms timestamp to the open of its timeframe bucket (UTC)."""
    width = timeframe_ms(timeframe)
    return ts_ms - (ts_ms % width)


def is_aligned(ts_ms: int, timeframe: str) -> bool:
    return ts_ms % timeframe_ms(timeframe) == 0
