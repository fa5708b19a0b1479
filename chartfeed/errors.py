"""Error taxonomy for the candle pipeline and the live feed."""


class ChartFeedError(Exception):
    """Base class for all chartfeed errors."""


class OutOfOrderCandleError(ChartFeedError):
    """Candle timestamp precedes the window tail. The window is left unchanged."""

    def __init__(self, timestamp: int, last_timestamp: int):
        self.timestamp = timestamp
        self.last_timestamp = last_timestamp
        super().__init__(
            f"Out-of-order candle: ts={timestamp} precedes window tail ts={last_timestamp}"
        )


class SymbolMismatchError(ChartFeedError):
    """Candle tagged for a different symbol/timeframe than the window's subscription."""


class MalformedMessageError(ChartFeedError):
    """Feed payload failed structural validation."""

    def __init__(self, message: str, raw: object = None):
        self.raw = raw
        super().__init__(message)


class FeedConnectionError(ChartFeedError, ConnectionError):
    """Transport-level failure. Only the connection state machine handles these."""


class CapacityInvariantViolation(ChartFeedError):
    """Window exceeded capacity or lost ordering. Indicates a merge logic bug."""
