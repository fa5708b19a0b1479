"""Candle window — bounded, chronologically ordered buffer of OHLCV bars.

Merging rules for an incoming candle against the window tail:
  - equal timestamp   -> replace the tail (in-progress bar update)
  - greater timestamp -> append, evicting the oldest bar past capacity
  - lower timestamp   -> OutOfOrderCandleError, history is never reordered
"""

from collections import deque
from typing import Callable, Iterable

from loguru import logger

from chartfeed.errors import (
    CapacityInvariantViolation,
    OutOfOrderCandleError,
    SymbolMismatchError,
)
from chartfeed.models.market import Candle

WindowListener = Callable[[tuple[Candle, ...]], None]


class CandleWindow:
    def __init__(
        self,
        capacity: int = 200,
        symbol: str | None = None,
        timeframe: str | None = None,
    ):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self.symbol = symbol
        self.timeframe = timeframe

        self._candles: deque[Candle] = deque()
        self._snapshot: tuple[Candle, ...] = ()

        # Callbacks for window change events: callback(snapshot)
        self._listeners: list[WindowListener] = []

    def __len__(self) -> int:
        return len(self._candles)

    def on_change(self, callback: WindowListener) -> Callable[[], None]:
        """Register a window-changed callback. Returns a function that removes it."""
        self._listeners.append(callback)

        def remove():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def snapshot(self) -> tuple[Candle, ...]:
        return self._snapshot

    @property
    def last(self) -> Candle | None:
        return self._candles[-1] if self._candles else None

    def merge(self, incoming: Candle) -> tuple[Candle, ...]:
        """Fold one candle into the window and return the resulting snapshot."""
        self._check_subscription(incoming)

        last = self.last
        if last is None:
            self._candles.append(incoming)
        elif incoming.timestamp == last.timestamp:
            if incoming == last:
                return self._snapshot
            self._candles[-1] = incoming
        elif incoming.timestamp > last.timestamp:
            self._candles.append(incoming)
            if len(self._candles) > self.capacity:
                evicted = self._candles.popleft()
                logger.debug(f"Evicted candle ts={evicted.timestamp} ({self._label})")
        else:
            raise OutOfOrderCandleError(incoming.timestamp, last.timestamp)

        self._publish()
        return self._snapshot

    def seed(self, candles: Iterable[Candle]) -> tuple[Candle, ...]:
        """Replace the window with historical candles (sorted, last wins on ties)."""
        by_ts: dict[int, Candle] = {}
        for c in candles:
            self._check_subscription(c)
            by_ts[c.timestamp] = c
        ordered = [by_ts[ts] for ts in sorted(by_ts)][-self.capacity:]

        self._candles = deque(ordered)
        logger.info(f"Seeded {len(ordered)} candles ({self._label})")
        self._publish()
        return self._snapshot

    def clear(self):
        if not self._candles:
            return
        self._candles.clear()
        self._publish()

    # --- internals ---

    @property
    def _label(self) -> str:
        return f"{self.symbol or '?'}/{self.timeframe or '?'}"

    def _check_subscription(self, candle: Candle):
        if self.symbol and candle.symbol and candle.symbol != self.symbol:
            raise SymbolMismatchError(
                f"Candle for {candle.symbol} merged into {self.symbol} window"
            )
        if self.timeframe and candle.timeframe and candle.timeframe != self.timeframe:
            raise SymbolMismatchError(
                f"Candle for timeframe {candle.timeframe} merged into {self.timeframe} window"
            )

    def _check_invariants(self):
        if len(self._candles) > self.capacity:
            raise CapacityInvariantViolation(
                f"Window holds {len(self._candles)} candles, capacity is {self.capacity}"
            )
        prev = None
        for c in self._candles:
            if prev is not None and c.timestamp <= prev:
                raise CapacityInvariantViolation(
                    f"Window not strictly increasing at ts={c.timestamp} (prev {prev})"
                )
            prev = c.timestamp

    def _publish(self):
        self._check_invariants()
        self._snapshot = tuple(self._candles)
        for cb in list(self._listeners):
            try:
                cb(self._snapshot)
            except Exception as e:
                logger.error(f"Window change callback error: {e}")
