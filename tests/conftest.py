"""Shared test fixtures for the candle pipeline and feed tests."""

import asyncio
import json

import pytest
from chartfeed.config import ConnectionOptions
from chartfeed.connection import ConnectionManager
from chartfeed.models.market import Candle


def make_candle(
    timestamp: int,
    close: float = 100.0,
    open: float | None = None,
    high: float | None = None,
    low: float | None = None,
    volume: float = 1.0,
    **kwargs,
) -> Candle:
    open = close if open is None else open
    high = max(open, close) + 1.0 if high is None else high
    low = min(open, close) - 1.0 if low is None else low
    return Candle(
        timestamp=timestamp,
        open=open,
        high=high,
        low=low,
        close=close,
        volume=volume,
        **kwargs,
    )


def candles_from_closes(closes, start: int = 0, step: int = 60_000) -> list[Candle]:
    return [make_candle(start + i * step, close=c) for i, c in enumerate(closes)]


def candle_message(timestamp: int, close: float = 100.0, **kwargs) -> str:
    c = make_candle(timestamp, close=close, **kwargs)
    return json.dumps({"type": "candleUpdate", **c.ohlcv()})


class FakeSocket:
    """Feed socket backed by a queue. Exceptions put on the queue are raised by recv()."""

    def __init__(self, messages=()):
        self.queue: asyncio.Queue = asyncio.Queue()
        for m in messages:
            self.queue.put_nowait(m)
        self.closed = False

    def push(self, item):
        self.queue.put_nowait(item)

    async def recv(self):
        item = await self.queue.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self):
        self.closed = True


class ScriptedConnect:
    """Connect factory that plays back a list of outcomes: a FakeSocket or an exception."""

    def __init__(self, outcomes=()):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, url: str):
        self.calls += 1
        if not self.outcomes:
            raise OSError("no scripted outcome left")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class StubExchange:
    """Stands in for ExchangeClient when seeding from history."""

    def __init__(self, candles=None, error=None):
        self.candles = candles or []
        self.error = error
        self.calls = []

    async def get_klines(self, symbol, timeframe, limit):
        self.calls.append((symbol, timeframe, limit))
        if self.error:
            raise self.error
        return list(self.candles)


def make_connection(
    outcomes=(),
    max_reconnect_attempts: int = 3,
    reconnect_interval_ms: int = 0,
    auto_reconnect: bool = True,
) -> tuple[ConnectionManager, ScriptedConnect]:
    factory = ScriptedConnect(outcomes)
    options = ConnectionOptions(
        url="wss://feed.test/ws",
        max_reconnect_attempts=max_reconnect_attempts,
        reconnect_interval_ms=reconnect_interval_ms,
        auto_reconnect=auto_reconnect,
    )
    return ConnectionManager(options, connect=factory), factory


async def wait_for(predicate, timeout: float = 1.0):
    """Yield to the event loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture
def closes_1_to_25():
    return [float(i) for i in range(1, 26)]


@pytest.fixture
def wavy_closes():
    """Deterministic non-degenerate close series."""
    import numpy as np
    rng = np.random.default_rng(42)
    steps = rng.normal(0, 1.5, size=120)
    return (100 + np.cumsum(steps)).tolist()
