"""Tests for chartfeed.connection — feed connection state machine."""

import asyncio
import json

from chartfeed.connection import WILDCARD
from chartfeed.errors import FeedConnectionError, MalformedMessageError
from chartfeed.models.market import ConnectionState as S
from tests.conftest import FakeSocket, candle_message, make_connection, wait_for


def run(coro):
    return asyncio.run(coro)


# ── Connect / retry ────────────────────────────────────────────────

class TestLifecycle:
    def test_connect_success(self):
        async def scenario():
            conn, factory = make_connection([FakeSocket()])
            assert conn.state == S.DISCONNECTED
            conn.connect()
            assert conn.state == S.CONNECTING
            await wait_for(lambda: conn.state == S.CONNECTED)
            assert conn.retry_count == 0
            assert factory.calls == 1
            await conn.stop()
            assert conn.state == S.DISCONNECTED

        run(scenario())

    def test_connect_is_ignored_when_active(self):
        async def scenario():
            conn, factory = make_connection([FakeSocket()])
            conn.connect()
            conn.connect()
            await wait_for(lambda: conn.state == S.CONNECTED)
            conn.connect()
            await asyncio.sleep(0.01)
            assert factory.calls == 1
            await conn.stop()

        run(scenario())

    def test_retry_then_success_resets_counter(self):
        async def scenario():
            conn, factory = make_connection([OSError("refused"), OSError("refused"), FakeSocket()])
            conn.connect()
            await wait_for(lambda: conn.state == S.CONNECTED)
            assert factory.calls == 3
            assert conn.retry_count == 0
            await conn.stop()

        run(scenario())

    def test_three_failures_reach_failed_permanent(self):
        async def scenario():
            conn, factory = make_connection(
                [OSError("a"), OSError("b"), OSError("c")], max_reconnect_attempts=3
            )
            states = []
            conn.on_state_change(lambda old, new: states.append(new))
            conn.connect()
            await wait_for(lambda: conn.state == S.FAILED_PERMANENT)
            assert factory.calls == 3
            assert not conn.retry_pending

            # No further automatic attempts
            await asyncio.sleep(0.05)
            assert factory.calls == 3
            assert conn.state == S.FAILED_PERMANENT
            assert states == [
                S.CONNECTING, S.RECONNECTING,
                S.CONNECTING, S.RECONNECTING,
                S.CONNECTING, S.FAILED_PERMANENT,
            ]

            # Manual reconnect from the terminal state
            factory.outcomes.append(FakeSocket())
            conn.manual_reconnect()
            assert conn.state == S.CONNECTING
            assert conn.retry_count == 0
            await wait_for(lambda: conn.state == S.CONNECTED)
            await conn.stop()

        run(scenario())

    def test_connect_ignored_after_failed_permanent(self):
        async def scenario():
            conn, factory = make_connection([OSError("x")], max_reconnect_attempts=1)
            conn.connect()
            await wait_for(lambda: conn.state == S.FAILED_PERMANENT)
            conn.connect()
            assert conn.state == S.FAILED_PERMANENT
            await conn.stop()

        run(scenario())

    def test_fixed_interval(self):
        async def scenario():
            conn, factory = make_connection([OSError("x"), FakeSocket()], reconnect_interval_ms=50)
            loop = asyncio.get_running_loop()
            started = loop.time()
            conn.connect()
            await wait_for(lambda: conn.state == S.RECONNECTING)
            assert conn.retry_pending
            await wait_for(lambda: conn.state == S.CONNECTED)
            assert loop.time() - started >= 0.045
            await conn.stop()

        run(scenario())

    def test_failure_reported_as_connection_error(self):
        async def scenario():
            conn, _ = make_connection([OSError("refused"), FakeSocket()])
            errors = []
            conn.on_error(errors.append)
            conn.connect()
            await wait_for(lambda: conn.state == S.CONNECTED)
            assert len(errors) == 1
            assert isinstance(errors[0], FeedConnectionError)
            assert isinstance(errors[0], ConnectionError)
            assert "refused" in conn.last_error
            await conn.stop()

        run(scenario())


# ── Remote close ───────────────────────────────────────────────────

class TestRemoteClose:
    def test_drop_triggers_reconnect(self):
        async def scenario():
            first, second = FakeSocket(), FakeSocket()
            conn, factory = make_connection([first, second])
            states = []
            conn.on_state_change(lambda old, new: states.append(new))
            conn.connect()
            await wait_for(lambda: conn.state == S.CONNECTED)
            first.push(ConnectionResetError("remote closed"))
            await wait_for(lambda: factory.calls == 2 and conn.state == S.CONNECTED)
            assert first.closed
            assert S.RECONNECTING in states
            await conn.stop()

        run(scenario())

    def test_drop_without_auto_reconnect(self):
        async def scenario():
            sock = FakeSocket()
            conn, factory = make_connection([sock, FakeSocket()], auto_reconnect=False)
            conn.connect()
            await wait_for(lambda: conn.state == S.CONNECTED)
            sock.push(ConnectionResetError("remote closed"))
            await wait_for(lambda: conn.state == S.DISCONNECTED)
            await asyncio.sleep(0.02)
            assert factory.calls == 1
            assert not conn.retry_pending

        run(scenario())

    def test_drop_with_zero_attempts_fails_permanently(self):
        async def scenario():
            sock = FakeSocket()
            conn, _ = make_connection([sock], max_reconnect_attempts=0)
            conn.connect()
            await wait_for(lambda: conn.state == S.CONNECTED)
            sock.push(ConnectionResetError("gone"))
            await wait_for(lambda: conn.state == S.FAILED_PERMANENT)

        run(scenario())


# ── Message dispatch ───────────────────────────────────────────────

class TestDispatch:
    def test_messages_routed_by_type(self):
        async def scenario():
            sock = FakeSocket([
                candle_message(60_000),
                json.dumps({"type": "priceUpdate", "price": 101.5}),
                json.dumps({"type": "somethingNew", "x": 1}),
            ])
            conn, _ = make_connection([sock])
            candles, prices, everything = [], [], []
            conn.subscribe("candleUpdate", candles.append)
            conn.subscribe("priceUpdate", prices.append)
            conn.subscribe(WILDCARD, everything.append)
            conn.connect()
            await wait_for(lambda: len(everything) == 3)
            assert [m.candle.timestamp for m in candles] == [60_000]
            assert prices[0].price.price == 101.5
            assert [m.type for m in everything] == ["candleUpdate", "priceUpdate", "somethingNew"]
            assert conn.messages_received == 3
            await conn.stop()

        run(scenario())

    def test_async_subscriber_awaited_in_order(self):
        async def scenario():
            sock = FakeSocket([candle_message(ts) for ts in (1, 2, 3)])
            conn, _ = make_connection([sock])
            seen = []

            async def handler(msg):
                await asyncio.sleep(0)
                seen.append(msg.candle.timestamp)

            conn.subscribe("candleUpdate", handler)
            conn.connect()
            await wait_for(lambda: len(seen) == 3)
            assert seen == [1, 2, 3]
            await conn.stop()

        run(scenario())

    def test_malformed_message_keeps_state(self):
        async def scenario():
            sock = FakeSocket(["{not json", candle_message(5)])
            conn, _ = make_connection([sock])
            errors, candles = [], []
            conn.on_error(errors.append)
            conn.subscribe("candleUpdate", candles.append)
            conn.connect()
            await wait_for(lambda: len(candles) == 1)
            assert len(errors) == 1
            assert isinstance(errors[0], MalformedMessageError)
            assert conn.state == S.CONNECTED
            await conn.stop()

        run(scenario())

    def test_subscriber_error_does_not_drop_connection(self):
        async def scenario():
            sock = FakeSocket([candle_message(1), candle_message(2)])
            conn, _ = make_connection([sock])
            seen = []

            def flaky(msg):
                if msg.candle.timestamp == 1:
                    raise RuntimeError("handler bug")
                seen.append(msg)

            conn.subscribe("candleUpdate", flaky)
            conn.connect()
            await wait_for(lambda: len(seen) == 1)
            assert conn.state == S.CONNECTED
            await conn.stop()

        run(scenario())

    def test_unsubscribe(self):
        async def scenario():
            sock = FakeSocket()
            conn, _ = make_connection([sock])
            seen = []
            unsubscribe = conn.subscribe("candleUpdate", seen.append)
            conn.connect()
            await wait_for(lambda: conn.state == S.CONNECTED)
            sock.push(candle_message(1))
            await wait_for(lambda: len(seen) == 1)
            unsubscribe()
            sock.push(candle_message(2))
            await wait_for(lambda: conn.messages_received == 2)
            assert len(seen) == 1
            await conn.stop()

        run(scenario())


# ── Teardown / manual reconnect ────────────────────────────────────

class TestTeardown:
    def test_stop_cancels_pending_retry(self):
        async def scenario():
            conn, factory = make_connection([OSError("x"), FakeSocket()], reconnect_interval_ms=10_000)
            conn.connect()
            await wait_for(lambda: conn.state == S.RECONNECTING)
            assert conn.retry_pending
            await conn.stop()
            assert conn.state == S.DISCONNECTED
            assert not conn.retry_pending
            await asyncio.sleep(0.02)
            assert factory.calls == 1

        run(scenario())

    def test_no_messages_after_stop(self):
        async def scenario():
            sock = FakeSocket()
            conn, _ = make_connection([sock])
            seen = []
            conn.subscribe(WILDCARD, seen.append)
            conn.connect()
            await wait_for(lambda: conn.state == S.CONNECTED)
            await conn.stop()
            assert sock.closed
            sock.push(candle_message(1))
            await asyncio.sleep(0.02)
            assert seen == []

        run(scenario())

    def test_stop_from_subscriber(self):
        async def scenario():
            sock = FakeSocket([candle_message(1), candle_message(2)])
            conn, _ = make_connection([sock])
            seen = []
            stopped = asyncio.Event()

            async def handler(msg):
                seen.append(msg.candle.timestamp)
                await conn.stop()
                stopped.set()

            conn.subscribe("candleUpdate", handler)
            conn.connect()
            await asyncio.wait_for(stopped.wait(), 1.0)
            await asyncio.sleep(0.02)
            assert seen == [1]
            assert conn.state == S.DISCONNECTED

        run(scenario())

    def test_manual_reconnect_supersedes_pending_retry(self):
        async def scenario():
            conn, factory = make_connection([OSError("x"), FakeSocket()], reconnect_interval_ms=10_000)
            conn.connect()
            await wait_for(lambda: conn.state == S.RECONNECTING)
            conn.manual_reconnect()
            assert conn.state == S.CONNECTING
            assert not conn.retry_pending
            await wait_for(lambda: conn.state == S.CONNECTED)
            assert factory.calls == 2
            await conn.stop()

        run(scenario())

    def test_manual_reconnect_while_connected(self):
        async def scenario():
            first, second = FakeSocket(), FakeSocket()
            conn, factory = make_connection([first, second])
            seen = []
            conn.subscribe(WILDCARD, seen.append)
            conn.connect()
            await wait_for(lambda: conn.state == S.CONNECTED)
            conn.manual_reconnect()
            await wait_for(lambda: conn.state == S.CONNECTED and factory.calls == 2)
            assert first.closed
            first.push(candle_message(1))
            second.push(candle_message(2))
            await wait_for(lambda: len(seen) == 1)
            await asyncio.sleep(0.01)
            assert [m.candle.timestamp for m in seen] == [2]
            await conn.stop()

        run(scenario())

    def test_error_listener_reconnect_keeps_single_reader(self):
        async def scenario():
            first, second = FakeSocket(), FakeSocket()
            conn, factory = make_connection([OSError("refused"), first, second])
            states, seen = [], []
            conn.on_state_change(lambda old, new: states.append(new))
            conn.subscribe(WILDCARD, seen.append)

            def recover(err):
                if factory.calls == 1:
                    conn.manual_reconnect()

            conn.on_error(recover)
            conn.connect()
            await wait_for(lambda: conn.state == S.CONNECTED)
            await asyncio.sleep(0.02)
            assert factory.calls == 2
            assert not conn.retry_pending
            assert states == [S.CONNECTING, S.CONNECTED]

            first.push(candle_message(1))
            await wait_for(lambda: len(seen) == 1)
            await asyncio.sleep(0.01)
            assert len(seen) == 1
            await conn.stop()

        run(scenario())

    def test_state_listener_reconnect_cancels_scheduled_retry(self):
        async def scenario():
            conn, factory = make_connection([OSError("refused"), FakeSocket()], reconnect_interval_ms=10_000)

            def recover(old, new):
                if new == S.RECONNECTING:
                    conn.manual_reconnect()

            conn.on_state_change(recover)
            conn.connect()
            await wait_for(lambda: conn.state == S.CONNECTED)
            assert factory.calls == 2
            assert not conn.retry_pending
            await conn.stop()

        run(scenario())
