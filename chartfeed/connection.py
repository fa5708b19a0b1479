"""Connection Manager — one live feed subscription with bounded, fixed-interval retry.

State machine:
  DISCONNECTED --connect()--> CONNECTING
  CONNECTING   --success----> CONNECTED          (retry counter reset)
  CONNECTING   --failure----> RECONNECTING       (retries left) | FAILED_PERMANENT
  CONNECTED    --drop-------> RECONNECTING       (auto-reconnect) | DISCONNECTED
  RECONNECTING --timer------> CONNECTING
  any          --manual_reconnect()--> CONNECTING (retry counter reset, pending timer dropped)
  any          --stop()-----> DISCONNECTED       (no further events)

Every attempt carries a generation number. Anything an older generation does
after a reconnect or stop is discarded, so nothing is delivered after teardown.
"""

import asyncio
from typing import Any, Awaitable, Callable, Protocol

import websockets
from loguru import logger

from chartfeed.config import ConnectionOptions
from chartfeed.errors import ChartFeedError, FeedConnectionError, MalformedMessageError
from chartfeed.feed import parse_message
from chartfeed.models.market import ConnectionState, FeedMessage

WILDCARD = "*"


class FeedSocket(Protocol):
    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


ConnectFactory = Callable[[str], Awaitable[FeedSocket]]
MessageCallback = Callable[[FeedMessage], Any]
StateCallback = Callable[[ConnectionState, ConnectionState], None]
ErrorCallback = Callable[[ChartFeedError], None]


async def websocket_connect(url: str) -> FeedSocket:
    return await websockets.connect(url, ping_interval=20, ping_timeout=10, close_timeout=5)


class ConnectionManager:
    def __init__(self, options: ConnectionOptions, connect: ConnectFactory | None = None):
        self.options = options
        self._connect = connect or websocket_connect

        self._state = ConnectionState.DISCONNECTED
        self._retry_count = 0
        self._generation = 0

        self._socket: FeedSocket | None = None
        self._attempt_task: asyncio.Task | None = None
        self._retry_task: asyncio.Task | None = None

        self._subscribers: dict[str, list[MessageCallback]] = {}
        self._state_callbacks: list[StateCallback] = []
        self._error_callbacks: list[ErrorCallback] = []

        self.messages_received = 0
        self.last_error: str | None = None

    # --- Observers ---

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def retry_pending(self) -> bool:
        return self._retry_task is not None and not self._retry_task.done()

    def subscribe(self, msg_type: str, callback: MessageCallback) -> Callable[[], None]:
        """Register callback(message) for one message type, or WILDCARD for all."""
        self._subscribers.setdefault(msg_type, []).append(callback)

        def unsubscribe():
            subs = self._subscribers.get(msg_type, [])
            if callback in subs:
                subs.remove(callback)

        return unsubscribe

    def on_state_change(self, callback: StateCallback):
        self._state_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback):
        """Register callback(error) for malformed payloads and transport failures."""
        self._error_callbacks.append(callback)

    # --- Lifecycle ---

    def connect(self):
        """Start the subscription. Only valid from DISCONNECTED."""
        if self._state != ConnectionState.DISCONNECTED:
            logger.warning(f"connect() ignored in state {self._state.value}")
            return
        self._retry_count = 0
        self._begin_attempt()

    def manual_reconnect(self):
        """Reset the retry counter and force a fresh attempt from any state."""
        logger.info(f"Manual reconnect requested (state {self._state.value})")
        self._teardown()
        self._retry_count = 0
        self._begin_attempt()

    async def stop(self):
        """Tear down: cancel the pending retry and the reader, close the socket."""
        current = asyncio.current_task()
        tasks = [
            t for t in (self._attempt_task, self._retry_task)
            if t and not t.done() and t is not current
        ]
        socket = self._socket
        self._teardown()
        self._set_state(ConnectionState.DISCONNECTED)

        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if socket is not None:
            await self._close_socket(socket)
        logger.info(f"Feed connection stopped ({self.messages_received} messages received)")

    # --- Internals ---

    def _teardown(self):
        """Synchronously invalidate the current generation and cancel its tasks."""
        self._generation += 1
        current = asyncio.current_task() if self._in_loop() else None
        for task in (self._retry_task, self._attempt_task):
            if task and not task.done() and task is not current:
                task.cancel()
        self._retry_task = None
        self._attempt_task = None
        self._socket = None

    @staticmethod
    def _in_loop() -> bool:
        try:
            asyncio.get_running_loop()
            return True
        except RuntimeError:
            return False

    def _set_state(self, new: ConnectionState):
        old = self._state
        if old == new:
            return
        self._state = new
        logger.info(f"Feed connection {old.value} -> {new.value}")
        for cb in list(self._state_callbacks):
            try:
                cb(old, new)
            except Exception as e:
                logger.error(f"State change callback error: {e}")

    def _begin_attempt(self):
        gen = self._generation
        self._set_state(ConnectionState.CONNECTING)
        if gen != self._generation:
            return
        self._attempt_task = asyncio.create_task(self._run_attempt(gen), name="feed-attempt")

    async def _run_attempt(self, gen: int):
        url = self.options.url
        try:
            logger.info(f"Connecting to feed: {url}")
            socket = await self._connect(url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if gen == self._generation:
                self._on_failure(e, was_connected=False)
            return

        if gen != self._generation:
            await self._close_socket(socket)
            return

        self._socket = socket
        self._retry_count = 0
        self._set_state(ConnectionState.CONNECTED)

        try:
            await self._read_loop(socket, gen)
        except asyncio.CancelledError:
            await self._close_socket(socket)
            raise
        except Exception as e:
            await self._close_socket(socket)
            if gen == self._generation:
                self._socket = None
                self._on_failure(e, was_connected=True)
        else:
            # Superseded by manual_reconnect() or stop() from inside a subscriber
            await self._close_socket(socket)

    async def _read_loop(self, socket: FeedSocket, gen: int):
        while gen == self._generation:
            raw = await socket.recv()
            if gen != self._generation:
                break
            self.messages_received += 1
            try:
                msg = parse_message(raw)
            except MalformedMessageError as e:
                logger.warning(f"Dropped malformed feed message: {e}")
                self._report(e)
                continue
            await self._dispatch(msg, gen)

    async def _dispatch(self, msg: FeedMessage, gen: int):
        callbacks = self._subscribers.get(msg.type, []) + self._subscribers.get(WILDCARD, [])
        for cb in list(callbacks):
            if gen != self._generation:
                return
            try:
                result = cb(msg)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Feed subscriber error ({msg.type}): {e}")

    def _on_failure(self, exc: Exception, was_connected: bool):
        gen = self._generation
        err = exc if isinstance(exc, FeedConnectionError) else FeedConnectionError(
            f"{type(exc).__name__}: {exc}"
        )
        self.last_error = str(err)
        logger.warning(f"Feed connection failure: {err}")
        self._report(err)
        if gen != self._generation:
            # An error listener already reconnected or stopped
            return

        max_attempts = self.options.max_reconnect_attempts
        if not self.options.auto_reconnect:
            self._set_state(ConnectionState.DISCONNECTED)
            return

        if was_connected:
            retry = max_attempts > 0
        else:
            self._retry_count += 1
            retry = self._retry_count < max_attempts

        if not retry:
            logger.error(
                f"Feed reconnection gave up after {self._retry_count} failed attempts"
            )
            self._set_state(ConnectionState.FAILED_PERMANENT)
            return

        self._set_state(ConnectionState.RECONNECTING)
        if gen != self._generation:
            return
        self._retry_task = asyncio.create_task(self._retry_after(gen), name="feed-retry")

    async def _retry_after(self, gen: int):
        delay = self.options.reconnect_interval
        logger.info(f"Reconnecting in {delay:.1f}s (attempt #{self._retry_count + 1})")
        await asyncio.sleep(delay)
        if gen != self._generation:
            return
        self._retry_task = None
        self._begin_attempt()

    def _report(self, err: ChartFeedError):
        for cb in list(self._error_callbacks):
            try:
                cb(err)
            except Exception as e:
                logger.error(f"Error callback error: {e}")

    @staticmethod
    async def _close_socket(socket: FeedSocket):
        try:
            await socket.close()
        except Exception as e:
            logger.debug(f"Socket close error: {e}")
