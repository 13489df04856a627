"""
Single persistent WebSocket connection with fixed-interval reconnection.

The manager owns exactly one live transport. Any close or error drives the
state to ``CLOSED`` and starts a retry timer that re-opens the connection
every ``retry_delay`` seconds until the handshake succeeds again. Transport
failures never escape to callers; ``send`` reports them by returning False.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, Protocol

import websockets
from websockets.exceptions import WebSocketException

from ...core.contracts import ConnectionState

logger = logging.getLogger(__name__)

# asyncio.TimeoutError is distinct from the builtin before Python 3.11.
TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    TimeoutError,
    asyncio.TimeoutError,
    WebSocketException,
)


class Transport(Protocol):
    """Subset of the websockets client connection used by the manager."""

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    async def wait_closed(self) -> None: ...


Connector = Callable[[str], Awaitable[Transport]]
StateListener = Callable[[ConnectionState], None]


async def websocket_connector(endpoint: str) -> Transport:
    return await websockets.connect(endpoint)


class ConnectionManager:
    """Own the outbound connection, its lifecycle and the retry timer."""

    def __init__(
        self,
        endpoint: str,
        *,
        retry_delay: float = 3.0,
        connect_timeout: float = 10.0,
        connector: Connector | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._retry_delay = retry_delay
        self._connect_timeout = connect_timeout
        self._connector = connector or websocket_connector
        self._state = ConnectionState.UNINITIALIZED
        self._transport: Transport | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._listeners: list[StateListener] = []
        # Bumped whenever the current transport is superseded; stale callbacks compare against it.
        self._generation = 0
        self._shutdown = False
        self._reconnect_attempts = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def retry_pending(self) -> bool:
        return self._retry_task is not None and not self._retry_task.done()

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def add_listener(self, listener: StateListener) -> None:
        """Register a callable notified synchronously on every state transition."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def open(self, endpoint: str | None = None) -> None:
        """
        Discard the current connection, if any, and start a new attempt.

        Must be called from within a running event loop. The outcome is
        observable through ``state`` and the registered listeners.
        """
        if endpoint:
            self._endpoint = endpoint
        self._shutdown = False
        self._discard_current()
        self._generation += 1
        logger.info("Attempting to connect to %s", self._endpoint)
        self._set_state(ConnectionState.CONNECTING)
        self._connect_task = asyncio.create_task(
            self._connect(self._generation), name="facebridge-connect"
        )

    async def send(self, payload: str | bytes) -> bool:
        """Transmit one text frame; False when not open or when the write fails."""
        transport = self._transport
        if self._state is not ConnectionState.OPEN or transport is None:
            return False
        message = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        try:
            await transport.send(message)
        except TRANSPORT_ERRORS as exc:
            logger.error("Send to %s failed: %s", self._endpoint, exc)
            if transport is self._transport:
                self._discard_current()
                self._handle_closed()
            return False
        return True

    async def close(self) -> None:
        """Shut down for good: no retry, no further connection attempts."""
        self._shutdown = True
        self._generation += 1
        self._cancel_retry()
        connect_task, self._connect_task = self._connect_task, None
        if connect_task is not None and not connect_task.done():
            connect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await connect_task
        if self._watch_task is not None:
            self._watch_task.cancel()
            self._watch_task = None
        transport, self._transport = self._transport, None
        if transport is not None:
            self._set_state(ConnectionState.CLOSING)
            try:
                await transport.close()
            except TRANSPORT_ERRORS as exc:
                logger.warning("Error while closing connection to %s: %s", self._endpoint, exc)
        self._set_state(ConnectionState.CLOSED)
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        logger.info("Connection manager for %s closed", self._endpoint)

    async def _connect(self, generation: int) -> None:
        try:
            transport = await asyncio.wait_for(
                self._connector(self._endpoint), timeout=self._connect_timeout
            )
        except TRANSPORT_ERRORS as exc:
            if generation != self._generation:
                return
            logger.error(
                "Connection to %s failed: %s", self._endpoint, str(exc) or type(exc).__name__
            )
            self._handle_closed()
            return
        if generation != self._generation or self._shutdown:
            self._spawn(transport.close())
            return
        self._transport = transport
        self._set_state(ConnectionState.OPEN)
        self._cancel_retry()
        logger.info("Connected to %s", self._endpoint)
        self._watch_task = asyncio.create_task(
            self._watch(transport, generation), name="facebridge-connection-watch"
        )

    async def _watch(self, transport: Transport, generation: int) -> None:
        await transport.wait_closed()
        if generation != self._generation or self._shutdown:
            return
        logger.warning(
            "Connection to %s closed. Code: %s, Reason: %s",
            self._endpoint,
            getattr(transport, "close_code", None),
            getattr(transport, "close_reason", None) or "",
        )
        self._transport = None
        self._watch_task = None
        self._handle_closed()

    def _handle_closed(self) -> None:
        self._set_state(ConnectionState.CLOSED)
        if self._shutdown or self._retry_task is not None:
            return
        logger.info("Will attempt to reconnect in %.1f seconds...", self._retry_delay)
        self._retry_task = asyncio.create_task(self._retry_loop(), name="facebridge-retry")

    async def _retry_loop(self) -> None:
        while True:
            await asyncio.sleep(self._retry_delay)
            self._reconnect_attempts += 1
            self.open()

    def _cancel_retry(self) -> None:
        if self._retry_task is not None:
            self._retry_task.cancel()
            self._retry_task = None

    def _discard_current(self) -> None:
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        self._connect_task = None
        if self._watch_task is not None:
            self._watch_task.cancel()
            self._watch_task = None
        transport, self._transport = self._transport, None
        if transport is not None:
            self._spawn(transport.close())

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Closing superseded connection failed: %s", task.exception())

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        logger.debug("Connection state %s -> %s", previous.value, state.value)
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:  # pragma: no cover - listeners are observability only
                logger.exception("Connection state listener %s failed", listener)


__all__ = [
    "ConnectionManager",
    "Connector",
    "StateListener",
    "Transport",
    "websocket_connector",
]
