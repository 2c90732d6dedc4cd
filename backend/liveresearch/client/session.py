from __future__ import annotations

import asyncio
import inspect
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from liveresearch.core.config import Settings
from liveresearch.schemas.events import (
    EventType,
    FrameDecodeError,
    WIRE_TYPE_ALIASES,
    HandshakeFrame,
    ProgressEvent,
    decode_frame,
)

logger = logging.getLogger(__name__)

WILDCARD = "*"

EventHandler = Callable[[ProgressEvent], Any]
ConnectionHandler = Callable[[bool], Any]
ErrorHandler = Callable[[Exception], Any]
Connector = Callable[[str], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[None]]

_ACTIVITY_ON = {EventType.AGENT_START, EventType.AGENT_UPDATE, EventType.STREAM_RESPONSE}
_ACTIVITY_OFF = {
    EventType.AGENT_COMPLETED,
    EventType.STREAM_END,
    EventType.CHAT_RESPONSE,
    EventType.ERROR,
}


class SessionNotReadyError(RuntimeError):
    """Raised when sending before the connection and client id exist."""


class SessionConnectionError(RuntimeError):
    """Raised when a connection or its handshake cannot be established."""


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


async def _default_connector(url: str) -> Any:
    return await websockets.connect(url)


class ResearchSession:
    """Client side of the persistent progress-event connection.

    The server pushes ``{"clientId": ...}`` as its first frame; ``open`` resolves
    with that id. Later frames are decoded into canonical ``ProgressEvent``
    objects and dispatched to the handlers registered for their type and to the
    wildcard handlers. When the socket closes the session reconnects with
    exponential backoff and gives up after ``max_reconnect_attempts``
    consecutive failures, reporting one error to the error handlers. Every new
    connection carries a new client id.
    """

    def __init__(
        self,
        url: str,
        max_reconnect_attempts: int = 5,
        reconnect_base_delay: float = 1.0,
        handshake_timeout: float = 10.0,
        connector: Optional[Connector] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._url = url
        self._max_attempts = max(max_reconnect_attempts, 0)
        self._base_delay = reconnect_base_delay
        self._handshake_timeout = handshake_timeout
        self._connector = connector or _default_connector
        self._sleep = sleep

        self._socket: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._client_id: Optional[str] = None
        self._state = ConnectionState.IDLE
        self._reconnect_attempts = 0
        self._activity_active = False

        self._handlers: dict[str, list[EventHandler]] = {}
        self._connection_handlers: list[ConnectionHandler] = []
        self._error_handlers: list[ErrorHandler] = []
        self._activity_handlers: list[Callable[[bool], Any]] = []

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "ResearchSession":
        return cls(
            settings.research_ws_url,
            max_reconnect_attempts=settings.ws_max_reconnect_attempts,
            reconnect_base_delay=settings.ws_reconnect_base_delay_sec,
            handshake_timeout=settings.ws_handshake_timeout_sec,
            **kwargs,
        )

    @property
    def client_id(self) -> Optional[str]:
        return self._client_id

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.OPEN and self._socket is not None

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def activity_active(self) -> bool:
        return self._activity_active

    async def open(self) -> str:
        """Connect and return the server-assigned client id."""

        if self.is_connected and self._client_id:
            return self._client_id
        self._state = ConnectionState.CONNECTING
        self._reconnect_attempts = 0
        try:
            await self._establish()
        except SessionConnectionError:
            self._state = ConnectionState.FAILED
            raise
        return self._client_id or ""

    connect = open

    async def close(self) -> None:
        """Close the connection; no reconnect is attempted afterwards."""

        self._state = ConnectionState.CLOSED
        reader, self._reader = self._reader, None
        socket, self._socket = self._socket, None
        self._client_id = None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        if socket is not None:
            try:
                await socket.close()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Ignoring close failure: %s", exc)
        await self._notify(self._connection_handlers, False)
        await self._set_activity(False)

    async def send(self, message: dict) -> None:
        """Send one JSON message tagged with the client id."""

        if not self.is_connected:
            raise SessionNotReadyError("Cannot send: the connection is not open.")
        if not self._client_id:
            raise SessionNotReadyError("Cannot send: no client id has been assigned yet.")
        payload = {**message, "clientId": self._client_id}
        await self._socket.send(json.dumps(payload))

    def on(self, event_type: Union[EventType, str], handler: EventHandler) -> None:
        self._handlers.setdefault(_handler_key(event_type), []).append(handler)

    def off(self, event_type: Union[EventType, str], handler: EventHandler) -> None:
        handlers = self._handlers.get(_handler_key(event_type), [])
        if handler in handlers:
            handlers.remove(handler)

    def on_connection_change(self, handler: ConnectionHandler) -> None:
        self._connection_handlers.append(handler)

    def on_error(self, handler: ErrorHandler) -> None:
        self._error_handlers.append(handler)

    def on_activity_change(self, handler: Callable[[bool], Any]) -> None:
        self._activity_handlers.append(handler)

    async def _establish(self) -> None:
        try:
            socket = await self._connector(self._url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise SessionConnectionError(f"Could not connect to {self._url}: {exc}") from exc
        try:
            raw = await asyncio.wait_for(socket.recv(), timeout=self._handshake_timeout)
            frame = decode_frame(raw)
        except (asyncio.TimeoutError, WebSocketException, FrameDecodeError) as exc:
            await _close_quietly(socket)
            raise SessionConnectionError(f"Handshake with {self._url} failed: {exc}") from exc
        if not isinstance(frame, HandshakeFrame):
            await _close_quietly(socket)
            raise SessionConnectionError("Server did not send a client id first.")

        self._socket = socket
        self._client_id = frame.client_id
        self._reconnect_attempts = 0
        self._state = ConnectionState.OPEN
        self._reader = asyncio.create_task(self._read_loop(socket))
        logger.info("Connected to %s as %s", self._url, self._client_id)
        await self._notify(self._connection_handlers, True)

    async def _read_loop(self, socket: Any) -> None:
        try:
            while True:
                raw = await socket.recv()
                await self._dispatch(raw)
        except ConnectionClosed:
            logger.info("Connection %s closed", self._client_id)
        except asyncio.CancelledError:
            return
        except Exception as exc:  # noqa: BLE001
            logger.warning("Connection %s failed: %s", self._client_id, exc)
        if self._state != ConnectionState.CLOSED and socket is self._socket:
            await self._reconnect()

    async def _dispatch(self, raw: Any) -> None:
        try:
            frame = decode_frame(raw)
        except FrameDecodeError as exc:
            logger.warning("Dropping frame: %s", exc)
            return
        if isinstance(frame, HandshakeFrame):
            self._client_id = frame.client_id
            return
        if frame.type in _ACTIVITY_ON:
            await self._set_activity(True)
        elif frame.type in _ACTIVITY_OFF:
            await self._set_activity(False)
        handlers = self._handlers.get(frame.type.value, []) + self._handlers.get(WILDCARD, [])
        await self._notify(handlers, frame)

    async def _reconnect(self) -> None:
        self._socket = None
        self._client_id = None
        self._state = ConnectionState.RECONNECTING
        await self._notify(self._connection_handlers, False)
        await self._set_activity(False)

        last_error: Optional[Exception] = None
        while self._reconnect_attempts < self._max_attempts:
            self._reconnect_attempts += 1
            delay = self._base_delay * 2 ** (self._reconnect_attempts - 1)
            logger.info(
                "Reconnecting in %.1fs (attempt %s/%s)",
                delay,
                self._reconnect_attempts,
                self._max_attempts,
            )
            await self._sleep(delay)
            if self._state == ConnectionState.CLOSED:
                return
            try:
                await self._establish()
                return
            except SessionConnectionError as exc:
                last_error = exc
                logger.warning("Reconnect attempt %s failed: %s", self._reconnect_attempts, exc)

        self._state = ConnectionState.FAILED
        error = SessionConnectionError(
            f"Gave up after {self._reconnect_attempts} reconnect attempts"
            + (f": {last_error}" if last_error else "")
        )
        await self._notify(self._error_handlers, error)

    async def _set_activity(self, active: bool) -> None:
        if self._activity_active == active:
            return
        self._activity_active = active
        await self._notify(self._activity_handlers, active)

    async def _notify(self, handlers: list, value: Any) -> None:
        for handler in list(handlers):
            try:
                result = handler(value)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001
                logger.exception("Session handler failed")


def _handler_key(event_type: Union[EventType, str]) -> str:
    if isinstance(event_type, EventType):
        return event_type.value
    if event_type == WILDCARD:
        return WILDCARD
    canonical = WIRE_TYPE_ALIASES.get(event_type)
    if canonical is None:
        raise ValueError(f"Unknown event type: {event_type}")
    return canonical.value


async def _close_quietly(socket: Any) -> None:
    try:
        await socket.close()
    except Exception as exc:  # noqa: BLE001
        logger.debug("Ignoring close failure: %s", exc)
