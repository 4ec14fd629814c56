"""Realtime event channel client (server-sent events over httpx).

States:
  DISCONNECTED no stream, no reconnect scheduled
  CONNECTING   request sent, waiting for the stream to open
  CONNECTED    stream open, events flowing
  RECONNECTING stream lost, waiting out the backoff before the next attempt

Reconnects back off exponentially (base * 2**n, capped) up to a maximum
number of attempts; the counter resets every time a stream opens.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable
from enum import Enum
from typing import Any

import httpx

from markview.client.errors import SyncApiError, SyncErrorKind, kind_for_status
from markview.config import settings
from markview.models.events import (
    ConnectedEvent,
    HeartbeatEvent,
    RealtimeEvent,
    UnknownEventError,
    parse_event,
)

logger = logging.getLogger(__name__)

SSE_PATH = "/api/sync/sse"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


EventHandler = Callable[[Any], None]
StateListener = Callable[[ConnectionState], None]


class SSEParser:
    """Incremental ``text/event-stream`` parser fed one line at a time."""

    def __init__(self) -> None:
        self._event = ""
        self._data: list[str] = []

    def feed(self, line: str) -> tuple[str, str] | None:
        """Consume a line; return ``(event, data)`` when a frame completes."""
        line = line.rstrip("\r\n")
        if not line:
            if not self._data and not self._event:
                return None
            frame = (self._event or "message", "\n".join(self._data))
            self._event = ""
            self._data = []
            return frame
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        return None


class RealtimeChannel:
    """Persistent, reconnecting subscription to the user's sync events."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        device_id: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        reconnect_base_seconds: float | None = None,
        reconnect_max_seconds: float | None = None,
        max_reconnect_attempts: int | None = None,
    ) -> None:
        self._device_id = device_id or str(uuid.uuid4())
        self._token = token
        self._client = httpx.AsyncClient(
            base_url=(base_url or settings.sync_server_url).rstrip("/"),
            timeout=httpx.Timeout(
                settings.sync_request_timeout_seconds,
                read=float(settings.heartbeat_stale_seconds),
            ),
            transport=transport,
        )
        self.reconnect_base_seconds = (
            reconnect_base_seconds if reconnect_base_seconds is not None else settings.reconnect_base_seconds
        )
        self.reconnect_max_seconds = (
            reconnect_max_seconds if reconnect_max_seconds is not None else settings.reconnect_max_seconds
        )
        self.max_reconnect_attempts = (
            max_reconnect_attempts if max_reconnect_attempts is not None else settings.max_reconnect_attempts
        )

        self._state = ConnectionState.DISCONNECTED
        self._connection_id: str | None = None
        self._last_heartbeat: float | None = None
        self._connected_at: float | None = None
        self._reconnect_attempts = 0
        self._task: asyncio.Task | None = None
        self._should_run = False

        self._handlers: dict[str, dict[int, EventHandler]] = {}
        self._state_listeners: dict[int, StateListener] = {}
        self._next_handle = 0

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_device_id(self) -> str:
        return self._device_id

    def get_connection_id(self) -> str | None:
        return self._connection_id

    def get_state(self) -> ConnectionState:
        return self._state

    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    def get_last_heartbeat(self) -> float | None:
        """``time.monotonic()`` of the last heartbeat, or None."""
        return self._last_heartbeat

    def is_stale(self, threshold_seconds: float | None = None) -> bool:
        """True when a connected stream has gone quiet for longer than the threshold."""
        if self._state != ConnectionState.CONNECTED:
            return False
        reference = self._last_heartbeat or self._connected_at
        if reference is None:
            return False
        threshold = threshold_seconds if threshold_seconds is not None else settings.heartbeat_stale_seconds
        return time.monotonic() - reference > threshold

    def set_token(self, token: str | None) -> None:
        self._token = token

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def _handle(self) -> int:
        self._next_handle += 1
        return self._next_handle

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        handle = self._handle()
        self._state_listeners[handle] = listener

        def unsubscribe() -> None:
            self._state_listeners.pop(handle, None)

        return unsubscribe

    def on_event(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """Call ``handler`` with the typed event for every ``event_type`` frame."""
        handle = self._handle()
        self._handlers.setdefault(event_type, {})[handle] = handler

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type)
            if handlers is not None:
                handlers.pop(handle, None)

        return unsubscribe

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        self._state = state
        logger.debug("Realtime channel state -> %s", state.value)
        for listener in list(self._state_listeners.values()):
            try:
                listener(state)
            except Exception:
                logger.error("Realtime state listener failed", exc_info=True)

    def _emit(self, event_type: str, event: RealtimeEvent) -> None:
        for handler in list(self._handlers.get(event_type, {}).values()):
            try:
                handler(event)
            except Exception:
                logger.error("Realtime handler error for %s", event_type, exc_info=True)

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Start streaming in the background. No-op if already running."""
        if self._task is not None and not self._task.done():
            return
        self._should_run = True
        self._reconnect_attempts = 0
        self._task = asyncio.get_running_loop().create_task(self._run())

    def disconnect(self) -> None:
        """Tear the stream down deliberately; no reconnect follows."""
        self._should_run = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self._connection_id = None
        self._connected_at = None
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Realtime channel disconnected")

    async def wait_closed(self) -> None:
        """Wait for the background stream task to finish (tests, shutdown)."""
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def destroy(self) -> None:
        """Disconnect and forget every listener."""
        self.disconnect()
        self._handlers.clear()
        self._state_listeners.clear()

    async def aclose(self) -> None:
        self.destroy()
        await self._client.aclose()

    def _backoff_delay(self) -> float:
        return min(self.reconnect_base_seconds * 2 ** self._reconnect_attempts, self.reconnect_max_seconds)

    async def _run(self) -> None:
        while self._should_run:
            self._set_state(ConnectionState.CONNECTING)
            try:
                await self._stream()
                logger.info("Realtime stream closed by server")
            except asyncio.CancelledError:
                raise
            except SyncApiError as exc:
                if exc.kind in (SyncErrorKind.UNAUTHORIZED, SyncErrorKind.FORBIDDEN):
                    logger.warning("Realtime channel rejected (%s), not reconnecting", exc.kind.value)
                    self._should_run = False
                    break
                logger.warning("Realtime channel error: %s", exc)
            except httpx.HTTPError as exc:
                logger.warning("Realtime connection error: %s", exc)

            self._connection_id = None
            self._connected_at = None
            if not self._should_run:
                break
            if self._reconnect_attempts >= self.max_reconnect_attempts:
                logger.error("Realtime channel: max reconnect attempts (%d) reached", self.max_reconnect_attempts)
                break

            delay = self._backoff_delay()
            self._set_state(ConnectionState.RECONNECTING)
            logger.info(
                "Reconnecting in %.1fs (attempt %d)", delay, self._reconnect_attempts + 1,
            )
            await asyncio.sleep(delay)
            self._reconnect_attempts += 1

        self._connection_id = None
        self._set_state(ConnectionState.DISCONNECTED)

    async def _stream(self) -> None:
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        async with self._client.stream(
            "GET", SSE_PATH, params={"deviceId": self._device_id}, headers=headers
        ) as response:
            if response.status_code != 200:
                await response.aread()
                raise SyncApiError(
                    kind_for_status(response.status_code),
                    f"Event stream refused with status {response.status_code}",
                    status=response.status_code,
                )
            logger.info("Realtime connection opened (device %s)", self._device_id)
            self._reconnect_attempts = 0
            self._connected_at = time.monotonic()
            self._set_state(ConnectionState.CONNECTED)
            await self._consume(response.aiter_lines())

    async def _consume(self, lines: AsyncIterator[str]) -> None:
        parser = SSEParser()
        async for line in lines:
            frame = parser.feed(line)
            if frame is not None:
                self._dispatch(*frame)
        # A final frame without a trailing blank line.
        frame = parser.feed("")
        if frame is not None:
            self._dispatch(*frame)

    def _dispatch(self, event_type: str, data: str) -> None:
        try:
            event = parse_event(event_type, data or "{}")
        except UnknownEventError:
            logger.warning("Ignoring unknown realtime event type %r", event_type)
            return
        except ValueError:
            logger.error("Failed to parse %s event", event_type, exc_info=True)
            return

        if isinstance(event, ConnectedEvent):
            self._connection_id = event.connection_id
            logger.info("Realtime connection established: %s", event.connection_id)
        elif isinstance(event, HeartbeatEvent):
            self._last_heartbeat = time.monotonic()

        self._emit(event_type, event)
