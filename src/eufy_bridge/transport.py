"""WebSocket transport with automatic reconnection."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Mapping

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .config import DEFAULT_RECONNECT_CEILING_S, DEFAULT_RECONNECT_FLOOR_S

logger = logging.getLogger(__name__)

OpenCallback = Callable[[], None]
MessageCallback = Callable[[Any], Awaitable[None] | None]
CloseCallback = Callable[[BaseException | None], None]


class ConnectionLostError(RuntimeError):
    """Raised when the device-control connection is unavailable."""


class ReconnectBackoff:
    """Exponential reconnect delay, doubled per failure and capped."""

    def __init__(
        self,
        floor: float = DEFAULT_RECONNECT_FLOOR_S,
        ceiling: float = DEFAULT_RECONNECT_CEILING_S,
    ) -> None:
        if floor <= 0:
            raise ValueError("floor must be positive")
        if ceiling < floor:
            raise ValueError("ceiling must not be below floor")
        self._floor = float(floor)
        self._ceiling = float(ceiling)
        self._delay = self._floor
        self._failures = 0

    @property
    def delay(self) -> float:
        return self._delay

    @property
    def failures(self) -> int:
        return self._failures

    def failure(self) -> float:
        """Return the delay to wait now and grow the next one."""

        current = self._delay
        self._failures += 1
        self._delay = min(self._delay * 2, self._ceiling)
        return current

    def reset(self) -> None:
        self._delay = self._floor
        self._failures = 0


class WebSocketTransport:
    """Maintain a single logical connection to the eufy-security-ws server.

    The transport has no protocol knowledge. Every successful open triggers
    ``on_open``; every decoded frame is handed to ``on_message``; every close
    or failed connect triggers ``on_close`` before the reconnect delay starts.
    """

    def __init__(
        self,
        url: str,
        *,
        on_open: OpenCallback | None = None,
        on_message: MessageCallback | None = None,
        on_close: CloseCallback | None = None,
        backoff: ReconnectBackoff | None = None,
        connect: Callable[..., Any] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._url = url
        self._on_open = on_open
        self._on_message = on_message
        self._on_close = on_close
        self._backoff = backoff or ReconnectBackoff()
        self._connect = connect or websockets.connect
        self._sleep = sleep
        self._socket: Any | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopping = False
        self._generation = 0

    # ------------------------------ properties -----------------------------
    @property
    def url(self) -> str:
        return self._url

    @property
    def connected(self) -> bool:
        return self._socket is not None

    @property
    def generation(self) -> int:
        """Number of connections opened so far."""

        return self._generation

    @property
    def backoff(self) -> ReconnectBackoff:
        return self._backoff

    def set_callbacks(
        self,
        *,
        on_open: OpenCallback | None = None,
        on_message: MessageCallback | None = None,
        on_close: CloseCallback | None = None,
    ) -> None:
        if on_open is not None:
            self._on_open = on_open
        if on_message is not None:
            self._on_message = on_message
        if on_close is not None:
            self._on_close = on_close

    # ------------------------------ lifecycle ------------------------------
    def start(self) -> None:
        """Start the connection loop on the running event loop."""

        if self._task is not None:
            return
        self._stopping = False
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self.run(), name="eufy-ws-transport")

    async def aclose(self) -> None:
        self._stopping = True
        socket = self._socket
        if socket is not None:
            try:
                await socket.close()
            except Exception:  # pragma: no cover - best effort cleanup
                logger.debug("Ignoring WebSocket close failure", exc_info=True)
        task = self._task
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def run(self) -> None:
        """Connect, pump messages and reconnect until :meth:`aclose` is called."""

        while not self._stopping:
            error: BaseException | None = None
            logger.info("Connecting to %s", self._url)
            try:
                socket = await self._connect(self._url, max_size=None)
            except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                logger.warning("WebSocket connect to %s failed: %s", self._url, exc)
                self._notify_close(exc)
            else:
                try:
                    await self._pump(socket)
                except ConnectionClosed as exc:
                    error = exc
                except (OSError, WebSocketException) as exc:
                    logger.warning("WebSocket error: %s", exc)
                    error = exc
                finally:
                    self._socket = None
                    try:
                        await socket.close()
                    except Exception:  # pragma: no cover - best effort cleanup
                        logger.debug("Ignoring WebSocket close failure", exc_info=True)
                code = getattr(socket, "close_code", None)
                reason = getattr(socket, "close_reason", None)
                logger.info("WebSocket closed (code=%s, reason=%s)", code, reason or "")
                self._notify_close(error)
            if self._stopping:
                break
            delay = self._backoff.failure()
            logger.info("Reconnecting in %.1fs", delay)
            await self._sleep(delay)

    async def _pump(self, socket: Any) -> None:
        self._socket = socket
        self._generation += 1
        self._backoff.reset()
        logger.info("WebSocket connected to %s", self._url)
        if self._on_open is not None:
            try:
                self._on_open()
            except Exception:
                logger.exception("WebSocket open handler failed")
        async for raw in socket:
            try:
                message = json.loads(raw)
            except (TypeError, ValueError) as exc:
                logger.warning("Failed to parse WebSocket message: %s", exc)
                continue
            if self._on_message is None:
                continue
            try:
                result = self._on_message(message)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("WebSocket message handler failed")

    def _notify_close(self, error: BaseException | None) -> None:
        if self._on_close is None:
            return
        try:
            self._on_close(error)
        except Exception:
            logger.exception("WebSocket close handler failed")

    # ------------------------------ operations -----------------------------
    async def send(self, message: Mapping[str, Any]) -> None:
        """Serialise ``message`` as JSON and write it to the open socket."""

        socket = self._socket
        if socket is None:
            raise ConnectionLostError("WebSocket is not connected")
        try:
            await socket.send(json.dumps(message))
        except (ConnectionClosed, OSError) as exc:
            raise ConnectionLostError(f"WebSocket send failed: {exc}") from exc


__all__ = ["ConnectionLostError", "ReconnectBackoff", "WebSocketTransport"]
