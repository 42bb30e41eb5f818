"""Request/response correlation over the push-based transport."""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from .config import DEFAULT_REQUEST_TIMEOUT_S
from .protocol import build_command, message_id_of
from .transport import ConnectionLostError

logger = logging.getLogger(__name__)

SendMessage = Callable[[Mapping[str, Any]], Awaitable[None]]


class RequestTimeoutError(TimeoutError):
    """Raised when no reply arrives for a correlated command in time."""

    def __init__(self, command: str, message_id: str, timeout: float) -> None:
        super().__init__(f"Timeout waiting for {command} (id={message_id}) after {timeout:g}s")
        self.command = command
        self.message_id = message_id
        self.timeout = timeout


@dataclass(slots=True)
class PendingRequest:
    """A command waiting for its reply."""

    message_id: str
    command: str
    future: asyncio.Future
    issued_at: float = field(default_factory=time.monotonic)
    timeout_handle: asyncio.TimerHandle | None = None


class RequestCorrelator:
    """Tag outgoing commands and match replies to the waiting callers."""

    def __init__(
        self,
        send_message: SendMessage,
        *,
        default_timeout: float = DEFAULT_REQUEST_TIMEOUT_S,
    ) -> None:
        if default_timeout <= 0:
            raise ValueError("default_timeout must be positive")
        self._send_message = send_message
        self._default_timeout = float(default_timeout)
        self._counter = itertools.count(1)
        self._pending: dict[str, PendingRequest] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, message_id: str | None) -> bool:
        return message_id is not None and message_id in self._pending

    def next_id(self) -> str:
        while True:
            candidate = str(next(self._counter))
            if candidate not in self._pending:
                return candidate

    async def send(self, command: str, params: Mapping[str, Any] | None = None) -> str | None:
        """Send ``command`` without waiting for a reply.

        Returns the message id, or ``None`` when the connection is down.
        """

        message_id = self.next_id()
        logger.info(">>> %s", command)
        try:
            await self._send_message(build_command(message_id, command, params))
        except ConnectionLostError as exc:
            logger.warning("Dropping %s: %s", command, exc)
            return None
        return message_id

    async def request(
        self,
        command: str,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send ``command`` and wait for the reply carrying the same id."""

        wait = self._default_timeout if timeout is None else float(timeout)
        if wait <= 0:
            raise ValueError("timeout must be positive")
        loop = asyncio.get_running_loop()
        message_id = self.next_id()
        pending = PendingRequest(
            message_id=message_id,
            command=command,
            future=loop.create_future(),
        )
        pending.timeout_handle = loop.call_later(wait, self._expire, message_id, wait)
        self._pending[message_id] = pending
        logger.info(">>> %s (id=%s)", command, message_id)
        try:
            await self._send_message(build_command(message_id, command, params))
            return await pending.future
        finally:
            self._discard(message_id, pending)

    def resolve(self, message: object) -> bool:
        """Resolve the waiter for ``message``; return ``False`` if none exists."""

        message_id = message_id_of(message)
        if message_id is None:
            return False
        pending = self._pending.pop(message_id, None)
        if pending is None:
            return False
        if pending.timeout_handle is not None:
            pending.timeout_handle.cancel()
        if not pending.future.done():
            pending.future.set_result(message)
        return True

    def fail_all(self, exc: BaseException | None = None) -> int:
        """Fail every outstanding request; used when the connection drops."""

        if not self._pending:
            return 0
        error = exc or ConnectionLostError("Connection lost before a reply arrived")
        entries = list(self._pending.values())
        self._pending.clear()
        for pending in entries:
            if pending.timeout_handle is not None:
                pending.timeout_handle.cancel()
            if not pending.future.done():
                pending.future.set_exception(error)
        logger.warning("Failed %d pending request(s): %s", len(entries), error)
        return len(entries)

    # ----------------------------- implementation --------------------------
    def _expire(self, message_id: str, timeout: float) -> None:
        pending = self._pending.pop(message_id, None)
        if pending is None:
            return
        if not pending.future.done():
            pending.future.set_exception(RequestTimeoutError(pending.command, message_id, timeout))

    def _discard(self, message_id: str, pending: PendingRequest) -> None:
        if self._pending.get(message_id) is pending:
            del self._pending[message_id]
        if pending.timeout_handle is not None:
            pending.timeout_handle.cancel()


__all__ = ["PendingRequest", "RequestCorrelator", "RequestTimeoutError"]
