"""Exponential back-off polling of the station recording database."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Collection, Iterable, Mapping, Sequence

from .config import DEFAULT_BACKOFF_DELAYS_S, DEFAULT_QUERY_RESPONSE_TIMEOUT_S
from .protocol import CMD_DATABASE_QUERY_BY_DATE, RecordingRecord

logger = logging.getLogger(__name__)

SendCommand = Callable[[str, Mapping[str, Any] | None], Awaitable[object]]


def _format_date(value: datetime) -> str:
    return value.strftime("%Y%m%d")


class QueryPoller:
    """Poll ``station.database_query_by_date`` until unseen recordings appear.

    The server reports query results as a broadcast event rather than a reply,
    so the poller cannot use the request correlator. Each attempt registers a
    hand-off future in a single slot and sends the query; the dispatcher calls
    :meth:`on_query_result` when the matching event arrives. A timeout guards
    the slot so an attempt never waits forever.
    """

    def __init__(
        self,
        send: SendCommand,
        *,
        station_serial: str,
        device_serial: str,
        backoff_delays: Sequence[float] = DEFAULT_BACKOFF_DELAYS_S,
        response_timeout: float = DEFAULT_QUERY_RESPONSE_TIMEOUT_S,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        if response_timeout <= 0:
            raise ValueError("response_timeout must be positive")
        self._send = send
        self._station_serial = station_serial
        self._device_serial = device_serial
        self._backoff_delays = tuple(float(delay) for delay in backoff_delays)
        self._response_timeout = float(response_timeout)
        self._sleep = sleep
        self._clock = clock
        self._polling = False
        self._handoff: asyncio.Future | None = None

    @property
    def polling(self) -> bool:
        return self._polling

    @property
    def waiting(self) -> bool:
        """Whether a hand-off is currently registered."""

        return self._handoff is not None and not self._handoff.done()

    @property
    def backoff_delays(self) -> tuple[float, ...]:
        return self._backoff_delays

    # ------------------------------ hand-off -------------------------------
    def on_query_result(self, records: Iterable[RecordingRecord]) -> bool:
        """Resolve the registered hand-off with ``records``, if any."""

        handoff = self._handoff
        if handoff is None:
            return False
        self._handoff = None
        if handoff.done():
            return False
        handoff.set_result(list(records))
        return True

    # ------------------------------ operations -----------------------------
    async def poll_for_new_events(self, seen: Collection[str]) -> list[RecordingRecord]:
        """Return unseen recordings for the monitored device, or ``[]``.

        Only one poll cycle runs at a time; a concurrent call returns ``[]``
        immediately without sending a query.
        """

        if self._polling:
            logger.info("Poll already in progress, skipping")
            return []
        self._polling = True
        try:
            for delay in self._backoff_delays:
                logger.info("Waiting %gs before querying", delay)
                await self._sleep(delay)
                records = await self._query_and_wait()
                fresh = [
                    record
                    for record in records
                    if record.device_serial == self._device_serial
                    and record.storage_path not in seen
                ]
                if fresh:
                    logger.info("Found %d new recording(s) after back-off", len(fresh))
                    return fresh
                logger.info("No new recordings yet")
            logger.warning("No new recordings found after %d attempt(s)", len(self._backoff_delays))
            return []
        finally:
            self._polling = False

    async def fire_query(self) -> None:
        """Send a single query without waiting; used for the startup check."""

        await self._send(CMD_DATABASE_QUERY_BY_DATE, self.build_params())

    def build_params(self, now: datetime | None = None) -> dict[str, Any]:
        today = now or self._clock()
        tomorrow = today + timedelta(days=1)
        params = {
            "serialNumber": self._station_serial,
            "serialNumbers": [],
            "startDate": _format_date(today),
            "endDate": _format_date(tomorrow),
            "eventType": 0,
            "detectionType": 0,
            "storageType": 0,
        }
        logger.debug("database_query_by_date params: %s", params)
        return params

    # ----------------------------- implementation --------------------------
    async def _query_and_wait(self) -> list[RecordingRecord]:
        loop = asyncio.get_running_loop()
        handoff: asyncio.Future = loop.create_future()
        self._handoff = handoff
        try:
            await self._send(CMD_DATABASE_QUERY_BY_DATE, self.build_params())
            return await asyncio.wait_for(handoff, timeout=self._response_timeout)
        except asyncio.TimeoutError:
            logger.warning("Query response timeout after %gs", self._response_timeout)
            return []
        finally:
            if self._handoff is handoff:
                self._handoff = None


__all__ = ["QueryPoller"]
