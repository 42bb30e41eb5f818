"""Inbound message routing and the per-connection protocol handshake."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Coroutine, MutableSet

from .activity import ActivityLog
from .captcha import CaptchaChannel
from .config import DEFAULT_API_SCHEMA, DEFAULT_CONNECT_TIMEOUT_S
from .correlator import RequestCorrelator, RequestTimeoutError
from .downloads import DownloadJob, DownloadManager
from .poller import QueryPoller
from .protocol import (
    CMD_DRIVER_CONNECT,
    CMD_SET_API_SCHEMA,
    CMD_START_LISTENING,
    STREAMING_EVENTS,
    CaptchaRequest,
    CommandResult,
    Detection,
    DownloadChunk,
    DownloadFinished,
    DownloadStarted,
    InboundMessage,
    OtherEvent,
    QueryResult,
    RecordingRecord,
    event_name_of,
    parse_message,
)
from .transport import ConnectionLostError

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

# Classification labels returned by :meth:`EventDispatcher.dispatch`.
REPLY = "reply"
CAPTCHA = "captcha"
QUERY_RESULT = "query_result"
DETECTION = "detection"
DOWNLOAD = "download"
FAILURE = "failure"
IGNORED = "ignored"


def _recency(record: RecordingRecord) -> datetime:
    return record.started_at or _EPOCH


class EventDispatcher:
    """Route every inbound message to exactly one subsystem.

    The dispatcher is the only component holding references to all the
    others. Correlated replies always win; everything else is classified by
    :func:`~eufy_bridge.protocol.parse_message`. Work that waits on later
    messages (handshake, poll cycles, download finalisation) runs in tracked
    background tasks so the transport keeps reading.
    """

    def __init__(
        self,
        correlator: RequestCorrelator,
        poller: QueryPoller,
        downloads: DownloadManager,
        captcha: CaptchaChannel,
        *,
        device_serial: str,
        station_serial: str,
        seen: MutableSet[str] | None = None,
        api_schema: int = DEFAULT_API_SCHEMA,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_S,
        activity: ActivityLog | None = None,
    ) -> None:
        self._correlator = correlator
        self._poller = poller
        self._downloads = downloads
        self._captcha = captcha
        self._device_serial = device_serial
        self._station_serial = station_serial
        self._seen: MutableSet[str] = seen if seen is not None else set()
        self._api_schema = api_schema
        self._connect_timeout = float(connect_timeout)
        self._activity = activity
        self._tasks: set[asyncio.Task[Any]] = set()
        self._driver_connected = False

    @property
    def seen(self) -> MutableSet[str]:
        return self._seen

    @property
    def driver_connected(self) -> bool:
        return self._driver_connected

    # ------------------------------ lifecycle ------------------------------
    def handle_open(self) -> None:
        """Replay the protocol handshake on a fresh connection."""

        logger.info("Connected; setting up API schema and driver")
        self._driver_connected = False
        self._spawn(self.handshake(), name="eufy-handshake")

    def handle_close(self, error: BaseException | None = None) -> None:
        """Tear down per-connection state before any reconnect happens."""

        self._driver_connected = False
        reason = f"Connection lost: {error}" if error else "Connection lost"
        self._correlator.fail_all(ConnectionLostError(reason))
        self._downloads.on_connection_lost()

    async def handshake(self) -> None:
        try:
            reply = await self._correlator.request(
                CMD_SET_API_SCHEMA, {"schemaVersion": self._api_schema}
            )
            if reply.get("success") is not True:
                logger.warning("set_api_schema failed: %s", reply.get("errorCode"))
            else:
                logger.info("Schema version set to %d", self._api_schema)
            await self._correlator.send(CMD_START_LISTENING)
            try:
                # Long timeout leaves room for a captcha to be solved.
                reply = await self._correlator.request(
                    CMD_DRIVER_CONNECT, timeout=self._connect_timeout
                )
            except RequestTimeoutError:
                logger.warning(
                    "driver.connect did not answer within %gs; firing initial query anyway",
                    self._connect_timeout,
                )
            else:
                if reply.get("success") is True:
                    self._driver_connected = True
                    logger.info("Driver connected; firing initial query")
                else:
                    logger.warning("driver.connect failed: %s", reply.get("errorCode"))
        except RequestTimeoutError as exc:
            logger.warning("Handshake step timed out: %s", exc)
        except ConnectionLostError as exc:
            logger.info("Handshake abandoned: %s", exc)
            return
        await self._poller.fire_query()
        await self._downloads.process_queue()

    async def wait_idle(self) -> None:
        """Wait until all background work spawned so far has finished."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._correlator.fail_all(ConnectionLostError("Bridge shutting down"))

    # ------------------------------ dispatch -------------------------------
    async def dispatch(self, message: object) -> str:
        """Route ``message`` and return the classification it received."""

        if self._correlator.resolve(message):
            return REPLY
        parsed = parse_message(message)
        self._log_message(message, parsed)

        if isinstance(parsed, CaptchaRequest):
            self._captcha.on_captcha_request(parsed.captcha_id, parsed.image)
            return CAPTCHA
        if isinstance(parsed, QueryResult):
            await self.handle_query_result(parsed)
            return QUERY_RESULT
        if isinstance(parsed, Detection):
            if parsed.serial != self._device_serial:
                return IGNORED
            self._spawn(self.handle_detection(parsed), name=f"eufy-poll-{parsed.kind}")
            return DETECTION
        if isinstance(parsed, (DownloadStarted, DownloadChunk, DownloadFinished)):
            return self._route_download(parsed)
        if isinstance(parsed, CommandResult):
            if not parsed.success:
                logger.error("Command failed (id=%s): %s", parsed.message_id, parsed.error)
                return FAILURE
            return IGNORED
        return IGNORED

    async def handle_query_result(self, result: QueryResult) -> None:
        logger.info("Database query returned %d event(s)", result.total)
        self._poller.on_query_result(result.records)
        if self._poller.polling:
            return
        # Initial discovery: everything already stored counts as seen and only
        # the most recent unseen recording is delivered.
        targets = [r for r in result.records if r.device_serial == self._device_serial]
        logger.info("Recordings for %s: %d", self._device_serial, len(targets))
        if not targets:
            return
        most_recent = max(targets, key=_recency)
        already_seen = most_recent.storage_path in self._seen
        self._seen.update(record.storage_path for record in targets)
        if already_seen:
            logger.debug("Most recent recording %s already handled", most_recent.storage_path)
            return
        logger.info("Most recent recording: %s", most_recent.storage_path)
        await self._downloads.enqueue([DownloadJob.from_record(most_recent)])

    async def handle_detection(self, detection: Detection) -> None:
        logger.info("%s detected on %s (state=%s)", detection.kind, detection.serial, detection.state)
        if self._activity is not None:
            self._activity.record(
                "detection",
                detection.kind,
                f"{detection.kind.capitalize()} detected; polling for the recording.",
                metadata={"serial": detection.serial},
            )
        records = await self._poller.poll_for_new_events(self._seen)
        if not records:
            return
        fresh = [record for record in records if record.storage_path not in self._seen]
        self._seen.update(record.storage_path for record in fresh)
        await self._downloads.enqueue(DownloadJob.from_record(record) for record in fresh)

    # ----------------------------- implementation --------------------------
    def _route_download(
        self, parsed: DownloadStarted | DownloadChunk | DownloadFinished
    ) -> str:
        serial = parsed.serial
        if serial is None:
            logger.debug("Ignoring download event without serial number")
            return IGNORED
        if isinstance(parsed, DownloadStarted):
            self._downloads.on_download_started(serial, parsed.metadata)
        elif isinstance(parsed, DownloadChunk):
            if parsed.stream == "video":
                self._downloads.on_video_data(serial, parsed.data)
            else:
                self._downloads.on_audio_data(serial, parsed.data)
        else:
            self._spawn(
                self._downloads.on_download_finished(serial), name=f"eufy-finish-{serial}"
            )
        return DOWNLOAD

    def _log_message(self, message: object, parsed: InboundMessage) -> None:
        name = event_name_of(message)
        if name in STREAMING_EVENTS:
            return
        if isinstance(parsed, OtherEvent):
            serial = parsed.serial
            if serial is not None and serial not in (self._device_serial, self._station_serial):
                return
            logger.debug("Event %r for %s", parsed.name, serial or "driver")
        elif name:
            logger.debug("Event %r", name)

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        loop = asyncio.get_running_loop()
        task = loop.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        try:
            task.result()
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Background task %s failed", task.get_name())


__all__ = ["EventDispatcher"]
