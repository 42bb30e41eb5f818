"""Serial download queue, chunk buffering and delivery of recordings."""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Awaitable, Callable, Deque, Iterable, Mapping, Protocol

from .activity import ActivityLog
from .muxing import MuxError
from .protocol import CMD_START_DOWNLOAD, RecordingRecord, StreamMetadata

logger = logging.getLogger(__name__)

SendCommand = Callable[[str, Mapping[str, Any] | None], Awaitable[object]]

_PROGRESS_INTERVAL = 200


class _Muxer(Protocol):
    def mux(
        self,
        video_path: Path,
        audio_path: Path | None,
        output_path: Path,
        metadata: StreamMetadata | None = None,
    ) -> Path:  # pragma: no cover - protocol
        ...


class _Deliverer(Protocol):
    async def deliver(
        self,
        artifact_path: Path,
        *,
        device_serial: str,
        window_start: str | None = None,
        window_end: str | None = None,
    ) -> bool:  # pragma: no cover - protocol
        ...


def _output_name(storage_path: str, fallback: str) -> str:
    name = PurePosixPath(storage_path.replace("\\", "/")).name
    if name.endswith(".zxvideo"):
        name = name[: -len(".zxvideo")]
    name = name.strip().strip(".")
    return name or fallback


@dataclass(frozen=True, slots=True)
class DownloadJob:
    """A recording waiting to be downloaded from the station."""

    device_serial: str
    storage_path: str
    cipher_id: int | None = None
    window_start: str | None = None
    window_end: str | None = None
    output_name: str = ""

    def __post_init__(self) -> None:
        if not self.output_name:
            object.__setattr__(
                self, "output_name", _output_name(self.storage_path, self.device_serial)
            )

    @classmethod
    def from_record(cls, record: RecordingRecord) -> "DownloadJob":
        return cls(
            device_serial=record.device_serial,
            storage_path=record.storage_path,
            cipher_id=record.cipher_id,
            window_start=record.start_time,
            window_end=record.end_time,
        )

    def command_params(self) -> dict[str, Any]:
        return {
            "serialNumber": self.device_serial,
            "path": self.storage_path,
            "cipherId": self.cipher_id,
        }


@dataclass(slots=True)
class DownloadSession:
    """Chunks collected for the download currently in flight."""

    device_serial: str
    video_chunks: list[bytes] = field(default_factory=list)
    audio_chunks: list[bytes] = field(default_factory=list)
    metadata: StreamMetadata | None = None

    @property
    def chunk_count(self) -> int:
        return len(self.video_chunks) + len(self.audio_chunks)

    def video_bytes(self) -> bytes:
        return b"".join(self.video_chunks)

    def audio_bytes(self) -> bytes:
        return b"".join(self.audio_chunks)


@dataclass(slots=True)
class DownloadOutcome:
    """Result of one finished download, kept for status reporting."""

    job: DownloadJob
    delivered: bool
    artifact: Path | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "storage_path": self.job.storage_path,
            "device_serial": self.job.device_serial,
            "delivered": self.delivered,
            "artifact": str(self.artifact) if self.artifact else None,
            "error": self.error,
        }


class DownloadManager:
    """Serialise downloads and turn collected chunks into delivered MP4s.

    The station permits one download at a time, so jobs wait in a FIFO queue
    and the next ``device.start_download`` is only issued after the previous
    job's ``download finished`` event has been handled.
    """

    def __init__(
        self,
        send: SendCommand,
        muxer: _Muxer,
        deliverer: _Deliverer,
        *,
        output_dir: Path | str,
        retain_artifacts: bool = True,
        activity: ActivityLog | None = None,
        history_size: int = 50,
    ) -> None:
        self._send = send
        self._muxer = muxer
        self._deliverer = deliverer
        self._output_dir = Path(output_dir)
        self._retain_artifacts = retain_artifacts
        self._activity = activity
        self._queue: Deque[DownloadJob] = deque()
        self._current: DownloadJob | None = None
        self._finalising: DownloadJob | None = None
        self._sessions: dict[str, DownloadSession] = {}
        self._outcomes: Deque[DownloadOutcome] = deque(maxlen=history_size)

    # ------------------------------ properties -----------------------------
    @property
    def is_downloading(self) -> bool:
        return self._current is not None

    @property
    def current_job(self) -> DownloadJob | None:
        return self._current

    @property
    def queued(self) -> tuple[DownloadJob, ...]:
        return tuple(self._queue)

    @property
    def outcomes(self) -> list[DownloadOutcome]:
        return list(self._outcomes)

    def session_for(self, device_serial: str) -> DownloadSession | None:
        return self._sessions.get(device_serial)

    # ------------------------------ queue ----------------------------------
    async def enqueue(self, jobs: Iterable[DownloadJob]) -> None:
        for job in jobs:
            logger.info("Queued download: %s", job.storage_path)
            self._queue.append(job)
        await self.process_queue()

    async def process_queue(self) -> None:
        """Start the next queued download if nothing is in flight."""

        if self._current is not None or not self._queue:
            return
        job = self._queue.popleft()
        self._current = job
        self._sessions[job.device_serial] = DownloadSession(device_serial=job.device_serial)
        logger.info("start_download: %s", job.storage_path)
        sent = await self._send(CMD_START_DOWNLOAD, job.command_params())
        if sent is None and self._current is job:
            # Not connected; the job is resumed once the handshake completes.
            logger.warning("start_download not sent; keeping %s queued", job.storage_path)
            self._sessions.pop(job.device_serial, None)
            self._current = None
            self._queue.appendleft(job)

    def on_connection_lost(self) -> None:
        """Drop the in-flight job; its chunks cannot resume on a new connection.

        A job that is already being finalised has all its data and is kept.
        """

        job = self._current
        if job is None or job is self._finalising:
            return
        self._sessions.pop(job.device_serial, None)
        self._current = None
        logger.warning("Connection lost during download of %s; dropping it", job.storage_path)
        self._record_outcome(DownloadOutcome(job=job, delivered=False, error="connection lost"))

    # ------------------------------ chunk events ---------------------------
    def on_download_started(self, device_serial: str, metadata: StreamMetadata | None) -> None:
        session = self._sessions.get(device_serial)
        if session is None:
            logger.debug("Ignoring download start for inactive device %s", device_serial)
            return
        logger.info("Download started for %s", device_serial)
        session.video_chunks = []
        session.audio_chunks = []
        session.metadata = metadata or StreamMetadata()

    def on_video_data(self, device_serial: str, data: bytes) -> None:
        session = self._sessions.get(device_serial)
        if session is None:
            return
        session.video_chunks.append(bytes(data))
        self._log_progress(session)

    def on_audio_data(self, device_serial: str, data: bytes) -> None:
        session = self._sessions.get(device_serial)
        if session is None:
            return
        session.audio_chunks.append(bytes(data))
        self._log_progress(session)

    # ------------------------------ finalisation ---------------------------
    async def on_download_finished(self, device_serial: str) -> None:
        """Mux, deliver and clean up, then advance the queue."""

        session = self._sessions.pop(device_serial, None)
        job = self._current
        if session is None:
            logger.warning("Download finished for unknown device %s", device_serial)
            if (
                job is not None
                and job is not self._finalising
                and job.device_serial not in self._sessions
            ):
                self._current = None
            await self.process_queue()
            return
        if job is None or job.device_serial != device_serial:
            job = DownloadJob(device_serial=device_serial, storage_path=device_serial)
        # Muxing yields the loop; only this job may be cleared when it completes.
        self._finalising = job
        try:
            outcome = await self._finalise(job, session)
        except Exception as exc:
            logger.exception("Failed to finalise download %s", job.storage_path)
            outcome = DownloadOutcome(job=job, delivered=False, error=str(exc))
        finally:
            self._finalising = None
            if self._current is job:
                self._current = None
        self._record_outcome(outcome)
        if self._current is None:
            await self.process_queue()

    async def _finalise(self, job: DownloadJob, session: DownloadSession) -> DownloadOutcome:
        self._output_dir.mkdir(parents=True, exist_ok=True)
        video_raw = self._output_dir / f"{job.output_name}.video.raw"
        audio_raw = self._output_dir / f"{job.output_name}.audio.raw"
        mp4_path = self._output_dir / f"{job.output_name}.mp4"
        written: list[Path] = []
        artifact: Path | None = None
        try:
            video = session.video_bytes()
            if not video:
                return DownloadOutcome(job=job, delivered=False, error="no video data received")
            video_raw.write_bytes(video)
            written.append(video_raw)
            logger.info(
                "Video: %d bytes (%d chunks) -> %s",
                len(video),
                len(session.video_chunks),
                video_raw,
            )
            audio_input: Path | None = None
            if session.audio_chunks:
                audio = session.audio_bytes()
                audio_raw.write_bytes(audio)
                written.append(audio_raw)
                audio_input = audio_raw
                logger.info(
                    "Audio: %d bytes (%d chunks) -> %s",
                    len(audio),
                    len(session.audio_chunks),
                    audio_raw,
                )
            try:
                artifact = await asyncio.to_thread(
                    self._muxer.mux,
                    video_raw,
                    audio_input,
                    mp4_path,
                    session.metadata or StreamMetadata(),
                )
            except MuxError as exc:
                logger.error("Failed to convert %s: %s", job.storage_path, exc)
                return DownloadOutcome(job=job, delivered=False, error=str(exc))
            delivered = await self._deliverer.deliver(
                artifact,
                device_serial=job.device_serial,
                window_start=job.window_start,
                window_end=job.window_end,
            )
            return DownloadOutcome(
                job=job,
                delivered=delivered,
                artifact=artifact if self._retain_artifacts else None,
                error=None if delivered else "webhook delivery failed",
            )
        finally:
            for path in written:
                try:
                    path.unlink(missing_ok=True)
                except OSError as exc:
                    logger.warning("Unable to remove %s: %s", path, exc)
            if artifact is not None and not self._retain_artifacts:
                try:
                    artifact.unlink(missing_ok=True)
                except OSError as exc:
                    logger.warning("Unable to remove %s: %s", artifact, exc)

    # ----------------------------- implementation --------------------------
    def _record_outcome(self, outcome: DownloadOutcome) -> None:
        self._outcomes.append(outcome)
        if outcome.delivered:
            logger.info("Delivered %s", outcome.job.storage_path)
        else:
            logger.warning("Recording %s not delivered: %s", outcome.job.storage_path, outcome.error)
        if self._activity is not None:
            self._activity.record(
                "download",
                "delivered" if outcome.delivered else "failed",
                f"{outcome.job.output_name}: "
                + ("delivered to webhook" if outcome.delivered else (outcome.error or "failed")),
                metadata={
                    "storage_path": outcome.job.storage_path,
                    "device_serial": outcome.job.device_serial,
                },
            )

    @staticmethod
    def _log_progress(session: DownloadSession) -> None:
        if session.chunk_count % _PROGRESS_INTERVAL == 0:
            logger.debug(
                "%s: %dv / %da chunks",
                session.device_serial,
                len(session.video_chunks),
                len(session.audio_chunks),
            )


__all__ = ["DownloadJob", "DownloadManager", "DownloadOutcome", "DownloadSession"]
