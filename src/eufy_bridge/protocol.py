"""Normalised view of the eufy-security-ws message protocol.

The vendor payloads are loosely typed and vary between schema versions. All
field probing happens in :func:`parse_message`; the rest of the bridge works
with the small dataclasses defined here.
"""
from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Union

logger = logging.getLogger(__name__)

# Commands
CMD_SET_API_SCHEMA = "set_api_schema"
CMD_START_LISTENING = "start_listening"
CMD_DRIVER_CONNECT = "driver.connect"
CMD_DATABASE_QUERY_BY_DATE = "station.database_query_by_date"
CMD_START_DOWNLOAD = "device.start_download"
CMD_SET_CAPTCHA = "driver.set_captcha"

# Events
EVT_CAPTCHA_REQUEST = "captcha request"
EVT_DATABASE_QUERY_BY_DATE = "database query by date"
EVT_MOTION_DETECTED = "motion detected"
EVT_PERSON_DETECTED = "person detected"
EVT_RINGS = "rings"
EVT_DOWNLOAD_STARTED = "download started"
EVT_DOWNLOAD_VIDEO_DATA = "download video data"
EVT_DOWNLOAD_AUDIO_DATA = "download audio data"
EVT_DOWNLOAD_FINISHED = "download finished"

DETECTION_EVENTS: dict[str, str] = {
    EVT_MOTION_DETECTED: "motion",
    EVT_PERSON_DETECTED: "person",
    EVT_RINGS: "ring",
}

STREAMING_EVENTS = frozenset({EVT_DOWNLOAD_VIDEO_DATA, EVT_DOWNLOAD_AUDIO_DATA})

DEFAULT_VIDEO_CODEC = "hevc"
DEFAULT_VIDEO_FPS = 15

_VIDEO_CODEC_ALIASES = {
    "h264": "h264",
    "avc": "h264",
    "h265": "hevc",
    "hevc": "hevc",
}


def _text(value: object) -> str | None:
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _timestamp(value: object) -> datetime | None:
    """Parse the assorted timestamp shapes used in database rows."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = float(value)
        if seconds > 1e11:  # milliseconds
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            return None
        if cleaned.isdigit():
            return _timestamp(int(cleaned))
        try:
            parsed = datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
        except ValueError:
            try:
                parsed = datetime.strptime(cleaned, "%Y-%m-%d %H:%M:%S")
            except ValueError:
                return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def decode_buffer(value: object) -> bytes | None:
    """Return the bytes carried by a serialised Node ``Buffer`` payload."""

    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        cleaned = value.strip()
        if cleaned.startswith("data:"):
            cleaned = cleaned.split(",", 1)[-1]
        if not cleaned:
            return None
        try:
            return base64.b64decode(cleaned, validate=True)
        except (binascii.Error, ValueError):
            return None
    if isinstance(value, Mapping):
        return decode_buffer(value.get("data"))
    if isinstance(value, list):
        try:
            return bytes(value)
        except (TypeError, ValueError):
            return None
    return None


@dataclass(frozen=True, slots=True)
class RecordingRecord:
    """A single row returned by the station database query."""

    device_serial: str
    storage_path: str
    cipher_id: int | None = None
    start_time: str | None = None
    end_time: str | None = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def started_at(self) -> datetime | None:
        return _timestamp(self.start_time)

    @classmethod
    def from_payload(cls, payload: object) -> "RecordingRecord | None":
        if not isinstance(payload, Mapping):
            return None
        device_serial = _text(payload.get("device_sn"))
        storage_path = _text(payload.get("storage_path"))
        if device_serial is None or storage_path is None:
            return None
        start = payload.get("start_time")
        end = payload.get("end_time")
        return cls(
            device_serial=device_serial,
            storage_path=storage_path,
            cipher_id=_int(payload.get("cipher_id")),
            start_time=str(start) if start is not None else None,
            end_time=str(end) if end is not None else None,
            raw=dict(payload),
        )


@dataclass(frozen=True, slots=True)
class StreamMetadata:
    """Stream parameters announced by the ``download started`` event."""

    video_codec: str = DEFAULT_VIDEO_CODEC
    video_fps: int = DEFAULT_VIDEO_FPS
    audio_codec: str | None = None
    video_width: int | None = None
    video_height: int | None = None

    @property
    def video_format(self) -> str:
        """Demuxer name ffmpeg expects for the raw elementary stream."""

        return "h264" if self.video_codec == "h264" else "hevc"

    @classmethod
    def from_payload(cls, payload: object) -> "StreamMetadata":
        if not isinstance(payload, Mapping):
            return cls()
        codec_raw = _text(payload.get("videoCodec"))
        codec = DEFAULT_VIDEO_CODEC
        if codec_raw is not None:
            codec = _VIDEO_CODEC_ALIASES.get(codec_raw.lower(), DEFAULT_VIDEO_CODEC)
        fps = _int(payload.get("videoFPS"))
        if fps is None or fps <= 0:
            fps = DEFAULT_VIDEO_FPS
        audio = _text(payload.get("audioCodec"))
        return cls(
            video_codec=codec,
            video_fps=fps,
            audio_codec=audio.lower() if audio else None,
            video_width=_int(payload.get("videoWidth")),
            video_height=_int(payload.get("videoHeight")),
        )


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Reply to a command, correlated or not."""

    message_id: str | None
    success: bool
    result: object = None
    error: object = None


@dataclass(frozen=True, slots=True)
class CaptchaRequest:
    captcha_id: str | None
    image: str | None


@dataclass(frozen=True, slots=True)
class QueryResult:
    serial: str | None
    records: tuple[RecordingRecord, ...]
    total: int


@dataclass(frozen=True, slots=True)
class Detection:
    kind: str
    serial: str | None
    state: object = None


@dataclass(frozen=True, slots=True)
class DownloadStarted:
    serial: str | None
    metadata: StreamMetadata


@dataclass(frozen=True, slots=True)
class DownloadChunk:
    serial: str | None
    stream: str
    data: bytes


@dataclass(frozen=True, slots=True)
class DownloadFinished:
    serial: str | None


@dataclass(frozen=True, slots=True)
class OtherEvent:
    name: str
    serial: str | None
    payload: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class UnknownMessage:
    payload: object = field(default=None, compare=False, repr=False)


InboundMessage = Union[
    CommandResult,
    CaptchaRequest,
    QueryResult,
    Detection,
    DownloadStarted,
    DownloadChunk,
    DownloadFinished,
    OtherEvent,
    UnknownMessage,
]


def message_id_of(message: object) -> str | None:
    """Return the correlation id carried by ``message`` if present."""

    if not isinstance(message, Mapping):
        return None
    return _text(message.get("messageId"))


def event_name_of(message: object) -> str | None:
    if not isinstance(message, Mapping):
        return None
    event = message.get("event")
    if isinstance(event, Mapping):
        return _text(event.get("event"))
    return None


def _parse_event(event: Mapping[str, Any]) -> InboundMessage:
    name = _text(event.get("event")) or ""
    serial = _text(event.get("serialNumber"))

    if name == EVT_CAPTCHA_REQUEST:
        return CaptchaRequest(
            captcha_id=_text(event.get("captchaId")),
            image=_text(event.get("captcha")),
        )
    if name == EVT_DATABASE_QUERY_BY_DATE:
        rows = event.get("data")
        if not isinstance(rows, list):
            rows = []
        records = []
        for row in rows:
            record = RecordingRecord.from_payload(row)
            if record is None:
                logger.debug("Skipping malformed database row: %r", row)
                continue
            records.append(record)
        return QueryResult(serial=serial, records=tuple(records), total=len(rows))
    if name in DETECTION_EVENTS:
        return Detection(kind=DETECTION_EVENTS[name], serial=serial, state=event.get("state"))
    if name == EVT_DOWNLOAD_STARTED:
        return DownloadStarted(
            serial=serial,
            metadata=StreamMetadata.from_payload(event.get("metadata")),
        )
    if name in STREAMING_EVENTS:
        data = decode_buffer(event.get("buffer"))
        if data is None:
            return OtherEvent(name=name, serial=serial, payload=event)
        stream = "video" if name == EVT_DOWNLOAD_VIDEO_DATA else "audio"
        return DownloadChunk(serial=serial, stream=stream, data=data)
    if name == EVT_DOWNLOAD_FINISHED:
        return DownloadFinished(serial=serial)
    return OtherEvent(name=name, serial=serial, payload=event)


def parse_message(message: object) -> InboundMessage:
    """Classify a decoded JSON message into one of the normalised types."""

    if not isinstance(message, Mapping):
        return UnknownMessage(message)
    msg_type = message.get("type")
    event = message.get("event")
    if msg_type == "event" or (msg_type is None and isinstance(event, Mapping)):
        if isinstance(event, Mapping):
            return _parse_event(event)
        return UnknownMessage(message)
    if msg_type == "result" or "success" in message:
        success = message.get("success") is True
        return CommandResult(
            message_id=message_id_of(message),
            success=success,
            result=message.get("result"),
            error=None if success else message.get("errorCode", message.get("error")),
        )
    return UnknownMessage(message)


def build_command(message_id: str, command: str, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"messageId": message_id, "command": command}
    if params:
        for key, value in params.items():
            if key in ("messageId", "command"):
                raise ValueError(f"Command parameter {key!r} is reserved")
            payload[key] = value
    return payload


__all__ = [
    "CMD_DATABASE_QUERY_BY_DATE",
    "CMD_DRIVER_CONNECT",
    "CMD_SET_API_SCHEMA",
    "CMD_SET_CAPTCHA",
    "CMD_START_DOWNLOAD",
    "CMD_START_LISTENING",
    "CaptchaRequest",
    "CommandResult",
    "Detection",
    "DownloadChunk",
    "DownloadFinished",
    "DownloadStarted",
    "InboundMessage",
    "OtherEvent",
    "QueryResult",
    "RecordingRecord",
    "StreamMetadata",
    "UnknownMessage",
    "build_command",
    "decode_buffer",
    "event_name_of",
    "message_id_of",
    "parse_message",
]
