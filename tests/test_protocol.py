"""Tests for eufy-security-ws message classification."""

from __future__ import annotations

import base64
from datetime import datetime, timezone

import pytest

from eufy_bridge.protocol import (
    CaptchaRequest,
    CommandResult,
    Detection,
    DownloadChunk,
    DownloadFinished,
    DownloadStarted,
    OtherEvent,
    QueryResult,
    RecordingRecord,
    StreamMetadata,
    UnknownMessage,
    build_command,
    decode_buffer,
    event_name_of,
    message_id_of,
    parse_message,
)


def _event(name: str, **fields: object) -> dict[str, object]:
    return {"type": "event", "event": {"event": name, **fields}}


def test_parse_result_messages() -> None:
    ok = parse_message({"type": "result", "messageId": "7", "success": True, "result": {"a": 1}})
    failed = parse_message({"type": "result", "messageId": "8", "success": False, "errorCode": "bad"})

    assert ok == CommandResult(message_id="7", success=True, result={"a": 1}, error=None)
    assert isinstance(failed, CommandResult)
    assert failed.success is False
    assert failed.error == "bad"


def test_parse_captcha_request() -> None:
    parsed = parse_message(_event("captcha request", captchaId="abc", captcha="data:image/png;base64,AAA"))

    assert parsed == CaptchaRequest(captcha_id="abc", image="data:image/png;base64,AAA")


def test_parse_query_result_skips_malformed_rows() -> None:
    rows = [
        {"device_sn": "DOOR", "storage_path": "/a.zxvideo", "cipher_id": "5", "start_time": "2024-05-01 10:00:00"},
        {"device_sn": "DOOR"},
        "garbage",
    ]
    parsed = parse_message(_event("database query by date", serialNumber="BASE", data=rows))

    assert isinstance(parsed, QueryResult)
    assert parsed.serial == "BASE"
    assert parsed.total == 3
    assert len(parsed.records) == 1
    record = parsed.records[0]
    assert record.device_serial == "DOOR"
    assert record.storage_path == "/a.zxvideo"
    assert record.cipher_id == 5
    assert record.started_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def test_parse_query_result_without_rows() -> None:
    parsed = parse_message(_event("database query by date", data=None))

    assert isinstance(parsed, QueryResult)
    assert parsed.records == ()
    assert parsed.total == 0


@pytest.mark.parametrize(
    "name, kind",
    [("motion detected", "motion"), ("person detected", "person"), ("rings", "ring")],
)
def test_parse_detection_events(name: str, kind: str) -> None:
    parsed = parse_message(_event(name, serialNumber="DOOR", state=True))

    assert parsed == Detection(kind=kind, serial="DOOR", state=True)


def test_parse_download_events() -> None:
    started = parse_message(
        _event(
            "download started",
            serialNumber="DOOR",
            metadata={"videoCodec": "H264", "videoFPS": 25, "audioCodec": "AAC"},
        )
    )
    video = parse_message(
        _event("download video data", serialNumber="DOOR", buffer={"type": "Buffer", "data": [1, 2, 3]})
    )
    audio = parse_message(_event("download audio data", serialNumber="DOOR", buffer={"data": [9]}))
    finished = parse_message(_event("download finished", serialNumber="DOOR"))

    assert isinstance(started, DownloadStarted)
    assert started.metadata.video_format == "h264"
    assert started.metadata.video_fps == 25
    assert started.metadata.audio_codec == "aac"
    assert video == DownloadChunk(serial="DOOR", stream="video", data=b"\x01\x02\x03")
    assert audio == DownloadChunk(serial="DOOR", stream="audio", data=b"\x09")
    assert finished == DownloadFinished(serial="DOOR")


def test_chunk_without_payload_is_not_a_chunk() -> None:
    parsed = parse_message(_event("download video data", serialNumber="DOOR"))

    assert isinstance(parsed, OtherEvent)


def test_unknown_payloads() -> None:
    assert isinstance(parse_message("hello"), UnknownMessage)
    assert isinstance(parse_message({"type": "version"}), UnknownMessage)
    assert isinstance(parse_message(_event("property changed", serialNumber="X")), OtherEvent)


def test_stream_metadata_defaults() -> None:
    metadata = StreamMetadata.from_payload({"videoCodec": "mjpeg", "videoFPS": 0})

    assert metadata.video_format == "hevc"
    assert metadata.video_fps == 15
    assert StreamMetadata.from_payload(None) == StreamMetadata()


def test_decode_buffer_shapes() -> None:
    encoded = base64.b64encode(b"abc").decode("ascii")

    assert decode_buffer([97, 98, 99]) == b"abc"
    assert decode_buffer({"type": "Buffer", "data": [97]}) == b"a"
    assert decode_buffer(encoded) == b"abc"
    assert decode_buffer(f"data:application/octet-stream;base64,{encoded}") == b"abc"
    assert decode_buffer([300]) is None
    assert decode_buffer("not base64!") is None
    assert decode_buffer(None) is None


def test_record_timestamps_accept_epoch_milliseconds() -> None:
    record = RecordingRecord.from_payload(
        {"device_sn": "D", "storage_path": "p", "start_time": 1714557600000}
    )

    assert record is not None
    assert record.start_time == "1714557600000"
    assert record.started_at == datetime.fromtimestamp(1714557600, tz=timezone.utc)


def test_build_command_and_accessors() -> None:
    command = build_command("3", "device.start_download", {"serialNumber": "D", "path": "/p"})

    assert command == {"messageId": "3", "command": "device.start_download", "serialNumber": "D", "path": "/p"}
    assert message_id_of(command) == "3"
    assert event_name_of(_event("rings")) == "rings"
    assert event_name_of({"type": "result"}) is None
    with pytest.raises(ValueError):
        build_command("4", "x", {"messageId": "5"})
