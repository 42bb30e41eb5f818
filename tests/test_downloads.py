"""Tests for the serial download queue and recording finalisation."""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path

from eufy_bridge.activity import ActivityLog
from eufy_bridge.downloads import DownloadJob, DownloadManager
from eufy_bridge.muxing import MuxError
from eufy_bridge.protocol import RecordingRecord, StreamMetadata


def run_async(coro):
    return asyncio.run(coro)


class FakeSender:
    def __init__(self) -> None:
        self.commands: list[tuple[str, dict[str, object]]] = []
        self.offline = False

    async def __call__(self, command: str, params=None) -> str | None:
        if self.offline:
            return None
        self.commands.append((command, dict(params or {})))
        return str(len(self.commands))


class FakeMuxer:
    def __init__(self, *, error: MuxError | None = None) -> None:
        self.error = error
        self.calls: list[dict[str, object]] = []

    def mux(self, video_path, audio_path, output_path, metadata=None):
        self.calls.append(
            {
                "video": video_path.read_bytes(),
                "audio": audio_path.read_bytes() if audio_path is not None else None,
                "metadata": metadata,
            }
        )
        if self.error is not None:
            raise self.error
        output_path.write_bytes(b"mp4:" + video_path.read_bytes())
        return output_path


class FakeDeliverer:
    def __init__(self, result: bool = True) -> None:
        self.result = result
        self.deliveries: list[dict[str, object]] = []

    async def deliver(self, artifact_path, *, device_serial, window_start=None, window_end=None):
        self.deliveries.append(
            {
                "path": artifact_path,
                "content": artifact_path.read_bytes(),
                "device_serial": device_serial,
                "window": (window_start, window_end),
            }
        )
        return self.result


def _job(name: str, device: str = "DOOR") -> DownloadJob:
    return DownloadJob(
        device_serial=device,
        storage_path=f"/media/{name}.zxvideo",
        cipher_id=7,
        window_start="2024-05-01 10:00:00",
        window_end="2024-05-01 10:00:30",
    )


def _manager(tmp_path: Path, **kwargs):
    sender = FakeSender()
    muxer = kwargs.pop("muxer", FakeMuxer())
    deliverer = kwargs.pop("deliverer", FakeDeliverer())
    manager = DownloadManager(sender, muxer, deliverer, output_dir=tmp_path, **kwargs)
    return manager, sender, muxer, deliverer


def test_job_from_record_and_output_name() -> None:
    record = RecordingRecord(
        device_serial="DOOR",
        storage_path="/mnt/data/20240501/clip1.zxvideo",
        cipher_id=3,
        start_time="a",
        end_time="b",
    )

    job = DownloadJob.from_record(record)

    assert job.output_name == "clip1"
    assert job.window_start == "a"
    assert job.command_params() == {
        "serialNumber": "DOOR",
        "path": "/mnt/data/20240501/clip1.zxvideo",
        "cipherId": 3,
    }
    assert DownloadJob(device_serial="DOOR", storage_path="/").output_name == "DOOR"


def test_downloads_run_one_at_a_time_in_order(tmp_path: Path) -> None:
    async def _test() -> None:
        activity = ActivityLog()
        manager, sender, muxer, deliverer = _manager(tmp_path, activity=activity)

        await manager.enqueue([_job("first"), _job("second")])

        assert [params["path"] for _, params in sender.commands] == ["/media/first.zxvideo"]
        assert sender.commands[0][0] == "device.start_download"
        assert manager.is_downloading is True
        assert [job.output_name for job in manager.queued] == ["second"]

        metadata = StreamMetadata(video_codec="h264", video_fps=20)
        manager.on_download_started("DOOR", metadata)
        manager.on_video_data("DOOR", b"v1")
        manager.on_audio_data("DOOR", b"a1")
        manager.on_video_data("DOOR", b"v2")
        manager.on_video_data("DOOR", b"v3")
        manager.on_audio_data("DOOR", b"a2")
        await manager.on_download_finished("DOOR")

        assert muxer.calls == [{"video": b"v1v2v3", "audio": b"a1a2", "metadata": metadata}]
        assert deliverer.deliveries[0]["content"] == b"mp4:v1v2v3"
        assert deliverer.deliveries[0]["window"] == ("2024-05-01 10:00:00", "2024-05-01 10:00:30")
        assert not (tmp_path / "first.video.raw").exists()
        assert not (tmp_path / "first.audio.raw").exists()
        assert (tmp_path / "first.mp4").exists()

        assert [params["path"] for _, params in sender.commands] == [
            "/media/first.zxvideo",
            "/media/second.zxvideo",
        ]
        assert manager.current_job is not None
        assert manager.current_job.output_name == "second"
        assert manager.queued == ()
        assert [outcome.delivered for outcome in manager.outcomes] == [True]
        assert activity.tail(1, category="download")[0].event == "delivered"

    run_async(_test())


def test_artifact_removed_when_not_retained(tmp_path: Path) -> None:
    async def _test() -> None:
        manager, _, _, deliverer = _manager(tmp_path, retain_artifacts=False)

        await manager.enqueue([_job("clip")])
        manager.on_download_started("DOOR", None)
        manager.on_video_data("DOOR", b"video")
        await manager.on_download_finished("DOOR")

        assert len(deliverer.deliveries) == 1
        assert list(tmp_path.iterdir()) == []
        assert manager.outcomes[0].artifact is None

    run_async(_test())


def test_download_without_video_is_not_delivered(tmp_path: Path) -> None:
    async def _test() -> None:
        manager, sender, muxer, deliverer = _manager(tmp_path)

        await manager.enqueue([_job("empty"), _job("next")])
        manager.on_download_started("DOOR", None)
        await manager.on_download_finished("DOOR")

        assert muxer.calls == []
        assert deliverer.deliveries == []
        assert manager.outcomes[0].error == "no video data received"
        assert sender.commands[-1][1]["path"] == "/media/next.zxvideo"

    run_async(_test())


def test_mux_failure_skips_delivery_and_advances(tmp_path: Path) -> None:
    async def _test() -> None:
        muxer = FakeMuxer(error=MuxError("ffmpeg exited with code 1"))
        manager, sender, _, deliverer = _manager(tmp_path, muxer=muxer)

        await manager.enqueue([_job("broken"), _job("next")])
        manager.on_video_data("DOOR", b"x")
        await manager.on_download_finished("DOOR")

        assert deliverer.deliveries == []
        assert manager.outcomes[0].delivered is False
        assert "ffmpeg" in (manager.outcomes[0].error or "")
        assert not (tmp_path / "broken.video.raw").exists()
        assert manager.queued == ()
        assert [params["path"] for _, params in sender.commands].count("/media/broken.zxvideo") == 1
        assert sender.commands[-1][1]["path"] == "/media/next.zxvideo"

    run_async(_test())


def test_failed_delivery_is_recorded(tmp_path: Path) -> None:
    async def _test() -> None:
        manager, _, _, _ = _manager(tmp_path, deliverer=FakeDeliverer(result=False))

        await manager.enqueue([_job("clip")])
        manager.on_video_data("DOOR", b"x")
        await manager.on_download_finished("DOOR")

        assert manager.outcomes[0].error == "webhook delivery failed"
        assert manager.is_downloading is False

    run_async(_test())


def test_unsent_start_keeps_job_queued(tmp_path: Path) -> None:
    async def _test() -> None:
        manager, sender, _, _ = _manager(tmp_path)
        sender.offline = True

        await manager.enqueue([_job("clip")])

        assert manager.is_downloading is False
        assert [job.output_name for job in manager.queued] == ["clip"]

        sender.offline = False
        await manager.process_queue()
        assert manager.is_downloading is True
        assert len(sender.commands) == 1

    run_async(_test())


def test_connection_loss_drops_active_download(tmp_path: Path) -> None:
    async def _test() -> None:
        manager, sender, muxer, _ = _manager(tmp_path)

        await manager.enqueue([_job("clip"), _job("next")])
        manager.on_video_data("DOOR", b"partial")
        manager.on_connection_lost()

        assert manager.is_downloading is False
        assert manager.session_for("DOOR") is None
        assert manager.outcomes[0].error == "connection lost"
        manager.on_video_data("DOOR", b"late")
        assert manager.session_for("DOOR") is None

        await manager.process_queue()
        assert sender.commands[-1][1]["path"] == "/media/next.zxvideo"
        assert muxer.calls == []

    run_async(_test())


def test_finish_for_other_device_keeps_current_download(tmp_path: Path) -> None:
    async def _test() -> None:
        manager, sender, _, _ = _manager(tmp_path)

        await manager.enqueue([_job("clip"), _job("next")])
        await manager.on_download_finished("CHIME")

        assert manager.current_job is not None
        assert manager.current_job.output_name == "clip"
        assert len(sender.commands) == 1

    run_async(_test())


class BlockingMuxer(FakeMuxer):
    """Hold the worker thread inside ``mux`` until released."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def mux(self, video_path, audio_path, output_path, metadata=None):
        self.entered.set()
        self.release.wait(timeout=5)
        return super().mux(video_path, audio_path, output_path, metadata)


async def _wait_for_mux(muxer: BlockingMuxer) -> None:
    for _ in range(500):
        if muxer.entered.is_set():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("mux never started")


def test_connection_loss_during_mux_keeps_single_download(tmp_path: Path) -> None:
    async def _test() -> None:
        muxer = BlockingMuxer()
        manager, sender, _, deliverer = _manager(tmp_path, muxer=muxer)

        await manager.enqueue([_job("a"), _job("b"), _job("c")])
        manager.on_video_data("DOOR", b"a-chunk")
        finishing = asyncio.create_task(manager.on_download_finished("DOOR"))
        try:
            await _wait_for_mux(muxer)
            manager.on_connection_lost()
            await manager.process_queue()

            assert [params["path"] for _, params in sender.commands] == ["/media/a.zxvideo"]
            assert manager.current_job is not None
            assert manager.current_job.output_name == "a"
        finally:
            muxer.release.set()
        await finishing

        assert [params["path"] for _, params in sender.commands] == [
            "/media/a.zxvideo",
            "/media/b.zxvideo",
        ]
        assert manager.current_job is not None
        assert manager.current_job.output_name == "b"
        assert [(o.job.output_name, o.delivered, o.error) for o in manager.outcomes] == [
            ("a", True, None)
        ]
        assert len(deliverer.deliveries) == 1

    run_async(_test())


def test_duplicate_finish_during_mux_does_not_start_next(tmp_path: Path) -> None:
    async def _test() -> None:
        muxer = BlockingMuxer()
        manager, sender, _, _ = _manager(tmp_path, muxer=muxer)

        await manager.enqueue([_job("a"), _job("b"), _job("c")])
        manager.on_video_data("DOOR", b"a-chunk")
        finishing = asyncio.create_task(manager.on_download_finished("DOOR"))
        try:
            await _wait_for_mux(muxer)
            await manager.on_download_finished("DOOR")

            assert len(sender.commands) == 1
        finally:
            muxer.release.set()
        await finishing

        assert [params["path"] for _, params in sender.commands] == [
            "/media/a.zxvideo",
            "/media/b.zxvideo",
        ]
        manager.on_video_data("DOOR", b"b-chunk")
        session = manager.session_for("DOOR")
        assert session is not None
        assert session.video_chunks == [b"b-chunk"]
        assert [job.output_name for job in manager.queued] == ["c"]

    run_async(_test())
