"""Tests for the back-off database poller."""

from __future__ import annotations

import asyncio
from datetime import datetime

from eufy_bridge.poller import QueryPoller
from eufy_bridge.protocol import RecordingRecord


def run_async(coro):
    return asyncio.run(coro)


def _record(path: str, device: str = "DOOR") -> RecordingRecord:
    return RecordingRecord(device_serial=device, storage_path=path)


class ScriptedStation:
    """Answer each query with the next scripted batch of records."""

    def __init__(self, batches: list[list[RecordingRecord]] | None = None) -> None:
        self.batches = list(batches or [])
        self.commands: list[tuple[str, dict[str, object]]] = []
        self.poller: QueryPoller | None = None

    async def send(self, command: str, params=None) -> str:
        self.commands.append((command, dict(params or {})))
        if self.batches and self.poller is not None:
            batch = self.batches.pop(0)
            asyncio.get_running_loop().call_soon(self.poller.on_query_result, batch)
        return str(len(self.commands))


def _poller(station: ScriptedStation, delays=(5.0, 10.0, 20.0), timeout: float = 1.0):
    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    poller = QueryPoller(
        station.send,
        station_serial="BASE",
        device_serial="DOOR",
        backoff_delays=delays,
        response_timeout=timeout,
        sleep=fake_sleep,
        clock=lambda: datetime(2024, 12, 31, 23, 59),
    )
    station.poller = poller
    return poller, sleeps


def test_poll_backs_off_until_unseen_recording_appears() -> None:
    async def _test() -> None:
        station = ScriptedStation(
            [
                [_record("/old")],
                [_record("/other", device="CHIME")],
                [_record("/old"), _record("/new")],
            ]
        )
        poller, sleeps = _poller(station)

        fresh = await poller.poll_for_new_events({"/old"})

        assert [record.storage_path for record in fresh] == ["/new"]
        assert sleeps == [5.0, 10.0, 20.0]
        assert len(station.commands) == 3
        assert poller.polling is False
        assert poller.waiting is False

    run_async(_test())


def test_poll_gives_up_after_schedule() -> None:
    async def _test() -> None:
        station = ScriptedStation([[_record("/old")], [_record("/old")]])
        poller, sleeps = _poller(station, delays=(1.0, 2.0))

        assert await poller.poll_for_new_events({"/old"}) == []
        assert sleeps == [1.0, 2.0]
        assert poller.polling is False

    run_async(_test())


def test_unanswered_query_times_out() -> None:
    async def _test() -> None:
        station = ScriptedStation()
        poller, _ = _poller(station, delays=(1.0,), timeout=0.01)

        assert await poller.poll_for_new_events(set()) == []
        assert len(station.commands) == 1
        assert poller.waiting is False

    run_async(_test())


def test_concurrent_poll_is_skipped() -> None:
    async def _test() -> None:
        gate = asyncio.Event()
        station = ScriptedStation([[_record("/new")]])

        async def gated_sleep(delay: float) -> None:
            await gate.wait()

        poller = QueryPoller(
            station.send,
            station_serial="BASE",
            device_serial="DOOR",
            backoff_delays=(1.0,),
            response_timeout=1.0,
            sleep=gated_sleep,
        )
        station.poller = poller
        first = asyncio.create_task(poller.poll_for_new_events(set()))
        await asyncio.sleep(0)
        assert poller.polling is True

        assert await poller.poll_for_new_events(set()) == []
        assert station.commands == []

        gate.set()
        assert [record.storage_path for record in await first] == ["/new"]

    run_async(_test())


def test_result_without_waiter_is_not_claimed() -> None:
    poller, _ = _poller(ScriptedStation())

    assert poller.on_query_result([_record("/a")]) is False


def test_query_parameters_span_today_and_tomorrow() -> None:
    async def _test() -> None:
        station = ScriptedStation()
        poller, _ = _poller(station)

        await poller.fire_query()

        assert station.commands == [
            (
                "station.database_query_by_date",
                {
                    "serialNumber": "BASE",
                    "serialNumbers": [],
                    "startDate": "20241231",
                    "endDate": "20250101",
                    "eventType": 0,
                    "detectionType": 0,
                    "storageType": 0,
                },
            )
        ]

    run_async(_test())
