"""Tests for throttled progress logging."""

import asyncio
import logging

import pytest

from image_analyzer.models import ProgressEvent, ProgressKind
from image_analyzer.progress import ProgressRelay

DIGEST = "sha256:" + "ab" * 32


def reading(offset):
    return ProgressEvent(ProgressKind.READING, DIGEST, offset, 1000)


def progress_records(caplog):
    return [r for r in caplog.records if r.name == "image_analyzer.progress"]


@pytest.mark.asyncio
async def test_burst_is_throttled_to_one_record_per_interval(caplog):
    caplog.set_level(logging.INFO, logger="image_analyzer.progress")

    async with ProgressRelay(interval=1.0, maxsize=2048) as relay:
        for offset in range(1000):
            relay.emit(reading(offset))

    assert len(progress_records(caplog)) <= 2
    assert relay.records == len(progress_records(caplog))


@pytest.mark.asyncio
async def test_records_resume_after_interval(caplog):
    caplog.set_level(logging.INFO, logger="image_analyzer.progress")

    async with ProgressRelay(interval=0.05) as relay:
        relay.emit(reading(1))
        await asyncio.sleep(0.1)
        relay.emit(reading(2))

    assert relay.records == 2


@pytest.mark.asyncio
async def test_emit_never_blocks_and_drops_oldest():
    relay = ProgressRelay(maxsize=4)
    for offset in range(10):
        relay.emit(reading(offset))

    assert relay.dropped == 6
    pending = [relay._queue.get_nowait().offset for _ in range(4)]
    assert pending == [6, 7, 8, 9]


@pytest.mark.asyncio
async def test_close_drains_pending_events(caplog):
    caplog.set_level(logging.INFO, logger="image_analyzer.progress")
    relay = ProgressRelay(interval=0)
    for offset in range(5):
        relay.emit(reading(offset))

    relay.start()
    await relay.aclose()

    assert relay.records == 5
    assert relay._queue.empty()


@pytest.mark.asyncio
async def test_close_without_start_is_a_no_op():
    relay = ProgressRelay()
    await relay.aclose()
    await relay.aclose()


@pytest.mark.asyncio
async def test_records_carry_structured_fields(caplog):
    caplog.set_level(logging.INFO, logger="image_analyzer.progress")

    async with ProgressRelay() as relay:
        relay.emit(ProgressEvent(ProgressKind.DONE, DIGEST, 1000, 1000))

    (record,) = progress_records(caplog)
    assert record.artifact == DIGEST
    assert record.event == "done"
    assert record.offset == 1000
