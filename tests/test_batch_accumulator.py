"""Tests for workers.batch.BatchAccumulator.

Timers run on the fake scheduler, so flush-by-timeout is driven with
scheduler.advance() instead of real sleeps.
"""

from __future__ import annotations

import asyncio
from typing import List

import pytest

from placeflow.core.models import BatchItem
from placeflow.workers.batch import BatchAccumulator, BatchEvent, BatchEventType, chunked
from tests.helpers import FakeScheduler


def item(n: int) -> BatchItem:
    return BatchItem(id=f"item-{n}", payload={"n": n})


class Recorder:
    def __init__(self) -> None:
        self.processed: List[str] = []

    async def __call__(self, batch_item: BatchItem) -> str:
        self.processed.append(batch_item.id)
        return batch_item.id.upper()


def build(scheduler: FakeScheduler, processor, **kwargs) -> BatchAccumulator:
    options = {"batch_size": 3, "batch_timeout": 2.0, "max_concurrent": 5}
    options.update(kwargs)
    return BatchAccumulator(processor, scheduler, **options)


class TestSizeFlush:
    @pytest.mark.asyncio
    async def test_full_batch_flushes_immediately(self, scheduler: FakeScheduler) -> None:
        recorder = Recorder()
        accumulator = build(scheduler, recorder)

        for n in range(3):
            await accumulator.add_to_batch(item(n))

        assert recorder.processed == ["item-0", "item-1", "item-2"]
        assert accumulator.get_current_batch_size() == 0
        assert accumulator.has_pending_timer() is False
        assert scheduler.pending == []

    @pytest.mark.asyncio
    async def test_partial_batch_waits(self, scheduler: FakeScheduler) -> None:
        recorder = Recorder()
        accumulator = build(scheduler, recorder)

        await accumulator.add_to_batch(item(0))
        await accumulator.add_to_batch(item(1))

        assert recorder.processed == []
        assert accumulator.get_current_batch_size() == 2
        assert accumulator.has_pending_timer() is True
        assert len(scheduler.pending) == 1


class TestTimeoutFlush:
    @pytest.mark.asyncio
    async def test_timeout_triggers_exactly_one_flush(self, scheduler: FakeScheduler) -> None:
        recorder = Recorder()
        accumulator = build(scheduler, recorder, batch_size=10)
        flushes: List[int] = []
        original_flush = accumulator.flush

        async def counting_flush() -> None:
            flushes.append(accumulator.get_current_batch_size())
            await original_flush()

        accumulator.flush = counting_flush  # type: ignore[method-assign]

        await accumulator.add_to_batch(item(0))
        await accumulator.add_to_batch(item(1))
        await scheduler.advance(1.9)
        assert recorder.processed == []

        await scheduler.advance(0.1)

        assert recorder.processed == ["item-0", "item-1"]
        assert flushes == [2]
        assert accumulator.has_pending_timer() is False

        await scheduler.advance(10)
        assert flushes == [2]

    @pytest.mark.asyncio
    async def test_timer_is_armed_by_first_item_only(self, scheduler: FakeScheduler) -> None:
        accumulator = build(scheduler, Recorder(), batch_size=10)

        await accumulator.add_to_batch(item(0))
        await scheduler.advance(1.5)
        await accumulator.add_to_batch(item(1))

        assert len(scheduler.pending) == 1
        assert scheduler.pending[0].when == pytest.approx(scheduler.now() + 0.5)

    @pytest.mark.asyncio
    async def test_size_flush_cancels_timer(self, scheduler: FakeScheduler) -> None:
        recorder = Recorder()
        accumulator = build(scheduler, recorder)

        await accumulator.add_to_batch(item(0))
        assert accumulator.has_pending_timer() is True
        await accumulator.add_to_batch(item(1))
        await accumulator.add_to_batch(item(2))

        assert scheduler.pending == []
        await scheduler.advance(5)
        assert recorder.processed == ["item-0", "item-1", "item-2"]


class TestFlush:
    @pytest.mark.asyncio
    async def test_empty_flush_is_a_noop(self, scheduler: FakeScheduler) -> None:
        recorder = Recorder()
        events: List[BatchEvent] = []
        accumulator = build(scheduler, recorder)
        accumulator.add_listener(events.append)

        await accumulator.flush()
        await accumulator.flush()

        assert recorder.processed == []
        assert events == []
        assert accumulator.is_processing() is False

    @pytest.mark.asyncio
    async def test_failing_item_does_not_stop_siblings(self, scheduler: FakeScheduler) -> None:
        async def processor(batch_item: BatchItem) -> int:
            if batch_item.payload["n"] == 1:
                raise RuntimeError("boom")
            return batch_item.payload["n"]

        events: List[BatchEvent] = []
        accumulator = build(scheduler, processor)
        accumulator.add_listener(events.append)

        for n in range(3):
            await accumulator.add_to_batch(item(n))

        by_id = {e.item.id: e for e in events}
        assert by_id["item-0"].type == BatchEventType.COMPLETED
        assert by_id["item-0"].result == 0
        assert by_id["item-1"].type == BatchEventType.FAILED
        assert str(by_id["item-1"].error) == "boom"
        assert by_id["item-2"].type == BatchEventType.COMPLETED

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, scheduler: FakeScheduler) -> None:
        active = 0
        peak = 0

        async def processor(batch_item: BatchItem) -> None:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0)
            active -= 1

        accumulator = build(scheduler, processor, batch_size=5, max_concurrent=2)
        for n in range(5):
            await accumulator.add_to_batch(item(n))

        assert peak == 2
        assert accumulator.get_active_count() == 0

    @pytest.mark.asyncio
    async def test_items_added_during_flush_get_a_follow_up_flush(
        self, scheduler: FakeScheduler
    ) -> None:
        processed: List[str] = []
        accumulator: BatchAccumulator

        async def processor(batch_item: BatchItem) -> None:
            processed.append(batch_item.id)
            if batch_item.id == "item-0":
                await accumulator.add_to_batch(item(99))
                assert accumulator.is_processing() is True

        accumulator = build(scheduler, processor, batch_size=1)
        await accumulator.add_to_batch(item(0))

        assert processed == ["item-0", "item-99"]
        assert accumulator.get_current_batch_size() == 0
        assert accumulator.is_processing() is False

    @pytest.mark.asyncio
    async def test_drain_flushes_pending_items(self, scheduler: FakeScheduler) -> None:
        recorder = Recorder()
        accumulator = build(scheduler, recorder, batch_size=10)
        await accumulator.add_to_batch(item(0))

        await accumulator.drain()

        assert recorder.processed == ["item-0"]
        assert accumulator.has_pending_timer() is False

    def test_rejects_non_positive_sizes(self, scheduler: FakeScheduler) -> None:
        with pytest.raises(ValueError):
            build(scheduler, Recorder(), batch_size=0)


def test_chunked() -> None:
    chunks = chunked([item(n) for n in range(5)], 2)

    assert [len(c) for c in chunks] == [2, 2, 1]
