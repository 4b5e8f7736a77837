"""
Tests for the historical and live inbound event sources.
"""
import asyncio

import pytest

from pingpong_relayer.config import RetryPolicy
from pingpong_relayer.events import EventSource
from pingpong_relayer.exceptions import LiveFeedError, TransientNetworkError


async def _collect(agen, limit=None):
    events = []
    async for event in agen:
        events.append(event)
        if limit is not None and len(events) >= limit:
            break
    return events


@pytest.mark.asyncio
async def test_historical_replays_range_in_chunks(gateway):
    for block in (5, 1, 12, 9, 20):
        gateway.add_ping(block, hex(block))
    source = EventSource(gateway, chunk_size=4)

    events = await _collect(source.historical(1, 12))

    assert [event.block_number for event in events] == [1, 5, 9, 12]
    inbound_queries = [q[1:] for q in gateway.queries if q[0] == gateway.inbound_event]
    assert inbound_queries == [(1, 4), (5, 8), (9, 12)]


@pytest.mark.asyncio
async def test_historical_empty_range(gateway):
    source = EventSource(gateway)
    assert await _collect(source.historical(10, 9)) == []
    assert gateway.queries == []


@pytest.mark.asyncio
async def test_live_feed_picks_up_new_blocks(gateway):
    gateway.add_ping(3, "0x03")
    source = EventSource(gateway, chunk_size=100, poll_interval=0.01)
    stop = asyncio.Event()

    async def later():
        await asyncio.sleep(0.05)
        gateway.add_ping(7, "0x07")

    feeder = asyncio.create_task(later())
    events = await asyncio.wait_for(_collect(source.live(2, stop), limit=2), timeout=5)
    await feeder

    assert [event.block_number for event in events] == [3, 7]


@pytest.mark.asyncio
async def test_live_feed_stops_when_asked(gateway):
    source = EventSource(gateway, poll_interval=0.01)
    stop = asyncio.Event()

    async def stop_soon():
        await asyncio.sleep(0.05)
        stop.set()

    asyncio.create_task(stop_soon())
    events = await asyncio.wait_for(_collect(source.live(1, stop)), timeout=5)
    assert events == []


@pytest.mark.asyncio
async def test_live_feed_survives_transient_errors(gateway):
    gateway.add_ping(4, "0x04")
    gateway.block_number_errors = 2
    source = EventSource(gateway, poll_interval=0.01, max_consecutive_errors=3)

    events = await asyncio.wait_for(_collect(source.live(1, asyncio.Event()), limit=1), timeout=5)
    assert events[0].block_number == 4


@pytest.mark.asyncio
async def test_live_feed_gives_up_after_consecutive_errors(gateway):
    gateway.block_number_errors = 10
    source = EventSource(gateway, poll_interval=0.01, max_consecutive_errors=3)

    with pytest.raises(LiveFeedError):
        await asyncio.wait_for(_collect(source.live(1, asyncio.Event())), timeout=5)
    assert gateway.block_number_errors == 7


@pytest.mark.asyncio
async def test_historical_chunks_report_their_last_block(gateway):
    gateway.add_ping(2, "0x02")
    gateway.add_ping(2, "0x2b")
    source = EventSource(gateway, chunk_size=5)

    chunks = await _collect(source.historical_chunks(1, 12))

    assert [(end, len(events)) for end, events in chunks] == [(5, 2), (10, 0), (12, 0)]


@pytest.mark.asyncio
async def test_historical_retries_transient_query_errors(gateway, backoff_sleeps):
    gateway.add_ping(3, "0x03")
    gateway.query_errors = 2
    source = EventSource(gateway, chunk_size=10, max_consecutive_errors=3, retry_policy=RetryPolicy(jitter_ms=0))

    events = await _collect(source.historical(1, 5))

    assert [event.block_number for event in events] == [3]
    assert backoff_sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_historical_gives_up_after_consecutive_errors(gateway, backoff_sleeps):
    gateway.query_errors = 10
    source = EventSource(gateway, max_consecutive_errors=3)

    with pytest.raises(TransientNetworkError):
        await _collect(source.historical(1, 5))
    assert gateway.query_errors == 7
    assert len(backoff_sleeps) == 2
