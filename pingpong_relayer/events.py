"""
Inbound event sources.

``historical`` replays a closed block range; ``live`` polls for new blocks
after a cursor until told to stop. Both yield ``InboundEvent`` records in
ascending block order. The two may overlap; duplicates are resolved by the
intent store's conditional create.

The ``*_chunks`` variants yield ``(last_block, events)`` per queried range,
so a caller can tell when every event up to ``last_block`` has been seen.
"""
import asyncio
import logging
from typing import AsyncIterator, List, Optional, Tuple

from ._rate_limited_log import rate_limited_log
from .config import RetryPolicy
from .exceptions import LiveFeedError, RelayerError
from .gateway.base import ChainGateway
from .models import InboundEvent
from .submitter import compute_backoff, retry_transient

logger = logging.getLogger(__name__)

Chunk = Tuple[int, List[InboundEvent]]


def _ordered(events: List[InboundEvent]) -> List[InboundEvent]:
    return sorted(events, key=lambda event: event.block_number)


async def wait_or_stop(stop: asyncio.Event, timeout: float) -> bool:
    """
    Sleep for ``timeout`` seconds unless ``stop`` is set first.

    Returns:
        True if stopped
    """
    try:
        await asyncio.wait_for(stop.wait(), timeout)
    except asyncio.TimeoutError:
        pass
    return stop.is_set()


class EventSource:
    """Reads inbound events through the chain gateway."""

    def __init__(
        self,
        gateway: ChainGateway,
        chunk_size: int = 2000,
        poll_interval: float = 10.0,
        max_consecutive_errors: int = 5,
        retry_policy: Optional[RetryPolicy] = None
    ):
        """
        Initialize the event source.

        Args:
            gateway: Chain gateway to query
            chunk_size: Largest block span per query
            poll_interval: Seconds between head polls of the live feed
            max_consecutive_errors: Failed queries in a row before either feed gives up
            retry_policy: Backoff settings between failed historical queries
        """
        self.gateway = gateway
        self.chunk_size = chunk_size
        self.poll_interval = poll_interval
        self.max_consecutive_errors = max_consecutive_errors
        self.retry_policy = retry_policy or RetryPolicy()

    def backoff(self, failures: int) -> float:
        return compute_backoff(
            failures, self.retry_policy.initial_delay_ms, self.retry_policy.max_delay_ms, self.retry_policy.jitter_ms
        )

    async def historical_chunks(self, from_block: int, to_block: int) -> AsyncIterator[Chunk]:
        """
        Replay ``[from_block, to_block]`` one chunk at a time.

        Chunks are fetched lazily as the consumer iterates. A chunk query
        failing with a transient error is retried with backoff.

        Raises:
            TransientNetworkError: If a chunk still fails after ``max_consecutive_errors`` tries
        """
        if from_block > to_block:
            return
        logger.info(f"Replaying {self.gateway.inbound_event} events from block {from_block} to {to_block}")
        for start in range(from_block, to_block + 1, self.chunk_size):
            end = min(start + self.chunk_size - 1, to_block)
            events = await retry_transient(
                lambda: self.gateway.query_inbound_events(start, end),
                f"Fetching {self.gateway.inbound_event} events for blocks {start}-{end}",
                self.max_consecutive_errors,
                self.backoff,
            )
            yield end, _ordered(events)

    async def historical(self, from_block: int, to_block: int) -> AsyncIterator[InboundEvent]:
        """Replay inbound events of ``[from_block, to_block]``."""
        async for _, events in self.historical_chunks(from_block, to_block):
            for event in events:
                yield event

    async def live_chunks(self, from_block: int, stop: asyncio.Event) -> AsyncIterator[Chunk]:
        """
        Follow the chain from ``from_block`` until ``stop`` is set.

        Raises:
            LiveFeedError: After ``max_consecutive_errors`` failed polls in a row
        """
        next_block = from_block
        errors = 0
        logger.info(f"Listening for {self.gateway.inbound_event} events from block {from_block}")

        while not stop.is_set():
            behind = False
            try:
                head = await self.gateway.get_block_number()
                if head >= next_block:
                    end = min(head, next_block + self.chunk_size - 1)
                    events = await self.gateway.query_inbound_events(next_block, end)
                    if stop.is_set():
                        break
                    yield end, _ordered(events)
                    next_block = end + 1
                    behind = end < head
                errors = 0
            except RelayerError as e:
                errors += 1
                rate_limited_log(
                    f"Live feed poll failed ({errors}/{self.max_consecutive_errors}): {e}",
                    level="warning",
                    interval=60,
                    logger_instance=logger,
                    key="live-feed-poll",
                )
                if errors >= self.max_consecutive_errors:
                    raise LiveFeedError(
                        f"Live feed lost after {errors} consecutive failures at block {next_block}: {e}"
                    ) from e

            if not behind and await wait_or_stop(stop, self.poll_interval):
                break
        logger.info(f"Live feed stopped before block {next_block}")

    async def live(self, from_block: int, stop: asyncio.Event) -> AsyncIterator[InboundEvent]:
        """Inbound events from ``from_block`` onwards, until ``stop`` is set."""
        async for _, events in self.live_chunks(from_block, stop):
            for event in events:
                if stop.is_set():
                    return
                yield event
