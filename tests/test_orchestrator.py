"""
End-to-end tests for the orchestrator over the in-memory chain and store.
"""
import asyncio
import signal
from unittest.mock import MagicMock

import pytest

from pingpong_relayer.alerts import OperatorAlerter
from pingpong_relayer.events import EventSource
from pingpong_relayer.exceptions import AlertKind, LiveFeedError
from pingpong_relayer.models import IntentStatus
from pingpong_relayer.orchestrator import EXIT_FAILURE, EXIT_OK, LifecycleHandle, Orchestrator
from tests.test_helpers import HOLD, NO_EVENT, TIMEOUT


class RecordingAlerter(OperatorAlerter):
    def __init__(self):
        super().__init__()
        self.alerts = []

    async def alert(self, kind, message, **details):
        self.alerts.append((kind, message, details))
        await super().alert(kind, message, **details)

    def kinds(self):
        return [kind for kind, _, _ in self.alerts]


class LostFeedSource(EventSource):
    async def live_chunks(self, from_block, stop):
        raise LiveFeedError("websocket closed")
        yield  # pragma: no cover


@pytest.fixture
def alerter():
    return RecordingAlerter()


@pytest.fixture
def make_orchestrator(store, gateway, submitter, alerter):
    def _make(**kwargs):
        options = {
            "submitter": submitter,
            "event_source": EventSource(gateway, poll_interval=0.01),
            "alerter": alerter,
            "reconcile_interval": 0,
            "shutdown_grace": 1.0,
        }
        options.update(kwargs)
        return Orchestrator(store, gateway, **options)
    return _make


async def _eventually(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_health_check_failure_exits_non_zero(gateway, make_orchestrator):
    gateway.healthy = False
    orchestrator = make_orchestrator()

    assert await orchestrator.run(once=True) == EXIT_FAILURE
    assert gateway.queries == []
    assert gateway.submissions == []


@pytest.mark.asyncio
async def test_bounded_run_backfills_and_confirms(store, gateway, make_orchestrator):
    for block, key in ((101, "0x101"), (102, "0x102"), (103, "0x103")):
        gateway.add_ping(block, key)
    orchestrator = make_orchestrator()

    assert await orchestrator.run(once=True) == EXIT_OK

    assert [s["args"][0] for s in gateway.response_submissions()] == ["0x101", "0x102", "0x103"]
    intents = await store.list_intents()
    assert [intent.status for intent in intents] == [IntentStatus.CONFIRMED] * 3
    assert all(intent.response_nonce is not None for intent in intents)


@pytest.mark.asyncio
async def test_restart_resumes_after_cursor_and_skips_answered(store, gateway, make_orchestrator):
    """Cursor 100; inbound 101-103; 102 was already answered before the restart."""
    await store.create_if_absent("0x100", "0x100", 100)
    await store.mark_confirmed("0x100", "0x" + "10" * 32)
    await store.set_last_processed_block(100)
    gateway.add_ping(100, "0x100")
    gateway.add_ping(99, "0x99")
    for block, key in ((101, "0x101"), (102, "0x102"), (103, "0x103")):
        gateway.add_ping(block, key)
    answered = gateway.add_response("0x102", block_number=102)
    orchestrator = make_orchestrator()

    assert await orchestrator.resume_cursor() == 100
    assert await orchestrator.run(once=True) == EXIT_OK

    assert [s["args"][0] for s in gateway.response_submissions()] == ["0x101", "0x103"]
    assert (await store.get("0x102")).response_tx_hash == answered.transaction_hash
    assert await store.get("0x99") is None


@pytest.mark.asyncio
async def test_start_block_bounds_empty_store(store, gateway, make_orchestrator):
    gateway.add_ping(10, "0x10")
    gateway.add_ping(50, "0x50")
    orchestrator = make_orchestrator(start_block=20)

    assert await orchestrator.resume_cursor() == 19
    assert await orchestrator.run(once=True) == EXIT_OK
    assert [s["args"][0] for s in gateway.response_submissions()] == ["0x50"]


@pytest.mark.asyncio
async def test_backfill_records_whole_chunk_before_answering(store, gateway, make_orchestrator):
    gateway.add_ping(100, "0xa1")
    gateway.add_ping(100, "0xa2")
    gateway.add_ping(101, "0xa3")
    gateway.receipt_script = [HOLD]
    orchestrator = make_orchestrator(start_block=100)
    run = asyncio.create_task(orchestrator.run(once=True))

    await _eventually(lambda: _async_value(len(gateway.response_submissions()) == 1))
    # The first answer is still waiting for its receipt; the rest of the chunk is already on record
    assert [intent.key for intent in await store.list_intents()] == ["0xa1", "0xa2", "0xa3"]
    assert await store.get_last_processed_block() == 101

    gateway.release.set()
    assert await asyncio.wait_for(run, timeout=5) == EXIT_OK
    assert [s["args"][0] for s in gateway.response_submissions()] == ["0xa1", "0xa2", "0xa3"]


@pytest.mark.asyncio
async def test_restart_rereads_the_cursor_block(store, gateway, make_orchestrator):
    """Two Pings in block 100; only the first was recorded before the process died."""
    gateway.add_ping(100, "0xa1")
    gateway.add_ping(100, "0xa2")
    await store.create_if_absent("0xa1", "0xa1", 100)
    await store.set_last_processed_block(100)
    orchestrator = make_orchestrator()

    assert await orchestrator.run(once=True) == EXIT_OK

    assert (await store.get("0xa1")).is_confirmed
    assert (await store.get("0xa2")).is_confirmed
    assert sorted(s["args"][0] for s in gateway.response_submissions()) == ["0xa1", "0xa2"]


@pytest.mark.asyncio
async def test_restart_fills_gap_left_behind_the_live_feed(store, gateway, make_orchestrator):
    """The backfill died at block 101 while the live feed had already recorded block 110."""
    for block, key in ((101, "0x101"), (102, "0x102"), (103, "0x103"), (110, "0x110")):
        gateway.add_ping(block, key)
    await store.set_last_processed_block(100)
    await store.create_if_absent("0x101", "0x101", 101)
    await store.create_if_absent("0x110", "0x110", 110)
    orchestrator = make_orchestrator()

    assert await orchestrator.resume_cursor() == 100
    assert await orchestrator.run(once=True) == EXIT_OK

    assert await store.list_pending() == []
    assert sorted(s["args"][0] for s in gateway.response_submissions()) == ["0x101", "0x102", "0x103", "0x110"]
    assert await store.get_last_processed_block() == 110


@pytest.mark.asyncio
async def test_transient_query_error_does_not_stop_backfill(store, gateway, make_orchestrator, backoff_sleeps):
    gateway.add_ping(101, "0x101")
    gateway.query_errors = 1
    orchestrator = make_orchestrator()

    assert await orchestrator.run(once=True) == EXIT_OK

    assert (await store.get("0x101")).is_confirmed
    assert len(backoff_sleeps) == 1


@pytest.mark.asyncio
async def test_startup_reconciliation_survives_transient_query_error(store, gateway, make_orchestrator):
    await store.create_if_absent("0x1", "0x1", 1)
    answered = gateway.add_response("0x1", block_number=2)
    gateway.query_errors = 1
    orchestrator = make_orchestrator()

    assert await orchestrator.run(once=True) == EXIT_OK

    assert (await store.get("0x1")).response_tx_hash == answered.transaction_hash
    assert gateway.response_submissions() == []


@pytest.mark.asyncio
async def test_live_feed_advances_cursor_once_backfill_is_done(store, gateway, make_orchestrator):
    gateway.add_ping(5, "0x5")
    orchestrator = make_orchestrator()
    run = asyncio.create_task(orchestrator.run())

    async def confirmed():
        intent = await store.get("0x5")
        return intent is not None and intent.is_confirmed

    await _eventually(confirmed)
    await asyncio.sleep(0.05)
    gateway.add_ping(9, "0x9")

    async def cursor_reached():
        return await store.get_last_processed_block() >= 9

    await _eventually(cursor_reached)
    assert await store.get("0x9") is not None
    orchestrator.lifecycle.request_stop("test over")
    assert await asyncio.wait_for(run, timeout=5) == EXIT_OK


@pytest.mark.asyncio
async def test_unconfirmed_intents_are_reconciled_at_startup(store, gateway, make_orchestrator):
    await store.create_if_absent("0x1", "0x1", 1)
    await store.create_if_absent("0x2", "0x2", 2)
    await store.mark_failed("0x2")
    gateway.head = 2
    orchestrator = make_orchestrator()

    assert await orchestrator.run(once=True) == EXIT_OK
    assert await store.list_pending() == []
    assert len(gateway.response_submissions()) == 2


@pytest.mark.asyncio
async def test_duplicate_observation_creates_one_intent(store, gateway, make_orchestrator):
    event = gateway.add_ping(105, "0x105")
    orchestrator = make_orchestrator()

    tasks = await asyncio.gather(orchestrator.handle_event(event), orchestrator.handle_event(event))
    spawned = [task for task in tasks if task is not None]
    assert len(spawned) == 1
    assert await orchestrator.drain(None)

    # Seen again after confirmation
    assert await orchestrator.handle_event(event) is None
    assert len(gateway.response_submissions()) == 1
    assert len(await store.list_intents()) == 1


@pytest.mark.asyncio
async def test_backfill_and_live_feed_overlap_safely(store, gateway, make_orchestrator):
    gateway.add_ping(105, "0x105")
    orchestrator = make_orchestrator(start_block=105)
    run = asyncio.create_task(orchestrator.run())

    async def confirmed():
        intent = await store.get("0x105")
        return intent is not None and intent.is_confirmed

    await _eventually(confirmed)
    await _eventually(lambda: _async_value(
        sum(1 for q in gateway.queries if q[0] == gateway.inbound_event and q[1] <= 105 <= q[2]) >= 2
    ))
    orchestrator.lifecycle.request_stop("test over")

    assert await asyncio.wait_for(run, timeout=5) == EXIT_OK
    assert len(gateway.response_submissions()) == 1


async def _async_value(value):
    return value


@pytest.mark.asyncio
async def test_invalid_event_is_reported_not_raised(gateway, make_orchestrator, alerter):
    orchestrator = make_orchestrator()

    assert await orchestrator.handle_event({"blockNumber": 7}) is None
    assert alerter.kinds() == [AlertKind.INVALID_EVENT]
    assert gateway.submissions == []


@pytest.mark.asyncio
async def test_failing_intent_does_not_stop_others(store, gateway, make_orchestrator, alerter):
    gateway.add_ping(101, "0x101")
    gateway.add_ping(102, "0x102")
    gateway.receipt_script = [NO_EVENT]
    orchestrator = make_orchestrator()

    assert await orchestrator.run(once=True) == EXIT_OK

    assert alerter.kinds() == [AlertKind.VERIFICATION_FAILURE]
    assert alerter.alerts[0][2]["intent_key"] == "0x101"
    assert (await store.get("0x101")).status == IntentStatus.PENDING
    assert (await store.get("0x102")).is_confirmed


@pytest.mark.asyncio
async def test_retry_exhaustion_is_alerted(store, gateway, make_orchestrator, alerter):
    gateway.add_ping(101, "0x101")
    gateway.add_ping(102, "0x102")
    gateway.receipt_script = [TIMEOUT] * 5
    orchestrator = make_orchestrator()

    assert await orchestrator.run(once=True) == EXIT_OK

    assert alerter.kinds() == [AlertKind.RETRY_EXHAUSTED]
    assert alerter.alerts[0][2] == {"intent_key": "0x101", "attempts": 5}
    assert (await store.get("0x101")).status == IntentStatus.FAILED
    assert (await store.get("0x102")).is_confirmed


@pytest.mark.asyncio
async def test_unexpected_error_is_isolated_to_its_intent(store, gateway, make_orchestrator, alerter):
    gateway.add_ping(101, "0x101")
    gateway.add_ping(102, "0x102")
    gateway.submit_errors = [ConnectionError("down")]
    orchestrator = make_orchestrator()

    assert await orchestrator.run(once=True) == EXIT_OK
    assert (await store.get("0x101")).status == IntentStatus.PENDING
    assert (await store.get("0x102")).is_confirmed
    assert alerter.alerts == []


@pytest.mark.asyncio
async def test_live_feed_loss_exits_non_zero(gateway, make_orchestrator, alerter):
    orchestrator = make_orchestrator(event_source=LostFeedSource(gateway))

    assert await asyncio.wait_for(orchestrator.run(), timeout=5) == EXIT_FAILURE
    assert AlertKind.LIVE_FEED_LOST in alerter.kinds()


@pytest.mark.asyncio
async def test_shutdown_waits_for_in_flight_intent(store, gateway, make_orchestrator):
    gateway.add_ping(1, "0x1")
    gateway.receipt_script = [HOLD]
    orchestrator = make_orchestrator(shutdown_grace=5.0)
    run = asyncio.create_task(orchestrator.run())

    await _eventually(lambda: _async_value(len(gateway.response_submissions()) == 1))
    orchestrator.lifecycle.request_stop("test over")
    asyncio.get_running_loop().call_later(0.05, gateway.release.set)

    assert await asyncio.wait_for(run, timeout=5) == EXIT_OK
    assert (await store.get("0x1")).is_confirmed


@pytest.mark.asyncio
async def test_shutdown_grace_elapses_and_forces_exit(store, gateway, make_orchestrator):
    gateway.add_ping(1, "0x1")
    gateway.receipt_script = [HOLD]
    orchestrator = make_orchestrator(shutdown_grace=0.05)
    run = asyncio.create_task(orchestrator.run())

    await _eventually(lambda: _async_value(len(gateway.response_submissions()) == 1))
    orchestrator.lifecycle.request_stop("test over")

    assert await asyncio.wait_for(run, timeout=5) == EXIT_FAILURE
    intent = await store.get("0x1")
    # Left Pending with its nonce so the next start replaces instead of duplicating
    assert intent.status == IntentStatus.PENDING
    assert intent.response_meta is not None
    assert orchestrator.in_flight == set()


@pytest.mark.asyncio
async def test_max_in_flight_bounds_concurrency(gateway, make_orchestrator):
    first = gateway.add_ping(1, "0x1")
    second = gateway.add_ping(2, "0x2")
    gateway.receipt_script = [HOLD]
    orchestrator = make_orchestrator(max_in_flight=1)

    await orchestrator.handle_event(first)
    await orchestrator.handle_event(second)
    await asyncio.sleep(0.05)
    assert len(gateway.response_submissions()) == 1
    assert orchestrator.in_flight == {"0x1", "0x2"}

    gateway.release.set()
    assert await asyncio.wait_for(orchestrator.drain(None), timeout=5)
    assert len(gateway.response_submissions()) == 2


@pytest.mark.asyncio
async def test_reconcile_pending_skips_in_flight_intents(store, gateway, make_orchestrator):
    event = gateway.add_ping(1, "0x1")
    gateway.receipt_script = [HOLD]
    orchestrator = make_orchestrator()

    await orchestrator.handle_event(event)
    await asyncio.sleep(0.01)
    assert await orchestrator.reconcile_pending() == 0

    gateway.release.set()
    assert await orchestrator.drain(None)
    assert len(gateway.response_submissions()) == 1


@pytest.mark.asyncio
async def test_periodic_reconciliation_picks_up_stranded_intents(store, gateway, make_orchestrator):
    gateway.head = 20
    orchestrator = make_orchestrator(reconcile_interval=0.02)
    run = asyncio.create_task(orchestrator.run())
    await asyncio.sleep(0.05)

    # Recorded by another process that died before responding
    await store.create_if_absent("0x9", "0x9", 9)

    async def confirmed():
        return (await store.get("0x9")).is_confirmed

    await _eventually(confirmed)
    orchestrator.lifecycle.request_stop("test over")
    assert await asyncio.wait_for(run, timeout=5) == EXIT_OK


def test_lifecycle_handle_routes_signals():
    handle = LifecycleHandle()
    loop = MagicMock()

    handle.install_signal_handlers(loop)
    installed = [c.args[0] for c in loop.add_signal_handler.call_args_list]
    assert installed == [signal.SIGINT, signal.SIGTERM]

    # Invoke the registered callback as the loop would
    callback, reason = loop.add_signal_handler.call_args_list[1].args[1:]
    callback(reason)
    assert handle.stopping
    assert handle.reason == "received SIGTERM"

    handle.request_stop("again")
    assert handle.reason == "received SIGTERM"

    handle.remove_signal_handlers()
    assert loop.remove_signal_handler.call_count == 2


def test_lifecycle_handle_tolerates_missing_signal_support():
    handle = LifecycleHandle()
    loop = MagicMock()
    loop.add_signal_handler.side_effect = NotImplementedError

    handle.install_signal_handlers(loop)
    assert not handle.stopping
