"""
Relayer orchestration.

Startup order: health check, resume cursor, reconciliation of unconfirmed
intents, then the historical backfill and the live feed side by side. Each
intent is processed in its own task; a failing intent is reported to the
operator and never stops anything else.
"""
import asyncio
import logging
import signal
from typing import Any, List, Optional, Set

from ._rate_limited_log import rate_limited_log
from .alerts import OperatorAlerter
from .config import RelayerConfig, RetryPolicy
from .events import EventSource, wait_or_stop
from .exceptions import (
    AlertKind, EventValidationError, GatewayUnavailableError, IntentCorruptionError, LiveFeedError,
    RelayerError, RetryExhaustedError, VerificationFailureError
)
from .gateway.base import ChainGateway
from .models import InboundEvent, Intent, IntentStatus, ResponseEvent
from .reconciler import Reconciler
from .store.base import IntentStore
from .submitter import ResponseSubmitter

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


class LifecycleHandle:
    """
    Stop switch shared by the orchestrator and whatever asks it to stop
    (signal handlers, tests, an embedding application).
    """

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self):
        self.stop_event = asyncio.Event()
        self.reason: Optional[str] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    def request_stop(self, reason: str = "stop requested") -> None:
        if self.stop_event.is_set():
            return
        logger.info(f"Shutting down: {reason}")
        self.reason = reason
        self.stop_event.set()

    async def wait(self) -> None:
        await self.stop_event.wait()

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        """Route SIGINT/SIGTERM to ``request_stop``."""
        for sig in self.SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_stop, f"received {sig.name}")
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform or outside the main thread
                logger.debug(f"Cannot install handler for {sig.name}")
                continue
        self._loop = loop

    def remove_signal_handlers(self) -> None:
        if self._loop is None:
            return
        for sig in self.SIGNALS:
            try:
                self._loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                continue
        self._loop = None


class Orchestrator:
    """Wires the event source, intent store, reconciler and submitter together."""

    def __init__(
        self,
        store: IntentStore,
        gateway: ChainGateway,
        submitter: Optional[ResponseSubmitter] = None,
        reconciler: Optional[Reconciler] = None,
        event_source: Optional[EventSource] = None,
        alerter: Optional[OperatorAlerter] = None,
        lifecycle: Optional[LifecycleHandle] = None,
        start_block: int = 0,
        reconcile_interval: float = 300.0,
        shutdown_grace: float = 30.0,
        max_in_flight: Optional[int] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Intent store
            gateway: Chain gateway
            submitter: Response submitter (built with the default retry policy when None)
            reconciler: Reconciler (built from store, gateway and submitter when None)
            event_source: Inbound event source (built from the gateway when None)
            alerter: Operator alerter (log-only when None)
            lifecycle: Stop switch (a new one when None)
            start_block: Lowest block to backfill on an empty store
            reconcile_interval: Seconds between reconciliation passes, 0 disables them
            shutdown_grace: Seconds in-flight intents get to finish on shutdown
            max_in_flight: Upper bound on intents processed at once, None for no bound
        """
        self.store = store
        self.gateway = gateway
        self.submitter = submitter or ResponseSubmitter(store, gateway, RetryPolicy())
        self.reconciler = reconciler or Reconciler(store, gateway, self.submitter)
        self.event_source = event_source or EventSource(gateway)
        self.alerter = alerter or OperatorAlerter()
        self.lifecycle = lifecycle or LifecycleHandle()
        self.start_block = start_block
        self.reconcile_interval = reconcile_interval
        self.shutdown_grace = shutdown_grace
        self._semaphore = asyncio.Semaphore(max_in_flight) if max_in_flight else None

        self._in_flight: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._backfilled = False

    @classmethod
    def from_config(
        cls,
        config: RelayerConfig,
        store: IntentStore,
        gateway: ChainGateway,
        alerter: Optional[OperatorAlerter] = None,
        lifecycle: Optional[LifecycleHandle] = None
    ) -> "Orchestrator":
        submitter = ResponseSubmitter(store, gateway, config.retry)
        return cls(
            store,
            gateway,
            submitter=submitter,
            event_source=EventSource(
                gateway,
                chunk_size=config.log_chunk_size,
                poll_interval=config.poll_interval,
                max_consecutive_errors=config.live_max_consecutive_errors,
                retry_policy=config.retry,
            ),
            alerter=alerter or OperatorAlerter(config.alert_webhook_url),
            lifecycle=lifecycle,
            start_block=config.start_block,
            reconcile_interval=config.reconcile_interval,
            shutdown_grace=config.shutdown_grace,
            max_in_flight=config.max_in_flight,
        )

    @property
    def in_flight(self) -> Set[str]:
        """Keys of intents currently being processed."""
        return set(self._in_flight)

    async def check_health(self) -> None:
        """
        Raises:
            GatewayUnavailableError: If the chain gateway is not usable
        """
        if not await self.gateway.is_healthy():
            raise GatewayUnavailableError("Chain gateway failed its health check")

    async def resume_cursor(self) -> int:
        """Last block whose events are all recorded, or just below ``start_block``."""
        recorded = await self.store.get_last_processed_block()
        return max(recorded, self.start_block - 1)

    async def run(self, once: bool = False) -> int:
        """
        Run the relayer until stopped.

        Args:
            once: Only reconcile and backfill up to the current head, then exit

        Returns:
            Process exit code
        """
        try:
            await self.check_health()
        except GatewayUnavailableError as e:
            logger.error(f"{e}, exiting")
            return EXIT_FAILURE

        try:
            cursor = await self.resume_cursor()
            head = await self.gateway.get_block_number()
        except RelayerError as e:
            logger.error(f"Cannot determine where to resume: {e}")
            return EXIT_FAILURE
        logger.info(f"Resuming from block {cursor}, chain head is {head}")

        self.lifecycle.install_signal_handlers(asyncio.get_running_loop())
        try:
            return await self._supervise(cursor, head, once)
        finally:
            self.lifecycle.remove_signal_handlers()

    async def _supervise(self, cursor: int, head: int, once: bool) -> int:
        # The backfill re-reads the cursor block and the live feed re-reads the
        # head block; the store's conditional create absorbs both overlaps
        from_block = max(cursor, self.start_block)
        self._backfilled = False
        workers: Set[asyncio.Task] = {asyncio.create_task(self._catch_up(from_block, head), name="catch-up")}
        if not once:
            workers.add(asyncio.create_task(self._follow(max(from_block, head)), name="live-feed"))
            if self.reconcile_interval > 0:
                workers.add(asyncio.create_task(self._reconcile_periodically(), name="reconcile"))

        stop_waiter = asyncio.create_task(self.lifecycle.wait(), name="stop-waiter")
        exit_code = EXIT_OK
        try:
            while workers and not self.lifecycle.stopping:
                done, _ = await asyncio.wait(workers | {stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
                for task in done - {stop_waiter}:
                    workers.discard(task)
                    if await self._worker_failed(task):
                        exit_code = EXIT_FAILURE
        finally:
            stop_waiter.cancel()
            # Stop taking in new events; in-flight intents get the grace period
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, stop_waiter, return_exceptions=True)

        if not await self.drain(self.shutdown_grace):
            exit_code = EXIT_FAILURE
        return exit_code

    async def _worker_failed(self, task: asyncio.Task) -> bool:
        if task.cancelled() or task.exception() is None:
            return False
        error = task.exception()
        if isinstance(error, LiveFeedError):
            await self.alerter.alert(AlertKind.LIVE_FEED_LOST, str(error))
        else:
            logger.error(f"{task.get_name()} failed: {error!r}")
        self.lifecycle.request_stop(f"{task.get_name()} failed")
        return True

    async def drain(self, timeout: Optional[float]) -> bool:
        """
        Wait for in-flight intents, cancelling whatever is left after ``timeout``.

        Returns:
            True if every intent finished on its own
        """
        tasks = set(self._tasks)
        if not tasks:
            return True
        logger.info(f"Waiting up to {timeout}s for {len(tasks)} in-flight intents")
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if not pending:
            return True
        logger.error(f"Shutdown grace period elapsed, abandoning {len(pending)} in-flight intents")
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        return False

    async def _catch_up(self, from_block: int, to_block: int) -> None:
        """
        Startup reconciliation, then the backfill, one intent at a time in block order.

        Every event of a chunk is recorded before any of them is answered, and
        the resume cursor moves past the chunk only then. Intents recorded but
        not yet answered are Pending and picked up by the next startup
        reconciliation.
        """
        await self.reconcile_pending(include_failed=True, sequential=True)
        async for end, events in self.event_source.historical_chunks(from_block, to_block):
            if self.lifecycle.stopping:
                return
            recorded: List[Intent] = []
            try:
                for event in events:
                    intent = await self.record_event(event)
                    if intent is not None:
                        recorded.append(intent)
                await self.store.set_last_processed_block(end)
                while recorded and not self.lifecycle.stopping:
                    await asyncio.shield(self._spawn(recorded.pop(0)))
            finally:
                for intent in recorded:
                    self._in_flight.discard(intent.key)
        if self.lifecycle.stopping:
            return
        self._backfilled = True
        logger.info(f"Backfill up to block {to_block} complete")

    async def _follow(self, from_block: int) -> None:
        async for end, events in self.event_source.live_chunks(from_block, self.lifecycle.stop_event):
            for event in events:
                if self.lifecycle.stopping:
                    return
                await self.handle_event(event)
            # Blocks below the backfill's reach may still be unrecorded until it is done
            if self._backfilled:
                await self.store.set_last_processed_block(end)

    async def _reconcile_periodically(self) -> None:
        while not await wait_or_stop(self.lifecycle.stop_event, self.reconcile_interval):
            try:
                await self.reconcile_pending()
            except RelayerError as e:
                rate_limited_log(
                    f"Periodic reconciliation failed: {e}",
                    level="warning",
                    logger_instance=logger,
                    key="periodic-reconcile",
                )

    async def reconcile_pending(self, include_failed: bool = False, sequential: bool = False) -> int:
        """
        Reconcile stored intents that nobody is processing right now.

        Args:
            include_failed: Also retry Failed intents
            sequential: Finish each intent before starting the next

        Returns:
            Number of intents handed to processing
        """
        if include_failed:
            intents = await self.store.list_pending()
        else:
            intents = await self.store.list_intents(IntentStatus.PENDING)
        intents = [intent for intent in intents if intent.key not in self._in_flight]
        if not intents:
            return 0

        logger.info(f"Reconciling {len(intents)} unconfirmed intents")
        grouped = await self.reconciler.load_responses(intents)
        started = 0
        for intent in intents:
            if self.lifecycle.stopping:
                break
            if intent.key in self._in_flight:
                continue
            task = self._spawn(intent, grouped.get(intent.source_tx_hash, []))
            started += 1
            if sequential:
                await asyncio.shield(task)
        return started

    async def handle_event(self, raw: Any) -> Optional[asyncio.Task]:
        """
        Record an inbound event and start processing it if this call created the intent.

        Args:
            raw: InboundEvent or any raw shape ``InboundEvent.from_raw`` accepts

        Returns:
            The intent's processing task, or None if the event was invalid or
            already known
        """
        intent = await self.record_event(raw)
        if intent is None:
            return None
        return self._spawn(intent)

    async def record_event(self, raw: Any) -> Optional[Intent]:
        """
        Record an inbound event as a Pending intent without processing it.

        The returned intent's key is reserved in the in-flight set; the caller
        either passes it to ``_spawn`` or releases the key.

        Returns:
            The intent if this call created it, None if the event was invalid
            or already known
        """
        try:
            event = raw if isinstance(raw, InboundEvent) else InboundEvent.from_raw(raw)
        except EventValidationError as e:
            await self.alerter.alert(AlertKind.INVALID_EVENT, f"Dropping inbound event: {e}")
            return None

        key = event.key
        if key in self._in_flight:
            rate_limited_log(
                f"Intent {key} is already being processed", level="debug", logger_instance=logger, key=f"dup:{key}"
            )
            return None

        self._in_flight.add(key)
        try:
            created = await self.store.create_if_absent(key, event.transaction_hash, event.block_number)
            intent = await self.store.get(key) if created else None
        except BaseException:
            self._in_flight.discard(key)
            raise
        if intent is None:
            self._in_flight.discard(key)
            rate_limited_log(
                f"Intent {key} already recorded, skipping event", level="debug", logger_instance=logger, key=f"dup:{key}"
            )
            return None
        return intent

    def _spawn(self, intent: Intent, responses: Optional[List[ResponseEvent]] = None) -> asyncio.Task:
        self._in_flight.add(intent.key)
        task = asyncio.create_task(self._process(intent, responses), name=f"intent-{intent.key[:10]}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _process(self, intent: Intent, responses: Optional[List[ResponseEvent]]) -> None:
        try:
            if self._semaphore is None:
                await self.reconciler.reconcile_intent(intent, responses)
            else:
                async with self._semaphore:
                    await self.reconciler.reconcile_intent(intent, responses)
        except RelayerError as e:
            await self.report_failure(intent, e)
        except Exception:
            logger.exception(f"Unexpected error while processing intent {intent.key}")
        finally:
            self._in_flight.discard(intent.key)

    async def report_failure(self, intent: Intent, error: RelayerError) -> None:
        """Surface an intent-scoped failure to the operator."""
        if isinstance(error, VerificationFailureError):
            await self.alerter.alert(
                AlertKind.VERIFICATION_FAILURE, str(error), intent_key=intent.key, tx_hash=error.tx_hash
            )
        elif isinstance(error, RetryExhaustedError):
            await self.alerter.alert(
                AlertKind.RETRY_EXHAUSTED, str(error), intent_key=intent.key, attempts=error.attempts
            )
        elif isinstance(error, IntentCorruptionError):
            await self.alerter.alert(
                AlertKind.INTENT_CORRUPTION, str(error), intent_key=intent.key,
                stored_hash=error.stored_hash, new_hash=error.new_hash
            )
        else:
            # Still Pending; the next reconciliation pass retries it
            logger.error(f"Processing intent {intent.key} failed: {error}")
