"""
Check-before-submit reconciliation.

Before anything is (re)submitted for an intent, the response log of the
contract is searched for a response that already carries the intent's
correlation value and was sent by our own responder address.
"""
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, Iterable, List, NamedTuple, Optional

from .exceptions import RelayerError
from .gateway.base import ChainGateway
from .models import Intent, IntentStatus, ResponseEvent, same_address
from .store.base import IntentStore
from .submitter import ResponseSubmitter, retry_transient

logger = logging.getLogger(__name__)

ErrorHandler = Callable[[Intent, RelayerError], Awaitable[None]]


class ResponseMatch(NamedTuple):
    """An on-chain response sent by the responder for a given intent."""
    event: ResponseEvent
    nonce: int


class Reconciler:
    """Confirms intents whose response is already on-chain and hands the rest to the submitter."""

    def __init__(self, store: IntentStore, gateway: ChainGateway, submitter: ResponseSubmitter):
        self.store = store
        self.gateway = gateway
        self.submitter = submitter

    async def load_responses(self, intents: Iterable[Intent]) -> Dict[str, List[ResponseEvent]]:
        """
        Fetch the response log once for a batch of intents.

        Returns:
            Response events grouped by correlation value, starting at the
            lowest block among ``intents``
        """
        intents = list(intents)
        if not intents:
            return {}
        from_block = min(intent.block_number for intent in intents)
        responses = await retry_transient(
            lambda: self.gateway.query_response_events(from_block),
            f"Loading {self.gateway.response_event} events from block {from_block}",
            self.submitter.policy.max_retries,
            self.submitter.backoff,
        )
        logger.debug(f"Loaded {len(responses)} {self.gateway.response_event} events from block {from_block}")

        grouped: Dict[str, List[ResponseEvent]] = defaultdict(list)
        for event in responses:
            grouped[event.correlation].append(event)
        return dict(grouped)

    async def find_response(self, intent: Intent, responses: Optional[List[ResponseEvent]] = None) -> Optional[ResponseMatch]:
        """
        Find the responder's on-chain response for ``intent``.

        Args:
            intent: Intent to look up
            responses: Pre-fetched response events; queried from the intent's
                block onwards when None

        Returns:
            A successful match if there is one, otherwise the last failed
            match, otherwise None
        """
        if responses is None:
            responses = await self.gateway.query_response_events(intent.block_number)

        responder = self.gateway.responder_address
        failed: Optional[ResponseMatch] = None
        for event in responses:
            if event.correlation != intent.source_tx_hash:
                continue
            tx = await self.gateway.get_transaction(event.transaction_hash)
            if tx is None or not same_address(tx.sender, responder):
                logger.warning(
                    f"Ignoring {self.gateway.response_event} {event.transaction_hash} for intent {intent.key}: "
                    f"sent by {tx.sender if tx else 'unknown sender'}, not {responder}"
                )
                continue
            receipt = await self.gateway.get_receipt(event.transaction_hash)
            event = event.model_copy(update={
                "sender_address": tx.sender,
                "receipt_status": receipt.status if receipt else None,
            })
            match = ResponseMatch(event=event, nonce=tx.nonce)
            if event.succeeded:
                return match
            failed = match
        return failed

    async def reconcile_intent(self, intent: Intent, responses: Optional[List[ResponseEvent]] = None) -> Intent:
        """
        Reconcile one intent, submitting a response only if none exists on-chain.

        Raises:
            RelayerError: Whatever the submitter raises for this intent
        """
        if intent.is_confirmed:
            return intent

        match = await self.find_response(intent, responses)
        if match is not None and match.event.succeeded:
            logger.info(
                f"Found existing response {match.event.transaction_hash} for intent {intent.key}, "
                f"confirming without resubmission"
            )
            return await self.store.mark_confirmed(intent.key, match.event.transaction_hash)

        if match is not None:
            logger.warning(f"Existing response {match.event.transaction_hash} for intent {intent.key} failed, resubmitting")
            meta = await self.store.get_response_meta(intent.key)
            if meta is not None and meta.nonce == match.nonce:
                # That nonce is spent; a replacement with it would be rejected
                await self.store.clear_response_meta(intent.key)

        if intent.status == IntentStatus.FAILED:
            await self.store.create_if_absent(intent.key, intent.source_tx_hash, intent.block_number)

        current = await self.store.get(intent.key) or intent
        return await self.submitter.respond(current)

    async def reconcile_all(self, include_failed: bool = True, on_error: Optional[ErrorHandler] = None) -> Dict[str, int]:
        """
        Reconcile every non-Confirmed intent in ascending block order.

        Args:
            include_failed: Also retry intents that previously exhausted their retries
            on_error: Called with the intent and error when one intent fails;
                the error is only logged when None

        Returns:
            Counts of processed, confirmed and failed intents
        """
        if include_failed:
            intents = await self.store.list_pending()
        else:
            intents = await self.store.list_intents(IntentStatus.PENDING)
        summary = {"total": len(intents), "confirmed": 0, "failed": 0}
        if not intents:
            logger.info("No unconfirmed intents to reconcile")
            return summary

        logger.info(f"Reconciling {len(intents)} unconfirmed intents")
        grouped = await self.load_responses(intents)
        for intent in intents:
            try:
                await self.reconcile_intent(intent, grouped.get(intent.source_tx_hash, []))
                summary["confirmed"] += 1
            except RelayerError as e:
                summary["failed"] += 1
                if on_error is not None:
                    await on_error(intent, e)
                else:
                    logger.error(f"Reconciling intent {intent.key} failed: {e}")
        logger.info(f"Reconciliation done: {summary['confirmed']} confirmed, {summary['failed']} failed")
        return summary
