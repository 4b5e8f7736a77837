"""
Response submission.

``ResponseSubmitter`` drives one intent through submit -> wait -> verify ->
confirm. A stored (nonce, fee rate) pair means a response may still be in the
mempool, so the next attempt replaces it (same nonce, escalated fee) instead
of sending a second response.
"""
import asyncio
import logging
import random
from decimal import Decimal
from typing import Any, Awaitable, Callable, List, Optional

from .config import RetryPolicy, RetryStatePolicy
from .exceptions import (
    IntentNotFoundError, RelayerError, RetryExhaustedError,
    SubmissionTimeoutError, TransactionError, TransientNetworkError, VerificationFailureError
)
from .gateway.base import ChainGateway
from .models import Intent, TxReceipt
from .store.base import IntentStore

logger = logging.getLogger(__name__)

_sleep = asyncio.sleep


def compute_backoff(
    attempt: int,
    initial_delay_ms: int,
    max_delay_ms: int,
    jitter_ms: int = 1000,
    uniform: Callable[[float, float], float] = random.uniform
) -> float:
    """
    Exponential backoff with jitter, capped at ``max_delay_ms``.

    ``min(initial * 2**attempt + uniform(0, jitter), max)``

    Returns:
        Delay in seconds
    """
    delay_ms = min(initial_delay_ms * (2 ** attempt) + uniform(0, jitter_ms), max_delay_ms)
    return delay_ms / 1000.0


async def retry_transient(
    operation: Callable[[], Awaitable[Any]],
    description: str,
    attempts: int,
    backoff: Callable[[int], float]
) -> Any:
    """
    Await ``operation()``, retrying it while it fails with a transient network error.

    Args:
        operation: Zero-argument coroutine function to call
        description: What is being attempted, for the logs
        attempts: Total number of tries
        backoff: Delay in seconds for a given failure count (0-based)

    Raises:
        TransientNetworkError: The last error once every try has failed
    """
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TransientNetworkError as e:
            if attempt >= attempts:
                logger.error(f"{description} failed after {attempts} attempts: {e}")
                raise
            delay = backoff(attempt - 1)
            logger.warning(
                f"{description} failed (attempt {attempt}/{attempts}). Retrying in {delay * 1000:.0f}ms: {e}"
            )
            await _sleep(delay)


def escalate_fee(fee_rate: Decimal, factor: Decimal) -> Decimal:
    """Fee rate for a replacement transaction."""
    return Decimal(fee_rate) * Decimal(factor)


class ResponseSubmitter:
    """
    Submits, re-submits and confirms the response transaction of an intent.

    One ``respond`` call handles one intent strictly sequentially; callers
    must not run two ``respond`` calls for the same intent at once.
    """

    def __init__(
        self,
        store: IntentStore,
        gateway: ChainGateway,
        policy: Optional[RetryPolicy] = None
    ):
        self.store = store
        self.gateway = gateway
        self.policy = policy or RetryPolicy()

    def backoff(self, attempt: int) -> float:
        return compute_backoff(
            attempt, self.policy.initial_delay_ms, self.policy.max_delay_ms, self.policy.jitter_ms
        )

    async def respond(self, intent: Intent) -> Intent:
        """
        Get a confirmed response on-chain for ``intent``.

        Args:
            intent: Pending intent to respond to

        Returns:
            The confirmed intent

        Raises:
            VerificationFailureError: If the response was mined without its event
            RetryExhaustedError: If the retry budget ran out (the intent is marked Failed)
            IntentCorruptionError: If the intent was confirmed by another response meanwhile
        """
        key = intent.key
        max_retries = self.policy.max_retries
        failures = 0  # drives the backoff exponent; timeouts do not reset it
        last_error: Optional[BaseException] = None
        sent: List[str] = []

        for attempt in range(1, max_retries + 1):
            try:
                receipt = await self._attempt(intent, attempt, sent)
            except SubmissionTimeoutError as e:
                last_error = e
                receipt = await self._find_mined(sent)
                if receipt is None:
                    logger.warning(
                        f"Response for intent {key} not confirmed within {self.policy.confirmation_timeout}s "
                        f"(attempt {attempt}/{max_retries}), escalating fee"
                    )
                    continue
            except IntentNotFoundError:
                raise
            except RelayerError as e:
                last_error = e
                receipt = await self._find_mined(sent)
                if receipt is None:
                    await self._after_error(key)
                    failures = await self._pause(key, attempt, failures, e)
                    continue

            if not receipt.succeeded:
                # The nonce is spent either way; the next attempt starts fresh
                last_error = TransactionError(f"Response {receipt.tx_hash} for intent {key} reverted")
                sent.clear()
                await self.store.clear_response_meta(key)
                failures = await self._pause(key, attempt, failures, last_error)
                continue

            return await self._confirm(intent, receipt)

        await self.store.mark_failed(key)
        raise RetryExhaustedError(
            f"Failed to respond to intent {key} after {max_retries} attempts: {last_error}",
            attempts=max_retries,
            last_error=last_error,
        )

    async def _attempt(self, intent: Intent, attempt: int, sent: List[str]) -> TxReceipt:
        key = intent.key
        meta = await self.store.get_response_meta(key)
        if meta is None:
            submitted = await self.gateway.submit_response(intent.source_tx_hash)
            logger.info(
                f"Response {submitted.tx_hash} sent for intent {key} "
                f"(attempt {attempt}/{self.policy.max_retries}, nonce {submitted.nonce}, fee {submitted.fee_rate})"
            )
        else:
            fee_rate = escalate_fee(meta.fee_rate, self.policy.fee_escalation)
            submitted = await self.gateway.submit_response(
                intent.source_tx_hash, nonce=meta.nonce, fee_rate=fee_rate
            )
            logger.info(
                f"Response for intent {key} replaced by {submitted.tx_hash} "
                f"(attempt {attempt}/{self.policy.max_retries}, nonce {meta.nonce}, fee {meta.fee_rate} -> {fee_rate})"
            )
        sent.append(submitted.tx_hash)
        await self.store.update_response_meta(key, submitted.nonce, submitted.fee_rate)
        return await self.gateway.wait_for_receipt(submitted.tx_hash, timeout=self.policy.confirmation_timeout)

    async def _find_mined(self, sent: List[str]) -> Optional[TxReceipt]:
        """Receipt of an earlier attempt that got mined after all, newest first."""
        for tx_hash in reversed(sent):
            try:
                receipt = await self.gateway.get_receipt(tx_hash)
            except RelayerError as e:
                logger.debug(f"Could not check receipt of {tx_hash}: {e}")
                continue
            if receipt is not None:
                logger.info(f"Earlier response {tx_hash} was mined in block {receipt.block_number}")
                return receipt
        return None

    async def _after_error(self, key: str) -> None:
        if self.policy.retry_state_policy == RetryStatePolicy.RESET_ON_ERROR:
            # The nonce assignment may be invalid; start over from a fresh one
            await self.store.clear_response_meta(key)

    async def _pause(self, key: str, attempt: int, failures: int, error: BaseException) -> int:
        if attempt >= self.policy.max_retries:
            logger.warning(f"Attempt {attempt}/{self.policy.max_retries} for intent {key} failed: {error}")
            return failures + 1
        delay = self.backoff(failures)
        logger.warning(
            f"Attempt {attempt}/{self.policy.max_retries} for intent {key} failed. "
            f"Retrying in {delay * 1000:.0f}ms: {error}"
        )
        await _sleep(delay)
        return failures + 1

    async def _confirm(self, intent: Intent, receipt: TxReceipt) -> Intent:
        if not receipt.emits_response_for(intent.source_tx_hash):
            await self.store.clear_response_meta(intent.key)
            raise VerificationFailureError(
                f"Response {receipt.tx_hash} for intent {intent.key} succeeded but emitted no "
                f"{self.gateway.response_event} event for {intent.source_tx_hash}",
                tx_hash=receipt.tx_hash,
            )
        logger.info(f"Response {receipt.tx_hash} confirmed for intent {intent.key} in block {receipt.block_number}")
        return await self.store.mark_confirmed(intent.key, receipt.tx_hash)
