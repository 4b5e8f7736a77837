"""
Intent store interface.

The store is the only arbiter of who owns an intent: every state change goes
through a conditional write, so the backfill and the live feed can race on
the same event without any locking on the caller side.
"""
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Callable, List, Optional

from ..exceptions import (
    IntentCorruptionError, IntentNotFoundError, PersistenceConflictError
)
from ..models import Intent, IntentStatus, ResponseMeta, utcnow

logger = logging.getLogger(__name__)


class IntentStore(ABC):
    """
    Abstract base class for intent store backends.

    Intents move Pending -> Confirmed | Failed and never leave Confirmed.
    Intents are never deleted.
    """

    @abstractmethod
    async def create_if_absent(self, key: str, source_tx_hash: str, block_number: int) -> bool:
        """
        Create a Pending intent unless one already exists.

        A Failed intent is revived to Pending; a Pending or Confirmed intent
        is left untouched.

        Args:
            key: Intent key (the source transaction hash)
            source_tx_hash: Transaction hash of the inbound event
            block_number: Block of the inbound event

        Returns:
            True if this call created or revived the intent and therefore owns
            its processing, False if it was a no-op
        """
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[Intent]:
        """Fetch one intent, or None if it does not exist."""
        pass

    @abstractmethod
    async def update_response_meta(self, key: str, nonce: int, fee_rate: Decimal) -> bool:
        """
        Record the nonce and fee rate of the in-flight response attempt.

        Returns:
            True if written, False if the intent is already Confirmed

        Raises:
            IntentNotFoundError: If the intent does not exist
        """
        pass

    @abstractmethod
    async def clear_response_meta(self, key: str) -> bool:
        """
        Forget the stored nonce and fee rate.

        Returns:
            True if written, False if the intent is already Confirmed

        Raises:
            IntentNotFoundError: If the intent does not exist
        """
        pass

    @abstractmethod
    async def mark_confirmed(self, key: str, response_tx_hash: str) -> Intent:
        """
        Move an intent to Confirmed.

        Confirming again with the same hash is a no-op.

        Returns:
            The confirmed intent

        Raises:
            IntentNotFoundError: If the intent does not exist
            IntentCorruptionError: If it is already confirmed by another transaction
        """
        pass

    @abstractmethod
    async def mark_failed(self, key: str) -> bool:
        """
        Move an intent to Failed.

        Returns:
            True if written, False if the intent is already Confirmed

        Raises:
            IntentNotFoundError: If the intent does not exist
        """
        pass

    @abstractmethod
    async def list_intents(self, status: Optional[IntentStatus] = None) -> List[Intent]:
        """All intents, optionally filtered by status, ordered by block number."""
        pass

    async def list_pending(self) -> List[Intent]:
        """All intents that are not Confirmed (Pending and Failed), ordered by block number."""
        intents = await self.list_intents()
        return [intent for intent in intents if intent.status != IntentStatus.CONFIRMED]

    async def get_response_meta(self, key: str) -> Optional[ResponseMeta]:
        """The stored (nonce, fee rate) for an intent, or None if absent."""
        intent = await self.get(key)
        return intent.response_meta if intent else None

    @abstractmethod
    async def get_last_processed_block(self) -> int:
        """
        Resume cursor: every inbound event at or below this block has been
        recorded. 0 when nothing was ever recorded.

        This is not the highest block with an intent; intents are recorded out
        of block order when the backfill and the live feed run side by side.
        """
        pass

    @abstractmethod
    async def set_last_processed_block(self, block_number: int) -> bool:
        """
        Advance the resume cursor. The cursor never moves backwards.

        Returns:
            True if the cursor moved
        """
        pass

    async def close(self) -> None:
        """Release backend resources."""
        pass


def sort_intents(intents: List[Intent]) -> List[Intent]:
    return sorted(intents, key=lambda intent: (intent.block_number, intent.key))


# Transitions shared by the record-based backends. Each takes the current
# record (or None) and returns the record to write, or None for "no write".

def apply_create(existing: Optional[Intent], key: str, source_tx_hash: str, block_number: int) -> Optional[Intent]:
    if existing is None:
        return Intent.new(key=key, block_number=block_number, source_tx_hash=source_tx_hash)
    if existing.status == IntentStatus.CONFIRMED:
        raise PersistenceConflictError(f"Intent {key} is already confirmed")
    if existing.status == IntentStatus.FAILED:
        return existing.model_copy(update={
            "status": IntentStatus.PENDING,
            "response_nonce": None,
            "response_fee_rate": None,
            "updated_at": utcnow(),
        })
    return None


def apply_response_meta(existing: Optional[Intent], key: str, nonce: Optional[int],
                        fee_rate: Optional[Decimal]) -> Intent:
    if existing is None:
        raise IntentNotFoundError(f"Intent {key} does not exist")
    if existing.status == IntentStatus.CONFIRMED:
        raise PersistenceConflictError(f"Intent {key} is already confirmed")
    return existing.model_copy(update={
        "response_nonce": nonce,
        "response_fee_rate": fee_rate,
        "updated_at": utcnow(),
    })


def apply_confirm(existing: Optional[Intent], key: str, response_tx_hash: str) -> Optional[Intent]:
    if existing is None:
        raise IntentNotFoundError(f"Intent {key} does not exist")
    if existing.status == IntentStatus.CONFIRMED:
        if existing.response_tx_hash != response_tx_hash:
            raise IntentCorruptionError(key, existing.response_tx_hash, response_tx_hash)
        return None
    return existing.model_copy(update={
        "status": IntentStatus.CONFIRMED,
        "response_tx_hash": response_tx_hash,
        "updated_at": utcnow(),
    })


def apply_fail(existing: Optional[Intent], key: str) -> Intent:
    if existing is None:
        raise IntentNotFoundError(f"Intent {key} does not exist")
    if existing.status == IntentStatus.CONFIRMED:
        raise PersistenceConflictError(f"Intent {key} is already confirmed")
    return existing.model_copy(update={"status": IntentStatus.FAILED, "updated_at": utcnow()})


class RecordIntentStore(IntentStore):
    """
    Base for backends that can atomically read, transform and write one record.

    Subclasses provide ``_update`` and ``_scan``; the transition rules live here.
    """

    @abstractmethod
    async def _update(self, key: str, mutate: Callable[[Optional[Intent]], Optional[Intent]]) -> Optional[Intent]:
        """
        Atomically apply ``mutate`` to the current record of ``key``.

        The result is written unless it is None. Exceptions raised by
        ``mutate`` abort the write and propagate.

        Returns:
            The written intent, or None if nothing was written
        """
        pass

    @abstractmethod
    async def _scan(self) -> List[Intent]:
        """Every stored intent, in any order."""
        pass

    async def create_if_absent(self, key: str, source_tx_hash: str, block_number: int) -> bool:
        try:
            written = await self._update(
                key, lambda existing: apply_create(existing, key, source_tx_hash, block_number)
            )
        except PersistenceConflictError:
            logger.debug(f"Intent {key} already confirmed, create is a no-op")
            return False
        if written is None:
            logger.debug(f"Intent {key} already pending, create is a no-op")
            return False
        logger.info(f"Created pending intent {key} (block {block_number})")
        return True

    async def update_response_meta(self, key: str, nonce: int, fee_rate: Decimal) -> bool:
        return await self._write_meta(key, nonce, fee_rate)

    async def clear_response_meta(self, key: str) -> bool:
        return await self._write_meta(key, None, None)

    async def _write_meta(self, key: str, nonce: Optional[int], fee_rate: Optional[Decimal]) -> bool:
        try:
            await self._update(key, lambda existing: apply_response_meta(existing, key, nonce, fee_rate))
        except PersistenceConflictError:
            logger.info(f"Intent {key} already confirmed, ignoring response meta update")
            return False
        return True

    async def mark_confirmed(self, key: str, response_tx_hash: str) -> Intent:
        written = await self._update(key, lambda existing: apply_confirm(existing, key, response_tx_hash))
        if written is None:
            logger.debug(f"Intent {key} already confirmed by {response_tx_hash}")
            return await self.get(key)
        logger.info(f"Intent {key} confirmed by {response_tx_hash}")
        return written

    async def mark_failed(self, key: str) -> bool:
        try:
            await self._update(key, lambda existing: apply_fail(existing, key))
        except PersistenceConflictError:
            logger.info(f"Intent {key} already confirmed, not marking it failed")
            return False
        logger.warning(f"Intent {key} marked failed")
        return True

    async def list_intents(self, status: Optional[IntentStatus] = None) -> List[Intent]:
        intents = await self._scan()
        if status is not None:
            intents = [intent for intent in intents if intent.status == status]
        return sort_intents(intents)
