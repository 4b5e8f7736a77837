"""
In-process intent store, for dry runs and tests.
"""
import threading
from typing import Callable, Dict, List, Optional

from ..models import Intent
from .base import RecordIntentStore


class MemoryIntentStore(RecordIntentStore):
    """
    Keeps intents in a dict for the lifetime of the process.

    Records are stored as plain dicts so callers never share a mutable
    object with the store.
    """

    def __init__(self):
        self._records: Dict[str, dict] = {}
        self._last_block = 0
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[Intent]:
        with self._lock:
            record = self._records.get(key)
        return Intent.from_record(record) if record else None

    async def _update(self, key: str, mutate: Callable[[Optional[Intent]], Optional[Intent]]) -> Optional[Intent]:
        with self._lock:
            record = self._records.get(key)
            updated = mutate(Intent.from_record(record) if record else None)
            if updated is not None:
                self._records[key] = updated.to_record()
        return updated

    async def _scan(self) -> List[Intent]:
        with self._lock:
            records = list(self._records.values())
        return [Intent.from_record(record) for record in records]

    async def get_last_processed_block(self) -> int:
        with self._lock:
            return self._last_block

    async def set_last_processed_block(self, block_number: int) -> bool:
        with self._lock:
            if block_number <= self._last_block:
                return False
            self._last_block = block_number
        return True
