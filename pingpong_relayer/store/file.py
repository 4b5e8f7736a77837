"""
JSON file intent store.

Every read-modify-write happens under an exclusive portalocker lock, which
makes the conditional writes safe across threads and processes.
"""
import asyncio
import json
import logging
import os
import stat
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import appdirs
import portalocker

from ..exceptions import StoreError
from ..models import Intent
from .base import RecordIntentStore

logger = logging.getLogger(__name__)

APP_NAME = "pingpong-relayer"
LOCK_TIMEOUT = 10


def default_store_path() -> Path:
    """``intents.json`` in the platform's user data directory."""
    return Path(appdirs.user_data_dir(APP_NAME)) / "intents.json"


class FileIntentStore(RecordIntentStore):
    """Process-safe intent store backed by one JSON document."""

    def __init__(self, store_path: Optional[str] = None):
        """
        Initialize the file store.

        Args:
            store_path: Path of the JSON document (defaults to the user data dir)
        """
        self.store_path = Path(store_path) if store_path else default_store_path()
        self._ensure_file()

    def _ensure_file(self) -> None:
        directory = self.store_path.parent
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
            if os.name == 'posix':
                os.chmod(directory, stat.S_IRWXU)  # 0700

        if not self.store_path.exists():
            with portalocker.Lock(self._lock_path(), timeout=LOCK_TIMEOUT):
                if not self.store_path.exists():
                    self._write({"intents": {}})
        logger.debug(f"Using intent store file {self.store_path}")

    def _lock_path(self) -> str:
        return str(self.store_path) + '.lock'

    def _read(self) -> Dict[str, Any]:
        try:
            with open(self.store_path, 'r') as f:
                data = json.load(f)
        except FileNotFoundError:
            return {"intents": {}}
        except json.JSONDecodeError as e:
            # An unreadable store must not be mistaken for an empty one
            raise StoreError(f"Intent store {self.store_path} is corrupt: {e}")
        data.setdefault("intents", {})
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        tmp_path = self.store_path.with_suffix(self.store_path.suffix + '.tmp')
        with open(tmp_path, 'w') as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.store_path)

    def _locked(self, fn: Callable[[], Any]) -> Any:
        try:
            with portalocker.Lock(self._lock_path(), timeout=LOCK_TIMEOUT):
                return fn()
        except portalocker.LockException as e:
            raise StoreError(f"Could not lock intent store {self.store_path}: {e}")

    def _update_sync(self, key: str, mutate: Callable[[Optional[Intent]], Optional[Intent]]) -> Optional[Intent]:
        def transaction():
            data = self._read()
            record = data["intents"].get(key)
            updated = mutate(Intent.from_record(record) if record else None)
            if updated is not None:
                data["intents"][key] = updated.to_record()
                self._write(data)
            return updated
        return self._locked(transaction)

    def _scan_sync(self) -> List[Intent]:
        data = self._locked(self._read)
        return [Intent.from_record(record) for record in data["intents"].values()]

    async def get(self, key: str) -> Optional[Intent]:
        data = await asyncio.to_thread(self._locked, self._read)
        record = data["intents"].get(key)
        return Intent.from_record(record) if record else None

    async def _update(self, key: str, mutate: Callable[[Optional[Intent]], Optional[Intent]]) -> Optional[Intent]:
        return await asyncio.to_thread(self._update_sync, key, mutate)

    async def _scan(self) -> List[Intent]:
        return await asyncio.to_thread(self._scan_sync)

    def _advance_sync(self, block_number: int) -> bool:
        def transaction():
            data = self._read()
            if block_number <= data.get("lastProcessedBlock", 0):
                return False
            data["lastProcessedBlock"] = block_number
            self._write(data)
            return True
        return self._locked(transaction)

    async def get_last_processed_block(self) -> int:
        data = await asyncio.to_thread(self._locked, self._read)
        return data.get("lastProcessedBlock", 0)

    async def set_last_processed_block(self, block_number: int) -> bool:
        return await asyncio.to_thread(self._advance_sync, block_number)
