"""
Intent store backends.

``get_intent_store`` picks the backend named by the configuration.
"""
import logging

from ..config import RelayerConfig, StoreBackend
from .base import IntentStore, RecordIntentStore
from .file import FileIntentStore, default_store_path
from .memory import MemoryIntentStore

__all__ = [
    'IntentStore', 'RecordIntentStore', 'MemoryIntentStore', 'FileIntentStore',
    'default_store_path', 'get_intent_store'
]

logger = logging.getLogger(__name__)


def get_intent_store(config: RelayerConfig) -> IntentStore:
    """
    Build the intent store selected by ``config.store_backend``.

    Args:
        config: Relayer configuration

    Returns:
        Intent store instance
    """
    backend = config.store_backend
    if backend == StoreBackend.MEMORY:
        logger.warning("Using in-memory intent store: intents will not survive a restart")
        return MemoryIntentStore()
    if backend == StoreBackend.DYNAMODB:
        from .dynamodb import DynamoIntentStore
        logger.info(f"Using DynamoDB intent store (table {config.dynamodb_table}, region {config.aws_region})")
        return DynamoIntentStore(table_name=config.dynamodb_table, region=config.aws_region)
    store = FileIntentStore(config.store_path)
    logger.info(f"Using file intent store at {store.store_path}")
    return store
