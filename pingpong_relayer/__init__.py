"""
Ping/pong relayer: answers each Ping event of a contract with exactly one Pong.
"""
from .alerts import OperatorAlerter
from .config import RelayerConfig, RetryPolicy, RetryStatePolicy, StoreBackend
from .events import EventSource
from .exceptions import (
    AlertKind, ConfigError, EventValidationError, GatewayUnavailableError,
    IntentCorruptionError, IntentNotFoundError, LiveFeedError,
    PersistenceConflictError, RelayerError, RetryExhaustedError, StoreError,
    SubmissionTimeoutError, TransactionError, TransientNetworkError,
    VerificationFailureError
)
from .gateway import ChainGateway, Web3ChainGateway, get_chain_gateway
from .models import (
    InboundEvent, Intent, IntentStatus, ResponseEvent, ResponseMeta,
    SubmittedTx, TransactionInfo, TxReceipt
)
from .orchestrator import LifecycleHandle, Orchestrator
from .reconciler import Reconciler
from .store import (
    FileIntentStore, IntentStore, MemoryIntentStore, get_intent_store
)
from .submitter import ResponseSubmitter, compute_backoff
from .version import __version__

__all__ = [
    "Orchestrator", "LifecycleHandle", "Reconciler", "ResponseSubmitter", "compute_backoff",
    "EventSource", "OperatorAlerter",
    "RelayerConfig", "RetryPolicy", "RetryStatePolicy", "StoreBackend",
    "IntentStore", "MemoryIntentStore", "FileIntentStore", "get_intent_store",
    "ChainGateway", "Web3ChainGateway", "get_chain_gateway",
    "Intent", "IntentStatus", "InboundEvent", "ResponseEvent", "ResponseMeta",
    "SubmittedTx", "TxReceipt", "TransactionInfo",
    "AlertKind", "RelayerError", "ConfigError", "TransientNetworkError", "SubmissionTimeoutError",
    "TransactionError", "EventValidationError", "StoreError", "IntentNotFoundError",
    "PersistenceConflictError", "IntentCorruptionError", "VerificationFailureError",
    "RetryExhaustedError", "GatewayUnavailableError", "LiveFeedError",
    "__version__",
]
