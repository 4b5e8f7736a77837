"""
Exceptions for the ping/pong relayer.

Every failure that concerns a single intent is raised as one of these so the
orchestrator can keep it scoped to that intent.
"""
from enum import Enum
from typing import Optional


class AlertKind(str, Enum):
    """
    Operator-visible conditions raised by the relayer.

    The values are used as the ``kind`` field of webhook alerts.
    """
    VERIFICATION_FAILURE = "VERIFICATION_FAILURE"
    RETRY_EXHAUSTED = "RETRY_EXHAUSTED"
    INVALID_EVENT = "INVALID_EVENT"
    LIVE_FEED_LOST = "LIVE_FEED_LOST"
    INTENT_CORRUPTION = "INTENT_CORRUPTION"


class RelayerError(Exception):
    """Base exception for relayer errors."""
    pass


class ConfigError(RelayerError):
    """Raised when the relayer configuration is incomplete or invalid."""
    pass


class TransientNetworkError(RelayerError):
    """Raised when an RPC or store call fails for a reason worth retrying."""
    pass


class SubmissionTimeoutError(RelayerError):
    """Raised when a submitted transaction is not mined within the confirmation timeout."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        self.tx_hash = tx_hash
        super().__init__(message)


class TransactionError(RelayerError):
    """Raised when building, signing or sending a transaction fails."""
    pass


class EventValidationError(RelayerError):
    """Raised for a malformed inbound event (missing block number or transaction hash)."""
    pass


class StoreError(RelayerError):
    """Raised when the intent store cannot complete an operation."""
    pass


class IntentNotFoundError(StoreError):
    """Raised when an operation targets an intent that was never created."""
    pass


class PersistenceConflictError(StoreError):
    """
    Raised by store backends when a conditional write is rejected because the
    intent is already confirmed.

    Callers treat this as a successful no-op.
    """
    pass


class IntentCorruptionError(StoreError):
    """Raised when an intent is confirmed twice with different response hashes."""

    def __init__(self, key: str, stored_hash: Optional[str], new_hash: str):
        self.key = key
        self.stored_hash = stored_hash
        self.new_hash = new_hash
        super().__init__(
            f"Intent {key} already confirmed by {stored_hash}, refusing to confirm with {new_hash}"
        )


class VerificationFailureError(RelayerError):
    """Raised when a response transaction succeeded but did not emit the expected response event."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        self.tx_hash = tx_hash
        super().__init__(message)


class RetryExhaustedError(RelayerError):
    """Raised when an intent could not be confirmed within the retry budget."""

    def __init__(self, message: str, attempts: int = 0, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(message)


class GatewayUnavailableError(RelayerError):
    """Raised when the chain gateway fails its health check."""
    pass


class LiveFeedError(RelayerError):
    """Raised when the live event feed loses its connection for good."""
    pass
