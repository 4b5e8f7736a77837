"""
Data models for the ping/pong relayer.

Every event or receipt that crosses the chain gateway boundary is normalized
into one of these records; nothing downstream looks at raw web3 structures.
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .exceptions import EventValidationError


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def normalize_hash(value: Any) -> str:
    """
    Normalize a transaction hash or bytes32 value to a lower-case 0x string.

    Args:
        value: bytes, HexBytes or hex string (with or without 0x prefix)

    Returns:
        Lower-case hex string with 0x prefix

    Raises:
        ValueError: If the value is empty or not hex
    """
    if isinstance(value, (bytes, bytearray)):
        if not value:
            raise ValueError("Empty hash")
        return "0x" + bytes(value).hex()
    if not isinstance(value, str) or not value:
        raise ValueError(f"Cannot normalize hash from {type(value).__name__}")
    text = value.lower()
    if text.startswith("0x"):
        text = text[2:]
    int(text, 16)  # raises ValueError on non-hex input
    return "0x" + text


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    """Compare two addresses ignoring checksum casing."""
    if not a or not b:
        return False
    return a.lower() == b.lower()


def _lookup(raw: Any, name: str) -> Any:
    if isinstance(raw, Mapping):
        return raw.get(name)
    return getattr(raw, name, None)


class IntentStatus(str, Enum):
    """Lifecycle state of an intent."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ResponseMeta(BaseModel):
    """Nonce and fee rate of the response attempt currently in flight."""
    model_config = ConfigDict(frozen=True)

    nonce: int
    fee_rate: Decimal


class Intent(BaseModel):
    """
    Durable record of an inbound event that still owes (or owed) a response.

    Stored with camelCase field names (``sourceTxHash``, ``responseNonce`` ...)
    so every backend shares one schema.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    key: str
    block_number: int
    source_tx_hash: str
    response_tx_hash: Optional[str] = None
    response_nonce: Optional[int] = None
    response_fee_rate: Optional[Decimal] = None
    status: IntentStatus = IntentStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def new(cls, key: str, block_number: int, source_tx_hash: str) -> "Intent":
        now = utcnow()
        return cls(
            key=key,
            block_number=block_number,
            source_tx_hash=source_tx_hash,
            created_at=now,
            updated_at=now,
        )

    @property
    def response_meta(self) -> Optional[ResponseMeta]:
        """The stored (nonce, fee rate) pair, or None when no attempt is recorded."""
        if self.response_nonce is None or self.response_fee_rate is None:
            return None
        return ResponseMeta(nonce=self.response_nonce, fee_rate=self.response_fee_rate)

    @property
    def is_confirmed(self) -> bool:
        return self.status == IntentStatus.CONFIRMED

    def to_record(self) -> Dict[str, Any]:
        """JSON-ready dictionary using the stored field names."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Intent":
        return cls.model_validate(dict(record))


class InboundEvent(BaseModel):
    """A signal event (Ping) observed on-chain."""
    model_config = ConfigDict(frozen=True)

    block_number: int
    transaction_hash: str
    args: Dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> str:
        """Intent key for this event."""
        return self.transaction_hash

    @classmethod
    def from_raw(cls, raw: Any) -> "InboundEvent":
        """
        Build an event from any of the shapes the chain or the store hands out.

        Accepted shapes are a web3 log entry (``blockNumber``/``transactionHash``
        at the top level), a wrapper carrying the entry under ``log``, and a
        stored record carrying ``sourceTxHash`` or ``pingTxHash``.

        Raises:
            EventValidationError: If block number or transaction hash is missing
        """
        if raw is None:
            raise EventValidationError("Invalid event data: event is empty")

        nested = _lookup(raw, "log")
        block_number = _lookup(raw, "blockNumber")
        if block_number is None and nested is not None:
            block_number = _lookup(nested, "blockNumber")

        tx_hash = _lookup(raw, "transactionHash")
        if tx_hash is None and nested is not None:
            tx_hash = _lookup(nested, "transactionHash")
        if tx_hash is None:
            tx_hash = _lookup(raw, "sourceTxHash") or _lookup(raw, "pingTxHash")

        if block_number is None or not tx_hash:
            raise EventValidationError("Invalid event data: missing blockNumber or txHash")

        try:
            normalized = normalize_hash(tx_hash)
            block = int(block_number)
        except (TypeError, ValueError) as e:
            raise EventValidationError(f"Invalid event data: {e}")
        if block < 0:
            raise EventValidationError(f"Invalid event data: negative block number {block}")

        args = _lookup(raw, "args") or {}
        return cls(block_number=block, transaction_hash=normalized, args=dict(args))


class ResponseEvent(BaseModel):
    """
    A response event (Pong) observed on-chain.

    ``sender_address`` and ``receipt_status`` are filled in lazily by the
    reconciler, since the log itself carries neither.
    """
    block_number: int
    transaction_hash: str
    correlation: str
    sender_address: Optional[str] = None
    receipt_status: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.receipt_status == 1

    @classmethod
    def from_raw(cls, raw: Any, correlation_arg: str = "txHash") -> "ResponseEvent":
        """
        Build a response event from a decoded web3 log entry.

        Raises:
            EventValidationError: If the entry lacks the correlation argument
        """
        args = _lookup(raw, "args") or {}
        correlation = args.get(correlation_arg) if isinstance(args, Mapping) else None
        block_number = _lookup(raw, "blockNumber")
        tx_hash = _lookup(raw, "transactionHash")
        if correlation is None or block_number is None or tx_hash is None:
            raise EventValidationError(f"Response event is missing '{correlation_arg}', blockNumber or txHash")
        try:
            return cls(
                block_number=int(block_number),
                transaction_hash=normalize_hash(tx_hash),
                correlation=normalize_hash(correlation),
            )
        except (TypeError, ValueError) as e:
            raise EventValidationError(f"Invalid response event: {e}")


class SubmittedTx(BaseModel):
    """A response transaction accepted by the network."""
    tx_hash: str
    nonce: int
    fee_rate: Decimal


class TxReceipt(BaseModel):
    """Transaction receipt reduced to what the relayer checks."""
    tx_hash: str
    block_number: int
    status: int
    from_address: Optional[str] = None
    response_events: List[ResponseEvent] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    def emits_response_for(self, correlation: str) -> bool:
        """True if the receipt carries a response event for ``correlation``."""
        wanted = normalize_hash(correlation)
        return any(event.correlation == wanted for event in self.response_events)


class TransactionInfo(BaseModel):
    """Sender and nonce of a mined or pending transaction."""
    tx_hash: str
    sender: str
    nonce: int
