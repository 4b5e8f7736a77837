"""
Chain gateway interface.

The gateway is the only component that talks to the ledger. Everything it
returns is already normalized into the records of ``pingpong_relayer.models``.
"""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, List, Optional, Sequence

from ..models import InboundEvent, ResponseEvent, SubmittedTx, TransactionInfo, TxReceipt

# Event and function names of the Ping/Pong contract
INBOUND_EVENT = "Ping"
RESPONSE_EVENT = "Pong"
RESPONSE_FUNCTION = "pong"
SIGNAL_FUNCTION = "ping"
CORRELATION_ARG = "txHash"


class ChainGateway(ABC):
    """
    Abstract base class for ledger access.

    Implementations translate their own errors into the relayer taxonomy:
    ``SubmissionTimeoutError`` when a receipt wait runs out,
    ``TransientNetworkError`` for connectivity problems and
    ``TransactionError`` for any other failure while sending.
    """

    inbound_event: str = INBOUND_EVENT
    response_event: str = RESPONSE_EVENT
    response_function: str = RESPONSE_FUNCTION

    @property
    @abstractmethod
    def responder_address(self) -> str:
        """Address that signs response transactions."""
        pass

    @abstractmethod
    async def is_healthy(self) -> bool:
        """
        Check the ledger is reachable (and on the expected chain).

        Returns:
            True if the gateway can be used, False otherwise
        """
        pass

    @abstractmethod
    async def get_block_number(self) -> int:
        """Current head block number."""
        pass

    @abstractmethod
    async def query_events(self, event_type: str, from_block: int, to_block: Optional[int] = None) -> List[Any]:
        """
        Fetch contract events in ``[from_block, to_block]`` (to the head when None).

        Returns:
            InboundEvent records for the inbound event type, ResponseEvent
            records for the response event type, ascending by block
        """
        pass

    @abstractmethod
    async def submit_transaction(
        self,
        function_name: str,
        args: Sequence[Any],
        nonce: Optional[int] = None,
        fee_rate: Optional[Decimal] = None
    ) -> SubmittedTx:
        """
        Sign and send a contract call.

        Args:
            function_name: Contract function to call
            args: Positional call arguments
            nonce: Nonce to use; None lets the network assign the next one
            fee_rate: Fee rate (gas price, wei) to use; None uses the current network price

        Returns:
            Hash, nonce and fee rate of the sent transaction
        """
        pass

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        """
        Wait until a transaction is mined.

        Raises:
            SubmissionTimeoutError: If it is not mined within ``timeout`` seconds
        """
        pass

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        """Receipt of a mined transaction, or None if it is unknown or pending."""
        pass

    @abstractmethod
    async def get_transaction(self, tx_hash: str) -> Optional[TransactionInfo]:
        """Sender and nonce of a transaction, or None if it is unknown."""
        pass

    async def query_inbound_events(self, from_block: int, to_block: Optional[int] = None) -> List[InboundEvent]:
        return await self.query_events(self.inbound_event, from_block, to_block)

    async def query_response_events(self, from_block: int, to_block: Optional[int] = None) -> List[ResponseEvent]:
        return await self.query_events(self.response_event, from_block, to_block)

    async def submit_response(
        self,
        correlation: str,
        nonce: Optional[int] = None,
        fee_rate: Optional[Decimal] = None
    ) -> SubmittedTx:
        """Send the response transaction embedding ``correlation``."""
        return await self.submit_transaction(self.response_function, [correlation], nonce=nonce, fee_rate=fee_rate)

    async def close(self) -> None:
        """Release connections."""
        pass
