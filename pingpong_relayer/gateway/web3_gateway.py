"""
Web3 chain gateway for the Ping/Pong contract.
"""
import asyncio
import logging
import math
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence

from eth_account import Account
from eth_account.signers.base import BaseAccount
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import TimeExhausted, TransactionNotFound
from web3.logs import DISCARD

from ..exceptions import (
    EventValidationError, RelayerError, SubmissionTimeoutError,
    TransactionError, TransientNetworkError
)
from ..models import (
    InboundEvent, ResponseEvent, SubmittedTx, TransactionInfo, TxReceipt,
    normalize_hash, same_address
)
from .base import CORRELATION_ARG, ChainGateway

logger = logging.getLogger(__name__)

# Error text that marks a failure as connectivity rather than a rejected transaction
RETRYABLE_KEYWORDS = ("timeout", "timed out", "unavailable", "connection", "temporar", "overloaded", "429", "502", "503", "504")


class Signer(Protocol):
    """Protocol for custom signers"""
    address: str

    def sign_transaction(self, transaction_dict: Dict[str, Any]) -> Any:
        """Sign transaction and return signed tx object"""
        ...


def to_wei_price(fee_rate: Decimal) -> int:
    """Round a (possibly escalated, fractional) fee rate up to whole wei."""
    return int(math.ceil(Decimal(fee_rate)))


class Web3ChainGateway(ChainGateway):
    """
    Chain gateway over an AsyncWeb3 HTTP provider.

    Responses are legacy transactions priced with ``gasPrice``; that price is
    the fee rate the relayer stores and escalates.
    """

    PING_PONG_ABI = [
        {"inputs": [], "stateMutability": "nonpayable", "type": "constructor"},
        {"anonymous": False, "inputs": [{"indexed": False, "internalType": "address", "name": "pinger", "type": "address"}], "name": "NewPinger", "type": "event"},
        {"anonymous": False, "inputs": [], "name": "Ping", "type": "event"},
        {"anonymous": False, "inputs": [{"indexed": False, "internalType": "bytes32", "name": "txHash", "type": "bytes32"}], "name": "Pong", "type": "event"},
        {"inputs": [{"internalType": "address", "name": "_pinger", "type": "address"}], "name": "changePinger", "outputs": [], "stateMutability": "nonpayable", "type": "function"},
        {"inputs": [], "name": "ping", "outputs": [], "stateMutability": "nonpayable", "type": "function"},
        {"inputs": [], "name": "pinger", "outputs": [{"internalType": "address", "name": "", "type": "address"}], "stateMutability": "view", "type": "function"},
        {"inputs": [{"internalType": "bytes32", "name": "_txHash", "type": "bytes32"}], "name": "pong", "outputs": [], "stateMutability": "nonpayable", "type": "function"},
    ]

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        priv_key: Optional[str] = None,
        signer: Optional[Signer] = None,
        chain_id: Optional[int] = None,
        max_block_range: int = 2000,
        request_timeout: int = 30,
        poll_latency: float = 1.0,
        w3: Optional[AsyncWeb3] = None
    ):
        """
        Initialize the gateway.

        Args:
            rpc_url: Ethereum RPC endpoint URL
            contract_address: Ping/Pong contract address
            priv_key: Private key of the responder (optional if signer provided)
            signer: Custom signer object (optional if priv_key provided)
            chain_id: Expected chain id, checked by the health check when set
            max_block_range: Largest block span requested in one log query
            request_timeout: HTTP timeout for RPC calls in seconds
            poll_latency: Receipt polling interval in seconds
            w3: Pre-built AsyncWeb3 instance (skips provider construction)

        Raises:
            ValueError: If neither priv_key nor signer is provided
        """
        if not priv_key and not signer:
            raise ValueError("Either priv_key or signer must be provided")

        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self.max_block_range = max_block_range
        self.poll_latency = poll_latency

        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))

        self.account: Optional[BaseAccount] = None
        self.signer = signer
        if priv_key:
            self.account = Account.from_key(priv_key)

        self.contract_address = AsyncWeb3.to_checksum_address(contract_address)
        self.contract = self.w3.eth.contract(address=self.contract_address, abi=self.PING_PONG_ABI)

    @property
    def responder_address(self) -> str:
        if self.account:
            return self.account.address
        return self.signer.address

    async def is_healthy(self) -> bool:
        try:
            if not await self.w3.is_connected():
                logger.error(f"RPC endpoint {self.rpc_url} is not reachable")
                return False
            if self.chain_id is not None:
                actual = await self.w3.eth.chain_id
                if actual != self.chain_id:
                    logger.error(f"Chain ID mismatch: expected {self.chain_id} got {actual}")
                    return False
            head = await self.w3.eth.block_number
        except Exception as e:
            logger.error(f"Health check against {self.rpc_url} failed: {e}")
            return False
        logger.info(f"Connected to {self.rpc_url}, head block {head}")
        return True

    async def get_block_number(self) -> int:
        try:
            return await self.w3.eth.block_number
        except Exception as e:
            raise TransientNetworkError(f"Failed to read block number: {e}") from e

    async def query_events(self, event_type: str, from_block: int, to_block: Optional[int] = None) -> List[Any]:
        if to_block is None:
            to_block = await self.get_block_number()
        if from_block > to_block:
            return []

        event = getattr(self.contract.events, event_type)()
        results: List[Any] = []
        for start in range(from_block, to_block + 1, self.max_block_range):
            end = min(start + self.max_block_range - 1, to_block)
            try:
                logs = await event.get_logs(from_block=start, to_block=end)
            except Exception as e:
                raise TransientNetworkError(f"Failed to fetch {event_type} logs for blocks {start}-{end}: {e}") from e
            logger.debug(f"Fetched {len(logs)} {event_type} logs for blocks {start}-{end}")
            for entry in logs:
                try:
                    results.append(self._normalize_log(event_type, entry))
                except EventValidationError as e:
                    logger.error(f"Dropping malformed {event_type} log in blocks {start}-{end}: {e}")
        return results

    def _normalize_log(self, event_type: str, entry: Any) -> Any:
        if event_type == self.response_event:
            return ResponseEvent.from_raw(entry, correlation_arg=CORRELATION_ARG)
        return InboundEvent.from_raw(entry)

    async def submit_transaction(
        self,
        function_name: str,
        args: Sequence[Any],
        nonce: Optional[int] = None,
        fee_rate: Optional[Decimal] = None
    ) -> SubmittedTx:
        from_address = self.responder_address

        # 1. Nonce and price
        try:
            if nonce is None:
                nonce = await self.w3.eth.get_transaction_count(from_address, "pending")
            if fee_rate is None:
                fee_rate = Decimal(await self.w3.eth.gas_price)
        except Exception as e:
            raise self._translate_error(e, "Preparing transaction") from e
        gas_price = to_wei_price(fee_rate)

        # 2. Build
        try:
            tx = await getattr(self.contract.functions, function_name)(*args).build_transaction({
                "from": from_address,
                "nonce": nonce,
                "gasPrice": gas_price,
            })
        except Exception as e:
            raise self._translate_error(e, f"Building {function_name} transaction") from e

        # 3. Sign
        try:
            if self.account:
                signed_tx = self.account.sign_transaction(tx)
            else:
                signed_tx = self.signer.sign_transaction(tx)
        except Exception as e:
            logger.error(f"Transaction signing failed: {e}")
            raise TransactionError(f"Failed to sign transaction: {e}") from e

        # 4. Send
        try:
            tx_hash = await self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
        except Exception as e:
            logger.error(f"Failed to send {function_name} transaction (nonce {nonce}, gasPrice {gas_price}): {e}")
            raise self._translate_error(e, f"Sending {function_name} transaction") from e

        submitted = SubmittedTx(tx_hash=normalize_hash(tx_hash), nonce=nonce, fee_rate=Decimal(gas_price))
        logger.info(f"Transaction sent: {submitted.tx_hash} ({function_name}, nonce {nonce}, gasPrice {gas_price})")
        return submitted

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout, poll_latency=self.poll_latency
            )
        except TimeExhausted as e:
            raise SubmissionTimeoutError(f"Transaction {tx_hash} not mined within {timeout}s", tx_hash=tx_hash) from e
        except Exception as e:
            raise self._translate_error(e, f"Waiting for receipt of {tx_hash}") from e
        return self._convert_receipt(receipt)

    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        try:
            receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise TransientNetworkError(f"Failed to fetch receipt of {tx_hash}: {e}") from e
        return self._convert_receipt(receipt)

    async def get_transaction(self, tx_hash: str) -> Optional[TransactionInfo]:
        try:
            tx = await self.w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise TransientNetworkError(f"Failed to fetch transaction {tx_hash}: {e}") from e
        return TransactionInfo(tx_hash=normalize_hash(tx["hash"]), sender=tx["from"], nonce=tx["nonce"])

    def _convert_receipt(self, receipt: Any) -> TxReceipt:
        """
        Convert a web3 receipt into our TxReceipt, decoding the contract's
        response events.
        """
        events: List[ResponseEvent] = []
        decoded = getattr(self.contract.events, self.response_event)().process_receipt(receipt, errors=DISCARD)
        for entry in decoded:
            if not same_address(entry.get("address"), self.contract_address):
                continue
            try:
                event = ResponseEvent.from_raw(entry, correlation_arg=CORRELATION_ARG)
            except EventValidationError as e:
                logger.warning(f"Skipping undecodable {self.response_event} log: {e}")
                continue
            events.append(event.model_copy(update={
                "sender_address": receipt.get("from"),
                "receipt_status": receipt["status"],
            }))

        return TxReceipt(
            tx_hash=normalize_hash(receipt["transactionHash"]),
            block_number=receipt["blockNumber"],
            status=receipt["status"],
            from_address=receipt.get("from"),
            response_events=events,
        )

    def _translate_error(self, error: Exception, action: str) -> RelayerError:
        if isinstance(error, RelayerError):
            return error
        if isinstance(error, (asyncio.TimeoutError, ConnectionError, OSError)):
            return TransientNetworkError(f"{action} failed: {error}")
        text = str(error).lower()
        if any(token in text for token in RETRYABLE_KEYWORDS):
            return TransientNetworkError(f"{action} failed: {error}")
        return TransactionError(f"{action} failed: {error}")

    async def close(self) -> None:
        disconnect = getattr(self.w3.provider, "disconnect", None)
        if callable(disconnect):
            try:
                await disconnect()
            except Exception as e:
                logger.warning(f"Error closing RPC provider: {e}")
