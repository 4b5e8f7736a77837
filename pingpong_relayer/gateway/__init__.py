"""
Chain gateway for the ping/pong relayer.

``get_chain_gateway`` builds the web3 gateway from the relayer configuration.
"""
from ..config import RelayerConfig
from ..exceptions import ConfigError
from ..models import same_address
from .base import (
    CORRELATION_ARG, INBOUND_EVENT, RESPONSE_EVENT, RESPONSE_FUNCTION,
    SIGNAL_FUNCTION, ChainGateway
)
from .web3_gateway import Signer, Web3ChainGateway

__all__ = [
    'ChainGateway', 'Web3ChainGateway', 'Signer', 'get_chain_gateway',
    'INBOUND_EVENT', 'RESPONSE_EVENT', 'RESPONSE_FUNCTION', 'SIGNAL_FUNCTION',
    'CORRELATION_ARG'
]


def get_chain_gateway(config: RelayerConfig) -> ChainGateway:
    """
    Build the chain gateway described by ``config``.

    Raises:
        ConfigError: If RPC URL, contract address or private key is missing,
            or the key does not belong to the configured responder address
    """
    config.require_chain()
    gateway = Web3ChainGateway(
        rpc_url=config.rpc_url,
        contract_address=config.contract_address,
        priv_key=config.private_key.get_secret_value(),
        chain_id=config.chain_id,
        max_block_range=config.log_chunk_size,
    )
    if config.responder_address and not same_address(config.responder_address, gateway.responder_address):
        raise ConfigError(
            f"Private key belongs to {gateway.responder_address}, "
            f"not the configured responder {config.responder_address}"
        )
    return gateway
