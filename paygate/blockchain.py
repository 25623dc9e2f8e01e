from typing import Optional, Protocol

import httpx
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from paygate.config import NetworkConfig
from paygate.schemas import ErrorKind, TransferEffect

# keccak("Transfer(address,address,uint256)")
TRANSFER_EVENT_TOPIC = Web3.to_hex(Web3.keccak(text="Transfer(address,address,uint256)"))


class ChainAdapterError(Exception):
    """Raised by a chain adapter when a transaction cannot be turned into a transfer effect."""

    def __init__(self, kind: ErrorKind, detail: str = ""):
        super().__init__(detail or kind.value)
        self.kind = kind
        self.detail = detail


class ChainAdapter(Protocol):
    config: NetworkConfig

    async def fetch_transfer_effect(
        self, reference: str, expected_recipient: Optional[str] = None
    ) -> TransferEffect:
        ...


def get_web3_provider(config: NetworkConfig) -> AsyncWeb3:
    """Get an async Web3 provider for an EVM network."""
    if not config.rpc_url:
        raise ValueError(f"No RPC URL configured for network {config.network.value}")
    return AsyncWeb3(AsyncHTTPProvider(config.rpc_url))


def get_solana_client(config: NetworkConfig, timeout: float) -> httpx.AsyncClient:
    """Get an HTTP client for Solana JSON-RPC calls."""
    if not config.rpc_url:
        raise ValueError(f"No RPC URL configured for network {config.network.value}")
    return httpx.AsyncClient(
        timeout=timeout,
        headers={"Content-Type": "application/json"},
    )
