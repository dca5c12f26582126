"""
Network Provider - the only way the engine talks to a chain.

`NetworkProvider.get_connection(chain_id)` hands back a `ChainConnection`
bound to one working RPC endpoint, or raises NoProviderError. Endpoint
selection and fallback live here, not in the callers.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from ..exceptions import NoProviderError
from ..networks import ERC20_ABI, RPC_FALLBACKS, get_network_by_chain_id

logger = logging.getLogger(__name__)

# Seconds allowed for an endpoint to answer eth_blockNumber during fallback checks
PROBE_TIMEOUT = 5.0

# Seconds to wait for a receipt after broadcasting
RECEIPT_TIMEOUT = 120.0


class ChainConnection(ABC):
    """Async read/write surface of a single chain."""

    chain_id: int

    @abstractmethod
    async def get_balance(self, address: str) -> int:
        """Native balance in wei."""

    @abstractmethod
    async def get_token_balance(self, token_address: str, owner: str) -> int:
        """ERC-20 balance in the token's smallest unit."""

    @abstractmethod
    async def get_token_decimals(self, token_address: str) -> int:
        ...

    @abstractmethod
    async def get_gas_price(self) -> int:
        ...

    @abstractmethod
    async def estimate_gas(self, tx: dict) -> int:
        ...

    @abstractmethod
    async def get_transaction_count(self, address: str) -> int:
        """Next nonce, counting pending transactions."""

    @abstractmethod
    async def send_raw_transaction(self, raw_transaction: bytes) -> str:
        """Broadcast a signed transaction. Returns the 0x tx hash."""

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: str) -> dict:
        ...


class NetworkProvider(ABC):
    """Hands out working chain connections."""

    @abstractmethod
    async def get_connection(self, chain_id: int) -> ChainConnection:
        """Raises NoProviderError when no endpoint for chain_id works."""

    def invalidate(self, chain_id: int) -> None:
        """Forget any cached connection for chain_id."""


# ============================================
# web3.py implementation
# ============================================

class Web3ChainConnection(ChainConnection):
    """ChainConnection over an AsyncWeb3 HTTP endpoint."""

    def __init__(self, w3: AsyncWeb3, chain_id: int, rpc_url: str):
        self.w3 = w3
        self.chain_id = chain_id
        self.rpc_url = rpc_url

    def _token(self, token_address: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_ABI)

    async def get_balance(self, address: str) -> int:
        return await self.w3.eth.get_balance(Web3.to_checksum_address(address))

    async def get_token_balance(self, token_address: str, owner: str) -> int:
        contract = self._token(token_address)
        return await contract.functions.balanceOf(Web3.to_checksum_address(owner)).call()

    async def get_token_decimals(self, token_address: str) -> int:
        return await self._token(token_address).functions.decimals().call()

    async def get_gas_price(self) -> int:
        return await self.w3.eth.gas_price

    async def estimate_gas(self, tx: dict) -> int:
        return await self.w3.eth.estimate_gas(tx)

    async def get_transaction_count(self, address: str) -> int:
        return await self.w3.eth.get_transaction_count(Web3.to_checksum_address(address), "pending")

    async def send_raw_transaction(self, raw_transaction: bytes) -> str:
        tx_hash = await self.w3.eth.send_raw_transaction(raw_transaction)
        return Web3.to_hex(tx_hash)

    async def wait_for_receipt(self, tx_hash: str) -> dict:
        receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=RECEIPT_TIMEOUT)
        return dict(receipt)


class Web3NetworkProvider(NetworkProvider):
    """Probes fallback RPC endpoints and caches the first one that answers."""

    def __init__(self, custom_rpcs: Optional[dict[int, str]] = None,
                 fallbacks: Optional[dict[int, list[str]]] = None):
        """
        Args:
            custom_rpcs: chain_id -> RPC URL tried before the built-in list
            fallbacks: chain_id -> RPC URLs (defaults to RPC_FALLBACKS)
        """
        self.custom_rpcs = custom_rpcs or {}
        self.fallbacks = fallbacks if fallbacks is not None else RPC_FALLBACKS
        self._connections: dict[int, Web3ChainConnection] = {}

    def _candidate_urls(self, chain_id: int) -> list[str]:
        urls = list(self.fallbacks.get(chain_id, []))
        network = get_network_by_chain_id(chain_id)
        if network and network.rpc_url not in urls:
            urls.append(network.rpc_url)
        custom = self.custom_rpcs.get(chain_id)
        if custom:
            urls = [custom] + [u for u in urls if u != custom]
        return urls

    async def get_connection(self, chain_id: int) -> ChainConnection:
        cached = self._connections.get(chain_id)
        if cached is not None:
            return cached

        for rpc_url in self._candidate_urls(chain_id):
            w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
            try:
                await asyncio.wait_for(w3.eth.block_number, timeout=PROBE_TIMEOUT)
            except Exception as e:
                logger.info(f"RPC {rpc_url} unavailable: {e}")
                continue
            logger.info(f"Working RPC for chain {chain_id}: {rpc_url}")
            connection = Web3ChainConnection(w3, chain_id, rpc_url)
            self._connections[chain_id] = connection
            return connection

        logger.error(f"No working RPC found for chain {chain_id}")
        raise NoProviderError(chain_id)

    def invalidate(self, chain_id: int) -> None:
        self._connections.pop(chain_id, None)


def describe_receipt(receipt: dict[str, Any]) -> str:
    """Short log form of a receipt."""
    return f"block {receipt.get('blockNumber')} status {receipt.get('status')}"
