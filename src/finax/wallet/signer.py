"""
Signer - a key pair bound to one network's transport.

Builds, signs, broadcasts and confirms transactions through a
ChainConnection. A transaction is reported as sent only after its receipt
confirms success.
"""

import logging
from typing import Optional

from eth_abi import encode as abi_encode
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from web3 import Web3

from ..exceptions import CustodyError, TransactionFailedError
from ..networks import NetworkConfig
from ..services.provider import ChainConnection, describe_receipt
from ..utils import format_address

logger = logging.getLogger(__name__)

# transfer(address,uint256)
ERC20_TRANSFER_SELECTOR = Web3.keccak(text="transfer(address,uint256)")[:4]


def encode_erc20_transfer(to: str, amount: int) -> str:
    """Calldata for an ERC-20 transfer."""
    args = abi_encode(["address", "uint256"], [Web3.to_checksum_address(to), amount])
    return "0x" + (bytes(ERC20_TRANSFER_SELECTOR) + args).hex()


class Signer:
    """An account, optionally connected to a network."""

    def __init__(self, account: LocalAccount, network: Optional[NetworkConfig] = None,
                 connection: Optional[ChainConnection] = None):
        self._account = account
        self.network = network
        self.connection = connection

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def is_connected(self) -> bool:
        return self.connection is not None

    def connect(self, network: NetworkConfig, connection: ChainConnection) -> "Signer":
        """Return a copy of this signer bound to a network."""
        return Signer(self._account, network, connection)

    def sign_message(self, message: str | bytes) -> str:
        """EIP-191 personal-sign a message. Returns the 0x signature."""
        if isinstance(message, str):
            message = message.encode('utf-8')
        signed = self._account.sign_message(encode_defunct(primitive=message))
        return Web3.to_hex(signed.signature)

    # ============================================
    # Transactions
    # ============================================

    def _require_connection(self) -> ChainConnection:
        if self.connection is None or self.network is None:
            raise TransactionFailedError("Signer is not connected to a network")
        return self.connection

    async def send_transaction(self, to: str, value: int, gas_limit: Optional[int] = None,
                               data: Optional[str] = None) -> str:
        """Send value (wei) and/or calldata. Returns the confirmed tx hash."""
        connection = self._require_connection()
        tx = {
            "to": Web3.to_checksum_address(to),
            "value": value,
            "chainId": self.network.chain_id,
        }
        if data:
            tx["data"] = data

        try:
            tx["nonce"] = await connection.get_transaction_count(self.address)
            tx["gasPrice"] = await connection.get_gas_price()
            if gas_limit is None:
                gas_limit = await connection.estimate_gas({**tx, "from": self.address})
            tx["gas"] = gas_limit

            signed = self._account.sign_transaction(tx)
            tx_hash = await connection.send_raw_transaction(signed.raw_transaction)
            logger.info(f"Broadcast {tx_hash} from {format_address(self.address)} on {self.network.display_name}")
            receipt = await connection.wait_for_receipt(tx_hash)
        except CustodyError:
            raise
        except Exception as e:
            logger.error(f"Transaction from {format_address(self.address)} failed: {e}")
            raise TransactionFailedError(f"Transaction failed: {e}", cause=e) from e

        if receipt.get("status") != 1:
            logger.error(f"Transaction {tx_hash} reverted ({describe_receipt(receipt)})")
            raise TransactionFailedError(f"Transaction {tx_hash} reverted on-chain")

        logger.info(f"Confirmed {tx_hash} ({describe_receipt(receipt)})")
        return tx_hash

    async def send_token_transfer(self, token_address: str, to: str, amount: int,
                                  gas_limit: Optional[int] = None) -> str:
        """ERC-20 transfer of `amount` smallest units. Returns the confirmed tx hash."""
        return await self.send_transaction(
            token_address, 0, gas_limit=gas_limit, data=encode_erc20_transfer(to, amount)
        )

    def __repr__(self) -> str:
        network = self.network.name if self.network else "unbound"
        return f"<Signer {format_address(self.address)} {network}>"
