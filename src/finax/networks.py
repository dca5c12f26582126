"""
Finax Networks - Chain, token and price configuration.

Network ids are the application's own identifiers (1, 2, ...); each maps to
an EVM chain id. Supports Base Sepolia and Ethereum Sepolia.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, localcontext
from typing import Optional

# ============================================
# Network Configurations
# ============================================

@dataclass(frozen=True)
class NetworkConfig:
    """Configuration for a blockchain network."""
    id: int
    chain_id: int
    name: str
    display_name: str
    rpc_url: str
    explorer_url: str
    is_testnet: bool
    native_symbol: str
    native_decimals: int = 18


NETWORKS = {
    # Base Sepolia Testnet
    1: NetworkConfig(
        id=1,
        chain_id=84532,
        name="base-sepolia",
        display_name="Base Sepolia",
        rpc_url="https://sepolia.base.org",
        explorer_url="https://sepolia.basescan.org",
        is_testnet=True,
        native_symbol="ETH",
    ),
    # Ethereum Sepolia Testnet
    2: NetworkConfig(
        id=2,
        chain_id=11155111,
        name="sepolia",
        display_name="Ethereum Sepolia",
        rpc_url="https://sepolia.drpc.org",
        explorer_url="https://sepolia.etherscan.io",
        is_testnet=True,
        native_symbol="ETH",
    ),
}

DEFAULT_NETWORK = 1  # Base Sepolia

# Fallback RPC endpoints, tried in order (chain_id -> urls)
RPC_FALLBACKS = {
    84532: [
        "https://sepolia.base.org",
        "https://base-sepolia.blockpi.network/v1/rpc/public",
    ],
    11155111: [
        "https://sepolia.drpc.org",
        "https://ethereum-sepolia.blockpi.network/v1/rpc/public",
        "https://sepolia.gateway.tenderly.co",
    ],
}


# ============================================
# Token Configurations
# ============================================

@dataclass(frozen=True)
class TokenConfig:
    """Configuration for an ERC-20 token."""
    symbol: str
    name: str
    decimals: int
    addresses: dict[int, str] = field(default_factory=dict)  # network id -> contract address


TOKENS = {
    "USDC": TokenConfig(
        symbol="USDC",
        name="USD Coin",
        decimals=6,
        addresses={
            1: "0x036CbD53842c5426634e7929541eC2318f3dCF7e",  # Base Sepolia
            2: "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",  # Ethereum Sepolia
        }
    ),
}

# Fixed USD price table (native symbol or token symbol -> USD)
USD_PRICES = {
    "ETH": Decimal("2400"),
    "MATIC": Decimal("0.8"),
    "BNB": Decimal("320"),
    "USDC": Decimal("1.00"),
}

# Gas limit of a plain value transfer
NATIVE_TRANSFER_GAS = 21000

# Minimal ERC-20 ABI for balance checks and transfers
ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function"
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function"
    },
    {
        "constant": False,
        "inputs": [
            {"name": "_to", "type": "address"},
            {"name": "_value", "type": "uint256"}
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function"
    },
]


# ============================================
# Utility Functions
# ============================================

def get_network(network_id: int) -> Optional[NetworkConfig]:
    """Get network config by network id, falling back to chain id."""
    network = NETWORKS.get(network_id)
    if network is None:
        network = get_network_by_chain_id(network_id)
    return network


def get_network_by_chain_id(chain_id: int) -> Optional[NetworkConfig]:
    """Get network config by EVM chain id."""
    for network in NETWORKS.values():
        if network.chain_id == chain_id:
            return network
    return None


def get_tokens_for_network(network_id: int) -> list[TokenConfig]:
    """Tokens deployed on a network."""
    return [t for t in TOKENS.values() if network_id in t.addresses]


def get_token(network_id: int, symbol: str) -> Optional[TokenConfig]:
    """Get a token by symbol if it is deployed on the network."""
    token = TOKENS.get(symbol.upper())
    if token is None or network_id not in token.addresses:
        return None
    return token


def get_usd_price(symbol: str) -> Decimal:
    """USD price for a symbol (0 when unknown)."""
    return USD_PRICES.get(symbol.upper(), Decimal(0))


# Enough digits for any uint256 amount
DECIMAL_PRECISION = 80


def to_base_units(amount: str | int | Decimal, decimals: int) -> int:
    """Convert a human amount ("1.5") into the smallest unit."""
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        try:
            value = Decimal(str(amount))
        except InvalidOperation as e:
            raise ValueError(f"Invalid amount: {amount!r}") from e
        if not value.is_finite() or value < 0:
            raise ValueError(f"Invalid amount: {amount!r}")
        scaled = value.scaleb(decimals)
        if scaled != scaled.to_integral_value():
            raise ValueError(f"Amount {amount} has more than {decimals} decimals")
        return int(scaled)


def from_base_units(raw: int, decimals: int) -> str:
    """Convert a smallest-unit integer into a normalized decimal string."""
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        value = Decimal(raw).scaleb(-decimals)
        text = format(value.normalize(), "f")
    return text if text != "-0" else "0"
