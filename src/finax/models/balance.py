"""
Balance models.

Snapshots are immutable point-in-time reads; a refresh produces a new one.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class TokenAmount:
    """An ERC-20 balance inside a snapshot."""
    symbol: str
    name: str
    address: str
    decimals: int
    raw: int                # Smallest unit
    amount: str             # Human-readable decimal string
    usd_value: Decimal = Decimal(0)


@dataclass(frozen=True)
class BalanceSnapshot:
    """Native and token balances of one address on one network."""
    subject_address: str    # Lower-cased
    network_id: int
    native_symbol: str
    native_raw: int         # Wei
    native_amount: str
    token_amounts: tuple[TokenAmount, ...]
    fetched_at: float       # Epoch seconds

    def age(self, now: float) -> float:
        return now - self.fetched_at

    def token(self, symbol: str) -> Optional[TokenAmount]:
        for token in self.token_amounts:
            if token.symbol == symbol:
                return token
        return None


@dataclass(frozen=True)
class BalanceUpdate:
    """Published to BalanceCache subscribers after every fresh fetch."""
    address: str
    network_id: int
    snapshot: BalanceSnapshot


@dataclass(frozen=True)
class SubWalletBalance:
    """Display balance of a sub-wallet: native plus the settlement token."""
    native: str
    token: str
    native_usd: Decimal
    token_usd: Decimal
    snapshot: Optional[BalanceSnapshot] = field(default=None, compare=False)


@dataclass(frozen=True)
class WalletBalance:
    """Master wallet native balance on one network."""
    network_id: int
    balance: str
    usd_value: Decimal
    symbol: str
