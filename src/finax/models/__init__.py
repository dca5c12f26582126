"""
Models package - Data models for Finax.

Contains:
- MasterWallet: The user's encrypted top-level wallet record
- SubWallet: Contract-scoped escrow accounts
- Invitation: Contract invitations and their lifecycle
- BalanceSnapshot: Immutable balance reads
- ContractSignature, SignResult: Contract attestation log
- LocalStore: JSON persistence
"""

from .master_wallet import MasterWallet
from .sub_wallet import SubWallet, ROLE_PARTY, ROLE_ARBITRATOR
from .invitation import (
    Invitation,
    ContractDetails,
    CONTRACT_TYPES,
    STATUS_PENDING,
    STATUS_ACCEPTED,
    STATUS_REJECTED,
    STATUS_EXPIRED,
)
from .balance import BalanceSnapshot, BalanceUpdate, SubWalletBalance, TokenAmount, WalletBalance
from .signature import ContractSignature, SignResult
from .store import LocalStore

__all__ = [
    "MasterWallet",
    "SubWallet",
    "ROLE_PARTY",
    "ROLE_ARBITRATOR",
    "Invitation",
    "ContractDetails",
    "CONTRACT_TYPES",
    "STATUS_PENDING",
    "STATUS_ACCEPTED",
    "STATUS_REJECTED",
    "STATUS_EXPIRED",
    "BalanceSnapshot",
    "BalanceUpdate",
    "SubWalletBalance",
    "TokenAmount",
    "WalletBalance",
    "ContractSignature",
    "SignResult",
    "LocalStore",
]
