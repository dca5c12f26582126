"""
Wallet package - Key custody for Finax.

Contains:
- SessionCache: Wipeable session credential cache
- SecretStore: Password-derived encryption
- KeyManager: Master wallet lifecycle
- SubWalletRegistry: Contract-scoped sub-wallets
- Signer: Network-bound transaction signing
"""

from .session import SessionCache, SessionPolicy
from .secret_store import SecretStore
from .signer import Signer
from .manager import KeyManager, FALLBACK_GAS_FEE
from .sub_wallets import SubWalletRegistry, Source

__all__ = [
    "SessionCache",
    "SessionPolicy",
    "SecretStore",
    "Signer",
    "KeyManager",
    "FALLBACK_GAS_FEE",
    "SubWalletRegistry",
    "Source",
]
