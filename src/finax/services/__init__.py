"""
Services package - Engine services for Finax.

Contains:
- NetworkProvider: Chain access with RPC fallback
- BalanceCache: Deduplicating balance reads
- InvitationLedger: Contract invitation lifecycle
- RemoteStore: REST client for durable records
"""

from .provider import ChainConnection, NetworkProvider, Web3NetworkProvider
from .balance_cache import BalanceCache
from .invitations import InvitationLedger
from .remote_store import RemoteStore

__all__ = [
    "ChainConnection",
    "NetworkProvider",
    "Web3NetworkProvider",
    "BalanceCache",
    "InvitationLedger",
    "RemoteStore",
]
