"""
Finax - Wallet & sub-wallet custody engine for trade-finance contracts.
"""

from .app import CustodyEngine, create_engine

__version__ = "0.1.0"

__all__ = [
    "CustodyEngine",
    "create_engine",
]
