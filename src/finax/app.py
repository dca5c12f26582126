"""
Finax - Wallet & sub-wallet custody engine.

CustodyEngine is the composition root: it builds every component once and
wires them together. Nothing in the package is a module-level singleton.
"""

import logging
from pathlib import Path
from typing import Optional

from .models.store import LocalStore
from .services.balance_cache import DEFAULT_TTL, BalanceCache
from .services.invitations import InvitationLedger
from .services.logging import configure_logging
from .services.provider import NetworkProvider, Web3NetworkProvider
from .services.remote_store import RemoteStore
from .settings import WalletSettings, load_settings, save_settings
from .utils import get_app_dir, get_logs_dir
from .wallet.crypto import DEFAULT_KDF, KdfParams
from .wallet.manager import KeyManager
from .wallet.secret_store import SecretStore
from .wallet.session import SessionCache
from .wallet.sub_wallets import SubWalletRegistry

logger = logging.getLogger(__name__)


class CustodyEngine:
    """All custody components for one data directory and one session."""

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        provider: Optional[NetworkProvider] = None,
        remote: Optional[RemoteStore] = None,
        session: Optional[SessionCache] = None,
        kdf: KdfParams = DEFAULT_KDF,
        balance_ttl: float = DEFAULT_TTL,
    ):
        """
        Args:
            data_dir: Where records are stored (defaults to FINAX_HOME / ~/.finax)
            provider: Chain access (defaults to Web3NetworkProvider)
            remote: Remote durable store; None keeps everything local
            session: Session credential cache, shared across engine reloads
            kdf: Argon2id cost parameters for new ciphertexts
            balance_ttl: Seconds a balance snapshot stays fresh
        """
        self.data_dir = Path(data_dir) if data_dir else get_app_dir()
        self.store = LocalStore(self.data_dir)
        self.settings = load_settings(self.store)

        self.session = session if session is not None else SessionCache(self.settings.session_policy())
        self.provider = provider or Web3NetworkProvider()
        self.remote = remote

        self.secrets = SecretStore(self.session, kdf)
        self.balances = BalanceCache(self.provider, ttl=balance_ttl)
        self.invitations = InvitationLedger(self.store)
        self.keys = KeyManager(self.secrets, self.store, self.provider, self.balances,
                               default_network_id=self.settings.selected_network_id)
        self.sub_wallets = SubWalletRegistry(self.keys, self.secrets, self.store, self.provider,
                                             self.balances, self.invitations, self.remote)

    def update_settings(self, settings: WalletSettings) -> None:
        """Persist new settings and apply them to the running engine."""
        save_settings(self.store, settings)
        self.settings = settings
        self.session.policy = settings.session_policy()
        self.keys.default_network_id = settings.selected_network_id

    def lock(self) -> None:
        """Lock the master wallet and drop cached balances."""
        self.keys.lock_wallet()
        self.balances.clear_all_cache()

    async def close(self) -> None:
        """End the session: flush remote writes, wipe credentials, close clients."""
        await self.sub_wallets.flush_mirrors()
        self.lock()
        self.session.close()
        if self.remote is not None:
            await self.remote.aclose()


def create_engine(data_dir: Optional[Path] = None, remote_url: Optional[str] = None,
                  log_retention_days: int = 0, **kwargs) -> CustodyEngine:
    """Configure logging and build an engine with default collaborators."""
    base = Path(data_dir) if data_dir else get_app_dir()
    configure_logging(retention_days=log_retention_days, logs_dir=get_logs_dir(base))
    remote = RemoteStore(remote_url) if remote_url else None
    engine = CustodyEngine(data_dir=base, remote=remote, **kwargs)
    logger.info(f"Custody engine ready ({base})")
    return engine
