"""
Wallet settings - user preferences persisted in settings.json.
"""

import logging
from dataclasses import dataclass, asdict, fields

from .models.store import LocalStore
from .networks import DEFAULT_NETWORK, get_network
from .wallet.session import SessionPolicy

logger = logging.getLogger(__name__)

THEMES = ("light", "dark")
CURRENCIES = ("USD", "EUR", "GBP")

_KEY_MAP = {
    "selected_network_id": "selectedNetworkId",
    "theme": "theme",
    "currency": "currency",
    "auto_lock": "autoLock",
    "auto_lock_timeout": "autoLockTimeout",
}


@dataclass
class WalletSettings:
    """User preferences."""
    selected_network_id: int = DEFAULT_NETWORK
    theme: str = "light"                 # light | dark
    currency: str = "USD"                # USD | EUR | GBP
    auto_lock: bool = True
    auto_lock_timeout: int = 15          # Minutes

    def __post_init__(self):
        if self.theme not in THEMES:
            raise ValueError(f"Unknown theme: {self.theme}")
        if self.currency not in CURRENCIES:
            raise ValueError(f"Unknown currency: {self.currency}")
        if get_network(self.selected_network_id) is None:
            raise ValueError(f"Unknown network: {self.selected_network_id}")
        if self.auto_lock_timeout < 0:
            raise ValueError("auto_lock_timeout must be >= 0")

    def session_policy(self) -> SessionPolicy:
        """Session cache eviction policy implied by the auto-lock settings."""
        return SessionPolicy.from_auto_lock(self.auto_lock, self.auto_lock_timeout)

    def to_dict(self) -> dict:
        return {_KEY_MAP[k]: v for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: dict) -> "WalletSettings":
        kwargs = {}
        for f in fields(cls):
            key = _KEY_MAP[f.name]
            if key in data:
                kwargs[f.name] = data[key]
        return cls(**kwargs)


def load_settings(store: LocalStore) -> WalletSettings:
    """Load settings, falling back to defaults on a missing or invalid file."""
    data = store.load_settings_data()
    try:
        return WalletSettings.from_dict(data)
    except (TypeError, ValueError) as e:
        logger.warning(f"Invalid settings, using defaults: {e}")
        return WalletSettings()


def save_settings(store: LocalStore, settings: WalletSettings) -> None:
    store.save_settings_data(settings.to_dict())
