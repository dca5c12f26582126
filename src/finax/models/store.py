"""
Local Store - JSON persistence for wallet data.

Files in the data directory (all written atomically, mode 0600):
- wallet.enc: encrypted master wallet record (opaque blob)
- sub_wallets.json: sub-wallet records (private keys are ciphertext)
- deactivated_sub_wallets.json: addresses removed by the user
- invitations.json: contract invitations
- contract_signatures.json: signature log
- settings.json: user preferences

Records are returned fresh from disk on every load so a caller can treat
the store as the durable tier behind its own in-memory index.
"""

import os
import json
import logging
from pathlib import Path
from typing import Any, Optional

from .invitation import Invitation
from .signature import ContractSignature
from .sub_wallet import SubWallet

# Secure file permissions (Unix only)
SECURE_FILE_MODE = 0o600  # Owner read/write only

WALLET_FILE = "wallet.enc"
SUB_WALLETS_FILE = "sub_wallets.json"
DEACTIVATED_FILE = "deactivated_sub_wallets.json"
INVITATIONS_FILE = "invitations.json"
SIGNATURES_FILE = "contract_signatures.json"
SETTINGS_FILE = "settings.json"


def _set_secure_permissions(filepath: Path) -> None:
    """Set restrictive file permissions on Unix systems."""
    if os.name == 'posix':
        try:
            os.chmod(filepath, SECURE_FILE_MODE)
        except OSError:
            pass

logger = logging.getLogger(__name__)


class LocalStore:
    """Manages on-disk storage of the custody engine's records."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.wallet_file = self.data_dir / WALLET_FILE
        self.sub_wallets_file = self.data_dir / SUB_WALLETS_FILE
        self.deactivated_file = self.data_dir / DEACTIVATED_FILE
        self.invitations_file = self.data_dir / INVITATIONS_FILE
        self.signatures_file = self.data_dir / SIGNATURES_FILE
        self.settings_file = self.data_dir / SETTINGS_FILE

        # Ensure data directory exists
        self.data_dir.mkdir(parents=True, exist_ok=True)

    # ============================================
    # Low-level I/O
    # ============================================

    def _write_text(self, filepath: Path, text: str) -> None:
        temp_path = filepath.with_suffix(filepath.suffix + '.tmp')
        with open(temp_path, 'w') as f:
            f.write(text)
        _set_secure_permissions(temp_path)
        temp_path.replace(filepath)
        _set_secure_permissions(filepath)

    def _write_json(self, filepath: Path, data: Any) -> None:
        self._write_text(filepath, json.dumps(data, indent=2))

    def _read_json(self, filepath: Path, default: Any) -> Any:
        if not filepath.exists():
            return default
        try:
            with open(filepath, "r") as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load {filepath.name}: {e}")
            return default

    # ============================================
    # Master wallet blob
    # ============================================

    def save_wallet_blob(self, blob: str) -> None:
        self._write_text(self.wallet_file, blob)

    def load_wallet_blob(self) -> Optional[str]:
        if not self.wallet_file.exists():
            return None
        blob = self.wallet_file.read_text().strip()
        return blob or None

    def has_wallet(self) -> bool:
        return self.wallet_file.exists()

    def delete_wallet_blob(self) -> None:
        if self.wallet_file.exists():
            self.wallet_file.unlink()

    # ============================================
    # Sub-wallets
    # ============================================

    def load_sub_wallets(self) -> list[SubWallet]:
        """All persisted sub-wallets. Malformed rows are skipped."""
        wallets = []
        for item in self._read_json(self.sub_wallets_file, []):
            try:
                wallets.append(SubWallet.from_dict(item))
            except (KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed sub-wallet record: {e}")
        return wallets

    def save_sub_wallets(self, wallets: list[SubWallet]) -> None:
        self._write_json(self.sub_wallets_file, [w.to_dict() for w in wallets])

    def load_deactivated(self) -> set[str]:
        """Lower-cased addresses the user has deactivated."""
        return {a.lower() for a in self._read_json(self.deactivated_file, [])}

    def add_deactivated(self, address: str) -> None:
        deactivated = self.load_deactivated()
        deactivated.add(address.lower())
        self._write_json(self.deactivated_file, sorted(deactivated))

    # ============================================
    # Invitations
    # ============================================

    def load_invitations(self) -> list[Invitation]:
        invitations = []
        for item in self._read_json(self.invitations_file, []):
            try:
                invitations.append(Invitation.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed invitation record: {e}")
        return invitations

    def save_invitations(self, invitations: list[Invitation]) -> None:
        self._write_json(self.invitations_file, [i.to_dict() for i in invitations])

    # ============================================
    # Contract signatures
    # ============================================

    def load_signatures(self) -> list[ContractSignature]:
        signatures = []
        for item in self._read_json(self.signatures_file, []):
            try:
                signatures.append(ContractSignature.from_dict(item))
            except (KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed signature record: {e}")
        return signatures

    def append_signature(self, signature: ContractSignature) -> None:
        signatures = self.load_signatures()
        signatures.append(signature)
        self._write_json(self.signatures_file, [s.to_dict() for s in signatures])

    # ============================================
    # Settings
    # ============================================

    def load_settings_data(self) -> dict:
        data = self._read_json(self.settings_file, {})
        if not isinstance(data, dict):
            logger.warning("Settings file is not an object, ignoring")
            return {}
        return data

    def save_settings_data(self, data: dict) -> None:
        self._write_json(self.settings_file, data)

    def clear(self) -> None:
        """Remove every file this store owns."""
        for filepath in (self.wallet_file, self.sub_wallets_file, self.deactivated_file,
                         self.invitations_file, self.signatures_file, self.settings_file):
            if filepath.exists():
                filepath.unlink()
