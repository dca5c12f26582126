"""
Master wallet record.

The persisted form of the user's top-level key pair. Only ciphertext is
stored; plaintext lives in session memory while the wallet is unlocked.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


@dataclass
class MasterWallet:
    """The user's single top-level wallet."""
    address: str
    display_name: str
    encrypted_private_key: str
    is_imported: bool
    created_at: str                         # ISO format
    encrypted_mnemonic: Optional[str] = None

    @classmethod
    def create(cls, address: str, display_name: str, encrypted_private_key: str,
               is_imported: bool, encrypted_mnemonic: Optional[str] = None) -> "MasterWallet":
        return cls(
            address=address,
            display_name=display_name,
            encrypted_private_key=encrypted_private_key,
            is_imported=is_imported,
            created_at=datetime.now(timezone.utc).isoformat(),
            encrypted_mnemonic=encrypted_mnemonic,
        )

    def to_dict(self) -> dict:
        data = {
            "address": self.address,
            "displayName": self.display_name,
            "encryptedPrivateKey": self.encrypted_private_key,
            "isImported": self.is_imported,
            "createdAt": self.created_at,
        }
        if self.encrypted_mnemonic:
            data["encryptedMnemonic"] = self.encrypted_mnemonic
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "MasterWallet":
        return cls(
            address=data["address"],
            display_name=data.get("displayName") or data.get("name") or "",
            encrypted_private_key=data["encryptedPrivateKey"],
            is_imported=bool(data.get("isImported", False)),
            created_at=data.get("createdAt", ""),
            encrypted_mnemonic=data.get("encryptedMnemonic"),
        )
