"""
Sub-wallet model.

A contract-scoped key pair used as a dedicated escrow account. The private
key field is ciphertext everywhere it is stored.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

ROLE_PARTY = "party"
ROLE_ARBITRATOR = "arbitrator"


@dataclass
class SubWallet:
    """A contract-scoped escrow account."""
    address: str
    name: str                         # Human-readable, derived from the contract
    encrypted_private_key: str
    contract_id: str
    purpose: str
    main_wallet_address: str          # Owning master wallet
    created_at: str                   # ISO format
    contract_signed: bool = False
    signed_at: Optional[str] = None
    contract_role: str = ROLE_PARTY

    @staticmethod
    def build_name(contract_id: str, purpose: str, title: Optional[str] = None) -> str:
        """Display name: '<title> - <purpose>' or 'Contract <id8> - <purpose>'."""
        if title:
            return f"{title} - {purpose}"
        return f"Contract {contract_id[:8]} - {purpose}"

    @classmethod
    def create(cls, address: str, encrypted_private_key: str, contract_id: str, purpose: str,
               main_wallet_address: str, title: Optional[str] = None,
               contract_role: str = ROLE_PARTY) -> "SubWallet":
        return cls(
            address=address,
            name=cls.build_name(contract_id, purpose, title),
            encrypted_private_key=encrypted_private_key,
            contract_id=contract_id,
            purpose=purpose,
            main_wallet_address=main_wallet_address,
            created_at=datetime.now(timezone.utc).isoformat(),
            contract_role=contract_role,
        )

    def mark_signed(self, when: Optional[str] = None) -> None:
        self.contract_signed = True
        self.signed_at = when or datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> dict:
        """Record format shared by the local snapshot and the remote store."""
        data = {
            "address": self.address,
            "name": self.name,
            "encryptedPrivateKey": self.encrypted_private_key,
            "contractId": self.contract_id,
            "purpose": self.purpose,
            "mainWalletAddress": self.main_wallet_address,
            "createdAt": self.created_at,
            "contractSigned": self.contract_signed,
            "contractRole": self.contract_role,
        }
        if self.signed_at:
            data["signedAt"] = self.signed_at
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "SubWallet":
        return cls(
            address=data["address"],
            name=data.get("name", ""),
            encrypted_private_key=data["encryptedPrivateKey"],
            contract_id=data["contractId"],
            purpose=data.get("purpose", ""),
            main_wallet_address=data["mainWalletAddress"],
            created_at=data.get("createdAt") or datetime.now(timezone.utc).isoformat(),
            contract_signed=bool(data.get("contractSigned", False)),
            signed_at=data.get("signedAt"),
            contract_role=data.get("contractRole") or ROLE_PARTY,
        )
