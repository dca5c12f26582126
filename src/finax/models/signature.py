"""
Contract signature log entries.
"""

from dataclasses import dataclass


@dataclass
class ContractSignature:
    """An EIP-191 attestation by the master wallet for one sub-wallet."""
    sub_wallet_address: str
    signer_address: str
    signature: str        # 0x hex
    message: str
    timestamp: str        # ISO format

    def to_dict(self) -> dict:
        return {
            "subWalletAddress": self.sub_wallet_address,
            "signerAddress": self.signer_address,
            "signature": self.signature,
            "message": self.message,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ContractSignature":
        return cls(
            sub_wallet_address=data["subWalletAddress"],
            signer_address=data["signerAddress"],
            signature=data["signature"],
            message=data.get("message", ""),
            timestamp=data.get("timestamp", ""),
        )


@dataclass
class SignResult:
    """Outcome of sign_contract."""
    is_fully_signed: bool
    funds_locked: bool
    signature: ContractSignature
