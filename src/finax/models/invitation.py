"""
Contract invitation model.

An offer from one wallet address to another to join a contract as a
sub-wallet holder.

Status lifecycle:
- pending: Awaiting a response
- accepted: Invitee accepted and created a sub-wallet
- rejected: Invitee declined
- expired: Still pending past expires_at (evaluated lazily on read)

Terminal states never change.
"""

import secrets
import string
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Optional

STATUS_PENDING = "pending"
STATUS_ACCEPTED = "accepted"
STATUS_REJECTED = "rejected"
STATUS_EXPIRED = "expired"

CONTRACT_TYPES = ("trade_finance", "escrow", "export_import")

INVITATION_TTL = timedelta(days=7)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp (accepts a trailing 'Z'); naive values are UTC."""
    if not isinstance(value, str):
        raise TypeError(f"Timestamp must be a string, got {type(value).__name__}")
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def generate_invitation_id(now: Optional[datetime] = None) -> str:
    """inv_<epoch ms>_<9 random base36 chars>"""
    millis = int((now.timestamp() if now else time.time()) * 1000)
    alphabet = string.digits + string.ascii_lowercase
    suffix = ''.join(secrets.choice(alphabet) for _ in range(9))
    return f"inv_{millis}_{suffix}"


@dataclass
class ContractDetails:
    """What the invitee is being asked to join."""
    title: str
    description: str = ""
    amount: str = "0"
    currency: str = "USDC"
    deadline: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "ContractDetails":
        return cls(
            title=data.get("title", ""),
            description=data.get("description", ""),
            amount=str(data.get("amount", "0")),
            currency=data.get("currency", "USDC"),
            deadline=data.get("deadline", ""),
        )


@dataclass
class Invitation:
    """An invitation to participate in a contract."""
    id: str
    inviter_address: str
    invitee_address: str
    contract_type: str                 # trade_finance | escrow | export_import
    contract_details: ContractDetails
    status: str                        # pending | accepted | rejected | expired
    expires_at: str                    # ISO format
    created_at: str                    # ISO format
    responded_at: Optional[str] = None

    @classmethod
    def create(cls, inviter_address: str, invitee_address: str, contract_type: str,
               contract_details: ContractDetails, now: Optional[datetime] = None) -> "Invitation":
        """Create a new pending invitation expiring in seven days."""
        if contract_type not in CONTRACT_TYPES:
            raise ValueError(f"Unknown contract type: {contract_type}")
        now = now or datetime.now(timezone.utc)
        return cls(
            id=generate_invitation_id(now),
            inviter_address=inviter_address,
            invitee_address=invitee_address,
            contract_type=contract_type,
            contract_details=contract_details,
            status=STATUS_PENDING,
            expires_at=(now + INVITATION_TTL).isoformat(),
            created_at=now.isoformat(),
        )

    def is_expired(self, now: datetime) -> bool:
        return now > parse_timestamp(self.expires_at)

    def effective_status(self, now: datetime) -> str:
        """Stored status, with a lapsed pending invitation reported as expired."""
        if self.status == STATUS_PENDING and self.is_expired(now):
            return STATUS_EXPIRED
        return self.status

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "inviterAddress": self.inviter_address,
            "inviteeAddress": self.invitee_address,
            "contractType": self.contract_type,
            "contractDetails": asdict(self.contract_details),
            "status": self.status,
            "expiresAt": self.expires_at,
            "createdAt": self.created_at,
        }
        if self.responded_at:
            data["respondedAt"] = self.responded_at
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Invitation":
        """Raises KeyError, TypeError or ValueError for unusable records."""
        parse_timestamp(data["expiresAt"])
        parse_timestamp(data["createdAt"])
        details = data.get("contractDetails") or {}
        if not isinstance(details, dict):
            raise TypeError("contractDetails must be an object")
        return cls(
            id=data["id"],
            inviter_address=data["inviterAddress"],
            invitee_address=data["inviteeAddress"],
            contract_type=data.get("contractType", "trade_finance"),
            contract_details=ContractDetails.from_dict(details),
            status=data.get("status", STATUS_PENDING),
            expires_at=data["expiresAt"],
            created_at=data["createdAt"],
            responded_at=data.get("respondedAt"),
        )
