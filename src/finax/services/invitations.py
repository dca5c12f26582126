"""
Invitation Ledger - contract invitations and their lifecycle.

pending --accept--> accepted
pending --reject--> rejected
pending --(now > expires_at)--> expired   (applied when read)

Accepted, rejected and expired invitations never change again.
"""

import logging
from datetime import datetime, timezone
from typing import Callable

from ..exceptions import InvitationAlreadyProcessedError, InvitationNotFoundError
from ..models.invitation import (
    ContractDetails,
    Invitation,
    STATUS_ACCEPTED,
    STATUS_EXPIRED,
    STATUS_PENDING,
    STATUS_REJECTED,
)
from ..models.store import LocalStore
from ..utils import format_address, normalize_address

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InvitationLedger:
    """Stores invitations and enforces monotonic status transitions."""

    def __init__(self, store: LocalStore, clock: Callable[[], datetime] = _utc_now):
        self.store = store
        self._clock = clock
        self._invitations: dict[str, Invitation] = {
            inv.id: inv for inv in store.load_invitations()
        }

    def _save(self) -> None:
        self.store.save_invitations(list(self._invitations.values()))

    def _require(self, invitation_id: str) -> Invitation:
        invitation = self._invitations.get(invitation_id)
        if invitation is None:
            raise InvitationNotFoundError(invitation_id)
        return invitation

    # ============================================
    # Queries
    # ============================================

    def get(self, invitation_id: str) -> Invitation:
        """Invitation with its expiry applied."""
        invitation = self._require(invitation_id)
        status = invitation.effective_status(self._clock())
        if status != invitation.status:
            invitation.status = status
            self._save()
        return invitation

    def list_pending(self, address: str) -> list[Invitation]:
        """Pending invitations addressed to `address`, expiry applied first."""
        self.sweep_expired()
        target = normalize_address(address)
        return [
            inv for inv in self._invitations.values()
            if inv.status == STATUS_PENDING and normalize_address(inv.invitee_address) == target
        ]

    def all(self) -> list[Invitation]:
        self.sweep_expired()
        return list(self._invitations.values())

    def sweep_expired(self) -> int:
        """Persist the expired status of every lapsed pending invitation."""
        now = self._clock()
        expired = 0
        for invitation in self._invitations.values():
            if invitation.effective_status(now) == STATUS_EXPIRED and invitation.status == STATUS_PENDING:
                invitation.status = STATUS_EXPIRED
                expired += 1
        if expired:
            logger.info(f"Expired {expired} invitation(s)")
            self._save()
        return expired

    # ============================================
    # Transitions
    # ============================================

    def create(self, inviter_address: str, invitee_address: str, contract_type: str,
               details: ContractDetails) -> Invitation:
        invitation = Invitation.create(inviter_address, invitee_address, contract_type,
                                       details, now=self._clock())
        self._invitations[invitation.id] = invitation
        self._save()
        logger.info(f"Invitation {invitation.id} sent to {format_address(invitee_address)}")
        return invitation

    def require_pending(self, invitation_id: str) -> Invitation:
        """The invitation, if it can still be answered."""
        invitation = self.get(invitation_id)
        if invitation.status != STATUS_PENDING:
            raise InvitationAlreadyProcessedError(invitation_id, invitation.status)
        return invitation

    def _respond(self, invitation_id: str, status: str) -> Invitation:
        invitation = self.require_pending(invitation_id)
        invitation.status = status
        invitation.responded_at = self._clock().isoformat()
        self._save()
        logger.info(f"Invitation {invitation_id} {status}")
        return invitation

    def accept(self, invitation_id: str) -> Invitation:
        return self._respond(invitation_id, STATUS_ACCEPTED)

    def reject(self, invitation_id: str) -> Invitation:
        return self._respond(invitation_id, STATUS_REJECTED)

    def merge_remote(self, records: list[dict]) -> int:
        """Add invitations fetched from the remote store. Known ids are kept as-is."""
        added = 0
        for record in records:
            try:
                invitation = Invitation.from_dict(record)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed remote invitation: {e}")
                continue
            if invitation.id not in self._invitations:
                self._invitations[invitation.id] = invitation
                added += 1
        if added:
            self._save()
        return added
