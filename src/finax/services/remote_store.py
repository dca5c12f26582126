"""
Remote Store - REST client for the platform's durable records.

Endpoints (relative to base_url):
    POST /sub-wallets                      mirror a sub-wallet record
    GET  /sub-wallets?walletAddress=<a>    sub-wallets owned by a master
    POST /invitations/{id}/accept          authoritative acceptance
    GET  /invitations/{address}            invitations addressed to a wallet
    POST /contracts/drafts                 save a contract draft
    GET  /contracts/drafts                 list contract drafts

Sub-wallet records carry only ciphertext private keys.
"""

import json
import logging
from typing import Any, Optional

import httpx

from ..exceptions import InvitationAlreadyProcessedError, RemoteStoreError
from ..models.sub_wallet import SubWallet

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0


class RemoteStore:
    """Async client for the remote durable store."""

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.http_client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.http_client.request(method, path, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            message = _error_message(e.response)
            raise RemoteStoreError(
                f"{method} {path} failed: {e.response.status_code} - {message}",
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise RemoteStoreError(f"{method} {path} request error: {e}") from e

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise RemoteStoreError(f"Invalid JSON from {response.request.url}") from e

    # ============================================
    # Sub-wallets
    # ============================================

    async def save_sub_wallet(self, sub_wallet: SubWallet) -> None:
        await self._request("POST", "/sub-wallets", json=sub_wallet.to_dict())

    async def list_sub_wallets(self, wallet_address: str) -> list[dict]:
        """Raw sub-wallet records owned by wallet_address."""
        response = await self._request("GET", "/sub-wallets", params={"walletAddress": wallet_address})
        data = self._json(response)
        if not isinstance(data, list):
            raise RemoteStoreError("Expected a list of sub-wallet records")
        return data

    # ============================================
    # Invitations
    # ============================================

    async def accept_invitation(self, invitation_id: str, acceptee_address: str) -> dict:
        """
        Confirm acceptance with the server.

        Raises:
            InvitationAlreadyProcessedError: server answered 409
            RemoteStoreError: any other HTTP or transport failure
        """
        try:
            response = await self._request(
                "POST", f"/invitations/{invitation_id}/accept",
                json={"accepteeAddress": acceptee_address},
            )
        except RemoteStoreError as e:
            if e.status_code == 409:
                raise InvitationAlreadyProcessedError(invitation_id) from e
            raise
        if not response.content:
            return {}
        return self._json(response)

    async def list_invitations(self, address: str) -> list[dict]:
        response = await self._request("GET", f"/invitations/{address}")
        data = self._json(response)
        return data if isinstance(data, list) else []

    # ============================================
    # Contract drafts
    # ============================================

    async def save_contract_draft(self, draft: dict, creator_address: str) -> dict:
        payload = {**draft, "creatorAddress": creator_address, "status": "draft"}
        response = await self._request("POST", "/contracts/drafts", json=payload)
        return self._json(response)

    async def list_contract_drafts(self) -> list[dict]:
        response = await self._request("GET", "/contracts/drafts")
        data = self._json(response)
        return data if isinstance(data, list) else []

    async def aclose(self) -> None:
        await self.http_client.aclose()


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except json.JSONDecodeError:
        return response.text
    if isinstance(data, dict):
        return data.get("message") or data.get("error") or response.text
    return response.text
