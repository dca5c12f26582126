"""
Sub-Wallet Registry - contract-scoped escrow accounts.

Each sub-wallet is a fresh key pair whose private key is encrypted with the
master wallet's password and stored next to its contract metadata. Lookups
go through one path, resolve(), which tries memory, then the local
snapshot, then the remote store.

Decrypted sub-wallet keys are never cached; every operation that needs one
decrypts it, uses it and lets it go.
"""

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount

from ..exceptions import (
    CustodyError,
    InsufficientBalanceError,
    MainWalletLockedError,
    NoProviderError,
    RemoteStoreError,
    SubWalletNotFoundError,
    TransactionFailedError,
    UnsupportedCurrencyError,
)
from ..models.balance import SubWalletBalance
from ..models.invitation import ContractDetails, Invitation
from ..models.signature import ContractSignature, SignResult
from ..models.store import LocalStore
from ..models.sub_wallet import ROLE_PARTY, SubWallet
from ..networks import (
    DEFAULT_NETWORK,
    NATIVE_TRANSFER_GAS,
    NetworkConfig,
    TokenConfig,
    get_network,
    get_token,
    get_usd_price,
    to_base_units,
)
from ..services.balance_cache import BalanceCache
from ..services.invitations import InvitationLedger
from ..services.provider import NetworkProvider
from ..services.remote_store import RemoteStore
from ..utils import format_address, normalize_address
from .crypto import account_from_private_key, legacy_sub_wallet_key, private_key_hex
from .manager import KeyManager
from .secret_store import SecretStore
from .signer import Signer

logger = logging.getLogger(__name__)

# Token shown next to the native balance of a sub-wallet
SETTLEMENT_TOKEN = "USDC"

# Purpose of sub-wallets created by accepting an invitation
PARTICIPANT_PURPOSE = "Contract Participant"

SIGN_MESSAGE_TEMPLATE = "Sign contract for sub-wallet {address} at {timestamp}"


class Source(Enum):
    """Where resolve() found a sub-wallet."""
    MEMORY = "memory"
    LOCAL = "local"
    REMOTE = "remote"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _derives_address(private_key: str, address: str) -> bool:
    try:
        return account_from_private_key(private_key).address.lower() == address.lower()
    except ValueError:
        return False


class SubWalletRegistry:
    """In-memory index of sub-wallets backed by local and remote storage."""

    def __init__(self, keys: KeyManager, secrets: SecretStore, store: LocalStore,
                 provider: NetworkProvider, balances: BalanceCache,
                 invitations: InvitationLedger, remote: Optional[RemoteStore] = None):
        self.keys = keys
        self.secrets = secrets
        self.store = store
        self.provider = provider
        self.balances = balances
        self.invitations = invitations
        self.remote = remote
        self._index: dict[str, SubWallet] = {}
        self._deactivated: set[str] = store.load_deactivated()
        self._mirror_tasks: set[asyncio.Task] = set()
        self._load_local()

    # ============================================
    # Index and persistence
    # ============================================

    def _load_local(self) -> int:
        loaded = 0
        for sub_wallet in self.store.load_sub_wallets():
            key = normalize_address(sub_wallet.address)
            if key in self._deactivated:
                continue
            self._index[key] = sub_wallet
            loaded += 1
        return loaded

    def _save_local(self) -> None:
        self.store.save_sub_wallets(list(self._index.values()))

    def _merge_records(self, records: list[dict]) -> int:
        """
        Fold remote records into the index and snapshot.

        Unknown addresses are added. For known ones the local record stays,
        taking only a signature the local copy lacks. Deactivated addresses
        are skipped.
        """
        merged = 0
        for record in records:
            try:
                remote = SubWallet.from_dict(record)
            except (KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed remote sub-wallet: {e}")
                continue
            key = normalize_address(remote.address)
            if key in self._deactivated:
                continue
            local = self._index.get(key)
            if local is None:
                self._index[key] = remote
                merged += 1
            elif remote.contract_signed and not local.contract_signed:
                local.mark_signed(remote.signed_at)
                merged += 1
        if merged:
            self._save_local()
        return merged

    async def resolve(self, address: str) -> tuple[SubWallet, Source]:
        """
        Find a sub-wallet by address (case-insensitive).

        Raises:
            SubWalletNotFoundError: missing from memory, local and remote
        """
        key = normalize_address(address)
        sub_wallet = self._index.get(key)
        if sub_wallet is not None:
            return sub_wallet, Source.MEMORY

        if key in self._deactivated:
            raise SubWalletNotFoundError(address)

        logger.debug(f"Sub-wallet {format_address(address)} not in memory, reloading local snapshot")
        self._load_local()
        sub_wallet = self._index.get(key)
        if sub_wallet is not None:
            return sub_wallet, Source.LOCAL

        master_address = self.keys.get_address()
        if self.remote is not None and master_address:
            logger.debug(f"Sub-wallet {format_address(address)} not stored locally, fetching remote")
            try:
                records = await self.remote.list_sub_wallets(master_address)
            except RemoteStoreError as e:
                logger.warning(f"Failed to fetch sub-wallets from remote store: {e}")
            else:
                self._merge_records(records)
                sub_wallet = self._index.get(key)
                if sub_wallet is not None:
                    return sub_wallet, Source.REMOTE

        raise SubWalletNotFoundError(address)

    # ============================================
    # Remote mirroring
    # ============================================

    def _schedule_mirror(self, sub_wallet: SubWallet) -> None:
        if self.remote is None:
            return
        task = asyncio.create_task(self._mirror(sub_wallet))
        self._mirror_tasks.add(task)
        task.add_done_callback(self._mirror_tasks.discard)

    async def _mirror(self, sub_wallet: SubWallet) -> None:
        try:
            await self.remote.save_sub_wallet(sub_wallet)
        except Exception as e:
            logger.error(f"Failed to sync sub-wallet {format_address(sub_wallet.address)} to remote store: {e}")
            return
        logger.info(f"Synced sub-wallet {format_address(sub_wallet.address)} to remote store")

    async def flush_mirrors(self) -> None:
        """Wait for pending background mirror writes."""
        if self._mirror_tasks:
            await asyncio.gather(*list(self._mirror_tasks), return_exceptions=True)

    # ============================================
    # Creation and key recovery
    # ============================================

    def _require_master(self) -> LocalAccount:
        account = self.keys.get_account()
        if account is None or not self.secrets.is_unlocked():
            raise MainWalletLockedError()
        return account

    async def create_sub_wallet(self, contract_id: str, purpose: str, title: Optional[str] = None,
                                contract_role: str = ROLE_PARTY) -> SubWallet:
        """Generate and register a sub-wallet for a contract."""
        master = self._require_master()

        account = Account.create()
        sub_wallet = SubWallet.create(
            address=account.address,
            encrypted_private_key=self.secrets.encrypt(private_key_hex(account)),
            contract_id=contract_id,
            purpose=purpose,
            main_wallet_address=master.address,
            title=title,
            contract_role=contract_role,
        )
        self._index[normalize_address(sub_wallet.address)] = sub_wallet
        self._save_local()
        self._schedule_mirror(sub_wallet)

        logger.info(f"Created sub-wallet {format_address(sub_wallet.address)} for contract {contract_id}")
        return sub_wallet

    def _decrypt_account(self, sub_wallet: SubWallet) -> LocalAccount:
        """Recover a sub-wallet's key, checking it matches the stored address."""
        alternates = []
        master = self.keys.get_account()
        if master is not None:
            alternates.append(legacy_sub_wallet_key(sub_wallet.main_wallet_address, private_key_hex(master)))

        private_key = self.secrets.decrypt_with_fallback(
            sub_wallet.encrypted_private_key,
            alternates=alternates,
            validate=lambda candidate: _derives_address(candidate, sub_wallet.address),
        )
        return account_from_private_key(private_key)

    async def get_sub_wallet_signer(self, address: str, network_id: Optional[int] = None) -> Optional[Signer]:
        """
        Signer for a sub-wallet, connected to `network_id` when given.

        Returns None for unknown addresses; decryption failures raise.
        """
        try:
            sub_wallet, _ = await self.resolve(address)
        except SubWalletNotFoundError:
            return None

        signer = Signer(self._decrypt_account(sub_wallet))
        if network_id is None:
            return signer
        network = self._network(network_id)
        connection = await self.provider.get_connection(network.chain_id)
        return signer.connect(network, connection)

    # ============================================
    # Balances and funds
    # ============================================

    @staticmethod
    def _network(network_id: int) -> NetworkConfig:
        network = get_network(network_id)
        if network is None:
            raise NoProviderError(network_id)
        return network

    @staticmethod
    def _asset(network: NetworkConfig, currency: str) -> Optional[TokenConfig]:
        """None for the native asset, the token config otherwise."""
        if currency.upper() == network.native_symbol:
            return None
        token = get_token(network.id, currency)
        if token is None:
            raise UnsupportedCurrencyError(currency)
        return token

    async def get_sub_wallet_balance(self, address: str,
                                     network_id: int = DEFAULT_NETWORK) -> SubWalletBalance:
        """Native and settlement-token balance. Zeros when the read fails."""
        network = self._network(network_id)
        snapshot = await self.balances.get(address, network.id)
        if snapshot is None:
            return SubWalletBalance(native="0.00", token="0.00",
                                    native_usd=Decimal(0), token_usd=Decimal(0))

        native = Decimal(snapshot.native_amount)
        token_amount = snapshot.token(SETTLEMENT_TOKEN)
        token = Decimal(token_amount.amount) if token_amount else Decimal(0)
        return SubWalletBalance(
            native=str(native.quantize(Decimal("0.000001"))),
            token=str(token.quantize(Decimal("0.01"))),
            native_usd=native * get_usd_price(network.native_symbol),
            token_usd=token * get_usd_price(SETTLEMENT_TOKEN),
            snapshot=snapshot,
        )

    async def fund_sub_wallet(self, address: str, amount: str, network_id: int, currency: str) -> str:
        """Send native currency or a token from the master wallet. Returns the tx hash."""
        network = self._network(network_id)
        token = self._asset(network, currency)
        self._require_master()
        sub_wallet, _ = await self.resolve(address)

        signer = await self.keys.get_signer(network.id)
        if token is None:
            tx_hash = await signer.send_transaction(
                sub_wallet.address, to_base_units(amount, network.native_decimals),
                gas_limit=NATIVE_TRANSFER_GAS,
            )
        else:
            tx_hash = await signer.send_token_transfer(
                token.addresses[network.id], sub_wallet.address, to_base_units(amount, token.decimals),
            )

        self.balances.clear_wallet_cache(sub_wallet.address)
        self.balances.clear_wallet_cache(signer.address)
        logger.info(f"Funded sub-wallet {format_address(sub_wallet.address)} with {amount} {currency}: {tx_hash}")
        return tx_hash

    async def transfer_from_sub_wallet(self, address: str, amount: str, currency: str,
                                       network_id: int) -> str:
        """
        Move funds from a sub-wallet back to the master wallet.

        Steps run strictly in order: unlock check, resolve, decrypt,
        balance check, sign and submit, confirm. Nothing is signed when
        the balance is short.
        """
        master = self._require_master()
        network = self._network(network_id)
        token = self._asset(network, currency)

        sub_wallet, source = await self.resolve(address)
        logger.debug(f"Transfer source {format_address(sub_wallet.address)} resolved from {source.value}")
        account = self._decrypt_account(sub_wallet)

        connection = await self.provider.get_connection(network.chain_id)
        try:
            if token is None:
                value = to_base_units(amount, network.native_decimals)
                available = await connection.get_balance(sub_wallet.address)
                gas_price = await connection.get_gas_price()
                required = value + NATIVE_TRANSFER_GAS * gas_price
                symbol = network.native_symbol
            else:
                value = to_base_units(amount, token.decimals)
                available = await connection.get_token_balance(token.addresses[network.id], sub_wallet.address)
                required = value
                symbol = token.symbol
        except CustodyError:
            raise
        except Exception as e:
            raise TransactionFailedError(f"Balance check failed: {e}", cause=e) from e

        if available < required:
            raise InsufficientBalanceError(required, available, symbol)

        signer = Signer(account, network, connection)
        if token is None:
            tx_hash = await signer.send_transaction(master.address, value, gas_limit=NATIVE_TRANSFER_GAS)
        else:
            tx_hash = await signer.send_token_transfer(token.addresses[network.id], master.address, value)

        self.balances.clear_wallet_cache(sub_wallet.address)
        self.balances.clear_wallet_cache(master.address)
        logger.info(f"Transferred {amount} {symbol} from {format_address(sub_wallet.address)} to main wallet: {tx_hash}")
        return tx_hash

    # ============================================
    # Invitations and signing
    # ============================================

    async def send_contract_invitation(self, invitee_address: str, contract_type: str,
                                       details: ContractDetails | dict) -> Invitation:
        inviter = self.keys.get_address()
        if inviter is None:
            raise MainWalletLockedError()
        if isinstance(details, dict):
            details = ContractDetails.from_dict(details)
        return self.invitations.create(inviter, invitee_address, contract_type, details)

    async def accept_invitation(self, invitation_id: str, contract_id: str) -> SubWallet:
        """
        Accept a pending invitation and create the participant sub-wallet.

        With a remote store configured its answer is authoritative: a
        conflict or transport failure leaves local state unchanged.
        """
        invitation = self.invitations.require_pending(invitation_id)
        master = self._require_master()

        if self.remote is not None:
            await self.remote.accept_invitation(invitation_id, master.address)

        self.invitations.accept(invitation_id)
        sub_wallet = await self.create_sub_wallet(
            contract_id, PARTICIPANT_PURPOSE, invitation.contract_details.title,
        )
        logger.info(f"Accepted invitation {invitation_id}, sub-wallet {format_address(sub_wallet.address)}")
        return sub_wallet

    def reject_invitation(self, invitation_id: str) -> Invitation:
        return self.invitations.reject(invitation_id)

    async def sign_contract(self, address: str) -> SignResult:
        """Attest to a sub-wallet's contract with the master key."""
        master = self._require_master()
        sub_wallet, _ = await self.resolve(address)

        timestamp = _now_iso()
        message = SIGN_MESSAGE_TEMPLATE.format(address=sub_wallet.address, timestamp=timestamp)
        signature = ContractSignature(
            sub_wallet_address=sub_wallet.address,
            signer_address=master.address,
            signature=Signer(master).sign_message(message),
            message=message,
            timestamp=timestamp,
        )
        self.store.append_signature(signature)

        sub_wallet.mark_signed(timestamp)
        self._save_local()
        self._schedule_mirror(sub_wallet)

        fully_signed = all(w.contract_signed for w in self.get_sub_wallets_for_contract(sub_wallet.contract_id))
        logger.info(f"Contract {sub_wallet.contract_id} signed for {format_address(sub_wallet.address)}")
        return SignResult(is_fully_signed=fully_signed, funds_locked=fully_signed, signature=signature)

    # ============================================
    # Queries and sync
    # ============================================

    def deactivate_sub_wallet(self, address: str) -> None:
        """Drop a sub-wallet locally. The remote copy is left alone."""
        key = normalize_address(address)
        removed = self._index.pop(key, None)
        self._deactivated.add(key)
        self.store.add_deactivated(key)
        self._save_local()
        self.balances.clear_wallet_cache(key)
        if removed is not None:
            logger.info(f"Deactivated sub-wallet {format_address(removed.address)}")

    def get_sub_wallets(self) -> list[SubWallet]:
        """Sub-wallets owned by the current master wallet."""
        master = self.keys.get_address()
        if master is None:
            return []
        owner = normalize_address(master)
        return [w for w in self._index.values() if normalize_address(w.main_wallet_address) == owner]

    def get_sub_wallets_for_contract(self, contract_id: str) -> list[SubWallet]:
        return [w for w in self._index.values() if w.contract_id == contract_id]

    def get_pending_invitations(self) -> list[Invitation]:
        """Pending invitations addressed to the current master wallet."""
        master = self.keys.get_address()
        if master is None:
            return []
        return self.invitations.list_pending(master)

    def sync_from_remote(self, records: list[dict]) -> int:
        """Merge remote sub-wallet records. Returns the number merged."""
        merged = self._merge_records(records)
        logger.info(f"Synchronized {merged} sub-wallet(s) from remote store")
        return merged

    async def sync_to_remote(self) -> int:
        """Push every sub-wallet of the current master. Returns the number pushed."""
        if self.remote is None:
            return 0
        pushed = 0
        for sub_wallet in self.get_sub_wallets():
            try:
                await self.remote.save_sub_wallet(sub_wallet)
            except RemoteStoreError as e:
                logger.warning(f"Failed to sync sub-wallet {format_address(sub_wallet.address)}: {e}")
                continue
            pushed += 1
        return pushed

    async def refresh_invitations(self) -> int:
        """Pull invitations for the current master from the remote store."""
        master = self.keys.get_address()
        if self.remote is None or master is None:
            return 0
        try:
            records = await self.remote.list_invitations(master)
        except RemoteStoreError as e:
            logger.warning(f"Failed to fetch invitations: {e}")
            return 0
        return self.invitations.merge_remote(records)
