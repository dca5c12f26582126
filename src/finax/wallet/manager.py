"""
Key Manager - master wallet lifecycle.

Locked --unlock_wallet / create_wallet / import_wallet--> Unlocked
Unlocked --lock_wallet--> Locked

The persisted record (wallet.enc) is the whole MasterWallet encrypted with
the password; its private key and phrase are encrypted again inside it.
Plaintext key material exists only in this object and the session cache.
"""

import json
import logging
from decimal import Decimal
from typing import Optional

from eth_account.signers.local import LocalAccount

from ..exceptions import (
    CustodyError,
    DecryptionFailedError,
    NoProviderError,
    NotUnlockedError,
    WalletLockedError,
    WalletNotFoundError,
)
from ..models.balance import WalletBalance
from ..models.master_wallet import MasterWallet
from ..models.store import LocalStore
from ..networks import (
    DEFAULT_NETWORK,
    NETWORKS,
    NetworkConfig,
    from_base_units,
    get_network,
    get_usd_price,
    to_base_units,
)
from ..services.balance_cache import BalanceCache
from ..services.provider import NetworkProvider
from ..utils import format_address
from .crypto import (
    GeneratedWallet,
    account_from_mnemonic,
    account_from_private_key,
    generate_wallet,
    normalize_mnemonic,
    private_key_hex,
)
from .secret_store import SecretStore
from .signer import Signer, encode_erc20_transfer

logger = logging.getLogger(__name__)

# Returned by estimate_gas_fee when the provider cannot estimate
FALLBACK_GAS_FEE = "0.001"


class KeyManager:
    """Owns the master key pair and hands out network-bound signers."""

    def __init__(self, secrets: SecretStore, store: LocalStore, provider: NetworkProvider,
                 balances: BalanceCache, default_network_id: int = DEFAULT_NETWORK):
        self.secrets = secrets
        self.store = store
        self.provider = provider
        self.balances = balances
        self.default_network_id = default_network_id
        self._wallet: Optional[MasterWallet] = None
        self._account: Optional[LocalAccount] = None
        self._signers: dict[int, Signer] = {}

    # ============================================
    # Pure key operations
    # ============================================

    @staticmethod
    def generate_wallet() -> GeneratedWallet:
        """Fresh key pair and recovery phrase. Nothing is stored."""
        return generate_wallet()

    @staticmethod
    def import_from_mnemonic(phrase: str) -> tuple[str, str]:
        """Returns (private_key, address). Raises InvalidMnemonicError."""
        account = account_from_mnemonic(phrase)
        return private_key_hex(account), account.address

    @staticmethod
    def import_from_private_key(private_key: str) -> str:
        """Returns the address. Raises InvalidPrivateKeyError."""
        return account_from_private_key(private_key).address

    # ============================================
    # Lifecycle
    # ============================================

    def _persist(self, account: LocalAccount, password: str, name: str, is_imported: bool,
                 mnemonic: Optional[str] = None) -> MasterWallet:
        self.secrets.set_password(password)
        private_key = private_key_hex(account)
        wallet = MasterWallet.create(
            address=account.address,
            display_name=name,
            encrypted_private_key=self.secrets.encrypt(private_key),
            is_imported=is_imported,
            encrypted_mnemonic=self.secrets.encrypt(mnemonic) if mnemonic else None,
        )
        self.store.save_wallet_blob(self.secrets.encrypt(json.dumps(wallet.to_dict())))
        self._install(wallet, account)
        return wallet

    def _install(self, wallet: Optional[MasterWallet], account: LocalAccount) -> None:
        self._wallet = wallet
        self._account = account
        self._signers.clear()
        self.secrets.set_session_private_key(private_key_hex(account))

    def create_wallet(self, password: str, name: str = "Main Account") -> GeneratedWallet:
        """Generate, encrypt and store a new master wallet. Leaves it unlocked."""
        generated = generate_wallet()
        account = account_from_private_key(generated.private_key)
        self._persist(account, password, name, is_imported=False, mnemonic=generated.mnemonic)
        logger.info(f"Created wallet {format_address(account.address)}")
        return generated

    def import_wallet(self, password: str, secret: str, kind: str = "mnemonic",
                      name: str = "Imported Account") -> MasterWallet:
        """Import from a phrase or private key. Leaves the wallet unlocked."""
        if kind == "mnemonic":
            mnemonic = normalize_mnemonic(secret)
            account = account_from_mnemonic(mnemonic)
        elif kind == "private_key":
            mnemonic = None
            account = account_from_private_key(secret)
        else:
            raise ValueError(f"Unknown import kind: {kind}")
        wallet = self._persist(account, password, name, is_imported=True, mnemonic=mnemonic)
        logger.info(f"Imported wallet {format_address(account.address)} from {kind}")
        return wallet

    def _load_record(self) -> MasterWallet:
        blob = self.store.load_wallet_blob()
        if blob is None:
            raise WalletNotFoundError("No wallet found")
        plaintext = self.secrets.decrypt(blob)
        try:
            return MasterWallet.from_dict(json.loads(plaintext))
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise DecryptionFailedError("Corrupted wallet record") from e

    def unlock_wallet(self, password: str) -> MasterWallet:
        """
        Decrypt the stored wallet with `password`.

        Raises:
            WalletNotFoundError: nothing persisted
            DecryptionFailedError: wrong password or corrupted record
        """
        if not self.store.has_wallet():
            raise WalletNotFoundError("No wallet found")

        self.secrets.set_password(password)
        try:
            wallet = self._load_record()
            account = account_from_private_key(self.secrets.decrypt(wallet.encrypted_private_key))
        except (DecryptionFailedError, ValueError) as e:
            self.lock_wallet()
            logger.warning("Unlock failed: invalid password or corrupted data")
            if isinstance(e, DecryptionFailedError):
                raise
            raise DecryptionFailedError() from e

        self._install(wallet, account)
        logger.info(f"Unlocked wallet {format_address(account.address)}")
        return wallet

    def lock_wallet(self) -> None:
        """Drop all plaintext key material. Safe to call when already locked."""
        was_unlocked = self._account is not None
        self._wallet = None
        self._account = None
        self._signers.clear()
        self.secrets.clear_password()
        if was_unlocked:
            logger.info("Wallet locked")

    def restore(self) -> bool:
        """
        Recover the key without a password prompt.

        Tried once, in order: the session private key, then the session
        password against the stored record.

        A key held in memory is dropped once the session has evicted its
        credentials (idle timeout or close), which is how auto-lock applies.
        """
        if self._account is not None:
            if self.secrets.is_unlocked() or self.secrets.get_session_private_key():
                return True
            logger.info("Session expired, locking wallet")
            self.lock_wallet()
            return False

        session_key = self.secrets.get_session_private_key()
        if session_key:
            try:
                self._install(None, account_from_private_key(session_key))
                logger.debug("Wallet restored from session key")
                return True
            except ValueError:
                logger.warning("Discarding unusable session key")
                self.secrets.clear_session_private_key()

        if self.secrets.is_unlocked() and self.store.has_wallet():
            try:
                wallet = self._load_record()
                account = account_from_private_key(self.secrets.decrypt(wallet.encrypted_private_key))
            except (CustodyError, ValueError) as e:
                logger.warning(f"Could not restore wallet from session: {e}")
                return False
            self._install(wallet, account)
            logger.debug("Wallet restored from session password")
            return True

        return False

    def is_unlocked(self) -> bool:
        return self.restore()

    def wallet_exists(self) -> bool:
        return self.store.has_wallet()

    def get_address(self) -> Optional[str]:
        return self._account.address if self.restore() else None

    def get_account(self) -> Optional[LocalAccount]:
        """The master account, restoring it if possible."""
        return self._account if self.restore() else None

    def delete_wallet(self) -> None:
        """Lock and remove the stored record. Irreversible without a backup."""
        self.lock_wallet()
        self.store.delete_wallet_blob()
        logger.info("Wallet deleted")

    def export_private_key(self) -> str:
        if not self.restore():
            raise NotUnlockedError()
        return private_key_hex(self._account)

    def export_mnemonic(self) -> Optional[str]:
        """Recovery phrase, or None for wallets imported from a private key."""
        if not self.restore():
            raise NotUnlockedError()
        if self._wallet is None:
            self._wallet = self._load_record()
        if not self._wallet.encrypted_mnemonic:
            return None
        return self.secrets.decrypt(self._wallet.encrypted_mnemonic)

    @property
    def wallet(self) -> Optional[MasterWallet]:
        return self._wallet

    # ============================================
    # Network
    # ============================================

    def _network(self, network_id: Optional[int]) -> NetworkConfig:
        network_id = network_id if network_id is not None else self.default_network_id
        network = get_network(network_id)
        if network is None:
            raise NoProviderError(network_id)
        return network

    async def get_signer(self, network_id: Optional[int] = None) -> Signer:
        """
        Signer for the master wallet on a network.

        Raises:
            NotUnlockedError: no key in memory and none restorable
            NoProviderError: unknown network or no working endpoint
        """
        network = self._network(network_id)
        if not self.restore():
            raise NotUnlockedError()

        signer = self._signers.get(network.id)
        if signer is None:
            connection = await self.provider.get_connection(network.chain_id)
            if self._account is None:
                raise NotUnlockedError()
            signer = Signer(self._account, network, connection)
            self._signers[network.id] = signer
        return signer

    async def get_balance(self, network_id: Optional[int] = None) -> Optional[WalletBalance]:
        """Native balance of the master wallet, or None when unavailable."""
        address = self.get_address()
        if address is None:
            raise NotUnlockedError()
        network = self._network(network_id)
        snapshot = await self.balances.get(address, network.id)
        if snapshot is None:
            return None
        return WalletBalance(
            network_id=network.id,
            balance=snapshot.native_amount,
            usd_value=Decimal(snapshot.native_amount) * get_usd_price(network.native_symbol),
            symbol=network.native_symbol,
        )

    async def get_all_balances(self) -> dict[int, Optional[WalletBalance]]:
        results = {}
        for network_id in NETWORKS:
            results[network_id] = await self.get_balance(network_id)
        return results

    async def send_transaction(self, to: str, amount: str, network_id: Optional[int] = None) -> str:
        """Send native currency. Returns the confirmed tx hash."""
        signer = await self.get_signer(network_id)
        value = to_base_units(amount, signer.network.native_decimals)
        tx_hash = await signer.send_transaction(to, value)
        self.balances.clear_wallet_cache(signer.address)
        return tx_hash

    async def send_token_transaction(self, to: str, amount: str, network_id: Optional[int],
                                     token_address: str, token_decimals: int) -> str:
        """Send an ERC-20 token. Returns the confirmed tx hash."""
        signer = await self.get_signer(network_id)
        raw = to_base_units(amount, token_decimals)
        tx_hash = await signer.send_token_transfer(token_address, to, raw)
        self.balances.clear_wallet_cache(signer.address)
        return tx_hash

    async def estimate_gas_fee(self, to: str, amount: str, network_id: Optional[int] = None,
                               token_address: Optional[str] = None,
                               token_decimals: Optional[int] = None) -> str:
        """Fee in native units. Falls back to FALLBACK_GAS_FEE when the provider fails."""
        if not self.restore():
            raise NotUnlockedError()
        try:
            signer = await self.get_signer(network_id)
            if token_address:
                if token_decimals is None:
                    token_decimals = await signer.connection.get_token_decimals(token_address)
                tx = {
                    "from": signer.address,
                    "to": token_address,
                    "value": 0,
                    "data": encode_erc20_transfer(to, to_base_units(amount, token_decimals)),
                }
            else:
                tx = {
                    "from": signer.address,
                    "to": to,
                    "value": to_base_units(amount, signer.network.native_decimals),
                }
            gas = await signer.connection.estimate_gas(tx)
            gas_price = await signer.connection.get_gas_price()
        except WalletLockedError:
            raise
        except Exception as e:
            logger.warning(f"Gas estimation failed, using fallback: {e}")
            return FALLBACK_GAS_FEE
        return from_base_units(gas * gas_price, signer.network.native_decimals)
