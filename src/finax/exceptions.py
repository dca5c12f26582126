"""
Custody errors.

Every failure the engine surfaces to callers is one of these. Wrong
password and corrupted ciphertext deliberately share one type so callers
cannot tell them apart.
"""

from typing import Optional


class CustodyError(Exception):
    """Base class for custody engine errors."""


# ============================================
# Lock state
# ============================================

class WalletLockedError(CustodyError):
    """No usable key material is resolvable."""

    def __init__(self, message: str = "Wallet is locked"):
        super().__init__(message)


class NotUnlockedError(WalletLockedError):
    """A signer was requested but the master wallet could not be restored."""

    def __init__(self, message: str = "Wallet not unlocked - signer not available"):
        super().__init__(message)


class MainWalletLockedError(WalletLockedError):
    """A sub-wallet operation needs the master wallet unlocked."""

    def __init__(self, message: str = "Main wallet not connected. Unlock your wallet first."):
        super().__init__(message)


class WalletNotFoundError(CustodyError):
    """No master wallet has been persisted."""


# ============================================
# Crypto
# ============================================

class DecryptionFailedError(CustodyError):
    """Wrong password or corrupted ciphertext."""

    def __init__(self, message: str = "Invalid password or corrupted data"):
        super().__init__(message)


class NoUsableKeyError(DecryptionFailedError):
    """Every candidate key failed to decrypt the payload."""

    def __init__(self, message: str = "Unable to decrypt data with available keys"):
        super().__init__(message)


class InvalidMnemonicError(CustodyError, ValueError):
    """Malformed BIP-39 phrase."""

    def __init__(self, message: str = "Invalid mnemonic phrase"):
        super().__init__(message)


class InvalidPrivateKeyError(CustodyError, ValueError):
    """Malformed secp256k1 private key."""

    def __init__(self, message: str = "Invalid private key"):
        super().__init__(message)


# ============================================
# Sub-wallets and funds
# ============================================

class SubWalletNotFoundError(CustodyError):
    """Address is unknown to memory, local snapshot and remote store."""

    def __init__(self, address: str):
        super().__init__(f"Sub-wallet not found: {address}")
        self.address = address


class UnsupportedCurrencyError(CustodyError):
    """Currency is neither the native asset nor a configured token."""

    def __init__(self, currency: str):
        super().__init__(f"Unsupported currency: {currency}")
        self.currency = currency


class InsufficientBalanceError(CustodyError):
    """Balance does not cover amount (plus fee for native transfers)."""

    def __init__(self, required: int, available: int, symbol: str = ""):
        super().__init__(
            f"Insufficient balance for transfer including gas fees "
            f"(required {required}, available {available}{' ' + symbol if symbol else ''})"
        )
        self.required = required
        self.available = available
        self.symbol = symbol


class TransactionFailedError(CustodyError):
    """Broadcast, confirmation or pre-flight read failed at the provider."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class NoProviderError(CustodyError):
    """No working provider for the requested network."""

    def __init__(self, network: int | str):
        super().__init__(f"No working provider for network {network}")
        self.network = network


# ============================================
# Invitations
# ============================================

class InvitationNotFoundError(CustodyError):
    """Unknown invitation id."""

    def __init__(self, invitation_id: str):
        super().__init__(f"Invitation not found: {invitation_id}")
        self.invitation_id = invitation_id


class InvitationAlreadyProcessedError(CustodyError):
    """Invitation is no longer pending."""

    def __init__(self, invitation_id: str, status: str = ""):
        detail = f" ({status})" if status else ""
        super().__init__(f"Invitation {invitation_id} has already been processed{detail}")
        self.invitation_id = invitation_id
        self.status = status


# ============================================
# Remote store
# ============================================

class RemoteStoreError(CustodyError):
    """The remote durable store rejected or could not serve a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
