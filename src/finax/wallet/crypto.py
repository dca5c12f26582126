"""
Wallet Crypto - Key material and secret encryption.

Industry-standard security:
- BIP-39 seed phrases
- BIP-32/44 HD derivation
- Argon2id key derivation (memory-hard)
- AES-256-GCM authenticated encryption

Ciphertext format (scheme "fx2"):

    fx2:t=<time>,m=<memory>,p=<parallelism>:<base64url(salt || iv || ciphertext+tag)>

Untagged ciphertexts are legacy OpenSSL "Salted__" blobs
(EVP_BytesToKey/MD5 + AES-256-CBC). They are readable but never written.
"""

import base64
import hashlib
import re
import secrets
from dataclasses import dataclass
from typing import Optional

# Cryptography
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from argon2.low_level import hash_secret_raw, Type

# Ethereum
from mnemonic import Mnemonic
from eth_account import Account
from eth_account.signers.local import LocalAccount

from ..exceptions import DecryptionFailedError, InvalidMnemonicError, InvalidPrivateKeyError

# Enable HD wallet features
Account.enable_unaudited_hdwallet_features()


# ============================================
# Security Constants
# ============================================

# Argon2id parameters (OWASP recommendations for high-security)
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 4
ARGON2_HASH_LEN = 32  # 256 bits for AES-256

# Upper bound accepted when parsing a ciphertext header
ARGON2_MAX_MEMORY_COST = 1048576  # 1 GB

# AES-GCM constants
AES_KEY_SIZE = 32
AES_IV_SIZE = 12  # 96 bits (recommended for GCM)
SALT_SIZE = 16
GCM_TAG_SIZE = 16

SCHEME_PREFIX = "fx2:"
LEGACY_MAGIC = b"Salted__"

# BIP-44 derivation path for Ethereum (first account)
ETH_DERIVATION_PATH = "m/44'/60'/0'/0/0"

_HEADER_RE = re.compile(r"^t=(\d+),m=(\d+),p=(\d+)$")


@dataclass(frozen=True)
class KdfParams:
    """Argon2id cost parameters."""
    time_cost: int = ARGON2_TIME_COST
    memory_cost: int = ARGON2_MEMORY_COST
    parallelism: int = ARGON2_PARALLELISM

    def header(self) -> str:
        return f"t={self.time_cost},m={self.memory_cost},p={self.parallelism}"

    @classmethod
    def from_header(cls, header: str) -> "KdfParams":
        match = _HEADER_RE.match(header)
        if not match:
            raise ValueError("Malformed KDF header")
        params = cls(*(int(g) for g in match.groups()))
        if not (1 <= params.time_cost <= 64 and 8 <= params.memory_cost <= ARGON2_MAX_MEMORY_COST
                and 1 <= params.parallelism <= 64):
            raise ValueError("KDF parameters out of range")
        return params


DEFAULT_KDF = KdfParams()


# ============================================
# Key Derivation
# ============================================

def derive_key(password: str, salt: bytes, params: KdfParams = DEFAULT_KDF) -> bytes:
    """
    Derive an encryption key from password using Argon2id.

    Argon2id is memory-hard, making brute-force attacks expensive.
    With the default parameters, each password guess requires ~64MB RAM.
    """
    return hash_secret_raw(
        secret=password.encode('utf-8'),
        salt=salt,
        time_cost=params.time_cost,
        memory_cost=params.memory_cost,
        parallelism=params.parallelism,
        hash_len=ARGON2_HASH_LEN,
        type=Type.ID
    )


# ============================================
# Encryption
# ============================================

def is_tagged(ciphertext: str) -> bool:
    """True if the ciphertext carries a scheme identifier."""
    return ciphertext.startswith(SCHEME_PREFIX)


def encrypt_secret(plaintext: str, passphrase: str, params: KdfParams = DEFAULT_KDF) -> str:
    """Encrypt a string under a passphrase. Returns an fx2-tagged token."""
    salt = secrets.token_bytes(SALT_SIZE)
    key = derive_key(passphrase, salt, params)
    iv = secrets.token_bytes(AES_IV_SIZE)

    aesgcm = AESGCM(key)
    ciphertext_and_tag = aesgcm.encrypt(iv, plaintext.encode('utf-8'), None)

    payload = base64.urlsafe_b64encode(salt + iv + ciphertext_and_tag).decode('ascii')
    return f"{SCHEME_PREFIX}{params.header()}:{payload}"


def decrypt_secret(token: str, passphrase: str) -> str:
    """
    Decrypt an fx2-tagged token.

    Raises: DecryptionFailedError if the passphrase is wrong or the data is
    tampered, truncated or decrypts to an empty string.
    """
    try:
        header, payload = token[len(SCHEME_PREFIX):].split(":", 1)
        params = KdfParams.from_header(header)
        raw = base64.urlsafe_b64decode(payload.encode('ascii'))
        if len(raw) < SALT_SIZE + AES_IV_SIZE + GCM_TAG_SIZE:
            raise ValueError("Encrypted payload is truncated")
        salt = raw[:SALT_SIZE]
        iv = raw[SALT_SIZE:SALT_SIZE + AES_IV_SIZE]
        ciphertext_and_tag = raw[SALT_SIZE + AES_IV_SIZE:]

        key = derive_key(passphrase, salt, params)
        plaintext = AESGCM(key).decrypt(iv, ciphertext_and_tag, None).decode('utf-8')
    except (InvalidTag, ValueError) as e:
        raise DecryptionFailedError() from e

    if not plaintext:
        raise DecryptionFailedError("Decryption returned empty result")
    return plaintext


def _evp_bytes_to_key(passphrase: bytes, salt: bytes, key_len: int = 32, iv_len: int = 16) -> tuple[bytes, bytes]:
    """OpenSSL EVP_BytesToKey with MD5, one iteration."""
    derived = b""
    block = b""
    while len(derived) < key_len + iv_len:
        block = hashlib.md5(block + passphrase + salt).digest()
        derived += block
    return derived[:key_len], derived[key_len:key_len + iv_len]


def decrypt_legacy(token: str, passphrase: str) -> str:
    """
    Decrypt a legacy OpenSSL-compatible "Salted__" blob.

    CBC has no authentication tag, so a wrong passphrase can occasionally
    survive the padding check; callers that can verify the plaintext
    should do so.
    """
    try:
        raw = base64.b64decode(token.encode('ascii'), validate=True)
        if len(raw) < 32 or not raw.startswith(LEGACY_MAGIC) or (len(raw) - 16) % 16:
            raise ValueError("Not a legacy ciphertext")
        salt = raw[8:16]
        key, iv = _evp_bytes_to_key(passphrase.encode('utf-8'), salt)

        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(raw[16:]) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        plaintext = (unpadder.update(padded) + unpadder.finalize()).decode('utf-8')
    except ValueError as e:
        raise DecryptionFailedError() from e

    if not plaintext:
        raise DecryptionFailedError("Decryption returned empty result")
    return plaintext


def decrypt_any(token: str, passphrase: str) -> str:
    """Decrypt a token in whichever scheme it was written."""
    if is_tagged(token):
        return decrypt_secret(token, passphrase)
    return decrypt_legacy(token, passphrase)


def legacy_sub_wallet_key(main_wallet_address: str, main_private_key: str) -> str:
    """
    Symmetric key used by the earlier sub-wallet encryption path:
    hex SHA-256 of the owning address concatenated with its private key.
    """
    return hashlib.sha256((main_wallet_address + main_private_key).encode('utf-8')).hexdigest()


# ============================================
# Key Material
# ============================================

@dataclass(frozen=True)
class GeneratedWallet:
    """A freshly generated key pair and its recovery phrase."""
    mnemonic: str
    private_key: str
    address: str


def private_key_hex(account: LocalAccount) -> str:
    """0x-prefixed hex private key of an account."""
    return "0x" + bytes(account.key).hex()


def generate_wallet(word_count: int = 12) -> GeneratedWallet:
    """Create a new key pair with a fresh BIP-39 phrase."""
    if word_count not in (12, 24):
        raise ValueError("word_count must be 12 or 24")
    account, phrase = Account.create_with_mnemonic(
        num_words=word_count, account_path=ETH_DERIVATION_PATH
    )
    return GeneratedWallet(mnemonic=phrase, private_key=private_key_hex(account), address=account.address)


def normalize_mnemonic(phrase: str) -> str:
    return " ".join(phrase.strip().lower().split())


def account_from_mnemonic(phrase: str, derivation_path: Optional[str] = None) -> LocalAccount:
    """Derive the first account of a BIP-39 phrase."""
    phrase = normalize_mnemonic(phrase or "")
    mnemo = Mnemonic("english")
    try:
        valid = mnemo.check(phrase)
    except (ValueError, LookupError):
        valid = False
    if not valid:
        raise InvalidMnemonicError()
    try:
        return Account.from_mnemonic(phrase, account_path=derivation_path or ETH_DERIVATION_PATH)
    except Exception as e:
        raise InvalidMnemonicError() from e


def account_from_private_key(private_key: str) -> LocalAccount:
    """Parse a hex private key (with or without 0x prefix)."""
    pkey = (private_key or "").strip()
    if pkey.startswith("0x") or pkey.startswith("0X"):
        pkey = pkey[2:]
    if len(pkey) != 64:
        raise InvalidPrivateKeyError()
    try:
        return Account.from_key(bytes.fromhex(pkey))
    except Exception as e:  # eth_keys raises its own ValidationError
        raise InvalidPrivateKeyError() from e
