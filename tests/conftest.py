import asyncio
import base64
import hashlib
from typing import Optional

import pytest
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from finax.app import CustodyEngine
from finax.exceptions import InvitationAlreadyProcessedError, NoProviderError, RemoteStoreError
from finax.services.provider import ChainConnection, NetworkProvider
from finax.wallet.crypto import KdfParams
from finax.wallet.session import SessionCache, SessionPolicy

# Argon2id at its minimum cost so tests stay fast
CHEAP_KDF = KdfParams(time_cost=1, memory_cost=8, parallelism=1)

PASSWORD = "correct horse battery staple"

# Well-known development mnemonic and its first account
DEV_MNEMONIC = "test test test test test test test test test test test junk"
DEV_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
DEV_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"

GWEI = 10 ** 9
ETH = 10 ** 18


def openssl_encrypt(plaintext: str, passphrase: str, salt: bytes = b"finaxslt") -> str:
    """Produce an OpenSSL "Salted__" AES-256-CBC blob, as older clients stored."""
    derived = b""
    block = b""
    while len(derived) < 48:
        block = hashlib.md5(block + passphrase.encode("utf-8") + salt).digest()
        derived += block
    key, iv = derived[:32], derived[32:48]

    padder = padding.PKCS7(128).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return base64.b64encode(b"Salted__" + salt + ciphertext).decode("ascii")


class FakeConnection(ChainConnection):
    """In-memory chain. Records every call."""

    def __init__(self, chain_id: int = 84532):
        self.chain_id = chain_id
        self.balances: dict[str, int] = {}
        self.token_balances: dict[tuple[str, str], int] = {}
        self.gas_price = GWEI
        self.receipt_status = 1
        self.calls: list[tuple] = []
        self.sent: list[bytes] = []
        self.gate: Optional[asyncio.Event] = None
        self.fail_reads = False
        self.fail_estimate = False
        self.fail_send = False

    async def _read(self, name: str, *args):
        self.calls.append((name, *args))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_reads:
            raise ConnectionError("rpc unreachable")

    # Values are read before suspending, like a response already on the wire
    async def get_balance(self, address: str) -> int:
        value = self.balances.get(address.lower(), 0)
        await self._read("get_balance", address)
        return value

    async def get_token_balance(self, token_address: str, owner: str) -> int:
        value = self.token_balances.get((token_address.lower(), owner.lower()), 0)
        await self._read("get_token_balance", token_address, owner)
        return value

    async def get_token_decimals(self, token_address: str) -> int:
        await self._read("get_token_decimals", token_address)
        return 6

    async def get_gas_price(self) -> int:
        self.calls.append(("get_gas_price",))
        return self.gas_price

    async def estimate_gas(self, tx: dict) -> int:
        self.calls.append(("estimate_gas", tx))
        if self.fail_estimate:
            raise ConnectionError("estimate failed")
        return 21000

    async def get_transaction_count(self, address: str) -> int:
        self.calls.append(("get_transaction_count", address))
        return len(self.sent)

    async def send_raw_transaction(self, raw_transaction: bytes) -> str:
        self.calls.append(("send_raw_transaction",))
        if self.fail_send:
            raise ConnectionError("broadcast rejected")
        self.sent.append(bytes(raw_transaction))
        return "0x" + hashlib.sha256(bytes(raw_transaction)).hexdigest()

    async def wait_for_receipt(self, tx_hash: str) -> dict:
        self.calls.append(("wait_for_receipt", tx_hash))
        return {"status": self.receipt_status, "blockNumber": 1, "transactionHash": tx_hash}


class FakeProvider(NetworkProvider):
    def __init__(self):
        self.connections: dict[int, FakeConnection] = {}
        self.requests: list[int] = []
        self.unavailable: set[int] = set()
        self.invalidated: list[int] = []

    def connection(self, chain_id: int = 84532) -> FakeConnection:
        if chain_id not in self.connections:
            self.connections[chain_id] = FakeConnection(chain_id)
        return self.connections[chain_id]

    async def get_connection(self, chain_id: int) -> ChainConnection:
        self.requests.append(chain_id)
        if chain_id in self.unavailable:
            raise NoProviderError(chain_id)
        return self.connection(chain_id)

    def invalidate(self, chain_id: int) -> None:
        self.invalidated.append(chain_id)


class FakeRemote:
    """Stands in for RemoteStore."""

    def __init__(self):
        self.records: list[dict] = []
        self.saved: list[dict] = []
        self.accepted: list[tuple[str, str]] = []
        self.invitations: list[dict] = []
        self.fail = False
        self.accept_conflict = False
        self.list_calls = 0

    async def save_sub_wallet(self, sub_wallet) -> None:
        if self.fail:
            raise RemoteStoreError("remote down", status_code=503)
        self.saved.append(sub_wallet.to_dict())

    async def list_sub_wallets(self, wallet_address: str) -> list[dict]:
        self.list_calls += 1
        if self.fail:
            raise RemoteStoreError("remote down", status_code=503)
        return [r for r in self.records if r["mainWalletAddress"].lower() == wallet_address.lower()]

    async def accept_invitation(self, invitation_id: str, acceptee_address: str) -> dict:
        if self.accept_conflict:
            raise InvitationAlreadyProcessedError(invitation_id)
        if self.fail:
            raise RemoteStoreError("remote down")
        self.accepted.append((invitation_id, acceptee_address))
        return {"message": "accepted"}

    async def list_invitations(self, address: str) -> list[dict]:
        if self.fail:
            raise RemoteStoreError("remote down")
        return list(self.invitations)

    async def aclose(self) -> None:
        pass


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def session():
    return SessionCache(SessionPolicy(idle_timeout_seconds=None))


@pytest.fixture
def make_engine(tmp_path, provider, session):
    """Build engines over one data dir and session, as a reload would."""

    def _make(remote=None, **kwargs) -> CustodyEngine:
        return CustodyEngine(
            data_dir=tmp_path,
            provider=provider,
            remote=remote,
            session=session,
            kdf=CHEAP_KDF,
            **kwargs,
        )

    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def unlocked_engine(engine):
    engine.keys.import_wallet(PASSWORD, DEV_PRIVATE_KEY, kind="private_key")
    return engine
