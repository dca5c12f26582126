import asyncio
import json
from decimal import Decimal

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from finax.exceptions import (
    InsufficientBalanceError,
    InvitationAlreadyProcessedError,
    MainWalletLockedError,
    RemoteStoreError,
    SubWalletNotFoundError,
    UnsupportedCurrencyError,
    WalletLockedError,
)
from finax.models.invitation import ContractDetails
from finax.models.sub_wallet import SubWallet
from finax.networks import NATIVE_TRANSFER_GAS
from finax.wallet.crypto import legacy_sub_wallet_key, private_key_hex
from finax.wallet.sub_wallets import Source

from conftest import DEV_ADDRESS, DEV_PRIVATE_KEY, ETH, GWEI, PASSWORD, FakeRemote, openssl_encrypt

USDC_BASE_SEPOLIA = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
INVITER = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"


def foreign_record(main_address: str = DEV_ADDRESS) -> dict:
    account = Account.create()
    return {
        "address": account.address,
        "name": "Remote - Escrow",
        "encryptedPrivateKey": "fx2:t=1,m=8,p=1:AAAA",
        "contractId": "contract-remote",
        "purpose": "Escrow",
        "mainWalletAddress": main_address,
        "createdAt": "2026-01-01T00:00:00.000Z",
        "contractSigned": False,
    }


# ============================================
# Creation and lookup
# ============================================

@pytest.mark.asyncio
async def test_create_requires_unlocked_master(engine):
    with pytest.raises(MainWalletLockedError):
        await engine.sub_wallets.create_sub_wallet("contract-1", "Escrow")


@pytest.mark.asyncio
async def test_create_sub_wallet(unlocked_engine, tmp_path):
    registry = unlocked_engine.sub_wallets

    titled = await registry.create_sub_wallet("contract-123456789", "Escrow", title="Copper Deal")
    untitled = await registry.create_sub_wallet("contract-123456789", "Buyer Deposit")

    assert titled.name == "Copper Deal - Escrow"
    assert untitled.name == "Contract contract - Buyer Deposit"
    assert titled.main_wallet_address == DEV_ADDRESS
    assert titled.address != untitled.address
    assert titled.encrypted_private_key.startswith("fx2:")

    stored = json.loads((tmp_path / "sub_wallets.json").read_text())
    assert {r["address"] for r in stored} == {titled.address, untitled.address}
    assert all(r["encryptedPrivateKey"].startswith("fx2:") for r in stored)


@pytest.mark.asyncio
async def test_resolve_from_memory_is_case_insensitive(unlocked_engine):
    created = await unlocked_engine.sub_wallets.create_sub_wallet("c1", "Escrow")

    found, source = await unlocked_engine.sub_wallets.resolve(created.address.lower())

    assert found is created
    assert source is Source.MEMORY


@pytest.mark.asyncio
async def test_resolve_reloads_local_snapshot(unlocked_engine):
    record = SubWallet.from_dict(foreign_record())
    unlocked_engine.store.save_sub_wallets([record])

    found, source = await unlocked_engine.sub_wallets.resolve(record.address)

    assert found.address == record.address
    assert source is Source.LOCAL


@pytest.mark.asyncio
async def test_resolve_fetches_remote_and_persists(make_engine, session):
    remote = FakeRemote()
    engine = make_engine(remote=remote)
    engine.keys.import_wallet(PASSWORD, DEV_PRIVATE_KEY, kind="private_key")
    record = foreign_record()
    remote.records.append(record)

    found, source = await engine.sub_wallets.resolve(record["address"])

    assert source is Source.REMOTE
    assert found.contract_id == "contract-remote"
    assert [w.address for w in engine.store.load_sub_wallets()] == [record["address"]]

    _, source = await engine.sub_wallets.resolve(record["address"])
    assert source is Source.MEMORY


@pytest.mark.asyncio
async def test_resolve_miss_everywhere(make_engine):
    remote = FakeRemote()
    engine = make_engine(remote=remote)
    engine.keys.import_wallet(PASSWORD, DEV_PRIVATE_KEY, kind="private_key")

    with pytest.raises(SubWalletNotFoundError):
        await engine.sub_wallets.resolve(INVITER)
    assert remote.list_calls == 1


@pytest.mark.asyncio
async def test_resolve_survives_remote_outage(make_engine):
    remote = FakeRemote()
    remote.fail = True
    engine = make_engine(remote=remote)
    engine.keys.import_wallet(PASSWORD, DEV_PRIVATE_KEY, kind="private_key")

    with pytest.raises(SubWalletNotFoundError):
        await engine.sub_wallets.resolve(INVITER)


@pytest.mark.asyncio
async def test_deactivated_sub_wallet_is_never_resurrected(make_engine):
    remote = FakeRemote()
    engine = make_engine(remote=remote)
    engine.keys.import_wallet(PASSWORD, DEV_PRIVATE_KEY, kind="private_key")
    created = await engine.sub_wallets.create_sub_wallet("c1", "Escrow")
    await engine.sub_wallets.flush_mirrors()
    remote.records.extend(remote.saved)

    engine.sub_wallets.deactivate_sub_wallet(created.address)

    with pytest.raises(SubWalletNotFoundError):
        await engine.sub_wallets.resolve(created.address)
    engine.sub_wallets.sync_from_remote(remote.records)
    assert engine.sub_wallets.get_sub_wallets() == []

    reloaded = make_engine(remote=remote)
    with pytest.raises(SubWalletNotFoundError):
        await reloaded.sub_wallets.resolve(created.address)


@pytest.mark.asyncio
async def test_creation_is_mirrored_in_background(make_engine):
    remote = FakeRemote()
    engine = make_engine(remote=remote)
    engine.keys.import_wallet(PASSWORD, DEV_PRIVATE_KEY, kind="private_key")

    created = await engine.sub_wallets.create_sub_wallet("c1", "Escrow")
    await engine.sub_wallets.flush_mirrors()

    assert [r["address"] for r in remote.saved] == [created.address]


@pytest.mark.asyncio
async def test_mirror_failure_is_only_logged(make_engine, caplog):
    remote = FakeRemote()
    remote.fail = True
    engine = make_engine(remote=remote)
    engine.keys.import_wallet(PASSWORD, DEV_PRIVATE_KEY, kind="private_key")

    created = await engine.sub_wallets.create_sub_wallet("c1", "Escrow")
    await engine.sub_wallets.flush_mirrors()

    assert engine.sub_wallets.get_sub_wallets() == [created]
    assert any("Failed to sync sub-wallet" in r.message for r in caplog.records)


@pytest.mark.asyncio
async def test_sync_to_remote_counts_successes(make_engine):
    remote = FakeRemote()
    engine = make_engine(remote=remote)
    engine.keys.import_wallet(PASSWORD, DEV_PRIVATE_KEY, kind="private_key")
    await engine.sub_wallets.create_sub_wallet("c1", "Escrow")
    await engine.sub_wallets.create_sub_wallet("c2", "Escrow")
    await engine.sub_wallets.flush_mirrors()
    remote.saved.clear()

    assert await engine.sub_wallets.sync_to_remote() == 2
    assert len(remote.saved) == 2


@pytest.mark.asyncio
async def test_listing_filters_by_owner_and_contract(unlocked_engine):
    mine = await unlocked_engine.sub_wallets.create_sub_wallet("c1", "Escrow")
    unlocked_engine.sub_wallets.sync_from_remote([foreign_record(main_address=INVITER)])

    assert unlocked_engine.sub_wallets.get_sub_wallets() == [mine]
    assert unlocked_engine.sub_wallets.get_sub_wallets_for_contract("c1") == [mine]
    assert len(unlocked_engine.sub_wallets.get_sub_wallets_for_contract("contract-remote")) == 1


# ============================================
# Signers and key recovery
# ============================================

@pytest.mark.asyncio
async def test_sub_wallet_signer(unlocked_engine):
    created = await unlocked_engine.sub_wallets.create_sub_wallet("c1", "Escrow")

    signer = await unlocked_engine.sub_wallets.get_sub_wallet_signer(created.address)
    connected = await unlocked_engine.sub_wallets.get_sub_wallet_signer(created.address, 1)

    assert signer.address == created.address
    assert not signer.is_connected
    assert connected.is_connected
    assert await unlocked_engine.sub_wallets.get_sub_wallet_signer(INVITER) is None


@pytest.mark.asyncio
async def test_legacy_encrypted_sub_wallet_is_recovered(unlocked_engine):
    account = Account.create()
    legacy_key = legacy_sub_wallet_key(DEV_ADDRESS, DEV_PRIVATE_KEY)
    record = foreign_record()
    record.update(
        address=account.address,
        encryptedPrivateKey=openssl_encrypt(private_key_hex(account), legacy_key),
    )
    unlocked_engine.sub_wallets.sync_from_remote([record])

    signer = await unlocked_engine.sub_wallets.get_sub_wallet_signer(account.address)

    assert signer.address == account.address


@pytest.mark.asyncio
async def test_sub_wallet_keys_survive_reload(unlocked_engine, make_engine):
    created = await unlocked_engine.sub_wallets.create_sub_wallet("c1", "Escrow")

    reloaded = make_engine()
    signer = await reloaded.sub_wallets.get_sub_wallet_signer(created.address)

    assert signer.address == created.address


# ============================================
# Balances and funds
# ============================================

@pytest.mark.asyncio
async def test_sub_wallet_balance(unlocked_engine, provider):
    created = await unlocked_engine.sub_wallets.create_sub_wallet("c1", "Escrow")
    connection = provider.connection()
    connection.balances[created.address.lower()] = ETH // 4
    connection.token_balances[(USDC_BASE_SEPOLIA.lower(), created.address.lower())] = 1_234_560

    balance = await unlocked_engine.sub_wallets.get_sub_wallet_balance(created.address)

    assert balance.native == "0.250000"
    assert balance.token == "1.23"
    assert balance.native_usd == Decimal("600")
    assert balance.token_usd == Decimal("1.23456")


@pytest.mark.asyncio
async def test_sub_wallet_balance_degrades_to_zero(unlocked_engine, provider):
    provider.connection().fail_reads = True

    balance = await unlocked_engine.sub_wallets.get_sub_wallet_balance(INVITER)

    assert (balance.native, balance.token) == ("0.00", "0.00")
    assert balance.native_usd == 0


@pytest.mark.asyncio
async def test_fund_rejects_unsupported_currency_before_io(unlocked_engine, provider):
    with pytest.raises(UnsupportedCurrencyError):
        await unlocked_engine.sub_wallets.fund_sub_wallet(INVITER, "1", 1, "DOGE")
    assert provider.requests == []


@pytest.mark.asyncio
async def test_fund_requires_unlocked_master(engine):
    with pytest.raises(MainWalletLockedError):
        await engine.sub_wallets.fund_sub_wallet(INVITER, "1", 1, "ETH")


@pytest.mark.asyncio
async def test_fund_native_and_token(unlocked_engine, provider):
    created = await unlocked_engine.sub_wallets.create_sub_wallet("c1", "Escrow")

    native_hash = await unlocked_engine.sub_wallets.fund_sub_wallet(created.address, "0.1", 1, "ETH")
    token_hash = await unlocked_engine.sub_wallets.fund_sub_wallet(created.address, "25", 1, "usdc")

    assert native_hash != token_hash
    assert len(provider.connection().sent) == 2


@pytest.mark.asyncio
async def test_transfer_while_locked_touches_nothing(unlocked_engine, provider):
    created = await unlocked_engine.sub_wallets.create_sub_wallet("c1", "Escrow")
    unlocked_engine.keys.lock_wallet()

    with pytest.raises(WalletLockedError):
        await unlocked_engine.sub_wallets.transfer_from_sub_wallet(created.address, "0.1", "ETH", 1)

    assert provider.requests == []
    assert provider.connection().calls == []


@pytest.mark.asyncio
async def test_transfer_with_insufficient_balance_signs_nothing(unlocked_engine, provider):
    created = await unlocked_engine.sub_wallets.create_sub_wallet("c1", "Escrow")
    connection = provider.connection()
    # Exactly the amount, nothing left for gas
    connection.balances[created.address.lower()] = ETH // 10

    with pytest.raises(InsufficientBalanceError) as excinfo:
        await unlocked_engine.sub_wallets.transfer_from_sub_wallet(created.address, "0.1", "ETH", 1)

    assert excinfo.value.required == ETH // 10 + NATIVE_TRANSFER_GAS * GWEI
    assert excinfo.value.available == ETH // 10
    assert connection.sent == []
    assert not any(call[0] == "send_raw_transaction" for call in connection.calls)


@pytest.mark.asyncio
async def test_transfer_native_to_master(unlocked_engine, provider):
    created = await unlocked_engine.sub_wallets.create_sub_wallet("c1", "Escrow")
    connection = provider.connection()
    connection.balances[created.address.lower()] = ETH

    tx_hash = await unlocked_engine.sub_wallets.transfer_from_sub_wallet(created.address, "0.5", "ETH", 1)

    assert tx_hash.startswith("0x")
    assert len(connection.sent) == 1
    sender = Account.recover_transaction(connection.sent[0])
    assert sender == created.address


@pytest.mark.asyncio
async def test_transfer_token_checks_token_balance(unlocked_engine, provider):
    created = await unlocked_engine.sub_wallets.create_sub_wallet("c1", "Escrow")
    connection = provider.connection()
    connection.token_balances[(USDC_BASE_SEPOLIA.lower(), created.address.lower())] = 5_000_000

    with pytest.raises(InsufficientBalanceError):
        await unlocked_engine.sub_wallets.transfer_from_sub_wallet(created.address, "5.01", "USDC", 1)

    await unlocked_engine.sub_wallets.transfer_from_sub_wallet(created.address, "5", "USDC", 1)
    assert len(connection.sent) == 1


# ============================================
# Invitations and signing
# ============================================

DETAILS = {
    "title": "Copper Deal",
    "description": "200t copper cathodes",
    "amount": "50000",
    "currency": "USDC",
    "deadline": "2026-12-31",
}


@pytest.mark.asyncio
async def test_send_invitation_uses_master_as_inviter(unlocked_engine):
    invitation = await unlocked_engine.sub_wallets.send_contract_invitation(INVITER, "trade_finance", DETAILS)

    assert invitation.inviter_address == DEV_ADDRESS
    assert invitation.contract_details.title == "Copper Deal"


@pytest.mark.asyncio
async def test_send_invitation_requires_master(engine):
    with pytest.raises(MainWalletLockedError):
        await engine.sub_wallets.send_contract_invitation(INVITER, "escrow", DETAILS)


@pytest.mark.asyncio
async def test_accept_invitation_creates_participant_wallet(unlocked_engine):
    invitation = unlocked_engine.invitations.create(INVITER, DEV_ADDRESS, "escrow", ContractDetails.from_dict(DETAILS))
    assert unlocked_engine.sub_wallets.get_pending_invitations() == [invitation]

    sub_wallet = await unlocked_engine.sub_wallets.accept_invitation(invitation.id, "contract-9")

    assert sub_wallet.name == "Copper Deal - Contract Participant"
    assert sub_wallet.contract_id == "contract-9"
    assert unlocked_engine.invitations.get(invitation.id).status == "accepted"
    assert unlocked_engine.sub_wallets.get_pending_invitations() == []

    with pytest.raises(InvitationAlreadyProcessedError):
        await unlocked_engine.sub_wallets.accept_invitation(invitation.id, "contract-9")


@pytest.mark.asyncio
async def test_remote_conflict_leaves_invitation_pending(make_engine):
    remote = FakeRemote()
    remote.accept_conflict = True
    engine = make_engine(remote=remote)
    engine.keys.import_wallet(PASSWORD, DEV_PRIVATE_KEY, kind="private_key")
    invitation = engine.invitations.create(INVITER, DEV_ADDRESS, "escrow", ContractDetails.from_dict(DETAILS))

    with pytest.raises(InvitationAlreadyProcessedError):
        await engine.sub_wallets.accept_invitation(invitation.id, "contract-9")

    assert engine.invitations.get(invitation.id).status == "pending"
    assert engine.sub_wallets.get_sub_wallets() == []


@pytest.mark.asyncio
async def test_remote_outage_leaves_invitation_pending(make_engine):
    remote = FakeRemote()
    remote.fail = True
    engine = make_engine(remote=remote)
    engine.keys.import_wallet(PASSWORD, DEV_PRIVATE_KEY, kind="private_key")
    invitation = engine.invitations.create(INVITER, DEV_ADDRESS, "escrow", ContractDetails.from_dict(DETAILS))

    with pytest.raises(RemoteStoreError):
        await engine.sub_wallets.accept_invitation(invitation.id, "contract-9")

    assert engine.invitations.get(invitation.id).status == "pending"


@pytest.mark.asyncio
async def test_remote_accept_is_confirmed_first(make_engine):
    remote = FakeRemote()
    engine = make_engine(remote=remote)
    engine.keys.import_wallet(PASSWORD, DEV_PRIVATE_KEY, kind="private_key")
    invitation = engine.invitations.create(INVITER, DEV_ADDRESS, "escrow", ContractDetails.from_dict(DETAILS))

    await engine.sub_wallets.accept_invitation(invitation.id, "contract-9")
    await engine.sub_wallets.flush_mirrors()

    assert remote.accepted == [(invitation.id, DEV_ADDRESS)]
    assert len(remote.saved) == 1


def test_reject_invitation(unlocked_engine):
    invitation = unlocked_engine.invitations.create(INVITER, DEV_ADDRESS, "escrow", ContractDetails.from_dict(DETAILS))

    assert unlocked_engine.sub_wallets.reject_invitation(invitation.id).status == "rejected"


@pytest.mark.asyncio
async def test_sign_contract_tracks_all_parties(unlocked_engine):
    registry = unlocked_engine.sub_wallets
    seller = await registry.create_sub_wallet("contract-7", "Seller")
    buyer = await registry.create_sub_wallet("contract-7", "Buyer")

    first = await registry.sign_contract(seller.address)
    assert not first.is_fully_signed
    assert not first.funds_locked

    second = await registry.sign_contract(buyer.address)
    assert second.is_fully_signed
    assert second.funds_locked

    signature = second.signature
    assert signature.message.startswith(f"Sign contract for sub-wallet {buyer.address} at ")
    recovered = Account.recover_message(encode_defunct(text=signature.message), signature=signature.signature)
    assert recovered == DEV_ADDRESS
    assert len(unlocked_engine.store.load_signatures()) == 2
    assert buyer.contract_signed and buyer.signed_at == signature.timestamp


@pytest.mark.asyncio
async def test_sign_contract_requires_master(engine):
    with pytest.raises(MainWalletLockedError):
        await engine.sub_wallets.sign_contract(INVITER)


@pytest.mark.asyncio
async def test_refresh_invitations_pulls_from_remote(make_engine):
    remote = FakeRemote()
    engine = make_engine(remote=remote)
    engine.keys.import_wallet(PASSWORD, DEV_PRIVATE_KEY, kind="private_key")
    incoming = engine.invitations.create(INVITER, DEV_ADDRESS, "escrow", ContractDetails.from_dict(DETAILS))
    remote.invitations.append(dict(incoming.to_dict(), id="inv_2_remoteone"))

    assert await engine.sub_wallets.refresh_invitations() == 1
    assert {i.id for i in engine.sub_wallets.get_pending_invitations()} == {incoming.id, "inv_2_remoteone"}

    remote.fail = True
    assert await engine.sub_wallets.refresh_invitations() == 0


@pytest.mark.asyncio
async def test_close_flushes_and_wipes_session(make_engine, session):
    remote = FakeRemote()
    engine = make_engine(remote=remote)
    engine.keys.import_wallet(PASSWORD, DEV_PRIVATE_KEY, kind="private_key")
    await engine.sub_wallets.create_sub_wallet("c1", "Escrow")

    await engine.close()

    assert len(remote.saved) == 1
    assert session.is_closed
    assert not engine.keys.is_unlocked()


@pytest.mark.asyncio
async def test_stale_remote_copy_never_undoes_local_signature(make_engine):
    remote = FakeRemote()
    engine = make_engine(remote=remote)
    engine.keys.import_wallet(PASSWORD, DEV_PRIVATE_KEY, kind="private_key")
    created = await engine.sub_wallets.create_sub_wallet("c1", "Escrow")
    await engine.sub_wallets.flush_mirrors()
    stale = dict(remote.saved[0], encryptedPrivateKey="fx2:t=1,m=8,p=1:BBBB")

    remote.fail = True
    result = await engine.sub_wallets.sign_contract(created.address)
    await engine.sub_wallets.flush_mirrors()
    assert result.is_fully_signed

    assert engine.sub_wallets.sync_from_remote([stale]) == 0

    kept, _ = await engine.sub_wallets.resolve(created.address)
    assert kept.contract_signed
    assert kept.signed_at == result.signature.timestamp
    assert kept.encrypted_private_key == created.encrypted_private_key
    stored = engine.store.load_sub_wallets()
    assert stored[0].contract_signed


@pytest.mark.asyncio
async def test_remote_signature_is_adopted(unlocked_engine):
    created = await unlocked_engine.sub_wallets.create_sub_wallet("c1", "Escrow")
    signed_elsewhere = dict(created.to_dict(), contractSigned=True, signedAt="2026-02-01T00:00:00+00:00")

    assert unlocked_engine.sub_wallets.sync_from_remote([signed_elsewhere]) == 1

    assert created.contract_signed
    assert created.signed_at == "2026-02-01T00:00:00+00:00"


@pytest.mark.asyncio
async def test_concurrent_sub_wallet_balance_reads_share_one_fetch(unlocked_engine, provider):
    created = await unlocked_engine.sub_wallets.create_sub_wallet("c1", "Escrow")
    connection = provider.connection()
    connection.balances[created.address.lower()] = ETH
    connection.gate = asyncio.Event()

    reads = [
        asyncio.create_task(unlocked_engine.sub_wallets.get_sub_wallet_balance(created.address, 1)),
        asyncio.create_task(unlocked_engine.sub_wallets.get_sub_wallet_balance(created.address.lower(), 1)),
    ]
    for _ in range(5):
        await asyncio.sleep(0)
    connection.gate.set()
    first, second = await asyncio.gather(*reads)

    assert first.snapshot is second.snapshot
    assert first == second
    assert sum(1 for call in connection.calls if call[0] == "get_balance") == 1
