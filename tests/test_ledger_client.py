from types import SimpleNamespace

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from flow_errors import LedgerCallRejected, LedgerTimeout
from ledger_client import SolanaLedger, confirmation_rank
from tx_builder import RegistryAccountLayout, account_discriminator, decode_mint_item

PROCESSED = TransactionConfirmationStatus.Processed
CONFIRMED = TransactionConfirmationStatus.Confirmed
FINALIZED = TransactionConfirmationStatus.Finalized
SIG = str(Signature.default())


def status(level, err=None, slot=42):
    return SimpleNamespace(err=err, confirmation_status=level, slot=slot)


class StubRpc:
    """Just enough of solana.rpc.api.Client; every queue repeats its last entry."""

    def __init__(self, statuses=(), registry_ids=()):
        self.statuses = list(statuses)
        self.registry_ids = list(registry_ids)
        self.sent = []
        self.status_polls = 0

    @staticmethod
    def _next(queue):
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def get_signature_statuses(self, signatures, search_transaction_history=False):
        self.status_polls += 1
        return SimpleNamespace(value=[self._next(self.statuses)])

    def get_latest_blockhash(self):
        return SimpleNamespace(value=SimpleNamespace(blockhash=Hash.default()))

    def send_raw_transaction(self, raw, opts=None):
        self.sent.append(raw)
        return SimpleNamespace(value=None)

    def get_account_info(self, pubkey):
        data = account_discriminator("ItemRegistry") + RegistryAccountLayout.build(
            {"authority": list(bytes(Pubkey.default())), "next_item_id": self._next(self.registry_ids)}
        )
        return SimpleNamespace(value=SimpleNamespace(data=data))


def make_ledger(rpc, commitment="finalized", timeout=1.0):
    return SolanaLedger(
        client=rpc,
        operator=Keypair(),
        coin_mint=Pubkey.new_unique(),
        coin_decimals=6,
        treasury=Pubkey.new_unique(),
        fragment_mints={},
        registry_program=Pubkey.new_unique(),
        confirm_timeout_sec=timeout,
        poll_interval_sec=0,
        commitment=commitment,
    )


def test_confirmation_rank_orders_levels():
    assert confirmation_rank(PROCESSED) < confirmation_rank(CONFIRMED) < confirmation_rank(FINALIZED)
    assert confirmation_rank(None) == -1


def test_processed_is_not_enough_for_finalized_commitment():
    rpc = StubRpc(statuses=[status(PROCESSED), status(CONFIRMED), status(FINALIZED, slot=77)])
    ledger = make_ledger(rpc)
    assert ledger._await_confirmation(SIG, "test") == 77
    assert rpc.status_polls == 3


def test_confirmed_commitment_accepts_confirmed():
    rpc = StubRpc(statuses=[status(PROCESSED), status(CONFIRMED, slot=5)])
    assert make_ledger(rpc, commitment="confirmed")._await_confirmation(SIG, "test") == 5


def test_stuck_at_processed_times_out():
    rpc = StubRpc(statuses=[status(PROCESSED)])
    with pytest.raises(LedgerTimeout) as excinfo:
        make_ledger(rpc, timeout=0.05)._await_confirmation(SIG, "test")
    assert excinfo.value.signature == SIG


def test_signature_status_respects_commitment():
    assert make_ledger(StubRpc(statuses=[status(PROCESSED)])).signature_status(SIG) is None
    assert make_ledger(StubRpc(statuses=[status(FINALIZED)])).signature_status(SIG) is True
    assert make_ledger(StubRpc(statuses=[status(FINALIZED, err="boom")])).signature_status(SIG) is False
    assert make_ledger(StubRpc(statuses=[None])).signature_status(SIG) is None


def test_unknown_commitment_rejected():
    with pytest.raises(ValueError):
        make_ledger(StubRpc(statuses=[None]), commitment="rooted")


def test_mint_retries_with_fresh_id_when_counter_moved():
    # another writer took 1000 between our read and our confirmation
    rpc = StubRpc(statuses=[status(FINALIZED, err="id mismatch"), status(FINALIZED)], registry_ids=[1000, 1001, 1001])
    ledger = make_ledger(rpc)

    item_id, receipt = ledger.mint_collectible(str(Pubkey.new_unique()))

    assert item_id == 1001
    assert len(rpc.sent) == 2
    assert receipt.slot == 42


def test_rejected_mint_with_unmoved_counter_is_not_retried():
    rpc = StubRpc(statuses=[status(FINALIZED, err="program error")], registry_ids=[1000])
    with pytest.raises(LedgerCallRejected):
        make_ledger(rpc).mint_collectible(str(Pubkey.new_unique()))
    assert len(rpc.sent) == 1


def test_mint_gives_up_after_bounded_attempts():
    rpc = StubRpc(statuses=[status(FINALIZED, err="id mismatch")], registry_ids=[1000, 1001, 1002, 1003, 1004, 1005])
    with pytest.raises(LedgerCallRejected):
        make_ledger(rpc).mint_collectible(str(Pubkey.new_unique()))
    assert len(rpc.sent) == 3


def test_mint_instruction_carries_the_issued_id():
    rpc = StubRpc(statuses=[status(FINALIZED)], registry_ids=[1200])
    ledger = make_ledger(rpc)
    owner = Pubkey.new_unique()
    ledger.mint_collectible(str(owner))

    tx = VersionedTransaction.from_bytes(rpc.sent[0])
    keys = tx.message.account_keys
    decoded = [
        decode_mint_item(bytes(ix.data))
        for ix in tx.message.instructions
        if keys[ix.program_id_index] == ledger.registry_program
    ]
    assert decoded == [{"item_id": 1200, "owner": owner}]
