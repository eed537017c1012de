import time

import pytest

from conftest import grant_fragments
from db_models import WAITLIST_EXPIRED, WAITLIST_FULFILLED, WAITLIST_NOTIFIED, WAITLIST_WAITING
from flow_errors import CriticalDivergence, LedgerCallRejected, LedgerRejected, PreconditionFailed, SoldOutWithOptions
from ledger_client import COIN, fragment_token
from orchestrator import Caller


@pytest.fixture
def sold_out_economy(governor):
    governor.set_cap("Economy", 0, actor="ops", reason="sold out")


def test_refund_burns_and_pays_bonus(store, ledger, orchestrator, sold_out_economy, alice):
    frags = grant_fragments(store, ledger, alice, "Toyota", "Economy")
    result = orchestrator.claim_refund(alice, "Toyota")

    assert ledger.method_order() == ["burn", "mint_fungible"]
    assert result["refund_bonus"] == 500_000
    assert ledger.balance_of(COIN, alice.wallet) == 500_000
    for slot in range(5):
        assert ledger.balance_of(fragment_token("Toyota", slot), alice.wallet) == 0
    consumed = store.get_fragments([f.id for f in frags])
    assert all(f.used and f.consumed_signature == result["burn_signature"] for f in consumed)


def test_refund_only_when_sold_out(store, ledger, orchestrator, alice):
    grant_fragments(store, ledger, alice, "Toyota", "Economy")
    with pytest.raises(PreconditionFailed):
        orchestrator.claim_refund(alice, "Toyota")
    assert ledger.calls == []


def test_refund_bonus_failure_after_burn_is_critical(store, ledger, orchestrator, sold_out_economy, alice):
    grant_fragments(store, ledger, alice, "Toyota", "Economy")
    ledger.fail("mint_fungible", LedgerCallRejected("mint paused"))
    with pytest.raises(CriticalDivergence) as excinfo:
        orchestrator.claim_refund(alice, "Toyota")
    assert excinfo.value.flow == "refund"
    assert "burn_fragments" in excinfo.value.receipts


def test_join_waitlist_reserves_fragments(store, ledger, orchestrator, sold_out_economy, alice, bob):
    frags = grant_fragments(store, ledger, alice, "Toyota", "Economy")
    grant_fragments(store, ledger, bob, "Toyota", "Economy")
    entry = orchestrator.join_waitlist(alice, "Toyota")
    other = orchestrator.join_waitlist(bob, "Toyota")

    assert (entry["position"], other["position"]) == (1, 2)
    assert entry["status"] == WAITLIST_WAITING
    reserved = store.get_fragments([f.id for f in frags])
    assert all(f.used and f.waitlist_id == entry["waitlist_id"] for f in reserved)
    assert ledger.calls == []

    # reserved fragments cannot feed another flow
    with pytest.raises(PreconditionFailed):
        orchestrator.claim_refund(alice, "Toyota")


def test_one_active_entry_per_series(store, ledger, orchestrator, sold_out_economy, alice):
    grant_fragments(store, ledger, alice, "Toyota", "Economy")
    grant_fragments(store, ledger, alice, "Toyota", "Economy")
    orchestrator.join_waitlist(alice, "Toyota")
    with pytest.raises(PreconditionFailed) as excinfo:
        orchestrator.join_waitlist(alice, "Toyota")
    assert excinfo.value.payload["position"] == 1


def test_waitlist_only_when_sold_out(store, ledger, orchestrator, alice):
    grant_fragments(store, ledger, alice, "Toyota", "Economy")
    with pytest.raises(PreconditionFailed):
        orchestrator.join_waitlist(alice, "Toyota")


def test_notified_entry_claims_item(store, ledger, orchestrator, governor, sold_out_economy, alice, bob):
    frags = grant_fragments(store, ledger, alice, "Toyota", "Economy")
    entry = orchestrator.join_waitlist(alice, "Toyota")
    governor.set_cap("Economy", 1, actor="ops", reason="restock")

    # the restocked unit is held for alice, not for ordinary assembly
    grant_fragments(store, ledger, bob, "Toyota", "Economy")
    with pytest.raises(SoldOutWithOptions):
        orchestrator.assemble(bob, "Toyota")

    result = orchestrator.assemble(alice, "Toyota", waitlist_id=entry["waitlist_id"])
    assert sorted(result["consumed_fragment_ids"]) == sorted(f.id for f in frags)
    fulfilled = store.get_waitlist_entry(entry["waitlist_id"])
    assert fulfilled.status == WAITLIST_FULFILLED
    assert fulfilled.item_id == result["item"]["item_id"]
    status = governor.status("Economy")
    assert (status.current_minted, status.reserved, status.sold_out) == (1, 0, True)


def test_waiting_entry_cannot_claim_before_notice(store, ledger, orchestrator, sold_out_economy, alice):
    grant_fragments(store, ledger, alice, "Toyota", "Economy")
    entry = orchestrator.join_waitlist(alice, "Toyota")
    with pytest.raises(PreconditionFailed):
        orchestrator.assemble(alice, "Toyota", waitlist_id=entry["waitlist_id"])
    assert ledger.calls == []


def test_rejected_claim_returns_entry_to_notified(store, ledger, orchestrator, governor, sold_out_economy, alice):
    grant_fragments(store, ledger, alice, "Toyota", "Economy")
    entry = orchestrator.join_waitlist(alice, "Toyota")
    governor.set_cap("Economy", 1, actor="ops")
    ledger.fail("burn", LedgerCallRejected("simulation failed"))
    with pytest.raises(LedgerRejected):
        orchestrator.assemble(alice, "Toyota", waitlist_id=entry["waitlist_id"])
    assert store.get_waitlist_entry(entry["waitlist_id"]).status == WAITLIST_NOTIFIED


def test_expired_notice_frees_fragments_and_renotifies(store, ledger, orchestrator, governor, sold_out_economy, alice, bob):
    alice_frags = grant_fragments(store, ledger, alice, "Toyota", "Economy")
    grant_fragments(store, ledger, bob, "Toyota", "Economy")
    first = orchestrator.join_waitlist(alice, "Toyota")
    second = orchestrator.join_waitlist(bob, "Toyota")
    governor.set_cap("Economy", 1, actor="ops")
    assert store.transition_waitlist(
        first["waitlist_id"], WAITLIST_NOTIFIED, WAITLIST_NOTIFIED, expires_at=time.time() - 1
    )

    expired = orchestrator.expire_waitlist()

    assert expired == [first["waitlist_id"]]
    assert store.get_waitlist_entry(first["waitlist_id"]).status == WAITLIST_EXPIRED
    assert not any(f.used for f in store.get_fragments([f.id for f in alice_frags]))
    assert store.get_waitlist_entry(second["waitlist_id"]).status == WAITLIST_NOTIFIED


def test_waitlist_listing_for_user(store, ledger, orchestrator, sold_out_economy):
    carol = Caller(user_id="carol", wallet="carol-wallet")
    grant_fragments(store, ledger, carol, "Toyota", "Economy")
    orchestrator.join_waitlist(carol, "Toyota")
    entries = store.waitlist_for_user("carol")
    assert [(e.series, e.position) for e in entries] == [("Economy", 1)]
