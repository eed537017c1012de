import json
import logging
import time

import pytest

from conftest import TREASURY, fund, grant_fragments, grant_item, timeout
from db_models import LISTING_ACTIVE, LISTING_PROCESSING, LISTING_SOLD
from flow_errors import CriticalDivergence, LedgerUnconfirmed, RecoverableConflict
from ledger_client import COIN, fragment_token
from reconcile_scheduler import Reconciler

ITEM = 77


@pytest.fixture
def reconciler(orchestrator):
    return Reconciler(orchestrator, stale_after_seconds=600, logger=logging.getLogger("garage"))


@pytest.fixture
def listing(store, ledger, orchestrator, alice, bob):
    grant_item(store, ledger, alice, ITEM)
    fund(ledger, bob, 1000)
    return orchestrator.create_listing(alice, ITEM, 100)


def open_unconfirmed(store):
    return [r for r in store.reconciliation_records() if r.severity == "unconfirmed"]


def pay(ledger, caller, signature, amount=50):
    ledger.payments[signature] = (caller.wallet, TREASURY, COIN, amount)


def test_pending_signature_stays_open(store, ledger, orchestrator, reconciler, alice):
    ledger.fail("mint_fungible", timeout("sig-wait"))
    with pytest.raises(LedgerUnconfirmed):
        orchestrator.claim_faucet(alice)
    record = open_unconfirmed(store)[0]
    assert reconciler.resolve_unconfirmed(record) == "pending"
    assert store.reconciliation_records("open") != []


def test_failed_first_step_releases_lock(store, ledger, orchestrator, reconciler, alice):
    ledger.fail("mint_fungible", timeout("sig-dropped"))
    with pytest.raises(LedgerUnconfirmed):
        orchestrator.claim_faucet(alice)
    ledger.statuses["sig-dropped"] = False

    summary = reconciler.run_once()

    assert summary["unconfirmed"] == {"released": 1}
    assert store.get_user("alice").last_faucet_at is None
    assert store.reconciliation_records("open") == []
    orchestrator.claim_faucet(alice)


def test_failed_buyback_transfer_releases_item(store, ledger, orchestrator, reconciler, alice):
    grant_item(store, ledger, alice, ITEM)
    ledger.fail("transfer_collectible", timeout("sig-lost"))
    with pytest.raises(LedgerUnconfirmed):
        orchestrator.buyback(alice, ITEM)
    assert store.get_item(ITEM).pending_action == "buyback"
    ledger.statuses["sig-lost"] = False

    assert reconciler.resolve_unconfirmed(open_unconfirmed(store)[0]) == "released"
    assert store.get_item(ITEM).pending_action is None


def test_landed_final_step_is_finalized(store, ledger, orchestrator, reconciler, listing, bob):
    ledger.fail("transfer_collectible", timeout("sig-landed"))
    with pytest.raises(LedgerUnconfirmed):
        orchestrator.purchase(bob, listing["listing_id"])
    assert store.get_listing(listing["listing_id"]).status == LISTING_PROCESSING
    # the transfer did land after all
    ledger.owners[ITEM] = bob.wallet
    ledger.statuses["sig-landed"] = True

    assert reconciler.resolve_unconfirmed(open_unconfirmed(store)[0]) == "finalized"
    sold = store.get_listing(listing["listing_id"])
    assert sold.status == LISTING_SOLD
    assert sold.transfer_signature == "sig-landed"
    assert store.get_item(ITEM).owner_id == "bob"


def test_failed_late_step_is_escalated(store, ledger, orchestrator, reconciler, listing, bob, caplog):
    ledger.fail("transfer_collectible", timeout("sig-reverted"))
    with pytest.raises(LedgerUnconfirmed):
        orchestrator.purchase(bob, listing["listing_id"])
    ledger.statuses["sig-reverted"] = False

    record = open_unconfirmed(store)[0]
    assert reconciler.resolve_unconfirmed(record) == "escalated"
    assert "CRITICAL_DESYNC" in caplog.text
    escalated = store.reconciliation_records("open")[0]
    assert escalated.severity == "critical"
    assert store.get_listing(listing["listing_id"]).status == "cancelled"


def test_diverged_sale_settled_from_ownership(store, ledger, orchestrator, reconciler, listing, bob, monkeypatch):
    original = store.finalize_sale

    def broken(*args, **kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(store, "finalize_sale", broken)
    with pytest.raises(CriticalDivergence):
        orchestrator.purchase(bob, listing["listing_id"])
    monkeypatch.setattr(store, "finalize_sale", original)
    assert store.get_listing(listing["listing_id"]).status == LISTING_PROCESSING

    assert reconciler.settle_diverged_sales() == 1
    assert store.get_listing(listing["listing_id"]).status == LISTING_SOLD
    assert store.reconciliation_records("open") == []


def test_stale_processing_listing_flagged_once(store, reconciler, listing):
    assert store.transition_listing(
        listing["listing_id"], LISTING_ACTIVE, LISTING_PROCESSING, buyer_id="bob", processing_since=time.time() - 3600
    )
    now = time.time()
    assert reconciler.flag_stale_locks(now) == 1
    assert reconciler.flag_stale_locks(now) == 0
    record = store.reconciliation_records("open")[0]
    assert record.flow == "marketplace"
    assert record.severity == "critical"


def test_run_once_summary(reconciler):
    summary = reconciler.run_once()
    assert summary == {"unconfirmed": {}, "sales_settled": 0, "stale_settled": 0, "stale_flagged": 0, "waitlist_expired": []}


# ------------------------------------------------------------------ rewards


def test_landed_fragment_reward_finalized_without_second_mint(store, ledger, orchestrator, reconciler, rng, alice):
    pay(ledger, alice, "pay-20")
    rng.values = [0.6]
    ledger.fail("mint_fungible", timeout("sig-late"))
    with pytest.raises(LedgerUnconfirmed):
        orchestrator.open_reward(alice, "standard", "pay-20")
    assert store.get_reward_log("pay-20").status == "pending"
    reward = json.loads(store.get_reward_log("pay-20").reward)
    # the mint landed after the confirmation window closed
    token = fragment_token(reward["brand"], reward["slot"])
    ledger.balances[(token, alice.wallet)] = 1
    ledger.statuses["sig-late"] = True

    assert reconciler.run_once()["unconfirmed"] == {"finalized": 1}

    log = store.get_reward_log("pay-20")
    assert log.status == "success"
    assert log.mint_signature == "sig-late"
    assert store.get_user("alice").total_spent == 50
    assert orchestrator.retry_reward("pay-20")["status"] == "success"
    assert ledger.called("mint_fungible") == 1
    assert ledger.balance_of(token, alice.wallet) == 1


def test_landed_item_reward_reads_item_id_from_ledger(store, ledger, orchestrator, reconciler, rng, alice):
    pay(ledger, alice, "pay-21")
    rng.values = [0.9]
    ledger.fail("mint_collectible", timeout("sig-item"))
    with pytest.raises(LedgerUnconfirmed):
        orchestrator.open_reward(alice, "standard", "pay-21")
    item_id = ledger.land_mint("sig-item", alice.wallet)

    assert reconciler.resolve_unconfirmed(open_unconfirmed(store)[0]) == "finalized"

    item = store.get_item(item_id)
    assert item.owner_id == "alice"
    assert item.model_name == "Toyota Corolla"
    assert item.payment_signature == "pay-21"
    assert store.get_reward_log("pay-21").item_id == item_id
    assert store.reconciliation_records("open") == []
    assert ledger.called("mint_collectible") == 1


def test_failed_reward_mint_escalated_then_retried(store, ledger, orchestrator, reconciler, rng, alice, caplog):
    pay(ledger, alice, "pay-22")
    rng.values = [0.9]
    ledger.fail("mint_collectible", timeout("sig-void"))
    with pytest.raises(LedgerUnconfirmed):
        orchestrator.open_reward(alice, "standard", "pay-22")
    ledger.statuses["sig-void"] = False

    # the payment already moved, so the record cannot simply be released
    assert reconciler.resolve_unconfirmed(open_unconfirmed(store)[0]) == "escalated"
    assert "CRITICAL_DESYNC" in caplog.text
    assert store.get_reward_log("pay-22").status == "diverged"

    result = orchestrator.retry_reward("pay-22")
    assert result["reward"]["model_name"] == "Toyota Corolla"
    assert store.get_item(result["item_id"]).owner_id == "alice"
    assert ledger.called("mint_collectible") == 2
    assert store.reconciliation_records("open") == []


def test_retry_waits_while_earlier_mint_is_unresolved(store, ledger, orchestrator, rng, alice):
    pay(ledger, alice, "pay-23")
    rng.values = [0.6]
    ledger.fail("mint_fungible", timeout("sig-limbo"))
    with pytest.raises(LedgerUnconfirmed):
        orchestrator.open_reward(alice, "standard", "pay-23")
    store.update_reward_log("pay-23", status="diverged")

    with pytest.raises(RecoverableConflict) as excinfo:
        orchestrator.retry_reward("pay-23")
    assert excinfo.value.payload["pending_signature"] == "sig-limbo"
    assert ledger.called("mint_fungible") == 1

    ledger.statuses["sig-limbo"] = False
    assert orchestrator.retry_reward("pay-23")["status"] == "success"
    assert ledger.called("mint_fungible") == 2


def test_landed_reward_with_failed_finalize_is_recorded_not_reminted(
    store, ledger, orchestrator, rng, alice, monkeypatch
):
    pay(ledger, alice, "pay-24")
    rng.values = [0.9]
    original = store.finalize_reward

    def broken(*args, **kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(store, "finalize_reward", broken)
    with pytest.raises(CriticalDivergence):
        orchestrator.open_reward(alice, "standard", "pay-24")
    monkeypatch.setattr(store, "finalize_reward", original)
    log = store.get_reward_log("pay-24")
    assert log.status == "landed"
    assert log.mint_signature is not None

    result = orchestrator.retry_reward("pay-24")

    assert result["status"] == "success"
    assert result["item_id"] == 1000
    assert store.get_item(1000).owner_id == "alice"
    assert ledger.called("mint_collectible") == 1
    assert store.reconciliation_records("open") == []


# ----------------------------------------------------------------- assembly


def test_landed_assembly_mint_is_finalized(store, ledger, orchestrator, reconciler, rng, alice):
    frags = grant_fragments(store, ledger, alice, "Toyota", "Economy")
    rng.values = [0.1]
    ledger.fail("mint_collectible", timeout("sig-asm"))
    with pytest.raises(LedgerUnconfirmed):
        orchestrator.assemble(alice, "Toyota")
    record = open_unconfirmed(store)[0]
    burn_signature = json.loads(record.receipts)["burn_fragments"]
    item_id = ledger.land_mint("sig-asm", alice.wallet)

    assert reconciler.resolve_unconfirmed(record) == "finalized"

    item = store.get_item(item_id)
    assert item.owner_id == "alice"
    assert item.model_name == "Toyota Supra MK4"
    assert item.mint_signature == "sig-asm"
    for frag in store.get_fragments([f.id for f in frags]):
        assert frag.used
        assert frag.consumed_signature == burn_signature
    assert ledger.called("mint_collectible") == 1


def test_failed_assembly_mint_after_burn_is_escalated(store, ledger, orchestrator, reconciler, rng, alice, caplog):
    frags = grant_fragments(store, ledger, alice, "Toyota", "Economy")
    rng.values = [0.1]
    ledger.fail("mint_collectible", timeout("sig-asm-void"))
    with pytest.raises(LedgerUnconfirmed):
        orchestrator.assemble(alice, "Toyota")
    ledger.statuses["sig-asm-void"] = False

    assert reconciler.resolve_unconfirmed(open_unconfirmed(store)[0]) == "escalated"

    assert "CRITICAL_DESYNC" in caplog.text
    escalated = store.reconciliation_records("open")[0]
    assert escalated.flow == "assembly"
    assert escalated.severity == "critical"
    # fragments are burnt on-chain, so they stay locked for manual handling
    assert all(f.used for f in store.get_fragments([f.id for f in frags]))


def test_failed_assembly_burn_releases_fragments(store, ledger, orchestrator, reconciler, rng, alice):
    frags = grant_fragments(store, ledger, alice, "Toyota", "Economy")
    rng.values = [0.1]
    ledger.fail("burn", timeout("sig-burn-void"))
    with pytest.raises(LedgerUnconfirmed):
        orchestrator.assemble(alice, "Toyota")
    ledger.statuses["sig-burn-void"] = False

    assert reconciler.resolve_unconfirmed(open_unconfirmed(store)[0]) == "released"

    assert not any(f.used for f in store.get_fragments([f.id for f in frags]))
    rng.values = [0.1]
    assert orchestrator.assemble(alice, "Toyota")["item"]["model_name"] == "Toyota Supra MK4"


# ------------------------------------------------------------ stale listings


def test_stale_listing_settled_when_buyer_holds_item(store, ledger, reconciler, listing, bob):
    store.ensure_user(bob.user_id, bob.wallet)
    assert store.transition_listing(
        listing["listing_id"], LISTING_ACTIVE, LISTING_PROCESSING, buyer_id="bob", processing_since=time.time() - 3600
    )
    ledger.owners[ITEM] = bob.wallet
    now = time.time()

    assert reconciler.settle_stale_listings(now) == 1
    assert reconciler.flag_stale_locks(now) == 0

    assert store.get_listing(listing["listing_id"]).status == LISTING_SOLD
    assert store.get_item(ITEM).owner_id == "bob"
    assert store.reconciliation_records("open") == []


def test_stale_listing_with_seller_still_holding_item_is_flagged(store, reconciler, listing, bob):
    store.ensure_user(bob.user_id, bob.wallet)
    assert store.transition_listing(
        listing["listing_id"], LISTING_ACTIVE, LISTING_PROCESSING, buyer_id="bob", processing_since=time.time() - 3600
    )
    now = time.time()

    assert reconciler.settle_stale_listings(now) == 0
    assert reconciler.flag_stale_locks(now) == 1
    assert store.get_listing(listing["listing_id"]).status == LISTING_PROCESSING
