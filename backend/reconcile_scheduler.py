"""
Reconciliation job for locks left behind by unobserved ledger calls.

- Resolves ``unconfirmed`` records from the real signature status: a failed
  call with nothing irreversible before it releases the lock; a landed final
  step is finalized locally (minted item ids are read back from the landed
  transaction); anything else is escalated to ``critical``.
- Settles stale ``processing`` listings whose item already reached the buyer
  on-chain, and flags the remaining stale listings and item locks.
- Settles diverged sales whose item already reached the buyer on-chain.
- Expires overdue waitlist notifications and re-notifies freed capacity.

It only reads the ledger. It never submits a ledger call.
"""

import json
import threading
import time
from typing import Any, Callable, Dict, Optional

from db_models import LISTING_ACTIVE, LISTING_CANCELLED, LISTING_PROCESSING, WAITLIST_CLAIMING, WAITLIST_NOTIFIED
from flow_errors import LedgerError
from ledger_client import LedgerClient
from orchestrator import Orchestrator
from store import Store

_SCHEDULER_THREAD: Optional[threading.Thread] = None


class Reconciler:
    def __init__(self, orchestrator: Orchestrator, stale_after_seconds: int, logger):
        self.orchestrator = orchestrator
        self.store: Store = orchestrator.store
        self.ledger: LedgerClient = orchestrator.ledger
        self.stale_after_seconds = stale_after_seconds
        self.logger = logger
        self.releasers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            "assembly": self._release_assembly,
            "refund": lambda res: self.store.release_fragments(res["fragment_ids"]),
            "marketplace": lambda res: self.store.transition_listing(
                res["listing_id"], LISTING_PROCESSING, LISTING_ACTIVE, buyer_id=None
            ),
            "buyback": lambda res: self.store.release_item(res["item_id"], "buyback"),
            "checkin": self._restore_cooldown,
            "faucet": self._restore_cooldown,
        }
        self.completers: Dict[str, Callable[[Dict[str, Any], Dict[str, str], Dict[str, Any]], None]] = {
            "marketplace": lambda res, rc, exp: self.store.finalize_sale(
                res["listing_id"], res["item_id"], res["buyer_id"], rc["transfer_payment"], rc["transfer_item"]
            ),
            "buyback": lambda res, rc, exp: self.store.finalize_buyback(res["item_id"], res["user_id"], rc["transfer_item"]),
            "refund": lambda res, rc, exp: self.store.finalize_refund(res["fragment_ids"], rc["burn_fragments"]),
            "reward": self._complete_reward,
            "assembly": self._complete_assembly,
            "checkin": self._complete_checkin,
            "faucet": lambda res, rc, exp: None,
        }

    # ------------------------------------------------------------- handlers

    def _release_assembly(self, res: Dict[str, Any]):
        if res.get("waitlist_id") is not None:
            self.store.transition_waitlist(res["waitlist_id"], WAITLIST_CLAIMING, WAITLIST_NOTIFIED)
        else:
            self.store.release_fragments(res["fragment_ids"])

    def _restore_cooldown(self, res: Dict[str, Any]):
        # the claim only succeeded because the cooldown had elapsed, so clearing it is equivalent
        self.store.restore_cooldown(res["user_id"], res["column"], res["claimed"], None)

    def _minted_item_id(self, signature: str) -> int:
        item_id = self.ledger.minted_item_id(signature)
        if item_id is None:
            raise RuntimeError(f"landed mint {signature} carries no item id")
        return item_id

    def _complete_reward(self, res: Dict[str, Any], receipts: Dict[str, str], expected: Dict[str, Any]):
        reward = expected["reward"]
        if reward["kind"] == "item":
            signature = receipts["mint_item"]
            item_id = self._minted_item_id(signature)
        else:
            signature = receipts["mint_fragment"]
            item_id = None
        self.store.finalize_reward(
            res["payment_signature"], res["user_id"], expected["spend_increase"], reward, signature, item_id=item_id
        )

    def _complete_assembly(self, res: Dict[str, Any], receipts: Dict[str, str], expected: Dict[str, Any]):
        self.store.finalize_assembly(
            res["user_id"],
            res["fragment_ids"],
            self._minted_item_id(receipts["mint_item"]),
            expected["item"],
            receipts["burn_fragments"],
            receipts["mint_item"],
            waitlist_id=res.get("waitlist_id"),
        )

    def _complete_checkin(self, res: Dict[str, Any], receipts: Dict[str, str], expected: Dict[str, Any]):
        fragment = expected["fragment"]
        catalog = self.orchestrator.catalog
        self.store.finalize_checkin(
            res["user_id"],
            {
                "fragment_type": fragment["slot"],
                "brand": fragment["brand"],
                "series": catalog.series_for_brand(fragment["brand"]),
                "rarity": "common",
                "mint_signature": receipts["mint_fragment"],
            },
        )

    def _mark_diverged(self, flow: str, res: Dict[str, Any], receipts: Dict[str, str]):
        if flow == "marketplace" and "transfer_item" not in receipts:
            self.store.transition_listing(
                res["listing_id"], LISTING_PROCESSING, LISTING_CANCELLED, payment_signature=receipts.get("transfer_payment")
            )
        elif flow == "reward" and res.get("payment_signature"):
            minted = receipts.get("mint_item") or receipts.get("mint_fragment")
            if minted:
                # on the ledger already; only a local finalize may follow
                self.store.update_reward_log(
                    res["payment_signature"], status="landed", mint_signature=minted, error="reconciled as landed"
                )
            else:
                self.store.update_reward_log(res["payment_signature"], status="diverged", error="reconciled as diverged")

    def _escalate(self, record, flow: str, res: Dict[str, Any], receipts: Dict[str, str], message: str):
        self.logger.critical(
            "CRITICAL_DESYNC flow=%s %s; record=%s receipts=%s resources=%s",
            flow,
            message,
            record.id,
            receipts,
            res,
        )
        self.store.escalate_reconciliation(record.id, message)
        self._mark_diverged(flow, res, receipts)

    # ---------------------------------------------------------------- passes

    def resolve_unconfirmed(self, record) -> str:
        res = json.loads(record.resources or "{}")
        receipts = json.loads(record.receipts or "{}")
        expected = json.loads(record.expected_state or "{}")
        flow = record.flow
        step = res.get("pending_step")
        signature = res.get("pending_signature")
        if not signature:
            return "unknown"
        try:
            status = self.ledger.signature_status(signature)
        except LedgerError as exc:
            self.logger.warning("reconcile_status_failed record=%s sig=%s error=%s", record.id, signature, exc)
            return "unknown"
        if status is None:
            return "pending"

        if status is False:
            if not receipts and flow in self.releasers:
                self.releasers[flow](res)
                self.store.resolve_reconciliation(record.id, f"{step} failed on-chain; lock released")
                self.logger.info("reconcile_released flow=%s record=%s step=%s", flow, record.id, step)
                return "released"
            self._escalate(record, flow, res, receipts, f"{step} failed on-chain after irreversible ledger step")
            return "escalated"

        receipts[step] = signature
        order = res.get("step_order") or []
        if order and step == order[-1] and flow in self.completers:
            try:
                self.completers[flow](res, receipts, expected)
            except LedgerError as exc:
                self.logger.warning("reconcile_lookup_failed record=%s sig=%s error=%s", record.id, signature, exc)
                return "unknown"
            except Exception as exc:  # noqa: BLE001
                self._escalate(record, flow, res, receipts, f"local finalize failed during reconcile: {exc}")
                return "escalated"
            self.store.resolve_reconciliation(record.id, f"{step} confirmed on-chain; finalized locally")
            self.logger.info("reconcile_finalized flow=%s record=%s step=%s sig=%s", flow, record.id, step, signature)
            return "finalized"
        self._escalate(record, flow, res, receipts, f"{step} landed on-chain but the flow did not complete")
        return "escalated"

    def settle_diverged_sales(self) -> int:
        settled = 0
        for record in self.store.reconciliation_records("open"):
            if record.flow != "marketplace" or record.severity != "critical":
                continue
            res = json.loads(record.resources or "{}")
            receipts = json.loads(record.receipts or "{}")
            if "transfer_item" not in receipts or "transfer_payment" not in receipts:
                continue
            listing = self.store.get_listing(res.get("listing_id"))
            if listing is None or listing.status != LISTING_PROCESSING:
                continue
            try:
                owner = self.ledger.owner_of(res["item_id"])
            except LedgerError:
                continue
            if owner != res.get("buyer_wallet"):
                continue
            self.store.finalize_sale(
                res["listing_id"], res["item_id"], res["buyer_id"], receipts["transfer_payment"], receipts["transfer_item"]
            )
            self.store.resolve_reconciliation(record.id, "settled from on-chain ownership")
            self.logger.info("reconcile_sale_settled record=%s listing=%s", record.id, res["listing_id"])
            settled += 1
        return settled

    def settle_stale_listings(self, now: float) -> int:
        """Close stale ``processing`` listings whose item already sits with the buyer.

        Payment always precedes the item transfer, so a buyer holding the item has paid.
        """
        settled = 0
        for listing in self.store.stale_processing_listings(now - self.stale_after_seconds):
            if listing.buyer_id is None or self.store.open_records_for("listing_id", listing.id, flow="marketplace"):
                continue
            buyer = self.store.get_user(listing.buyer_id)
            if buyer is None:
                continue
            try:
                owner = self.ledger.owner_of(listing.item_id)
            except LedgerError as exc:
                self.logger.warning("reconcile_owner_read_failed listing=%s error=%s", listing.id, exc)
                continue
            if owner != buyer.wallet_address:
                continue
            self.store.finalize_sale(listing.id, listing.item_id, listing.buyer_id, None, None)
            self.logger.info(
                "reconcile_stale_listing_settled listing=%s item=%s buyer=%s", listing.id, listing.item_id, listing.buyer_id
            )
            settled += 1
        return settled

    def flag_stale_locks(self, now: float) -> int:
        cutoff = now - self.stale_after_seconds
        flagged = 0
        for listing in self.store.stale_processing_listings(cutoff):
            if self.store.open_records_for("listing_id", listing.id, flow="marketplace"):
                continue
            self.store.record_divergence(
                flow="marketplace",
                severity="critical",
                message="listing stuck in processing with no ledger trace",
                receipts={},
                resources={"listing_id": listing.id, "item_id": listing.item_id, "buyer_id": listing.buyer_id},
                expected_state={"listing": "sold or active"},
            )
            self.logger.critical("CRITICAL_DESYNC flow=marketplace stale processing listing=%s", listing.id)
            flagged += 1
        for item in self.store.stale_item_locks(cutoff):
            if self.store.open_records_for("item_id", item.id, flow=item.pending_action):
                continue
            self.store.record_divergence(
                flow=item.pending_action or "unknown",
                severity="critical",
                message="item lock outlived its flow with no ledger trace",
                receipts={},
                resources={"item_id": item.id, "user_id": item.owner_id},
                expected_state={"pending_action": None},
            )
            self.logger.critical("CRITICAL_DESYNC flow=%s stale item lock item=%s", item.pending_action, item.id)
            flagged += 1
        return flagged

    def run_once(self) -> Dict[str, Any]:
        outcomes: Dict[str, int] = {}
        for record in self.store.reconciliation_records("open"):
            if record.severity != "unconfirmed":
                continue
            outcome = self.resolve_unconfirmed(record)
            outcomes[outcome] = outcomes.get(outcome, 0) + 1
        settled = self.settle_diverged_sales()
        now = time.time()
        stale_settled = self.settle_stale_listings(now)
        flagged = self.flag_stale_locks(now)
        expired = self.orchestrator.expire_waitlist()
        summary = {
            "unconfirmed": outcomes,
            "sales_settled": settled,
            "stale_settled": stale_settled,
            "stale_flagged": flagged,
            "waitlist_expired": expired,
        }
        self.logger.info("reconcile_pass summary=%s", summary)
        return summary


def start_reconcile_scheduler(reconciler: Reconciler, settings, logger):
    """Start the reconcile loop in a daemon thread."""
    global _SCHEDULER_THREAD
    if _SCHEDULER_THREAD is not None:
        return
    if not getattr(settings, "reconcile_enabled", True):
        logger.info("reconcile_scheduler_disabled")
        return
    interval = max(5, int(getattr(settings, "reconcile_interval_seconds", 300)))

    def _loop():
        while True:
            cycle_start = time.time()
            try:
                reconciler.run_once()
            except Exception as exc:  # noqa: BLE001
                logger.warning("reconcile_scheduler_tick_failed error=%s", exc, exc_info=True)
            sleep_time = max(0, interval - (time.time() - cycle_start))
            time.sleep(sleep_time)

    _SCHEDULER_THREAD = threading.Thread(target=_loop, daemon=True)
    _SCHEDULER_THREAD.start()
