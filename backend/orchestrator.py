"""
Transaction orchestrator: every flow that moves value on the ledger.

Each public method resolves the caller, verifies against the store and the
ledger, then hands a Saga to the shared runner. Ledger reads gate every
irreversible call; local rows are treated as a cache.
"""

import json
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from db_models import (
    LISTING_ACTIVE,
    LISTING_CANCELLED,
    LISTING_PROCESSING,
    LISTING_SOLD,
    WAITLIST_CLAIMING,
    WAITLIST_NOTIFIED,
)
from flow_errors import (
    InsufficientFunds,
    LedgerError,
    LedgerVerificationFailed,
    PreconditionFailed,
    RecoverableConflict,
    SoldOutWithOptions,
    ValidationFailed,
)
from ledger_client import COIN, LedgerClient, fragment_token
from reward_catalog import Catalog, RewardSpec
from saga import LedgerStep, Saga, SagaRunner
from store import Store, load_ids
from supply_governor import SupplyGovernor

logger = logging.getLogger("garage")

MAX_SIGNATURE_LEN = 128


@dataclass(frozen=True)
class Caller:
    user_id: str
    wallet: str


@dataclass
class FlowLimits:
    checkin_cooldown_seconds: int = 24 * 3600
    checkin_brand: str = "Toyota"
    checkin_coin_min: int = 10
    checkin_coin_max: int = 50
    faucet_cooldown_seconds: int = 24 * 3600
    faucet_amount: int = 1000
    processing_stale_seconds: int = 600

    @classmethod
    def from_settings(cls, settings) -> "FlowLimits":
        return cls(
            checkin_cooldown_seconds=settings.checkin_cooldown_seconds,
            checkin_brand=settings.checkin_brand,
            checkin_coin_min=settings.checkin_coin_min,
            checkin_coin_max=settings.checkin_coin_max,
            faucet_cooldown_seconds=settings.faucet_cooldown_seconds,
            faucet_amount=settings.faucet_amount,
            processing_stale_seconds=settings.processing_stale_seconds,
        )


def _item_view(item) -> Dict[str, Any]:
    return {
        "item_id": item.id,
        "owner_id": item.owner_id,
        "model_name": item.model_name,
        "brand": item.brand,
        "series": item.series,
        "rarity": item.rarity,
        "is_redeemed": item.is_redeemed,
        "mint_signature": item.mint_signature,
    }


class Orchestrator:
    def __init__(
        self,
        store: Store,
        ledger: LedgerClient,
        catalog: Catalog,
        governor: SupplyGovernor,
        limits: Optional[FlowLimits] = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.catalog = catalog
        self.governor = governor
        self.limits = limits or FlowLimits()
        self.rng = rng or random.SystemRandom()
        self.runner = SagaRunner(store)

    # ---------------------------------------------------------------- helpers

    def _provision(self, caller: Caller):
        if not caller.user_id or not caller.wallet:
            raise ValidationFailed("Caller identity is incomplete")
        return self.store.ensure_user(caller.user_id, caller.wallet)

    def _brand_series(self, brand: str) -> str:
        series = self.catalog.series_for_brand(brand)
        if not series or self.catalog.assembly_table(brand) is None:
            raise ValidationFailed(f"Unknown brand: {brand}", brands=sorted(self.catalog.brand_series))
        return series

    def _burn_amounts(self, brand: str, fragments) -> Dict[str, int]:
        amounts: Dict[str, int] = {}
        for frag in fragments:
            token = fragment_token(brand, frag.fragment_type)
            amounts[token] = amounts.get(token, 0) + 1
        return amounts

    def _verify_fragment_balances(self, caller: Caller, brand: str):
        """Local unburned fragments must match on-chain balances slot by slot."""
        local = self.store.held_counts(caller.user_id, brand)
        mismatched = []
        for slot in range(self.catalog.slot_count):
            try:
                on_chain = self.ledger.balance_of(fragment_token(brand, slot), caller.wallet)
            except LedgerError as exc:
                raise LedgerVerificationFailed(f"Could not read fragment balance: {exc}") from exc
            held = local.get(slot, 0)
            if on_chain != held:
                mismatched.append({"slot": self.catalog.slot_name(slot), "local": held, "on_chain": on_chain})
        if mismatched:
            logger.warning(
                "fragment_balance_mismatch user=%s brand=%s mismatched=%s", caller.user_id, brand, mismatched
            )
            raise PreconditionFailed(
                "Local and on-chain fragment balances disagree; reconcile before assembling",
                mismatched=mismatched,
            )

    def _complete_set(self, caller: Caller, brand: str) -> List:
        chosen, missing = self.store.select_fragment_set(caller.user_id, brand, self.catalog.slot_count)
        if missing:
            raise PreconditionFailed(
                f"Missing fragments for {brand}",
                missing_slots=[self.catalog.slot_name(slot) for slot in missing],
            )
        return [chosen[slot] for slot in range(self.catalog.slot_count)]

    # ----------------------------------------------------------- reward flow

    def open_reward(self, caller: Caller, tier_name: str, payment_signature: str) -> Dict[str, Any]:
        self._provision(caller)
        tier = self.catalog.tier(tier_name)
        if tier is None:
            raise ValidationFailed(f"Unknown tier: {tier_name}", tiers=sorted(self.catalog.tiers))
        if not payment_signature or len(payment_signature) > MAX_SIGNATURE_LEN:
            raise ValidationFailed("A payment receipt signature is required")
        if self.store.get_reward_log(payment_signature) is not None:
            raise RecoverableConflict("Payment receipt was already used to open a reward")

        try:
            paid = self.ledger.verify_transaction(
                payment_signature, caller.wallet, self.ledger.treasury_address, COIN, tier.cost
            )
        except LedgerError as exc:
            raise LedgerVerificationFailed(f"Could not verify payment: {exc}") from exc
        if not paid:
            logger.warning(
                "reward_payment_invalid user=%s tier=%s sig=%s cost=%s",
                caller.user_id,
                tier.name,
                payment_signature,
                tier.cost,
            )
            raise LedgerVerificationFailed("Payment transaction does not match the tier cost and caller")

        table = tier.table.without(lambda spec: spec.kind == "item" and self.governor.is_sold_out(spec.series))
        if table is None:
            raise PreconditionFailed("Every reward in this tier is sold out", tier=tier.name)
        reward = self.catalog.resolve_reward(table.draw(self.rng), self.rng)
        logger.info(
            "reward_drawn user=%s tier=%s sig=%s reward=%s", caller.user_id, tier.name, payment_signature, reward.as_dict()
        )

        def lock():
            self.store.open_reward_log(
                payment_signature, caller.user_id, caller.wallet, tier.name, tier.cost, reward.as_dict()
            )

        return self._deliver_reward(caller, tier.name, tier.cost, payment_signature, reward, lock)

    def _deliver_reward(self, caller: Caller, tier_name: str, cost: int, payment_signature: str, reward: RewardSpec, lock):
        if reward.kind == "item":
            step = LedgerStep("mint_item", lambda: self.ledger.mint_collectible(caller.wallet))
        else:
            token = fragment_token(reward.brand, reward.slot)
            step = LedgerStep("mint_fragment", lambda: self.ledger.mint_fungible(token, caller.wallet, 1))

        def finalize(results, receipts):
            item_id = None
            if reward.kind == "item":
                item_id, receipt = results["mint_item"]
            else:
                receipt = results["mint_fragment"]
            stored = self.store.finalize_reward(
                payment_signature, caller.user_id, cost, reward.as_dict(), receipt.signature, item_id=item_id
            )
            return {
                "tier": tier_name,
                "reward": reward.as_dict(),
                "slot_name": self.catalog.slot_name(reward.slot) if reward.slot is not None else None,
                "payment_signature": payment_signature,
                "mint_signature": receipt.signature,
                **stored,
            }

        def on_divergence(receipts, error):
            minted = receipts.get(step.name)
            if minted:
                # reward is on the ledger; only the local record is missing
                self.store.update_reward_log(payment_signature, status="landed", mint_signature=minted, error=error)
            else:
                self.store.update_reward_log(payment_signature, status="diverged", error=error)

        saga = Saga(
            flow="reward",
            resources={"user_id": caller.user_id, "wallet": caller.wallet, "tier": tier_name, "payment_signature": payment_signature},
            expected_state={"reward": reward.as_dict(), "owner": caller.user_id, "spend_increase": cost},
            steps=[step],
            finalize=finalize,
            lock=lock,
            prepaid={"payment": payment_signature},
            on_divergence=on_divergence,
        )
        return self.runner.run(saga).value

    def _earlier_mint_may_have_landed(self, payment_signature: str) -> Optional[str]:
        """Pending mint signature for this payment that is not known to have failed."""
        for record in self.store.open_records_for("payment_signature", payment_signature, flow="reward"):
            pending = json.loads(record.resources or "{}").get("pending_signature")
            if not pending:
                continue
            try:
                status = self.ledger.signature_status(pending)
            except LedgerError as exc:
                raise LedgerVerificationFailed(f"Could not read earlier mint status: {exc}") from exc
            if status is not False:
                return pending
        return None

    def _finalize_landed_reward(self, log, reward: RewardSpec) -> Dict[str, Any]:
        item_id = None
        if reward.kind == "item":
            try:
                item_id = self.ledger.minted_item_id(log.mint_signature)
            except LedgerError as exc:
                raise LedgerVerificationFailed(f"Could not read the landed mint: {exc}") from exc
            if item_id is None:
                raise PreconditionFailed("Landed mint carries no item id; resolve by hand", mint_signature=log.mint_signature)
        stored = self.store.finalize_reward(
            log.payment_signature, log.user_id, log.cost, reward.as_dict(), log.mint_signature, item_id=item_id
        )
        for record in self.store.open_records_for("payment_signature", log.payment_signature, flow="reward"):
            self.store.resolve_reconciliation(record.id, f"landed mint {log.mint_signature} finalized locally")
        logger.info("reward_landed_finalized sig=%s mint=%s", log.payment_signature, log.mint_signature)
        return {
            "status": "success",
            "tier": log.tier,
            "reward": reward.as_dict(),
            "payment_signature": log.payment_signature,
            "mint_signature": log.mint_signature,
            **stored,
        }

    def retry_reward(self, payment_signature: str) -> Dict[str, Any]:
        """Operator action: deliver a stuck reward using the reward drawn at the time.

        A mint that already landed is only recorded locally; a new mint is issued
        only when every earlier mint for the payment is known to have failed.
        """
        log = self.store.get_reward_log(payment_signature)
        if log is None:
            raise PreconditionFailed("No reward log for this payment receipt")
        if log.status == "success":
            return {"status": "success", "payment_signature": payment_signature, "mint_signature": log.mint_signature}
        reward = RewardSpec.from_dict(json.loads(log.reward))
        if log.status == "landed":
            return self._finalize_landed_reward(log, reward)
        if log.status != "diverged":
            raise RecoverableConflict(f"Reward is {log.status}; only diverged rewards can be retried")
        pending = self._earlier_mint_may_have_landed(payment_signature)
        if pending:
            raise RecoverableConflict(
                "An earlier mint for this payment may have landed; reconcile before retrying", pending_signature=pending
            )
        caller = Caller(user_id=log.user_id, wallet=log.wallet)

        def lock():
            if not self.store.claim_reward_retry(payment_signature):
                raise RecoverableConflict("Reward retry already in progress")

        logger.info("reward_retry sig=%s user=%s reward=%s", payment_signature, log.user_id, reward.as_dict())
        result = self._deliver_reward(caller, log.tier, log.cost, payment_signature, reward, lock)
        for record in self.store.open_records_for("payment_signature", payment_signature, flow="reward"):
            self.store.resolve_reconciliation(record.id, f"delivered by retry {result['mint_signature']}")
        return {"status": "success", **result}

    # --------------------------------------------------------- assembly flow

    def assemble(self, caller: Caller, brand: str, waitlist_id: Optional[int] = None) -> Dict[str, Any]:
        self._provision(caller)
        series = self._brand_series(brand)

        if waitlist_id is not None:
            entry = self.store.get_waitlist_entry(waitlist_id)
            if entry is None or entry.user_id != caller.user_id or entry.brand != brand:
                raise PreconditionFailed("Waiting list entry not found for this caller and brand")
            if entry.status != WAITLIST_NOTIFIED:
                raise PreconditionFailed(f"Waiting list entry is {entry.status}, not notified")
            if entry.expires_at is not None and entry.expires_at < time.time():
                raise PreconditionFailed("Waiting list claim window has passed")
            fragments = self.store.get_fragments(load_ids(entry.fragment_ids))
            if len(fragments) != self.catalog.slot_count or any(f.waitlist_id != entry.id for f in fragments):
                raise PreconditionFailed("Reserved fragments for this entry are no longer intact")
            self._verify_fragment_balances(caller, brand)
            if not self.governor.can_fulfil_reservation(series):
                raise SoldOutWithOptions(series, self.governor.refund_bonus(series))
        else:
            fragments = self._complete_set(caller, brand)
            self._verify_fragment_balances(caller, brand)
            if self.governor.is_sold_out(series):
                logger.info("assembly_sold_out user=%s brand=%s series=%s", caller.user_id, brand, series)
                raise SoldOutWithOptions(series, self.governor.refund_bonus(series))

        fragment_ids = [f.id for f in fragments]
        spec = self.catalog.assembly_table(brand).draw(self.rng)

        if waitlist_id is not None:
            def lock():
                if not self.store.transition_waitlist(waitlist_id, WAITLIST_NOTIFIED, WAITLIST_CLAIMING):
                    raise RecoverableConflict("Waiting list entry is already being claimed")

            def release():
                self.store.transition_waitlist(waitlist_id, WAITLIST_CLAIMING, WAITLIST_NOTIFIED)
        else:
            def lock():
                self.store.lock_fragments(fragment_ids, caller.user_id)

            def release():
                self.store.release_fragments(fragment_ids)

        amounts = self._burn_amounts(brand, fragments)

        def finalize(results, receipts):
            item_id, _ = results["mint_item"]
            item = self.store.finalize_assembly(
                caller.user_id,
                fragment_ids,
                item_id,
                spec.as_dict(),
                receipts["burn_fragments"],
                receipts["mint_item"],
                waitlist_id=waitlist_id,
            )
            return {
                "item": _item_view(item),
                "consumed_fragment_ids": fragment_ids,
                "burn_signature": receipts["burn_fragments"],
                "mint_signature": receipts["mint_item"],
                "waitlist_id": waitlist_id,
            }

        saga = Saga(
            flow="assembly",
            resources={
                "user_id": caller.user_id,
                "wallet": caller.wallet,
                "brand": brand,
                "fragment_ids": fragment_ids,
                "waitlist_id": waitlist_id,
            },
            expected_state={"item": spec.as_dict(), "owner": caller.user_id, "fragments": "consumed"},
            steps=[
                LedgerStep("burn_fragments", lambda: self.ledger.burn(caller.wallet, amounts)),
                LedgerStep("mint_item", lambda: self.ledger.mint_collectible(caller.wallet)),
            ],
            finalize=finalize,
            lock=lock,
            release=release,
        )
        return self.runner.run(saga).value

    # ------------------------------------------------- sold-out remediation

    def claim_refund(self, caller: Caller, brand: str) -> Dict[str, Any]:
        """Burn a complete set of a sold-out series for the series refund bonus."""
        self._provision(caller)
        series = self._brand_series(brand)
        if not self.governor.is_sold_out(series):
            raise PreconditionFailed(f"Series {series} is not sold out; assemble instead")
        fragments = self._complete_set(caller, brand)
        self._verify_fragment_balances(caller, brand)
        bonus = self.governor.refund_bonus(series)
        fragment_ids = [f.id for f in fragments]
        amounts = self._burn_amounts(brand, fragments)

        steps = [LedgerStep("burn_fragments", lambda: self.ledger.burn(caller.wallet, amounts))]
        if bonus > 0:
            steps.append(LedgerStep("mint_bonus", lambda: self.ledger.mint_fungible(COIN, caller.wallet, bonus)))

        def finalize(results, receipts):
            self.store.finalize_refund(fragment_ids, receipts["burn_fragments"])
            return {
                "series": series,
                "refund_bonus": bonus,
                "consumed_fragment_ids": fragment_ids,
                "burn_signature": receipts["burn_fragments"],
                "bonus_signature": receipts.get("mint_bonus"),
            }

        saga = Saga(
            flow="refund",
            resources={"user_id": caller.user_id, "wallet": caller.wallet, "brand": brand, "fragment_ids": fragment_ids},
            expected_state={"bonus": bonus, "fragments": "consumed"},
            steps=steps,
            finalize=finalize,
            lock=lambda: self.store.lock_fragments(fragment_ids, caller.user_id),
            release=lambda: self.store.release_fragments(fragment_ids),
        )
        return self.runner.run(saga).value

    def join_waitlist(self, caller: Caller, brand: str) -> Dict[str, Any]:
        self._provision(caller)
        series = self._brand_series(brand)
        if not self.governor.is_sold_out(series):
            raise PreconditionFailed(f"Series {series} is not sold out; assemble instead")
        fragments = self._complete_set(caller, brand)
        self._verify_fragment_balances(caller, brand)
        entry = self.store.enqueue_waitlist(caller.user_id, series, brand, [f.id for f in fragments])
        logger.info(
            "waitlist_joined user=%s series=%s position=%s entry=%s", caller.user_id, series, entry.position, entry.id
        )
        return {
            "waitlist_id": entry.id,
            "series": series,
            "position": entry.position,
            "status": entry.status,
            "reserved_fragment_ids": load_ids(entry.fragment_ids),
        }

    def expire_waitlist(self) -> List[int]:
        expired = self.store.expire_waitlist(time.time())
        for entry in expired:
            logger.info("waitlist_expired entry=%s user=%s series=%s", entry.id, entry.user_id, entry.series)
        for series in sorted({entry.series for entry in expired}):
            self.governor.notify_waitlist(series)
        return [entry.id for entry in expired]

    # ------------------------------------------------------------ marketplace

    def create_listing(self, caller: Caller, item_id: int, price: int) -> Dict[str, Any]:
        self._provision(caller)
        if price <= 0:
            raise ValidationFailed("Price must be greater than zero")
        item = self.store.get_item(item_id)
        if item is None or item.owner_id != caller.user_id:
            raise PreconditionFailed("You do not own this item")
        if item.is_redeemed:
            raise PreconditionFailed("Redeemed items cannot be listed")
        if item.sold_to_operator_at is not None:
            raise PreconditionFailed("Item was sold back to the operator")
        try:
            on_chain_owner = self.ledger.owner_of(item_id)
        except LedgerError as exc:
            raise LedgerVerificationFailed(f"Could not read item owner: {exc}") from exc
        if on_chain_owner != caller.wallet:
            raise PreconditionFailed("You do not own this item on-chain")
        listing = self.store.create_listing(item_id, caller.user_id, price)
        logger.info("listing_created listing=%s item=%s seller=%s price=%s", listing.id, item_id, caller.user_id, price)
        return {"listing_id": listing.id, "item_id": item_id, "price": price, "status": listing.status}

    def cancel_listing(self, caller: Caller, listing_id: int) -> Dict[str, Any]:
        self._provision(caller)
        listing = self.store.get_listing(listing_id)
        if listing is None:
            raise PreconditionFailed("Listing not found")
        if listing.seller_id != caller.user_id:
            raise PreconditionFailed("Only the seller can cancel this listing")
        if not self.store.transition_listing(listing_id, LISTING_ACTIVE, LISTING_CANCELLED):
            current = self.store.get_listing(listing_id)
            if current and current.status == LISTING_PROCESSING:
                raise RecoverableConflict("Listing is being purchased")
            raise PreconditionFailed(f"Listing is {current.status if current else 'gone'}")
        logger.info("listing_cancelled listing=%s seller=%s", listing_id, caller.user_id)
        return {"listing_id": listing_id, "status": LISTING_CANCELLED}

    def purchase(self, caller: Caller, listing_id: int) -> Dict[str, Any]:
        self._provision(caller)
        listing = self.store.get_listing(listing_id)
        if listing is None:
            raise PreconditionFailed("Listing not found")
        if listing.status == LISTING_PROCESSING:
            raise RecoverableConflict("Listing is being purchased by someone else")
        if listing.status != LISTING_ACTIVE:
            raise PreconditionFailed(f"Listing is {listing.status}")
        if listing.seller_id == caller.user_id:
            raise PreconditionFailed("You cannot buy your own listing")
        seller = self.store.get_user(listing.seller_id)
        item = self.store.get_item(listing.item_id)
        if seller is None or item is None:
            raise PreconditionFailed("Listing references missing seller or item")
        price = listing.price
        operator = self.ledger.operator_address

        def lock():
            if not self.store.transition_listing(listing_id, LISTING_ACTIVE, LISTING_PROCESSING, buyer_id=caller.user_id):
                raise RecoverableConflict("Listing is no longer available")

        def release():
            self.store.transition_listing(listing_id, LISTING_PROCESSING, LISTING_ACTIVE, buyer_id=None)

        def recheck():
            try:
                balance = self.ledger.balance_of(COIN, caller.wallet)
                allowance = self.ledger.allowance_of(COIN, caller.wallet, operator)
                on_chain_owner = self.ledger.owner_of(item.id)
                approved = self.ledger.is_collectible_approved(item.id, operator)
            except LedgerError as exc:
                raise LedgerVerificationFailed(f"Could not verify settlement preconditions: {exc}") from exc
            if balance < price:
                raise InsufficientFunds("Insufficient balance", balance=balance, price=price)
            if allowance < price:
                raise InsufficientFunds("Payment allowance to the marketplace is too low", allowance=allowance, price=price)
            if on_chain_owner != seller.wallet_address:
                # seller moved the item away; terminal for this listing
                self.store.transition_listing(listing_id, LISTING_PROCESSING, LISTING_CANCELLED, buyer_id=None)
                logger.warning("listing_cancelled_owner_changed listing=%s item=%s", listing_id, item.id)
                raise PreconditionFailed("Seller no longer owns this item; listing cancelled")
            if not approved:
                raise PreconditionFailed("Seller has not approved the marketplace for this item")

        def finalize(results, receipts):
            sold = self.store.finalize_sale(
                listing_id, item.id, caller.user_id, receipts["transfer_payment"], receipts["transfer_item"]
            )
            return {
                "listing_id": listing_id,
                "item_id": item.id,
                "status": sold.status,
                "price": price,
                "buyer_id": caller.user_id,
                "payment_signature": receipts["transfer_payment"],
                "transfer_signature": receipts["transfer_item"],
            }

        def on_divergence(receipts, error):
            if "transfer_item" not in receipts:
                # buyer paid, item never moved: close the listing, refund is manual
                self.store.transition_listing(
                    listing_id,
                    LISTING_PROCESSING,
                    LISTING_CANCELLED,
                    payment_signature=receipts.get("transfer_payment"),
                )

        saga = Saga(
            flow="marketplace",
            resources={
                "listing_id": listing_id,
                "item_id": item.id,
                "buyer_id": caller.user_id,
                "buyer_wallet": caller.wallet,
                "seller_id": seller.id,
                "seller_wallet": seller.wallet_address,
                "price": price,
            },
            expected_state={"listing": LISTING_SOLD, "item_owner": caller.user_id, "seller_paid": price},
            steps=[
                LedgerStep(
                    "transfer_payment",
                    lambda: self.ledger.transfer_fungible(COIN, caller.wallet, seller.wallet_address, price),
                ),
                LedgerStep(
                    "transfer_item",
                    lambda: self.ledger.transfer_collectible(seller.wallet_address, caller.wallet, item.id),
                ),
            ],
            finalize=finalize,
            lock=lock,
            recheck=recheck,
            release=release,
            on_divergence=on_divergence,
        )
        return self.runner.run(saga).value

    # ---------------------------------------------------------------- buyback

    def buyback(self, caller: Caller, item_id: int) -> Dict[str, Any]:
        self._provision(caller)
        item = self.store.get_item(item_id)
        if item is None or item.owner_id != caller.user_id:
            raise PreconditionFailed("You do not own this item")
        if item.sold_to_operator_at is not None:
            raise PreconditionFailed("Item was already sold back")
        if item.is_redeemed:
            raise PreconditionFailed("Redeemed items cannot be sold back")
        if self.store.open_listing_for_item(item_id) is not None:
            raise PreconditionFailed("Cancel the marketplace listing before selling back")
        price = self.catalog.buyback_price(item.rarity)
        if price is None:
            raise PreconditionFailed(f"No buy-back price for rarity {item.rarity}")
        operator = self.ledger.operator_address
        try:
            on_chain_owner = self.ledger.owner_of(item_id)
            approved = self.ledger.is_collectible_approved(item_id, operator)
        except LedgerError as exc:
            raise LedgerVerificationFailed(f"Could not verify item on-chain: {exc}") from exc
        if on_chain_owner != caller.wallet:
            raise PreconditionFailed("You do not own this item on-chain")
        if not approved:
            raise PreconditionFailed("Approve the operator for this item first")

        def lock():
            if not self.store.lock_item(item_id, caller.user_id, "buyback"):
                raise RecoverableConflict("Item is locked by another operation")

        def recheck():
            if self.store.open_listing_for_item(item_id) is not None:
                raise RecoverableConflict("Item was listed while selling back")

        def finalize(results, receipts):
            sold = self.store.finalize_buyback(item_id, caller.user_id, receipts["transfer_item"])
            return {
                "item_id": item_id,
                "price": price,
                "sold_to_operator_at": sold.sold_to_operator_at,
                "transfer_signature": receipts["transfer_item"],
                "payment_signature": receipts["mint_payment"],
            }

        saga = Saga(
            flow="buyback",
            resources={"item_id": item_id, "user_id": caller.user_id, "wallet": caller.wallet, "price": price},
            expected_state={"item_owner": operator, "seller_paid": price, "sold_to_operator_by": caller.user_id},
            steps=[
                LedgerStep("transfer_item", lambda: self.ledger.transfer_collectible(caller.wallet, operator, item_id)),
                LedgerStep("mint_payment", lambda: self.ledger.mint_fungible(COIN, caller.wallet, price)),
            ],
            finalize=finalize,
            lock=lock,
            recheck=recheck,
            release=lambda: self.store.release_item(item_id, "buyback"),
        )
        return self.runner.run(saga).value

    # ------------------------------------------------------ local-only flows

    def redeem_item(self, caller: Caller, item_id: int) -> Dict[str, Any]:
        self._provision(caller)
        item = self.store.get_item(item_id)
        if item is None or item.owner_id != caller.user_id:
            raise PreconditionFailed("You do not own this item")
        if item.is_redeemed:
            raise PreconditionFailed("Item already redeemed")
        if item.sold_to_operator_at is not None:
            raise PreconditionFailed("Item was sold back to the operator")
        if self.store.open_listing_for_item(item_id) is not None:
            raise PreconditionFailed("Cancel the marketplace listing before redeeming")
        try:
            on_chain_owner = self.ledger.owner_of(item_id)
        except LedgerError as exc:
            raise LedgerVerificationFailed(f"Could not read item owner: {exc}") from exc
        if on_chain_owner != caller.wallet:
            raise PreconditionFailed("You do not own this item on-chain")
        if not self.store.redeem_item(item_id, caller.user_id):
            raise RecoverableConflict("Item changed while redeeming; try again")
        logger.info("item_redeemed item=%s user=%s", item_id, caller.user_id)
        return {"item_id": item_id, "is_redeemed": True}

    # ------------------------------------------------------- cooldown flows

    def daily_checkin(self, caller: Caller) -> Dict[str, Any]:
        self._provision(caller)
        brand = self.limits.checkin_brand
        series = self._brand_series(brand)
        now = time.time()
        slot = self.rng.randrange(self.catalog.slot_count)
        coins = self.rng.randint(self.limits.checkin_coin_min, self.limits.checkin_coin_max)
        token = fragment_token(brand, slot)
        state: Dict[str, Any] = {}

        def lock():
            state["previous"] = self.store.claim_cooldown(
                caller.user_id, "last_check_in", self.limits.checkin_cooldown_seconds, now
            )

        steps = [LedgerStep("mint_fragment", lambda: self.ledger.mint_fungible(token, caller.wallet, 1))]
        if coins > 0:
            steps.append(LedgerStep("mint_coin", lambda: self.ledger.mint_fungible(COIN, caller.wallet, coins)))

        def finalize(results, receipts):
            frag = self.store.finalize_checkin(
                caller.user_id,
                {
                    "fragment_type": slot,
                    "brand": brand,
                    "series": series,
                    "rarity": "common",
                    "mint_signature": receipts["mint_fragment"],
                },
            )
            return {
                "fragment_id": frag.id,
                "fragment_type": slot,
                "slot_name": self.catalog.slot_name(slot),
                "brand": brand,
                "coins_awarded": coins,
                "mint_signature": receipts["mint_fragment"],
                "coin_signature": receipts.get("mint_coin"),
                "next_check_in_at": now + self.limits.checkin_cooldown_seconds,
            }

        saga = Saga(
            flow="checkin",
            resources={"user_id": caller.user_id, "wallet": caller.wallet, "column": "last_check_in", "claimed": now},
            expected_state={"fragment": {"brand": brand, "slot": slot}, "coins": coins},
            steps=steps,
            finalize=finalize,
            lock=lock,
            release=lambda: self.store.restore_cooldown(caller.user_id, "last_check_in", now, state.get("previous")),
        )
        return self.runner.run(saga).value

    def claim_faucet(self, caller: Caller) -> Dict[str, Any]:
        self._provision(caller)
        now = time.time()
        amount = self.limits.faucet_amount
        state: Dict[str, Any] = {}

        def lock():
            state["previous"] = self.store.claim_cooldown(
                caller.user_id, "last_faucet_at", self.limits.faucet_cooldown_seconds, now
            )

        def finalize(results, receipts):
            return {
                "amount": amount,
                "mint_signature": receipts["mint_coin"],
                "next_claim_at": now + self.limits.faucet_cooldown_seconds,
            }

        saga = Saga(
            flow="faucet",
            resources={"user_id": caller.user_id, "wallet": caller.wallet, "column": "last_faucet_at", "claimed": now},
            expected_state={"coins_minted": amount},
            steps=[LedgerStep("mint_coin", lambda: self.ledger.mint_fungible(COIN, caller.wallet, amount))],
            finalize=finalize,
            lock=lock,
            release=lambda: self.store.restore_cooldown(caller.user_id, "last_faucet_at", now, state.get("previous")),
        )
        return self.runner.run(saga).value
