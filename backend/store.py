"""
Persistent Store access layer.

Every public method opens its own session and commits (or rolls back) before
returning, so no local transaction is ever held open across a ledger call.
Locks are compare-and-set UPDATEs whose rowcount decides who won.
"""

import json
import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_, text, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, create_engine, select

from db_models import (
    LISTING_OPEN,
    LISTING_PROCESSING,
    LISTING_SOLD,
    LISTING_TERMINAL,
    WAITLIST_CLAIMING,
    WAITLIST_EXPIRED,
    WAITLIST_FULFILLED,
    WAITLIST_NOTIFIED,
    WAITLIST_WAITING,
    Fragment,
    Item,
    Listing,
    ReconciliationRecord,
    RewardLog,
    SeriesSupply,
    SupplyAdjustment,
    User,
    WaitingList,
)
from flow_errors import PreconditionFailed, RecoverableConflict

logger = logging.getLogger("garage")

WAITLIST_ACTIVE = (WAITLIST_WAITING, WAITLIST_NOTIFIED, WAITLIST_CLAIMING)
WAITLIST_RESERVING = (WAITLIST_NOTIFIED, WAITLIST_CLAIMING)


def make_engine(database_url: str):
    connect_args = {}
    if database_url.startswith("sqlite"):
        # request threads and the reconcile thread share the engine
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(database_url, connect_args=connect_args)


def ensure_listing_indexes(engine):
    """At most one open listing per item, enforced by the database."""
    with engine.begin() as conn:
        conn.execute(
            text(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_listing_open_item ON listing (item_id) "
                "WHERE status IN ('active', 'processing')"
            )
        )


def init_db(engine):
    SQLModel.metadata.create_all(engine)
    ensure_listing_indexes(engine)


def load_ids(raw: Optional[str]) -> List[int]:
    if not raw:
        return []
    try:
        return [int(x) for x in json.loads(raw)]
    except (ValueError, TypeError):
        return []


class Store:
    def __init__(self, engine):
        self.engine = engine

    def session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    # ------------------------------------------------------------------ users

    def ensure_user(self, user_id: str, wallet: str) -> User:
        with self.session() as db:
            user = db.get(User, user_id)
            if user:
                if user.wallet_address != wallet:
                    user.wallet_address = wallet
                    db.add(user)
                    db.commit()
                return user
            user = User(id=user_id, wallet_address=wallet)
            db.add(user)
            try:
                db.commit()
            except IntegrityError:
                # concurrent first contact
                db.rollback()
                existing = db.get(User, user_id)
                if existing is None:
                    raise
                return existing
            logger.info("user_provisioned user=%s wallet=%s", user_id, wallet)
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self.session() as db:
            return db.get(User, user_id)

    def claim_cooldown(self, user_id: str, column: str, cooldown: float, now: float) -> Optional[float]:
        """Stamp ``column`` with ``now`` if the cooldown elapsed; return the previous value."""
        col = getattr(User, column)
        with self.session() as db:
            user = db.get(User, user_id)
            if user is None:
                raise PreconditionFailed("Unknown user")
            previous = getattr(user, column)
            if previous is not None and now - previous < cooldown:
                raise PreconditionFailed(
                    "Cooldown active",
                    next_available_at=previous + cooldown,
                )
            guard = col.is_(None) if previous is None else col == previous
            result = db.execute(update(User).where(User.id == user_id, guard).values({column: now}))
            if result.rowcount != 1:
                db.rollback()
                raise RecoverableConflict("Cooldown claim already in progress")
            db.commit()
            return previous

    def restore_cooldown(self, user_id: str, column: str, claimed: float, previous: Optional[float]):
        col = getattr(User, column)
        with self.session() as db:
            db.execute(update(User).where(User.id == user_id, col == claimed).values({column: previous}))
            db.commit()

    # -------------------------------------------------------------- fragments

    def unused_fragments(self, user_id: str, brand: str) -> List[Fragment]:
        with self.session() as db:
            stmt = (
                select(Fragment)
                .where(Fragment.user_id == user_id, Fragment.brand == brand, Fragment.used == False)  # noqa: E712
                .order_by(Fragment.id)
            )
            return list(db.exec(stmt).all())

    def select_fragment_set(self, user_id: str, brand: str, slot_count: int) -> Tuple[Dict[int, Fragment], List[int]]:
        """Oldest unused fragment per slot plus the list of slots with none."""
        chosen: Dict[int, Fragment] = {}
        for frag in self.unused_fragments(user_id, brand):
            if 0 <= frag.fragment_type < slot_count and frag.fragment_type not in chosen:
                chosen[frag.fragment_type] = frag
        missing = [slot for slot in range(slot_count) if slot not in chosen]
        return chosen, missing

    def held_counts(self, user_id: str, brand: str) -> Dict[int, int]:
        """Fragments per slot that have not been burned on the ledger."""
        with self.session() as db:
            stmt = (
                select(Fragment.fragment_type, func.count())
                .where(Fragment.user_id == user_id, Fragment.brand == brand, Fragment.consumed_signature.is_(None))
                .group_by(Fragment.fragment_type)
            )
            return {int(slot): int(count) for slot, count in db.exec(stmt).all()}

    def get_fragments(self, ids: Sequence[int]) -> List[Fragment]:
        if not ids:
            return []
        with self.session() as db:
            return list(db.exec(select(Fragment).where(Fragment.id.in_(list(ids))).order_by(Fragment.id)).all())

    def add_fragment(self, **fields: Any) -> Fragment:
        with self.session() as db:
            frag = Fragment(**fields)
            db.add(frag)
            db.commit()
            db.refresh(frag)
            return frag

    def lock_fragments(self, ids: Sequence[int], user_id: str):
        ids = list(ids)
        with self.session() as db:
            result = db.execute(
                update(Fragment)
                .where(Fragment.id.in_(ids), Fragment.user_id == user_id, Fragment.used == False)  # noqa: E712
                .values(used=True)
            )
            if result.rowcount != len(ids):
                db.rollback()
                raise RecoverableConflict("Fragments are already in use by another request", fragment_ids=ids)
            db.commit()

    def release_fragments(self, ids: Sequence[int]):
        with self.session() as db:
            db.execute(
                update(Fragment).where(Fragment.id.in_(list(ids))).values(used=False, waitlist_id=None)
            )
            db.commit()
        logger.info("fragments_released ids=%s", list(ids))

    # ------------------------------------------------------------------ items

    def get_item(self, item_id: int) -> Optional[Item]:
        with self.session() as db:
            return db.get(Item, item_id)

    def count_minted(self, series: str) -> int:
        with self.session() as db:
            stmt = select(func.count()).select_from(Item).where(Item.series == series, Item.sold_to_operator_at.is_(None))
            return int(db.exec(stmt).one())

    def lock_item(self, item_id: int, owner_id: str, action: str) -> bool:
        with self.session() as db:
            result = db.execute(
                update(Item)
                .where(
                    Item.id == item_id,
                    Item.owner_id == owner_id,
                    Item.pending_action.is_(None),
                    Item.sold_to_operator_at.is_(None),
                )
                .values(pending_action=action, pending_since=time.time())
            )
            if result.rowcount != 1:
                db.rollback()
                return False
            db.commit()
            return True

    def release_item(self, item_id: int, action: str):
        with self.session() as db:
            db.execute(
                update(Item)
                .where(Item.id == item_id, Item.pending_action == action)
                .values(pending_action=None, pending_since=None)
            )
            db.commit()

    def redeem_item(self, item_id: int, owner_id: str) -> bool:
        with self.session() as db:
            open_listing = db.exec(
                select(Listing).where(Listing.item_id == item_id, Listing.status.in_(list(LISTING_OPEN)))
            ).first()
            if open_listing is not None:
                return False
            result = db.execute(
                update(Item)
                .where(
                    Item.id == item_id,
                    Item.owner_id == owner_id,
                    Item.is_redeemed == False,  # noqa: E712
                    Item.pending_action.is_(None),
                    Item.sold_to_operator_at.is_(None),
                )
                .values(is_redeemed=True, redeemed_at=time.time())
            )
            if result.rowcount != 1:
                db.rollback()
                return False
            db.commit()
            return True

    def stale_item_locks(self, before_ts: float) -> List[Item]:
        with self.session() as db:
            stmt = select(Item).where(Item.pending_action.is_not(None), Item.pending_since < before_ts)
            return list(db.exec(stmt).all())

    # --------------------------------------------------------------- listings

    def get_listing(self, listing_id: int) -> Optional[Listing]:
        with self.session() as db:
            return db.get(Listing, listing_id)

    def open_listing_for_item(self, item_id: int) -> Optional[Listing]:
        with self.session() as db:
            stmt = select(Listing).where(Listing.item_id == item_id, Listing.status.in_(list(LISTING_OPEN)))
            return db.exec(stmt).first()

    def create_listing(self, item_id: int, seller_id: str, price: int) -> Listing:
        with self.session() as db:
            item = db.get(Item, item_id)
            if item is None or item.owner_id != seller_id:
                raise PreconditionFailed("You do not own this item")
            if item.pending_action is not None:
                raise RecoverableConflict("Item is locked by another operation", item_id=item_id)
            listing = Listing(item_id=item_id, seller_id=seller_id, price=price)
            db.add(listing)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise RecoverableConflict("Item already has an open listing", item_id=item_id) from exc
            db.refresh(listing)
            return listing

    def transition_listing(self, listing_id: int, from_status: str, to_status: str, **values: Any) -> bool:
        """Compare-and-set a listing status. Terminal states never transition."""
        if from_status in LISTING_TERMINAL:
            raise ValueError(f"listing status {from_status} is terminal")
        values.update(status=to_status, updated_at=time.time())
        if to_status == LISTING_PROCESSING:
            values.setdefault("processing_since", time.time())
        elif from_status == LISTING_PROCESSING:
            values.setdefault("processing_since", None)
        with self.session() as db:
            result = db.execute(
                update(Listing).where(Listing.id == listing_id, Listing.status == from_status).values(**values)
            )
            if result.rowcount != 1:
                db.rollback()
                return False
            db.commit()
            return True

    def stale_processing_listings(self, before_ts: float) -> List[Listing]:
        with self.session() as db:
            stmt = select(Listing).where(
                Listing.status == LISTING_PROCESSING,
                or_(Listing.processing_since.is_(None), Listing.processing_since < before_ts),
            )
            return list(db.exec(stmt).all())

    # ------------------------------------------------------------ reward logs

    def open_reward_log(
        self, payment_signature: str, user_id: str, wallet: str, tier: str, cost: int, reward: Dict[str, Any]
    ) -> RewardLog:
        with self.session() as db:
            log = RewardLog(
                payment_signature=payment_signature,
                user_id=user_id,
                wallet=wallet,
                tier=tier,
                cost=cost,
                reward=json.dumps(reward),
            )
            db.add(log)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise RecoverableConflict(
                    "Payment receipt was already used to open a reward",
                    payment_signature=payment_signature,
                ) from exc
            return log

    def get_reward_log(self, payment_signature: str) -> Optional[RewardLog]:
        with self.session() as db:
            return db.get(RewardLog, payment_signature)

    def update_reward_log(self, payment_signature: str, **values: Any):
        with self.session() as db:
            log = db.get(RewardLog, payment_signature)
            if log is None:
                return
            for key, value in values.items():
                setattr(log, key, value)
            log.updated_at = time.time()
            db.add(log)
            db.commit()

    def claim_reward_retry(self, payment_signature: str) -> bool:
        with self.session() as db:
            result = db.execute(
                update(RewardLog)
                .where(RewardLog.payment_signature == payment_signature, RewardLog.status == "diverged")
                .values(status="retrying", updated_at=time.time())
            )
            if result.rowcount != 1:
                db.rollback()
                return False
            db.commit()
            return True

    # ---------------------------------------------------------- reconciliation

    def record_divergence(
        self,
        flow: str,
        severity: str,
        message: str,
        receipts: Dict[str, Any],
        resources: Dict[str, Any],
        expected_state: Dict[str, Any],
        error: Optional[str] = None,
    ) -> int:
        with self.session() as db:
            record = ReconciliationRecord(
                flow=flow,
                severity=severity,
                message=message,
                receipts=json.dumps(receipts, default=str),
                resources=json.dumps(resources, default=str),
                expected_state=json.dumps(expected_state, default=str),
                error=error,
            )
            db.add(record)
            db.commit()
            db.refresh(record)
            return record.id

    def reconciliation_records(self, status: Optional[str] = "open") -> List[ReconciliationRecord]:
        with self.session() as db:
            stmt = select(ReconciliationRecord).order_by(ReconciliationRecord.id)
            if status:
                stmt = stmt.where(ReconciliationRecord.status == status)
            return list(db.exec(stmt).all())

    def open_records_for(self, key: str, value: Any, flow: Optional[str] = None) -> List[ReconciliationRecord]:
        """Open records whose resources carry ``key == value``."""
        out = []
        for record in self.reconciliation_records("open"):
            if flow and record.flow != flow:
                continue
            try:
                resources = json.loads(record.resources or "{}")
            except ValueError:
                continue
            if resources.get(key) == value:
                out.append(record)
        return out

    def escalate_reconciliation(self, record_id: int, message: str):
        with self.session() as db:
            record = db.get(ReconciliationRecord, record_id)
            if record is None:
                return
            record.severity = "critical"
            record.message = message
            db.add(record)
            db.commit()

    def resolve_reconciliation(self, record_id: int, note: Optional[str]) -> Optional[ReconciliationRecord]:
        with self.session() as db:
            record = db.get(ReconciliationRecord, record_id)
            if record is None:
                return None
            record.status = "resolved"
            record.note = note
            record.resolved_at = time.time()
            db.add(record)
            db.commit()
            return record

    # ----------------------------------------------------------------- supply

    def seed_series(self, defaults: Iterable[Tuple[str, int, int]]):
        with self.session() as db:
            for series, max_supply, refund_bonus in defaults:
                if db.get(SeriesSupply, series) is None:
                    db.add(SeriesSupply(series=series, max_supply=max_supply, refund_bonus=refund_bonus))
            db.commit()

    def get_series_supply(self, series: str) -> Optional[SeriesSupply]:
        with self.session() as db:
            return db.get(SeriesSupply, series)

    def all_series(self) -> List[SeriesSupply]:
        with self.session() as db:
            return list(db.exec(select(SeriesSupply).order_by(SeriesSupply.series)).all())

    def set_series_cap(self, series: str, new_max: int, actor: str, reason: Optional[str]) -> int:
        with self.session() as db:
            row = db.get(SeriesSupply, series)
            if row is None:
                raise PreconditionFailed(f"Unknown series: {series}")
            old_max = row.max_supply
            row.max_supply = new_max
            row.updated_at = time.time()
            db.add(row)
            db.add(
                SupplyAdjustment(
                    series=series, old_max_supply=old_max, new_max_supply=new_max, actor=actor, reason=reason
                )
            )
            db.commit()
            return old_max

    def supply_adjustments(self, series: Optional[str] = None) -> List[SupplyAdjustment]:
        with self.session() as db:
            stmt = select(SupplyAdjustment).order_by(SupplyAdjustment.id)
            if series:
                stmt = stmt.where(SupplyAdjustment.series == series)
            return list(db.exec(stmt).all())

    # --------------------------------------------------------------- waitlist

    def get_waitlist_entry(self, entry_id: int) -> Optional[WaitingList]:
        with self.session() as db:
            return db.get(WaitingList, entry_id)

    def waitlist_for_user(self, user_id: str) -> List[WaitingList]:
        with self.session() as db:
            stmt = select(WaitingList).where(WaitingList.user_id == user_id).order_by(WaitingList.created_at.desc())
            return list(db.exec(stmt).all())

    def count_waitlist(self, series: str, statuses: Sequence[str]) -> int:
        with self.session() as db:
            stmt = (
                select(func.count())
                .select_from(WaitingList)
                .where(WaitingList.series == series, WaitingList.status.in_(list(statuses)))
            )
            return int(db.exec(stmt).one())

    def enqueue_waitlist(self, user_id: str, series: str, brand: str, fragment_ids: Sequence[int]) -> WaitingList:
        """Reserve the fragments and append a FIFO entry in one transaction."""
        ids = list(fragment_ids)
        with self.session() as db:
            existing = db.exec(
                select(WaitingList).where(
                    WaitingList.user_id == user_id,
                    WaitingList.series == series,
                    WaitingList.status.in_(list(WAITLIST_ACTIVE)),
                )
            ).first()
            if existing is not None:
                raise PreconditionFailed(
                    "Already on the waiting list for this series",
                    position=existing.position,
                    waitlist_id=existing.id,
                )
            max_position = db.exec(
                select(func.max(WaitingList.position)).where(WaitingList.series == series)
            ).one()
            entry = WaitingList(
                user_id=user_id,
                series=series,
                brand=brand,
                position=(max_position or 0) + 1,
                fragment_ids=json.dumps(ids),
            )
            db.add(entry)
            db.flush()
            result = db.execute(
                update(Fragment)
                .where(Fragment.id.in_(ids), Fragment.user_id == user_id, Fragment.used == False)  # noqa: E712
                .values(used=True, waitlist_id=entry.id)
            )
            if result.rowcount != len(ids):
                db.rollback()
                raise RecoverableConflict("Fragments are already in use by another request", fragment_ids=ids)
            db.commit()
            db.refresh(entry)
            return entry

    def notify_waiting(self, series: str, count: int, expires_at: float) -> List[WaitingList]:
        if count <= 0:
            return []
        now = time.time()
        notified: List[WaitingList] = []
        with self.session() as db:
            stmt = (
                select(WaitingList)
                .where(WaitingList.series == series, WaitingList.status == WAITLIST_WAITING)
                .order_by(WaitingList.position)
                .limit(count)
            )
            for entry in db.exec(stmt).all():
                result = db.execute(
                    update(WaitingList)
                    .where(WaitingList.id == entry.id, WaitingList.status == WAITLIST_WAITING)
                    .values(status=WAITLIST_NOTIFIED, notified_at=now, expires_at=expires_at)
                )
                if result.rowcount == 1:
                    notified.append(entry)
            db.commit()
        for entry in notified:
            entry.status = WAITLIST_NOTIFIED
            entry.notified_at = now
            entry.expires_at = expires_at
        return notified

    def transition_waitlist(self, entry_id: int, from_status: str, to_status: str, **values: Any) -> bool:
        with self.session() as db:
            result = db.execute(
                update(WaitingList)
                .where(WaitingList.id == entry_id, WaitingList.status == from_status)
                .values(status=to_status, **values)
            )
            if result.rowcount != 1:
                db.rollback()
                return False
            db.commit()
            return True

    def expire_waitlist(self, now: float) -> List[WaitingList]:
        """Expire overdue notifications and return their fragments to the owner."""
        expired: List[WaitingList] = []
        with self.session() as db:
            stmt = select(WaitingList).where(
                WaitingList.status == WAITLIST_NOTIFIED,
                WaitingList.expires_at.is_not(None),
                WaitingList.expires_at < now,
            )
            for entry in db.exec(stmt).all():
                result = db.execute(
                    update(WaitingList)
                    .where(WaitingList.id == entry.id, WaitingList.status == WAITLIST_NOTIFIED)
                    .values(status=WAITLIST_EXPIRED)
                )
                if result.rowcount != 1:
                    continue
                db.execute(
                    update(Fragment)
                    .where(Fragment.waitlist_id == entry.id)
                    .values(used=False, waitlist_id=None)
                )
                expired.append(entry)
            db.commit()
        return expired

    # ------------------------------------------------------------- finalizers

    def finalize_reward(
        self,
        payment_signature: str,
        user_id: str,
        cost: int,
        reward: Dict[str, Any],
        mint_signature: str,
        item_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        with self.session() as db:
            log = db.get(RewardLog, payment_signature)
            user = db.get(User, user_id)
            if log is None or user is None:
                raise RuntimeError(f"reward finalize lost its rows payment={payment_signature}")
            out: Dict[str, Any] = {}
            if reward["kind"] == "item":
                item = Item(
                    id=item_id,
                    owner_id=user_id,
                    model_name=reward["model_name"],
                    brand=reward["brand"],
                    series=reward["series"],
                    rarity=reward["rarity"],
                    mint_signature=mint_signature,
                    payment_signature=payment_signature,
                )
                db.add(item)
                log.item_id = item_id
                out["item_id"] = item_id
            else:
                frag = Fragment(
                    user_id=user_id,
                    fragment_type=reward["slot"],
                    brand=reward["brand"],
                    series=reward["series"],
                    rarity=reward["rarity"],
                    mint_signature=mint_signature,
                    payment_signature=payment_signature,
                )
                db.add(frag)
                db.flush()
                log.fragment_id = frag.id
                out["fragment_id"] = frag.id
            user.total_spent += cost
            log.status = "success"
            log.mint_signature = mint_signature
            log.error = None
            log.updated_at = time.time()
            db.add(user)
            db.add(log)
            db.commit()
            out["total_spent"] = user.total_spent
            return out

    def finalize_assembly(
        self,
        user_id: str,
        fragment_ids: Sequence[int],
        item_id: int,
        reward: Dict[str, Any],
        burn_signature: str,
        mint_signature: str,
        waitlist_id: Optional[int] = None,
    ) -> Item:
        with self.session() as db:
            item = Item(
                id=item_id,
                owner_id=user_id,
                model_name=reward["model_name"],
                brand=reward["brand"],
                series=reward["series"],
                rarity=reward["rarity"],
                mint_signature=mint_signature,
            )
            db.add(item)
            db.execute(
                update(Fragment)
                .where(Fragment.id.in_(list(fragment_ids)))
                .values(used=True, waitlist_id=None, consumed_signature=burn_signature)
            )
            if waitlist_id is not None:
                result = db.execute(
                    update(WaitingList)
                    .where(WaitingList.id == waitlist_id, WaitingList.status == WAITLIST_CLAIMING)
                    .values(status=WAITLIST_FULFILLED, item_id=item_id)
                )
                if result.rowcount != 1:
                    raise RuntimeError(f"waitlist entry {waitlist_id} left claiming state during assembly")
            db.commit()
            return item

    def finalize_refund(self, fragment_ids: Sequence[int], burn_signature: str):
        with self.session() as db:
            db.execute(
                update(Fragment)
                .where(Fragment.id.in_(list(fragment_ids)))
                .values(used=True, waitlist_id=None, consumed_signature=burn_signature)
            )
            db.commit()

    def finalize_sale(
        self, listing_id: int, item_id: int, buyer_id: str, payment_signature: str, transfer_signature: str
    ) -> Listing:
        now = time.time()
        with self.session() as db:
            result = db.execute(
                update(Listing)
                .where(Listing.id == listing_id, Listing.status == LISTING_PROCESSING)
                .values(
                    status=LISTING_SOLD,
                    buyer_id=buyer_id,
                    sold_at=now,
                    updated_at=now,
                    processing_since=None,
                    payment_signature=payment_signature,
                    transfer_signature=transfer_signature,
                )
            )
            if result.rowcount != 1:
                raise RuntimeError(f"listing {listing_id} left processing state before settlement")
            db.execute(update(Item).where(Item.id == item_id).values(owner_id=buyer_id))
            db.commit()
            return db.get(Listing, listing_id)

    def finalize_buyback(self, item_id: int, seller_id: str, transfer_signature: str) -> Item:
        with self.session() as db:
            result = db.execute(
                update(Item)
                .where(Item.id == item_id, Item.pending_action == "buyback")
                .values(
                    sold_to_operator_at=time.time(),
                    sold_to_operator_by=seller_id,
                    buyback_signature=transfer_signature,
                    pending_action=None,
                    pending_since=None,
                )
            )
            if result.rowcount != 1:
                raise RuntimeError(f"item {item_id} lost its buyback lock before finalize")
            db.commit()
            return db.get(Item, item_id)

    def finalize_checkin(self, user_id: str, fragment_fields: Dict[str, Any]) -> Fragment:
        with self.session() as db:
            frag = Fragment(user_id=user_id, **fragment_fields)
            db.add(frag)
            db.commit()
            db.refresh(frag)
            return frag
