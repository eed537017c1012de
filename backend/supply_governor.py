import logging
import time
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

from db_models import WAITLIST_WAITING
from flow_errors import PreconditionFailed, ValidationFailed
from reward_catalog import Catalog
from store import WAITLIST_RESERVING, Store

logger = logging.getLogger("garage")


@dataclass
class SupplyStatus:
    series: str
    max_supply: int
    current_minted: int
    reserved: int
    waiting: int
    available: int
    sold_out: bool
    near_sold_out: bool
    refund_bonus: int

    def as_dict(self) -> Dict:
        return asdict(self)


class SupplyGovernor:
    """Per-series hard caps modelling finite physical inventory.

    Items bought back by the operator do not count. Waitlist entries that were
    notified but have not claimed yet hold capacity, so ``available`` is what an
    ordinary assembly may still take.
    """

    def __init__(self, store: Store, catalog: Catalog, near_sold_out_threshold: int = 10, claim_window_seconds: int = 72 * 3600):
        self.store = store
        self.catalog = catalog
        self.near_sold_out_threshold = near_sold_out_threshold
        self.claim_window_seconds = claim_window_seconds
        store.seed_series((s.name, s.max_supply, s.refund_bonus) for s in catalog.series.values())

    def status(self, series: str) -> SupplyStatus:
        row = self.store.get_series_supply(series)
        if row is None:
            raise PreconditionFailed(f"Unknown series: {series}")
        minted = self.store.count_minted(series)
        reserved = self.store.count_waitlist(series, WAITLIST_RESERVING)
        waiting = self.store.count_waitlist(series, (WAITLIST_WAITING,))
        available = max(0, row.max_supply - minted - reserved)
        return SupplyStatus(
            series=series,
            max_supply=row.max_supply,
            current_minted=minted,
            reserved=reserved,
            waiting=waiting,
            available=available,
            sold_out=minted + reserved >= row.max_supply,
            near_sold_out=0 < available <= self.near_sold_out_threshold,
            refund_bonus=row.refund_bonus,
        )

    def all_statuses(self) -> List[SupplyStatus]:
        return [self.status(row.series) for row in self.store.all_series()]

    def is_sold_out(self, series: str) -> bool:
        return self.status(series).sold_out

    def can_fulfil_reservation(self, series: str) -> bool:
        """A notified entry already holds one unit, so only minted items count against it."""
        row = self.store.get_series_supply(series)
        if row is None:
            return False
        return self.store.count_minted(series) < row.max_supply

    def refund_bonus(self, series: str) -> int:
        row = self.store.get_series_supply(series)
        return row.refund_bonus if row else 0

    def set_cap(self, series: str, new_max_supply: int, actor: str, reason: Optional[str] = None) -> Dict:
        if new_max_supply < 0:
            raise ValidationFailed("max_supply must be >= 0")
        old_max = self.store.set_series_cap(series, new_max_supply, actor, reason)
        logger.info(
            "supply_cap_updated series=%s old=%s new=%s actor=%s reason=%s",
            series,
            old_max,
            new_max_supply,
            actor,
            reason,
        )
        notified = self.notify_waitlist(series)
        return {
            "series": series,
            "old_max_supply": old_max,
            "new_max_supply": new_max_supply,
            "notified_waitlist_ids": [entry.id for entry in notified],
            "status": self.status(series).as_dict(),
        }

    def notify_waitlist(self, series: str):
        """Promote waiting entries FIFO into whatever capacity is free."""
        status = self.status(series)
        if status.available <= 0 or status.waiting <= 0:
            return []
        expires_at = time.time() + self.claim_window_seconds
        notified = self.store.notify_waiting(series, status.available, expires_at)
        for entry in notified:
            logger.info(
                "waitlist_notified series=%s entry=%s user=%s position=%s expires_at=%s",
                series,
                entry.id,
                entry.user_id,
                entry.position,
                expires_at,
            )
        return notified
