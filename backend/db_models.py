import time
from typing import Optional

from sqlalchemy import Column, BigInteger, Index
from sqlmodel import Field, SQLModel

LISTING_ACTIVE = "active"
LISTING_PROCESSING = "processing"
LISTING_SOLD = "sold"
LISTING_CANCELLED = "cancelled"
LISTING_TERMINAL = {LISTING_SOLD, LISTING_CANCELLED}
LISTING_OPEN = {LISTING_ACTIVE, LISTING_PROCESSING}

WAITLIST_WAITING = "waiting"
WAITLIST_NOTIFIED = "notified"
WAITLIST_CLAIMING = "claiming"
WAITLIST_FULFILLED = "fulfilled"
WAITLIST_EXPIRED = "expired"


def now_ts() -> float:
    return time.time()


class User(SQLModel, table=True):
    id: str = Field(primary_key=True)
    wallet_address: str = Field(index=True, unique=True)
    total_spent: int = Field(default=0)
    last_check_in: Optional[float] = None
    last_faucet_at: Optional[float] = None
    created_at: float = Field(default_factory=now_ts)


class Fragment(SQLModel, table=True):
    """One unit of a fungible per-slot part token.

    available: used is False
    reserved by a waitlist entry: used is True and waitlist_id is set
    consumed by assembly or refund: used is True and waitlist_id is None
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    fragment_type: int
    brand: str = Field(index=True)
    series: str
    rarity: str = Field(default="common")
    used: bool = Field(default=False, index=True)
    waitlist_id: Optional[int] = Field(default=None, index=True)
    mint_signature: Optional[str] = None
    payment_signature: Optional[str] = None
    consumed_signature: Optional[str] = None
    created_at: float = Field(default_factory=now_ts)

    __table_args__ = (Index("idx_fragment_owner_brand_used", "user_id", "brand", "used"),)


class Item(SQLModel, table=True):
    # ledger-issued id, never generated locally
    id: int = Field(sa_column=Column(BigInteger, primary_key=True, autoincrement=False))
    owner_id: str = Field(index=True)
    model_name: str
    brand: str
    series: str = Field(index=True)
    rarity: str
    is_redeemed: bool = Field(default=False)
    redeemed_at: Optional[float] = None
    sold_to_operator_at: Optional[float] = None
    sold_to_operator_by: Optional[str] = None
    buyback_signature: Optional[str] = None
    mint_signature: Optional[str] = None
    payment_signature: Optional[str] = None
    pending_action: Optional[str] = None
    pending_since: Optional[float] = None
    created_at: float = Field(default_factory=now_ts)


class Listing(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    item_id: int = Field(index=True)
    seller_id: str = Field(index=True)
    price: int
    status: str = Field(default=LISTING_ACTIVE, index=True)
    buyer_id: Optional[str] = None
    payment_signature: Optional[str] = None
    transfer_signature: Optional[str] = None
    processing_since: Optional[float] = None
    sold_at: Optional[float] = None
    created_at: float = Field(default_factory=now_ts)
    updated_at: float = Field(default_factory=now_ts)


class WaitingList(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    series: str = Field(index=True)
    brand: str
    position: int
    fragment_ids: str = Field(default="[]")  # JSON list
    status: str = Field(default=WAITLIST_WAITING, index=True)
    item_id: Optional[int] = None
    created_at: float = Field(default_factory=now_ts)
    notified_at: Optional[float] = None
    expires_at: Optional[float] = None

    __table_args__ = (Index("idx_waitlist_series_position", "series", "position"),)


class RewardLog(SQLModel, table=True):
    # keyed by the payment receipt so a receipt opens at most one reward
    payment_signature: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    wallet: str
    tier: str
    cost: int
    status: str = Field(default="pending")
    reward: str = Field(default="{}")  # JSON of the drawn reward
    mint_signature: Optional[str] = None
    item_id: Optional[int] = None
    fragment_id: Optional[int] = None
    error: Optional[str] = None
    created_at: float = Field(default_factory=now_ts)
    updated_at: float = Field(default_factory=now_ts)


class ReconciliationRecord(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    flow: str = Field(index=True)
    severity: str = Field(default="critical")  # critical | unconfirmed
    status: str = Field(default="open", index=True)
    message: str
    receipts: str = Field(default="{}")
    resources: str = Field(default="{}")
    expected_state: str = Field(default="{}")
    error: Optional[str] = None
    note: Optional[str] = None
    created_at: float = Field(default_factory=now_ts)
    resolved_at: Optional[float] = None


class SeriesSupply(SQLModel, table=True):
    series: str = Field(primary_key=True)
    max_supply: int
    refund_bonus: int = Field(default=0)
    updated_at: float = Field(default_factory=now_ts)


class SupplyAdjustment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    series: str = Field(index=True)
    old_max_supply: int
    new_max_supply: int
    actor: str
    reason: Optional[str] = None
    created_at: float = Field(default_factory=now_ts)
