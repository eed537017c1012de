from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app_config import Settings, get_settings
from flow_errors import FlowError
from ledger_client import LedgerClient, SolanaLedger
from orchestrator import Caller, FlowLimits, Orchestrator
from reconcile_scheduler import Reconciler, start_reconcile_scheduler
from reward_catalog import Catalog, load_catalog, tier_summary
from store import Store, init_db, make_engine
from supply_governor import SupplyGovernor

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("garage")


@dataclass
class Services:
    store: Store
    catalog: Catalog
    governor: SupplyGovernor
    orchestrator: Orchestrator
    reconciler: Reconciler


def build_services(settings: Settings, ledger: Optional[LedgerClient] = None, rng=None) -> Services:
    engine = make_engine(settings.database_url)
    init_db(engine)
    store = Store(engine)
    catalog = load_catalog(settings.catalog_path)
    governor = SupplyGovernor(
        store,
        catalog,
        near_sold_out_threshold=settings.near_sold_out_threshold,
        claim_window_seconds=settings.waitlist_claim_window_seconds,
    )
    orchestrator = Orchestrator(
        store,
        ledger or SolanaLedger.from_settings(settings),
        catalog,
        governor,
        limits=FlowLimits.from_settings(settings),
        rng=rng,
    )
    reconciler = Reconciler(orchestrator, settings.processing_stale_seconds, logger)
    return Services(store=store, catalog=catalog, governor=governor, orchestrator=orchestrator, reconciler=reconciler)


app = FastAPI(title="Garage Economy API", version="0.1.0")


@app.exception_handler(FlowError)
def flow_error_handler(request: Request, exc: FlowError):
    if exc.status_code >= 500:
        logger.error("flow_error path=%s code=%s detail=%s", request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.on_event("startup")
def startup_event():
    if getattr(app.state, "services", None) is not None:
        return
    settings = get_settings()
    app.state.services = build_services(settings)
    start_reconcile_scheduler(app.state.services.reconciler, settings, logger)


def get_services() -> Services:
    services = getattr(app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service not initialised")
    return services


def get_caller(
    x_user_id: str = Header(..., alias="X-User-Id"),
    x_wallet_address: str = Header(..., alias="X-Wallet-Address"),
) -> Caller:
    # identity is resolved upstream; this only carries it into the flows
    return Caller(user_id=x_user_id, wallet=x_wallet_address)


def require_admin(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")):
    expected = get_settings().admin_token
    if expected and x_admin_token != expected:
        raise HTTPException(status_code=403, detail="Admin token required")


class RewardOpenRequest(BaseModel):
    tier: str
    payment_signature: str


class AssembleRequest(BaseModel):
    brand: str
    waitlist_id: Optional[int] = None


class BrandRequest(BaseModel):
    brand: str


class ListingCreateRequest(BaseModel):
    item_id: int
    price: int = Field(gt=0)


class SupplyCapRequest(BaseModel):
    series: str
    max_supply: int = Field(ge=0)
    reason: Optional[str] = None
    actor: str = "admin"


class RewardRetryRequest(BaseModel):
    payment_signature: str


class ResolveRequest(BaseModel):
    note: Optional[str] = None


class SupplyStatusView(BaseModel):
    series: str
    max_supply: int
    current_minted: int
    reserved: int
    waiting: int
    available: int
    sold_out: bool
    near_sold_out: bool
    refund_bonus: int


class ReconciliationView(BaseModel):
    id: int
    flow: str
    severity: str
    status: str
    message: str
    receipts: str
    resources: str
    expected_state: str
    error: Optional[str] = None
    note: Optional[str] = None
    created_at: float
    resolved_at: Optional[float] = None


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/catalog/tiers")
def catalog_tiers(services: Services = Depends(get_services)):
    return {"version": services.catalog.version, "tiers": tier_summary(services.catalog)}


@app.get("/catalog/buyback-prices")
def buyback_prices(services: Services = Depends(get_services)):
    return {"prices": dict(services.catalog.buyback_prices)}


@app.post("/reward/open", response_model=dict)
def open_reward(req: RewardOpenRequest, caller: Caller = Depends(get_caller), services: Services = Depends(get_services)):
    return services.orchestrator.open_reward(caller, req.tier, req.payment_signature)


@app.post("/assembly", response_model=dict)
def assemble(req: AssembleRequest, caller: Caller = Depends(get_caller), services: Services = Depends(get_services)):
    return services.orchestrator.assemble(caller, req.brand, waitlist_id=req.waitlist_id)


@app.get("/supply/status", response_model=List[SupplyStatusView])
def supply_status_all(services: Services = Depends(get_services)):
    return [SupplyStatusView(**status.as_dict()) for status in services.governor.all_statuses()]


@app.get("/supply/status/{series}", response_model=SupplyStatusView)
def supply_status(series: str, services: Services = Depends(get_services)):
    return SupplyStatusView(**services.governor.status(series).as_dict())


@app.post("/supply/refund", response_model=dict)
def claim_refund(req: BrandRequest, caller: Caller = Depends(get_caller), services: Services = Depends(get_services)):
    return services.orchestrator.claim_refund(caller, req.brand)


@app.post("/supply/waitlist", response_model=dict)
def join_waitlist(req: BrandRequest, caller: Caller = Depends(get_caller), services: Services = Depends(get_services)):
    return services.orchestrator.join_waitlist(caller, req.brand)


@app.get("/supply/waitlist")
def my_waitlist(caller: Caller = Depends(get_caller), services: Services = Depends(get_services)):
    entries = services.store.waitlist_for_user(caller.user_id)
    return {
        "entries": [
            {
                "waitlist_id": e.id,
                "series": e.series,
                "position": e.position,
                "status": e.status,
                "expires_at": e.expires_at,
            }
            for e in entries
        ]
    }


@app.post("/marketplace/listings", response_model=dict)
def create_listing(req: ListingCreateRequest, caller: Caller = Depends(get_caller), services: Services = Depends(get_services)):
    return services.orchestrator.create_listing(caller, req.item_id, req.price)


@app.post("/marketplace/listings/{listing_id}/cancel", response_model=dict)
def cancel_listing(listing_id: int, caller: Caller = Depends(get_caller), services: Services = Depends(get_services)):
    return services.orchestrator.cancel_listing(caller, listing_id)


@app.post("/marketplace/listings/{listing_id}/buy", response_model=dict)
def buy_listing(listing_id: int, caller: Caller = Depends(get_caller), services: Services = Depends(get_services)):
    return services.orchestrator.purchase(caller, listing_id)


@app.post("/items/{item_id}/buyback", response_model=dict)
def buyback_item(item_id: int, caller: Caller = Depends(get_caller), services: Services = Depends(get_services)):
    return services.orchestrator.buyback(caller, item_id)


@app.post("/items/{item_id}/redeem", response_model=dict)
def redeem_item(item_id: int, caller: Caller = Depends(get_caller), services: Services = Depends(get_services)):
    return services.orchestrator.redeem_item(caller, item_id)


@app.post("/checkin", response_model=dict)
def daily_checkin(caller: Caller = Depends(get_caller), services: Services = Depends(get_services)):
    return services.orchestrator.daily_checkin(caller)


@app.post("/faucet", response_model=dict)
def claim_faucet(caller: Caller = Depends(get_caller), services: Services = Depends(get_services)):
    return services.orchestrator.claim_faucet(caller)


@app.post("/admin/supply/cap", dependencies=[Depends(require_admin)])
def set_supply_cap(req: SupplyCapRequest, services: Services = Depends(get_services)):
    return services.governor.set_cap(req.series, req.max_supply, req.actor, req.reason)


@app.get("/admin/supply/adjustments", dependencies=[Depends(require_admin)])
def supply_adjustments(series: Optional[str] = None, services: Services = Depends(get_services)):
    return {"adjustments": [row.model_dump() for row in services.store.supply_adjustments(series)]}


@app.post("/admin/reward/retry", dependencies=[Depends(require_admin)])
def retry_reward(req: RewardRetryRequest, services: Services = Depends(get_services)):
    """
    Operator helper to deliver a reward whose mint diverged after payment.
    """
    return services.orchestrator.retry_reward(req.payment_signature)


@app.post("/admin/reconcile", dependencies=[Depends(require_admin)])
def admin_reconcile(services: Services = Depends(get_services)):
    return services.reconciler.run_once()


@app.get("/admin/reconciliation", response_model=List[ReconciliationView], dependencies=[Depends(require_admin)])
def list_reconciliation(status: Optional[str] = "open", services: Services = Depends(get_services)):
    return [ReconciliationView(**record.model_dump()) for record in services.store.reconciliation_records(status)]


@app.post("/admin/reconciliation/{record_id}/resolve", dependencies=[Depends(require_admin)])
def resolve_reconciliation(record_id: int, req: ResolveRequest, services: Services = Depends(get_services)):
    record = services.store.resolve_reconciliation(record_id, req.note)
    if record is None:
        raise HTTPException(status_code=404, detail="Reconciliation record not found")
    logger.info("reconciliation_resolved record=%s note=%s", record_id, req.note)
    return {"id": record.id, "status": record.status, "note": record.note}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=4000, reload=True)
