"""
Shared pytest fixtures for the garage economy test suite.

- A temporary SQLite database per test, wrapped in a Store
- The built-in reward catalog and a Supply Governor seeded from it
- FakeLedger: an in-memory ledger implementing LedgerClient with call
  recording, per-method failure injection and pre-effect hooks
- A scripted RNG so weighted draws are deterministic
- Two callers (alice, bob) and helpers to hand them fragments and items
"""

import itertools
import random
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import pytest

from flow_errors import LedgerCallRejected, LedgerTimeout
from db_models import Fragment, Item
from ledger_client import COIN, LedgerClient, Receipt, fragment_token
from orchestrator import Caller, FlowLimits, Orchestrator
from reward_catalog import load_catalog
from store import Store, init_db, make_engine
from supply_governor import SupplyGovernor

OPERATOR = "operator-wallet"
TREASURY = "treasury-wallet"


class ScriptedRandom(random.Random):
    """``random()`` returns queued values first, then falls back to the seeded stream."""

    def __init__(self, values: Iterable[float] = ()):
        super().__init__(1234)
        self.values: List[float] = list(values)

    def random(self) -> float:
        if self.values:
            return self.values.pop(0)
        return super().random()


class FakeLedger(LedgerClient):
    def __init__(self):
        self.balances: Dict[Tuple[str, str], int] = {}
        self.allowances: Dict[Tuple[str, str, str], int] = {}
        self.owners: Dict[int, str] = {}
        self.approvals: Dict[int, str] = {}
        self.payments: Dict[str, Tuple[str, str, str, int]] = {}
        self.statuses: Dict[str, Optional[bool]] = {}
        self.minted: Dict[str, int] = {}
        self.failures: Dict[str, Exception] = {}
        self.hooks: Dict[str, Callable[[], None]] = {}
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self.next_item_id = 1000
        self._sigs = itertools.count(1)

    # ------------------------------------------------------------ test knobs

    def fail(self, method: str, exc: Exception):
        """Make the next call to ``method`` raise ``exc`` before any effect."""
        self.failures[method] = exc

    def called(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def method_order(self) -> List[str]:
        return [name for name, _ in self.calls]

    def _enter(self, method: str, *args):
        self.calls.append((method, args))
        hook = self.hooks.pop(method, None)
        if hook is not None:
            hook()
        exc = self.failures.pop(method, None)
        if exc is not None:
            raise exc

    def _receipt(self) -> Receipt:
        signature = f"sig-{next(self._sigs)}"
        self.statuses[signature] = True
        return Receipt(signature=signature, slot=100)

    # ------------------------------------------------------------ interface

    @property
    def operator_address(self) -> str:
        return OPERATOR

    @property
    def treasury_address(self) -> str:
        return TREASURY

    def mint_fungible(self, token: str, to: str, amount: int) -> Receipt:
        self._enter("mint_fungible", token, to, amount)
        self.balances[(token, to)] = self.balances.get((token, to), 0) + amount
        return self._receipt()

    def mint_collectible(self, to: str) -> Tuple[int, Receipt]:
        self._enter("mint_collectible", to)
        item_id = self.next_item_id
        self.next_item_id += 1
        self.owners[item_id] = to
        receipt = self._receipt()
        self.minted[receipt.signature] = item_id
        return item_id, receipt

    def burn(self, owner: str, amounts: Dict[str, int]) -> Receipt:
        self._enter("burn", owner, dict(amounts))
        for token, amount in amounts.items():
            if self.balances.get((token, owner), 0) < amount:
                raise LedgerCallRejected(f"insufficient {token} to burn")
        for token, amount in amounts.items():
            self.balances[(token, owner)] -= amount
        return self._receipt()

    def transfer_fungible(self, token: str, sender: str, recipient: str, amount: int) -> Receipt:
        self._enter("transfer_fungible", token, sender, recipient, amount)
        if self.balances.get((token, sender), 0) < amount:
            raise LedgerCallRejected("insufficient balance")
        self.balances[(token, sender)] -= amount
        self.balances[(token, recipient)] = self.balances.get((token, recipient), 0) + amount
        return self._receipt()

    def transfer_collectible(self, sender: str, recipient: str, item_id: int) -> Receipt:
        self._enter("transfer_collectible", sender, recipient, item_id)
        if self.owners.get(item_id) != sender:
            raise LedgerCallRejected("sender does not own the item")
        self.owners[item_id] = recipient
        self.approvals.pop(item_id, None)
        return self._receipt()

    def balance_of(self, token: str, owner: str) -> int:
        return self.balances.get((token, owner), 0)

    def owner_of(self, item_id: int) -> Optional[str]:
        return self.owners.get(item_id)

    def allowance_of(self, token: str, owner: str, spender: str) -> int:
        return self.allowances.get((token, owner, spender), 0)

    def is_collectible_approved(self, item_id: int, operator: str) -> bool:
        return self.approvals.get(item_id) == operator

    def verify_transaction(self, signature: str, sender: str, recipient: str, token: str, amount: int) -> bool:
        return self.payments.get(signature) == (sender, recipient, token, amount)

    def signature_status(self, signature: str) -> Optional[bool]:
        return self.statuses.get(signature)

    def minted_item_id(self, signature: str) -> Optional[int]:
        return self.minted.get(signature)

    def land_mint(self, signature: str, to: str) -> int:
        """Make a timed-out collectible mint show up on the ledger after the fact."""
        item_id = self.next_item_id
        self.next_item_id += 1
        self.owners[item_id] = to
        self.minted[signature] = item_id
        self.statuses[signature] = True
        return item_id


def timeout(signature: str) -> LedgerTimeout:
    return LedgerTimeout("not confirmed in time", signature=signature)


# ============================================================================
# STORE AND SERVICES
# ============================================================================


@pytest.fixture
def store(tmp_path) -> Store:
    engine = make_engine(f"sqlite:///{tmp_path / 'garage_test.db'}")
    init_db(engine)
    return Store(engine)


@pytest.fixture
def catalog():
    return load_catalog()


@pytest.fixture
def governor(store, catalog) -> SupplyGovernor:
    return SupplyGovernor(store, catalog, near_sold_out_threshold=10, claim_window_seconds=3600)


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def rng() -> ScriptedRandom:
    return ScriptedRandom()


@pytest.fixture
def orchestrator(store, ledger, catalog, governor, rng) -> Orchestrator:
    limits = FlowLimits(checkin_cooldown_seconds=3600, faucet_cooldown_seconds=3600, faucet_amount=1000)
    return Orchestrator(store, ledger, catalog, governor, limits=limits, rng=rng)


@pytest.fixture
def alice() -> Caller:
    return Caller(user_id="alice", wallet="alice-wallet")


@pytest.fixture
def bob() -> Caller:
    return Caller(user_id="bob", wallet="bob-wallet")


# ============================================================================
# DATA HELPERS
# ============================================================================


def grant_fragments(store: Store, ledger: FakeLedger, caller: Caller, brand: str, series: str, slots=range(5)) -> List[Fragment]:
    """Hand ``caller`` one fragment per slot, both in the store and on the ledger."""
    store.ensure_user(caller.user_id, caller.wallet)
    out = []
    for slot in slots:
        out.append(store.add_fragment(user_id=caller.user_id, fragment_type=slot, brand=brand, series=series))
        token = fragment_token(brand, slot)
        ledger.balances[(token, caller.wallet)] = ledger.balances.get((token, caller.wallet), 0) + 1
    return out


def grant_item(
    store: Store,
    ledger: FakeLedger,
    caller: Caller,
    item_id: int,
    series: str = "Sport",
    brand: str = "BMW",
    rarity: str = "rare",
    approved: bool = True,
) -> Item:
    store.ensure_user(caller.user_id, caller.wallet)
    item = Item(id=item_id, owner_id=caller.user_id, model_name=f"{brand} test", brand=brand, series=series, rarity=rarity)
    with store.session() as db:
        db.add(item)
        db.commit()
    ledger.owners[item_id] = caller.wallet
    if approved:
        ledger.approvals[item_id] = OPERATOR
    return item


def fund(ledger: FakeLedger, caller: Caller, amount: int, allowance: Optional[int] = None):
    ledger.balances[(COIN, caller.wallet)] = ledger.balances.get((COIN, caller.wallet), 0) + amount
    ledger.allowances[(COIN, caller.wallet, OPERATOR)] = amount if allowance is None else allowance
