"""
Static reward configuration: gacha tiers, per-brand assembly tables,
series supply defaults and buy-back prices.

The catalog is built once (built-in defaults or a JSON override file),
validated at load time and never mutated afterwards. Weighted draws are
pure functions of the table and a caller-supplied RNG.
"""

import json
import logging
import random
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, Tuple, TypeVar

logger = logging.getLogger("garage")

T = TypeVar("T")

FRAGMENT_SLOT_NAMES = ("Engine", "Chassis", "Wheels", "Body", "Electronics")


class CatalogError(ValueError):
    pass


@dataclass(frozen=True)
class WeightedTable(Generic[T]):
    entries: Tuple[Tuple[int, T], ...]

    def __post_init__(self):
        if not self.entries:
            raise CatalogError("weighted table has no entries")
        for weight, _ in self.entries:
            if weight < 0:
                raise CatalogError(f"negative weight {weight}")
        if self.total <= 0:
            raise CatalogError("weighted table total weight must be > 0")

    @property
    def total(self) -> int:
        return sum(weight for weight, _ in self.entries)

    def select(self, value: float) -> T:
        """Walk the entries subtracting weight until the remainder is <= 0."""
        remainder = value
        for weight, payload in self.entries:
            if weight == 0:
                continue
            remainder -= weight
            if remainder <= 0:
                return payload
        logger.error("weighted_table_fallback value=%s total=%s", value, self.total)
        return self.entries[0][1]

    def draw(self, rng: random.Random) -> T:
        return self.select(rng.random() * self.total)

    def bounds(self, payload: T) -> Tuple[int, int]:
        """Cumulative [low, high] weight range owned by the first entry equal to payload."""
        cumulative = 0
        for weight, candidate in self.entries:
            if candidate == payload:
                return cumulative, cumulative + weight
            cumulative += weight
        raise KeyError(payload)

    def without(self, predicate: Callable[[T], bool]) -> Optional["WeightedTable[T]"]:
        kept = tuple((w, p) for w, p in self.entries if not predicate(p))
        if not kept or sum(w for w, _ in kept) <= 0:
            return None
        return WeightedTable(kept)


@dataclass(frozen=True)
class RewardSpec:
    kind: str  # "fragment" | "item"
    brand: str
    series: str
    rarity: str
    model_name: Optional[str] = None
    slot: Optional[int] = None  # fragment slot; None draws one uniformly

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "brand": self.brand,
            "series": self.series,
            "rarity": self.rarity,
            "model_name": self.model_name,
            "slot": self.slot,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RewardSpec":
        return cls(
            kind=data["kind"],
            brand=data["brand"],
            series=data["series"],
            rarity=data.get("rarity", "common"),
            model_name=data.get("model_name"),
            slot=data.get("slot"),
        )


@dataclass(frozen=True)
class Tier:
    name: str
    cost: int
    table: WeightedTable


@dataclass(frozen=True)
class SeriesDefaults:
    name: str
    max_supply: int
    refund_bonus: int


@dataclass(frozen=True)
class Catalog:
    version: str
    tiers: Mapping[str, Tier]
    assembly: Mapping[str, WeightedTable]  # brand -> table of item RewardSpecs
    brand_series: Mapping[str, str]
    series: Mapping[str, SeriesDefaults]
    buyback_prices: Mapping[str, int]
    slot_names: Tuple[str, ...] = field(default=FRAGMENT_SLOT_NAMES)

    @property
    def slot_count(self) -> int:
        return len(self.slot_names)

    def tier(self, name: str) -> Optional[Tier]:
        return self.tiers.get(name)

    def series_for_brand(self, brand: str) -> Optional[str]:
        return self.brand_series.get(brand)

    def assembly_table(self, brand: str) -> Optional[WeightedTable]:
        return self.assembly.get(brand)

    def buyback_price(self, rarity: str) -> Optional[int]:
        return self.buyback_prices.get(rarity.lower())

    def slot_name(self, slot: int) -> str:
        return self.slot_names[slot]

    def resolve_reward(self, spec: RewardSpec, rng: random.Random) -> RewardSpec:
        """Fix a concrete slot for fragment rewards drawn without one."""
        if spec.kind == "fragment" and spec.slot is None:
            return RewardSpec(
                kind=spec.kind,
                brand=spec.brand,
                series=spec.series,
                rarity=spec.rarity,
                slot=rng.randrange(self.slot_count),
            )
        return spec


DEFAULT_CATALOG: Dict[str, Any] = {
    "version": "2026.1",
    "slot_names": list(FRAGMENT_SLOT_NAMES),
    "brand_series": {
        "Toyota": "Economy",
        "BMW": "Sport",
        "Ferrari": "Supercar",
        "Bugatti": "Hypercar",
    },
    "series": {
        "Economy": {"max_supply": 100, "refund_bonus": 500_000},
        "Sport": {"max_supply": 50, "refund_bonus": 1_000_000},
        "Supercar": {"max_supply": 20, "refund_bonus": 2_000_000},
        "Hypercar": {"max_supply": 10, "refund_bonus": 5_000_000},
    },
    "tiers": {
        "standard": {
            "cost": 50,
            "rewards": [
                {"weight": 50, "kind": "fragment", "brand": "Toyota", "rarity": "common"},
                {"weight": 30, "kind": "fragment", "brand": "BMW", "rarity": "common"},
                {"weight": 15, "kind": "item", "brand": "Toyota", "rarity": "common", "model_name": "Toyota Corolla"},
                {"weight": 5, "kind": "item", "brand": "BMW", "rarity": "rare", "model_name": "BMW M3"},
            ],
        },
        "premium": {
            "cost": 150,
            "rewards": [
                {"weight": 40, "kind": "fragment", "brand": "BMW", "rarity": "rare"},
                {"weight": 30, "kind": "fragment", "brand": "Ferrari", "rarity": "rare"},
                {"weight": 20, "kind": "item", "brand": "BMW", "rarity": "rare", "model_name": "BMW M4"},
                {"weight": 10, "kind": "item", "brand": "Ferrari", "rarity": "epic", "model_name": "Ferrari F8"},
            ],
        },
        "legendary": {
            "cost": 500,
            "rewards": [
                {"weight": 50, "kind": "fragment", "brand": "Ferrari", "rarity": "epic"},
                {"weight": 30, "kind": "fragment", "brand": "Bugatti", "rarity": "epic"},
                {"weight": 15, "kind": "item", "brand": "Ferrari", "rarity": "epic", "model_name": "Ferrari SF90"},
                {"weight": 5, "kind": "item", "brand": "Bugatti", "rarity": "legendary", "model_name": "Bugatti Chiron"},
            ],
        },
    },
    "assembly": {
        "Toyota": [
            {"weight": 60, "model_name": "Toyota Supra MK4", "rarity": "rare"},
            {"weight": 40, "model_name": "Toyota GR86", "rarity": "common"},
        ],
        "BMW": [
            {"weight": 70, "model_name": "BMW M3 CSL", "rarity": "rare"},
            {"weight": 30, "model_name": "BMW M5 CS", "rarity": "epic"},
        ],
        "Ferrari": [
            {"weight": 75, "model_name": "Ferrari 296 GTB", "rarity": "epic"},
            {"weight": 25, "model_name": "Ferrari LaFerrari", "rarity": "legendary"},
        ],
        "Bugatti": [
            {"weight": 80, "model_name": "Bugatti Divo", "rarity": "legendary"},
            {"weight": 20, "model_name": "Bugatti Centodieci", "rarity": "legendary"},
        ],
    },
    "buyback_prices": {
        "common": 150_000,
        "rare": 300_000,
        "epic": 600_000,
        "legendary": 1_200_000,
    },
}


def _reward_spec(raw: Mapping[str, Any], brand_series: Mapping[str, str], slot_count: int) -> RewardSpec:
    kind = raw.get("kind")
    if kind not in ("fragment", "item"):
        raise CatalogError(f"unknown reward kind {kind!r}")
    brand = raw.get("brand")
    if brand not in brand_series:
        raise CatalogError(f"reward references unknown brand {brand!r}")
    if kind == "item" and not raw.get("model_name"):
        raise CatalogError(f"item reward for {brand} has no model_name")
    slot = raw.get("slot")
    if slot is not None and not 0 <= int(slot) < slot_count:
        raise CatalogError(f"fragment slot {slot} out of range")
    return RewardSpec(
        kind=kind,
        brand=brand,
        series=brand_series[brand],
        rarity=str(raw.get("rarity", "common")).lower(),
        model_name=raw.get("model_name"),
        slot=int(slot) if slot is not None else None,
    )


def build_catalog(data: Mapping[str, Any]) -> Catalog:
    slot_names = tuple(data.get("slot_names") or FRAGMENT_SLOT_NAMES)
    brand_series = dict(data["brand_series"])
    series: Dict[str, SeriesDefaults] = {}
    for name, raw in data["series"].items():
        max_supply = int(raw["max_supply"])
        bonus = int(raw.get("refund_bonus", 0))
        if max_supply < 0 or bonus < 0:
            raise CatalogError(f"series {name} has negative supply or bonus")
        series[name] = SeriesDefaults(name=name, max_supply=max_supply, refund_bonus=bonus)
    for brand, series_name in brand_series.items():
        if series_name not in series:
            raise CatalogError(f"brand {brand} maps to unknown series {series_name}")

    tiers: Dict[str, Tier] = {}
    for name, raw in data["tiers"].items():
        cost = int(raw["cost"])
        if cost <= 0:
            raise CatalogError(f"tier {name} must cost more than zero")
        entries = tuple(
            (int(r["weight"]), _reward_spec(r, brand_series, len(slot_names))) for r in raw["rewards"]
        )
        tiers[name] = Tier(name=name, cost=cost, table=WeightedTable(entries))

    assembly: Dict[str, WeightedTable] = {}
    for brand, rows in data["assembly"].items():
        if brand not in brand_series:
            raise CatalogError(f"assembly table for unknown brand {brand}")
        entries = tuple(
            (
                int(r["weight"]),
                _reward_spec({**r, "kind": "item", "brand": brand}, brand_series, len(slot_names)),
            )
            for r in rows
        )
        assembly[brand] = WeightedTable(entries)

    buyback = {str(k).lower(): int(v) for k, v in data.get("buyback_prices", {}).items()}
    return Catalog(
        version=str(data.get("version", "unversioned")),
        tiers=MappingProxyType(tiers),
        assembly=MappingProxyType(assembly),
        brand_series=MappingProxyType(brand_series),
        series=MappingProxyType(series),
        buyback_prices=MappingProxyType(buyback),
        slot_names=slot_names,
    )


def load_catalog(path: Optional[str] = None) -> Catalog:
    if not path:
        return build_catalog(DEFAULT_CATALOG)
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    catalog = build_catalog(data)
    logger.info("catalog_loaded path=%s version=%s tiers=%s", path, catalog.version, sorted(catalog.tiers))
    return catalog


def tier_summary(catalog: Catalog) -> List[Dict[str, Any]]:
    out = []
    for tier in catalog.tiers.values():
        total = tier.table.total
        out.append(
            {
                "tier": tier.name,
                "cost": tier.cost,
                "rewards": [
                    {**spec.as_dict(), "probability": round(weight * 100.0 / total, 2)}
                    for weight, spec in tier.table.entries
                ],
            }
        )
    return out
