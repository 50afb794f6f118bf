from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal, Mapping, Union

# One file row: raw header -> raw cell text, in file column order.
RawRow = dict[str, str]

DamageSeverity = Literal["none", "minor", "moderate", "severe"]
DAMAGE_SEVERITY_LEVELS: tuple[str, ...] = ("none", "minor", "moderate", "severe")

RejectionReason = Literal["MissingRequiredField"]

CANONICAL_FIELDS: tuple[str, ...] = (
    "vin",
    "make",
    "model",
    "year",
    "trim",
    "mileage",
    "lane_number",
    "run_number",
    "lane_run",
    "price_estimate",
    "damage_notes",
    "damage_severity",
    "accident_count",
    "owner_count",
    "structural_damage",
    "leather",
    "sunroof",
    "stock_number",
    "color",
    "body_type",
    "engine",
    "transmission",
)


def severity_rank(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return DAMAGE_SEVERITY_LEVELS.index(value.strip().lower())
    except ValueError:
        return None


def _opt_int(value: Any) -> int | None:
    return None if value is None else int(value)


@dataclass(frozen=True)
class ColumnMapping:
    auction_id: str
    header_signature: str
    fields: dict[str, str]
    version: int = 1
    id: str = ""
    name: str = ""
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ColumnMapping":
        return cls(
            id=row["id"],
            auction_id=row["auction_id"],
            header_signature=row["header_signature"],
            fields=dict(row["mapping_json"] or {}),
            version=int(row["version"]),
            name=row.get("name") or "",
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        if self.created_at is not None:
            out["created_at"] = self.created_at.isoformat()
        return out


@dataclass(frozen=True)
class VehicleRecord:
    id: str
    runlist_id: str
    make: str
    model: str
    vin: str | None = None
    trim: str | None = None
    year: int | None = None
    mileage: int | None = None
    lane_number: str | None = None
    run_number: str | None = None
    price_estimate: int | None = None
    damage_severity: DamageSeverity | None = None
    accident_count: int | None = None
    owner_count: int | None = None
    leather: bool = False
    sunroof: bool = False
    structural_damage: bool = False
    damage_notes: str | None = None
    stock_number: str | None = None
    color: str | None = None
    body_type: str | None = None
    engine: str | None = None
    transmission: str | None = None
    row_number: int | None = None
    raw_data: RawRow = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "VehicleRecord":
        return cls(
            id=row["id"],
            runlist_id=row["runlist_id"],
            make=row["make"],
            model=row["model"],
            vin=row.get("vin"),
            trim=row.get("trim"),
            year=_opt_int(row.get("year")),
            mileage=_opt_int(row.get("mileage")),
            lane_number=row.get("lane_number"),
            run_number=row.get("run_number"),
            price_estimate=_opt_int(row.get("price_estimate")),
            damage_severity=row.get("damage_severity"),
            accident_count=_opt_int(row.get("accident_count")),
            owner_count=_opt_int(row.get("owner_count")),
            leather=bool(row.get("leather", False)),
            sunroof=bool(row.get("sunroof", False)),
            structural_damage=bool(row.get("structural_damage", False)),
            damage_notes=row.get("damage_notes"),
            stock_number=row.get("stock_number"),
            color=row.get("color"),
            body_type=row.get("body_type"),
            engine=row.get("engine"),
            transmission=row.get("transmission"),
            row_number=_opt_int(row.get("row_number")),
            raw_data=dict(row.get("raw_data") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BuyBoxItem:
    id: str
    dealer_id: str
    make: str
    model: str
    trim: str | None = None
    year_min: int | None = None
    year_max: int | None = None
    mileage_min: int | None = None
    mileage_max: int | None = None
    price_min: int | None = None
    price_max: int | None = None
    max_accidents: int | None = None
    max_owners: int | None = None
    damage_severity: DamageSeverity | None = None
    structural_damage: bool = False
    leather: bool = False
    sunroof: bool = False
    status: str = "active"

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "BuyBoxItem":
        return cls(
            id=row["id"],
            dealer_id=row["dealer_id"],
            make=row["make"],
            model=row["model"],
            trim=row.get("trim"),
            year_min=_opt_int(row.get("year_min")),
            year_max=_opt_int(row.get("year_max")),
            mileage_min=_opt_int(row.get("mileage_min")),
            mileage_max=_opt_int(row.get("mileage_max")),
            price_min=_opt_int(row.get("price_min")),
            price_max=_opt_int(row.get("price_max")),
            max_accidents=_opt_int(row.get("max_accidents")),
            max_owners=_opt_int(row.get("max_owners")),
            damage_severity=row.get("damage_severity"),
            structural_damage=bool(row.get("structural_damage", False)),
            leather=bool(row.get("leather", False)),
            sunroof=bool(row.get("sunroof", False)),
            status=row.get("status") or "active",
        )


@dataclass(frozen=True)
class Match:
    vehicle_id: str
    buy_box_item_id: str
    dealer_id: str
    runlist_id: str
    matched_at: datetime

    @property
    def key(self) -> tuple[str, str]:
        return (self.vehicle_id, self.buy_box_item_id)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Match":
        return cls(
            vehicle_id=row["vehicle_id"],
            buy_box_item_id=row["buy_box_item_id"],
            dealer_id=row["dealer_id"],
            runlist_id=row["runlist_id"],
            matched_at=row["matched_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["matched_at"] = self.matched_at.isoformat()
        return out


@dataclass(frozen=True)
class Accepted:
    vehicle: VehicleRecord


@dataclass(frozen=True)
class Rejected:
    reason: RejectionReason
    fields: tuple[str, ...] = ()
    row_number: int | None = None


NormalizeResult = Union[Accepted, Rejected]
