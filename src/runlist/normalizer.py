from __future__ import annotations

import math
import re
from typing import Any, Mapping
from uuid import uuid4

from runlist.aliases import MakeModelAliases
from runlist.auction_formats import parse_combined_lane_run
from runlist.config import NormalizerConfig
from runlist.data_models import (
    DAMAGE_SEVERITY_LEVELS,
    Accepted,
    ColumnMapping,
    NormalizeResult,
    RawRow,
    Rejected,
    VehicleRecord,
)

_NON_NUMERIC = re.compile(r"[^\d.\-]")
_WS = re.compile(r"\s+")

_DEFAULT_CONFIG = NormalizerConfig()


def clean_text(value: Any) -> str | None:
    if value is None:
        return None
    text = _WS.sub(" ", str(value)).strip()
    return text or None


def parse_int(value: Any) -> int | None:
    """Lenient integer parse: "$14,000.00" -> 14000, "42,000 mi" -> 42000."""
    text = clean_text(value)
    if text is None:
        return None
    cleaned = _NON_NUMERIC.sub("", text)
    if cleaned in ("", "-", ".", "-."):
        return None
    try:
        number = float(cleaned)
    except ValueError:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return int(round(number))


def parse_bool(value: Any, truthy: frozenset[str] = _DEFAULT_CONFIG.truthy_tokens) -> bool:
    text = clean_text(value)
    return text is not None and text.lower() in truthy


def parse_severity(value: Any) -> str | None:
    text = clean_text(value)
    if text is None:
        return None
    lowered = text.lower()
    return lowered if lowered in DAMAGE_SEVERITY_LEVELS else None


def _non_negative(value: int | None) -> int | None:
    return value if value is not None and value >= 0 else None


def _sane_year(value: int | None, config: NormalizerConfig) -> int | None:
    if value is None or not config.min_year <= value <= config.max_year:
        return None
    return value


def _upper(value: Any) -> str:
    return (clean_text(value) or "").upper()


def _usable_vin_info(vin_info: Mapping[str, Any] | None) -> bool:
    if not vin_info:
        return False
    return str(vin_info.get("decode_source", "")).startswith("nhtsa") and bool(
        vin_info.get("make") and vin_info.get("model")
    )


def normalize(
    raw_row: RawRow,
    mapping: ColumnMapping,
    *,
    runlist_id: str,
    config: NormalizerConfig = _DEFAULT_CONFIG,
    aliases: MakeModelAliases | None = None,
    vin_info: Mapping[str, Any] | None = None,
    row_number: int | None = None,
) -> NormalizeResult:
    """Coerce one raw row into a VehicleRecord, or reject it.

    Unusable optional cells are dropped to None; only an empty make or model
    rejects the row.
    """
    cells = {target: raw_row.get(header) for target, header in mapping.fields.items()}

    make = _upper(cells.get("make"))
    model = _upper(cells.get("model"))
    year = parse_int(cells.get("year"))

    if _usable_vin_info(vin_info):
        make = _upper(vin_info["make"])
        model = _upper(vin_info["model"])
        if int(vin_info.get("model_year") or 0) > 0:
            year = int(vin_info["model_year"])

    if aliases is not None and make:
        model = aliases.canonical_model(make, model) if model else model
        make = aliases.canonical_make(make)

    missing = tuple(name for name, value in (("make", make), ("model", model)) if not value)
    if missing:
        return Rejected(reason="MissingRequiredField", fields=missing, row_number=row_number)

    split_lane, split_run = parse_combined_lane_run(clean_text(cells.get("lane_run")))
    vin = clean_text(cells.get("vin"))

    vehicle = VehicleRecord(
        id=str(uuid4()),
        runlist_id=runlist_id,
        make=make,
        model=model,
        vin=vin.upper() if vin else None,
        trim=clean_text(cells.get("trim")),
        year=_sane_year(year, config),
        mileage=_non_negative(parse_int(cells.get("mileage"))),
        lane_number=clean_text(cells.get("lane_number")) or split_lane,
        run_number=clean_text(cells.get("run_number")) or split_run,
        price_estimate=_non_negative(parse_int(cells.get("price_estimate"))),
        damage_severity=parse_severity(cells.get("damage_severity")),
        accident_count=_non_negative(parse_int(cells.get("accident_count"))),
        owner_count=_non_negative(parse_int(cells.get("owner_count"))),
        leather=parse_bool(cells.get("leather"), config.truthy_tokens),
        sunroof=parse_bool(cells.get("sunroof"), config.truthy_tokens),
        structural_damage=parse_bool(cells.get("structural_damage"), config.truthy_tokens),
        damage_notes=clean_text(cells.get("damage_notes")),
        stock_number=clean_text(cells.get("stock_number")),
        color=clean_text(cells.get("color")),
        body_type=clean_text(cells.get("body_type")) or (clean_text(vin_info.get("body_type")) if vin_info else None),
        engine=clean_text(cells.get("engine")),
        transmission=clean_text(cells.get("transmission")),
        row_number=row_number,
        raw_data=dict(raw_row),
    )
    return Accepted(vehicle=vehicle)
