from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable

from runlist.config import MatchingConfig
from runlist.criteria_index import CriteriaIndex
from runlist.data_models import BuyBoxItem, Match, VehicleRecord, severity_rank

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG = MatchingConfig()


def _in_range(value: int | None, low: int | None, high: int | None, optimistic: bool) -> bool:
    if low is None and high is None:
        return True
    if value is None:
        return optimistic
    if low is not None and value < low:
        return False
    if high is not None and value > high:
        return False
    return True


def _under_cap(value: int | None, cap: int | None, optimistic: bool) -> bool:
    if cap is None:
        return True
    if value is None:
        # Unknown counts are read as zero under the optimistic policy.
        return optimistic
    return value <= cap


def _trim(vehicle: VehicleRecord, item: BuyBoxItem, optimistic: bool) -> bool:
    if item.trim is None or not item.trim.strip():
        return True
    if vehicle.trim is None:
        return optimistic
    return vehicle.trim.strip().casefold() == item.trim.strip().casefold()


def _year(vehicle: VehicleRecord, item: BuyBoxItem, optimistic: bool) -> bool:
    return _in_range(vehicle.year, item.year_min, item.year_max, optimistic)


def _mileage(vehicle: VehicleRecord, item: BuyBoxItem, optimistic: bool) -> bool:
    return _in_range(vehicle.mileage, item.mileage_min, item.mileage_max, optimistic)


def _price(vehicle: VehicleRecord, item: BuyBoxItem, optimistic: bool) -> bool:
    return _in_range(vehicle.price_estimate, item.price_min, item.price_max, optimistic)


def _structural_damage(vehicle: VehicleRecord, item: BuyBoxItem, optimistic: bool) -> bool:
    return item.structural_damage or not vehicle.structural_damage


def _accidents(vehicle: VehicleRecord, item: BuyBoxItem, optimistic: bool) -> bool:
    return _under_cap(vehicle.accident_count, item.max_accidents, optimistic)


def _owners(vehicle: VehicleRecord, item: BuyBoxItem, optimistic: bool) -> bool:
    return _under_cap(vehicle.owner_count, item.max_owners, optimistic)


def _damage_severity(vehicle: VehicleRecord, item: BuyBoxItem, optimistic: bool) -> bool:
    cap = severity_rank(item.damage_severity)
    if cap is None:
        return True
    rank = severity_rank(vehicle.damage_severity)
    if rank is None:
        return optimistic
    return rank <= cap


def _leather(vehicle: VehicleRecord, item: BuyBoxItem, optimistic: bool) -> bool:
    return not item.leather or vehicle.leather


def _sunroof(vehicle: VehicleRecord, item: BuyBoxItem, optimistic: bool) -> bool:
    return not item.sunroof or vehicle.sunroof


Predicate = Callable[[VehicleRecord, BuyBoxItem, bool], bool]

PREDICATES: tuple[tuple[str, Predicate], ...] = (
    ("trim", _trim),
    ("year", _year),
    ("mileage", _mileage),
    ("price_estimate", _price),
    ("structural_damage", _structural_damage),
    ("accident_count", _accidents),
    ("owner_count", _owners),
    ("damage_severity", _damage_severity),
    ("leather", _leather),
    ("sunroof", _sunroof),
)


def failed_predicates(
    vehicle: VehicleRecord, item: BuyBoxItem, config: MatchingConfig = _DEFAULT_CONFIG
) -> list[str]:
    optimistic = config.unknown_field_policy == "optimistic"
    return [name for name, predicate in PREDICATES if not predicate(vehicle, item, optimistic)]


def is_match(vehicle: VehicleRecord, item: BuyBoxItem, config: MatchingConfig = _DEFAULT_CONFIG) -> bool:
    optimistic = config.unknown_field_policy == "optimistic"
    return all(predicate(vehicle, item, optimistic) for _, predicate in PREDICATES)


def match_vehicles(
    vehicles: Iterable[VehicleRecord],
    index: CriteriaIndex,
    *,
    config: MatchingConfig = _DEFAULT_CONFIG,
    matched_at: datetime | None = None,
) -> list[Match]:
    """Evaluate every vehicle against its (make, model) candidates.

    The result holds at most one Match per (vehicle_id, buy_box_item_id).
    """
    if index.is_empty:
        logger.info("No active buy box items; skipping match evaluation")
        return []

    stamp = matched_at or datetime.now(timezone.utc)
    found: dict[tuple[str, str], Match] = {}
    evaluated = 0
    for vehicle in vehicles:
        for item in index.candidates_for(vehicle):
            evaluated += 1
            if (vehicle.id, item.id) in found or not is_match(vehicle, item, config):
                continue
            found[(vehicle.id, item.id)] = Match(
                vehicle_id=vehicle.id,
                buy_box_item_id=item.id,
                dealer_id=item.dealer_id,
                runlist_id=vehicle.runlist_id,
                matched_at=stamp,
            )
    logger.debug("Evaluated %d candidate pairs, %d matched", evaluated, len(found))
    return list(found.values())
