from __future__ import annotations

import hashlib
import re
from typing import Iterable

from runlist.data_models import ColumnMapping

_WS = re.compile(r"\s+")

# Header spellings seen across auction exports, compared after normalize_header().
HEADER_ALIASES: dict[str, tuple[str, ...]] = {
    "vin": ("vin", "vin number", "vin_number", "vinnumber", "vin #", "serial"),
    "make": ("make", "mfr", "manufacturer", "vehicle make"),
    "model": ("model", "vehicle model", "series"),
    "year": ("year", "yr", "model year", "model_year", "my"),
    "trim": ("trim", "trim level", "style"),
    "mileage": ("mileage", "miles", "odometer", "odo", "odometer reading"),
    "lane_number": ("lane", "lane number", "lane_number", "lane_num", "lanenumber", "lane #"),
    "run_number": ("run", "run number", "run_number", "run_num", "runnumber", "run #", "order"),
    "price_estimate": ("price", "price estimate", "estimate", "mmr", "est price", "auction price"),
    "damage_notes": ("damage", "damage notes", "announcements", "condition notes", "notes"),
    "damage_severity": ("damage severity", "severity", "damage level"),
    "accident_count": ("accidents", "accident count", "# accidents"),
    "owner_count": ("owners", "owner count", "# owners"),
    "structural_damage": ("structural damage", "frame damage", "structural"),
    "leather": ("leather", "leather seats"),
    "sunroof": ("sunroof", "moonroof", "sun roof"),
    "stock_number": ("stock", "stock number", "stock #", "stock_number"),
    "color": ("color", "exterior color", "ext color"),
    "body_type": ("body", "body type", "body style"),
    "engine": ("engine", "engine type"),
    "transmission": ("transmission", "trans"),
}


def normalize_header(header: str) -> str:
    return _WS.sub(" ", str(header).strip().lower())


def header_signature(headers: Iterable[str]) -> str:
    """Order- and case-independent digest of a file's header set."""
    names = sorted({normalize_header(h) for h in headers if normalize_header(h)})
    return hashlib.sha256("\x1f".join(names).encode("utf-8")).hexdigest()


def suggest_mapping(headers: list[str], previous: ColumnMapping | None = None) -> dict[str, str]:
    """Best-effort canonical field -> raw header guesses for the mapping UI.

    Assignments from the auction's previous mapping win when their raw header
    exists in this file; remaining fields are guessed from HEADER_ALIASES.
    """
    by_normalized = {normalize_header(h): h for h in headers}
    suggestion: dict[str, str] = {}
    used: set[str] = set()

    if previous is not None:
        for target, raw in previous.fields.items():
            actual = by_normalized.get(normalize_header(raw))
            if actual is not None:
                suggestion[target] = actual
                used.add(actual)

    for target, aliases in HEADER_ALIASES.items():
        if target in suggestion:
            continue
        for alias in aliases:
            actual = by_normalized.get(alias)
            if actual is not None and actual not in used:
                suggestion[target] = actual
                used.add(actual)
                break
    return suggestion


def bind_to_headers(fields: dict[str, str], headers: list[str]) -> tuple[dict[str, str], list[str]]:
    """Re-point a mapping's raw headers at this file's spelling of them.

    Returns the bound mapping and the raw headers with no counterpart.
    """
    by_normalized = {normalize_header(h): h for h in headers}
    bound: dict[str, str] = {}
    missing: list[str] = []
    for target, raw in fields.items():
        actual = raw if raw in headers else by_normalized.get(normalize_header(raw))
        if actual is None:
            missing.append(raw)
        else:
            bound[target] = actual
    return bound, missing
