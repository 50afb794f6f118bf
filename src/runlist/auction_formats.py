from __future__ import annotations

import re

_COMBINED_LANE_RUN = re.compile(r"^([A-Z]+)-(\d+)$")


def parse_combined_lane_run(value: str | None) -> tuple[str | None, str | None]:
    """Split an Auto Nation style "BB-0123" cell into ("BB", "123")."""
    if not value:
        return None, None
    found = _COMBINED_LANE_RUN.match(value.strip().upper())
    if found is None:
        return None, None
    return found.group(1), str(int(found.group(2)))


def format_lane_run(lane: str | None, run: str | None, combined: bool = False) -> str:
    if not lane and not run:
        return "N/A"
    if combined:
        return f"{lane or 'X'}-{(run or '0').zfill(4)}"
    if lane and run:
        return f"Lane {lane} / Run {run}"
    return f"Lane {lane}" if lane else f"Run {run}"
