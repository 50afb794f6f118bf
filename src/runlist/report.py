from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable

from runlist.data_models import Match, Rejected


@dataclass
class BatchReport:
    runlist_id: str
    auction_id: str
    source_row_count: int = 0
    vehicle_count: int = 0
    match_count: int = 0
    matched_vehicle_count: int = 0
    matches_by_dealer: dict[str, int] = field(default_factory=dict)
    rejections: list[Rejected] = field(default_factory=list)

    @property
    def skipped_count(self) -> int:
        return len(self.rejections)

    def record_matches(self, matches: Iterable[Match]) -> None:
        matches = list(matches)
        self.match_count = len(matches)
        self.matched_vehicle_count = len({m.vehicle_id for m in matches})
        self.matches_by_dealer = dict(Counter(m.dealer_id for m in matches))

    def to_dict(self) -> dict[str, Any]:
        return {
            "runlist_id": self.runlist_id,
            "auction_id": self.auction_id,
            "source_row_count": self.source_row_count,
            "vehicle_count": self.vehicle_count,
            "skipped_count": self.skipped_count,
            "match_count": self.match_count,
            "matched_vehicle_count": self.matched_vehicle_count,
            "matches_by_dealer": dict(self.matches_by_dealer),
            "rejections": [
                {"row_number": r.row_number, "reason": r.reason, "fields": list(r.fields)}
                for r in self.rejections
            ],
        }
