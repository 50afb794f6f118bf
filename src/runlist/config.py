from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Literal

UnknownFieldPolicy = Literal["optimistic", "strict"]


@dataclass(frozen=True)
class NormalizerConfig:
    min_year: int = 1900
    max_future_years: int = 2
    truthy_tokens: frozenset[str] = frozenset({"yes", "y", "1", "true"})
    # None means the current calendar year at check time.
    reference_year: int | None = None

    @property
    def max_year(self) -> int:
        year = self.reference_year if self.reference_year is not None else date.today().year
        return year + self.max_future_years


@dataclass(frozen=True)
class MatchingConfig:
    # "optimistic": unknown vehicle values never disqualify a candidate.
    # "strict": unknown values fail any predicate the buy box constrains.
    unknown_field_policy: UnknownFieldPolicy = "optimistic"
