from __future__ import annotations

from collections import defaultdict
from typing import Iterable

from runlist.data_models import BuyBoxItem, VehicleRecord


def _index_key(make: str, model: str) -> tuple[str, str]:
    return (" ".join(make.split()).upper(), " ".join(model.split()).upper())


class CriteriaIndex:
    """Active buy-box items bucketed by (make, model).

    Trim is not part of the key. A None trim is a wildcard, so trim is
    evaluated per candidate by the matcher.
    """

    def __init__(self) -> None:
        self._buckets: dict[tuple[str, str], list[BuyBoxItem]] = defaultdict(list)
        self._size = 0

    @classmethod
    def build(cls, items: Iterable[BuyBoxItem]) -> "CriteriaIndex":
        index = cls()
        for item in items:
            if not item.is_active:
                continue
            index._buckets[_index_key(item.make, item.model)].append(item)
            index._size += 1
        return index

    def __len__(self) -> int:
        return self._size

    @property
    def is_empty(self) -> bool:
        return self._size == 0

    def candidates_for(self, vehicle: VehicleRecord) -> list[BuyBoxItem]:
        return list(self._buckets.get(_index_key(vehicle.make, vehicle.model), ()))

    def dealer_ids(self) -> set[str]:
        return {item.dealer_id for bucket in self._buckets.values() for item in bucket}
