from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping


def _key(value: str) -> str:
    return " ".join(value.split()).upper()


@dataclass
class MakeModelAliases:
    """Maps auction spellings of make/model onto canonical names.

    Auction-specific aliases take precedence over general ones (auction_id
    None). Model aliases are scoped by canonical make.
    """

    auction_id: str | None = None
    _makes: dict[str, str] = field(default_factory=dict)
    _models: dict[tuple[str, str], str] = field(default_factory=dict)

    @classmethod
    def from_rows(
        cls,
        make_rows: Iterable[Mapping[str, Any]],
        model_rows: Iterable[Mapping[str, Any]],
        auction_id: str | None = None,
    ) -> "MakeModelAliases":
        table = cls(auction_id=auction_id)
        # General rows first so auction-specific rows overwrite them.
        for row in sorted(make_rows, key=lambda r: r.get("auction_id") is not None):
            if row.get("auction_id") not in (None, auction_id):
                continue
            table._makes[_key(row["alias"])] = _key(row["canonical_make"])
        for row in sorted(model_rows, key=lambda r: r.get("auction_id") is not None):
            if row.get("auction_id") not in (None, auction_id):
                continue
            table._models[(_key(row["make"]), _key(row["alias"]))] = _key(row["canonical_model"])
        return table

    def __len__(self) -> int:
        return len(self._makes) + len(self._models)

    def canonical_make(self, make: str) -> str:
        return self._makes.get(_key(make), _key(make))

    def canonical_model(self, make: str, model: str) -> str:
        return self._models.get((self.canonical_make(make), _key(model)), _key(model))
