from __future__ import annotations

import logging
from collections import Counter
from dataclasses import asdict

from runlist.config import MatchingConfig
from runlist.criteria_index import CriteriaIndex
from runlist.data_models import BuyBoxItem, Match, VehicleRecord
from runlist.errors import RunlistNotFound
from runlist.matching import match_vehicles
from service.messaging import MATCH_RESULTS_TOPIC, KafkaBus
from service.storage import PostgresStore, RedisCache

logger = logging.getLogger(__name__)


class MatchingService:
    def __init__(
        self,
        store: PostgresStore,
        cache: RedisCache,
        bus: KafkaBus,
        config: MatchingConfig | None = None,
        lock_timeout_seconds: float = 60.0,
    ) -> None:
        self.store = store
        self.cache = cache
        self.bus = bus
        self.config = config or MatchingConfig()
        self.lock_timeout_seconds = lock_timeout_seconds

    async def build_index(self) -> CriteriaIndex:
        rows = await self.store.fetch_active_buy_box_items()
        return CriteriaIndex.build(BuyBoxItem.from_row(r) for r in rows)

    async def match_runlist(self, runlist_id: str) -> list[Match]:
        """Recompute and replace every match for one runlist.

        Running it twice, or concurrently, leaves the same match set.
        """
        runlist = await self.store.get_runlist(runlist_id)
        if runlist is None:
            raise RunlistNotFound(runlist_id)

        async with self.cache.lock(f"match:{runlist_id}", timeout=self.lock_timeout_seconds):
            index = await self.build_index()
            vehicles = [VehicleRecord.from_row(r) for r in await self.store.fetch_vehicles(runlist_id)]
            matches = match_vehicles(vehicles, index, config=self.config)
            await self.store.replace_matches(runlist_id, [asdict(m) for m in matches])
            await self.store.update_runlist(runlist_id, match_count=len(matches))

        logger.info(
            "Matched %d vehicles against %d buy box items from %d dealers: %d matches",
            len(vehicles), len(index), len(index.dealer_ids()), len(matches),
        )
        await self.bus.publish(
            MATCH_RESULTS_TOPIC,
            {
                "runlist_id": runlist_id,
                "auction_id": runlist["auction_id"],
                "match_count": len(matches),
                "matched_vehicle_count": len({m.vehicle_id for m in matches}),
                "matches_by_dealer": dict(Counter(m.dealer_id for m in matches)),
            },
            key=runlist_id,
        )
        return matches

    async def matches_for(self, runlist_id: str) -> list[Match]:
        return [Match.from_row(r) for r in await self.store.fetch_matches(runlist_id)]
