from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from runlist.data_models import ColumnMapping
from service.storage import PostgresStore, RedisCache

logger = logging.getLogger(__name__)


def _cache_key(auction_id: str, header_signature: str) -> str:
    return f"column_mapping:{auction_id}:{header_signature}"


def _to_cache(mapping: ColumnMapping) -> dict[str, Any]:
    return {
        "id": mapping.id,
        "auction_id": mapping.auction_id,
        "header_signature": mapping.header_signature,
        "version": mapping.version,
        "name": mapping.name,
        "mapping_json": dict(mapping.fields),
        "created_at": mapping.created_at.isoformat() if mapping.created_at else None,
    }


def _from_cache(payload: dict[str, Any]) -> ColumnMapping:
    created_at = payload.get("created_at")
    return ColumnMapping.from_row(
        {**payload, "created_at": datetime.fromisoformat(created_at) if created_at else None}
    )


class ColumnMappingStore:
    """Versioned column mappings keyed by (auction_id, header_signature).

    Saving never overwrites: each save appends version N+1, and the highest
    version is the one resolve() returns.
    """

    def __init__(self, store: PostgresStore, cache: RedisCache, ttl_seconds: int = 86_400) -> None:
        self.store = store
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def resolve(self, auction_id: str, header_signature: str) -> ColumnMapping | None:
        key = _cache_key(auction_id, header_signature)
        cached = await self.cache.get_json(key)
        if cached is not None:
            return _from_cache(cached)

        row = await self.store.fetch_latest_column_mapping(auction_id, header_signature)
        if row is None:
            return None
        mapping = ColumnMapping.from_row(row)
        await self.cache.set_json(key, _to_cache(mapping), ttl_seconds=self.ttl_seconds)
        return mapping

    async def save(
        self,
        auction_id: str,
        header_signature: str,
        fields: dict[str, str],
        name: str = "",
    ) -> ColumnMapping:
        row = await self.store.insert_column_mapping(
            auction_id=auction_id,
            header_signature=header_signature,
            mapping_json=fields,
            name=name,
        )
        mapping = ColumnMapping.from_row(row)
        await self.cache.set_json(
            _cache_key(auction_id, header_signature), _to_cache(mapping), ttl_seconds=self.ttl_seconds
        )
        logger.info(
            "Saved column mapping v%d for auction %s (%d fields)",
            mapping.version, auction_id, len(fields),
        )
        return mapping

    async def history(self, auction_id: str, limit: int = 50) -> list[ColumnMapping]:
        rows = await self.store.fetch_column_mappings(auction_id, limit=limit)
        return [ColumnMapping.from_row(r) for r in rows]

    async def latest_for_auction(self, auction_id: str) -> ColumnMapping | None:
        """Most recently saved mapping for any header layout of this auction."""
        recent = await self.history(auction_id, limit=1)
        return recent[0] if recent else None
