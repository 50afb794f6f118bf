from __future__ import annotations

import asyncio
import json
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    delete,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

try:
    import redis.asyncio as redis
except ModuleNotFoundError:  # pragma: no cover
    redis = None


metadata = MetaData()

runlists_table = Table(
    "runlists",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("auction_id", String(64), nullable=False, index=True),
    Column("filename", String(255), nullable=False),
    Column("file_path", String(512), nullable=True),
    Column("file_format", String(16), nullable=False, default="csv"),
    Column("header_signature", String(64), nullable=False),
    Column("headers_json", JSON, nullable=False, default=list),
    Column("status", String(32), nullable=False, default="pending"),
    Column("inspection_date", DateTime(timezone=True), nullable=True),
    Column("mapping_id", String(36), nullable=True),
    Column("source_row_count", Integer, nullable=False, default=0),
    Column("vehicle_count", Integer, nullable=False, default=0),
    Column("skipped_count", Integer, nullable=False, default=0),
    Column("match_count", Integer, nullable=False, default=0),
    Column("rejections_json", JSON, nullable=False, default=list),
    Column("metadata_json", JSON, nullable=False, default=dict),
    Column("uploaded_at", DateTime(timezone=True), nullable=False),
    Column("processed_at", DateTime(timezone=True), nullable=True),
)

column_mappings_table = Table(
    "column_mappings",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("auction_id", String(64), nullable=False, index=True),
    Column("header_signature", String(64), nullable=False, index=True),
    Column("version", Integer, nullable=False),
    Column("name", String(255), nullable=False, default=""),
    Column("mapping_json", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("auction_id", "header_signature", "version", name="uq_column_mapping_version"),
)

vehicles_table = Table(
    "vehicles",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("runlist_id", String(36), nullable=False, index=True),
    Column("row_number", Integer, nullable=True),
    Column("vin", String(32), nullable=True, index=True),
    Column("make", String(64), nullable=False),
    Column("model", String(64), nullable=False),
    Column("trim", String(64), nullable=True),
    Column("year", Integer, nullable=True),
    Column("mileage", Integer, nullable=True),
    Column("lane_number", String(32), nullable=True),
    Column("run_number", String(32), nullable=True),
    Column("price_estimate", Integer, nullable=True),
    Column("damage_severity", String(16), nullable=True),
    Column("accident_count", Integer, nullable=True),
    Column("owner_count", Integer, nullable=True),
    Column("leather", Boolean, nullable=False, default=False),
    Column("sunroof", Boolean, nullable=False, default=False),
    Column("structural_damage", Boolean, nullable=False, default=False),
    Column("damage_notes", String(2048), nullable=True),
    Column("stock_number", String(64), nullable=True),
    Column("color", String(64), nullable=True),
    Column("body_type", String(64), nullable=True),
    Column("engine", String(128), nullable=True),
    Column("transmission", String(64), nullable=True),
    Column("raw_data", JSON, nullable=False, default=dict),
)

buy_box_items_table = Table(
    "buy_box_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("dealer_id", String(64), nullable=False, index=True),
    Column("make", String(64), nullable=False),
    Column("model", String(64), nullable=False),
    Column("trim", String(64), nullable=True),
    Column("year_min", Integer, nullable=True),
    Column("year_max", Integer, nullable=True),
    Column("mileage_min", Integer, nullable=True),
    Column("mileage_max", Integer, nullable=True),
    Column("price_min", Integer, nullable=True),
    Column("price_max", Integer, nullable=True),
    Column("max_accidents", Integer, nullable=True),
    Column("max_owners", Integer, nullable=True),
    Column("damage_severity", String(16), nullable=True),
    Column("structural_damage", Boolean, nullable=False, default=False),
    Column("leather", Boolean, nullable=False, default=False),
    Column("sunroof", Boolean, nullable=False, default=False),
    Column("status", String(16), nullable=False, default="active", index=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

matches_table = Table(
    "buy_box_matches",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("runlist_id", String(36), nullable=False, index=True),
    Column("vehicle_id", String(36), nullable=False),
    Column("buy_box_item_id", String(36), nullable=False),
    Column("dealer_id", String(64), nullable=False, index=True),
    Column("matched_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("vehicle_id", "buy_box_item_id", name="uq_match_vehicle_item"),
)

make_aliases_table = Table(
    "vehicle_make_aliases",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("canonical_make", String(64), nullable=False),
    Column("alias", String(64), nullable=False),
    Column("auction_id", String(64), nullable=True),
)

model_aliases_table = Table(
    "vehicle_model_aliases",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("make", String(64), nullable=False),
    Column("canonical_model", String(64), nullable=False),
    Column("alias", String(64), nullable=False),
    Column("auction_id", String(64), nullable=True),
)

_BUY_BOX_COLUMNS = [c.name for c in buy_box_items_table.columns if c.name not in ("id", "created_at")]
_VEHICLE_COLUMNS = [c.name for c in vehicles_table.columns]


class RedisCache:
    def __init__(self, redis_url: str, namespace: str = "runlist") -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self._client: Any = None
        self._mem: dict[str, str] = {}
        self._expiry: dict[str, float] = {}
        # name -> (lock, tasks holding or waiting on it)
        self._local_locks: dict[str, tuple[asyncio.Lock, int]] = {}

    def _build_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def connect(self) -> None:
        if redis is None:
            return
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await asyncio.wait_for(self._client.ping(), timeout=0.75)
        except Exception:
            self._client = None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await asyncio.wait_for(self._client.ping(), timeout=0.75))
        except Exception:
            return False

    async def get_json(self, key: str) -> dict[str, Any] | None:
        full_key = self._build_key(key)
        if self._client is not None:
            try:
                raw = await self._client.get(full_key)
                return None if raw is None else json.loads(raw)
            except Exception:
                return None
        if full_key in self._expiry and time.monotonic() > self._expiry[full_key]:
            self._mem.pop(full_key, None)
            self._expiry.pop(full_key, None)
            return None
        raw = self._mem.get(full_key)
        return None if raw is None else json.loads(raw)

    async def set_json(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        full_key = self._build_key(key)
        payload = json.dumps(value, default=str)
        if self._client is not None:
            try:
                await self._client.set(full_key, payload, ex=ttl_seconds)
                return
            except Exception:
                pass
        self._mem[full_key] = payload
        self._expiry[full_key] = time.monotonic() + ttl_seconds

    def lock(self, name: str, timeout: float = 60.0) -> Any:
        """Async context manager serializing work on `name`.

        Uses a Redis lock when connected so separate workers exclude each
        other; otherwise a process-local asyncio.Lock.
        """
        if self._client is not None:
            return self._client.lock(self._build_key(f"lock:{name}"), timeout=timeout, blocking_timeout=timeout)
        return self._local_lock(name)

    @asynccontextmanager
    async def _local_lock(self, name: str) -> AsyncIterator[None]:
        lock, holders = self._local_locks.get(name, (asyncio.Lock(), 0))
        self._local_locks[name] = (lock, holders + 1)
        try:
            async with lock:
                yield
        finally:
            lock, holders = self._local_locks[name]
            if holders == 1:
                del self._local_locks[name]
            else:
                self._local_locks[name] = (lock, holders - 1)


class PostgresStore:
    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.engine: AsyncEngine | None = None
        self._fallback_mode = False
        self._mem_runlists: list[dict[str, Any]] = []
        self._mem_column_mappings: list[dict[str, Any]] = []
        self._mem_vehicles: list[dict[str, Any]] = []
        self._mem_buy_box_items: list[dict[str, Any]] = []
        self._mem_matches: list[dict[str, Any]] = []
        self._mem_make_aliases: list[dict[str, Any]] = []
        self._mem_model_aliases: list[dict[str, Any]] = []

    async def connect(self) -> None:
        try:
            self.engine = create_async_engine(self.dsn, future=True)
            await self.init_schema()
        except Exception:
            self._fallback_mode = True
            self.engine = None

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def ping(self) -> bool:
        if self.engine is None:
            return False
        if self._fallback_mode:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(select(1))
            return True
        except Exception:
            return False

    async def init_schema(self) -> None:
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    # ── Runlists ────────────────────────────────────────────────────

    async def insert_runlist(self, record: dict[str, Any]) -> str:
        runlist_id = record.get("id") or str(uuid4())
        row = {
            "id": runlist_id,
            "auction_id": str(record["auction_id"]),
            "filename": record["filename"],
            "file_path": record.get("file_path"),
            "file_format": record.get("file_format", "csv"),
            "header_signature": record["header_signature"],
            "headers_json": list(record.get("headers_json", [])),
            "status": record.get("status", "pending"),
            "inspection_date": record.get("inspection_date"),
            "mapping_id": record.get("mapping_id"),
            "source_row_count": 0,
            "vehicle_count": 0,
            "skipped_count": 0,
            "match_count": 0,
            "rejections_json": [],
            "metadata_json": record.get("metadata_json", {}),
            "uploaded_at": datetime.now(timezone.utc),
            "processed_at": None,
        }
        if self.engine is None:
            self._mem_runlists.append(row)
            return runlist_id
        async with self.engine.begin() as conn:
            await conn.execute(insert(runlists_table).values(**row))
        return runlist_id

    async def update_runlist(self, runlist_id: str, **values: Any) -> None:
        if self.engine is None:
            for row in self._mem_runlists:
                if row["id"] == runlist_id:
                    row.update(values)
            return
        async with self.engine.begin() as conn:
            await conn.execute(
                update(runlists_table).where(runlists_table.c.id == runlist_id).values(**values)
            )

    async def get_runlist(self, runlist_id: str) -> dict[str, Any] | None:
        if self.engine is None:
            for row in self._mem_runlists:
                if row["id"] == runlist_id:
                    return dict(row)
            return None
        stmt = select(runlists_table).where(runlists_table.c.id == runlist_id)
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        return dict(row._mapping) if row else None

    # ── Column mappings ─────────────────────────────────────────────

    async def insert_column_mapping(
        self,
        *,
        auction_id: str,
        header_signature: str,
        mapping_json: dict[str, str],
        name: str = "",
    ) -> dict[str, Any]:
        row = {
            "id": str(uuid4()),
            "auction_id": str(auction_id),
            "header_signature": header_signature,
            "name": name,
            "mapping_json": dict(mapping_json),
            "created_at": datetime.now(timezone.utc),
        }
        if self.engine is None:
            versions = [
                m["version"] for m in self._mem_column_mappings
                if m["auction_id"] == row["auction_id"] and m["header_signature"] == header_signature
            ]
            row["version"] = max(versions, default=0) + 1
            self._mem_column_mappings.append(row)
            return dict(row)
        async with self.engine.begin() as conn:
            current = (
                await conn.execute(
                    select(column_mappings_table.c.version)
                    .where(column_mappings_table.c.auction_id == row["auction_id"])
                    .where(column_mappings_table.c.header_signature == header_signature)
                    .order_by(column_mappings_table.c.version.desc())
                    .limit(1)
                )
            ).scalar()
            row["version"] = (current or 0) + 1
            await conn.execute(insert(column_mappings_table).values(**row))
        return row

    async def fetch_latest_column_mapping(self, auction_id: str, header_signature: str) -> dict[str, Any] | None:
        if self.engine is None:
            candidates = [
                m for m in self._mem_column_mappings
                if m["auction_id"] == str(auction_id) and m["header_signature"] == header_signature
            ]
            return dict(max(candidates, key=lambda m: m["version"])) if candidates else None
        stmt = (
            select(column_mappings_table)
            .where(column_mappings_table.c.auction_id == str(auction_id))
            .where(column_mappings_table.c.header_signature == header_signature)
            .order_by(column_mappings_table.c.version.desc())
            .limit(1)
        )
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        return dict(row._mapping) if row else None

    async def fetch_column_mappings(self, auction_id: str, limit: int = 50) -> list[dict[str, Any]]:
        if self.engine is None:
            rows = [
                (m["created_at"], pos, m) for pos, m in enumerate(self._mem_column_mappings)
                if m["auction_id"] == str(auction_id)
            ]
            rows.sort(key=lambda r: r[:2], reverse=True)
            return [dict(m) for _, _, m in rows[:limit]]
        stmt = (
            select(column_mappings_table)
            .where(column_mappings_table.c.auction_id == str(auction_id))
            .order_by(column_mappings_table.c.created_at.desc(), column_mappings_table.c.version.desc())
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    # ── Vehicles ────────────────────────────────────────────────────

    async def insert_vehicles(self, records: list[dict[str, Any]]) -> int:
        if not records:
            return 0
        rows = [{k: r.get(k) for k in _VEHICLE_COLUMNS} for r in records]
        if self.engine is None:
            self._mem_vehicles.extend(rows)
            return len(rows)
        async with self.engine.begin() as conn:
            await conn.execute(insert(vehicles_table), rows)
        return len(rows)

    async def fetch_vehicles(self, runlist_id: str) -> list[dict[str, Any]]:
        if self.engine is None:
            rows = [dict(v) for v in self._mem_vehicles if v["runlist_id"] == runlist_id]
            return sorted(rows, key=lambda v: v.get("row_number") or 0)
        stmt = (
            select(vehicles_table)
            .where(vehicles_table.c.runlist_id == runlist_id)
            .order_by(vehicles_table.c.row_number)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    async def delete_vehicles(self, runlist_id: str) -> None:
        if self.engine is None:
            self._mem_vehicles = [v for v in self._mem_vehicles if v["runlist_id"] != runlist_id]
            self._mem_matches = [m for m in self._mem_matches if m["runlist_id"] != runlist_id]
            return
        async with self.engine.begin() as conn:
            await conn.execute(delete(matches_table).where(matches_table.c.runlist_id == runlist_id))
            await conn.execute(delete(vehicles_table).where(vehicles_table.c.runlist_id == runlist_id))

    # ── Buy box items (owned by the dealer surface, read here) ──────

    async def insert_buy_box_item(self, record: dict[str, Any]) -> str:
        item_id = record.get("id") or str(uuid4())
        row = {k: record.get(k) for k in _BUY_BOX_COLUMNS}
        row["status"] = record.get("status") or "active"
        for flag in ("structural_damage", "leather", "sunroof"):
            row[flag] = bool(record.get(flag, False))
        row.update({"id": item_id, "created_at": datetime.now(timezone.utc)})
        if self.engine is None:
            self._mem_buy_box_items.append(row)
            return item_id
        async with self.engine.begin() as conn:
            await conn.execute(insert(buy_box_items_table).values(**row))
        return item_id

    async def fetch_active_buy_box_items(self) -> list[dict[str, Any]]:
        if self.engine is None:
            return [dict(b) for b in self._mem_buy_box_items if b["status"] == "active"]
        stmt = select(buy_box_items_table).where(buy_box_items_table.c.status == "active")
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    # ── Matches ─────────────────────────────────────────────────────

    async def replace_matches(self, runlist_id: str, records: list[dict[str, Any]]) -> int:
        """Delete-then-insert the runlist's matches in one transaction."""
        rows = [
            {
                "id": str(uuid4()),
                "runlist_id": runlist_id,
                "vehicle_id": r["vehicle_id"],
                "buy_box_item_id": r["buy_box_item_id"],
                "dealer_id": r["dealer_id"],
                "matched_at": r["matched_at"],
            }
            for r in records
        ]
        if self.engine is None:
            self._mem_matches = [m for m in self._mem_matches if m["runlist_id"] != runlist_id]
            self._mem_matches.extend(rows)
            return len(rows)
        async with self.engine.begin() as conn:
            if conn.dialect.name == "postgresql":
                await conn.execute(
                    text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
                    {"key": f"buy_box_matches:{runlist_id}"},
                )
            await conn.execute(delete(matches_table).where(matches_table.c.runlist_id == runlist_id))
            if rows:
                await conn.execute(insert(matches_table), rows)
        return len(rows)

    async def fetch_matches(self, runlist_id: str) -> list[dict[str, Any]]:
        if self.engine is None:
            return [dict(m) for m in self._mem_matches if m["runlist_id"] == runlist_id]
        stmt = select(matches_table).where(matches_table.c.runlist_id == runlist_id)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    # ── Make / model aliases ────────────────────────────────────────

    async def insert_make_alias(self, *, alias: str, canonical_make: str, auction_id: str | None = None) -> str:
        row = {"id": str(uuid4()), "alias": alias, "canonical_make": canonical_make, "auction_id": auction_id}
        if self.engine is None:
            self._mem_make_aliases.append(row)
            return row["id"]
        async with self.engine.begin() as conn:
            await conn.execute(insert(make_aliases_table).values(**row))
        return row["id"]

    async def insert_model_alias(
        self, *, make: str, alias: str, canonical_model: str, auction_id: str | None = None,
    ) -> str:
        row = {
            "id": str(uuid4()),
            "make": make,
            "alias": alias,
            "canonical_model": canonical_model,
            "auction_id": auction_id,
        }
        if self.engine is None:
            self._mem_model_aliases.append(row)
            return row["id"]
        async with self.engine.begin() as conn:
            await conn.execute(insert(model_aliases_table).values(**row))
        return row["id"]

    async def fetch_aliases(self, auction_id: str) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        """General aliases plus those scoped to `auction_id`."""
        if self.engine is None:
            scope = (None, str(auction_id))
            makes = [dict(a) for a in self._mem_make_aliases if a["auction_id"] in scope]
            models = [dict(a) for a in self._mem_model_aliases if a["auction_id"] in scope]
            return makes, models
        make_stmt = select(make_aliases_table).where(
            (make_aliases_table.c.auction_id.is_(None)) | (make_aliases_table.c.auction_id == str(auction_id))
        )
        model_stmt = select(model_aliases_table).where(
            (model_aliases_table.c.auction_id.is_(None)) | (model_aliases_table.c.auction_id == str(auction_id))
        )
        async with self.engine.connect() as conn:
            makes = (await conn.execute(make_stmt)).all()
            models = (await conn.execute(model_stmt)).all()
        return [dict(r._mapping) for r in makes], [dict(r._mapping) for r in models]
