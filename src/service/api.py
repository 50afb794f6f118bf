from __future__ import annotations

import shutil
import time
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import date
from pathlib import Path
from typing import Any, NoReturn

from fastapi import FastAPI, File, Form, HTTPException, Request, Response, UploadFile, status
from pydantic import BaseModel, Field

from runlist.auction_formats import format_lane_run
from runlist.data_models import VehicleRecord
from runlist.errors import (
    AmbiguousMapping,
    EmptyFile,
    InvalidFileFormat,
    RunlistError,
    RunlistNotFound,
    RunlistStateError,
)
from service.ingestion import IngestionPipeline, NeedsMapping, Processed, runlist_view
from service.logging_config import configure_logging, correlation_id
from service.mapping_store import ColumnMappingStore
from service.matching_service import MatchingService
from service.messaging import KafkaBus
from service.settings import ServiceSettings
from service.storage import PostgresStore, RedisCache
from service.vin import VinDecoder


# ── Request / Response Models ───────────────────────────────────────

class CompleteMappingRequest(BaseModel):
    runlist_id: str
    auction_id: str
    mapping: dict[str, str] = Field(min_length=1)
    name: str | None = None


class MatchResponse(BaseModel):
    runlist_id: str
    match_count: int
    matched_vehicle_count: int


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


# ── Prometheus-style Metrics ────────────────────────────────────────

_prom_counters: dict[str, int] = defaultdict(int)
_prom_histograms: dict[str, list[float]] = defaultdict(list)


def _record_latency(name: str, seconds: float) -> None:
    _prom_histograms[name].append(seconds)
    _prom_counters[f"{name}_count"] += 1


def _prometheus_text() -> str:
    """Render metrics in Prometheus exposition format."""
    lines: list[str] = []
    for k, v in sorted(_prom_counters.items()):
        safe = k.replace(".", "_").replace("-", "_")
        lines.append(f"# TYPE runlist_{safe} counter")
        lines.append(f"runlist_{safe} {v}")

    for name, vals in sorted(_prom_histograms.items()):
        if not vals:
            continue
        safe = name.replace(".", "_").replace("-", "_")
        sorted_vals = sorted(vals)
        n = len(sorted_vals)
        lines.append(f"# TYPE runlist_{safe}_seconds summary")
        for q in (0.5, 0.9, 0.95, 0.99):
            idx = min(int(n * q), n - 1)
            lines.append(f'runlist_{safe}_seconds{{quantile="{q}"}} {sorted_vals[idx]:.6f}')
        lines.append(f"runlist_{safe}_seconds_count {n}")
        lines.append(f"runlist_{safe}_seconds_sum {sum(sorted_vals):.6f}")

    return "\n".join(lines) + "\n"


def _record_processed(result: Processed) -> None:
    _prom_counters["runlists_processed"] += 1
    _prom_counters["vehicles_ingested"] += result.report.vehicle_count
    _prom_counters["rows_skipped"] += result.report.skipped_count
    _prom_counters["matches"] += result.report.match_count


def _raise_http(exc: RunlistError) -> NoReturn:
    if isinstance(exc, (InvalidFileFormat, EmptyFile)):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if isinstance(exc, AmbiguousMapping):
        raise HTTPException(
            status_code=422,
            detail={
                "message": str(exc),
                "missing_headers": exc.missing_headers,
                "unknown_fields": exc.unknown_fields,
            },
        ) from exc
    if isinstance(exc, RunlistNotFound):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, RunlistStateError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc


def _processed_body(result: Processed) -> dict[str, Any]:
    return {
        "needs_mapping": False,
        "runlist": result.runlist,
        "vehicle_count": result.report.vehicle_count,
        "match_count": result.report.match_count,
        "source_row_count": result.report.source_row_count,
        "skipped_count": result.report.skipped_count,
    }


# ── App Factory ─────────────────────────────────────────────────────

def create_app() -> FastAPI:
    settings = ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    cache = RedisCache(redis_url=settings.redis_url)
    store = PostgresStore(dsn=settings.postgres_dsn)
    kafka = KafkaBus(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        client_id=settings.kafka_client_id,
    )
    vin_decoder = (
        VinDecoder(cache=cache, base_url=settings.nhtsa_base_url, ttl_seconds=settings.vin_cache_ttl_seconds)
        if settings.vin_enrichment_enabled
        else None
    )
    mappings = ColumnMappingStore(store=store, cache=cache, ttl_seconds=settings.mapping_cache_ttl_seconds)
    matching = MatchingService(
        store=store,
        cache=cache,
        bus=kafka,
        config=settings.matching_config(),
        lock_timeout_seconds=settings.match_lock_timeout_seconds,
    )
    pipeline = IngestionPipeline(
        store=store,
        mappings=mappings,
        matching=matching,
        bus=kafka,
        chunk_size=settings.ingest_chunk_size,
        normalizer_config=settings.normalizer_config(),
        vin_decoder=vin_decoder,
    )
    upload_dir = Path(settings.upload_dir)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        upload_dir.mkdir(parents=True, exist_ok=True)
        await cache.connect()
        await store.connect()
        await kafka.connect()
        try:
            yield
        finally:
            await cache.close()
            await store.close()
            await kafka.close()

    app = FastAPI(title="Runlist Ingestion API", version="0.1.0", lifespan=lifespan)
    app.state.store = store
    app.state.kafka = kafka
    app.state.pipeline = pipeline

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Response:
        cid = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex[:12]
        correlation_id.set(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response

    async def _require_runlist(runlist_id: str) -> dict[str, Any]:
        runlist = await store.get_runlist(runlist_id)
        if runlist is None:
            _raise_http(RunlistNotFound(runlist_id))
        return runlist

    # ── Upload / Mapping ────────────────────────────────────────────

    @app.post("/runlists/upload")
    async def upload_runlist(
        file: UploadFile = File(...),
        auction_id: str = Form(...),
        inspection_date: date | None = Form(None),
    ) -> dict[str, Any]:
        t0 = time.monotonic()
        filename = Path(file.filename or "runlist.csv").name
        upload_dir.mkdir(parents=True, exist_ok=True)
        stored = upload_dir / f"{uuid.uuid4().hex}_{filename}"
        with stored.open("wb") as fh:
            shutil.copyfileobj(file.file, fh)
        _prom_counters["runlists_uploaded"] += 1

        try:
            result = await pipeline.ingest(
                stored,
                auction_id=auction_id,
                filename=filename,
                metadata={"content_type": file.content_type, "size_bytes": stored.stat().st_size},
                inspection_date=inspection_date,
            )
        except (InvalidFileFormat, EmptyFile) as exc:
            stored.unlink(missing_ok=True)
            _prom_counters["uploads_rejected"] += 1
            _raise_http(exc)
        except RunlistError as exc:
            _raise_http(exc)

        _record_latency("ingest", time.monotonic() - t0)
        if isinstance(result, NeedsMapping):
            _prom_counters["runlists_needs_mapping"] += 1
            return {
                "needs_mapping": True,
                "runlist": result.runlist,
                "sample_record": result.sample_record,
                "headers": result.headers,
                "suggested_mapping": result.suggested_mapping,
            }
        _record_processed(result)
        return _processed_body(result)

    @app.post("/column-mappings/complete")
    async def complete_column_mapping(req: CompleteMappingRequest) -> dict[str, Any]:
        t0 = time.monotonic()
        try:
            result = await pipeline.complete_mapping(
                req.runlist_id, req.auction_id, req.mapping, name=req.name,
            )
        except RunlistError as exc:
            _raise_http(exc)
        _record_latency("ingest", time.monotonic() - t0)
        _record_processed(result)
        return _processed_body(result)

    @app.get("/column-mappings")
    async def list_column_mappings(auction_id: str, limit: int = 20) -> dict[str, Any]:
        history = await mappings.history(auction_id, limit=min(limit, 100))
        return {"auction_id": auction_id, "mappings": [m.to_dict() for m in history]}

    # ── Runlists ────────────────────────────────────────────────────

    @app.post("/runlists/{runlist_id}/match", response_model=MatchResponse)
    async def rematch_runlist(runlist_id: str) -> MatchResponse:
        runlist = await _require_runlist(runlist_id)
        if runlist["status"] != "processed":
            _raise_http(RunlistStateError(f"Runlist {runlist_id} is {runlist['status']}"))
        t0 = time.monotonic()
        matches = await matching.match_runlist(runlist_id)
        _record_latency("match", time.monotonic() - t0)
        return MatchResponse(
            runlist_id=runlist_id,
            match_count=len(matches),
            matched_vehicle_count=len({m.vehicle_id for m in matches}),
        )

    @app.get("/runlists/{runlist_id}")
    async def get_runlist(runlist_id: str) -> dict[str, Any]:
        return runlist_view(await _require_runlist(runlist_id))

    @app.get("/runlists/{runlist_id}/vehicles")
    async def get_runlist_vehicles(runlist_id: str, include_raw: bool = False) -> dict[str, Any]:
        runlist = await _require_runlist(runlist_id)
        mapping = await mappings.resolve(runlist["auction_id"], runlist["header_signature"])
        # Auctions that send one "BB-0123" cell get it back in that shape.
        combined = mapping is not None and "lane_run" in mapping.fields
        vehicles = []
        for row in await store.fetch_vehicles(runlist_id):
            entry = VehicleRecord.from_row(row).to_dict()
            if not include_raw:
                entry.pop("raw_data")
            entry["lane_run"] = format_lane_run(entry["lane_number"], entry["run_number"], combined=combined)
            vehicles.append(entry)
        return {"runlist_id": runlist_id, "count": len(vehicles), "vehicles": vehicles}

    @app.get("/runlists/{runlist_id}/matches")
    async def get_runlist_matches(runlist_id: str, dealer_id: str | None = None) -> dict[str, Any]:
        await _require_runlist(runlist_id)
        matches = await matching.matches_for(runlist_id)
        if dealer_id is not None:
            matches = [m for m in matches if m.dealer_id == dealer_id]
        return {"runlist_id": runlist_id, "count": len(matches), "matches": [m.to_dict() for m in matches]}

    @app.get("/runlists/{runlist_id}/report")
    async def get_runlist_report(runlist_id: str) -> dict[str, Any]:
        try:
            report = await pipeline.report(runlist_id)
        except RunlistError as exc:
            _raise_http(exc)
        return report.to_dict()

    # ── Health ──────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=ReadinessResponse)
    async def ready() -> ReadinessResponse:
        checks = {
            "redis": await cache.ping(),
            "postgres": await store.ping(),
            "kafka": await kafka.ping(),
        }
        if not all(checks.values()):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    # ── Metrics ─────────────────────────────────────────────────────

    @app.get("/metrics")
    async def get_metrics() -> dict[str, Any]:
        latencies = sorted(_prom_histograms.get("ingest", []))
        return {
            "counters": dict(_prom_counters),
            "ingest_latency": {
                "count": len(latencies),
                "p50_ms": round(latencies[len(latencies) // 2] * 1000, 1) if latencies else 0,
                "p95_ms": round(latencies[int(len(latencies) * 0.95)] * 1000, 1) if latencies else 0,
                "p99_ms": round(latencies[int(len(latencies) * 0.99)] * 1000, 1) if latencies else 0,
            },
        }

    @app.get("/metrics/prometheus")
    async def get_prometheus_metrics() -> Response:
        return Response(content=_prometheus_text(), media_type="text/plain; charset=utf-8")

    return app


app = create_app()
