from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator
from uuid import uuid4

from runlist.aliases import MakeModelAliases
from runlist.config import NormalizerConfig
from runlist.data_models import CANONICAL_FIELDS, ColumnMapping, RawRow, Rejected
from runlist.errors import AmbiguousMapping, EmptyFile, RunlistNotFound, RunlistStateError
from runlist.headers import bind_to_headers, header_signature, suggest_mapping
from runlist.normalizer import normalize
from runlist.parsing import open_runlist
from runlist.report import BatchReport
from service.logging_config import current_runlist_id, get_correlation_id
from service.mapping_store import ColumnMappingStore
from service.matching_service import MatchingService
from service.messaging import RUNLIST_EVENTS_TOPIC, KafkaBus
from service.storage import PostgresStore
from service.vin import VinDecoder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NeedsMapping:
    runlist: dict[str, Any]
    headers: list[str]
    sample_record: RawRow
    suggested_mapping: dict[str, str]


@dataclass(frozen=True)
class Processed:
    runlist: dict[str, Any]
    report: BatchReport


def runlist_view(row: dict[str, Any]) -> dict[str, Any]:
    """Storage row -> public runlist shape."""
    out = {k: v for k, v in row.items() if k not in ("headers_json", "metadata_json", "rejections_json", "file_path")}
    out["headers"] = list(row.get("headers_json") or [])
    out["metadata"] = dict(row.get("metadata_json") or {})
    return out


def _chunked(rows: Iterable[tuple[int, RawRow]], size: int) -> Iterator[list[tuple[int, RawRow]]]:
    it = iter(rows)
    while True:
        chunk = list(itertools.islice(it, size))
        if not chunk:
            return
        yield chunk


def _as_datetime(value: date | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


class IngestionPipeline:
    def __init__(
        self,
        store: PostgresStore,
        mappings: ColumnMappingStore,
        matching: MatchingService,
        bus: KafkaBus,
        *,
        chunk_size: int = 500,
        normalizer_config: NormalizerConfig | None = None,
        vin_decoder: VinDecoder | None = None,
    ) -> None:
        self.store = store
        self.mappings = mappings
        self.matching = matching
        self.bus = bus
        self.chunk_size = chunk_size
        self.normalizer_config = normalizer_config or NormalizerConfig()
        self.vin_decoder = vin_decoder

    async def _publish(self, event: str, runlist: dict[str, Any], **extra: Any) -> None:
        payload = {
            "event": event,
            "runlist_id": runlist["id"],
            "auction_id": runlist["auction_id"],
            "filename": runlist["filename"],
            "correlation_id": get_correlation_id(),
            **extra,
        }
        await self.bus.publish(RUNLIST_EVENTS_TOPIC, payload, key=runlist["id"])

    async def ingest(
        self,
        path: str | Path,
        auction_id: str,
        filename: str,
        metadata: dict[str, Any] | None = None,
        inspection_date: date | datetime | None = None,
    ) -> NeedsMapping | Processed:
        """Ingest one uploaded runlist file.

        Returns NeedsMapping when no column mapping is known for this
        auction's header layout; the file stays on disk for complete_mapping().
        """
        auction_id = str(auction_id)
        parsed = open_runlist(path, chunk_size=self.chunk_size)
        first = next(parsed.rows, None)
        if first is None:
            raise EmptyFile(f"{filename} has headers but no data rows")

        signature = header_signature(parsed.headers)
        mapping = await self.mappings.resolve(auction_id, signature)
        runlist_id = str(uuid4())
        token = current_runlist_id.set(runlist_id)
        try:
            await self.store.insert_runlist(
                {
                    "id": runlist_id,
                    "auction_id": auction_id,
                    "filename": filename,
                    "file_path": str(path),
                    "file_format": parsed.file_format,
                    "header_signature": signature,
                    "headers_json": parsed.headers,
                    "status": "needs_mapping" if mapping is None else "processing",
                    "inspection_date": _as_datetime(inspection_date),
                    "mapping_id": mapping.id if mapping is not None else None,
                    "metadata_json": dict(metadata or {}),
                }
            )
            runlist = await self.store.get_runlist(runlist_id)
            await self._publish("uploaded", runlist, file_format=parsed.file_format)

            if mapping is None:
                previous = await self.mappings.latest_for_auction(auction_id)
                suggested = suggest_mapping(parsed.headers, previous)
                logger.info(
                    "No column mapping for auction %s layout %s; %d of %d headers suggested",
                    auction_id, signature[:12], len(suggested), len(parsed.headers),
                )
                await self._publish("needs_mapping", runlist)
                return NeedsMapping(
                    runlist=runlist_view(runlist),
                    headers=list(parsed.headers),
                    sample_record=first[1],
                    suggested_mapping=suggested,
                )

            rows = itertools.chain([first], parsed.rows)
            return await self._process(runlist, mapping, parsed.headers, rows)
        finally:
            parsed.close()
            current_runlist_id.reset(token)

    async def complete_mapping(
        self,
        runlist_id: str,
        auction_id: str,
        fields: dict[str, str],
        name: str | None = None,
    ) -> Processed:
        runlist = await self.store.get_runlist(runlist_id)
        if runlist is None:
            raise RunlistNotFound(runlist_id)
        if runlist["auction_id"] != str(auction_id):
            raise RunlistStateError(f"Runlist {runlist_id} belongs to auction {runlist['auction_id']}")
        if runlist["status"] != "needs_mapping":
            raise RunlistStateError(f"Runlist {runlist_id} is {runlist['status']}, not awaiting a mapping")

        unknown = sorted(t for t in fields if t not in CANONICAL_FIELDS)
        parsed = open_runlist(runlist["file_path"], chunk_size=self.chunk_size)
        _, missing = bind_to_headers(fields, parsed.headers)
        if unknown or missing:
            parsed.close()
            problems = []
            if unknown:
                problems.append(f"unknown target fields {unknown}")
            if missing:
                problems.append(f"headers not in file {missing}")
            raise AmbiguousMapping(
                "Mapping does not fit runlist: " + "; ".join(problems),
                missing_headers=missing,
                unknown_fields=unknown,
            )

        mapping = await self.mappings.save(str(auction_id), runlist["header_signature"], fields, name=name or "")
        await self.store.update_runlist(runlist_id, status="processing", mapping_id=mapping.id)
        runlist = await self.store.get_runlist(runlist_id)

        token = current_runlist_id.set(runlist_id)
        try:
            return await self._process(runlist, mapping, parsed.headers, parsed.rows)
        finally:
            parsed.close()
            current_runlist_id.reset(token)

    async def _vin_info(self, chunk: list[tuple[int, RawRow]], vin_header: str | None) -> dict[str, dict[str, Any]]:
        if self.vin_decoder is None or vin_header is None:
            return {}
        vins = [raw.get(vin_header, "") for _, raw in chunk]
        return await self.vin_decoder.decode_batch([v for v in vins if v])

    async def _process(
        self,
        runlist: dict[str, Any],
        mapping: ColumnMapping,
        headers: list[str],
        rows: Iterable[tuple[int, RawRow]],
    ) -> Processed:
        runlist_id = runlist["id"]
        auction_id = runlist["auction_id"]
        bound_fields, _ = bind_to_headers(mapping.fields, headers)
        mapping = replace(mapping, fields=bound_fields)
        make_rows, model_rows = await self.store.fetch_aliases(auction_id)
        aliases = MakeModelAliases.from_rows(make_rows, model_rows, auction_id=auction_id)

        report = BatchReport(runlist_id=runlist_id, auction_id=auction_id)
        try:
            await self._load_and_match(runlist, mapping, aliases, rows, report)
        except Exception:
            logger.exception("Ingestion aborted after %d rows", report.source_row_count)
            await self._mark_failed(runlist_id)
            raise

        logger.info(
            "Processed %d rows: %d vehicles, %d skipped, %d matches",
            report.source_row_count, report.vehicle_count, report.skipped_count, report.match_count,
        )
        runlist = await self.store.get_runlist(runlist_id)
        await self._publish(
            "processed",
            runlist,
            vehicle_count=report.vehicle_count,
            skipped_count=report.skipped_count,
            match_count=report.match_count,
        )
        return Processed(runlist=runlist_view(runlist), report=report)

    async def _mark_failed(self, runlist_id: str) -> None:
        """Drop partial vehicles and matches so a failed runlist holds nothing."""
        try:
            await self.store.delete_vehicles(runlist_id)
            await self.store.update_runlist(runlist_id, status="failed")
        except Exception:
            logger.exception("Could not mark runlist %s failed", runlist_id)

    async def _load_and_match(
        self,
        runlist: dict[str, Any],
        mapping: ColumnMapping,
        aliases: MakeModelAliases,
        rows: Iterable[tuple[int, RawRow]],
        report: BatchReport,
    ) -> None:
        runlist_id = runlist["id"]
        vin_header = mapping.fields.get("vin")
        for chunk in _chunked(rows, self.chunk_size):
            vin_info = await self._vin_info(chunk, vin_header)
            accepted = []
            for row_number, raw in chunk:
                report.source_row_count += 1
                vin = (raw.get(vin_header) or "").strip().upper() if vin_header else ""
                result = normalize(
                    raw,
                    mapping,
                    runlist_id=runlist_id,
                    config=self.normalizer_config,
                    aliases=aliases,
                    vin_info=vin_info.get(vin),
                    row_number=row_number,
                )
                if isinstance(result, Rejected):
                    report.rejections.append(result)
                else:
                    accepted.append(result.vehicle.to_dict())
            report.vehicle_count += await self.store.insert_vehicles(accepted)

        if report.source_row_count == 0:
            raise EmptyFile(f"{runlist['filename']} has headers but no data rows")

        report.record_matches(await self.matching.match_runlist(runlist_id))
        await self.store.update_runlist(
            runlist_id,
            status="processed",
            source_row_count=report.source_row_count,
            vehicle_count=report.vehicle_count,
            skipped_count=report.skipped_count,
            match_count=report.match_count,
            rejections_json=report.to_dict()["rejections"],
            processed_at=datetime.now(timezone.utc),
        )

    async def report(self, runlist_id: str) -> BatchReport:
        """Rebuild the BatchReport of a processed runlist from storage."""
        runlist = await self.store.get_runlist(runlist_id)
        if runlist is None:
            raise RunlistNotFound(runlist_id)
        report = BatchReport(
            runlist_id=runlist_id,
            auction_id=runlist["auction_id"],
            source_row_count=runlist["source_row_count"],
            vehicle_count=runlist["vehicle_count"],
            rejections=[
                Rejected(reason=r["reason"], fields=tuple(r["fields"]), row_number=r["row_number"])
                for r in runlist["rejections_json"] or []
            ],
        )
        report.record_matches(await self.matching.matches_for(runlist_id))
        return report
