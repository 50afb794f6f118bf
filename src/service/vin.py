from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from service.storage import RedisCache

logger = logging.getLogger(__name__)

_VIN_RE = re.compile(r"^[A-HJ-NPR-Z0-9]{17}$")


def is_decodable_vin(vin: str | None) -> bool:
    return bool(vin) and bool(_VIN_RE.match(vin.strip().upper()))


class VinDecoder:
    """NHTSA vPIC batch decoder with a Redis-backed result cache.

    Decoding never raises: VINs the service cannot resolve come back with
    decode_source "unavailable" and empty make/model.
    """

    def __init__(self, cache: RedisCache, base_url: str, ttl_seconds: int) -> None:
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _unavailable(vin: str) -> dict[str, Any]:
        return {
            "vin": vin,
            "model_year": 0,
            "make": "",
            "model": "",
            "trim": "",
            "body_type": "",
            "engine": "",
            "decode_source": "unavailable",
        }

    @staticmethod
    def _from_result(row: dict[str, Any]) -> dict[str, Any]:
        try:
            model_year = int(row.get("ModelYear") or 0)
        except ValueError:
            model_year = 0
        return {
            "vin": (row.get("VIN") or "").upper(),
            "model_year": model_year,
            "make": (row.get("Make") or "").strip().upper(),
            "model": (row.get("Model") or "").strip().upper(),
            "trim": row.get("Trim") or "",
            "body_type": row.get("BodyClass") or "",
            "engine": row.get("EngineModel") or "",
            "decode_source": "nhtsa_batch",
        }

    async def decode_batch(self, vins: list[str], chunk_size: int = 50) -> dict[str, dict[str, Any]]:
        """Decode distinct VINs; returns {VIN: decoded} for every decodable input."""
        wanted = sorted({v.strip().upper() for v in vins if is_decodable_vin(v)})
        decoded: dict[str, dict[str, Any]] = {}
        uncached: list[str] = []

        for vin in wanted:
            cached = await self.cache.get_json(f"vin_decode:{vin}")
            if cached is not None:
                decoded[vin] = cached
            else:
                uncached.append(vin)

        for i in range(0, len(uncached), chunk_size):
            chunk = uncached[i : i + chunk_size]
            for vin, result in zip(chunk, await self._batch_request(chunk)):
                decoded[vin] = result
                if result["decode_source"] != "unavailable":
                    await self.cache.set_json(f"vin_decode:{vin}", result, ttl_seconds=self.ttl_seconds)

        return decoded

    async def _batch_request(self, vins: list[str]) -> list[dict[str, Any]]:
        try:
            url = f"{self.base_url}/DecodeVINValuesBatch/"
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.post(url, data={"format": "json", "data": ";".join(vins)})
                resp.raise_for_status()
            rows = resp.json().get("Results") or []
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("VIN batch decode failed for %d VINs: %s", len(vins), exc)
            return [self._unavailable(vin) for vin in vins]

        by_vin = {r["vin"]: r for r in (self._from_result(row) for row in rows) if r["vin"]}
        return [by_vin.get(vin, self._unavailable(vin)) for vin in vins]
