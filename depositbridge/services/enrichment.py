from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from depositbridge.providers.enrichment.base import RegionLookup
from depositbridge.services.completeness import collect_landlords
from depositbridge.services.resilience import with_timeout


logger = logging.getLogger(__name__)

# Generated test-mode postcodes rarely resolve; use a fixed region for them.
TEST_MODE_REGION = "Buckinghamshire"


@dataclass(frozen=True)
class RegionResult:
    postcode: str | None
    region: str | None
    degraded: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"postcode": self.postcode, "region": self.region, "degraded": self.degraded, "error": self.error}


@dataclass(frozen=True)
class EnrichmentResult:
    property_region: RegionResult
    landlord_region: RegionResult
    flags: list[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.flags)

    def to_dict(self) -> dict[str, Any]:
        return {
            "property": self.property_region.to_dict(),
            "landlord": self.landlord_region.to_dict(),
            "flags": list(self.flags),
        }


def _postcode(address: Any) -> str | None:
    # Blank or missing postcodes skip the lookup entirely.
    if isinstance(address, dict):
        value = address.get("postcode")
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class Enricher:
    def __init__(self, lookup: RegionLookup, *, default_region: str | None, timeout_ms: int) -> None:
        self._lookup = lookup
        self._default_region = default_region
        self._timeout_ms = timeout_ms

    def _fallback(self, test_mode: bool) -> str | None:
        # A configured default region beats the test-mode constant.
        if self._default_region:
            return self._default_region
        return TEST_MODE_REGION if test_mode else None

    async def _resolve(self, postcode: str | None, *, test_mode: bool) -> RegionResult:
        # Never raises: every failure becomes a degraded result with the reason attached.
        if not postcode:
            return RegionResult(postcode=None, region=self._fallback(test_mode), degraded=True, error="No postcode provided")
        try:
            region = await with_timeout(lambda: self._lookup.lookup(postcode), timeout_ms=self._timeout_ms)
        except Exception as exc:  # noqa: BLE001 - enrichment failures degrade instead of failing the saga
            logger.warning("region_lookup_failed postcode=%s error=%s", postcode, type(exc).__name__)
            return RegionResult(postcode=postcode, region=self._fallback(test_mode), degraded=True, error=str(exc) or type(exc).__name__)
        if region is None:
            return RegionResult(postcode=postcode, region=self._fallback(test_mode), degraded=True, error="Postcode not found")
        return RegionResult(postcode=postcode, region=region)

    async def enrich(self, record: dict[str, Any], *, test_mode: bool = False) -> EnrichmentResult:
        # Landlord region comes from the first landlord, matching the payload's primary landlord.
        prop = record.get("property") or {}
        landlords = collect_landlords(record)
        landlord_address = landlords[0].get("address") if landlords else None

        property_result = await self._resolve(_postcode(prop.get("address")), test_mode=test_mode)
        landlord_result = await self._resolve(_postcode(landlord_address), test_mode=test_mode)

        flags = []
        if property_result.degraded:
            flags.append("property_region_defaulted")
        if landlord_result.degraded:
            flags.append("landlord_region_defaulted")
        return EnrichmentResult(property_region=property_result, landlord_region=landlord_result, flags=flags)
