from __future__ import annotations

import pytest

from depositbridge.providers.enrichment.fake import FakeRegionLookup
from depositbridge.services.enrichment import TEST_MODE_REGION, Enricher
from depositbridge.tests.utils.records import complete_record


@pytest.mark.asyncio
async def test_enrich_resolves_both_regions() -> None:
    lookup = FakeRegionLookup({"hp201aa": "Buckinghamshire", "W1U4EG": "Greater London"})
    result = await Enricher(lookup, default_region=None, timeout_ms=1000).enrich(complete_record())
    assert result.property_region.region == "Buckinghamshire"
    assert result.landlord_region.region == "Greater London"
    assert not result.degraded
    assert lookup.calls == ["HP20 1AA", "W1U 4EG"]


@pytest.mark.asyncio
async def test_lookup_failure_degrades_to_default_region() -> None:
    lookup = FakeRegionLookup()
    lookup.fail = True
    result = await Enricher(lookup, default_region="Unknown County", timeout_ms=1000).enrich(complete_record())
    assert result.property_region.region == "Unknown County"
    assert result.flags == ["property_region_defaulted", "landlord_region_defaulted"]
    assert result.to_dict()["property"]["degraded"] is True


@pytest.mark.asyncio
async def test_test_mode_uses_fixed_region_for_unknown_postcodes() -> None:
    enricher = Enricher(FakeRegionLookup(), default_region=None, timeout_ms=1000)
    result = await enricher.enrich(complete_record(), test_mode=True)
    assert result.property_region.region == TEST_MODE_REGION
    live = await enricher.enrich(complete_record(), test_mode=False)
    assert live.property_region.region is None


@pytest.mark.asyncio
async def test_missing_postcode_degrades_without_lookup() -> None:
    record = complete_record()
    record["property"]["address"].pop("postcode")
    lookup = FakeRegionLookup({"W1U 4EG": "Greater London"})
    result = await Enricher(lookup, default_region=None, timeout_ms=1000).enrich(record)
    assert result.property_region.error == "No postcode provided"
    assert lookup.calls == ["W1U 4EG"]
