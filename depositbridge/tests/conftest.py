from __future__ import annotations

import pytest

from depositbridge.core.config import Settings
from depositbridge.providers.downstream.fake import FakeDownstreamClient
from depositbridge.providers.enrichment.fake import FakeRegionLookup
from depositbridge.providers.source.fake import FakeSourceClient
from depositbridge.services.runtime import build_runtime
from depositbridge.tests.utils.records import LANDLORD_POSTCODE, PROPERTY_POSTCODE, FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def source() -> FakeSourceClient:
    return FakeSourceClient()


@pytest.fixture
def downstream() -> FakeDownstreamClient:
    return FakeDownstreamClient()


@pytest.fixture
def region_lookup() -> FakeRegionLookup:
    return FakeRegionLookup({PROPERTY_POSTCODE: "Buckinghamshire", LANDLORD_POSTCODE: "Greater London"})


@pytest.fixture
def settings(tmp_path) -> Settings:
    # Each test gets its own sqlite file so state never leaks between tests.
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'depositbridge.db'}",
        source_provider="fake",
        downstream_provider="fake",
        enrichment_provider="fake",
        ext_call_timeout_ms=2000,
        tick_batch_size=10,
        tick_concurrency=4,
    )


@pytest.fixture
async def runtime(settings, source, downstream, region_lookup, clock):
    runtime = await build_runtime(
        settings,
        source=source,
        downstream=downstream,
        region_lookup=region_lookup,
        clock=clock,
        ensure_schema=True,
    )
    yield runtime
    await runtime.dispose()
