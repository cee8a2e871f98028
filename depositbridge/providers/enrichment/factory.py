from __future__ import annotations

from depositbridge.core.config import Settings
from depositbridge.core.errors import ConfigurationError
from depositbridge.providers.enrichment.fake import FakeRegionLookup
from depositbridge.providers.enrichment.http import HttpRegionLookup


def build_region_lookup(settings: Settings):
    provider = (settings.enrichment_provider or "http").lower()
    if provider == "fake":
        return FakeRegionLookup()
    if provider == "http":
        return HttpRegionLookup(settings)
    raise ConfigurationError(f"Unsupported enrichment provider: {provider}")
