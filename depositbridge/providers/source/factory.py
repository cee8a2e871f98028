from __future__ import annotations

from depositbridge.core.config import Settings
from depositbridge.core.errors import ConfigurationError
from depositbridge.providers.source.fake import FakeSourceClient
from depositbridge.providers.source.http import HttpSourceClient


def build_source_client(settings: Settings):
    provider = (settings.source_provider or "http").lower()
    if provider == "fake":
        return FakeSourceClient()
    if provider == "http":
        return HttpSourceClient(settings)
    raise ConfigurationError(f"Unsupported source provider: {provider}")
