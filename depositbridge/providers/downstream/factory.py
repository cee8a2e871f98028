from __future__ import annotations

from depositbridge.core.config import Settings
from depositbridge.core.errors import ConfigurationError
from depositbridge.providers.downstream.fake import FakeDownstreamClient
from depositbridge.providers.downstream.http import HttpDownstreamClient


def build_downstream_client(settings: Settings):
    provider = (settings.downstream_provider or "http").lower()
    if provider == "fake":
        return FakeDownstreamClient()
    if provider == "http":
        return HttpDownstreamClient(settings)
    raise ConfigurationError(f"Unsupported downstream provider: {provider}")
