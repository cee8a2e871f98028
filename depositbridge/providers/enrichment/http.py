from __future__ import annotations

from urllib.parse import quote

import httpx

from depositbridge.core.config import Settings
from depositbridge.services.resilience import RetryPolicy, retry_async


class HttpRegionLookup:
    # Postcode to county lookup; the Enricher turns failures into degraded results.
    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._base_url = settings.enrichment_base_url.rstrip("/")
        self._policy = RetryPolicy.from_settings(settings)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.ext_call_timeout_ms / 1000.0)

    async def lookup(self, postcode: str) -> str | None:
        async def _call() -> httpx.Response:
            return await self._client.get(f"{self._base_url}/{quote(postcode.strip())}")

        response = await retry_async(_call, policy=self._policy, name="enrichment.lookup")
        # Unknown postcodes are a normal answer, not an error.
        if response.status_code == 404:
            return None
        response.raise_for_status()
        body = response.json()
        county = body.get("county") if isinstance(body, dict) else None
        return str(county) if county else None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
