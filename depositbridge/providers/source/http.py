from __future__ import annotations

import logging
from typing import Any

import httpx

from depositbridge.core.config import Settings
from depositbridge.core.errors import SourceFetchError
from depositbridge.domain.job import TenantKey
from depositbridge.services.resilience import RetryPolicy, retry_async


logger = logging.getLogger(__name__)


class HttpSourceClient:
    """Fetches tenancy records from the source system's record endpoint.

    Reads are idempotent, so transient transport failures are retried in-call
    before the step is reported as failed.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._base_url = settings.source_base_url.rstrip("/")
        self._policy = RetryPolicy.from_settings(settings)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.ext_call_timeout_ms / 1000.0)

    async def fetch_record(self, external_record_id: str, tenant_key: TenantKey) -> dict[str, Any]:
        # Every failure, including 404 and non-JSON bodies, surfaces as SourceFetchError.
        params = {"organization_id": tenant_key.organization_id}
        if tenant_key.branch_id:
            params["branch_id"] = tenant_key.branch_id

        async def _call() -> httpx.Response:
            response = await self._client.get(f"{self._base_url}/records/{external_record_id}", params=params)
            response.raise_for_status()
            return response

        try:
            response = await retry_async(_call, policy=self._policy, name="source.fetch_record")
            payload = response.json()
        except (httpx.HTTPError, TimeoutError, ValueError) as exc:
            logger.warning(
                "source_fetch_failed record_id=%s tenant=%s error=%s",
                external_record_id,
                tenant_key.key,
                type(exc).__name__,
            )
            raise SourceFetchError(f"Source fetch failed: {exc}") from exc
        if not isinstance(payload, dict):
            raise SourceFetchError("Source returned a non-object record")
        return payload

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
