from __future__ import annotations

from typing import Any, Protocol

from depositbridge.domain.job import TenantKey


class SourceClient(Protocol):
    async def fetch_record(self, external_record_id: str, tenant_key: TenantKey) -> dict[str, Any]:
        """Return the combined tenancy record or raise SourceFetchError."""
        ...

    async def aclose(self) -> None:
        ...
