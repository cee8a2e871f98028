from __future__ import annotations

import copy
from typing import Any

from depositbridge.core.errors import SourceFetchError
from depositbridge.domain.job import TenantKey


class FakeSourceClient:
    def __init__(self, records: dict[str, dict[str, Any]] | None = None) -> None:
        # Records are keyed by external record id; tests mutate them between attempts.
        self.records: dict[str, dict[str, Any]] = dict(records or {})
        self.failures_remaining = 0
        self.calls: list[tuple[str, str]] = []

    def set_record(self, external_record_id: str, record: dict[str, Any]) -> None:
        self.records[external_record_id] = record

    def fail_next(self, count: int = 1) -> None:
        self.failures_remaining = count

    async def fetch_record(self, external_record_id: str, tenant_key: TenantKey) -> dict[str, Any]:
        self.calls.append((external_record_id, tenant_key.key))
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise SourceFetchError("Source system unavailable")
        record = self.records.get(external_record_id)
        if record is None:
            raise SourceFetchError(f"Record {external_record_id} not found in source")
        # Hand out copies so callers cannot mutate the stored fixture.
        return copy.deepcopy(record)

    async def aclose(self) -> None:
        return None
