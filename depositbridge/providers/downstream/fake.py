from __future__ import annotations

from typing import Any
from uuid import uuid4

from depositbridge.providers.downstream.base import SubmitOutcome


class FakeDownstreamClient:
    def __init__(self) -> None:
        # Scripted outcomes are consumed in order; an empty script means success.
        self.script: list[SubmitOutcome | Exception] = []
        self.submissions: list[dict[str, Any]] = []

    def queue(self, *outcomes: SubmitOutcome | Exception) -> None:
        self.script.extend(outcomes)

    def queue_failure(self, message: str, status_code: int | None = 400) -> None:
        self.script.append(SubmitOutcome(success=False, message=message, status_code=status_code))

    async def submit(self, payload: dict[str, Any]) -> SubmitOutcome:
        self.submissions.append(payload)
        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return SubmitOutcome(
            success=True,
            correlation_ids={"batch_id": f"fake-{uuid4().hex[:12]}", "tenancy_id": payload.get("tenancyId")},
        )

    async def aclose(self) -> None:
        return None
