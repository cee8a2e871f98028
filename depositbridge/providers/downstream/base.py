from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class SubmitOutcome:
    success: bool
    correlation_ids: dict[str, Any] = field(default_factory=dict)
    # Downstream error text; the classifier decides whether it is worth retrying.
    message: str | None = None
    status_code: int | None = None


class DownstreamClient(Protocol):
    async def submit(self, payload: dict[str, Any]) -> SubmitOutcome:
        ...

    async def aclose(self) -> None:
        ...
