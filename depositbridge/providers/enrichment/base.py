from __future__ import annotations

from typing import Protocol


class RegionLookup(Protocol):
    async def lookup(self, postcode: str) -> str | None:
        """Return the county/region for a postcode, or None when unknown."""
        ...

    async def aclose(self) -> None:
        ...
