from __future__ import annotations


class FakeRegionLookup:
    def __init__(self, regions: dict[str, str] | None = None) -> None:
        self.regions = {self._normalize(key): value for key, value in (regions or {}).items()}
        self.fail = False
        self.calls: list[str] = []

    @staticmethod
    def _normalize(postcode: str) -> str:
        return postcode.replace(" ", "").upper()

    async def lookup(self, postcode: str) -> str | None:
        self.calls.append(postcode)
        if self.fail:
            raise TimeoutError("postcode lookup timed out")
        return self.regions.get(self._normalize(postcode))

    async def aclose(self) -> None:
        return None
