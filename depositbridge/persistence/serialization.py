"""Size-capped JSON field codec for the job stores.

Every JSON column written to ``integration_jobs`` or
``integration_job_archive`` passes through :class:`FieldCodec`. A value whose
compact JSON encoding fits in ``max_bytes`` is stored unchanged. Oversized
values are never silently cut:

* dicts and scalars become ``{"_truncated": true, "_original_bytes": n,
  "_preview": "<prefix of the JSON text>"}``;
* lists keep their newest items and gain a leading marker
  ``{"_truncated": true, "_dropped": k}``. Lists read back from a row carry
  their earlier ``k`` forward through :meth:`FieldCodec.encode_list`.

The result of :meth:`FieldCodec.encode` always fits in ``max_bytes``.
"""

from __future__ import annotations

import json
from typing import Any


TRUNCATED_FLAG = "_truncated"
# Room reserved for the wrapper keys around a preview string.
_ENVELOPE_OVERHEAD = 96


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str, separators=(",", ":"), sort_keys=True)


def encoded_size(value: Any) -> int:
    return len(_dumps(value).encode("utf-8"))


def is_truncated(value: Any) -> bool:
    if isinstance(value, dict):
        return bool(value.get(TRUNCATED_FLAG))
    if isinstance(value, list) and value and isinstance(value[0], dict):
        return bool(value[0].get(TRUNCATED_FLAG))
    return False


def _utf8_prefix(text: str, max_bytes: int) -> str:
    # Cut on a byte budget without splitting a multi-byte character.
    raw = text.encode("utf-8")[: max(0, max_bytes)]
    return raw.decode("utf-8", errors="ignore")


class FieldCodec:
    def __init__(self, max_bytes: int) -> None:
        if max_bytes < _ENVELOPE_OVERHEAD * 2:
            raise ValueError(f"max_bytes must be at least {_ENVELOPE_OVERHEAD * 2}")
        self._max_bytes = int(max_bytes)

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    def encode(self, value: Any) -> Any:
        if value is None:
            return None
        size = encoded_size(value)
        if size <= self._max_bytes:
            return value
        if isinstance(value, list):
            return self._truncate_list(value)
        return self._summarize(value, size)

    def encode_many(self, fields: dict[str, Any]) -> dict[str, Any]:
        return {name: self.encode(value) for name, value in fields.items()}

    def encode_list(self, items: list[Any], *, already_dropped: int = 0) -> list[Any]:
        """Encode a history list, carrying forward items dropped by earlier writes."""

        if not already_dropped:
            return self.encode(list(items))
        # A previous write already lost history; the marker must keep the running total.
        return self._truncate_list(list(items), already_dropped=already_dropped)

    def _summarize(self, value: Any, size: int) -> dict[str, Any]:
        text = _dumps(value)
        preview_budget = self._max_bytes - _ENVELOPE_OVERHEAD
        preview = _utf8_prefix(text, preview_budget)
        envelope = {TRUNCATED_FLAG: True, "_original_bytes": size, "_preview": preview}
        # JSON escaping can grow the preview; shrink until the envelope fits.
        while encoded_size(envelope) > self._max_bytes and preview:
            preview = preview[: max(0, len(preview) - max(1, len(preview) // 8))]
            envelope["_preview"] = preview
        return envelope

    def _truncate_list(self, items: list[Any], *, already_dropped: int = 0) -> list[Any]:
        kept: list[Any] = []
        budget = self._max_bytes - _ENVELOPE_OVERHEAD
        used = 2
        # Keep the newest items; history trails are appended in order.
        for item in reversed(items):
            item_size = encoded_size(item) + 1
            if used + item_size > budget:
                break
            kept.append(item)
            used += item_size
        kept.reverse()
        marker = {TRUNCATED_FLAG: True, "_dropped": already_dropped + len(items) - len(kept)}
        return [marker, *kept]


def strip_list_marker(items: list[Any] | None) -> tuple[list[Any], int]:
    """Return list items without a truncation marker and the dropped count."""

    if not items:
        return [], 0
    head = items[0]
    if isinstance(head, dict) and head.get(TRUNCATED_FLAG):
        return list(items[1:]), int(head.get("_dropped") or 0)
    return list(items), 0
