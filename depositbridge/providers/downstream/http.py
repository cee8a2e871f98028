from __future__ import annotations

import logging
from typing import Any

import httpx

from depositbridge.core.config import Settings
from depositbridge.core.errors import DownstreamPermanentError, DownstreamTransientError
from depositbridge.providers.downstream.base import SubmitOutcome


logger = logging.getLogger(__name__)

_AUTH_REJECTED = frozenset({401, 403})


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, dict) and isinstance(value.get("message"), str):
                return value["message"]
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            return "; ".join(str(item) for item in errors)
    return response.text[:500]


class HttpDownstreamClient:
    """Submits deposit payloads to the registration service.

    Submission is not idempotent, so there is no in-call retry; retries happen
    through the pending queue where the classifier has the final say.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._base_url = settings.downstream_base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.ext_call_timeout_ms / 1000.0)

    async def submit(self, payload: dict[str, Any]) -> SubmitOutcome:
        # Rejections come back as outcomes with their message; only transport and auth errors raise.
        try:
            response = await self._client.post(f"{self._base_url}/create", json=payload)
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            # Transport failures never reached a decision downstream.
            logger.warning("downstream_submit_transport_error error=%s", type(exc).__name__)
            raise DownstreamTransientError(
                f"Network error contacting downstream: {exc}",
                classification={"classification": "transient", "category": "network"},
            ) from exc

        if response.is_success:
            try:
                body = response.json()
            except ValueError:
                body = {}
            body = body if isinstance(body, dict) else {}
            if body.get("success") is False:
                return SubmitOutcome(
                    success=False,
                    message=str(body.get("error") or body.get("message") or "Downstream reported failure"),
                    status_code=response.status_code,
                )
            correlation_ids = {
                key: body[key] for key in ("batch_id", "dan", "deposit_id", "tenancy_id") if key in body
            }
            return SubmitOutcome(success=True, correlation_ids=correlation_ids, status_code=response.status_code)

        message = f"HTTP {response.status_code}: {_error_text(response)}"
        if response.status_code in _AUTH_REJECTED:
            # Credentials are refused before any validation; resubmitting cannot succeed.
            logger.warning("downstream_submit_auth_rejected status_code=%s", response.status_code)
            raise DownstreamPermanentError(
                message,
                classification={"classification": "permanent", "category": "authentication"},
            )
        return SubmitOutcome(success=False, message=message, status_code=response.status_code)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
