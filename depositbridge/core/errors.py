from __future__ import annotations

from typing import Any


class DepositBridgeError(Exception):
    """Base error for depositbridge."""


class ConfigurationError(DepositBridgeError):
    """Missing or invalid configuration."""


class JobNotFoundError(DepositBridgeError):
    """No active or archived job matches the identifier."""


class SourceFetchError(DepositBridgeError):
    """Source system fetch failed; always transient."""


class DataIncompleteFatal(DepositBridgeError):
    """Identity or structural fields are missing; waiting will not fix the record."""

    def __init__(self, message: str, missing_fields: dict[str, list[str]] | None = None) -> None:
        super().__init__(message)
        self.missing_fields = missing_fields or {}


class DataIncompleteDeferrable(DepositBridgeError):
    """Business fields are missing but may arrive later.

    Raised only inside the executor to unwind to the deferral branch; it is a
    valid outcome, never surfaced to callers as an error.
    """

    def __init__(self, summary: str, missing_fields: dict[str, list[str]]) -> None:
        super().__init__(summary)
        self.summary = summary
        self.missing_fields = missing_fields


class PayloadBuildError(DepositBridgeError):
    """Source data violates a downstream-required invariant."""


class DownstreamError(DepositBridgeError):
    """Downstream submission failed."""

    def __init__(self, message: str, classification: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.classification = classification or {}


class DownstreamPermanentError(DownstreamError):
    """Downstream rejected the submission; retrying will not help."""


class DownstreamTransientError(DownstreamError):
    """Downstream failure that may succeed on a later attempt."""


class LeaseExpiredError(DepositBridgeError):
    """The worker no longer holds the lease on a job."""
