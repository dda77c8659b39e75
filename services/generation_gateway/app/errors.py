from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class FailureKind(str, Enum):
    MISSING_CREDENTIAL = "missing_credential"
    INVALID_CREDENTIAL = "invalid_credential"
    INSUFFICIENT_SCOPE = "insufficient_scope"
    INSUFFICIENT_TIER = "insufficient_tier"
    CREDITS_EXHAUSTED = "credits_exhausted"
    INVALID_REQUEST = "invalid_request"
    QUOTA_EXCEEDED = "quota_exceeded"
    PROVIDER_AUTH_ERROR = "provider_auth_error"
    PROVIDER_ERROR = "provider_error"
    TRANSPORT_ERROR = "transport_error"
    NOT_FOUND = "not_found"
    PROVIDER_UNCONFIGURED = "provider_unconfigured"
    STYLES_UNAVAILABLE = "styles_unavailable"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class FailureSpec:
    status_code: int
    code: str
    retryable: bool = False


FAILURE_SPECS: dict[FailureKind, FailureSpec] = {
    FailureKind.MISSING_CREDENTIAL: FailureSpec(401, "UNAUTHORIZED"),
    FailureKind.INVALID_CREDENTIAL: FailureSpec(401, "INVALID_API_KEY"),
    FailureKind.INSUFFICIENT_SCOPE: FailureSpec(403, "INSUFFICIENT_SCOPE"),
    FailureKind.INSUFFICIENT_TIER: FailureSpec(403, "INSUFFICIENT_TIER"),
    FailureKind.CREDITS_EXHAUSTED: FailureSpec(429, "QUOTA_EXCEEDED"),
    FailureKind.INVALID_REQUEST: FailureSpec(400, "INVALID_REQUEST"),
    FailureKind.QUOTA_EXCEEDED: FailureSpec(429, "PROVIDER_QUOTA_EXCEEDED"),
    FailureKind.PROVIDER_AUTH_ERROR: FailureSpec(500, "PROVIDER_AUTH_ERROR"),
    FailureKind.PROVIDER_ERROR: FailureSpec(500, "EXTERNAL_API_ERROR"),
    FailureKind.TRANSPORT_ERROR: FailureSpec(503, "SERVICE_UNAVAILABLE", retryable=True),
    FailureKind.NOT_FOUND: FailureSpec(404, "GENERATION_NOT_FOUND"),
    FailureKind.PROVIDER_UNCONFIGURED: FailureSpec(503, "PROVIDER_NOT_CONFIGURED"),
    FailureKind.STYLES_UNAVAILABLE: FailureSpec(503, "STYLES_UNAVAILABLE", retryable=True),
    FailureKind.STORE_UNAVAILABLE: FailureSpec(503, "KEY_STORE_UNAVAILABLE", retryable=True),
}


class GatewayError(Exception):
    """A failure scoped to one request or one poll.

    The kind decides the HTTP status, the stable code and whether the caller
    may simply try again.
    """

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        *,
        details: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details

    @property
    def spec(self) -> FailureSpec:
        return FAILURE_SPECS[self.kind]

    @property
    def status_code(self) -> int:
        return self.spec.status_code

    @property
    def code(self) -> str:
        return self.spec.code

    @property
    def retryable(self) -> bool:
        return self.spec.retryable

    def __repr__(self) -> str:
        return f"GatewayError({self.kind.value!r}, {self.message!r})"
