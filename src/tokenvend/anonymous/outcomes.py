"""Outcome values reported by the anonymous token service."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fastapi import status

from ..common.schemas import SignedPayload


class Outcome(str, Enum):
    REGISTERED = "registered"
    VALID = "valid"
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"
    STALE = "stale"
    UNAUTHORIZED = "unauthorized"
    CREDENTIAL_UNAVAILABLE = "credential_unavailable"
    PACKAGING_ERROR = "packaging_error"
    REGISTRY_UNAVAILABLE = "registry_unavailable"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]

    @property
    def is_success(self) -> bool:
        return self in (Outcome.REGISTERED, Outcome.VALID)

    @property
    def is_server_fault(self) -> bool:
        return self.http_status >= 500


_HTTP_STATUS: dict[Outcome, int] = {
    Outcome.REGISTERED: status.HTTP_200_OK,
    Outcome.VALID: status.HTTP_200_OK,
    Outcome.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    Outcome.CONFLICT: status.HTTP_409_CONFLICT,
    Outcome.STALE: status.HTTP_408_REQUEST_TIMEOUT,
    Outcome.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    Outcome.CREDENTIAL_UNAVAILABLE: status.HTTP_500_INTERNAL_SERVER_ERROR,
    Outcome.PACKAGING_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
    Outcome.REGISTRY_UNAVAILABLE: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

# Fixed, cause-free messages. UNAUTHORIZED in particular must read the same
# for an unknown device and for a bad signature.
DETAILS: dict[Outcome, str] = {
    Outcome.REGISTERED: "Device registered",
    Outcome.VALID: "Request valid",
    Outcome.VALIDATION_ERROR: "Invalid request parameters",
    Outcome.CONFLICT: "Device already registered",
    Outcome.STALE: "Request timestamp outside the allowed window",
    Outcome.UNAUTHORIZED: "Request signature not accepted",
    Outcome.CREDENTIAL_UNAVAILABLE: "Internal server error",
    Outcome.PACKAGING_ERROR: "Internal server error",
    Outcome.REGISTRY_UNAVAILABLE: "Internal server error",
}


@dataclass(frozen=True)
class TokenResult:
    outcome: Outcome
    payload: Optional[SignedPayload] = None
