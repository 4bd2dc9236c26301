"""Device-side client for the anonymous token vending machine."""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Optional

import httpx

from .anonymous.outcomes import Outcome
from .anonymous.packaging import unpackage_credentials
from .common.schemas import Credentials
from .common.security import format_timestamp, sign_timestamp


class TokenRequestError(Exception):
    """The vending machine answered a device call with a failure.

    ``outcome`` is None when the response does not identify one, such as a
    500 from a proxy in front of the service.
    """

    def __init__(self, outcome: Optional[Outcome], status_code: int, detail: str = "") -> None:
        label = outcome.value if outcome is not None else "http_error"
        super().__init__(f"{label} ({status_code}): {detail}" if detail else f"{label} ({status_code})")
        self.outcome = outcome
        self.status_code = status_code
        self.detail = detail


def generate_device_key(length: int = 48) -> str:
    """Random printable secret suitable for device registration."""

    return secrets.token_urlsafe(length)[:length]


def _outcome_from_response(response: httpx.Response) -> TokenRequestError:
    code = None
    detail = ""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        code = body.get("code")
        detail = str(body.get("detail") or "")
    try:
        outcome: Optional[Outcome] = Outcome(code)
    except ValueError:
        # A bare status only names an outcome when exactly one failure uses it.
        candidates = [
            candidate
            for candidate in Outcome
            if not candidate.is_success and candidate.http_status == response.status_code
        ]
        outcome = candidates[0] if len(candidates) == 1 else None
    return TokenRequestError(outcome, response.status_code, detail)


class DeviceClient:
    def __init__(
        self,
        base_url: str,
        uid: str,
        key: str,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self.uid = uid
        self._key = key
        self._client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout

    async def __aenter__(self) -> "DeviceClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def register(self) -> Outcome:
        """Register this device; ``CONFLICT`` means it already was."""

        response = await self._http().post(
            f"{self._base_url}/registerdevice",
            json={"uid": self.uid, "key": self._key},
        )
        if response.status_code == 200:
            return Outcome.REGISTERED
        error = _outcome_from_response(response)
        if error.outcome is Outcome.CONFLICT:
            return Outcome.CONFLICT
        raise error

    async def get_token(self, *, now: Optional[datetime] = None) -> Credentials:
        timestamp = format_timestamp(now or datetime.now(timezone.utc))
        response = await self._http().get(
            f"{self._base_url}/gettoken",
            params={
                "uid": self.uid,
                "timestamp": timestamp,
                "signature": sign_timestamp(self._key, timestamp),
            },
        )
        if response.status_code != 200:
            raise _outcome_from_response(response)
        return unpackage_credentials(response.json(), self._key)
