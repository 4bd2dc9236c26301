"""Anonymous-mode token vending: device registration and signed token requests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import structlog

from ..common.observability import sanitize_for_log
from ..common.security import DEFAULT_TIMESTAMP_WINDOW, is_timestamp_fresh, verify_signature
from .authority import CredentialAuthority
from .outcomes import Outcome, TokenResult
from .packaging import package_credentials
from .registry import DeviceRegistry


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AnonymousTokenService:
    """Exchanges a proven device identity for packaged short-lived credentials.

    Every call is self-contained: the service keeps no per-device or
    per-request state, and every failure comes back as an ``Outcome`` rather
    than an exception. Identifier and key formats are checked by the caller
    before anything reaches this class.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        authority: CredentialAuthority,
        *,
        window: timedelta = DEFAULT_TIMESTAMP_WINDOW,
        clock: Callable[[], datetime] = _utc_now,
        logger: Any = None,
    ) -> None:
        self._registry = registry
        self._authority = authority
        self._window = window
        self._clock = clock
        self._log = logger or structlog.get_logger("tokenvend.anonymous")

    @property
    def window(self) -> timedelta:
        return self._window

    async def register_device(self, identifier: str, secret_key: str) -> Outcome:
        try:
            created = await self._registry.register(identifier, secret_key)
        except Exception as exc:  # noqa: BLE001 - any backend failure is an internal outcome
            self._log.error("Device registry write failed", uid=sanitize_for_log(identifier), error=str(exc))
            return Outcome.REGISTRY_UNAVAILABLE
        return Outcome.REGISTERED if created else Outcome.CONFLICT

    async def validate_token_request(
        self,
        identifier: str,
        signature: str,
        timestamp: str,
        *,
        now: Optional[datetime] = None,
    ) -> Outcome:
        current = now if now is not None else self._clock()
        if not is_timestamp_fresh(timestamp, now=current, window=self._window):
            return Outcome.STALE

        looked_up = await self._lookup(identifier)
        if isinstance(looked_up, Outcome):
            return looked_up
        if not verify_signature(looked_up, timestamp, signature):
            return Outcome.UNAUTHORIZED
        return Outcome.VALID

    async def issue_token(self, identifier: str) -> TokenResult:
        # The key is fetched again rather than carried over from validation.
        looked_up = await self._lookup(identifier)
        if isinstance(looked_up, Outcome):
            return TokenResult(looked_up)
        if looked_up is None:
            return TokenResult(Outcome.UNAUTHORIZED)
        key = looked_up

        try:
            credentials = await self._authority.issue(identifier)
        except Exception as exc:  # noqa: BLE001 - authority failures never reach the caller
            self._log.error("Credential authority failed", uid=sanitize_for_log(identifier), error=str(exc))
            return TokenResult(Outcome.CREDENTIAL_UNAVAILABLE)
        if credentials is None:
            return TokenResult(Outcome.CREDENTIAL_UNAVAILABLE)

        try:
            payload = package_credentials(credentials, key)
        except Exception as exc:  # noqa: BLE001 - PackagingError or an unexpected serializer failure
            self._log.error("Credential packaging failed", uid=sanitize_for_log(identifier), error=str(exc))
            return TokenResult(Outcome.PACKAGING_ERROR)
        return TokenResult(Outcome.VALID, payload)

    async def request_token(
        self,
        identifier: str,
        signature: str,
        timestamp: str,
        *,
        now: Optional[datetime] = None,
    ) -> TokenResult:
        outcome = await self.validate_token_request(identifier, signature, timestamp, now=now)
        if outcome is not Outcome.VALID:
            return TokenResult(outcome)
        return await self.issue_token(identifier)

    async def _lookup(self, identifier: str) -> Optional[str] | Outcome:
        try:
            return await self._registry.lookup_key(identifier)
        except Exception as exc:  # noqa: BLE001
            self._log.error("Device registry read failed", uid=sanitize_for_log(identifier), error=str(exc))
            return Outcome.REGISTRY_UNAVAILABLE
