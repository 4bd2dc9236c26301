"""Credential authorities that mint short-lived cloud credentials."""

from __future__ import annotations

import asyncio
import re
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol, runtime_checkable

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from ..common.observability import sanitize_for_log
from ..common.schemas import Credentials
from ..common.settings import TokenVendingSettings

LOGGER = structlog.get_logger("tokenvend.authority")

_FEDERATED_NAME_INVALID = re.compile(r"[^\w+=,.@-]", re.ASCII)
_FEDERATED_NAME_MAX = 32
_FEDERATED_NAME_MIN = 2


@runtime_checkable
class CredentialAuthority(Protocol):
    async def issue(self, identifier: str) -> Optional[Credentials]:
        """Return fresh credentials for the device, or None when none could be issued."""


def federated_user_name(identifier: str) -> str:
    """Derive a valid STS federated user name from a device identifier."""

    name = _FEDERATED_NAME_INVALID.sub("-", identifier)[:_FEDERATED_NAME_MAX]
    if len(name) < _FEDERATED_NAME_MIN:
        name = name.ljust(_FEDERATED_NAME_MIN, "-")
    return name


class StsCredentialAuthority:
    """Issues federation tokens through AWS STS."""

    def __init__(
        self,
        *,
        policy: str,
        duration_seconds: int,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        client: Any = None,
    ) -> None:
        if client is None:
            session = boto3.session.Session()
            client_args: dict[str, Optional[str]] = {
                "endpoint_url": endpoint_url,
                "region_name": region_name,
            }
            client = session.client("sts", **{k: v for k, v in client_args.items() if v})
        self._client = client
        self._policy = policy
        self._duration_seconds = duration_seconds

    @classmethod
    def from_settings(cls, settings: TokenVendingSettings) -> "StsCredentialAuthority":
        return cls(
            policy=settings.resolved_federation_policy(),
            duration_seconds=settings.token_duration_seconds,
            region_name=settings.aws_region,
            endpoint_url=settings.sts_endpoint_url,
        )

    async def issue(self, identifier: str) -> Optional[Credentials]:
        name = federated_user_name(identifier)
        try:
            response = await asyncio.to_thread(
                self._client.get_federation_token,
                Name=name,
                Policy=self._policy,
                DurationSeconds=self._duration_seconds,
            )
        except ClientError as exc:
            error_code = exc.response.get("Error", {}).get("Code", "")
            LOGGER.error(
                "Federation token request rejected",
                uid=sanitize_for_log(identifier),
                error_code=error_code,
            )
            return None
        except BotoCoreError as exc:
            LOGGER.error(
                "Federation token request failed",
                uid=sanitize_for_log(identifier),
                error=str(exc),
            )
            return None

        raw = response.get("Credentials") if isinstance(response, dict) else None
        if not raw:
            LOGGER.error("Federation token response missing credentials", uid=sanitize_for_log(identifier))
            return None
        expiration = raw["Expiration"]
        if isinstance(expiration, str):
            expiration = datetime.fromisoformat(expiration.replace("Z", "+00:00"))
        return Credentials(
            access_key_id=raw["AccessKeyId"],
            secret_access_key=raw["SecretAccessKey"],
            session_token=raw["SessionToken"],
            expiration=expiration,
        )


_KEY_ID_ALPHABET = string.ascii_uppercase + string.digits


class LocalCredentialAuthority:
    """Mints random, provider-shaped credentials without calling any cloud.

    For development and offline deployments; the credentials are not usable
    against a real provider.
    """

    def __init__(self, *, duration_seconds: int = 43200) -> None:
        self._duration = timedelta(seconds=duration_seconds)

    @classmethod
    def from_settings(cls, settings: TokenVendingSettings) -> "LocalCredentialAuthority":
        return cls(duration_seconds=settings.token_duration_seconds)

    async def issue(self, identifier: str) -> Optional[Credentials]:
        access_key_id = "ASIA" + "".join(secrets.choice(_KEY_ID_ALPHABET) for _ in range(16))
        return Credentials(
            access_key_id=access_key_id,
            secret_access_key=secrets.token_urlsafe(30),
            session_token=secrets.token_urlsafe(96),
            expiration=(datetime.now(timezone.utc) + self._duration).replace(microsecond=0),
        )


def build_credential_authority(settings: TokenVendingSettings) -> CredentialAuthority:
    if settings.credential_backend == "sts":
        LOGGER.info("Using STS credential authority", region=settings.aws_region)
        return StsCredentialAuthority.from_settings(settings)
    LOGGER.warning("Using local credential authority; issued credentials are not valid upstream")
    return LocalCredentialAuthority.from_settings(settings)
