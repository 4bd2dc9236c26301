"""Application configuration for the token vending machine."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_FEDERATION_POLICY = json.dumps(
    {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": ["s3:*", "sdb:*", "sns:*", "sqs:*", "dynamodb:*"],
                "Resource": "*",
            }
        ],
    },
    separators=(",", ":"),
)


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class TokenVendingSettings(BaseSettings):
    """Runtime settings for the anonymous token vending service."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    device_registry_url: str = env_field("memory://", "TVM_DEVICE_REGISTRY_URL")
    credential_backend: Literal["sts", "local"] = env_field("local", "TVM_CREDENTIAL_BACKEND")
    aws_region: Optional[str] = env_field(None, "TVM_AWS_REGION")
    sts_endpoint_url: Optional[str] = env_field(None, "TVM_STS_ENDPOINT_URL")
    federation_policy: str = env_field(DEFAULT_FEDERATION_POLICY, "TVM_FEDERATION_POLICY")
    federation_policy_path: Optional[Path] = env_field(None, "TVM_FEDERATION_POLICY_PATH")
    token_duration_seconds: int = Field(
        43200,
        ge=900,
        le=129600,
        validation_alias="TVM_TOKEN_DURATION_SECONDS",
    )
    timestamp_window_seconds: int = Field(900, ge=0, validation_alias="TVM_TIMESTAMP_WINDOW_SECONDS")
    uid_min_length: int = env_field(24, "TVM_UID_MIN_LENGTH")
    uid_max_length: int = env_field(127, "TVM_UID_MAX_LENGTH")
    key_min_length: int = env_field(24, "TVM_KEY_MIN_LENGTH")
    key_max_length: int = env_field(127, "TVM_KEY_MAX_LENGTH")
    log_level: str = env_field("INFO", "TVM_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "TVM_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "TVM_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = Field(0.1, ge=0.0, le=1.0, validation_alias="TVM_OTEL_SAMPLER_RATIO")

    @field_validator("device_registry_url", mode="before")
    @classmethod
    def _normalize_registry_url(cls, value):
        if isinstance(value, Path):
            value = str(value)
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return "memory://"
            if "://" not in value:
                path = Path(value).expanduser().resolve()
                return f"sqlite+aiosqlite:///{path.as_posix()}"
        return value

    @field_validator("credential_backend", mode="before")
    @classmethod
    def _normalize_backend(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @model_validator(mode="after")
    def _check_length_bounds(self) -> "TokenVendingSettings":
        if not 0 < self.uid_min_length <= self.uid_max_length:
            raise ValueError("uid length bounds must satisfy 0 < min <= max")
        if not 0 < self.key_min_length <= self.key_max_length:
            raise ValueError("key length bounds must satisfy 0 < min <= max")
        return self

    def resolved_federation_policy(self) -> str:
        if self.federation_policy_path is not None:
            return self.federation_policy_path.read_text(encoding="utf-8").strip()
        return self.federation_policy
