"""Shared data models for the token vending machine."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


PAYLOAD_VERSION = 1


class DeviceRegistration(BaseModel):
    """Body of a device registration call."""

    uid: str
    key: str


class TokenRequest(BaseModel):
    """Signed token request exactly as transported by the device."""

    uid: str
    timestamp: str
    signature: str


class Credentials(BaseModel):
    """Short-lived cloud credentials issued by the credential authority."""

    model_config = ConfigDict(frozen=True)

    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: datetime


class SignedPayload(BaseModel):
    """Credentials packaged for a single device.

    ``access_key_id`` and ``expiration`` travel in clear; the secret access
    key and session token are only present inside ``ciphertext``.
    """

    model_config = ConfigDict(populate_by_name=True)

    version: int = PAYLOAD_VERSION
    access_key_id: str = Field(alias="accessKeyId")
    expiration: datetime
    nonce: str
    ciphertext: str

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
