"""Packaging of issued credentials for a single device.

The secret access key and session token are sealed with AES-256-GCM under a
key derived from the device secret. The access key id, expiry and payload
version stay readable and are bound to the ciphertext as associated data, so
none of them can be swapped between payloads.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from datetime import datetime, timezone
from os import urandom
from typing import Any, Mapping

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import ValidationError

from ..common.schemas import PAYLOAD_VERSION, Credentials, SignedPayload

NONCE_BYTES = 12


class PackagingError(Exception):
    """Credentials could not be sealed for, or opened by, a device."""


def derive_key(secret_key: str) -> bytes:
    if not secret_key:
        raise PackagingError("device key is empty")
    return hashlib.sha256(secret_key.encode("utf-8")).digest()


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _associated_data(version: int, access_key_id: str, expiration: datetime) -> bytes:
    return f"{version}|{access_key_id}|{_as_utc(expiration).isoformat()}".encode("utf-8")


def package_credentials(credentials: Credentials, secret_key: str) -> SignedPayload:
    key = derive_key(secret_key)
    expiration = _as_utc(credentials.expiration)
    try:
        plaintext = json.dumps(
            {
                "secretAccessKey": credentials.secret_access_key,
                "sessionToken": credentials.session_token,
            },
            separators=(",", ":"),
        ).encode("utf-8")
        nonce = urandom(NONCE_BYTES)
        sealed = AESGCM(key).encrypt(
            nonce,
            plaintext,
            _associated_data(PAYLOAD_VERSION, credentials.access_key_id, expiration),
        )
    except (TypeError, ValueError) as exc:
        raise PackagingError(f"unable to seal credentials: {exc}") from exc
    return SignedPayload(
        version=PAYLOAD_VERSION,
        access_key_id=credentials.access_key_id,
        expiration=expiration,
        nonce=base64.b64encode(nonce).decode("ascii"),
        ciphertext=base64.b64encode(sealed).decode("ascii"),
    )


def unpackage_credentials(payload: SignedPayload | Mapping[str, Any], secret_key: str) -> Credentials:
    if not isinstance(payload, SignedPayload):
        try:
            payload = SignedPayload.model_validate(payload)
        except ValidationError as exc:
            raise PackagingError("malformed payload") from exc
    if payload.version != PAYLOAD_VERSION:
        raise PackagingError(f"unsupported payload version {payload.version}")

    key = derive_key(secret_key)
    try:
        nonce = base64.b64decode(payload.nonce, validate=True)
        sealed = base64.b64decode(payload.ciphertext, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise PackagingError("payload is not valid base64") from exc
    if len(nonce) != NONCE_BYTES:
        raise PackagingError("bad nonce length")

    try:
        plaintext = AESGCM(key).decrypt(
            nonce,
            sealed,
            _associated_data(payload.version, payload.access_key_id, payload.expiration),
        )
    except InvalidTag as exc:
        raise PackagingError("payload does not open with this key") from exc

    try:
        secrets = json.loads(plaintext.decode("utf-8"))
        return Credentials(
            access_key_id=payload.access_key_id,
            secret_access_key=secrets["secretAccessKey"],
            session_token=secrets["sessionToken"],
            expiration=_as_utc(payload.expiration),
        )
    except (ValueError, KeyError, TypeError) as exc:
        raise PackagingError("sealed credentials are malformed") from exc
