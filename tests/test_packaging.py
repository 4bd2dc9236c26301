from __future__ import annotations

import base64
import json
from datetime import datetime, timezone

import pytest

from tokenvend.anonymous.packaging import (
    PackagingError,
    derive_key,
    package_credentials,
    unpackage_credentials,
)
from tokenvend.common.schemas import Credentials, SignedPayload


KEY = "secretABC"

CREDENTIALS = Credentials(
    access_key_id="ASIAEXAMPLEKEY123456",
    secret_access_key="wJalrXUtnFEMI/K7MDENG/bPxRfiCYEXAMPLEKEY",
    session_token="FwoGZXIvYXdzEJr//////////wEaDExampleSessionToken==",
    expiration=datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
)


def test_package_round_trip() -> None:
    payload = package_credentials(CREDENTIALS, KEY)
    assert unpackage_credentials(payload, KEY) == CREDENTIALS


def test_package_round_trip_through_wire_format() -> None:
    wire = json.loads(json.dumps(package_credentials(CREDENTIALS, KEY).to_wire()))
    assert unpackage_credentials(wire, KEY) == CREDENTIALS


def test_wire_format_keeps_secrets_out_of_cleartext() -> None:
    wire = package_credentials(CREDENTIALS, KEY).to_wire()
    assert set(wire) == {"version", "accessKeyId", "expiration", "nonce", "ciphertext"}
    assert wire["accessKeyId"] == CREDENTIALS.access_key_id
    rendered = json.dumps(wire)
    assert CREDENTIALS.secret_access_key not in rendered
    assert CREDENTIALS.session_token not in rendered


def test_each_package_uses_a_fresh_nonce() -> None:
    first = package_credentials(CREDENTIALS, KEY)
    second = package_credentials(CREDENTIALS, KEY)
    assert first.nonce != second.nonce
    assert first.ciphertext != second.ciphertext


def test_unpackage_with_wrong_key_fails() -> None:
    payload = package_credentials(CREDENTIALS, KEY)
    with pytest.raises(PackagingError):
        unpackage_credentials(payload, "secretABD")


def test_unpackage_detects_swapped_cleartext_fields() -> None:
    payload = package_credentials(CREDENTIALS, KEY)
    forged = payload.model_copy(update={"access_key_id": "ASIAOTHERKEY00000000"})
    with pytest.raises(PackagingError):
        unpackage_credentials(forged, KEY)

    later = payload.model_copy(update={"expiration": datetime(2030, 1, 1, tzinfo=timezone.utc)})
    with pytest.raises(PackagingError):
        unpackage_credentials(later, KEY)


def test_unpackage_detects_tampered_ciphertext() -> None:
    payload = package_credentials(CREDENTIALS, KEY)
    sealed = bytearray(base64.b64decode(payload.ciphertext))
    sealed[0] ^= 0x01
    tampered = payload.model_copy(update={"ciphertext": base64.b64encode(bytes(sealed)).decode()})
    with pytest.raises(PackagingError):
        unpackage_credentials(tampered, KEY)


@pytest.mark.parametrize(
    "wire",
    [
        {},
        {"accessKeyId": "A", "expiration": "not-a-date", "nonce": "", "ciphertext": ""},
        {"accessKeyId": "A", "expiration": "2024-01-01T00:00:00Z", "nonce": "***", "ciphertext": "***"},
        {"accessKeyId": "A", "expiration": "2024-01-01T00:00:00Z", "nonce": "AAAA", "ciphertext": "AAAA"},
    ],
)
def test_unpackage_rejects_malformed_payloads(wire: dict) -> None:
    with pytest.raises(PackagingError):
        unpackage_credentials(wire, KEY)


def test_unpackage_rejects_unknown_version() -> None:
    payload = package_credentials(CREDENTIALS, KEY)
    with pytest.raises(PackagingError):
        unpackage_credentials(payload.model_copy(update={"version": 99}), KEY)


def test_package_rejects_empty_key() -> None:
    with pytest.raises(PackagingError):
        package_credentials(CREDENTIALS, "")


def test_naive_expiration_is_treated_as_utc() -> None:
    naive = CREDENTIALS.model_copy(update={"expiration": datetime(2024, 1, 1, 12, 0)})
    opened = unpackage_credentials(package_credentials(naive, KEY), KEY)
    assert opened.expiration == CREDENTIALS.expiration


def test_derive_key_is_32_bytes() -> None:
    assert len(derive_key(KEY)) == 32
    assert derive_key(KEY) != derive_key(KEY + "x")


def test_signed_payload_accepts_field_names_and_aliases() -> None:
    by_alias = SignedPayload.model_validate(
        {"accessKeyId": "A", "expiration": "2024-01-01T00:00:00Z", "nonce": "n", "ciphertext": "c"}
    )
    by_name = SignedPayload(access_key_id="A", expiration=by_alias.expiration, nonce="n", ciphertext="c")
    assert by_alias == by_name
