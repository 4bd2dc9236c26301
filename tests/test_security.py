"""Tests for request signing and freshness helpers."""

from __future__ import annotations

import base64
import hashlib
import hmac
from datetime import datetime, timedelta, timezone

import pytest

from tokenvend.common.security import (
    format_timestamp,
    is_timestamp_fresh,
    is_valid_identifier,
    is_valid_key,
    parse_timestamp,
    sign_timestamp,
    verify_signature,
)


WINDOW = timedelta(minutes=15)
NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "offset",
    [timedelta(0), -WINDOW, WINDOW, timedelta(minutes=-3), timedelta(minutes=14, seconds=59)],
)
def test_timestamp_within_window_is_fresh(offset: timedelta) -> None:
    assert is_timestamp_fresh(format_timestamp(NOW + offset), now=NOW, window=WINDOW) is True


@pytest.mark.parametrize("offset", [-(WINDOW + timedelta(seconds=1)), WINDOW + timedelta(seconds=1)])
def test_timestamp_just_outside_window_is_stale(offset: timedelta) -> None:
    assert is_timestamp_fresh(format_timestamp(NOW + offset), now=NOW, window=WINDOW) is False


@pytest.mark.parametrize("value", ["", "   ", "yesterday", "2024-13-45T99:00:00Z", "1704110400"])
def test_unparseable_timestamp_is_not_fresh(value: str) -> None:
    assert is_timestamp_fresh(value, now=NOW, window=WINDOW) is False


def test_timestamp_accepts_offsets_and_naive_values() -> None:
    assert is_timestamp_fresh("2024-01-01T13:00:00+01:00", now=NOW, window=WINDOW) is True
    assert is_timestamp_fresh("2024-01-01T12:00:00", now=NOW, window=WINDOW) is True
    assert is_timestamp_fresh(NOW.replace(tzinfo=None), now=NOW, window=WINDOW) is True


def test_parse_timestamp_reads_trailing_z_as_utc() -> None:
    parsed = parse_timestamp("2024-01-01T00:00:00Z")
    assert parsed == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp("garbage") is None


def test_sign_timestamp_is_base64_hmac_sha256() -> None:
    expected = base64.b64encode(
        hmac.new(b"secretABC", b"2024-01-01T00:00:00Z", hashlib.sha256).digest()
    ).decode()
    assert sign_timestamp("secretABC", "2024-01-01T00:00:00Z") == expected


def test_verify_signature_accepts_matching_signature() -> None:
    signature = sign_timestamp("secretABC", "2024-01-01T00:00:00Z")
    assert verify_signature("secretABC", "2024-01-01T00:00:00Z", signature) is True


def test_verify_signature_rejects_mismatch_at_any_position() -> None:
    timestamp = "2024-01-01T00:00:00Z"
    signature = sign_timestamp("secretABC", timestamp)
    for index in range(len(signature)):
        replacement = "A" if signature[index] != "A" else "B"
        tampered = signature[:index] + replacement + signature[index + 1 :]
        assert verify_signature("secretABC", timestamp, tampered) is False


@pytest.mark.parametrize("length", [0, 1, 43, 45, 200])
def test_verify_signature_rejects_other_lengths(length: int) -> None:
    timestamp = "2024-01-01T00:00:00Z"
    signature = (sign_timestamp("secretABC", timestamp) * 5)[:length]
    assert verify_signature("secretABC", timestamp, signature) is False


def test_verify_signature_handles_non_ascii_input() -> None:
    assert verify_signature("secretABC", "2024-01-01T00:00:00Z", "ünïcödé☃") is False


@pytest.mark.parametrize("signature", ["", "anything", None])
def test_verify_signature_fails_closed_without_key(signature) -> None:
    assert verify_signature(None, "2024-01-01T00:00:00Z", signature) is False


def test_verify_signature_fails_closed_even_for_empty_key_signature() -> None:
    timestamp = "2024-01-01T00:00:00Z"
    assert verify_signature(None, timestamp, sign_timestamp("", timestamp)) is False


def test_verify_signature_rejects_wrong_key() -> None:
    timestamp = "2024-01-01T00:00:00Z"
    assert verify_signature("other-key", timestamp, sign_timestamp("secretABC", timestamp)) is False


def test_identifier_format() -> None:
    assert is_valid_identifier("device-0123456789abcdef-0001") is True
    assert is_valid_identifier("short") is False
    assert is_valid_identifier("x" * 128) is False
    assert is_valid_identifier("device 0123456789abcdef 0001") is False
    assert is_valid_identifier("device-0123456789abcdef-0001\n") is False
    assert is_valid_identifier(None) is False
    assert is_valid_identifier("dev-1", min_length=2, max_length=10) is True


def test_key_format() -> None:
    assert is_valid_key("k3y-" + "s3cr3t" * 5) is True
    assert is_valid_key("too-short") is False
    assert is_valid_key("with whitespace inside the key value") is False
    assert is_valid_key("tab\tseparated-key-material-here") is False
    assert is_valid_key("") is False
