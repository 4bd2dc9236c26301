"""Request signing and freshness checks shared by the service and its clients."""

from __future__ import annotations

import base64
import hashlib
import hmac
import re
import string
from datetime import datetime, timedelta, timezone
from typing import Optional


DEFAULT_TIMESTAMP_WINDOW = timedelta(minutes=15)

_UID_PATTERN = re.compile(r"[A-Za-z0-9._:-]+")
_KEY_CHARACTERS = frozenset(string.ascii_letters + string.digits + string.punctuation)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """Render an instant the way devices are expected to send it."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: str | datetime) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC.

    Returns ``None`` for anything that cannot be read as an instant.
    """

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_timestamp_fresh(
    timestamp: str | datetime,
    *,
    now: Optional[datetime] = None,
    window: timedelta = DEFAULT_TIMESTAMP_WINDOW,
) -> bool:
    """Return True when ``|now - timestamp| <= window``.

    Early and late client clocks are tolerated alike. Unparseable timestamps
    are simply not fresh.
    """

    parsed = parse_timestamp(timestamp)
    if parsed is None:
        return False
    current = now if now is not None else _utc_now()
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    try:
        skew = abs(current - parsed)
    except OverflowError:
        return False
    return skew <= window


def sign_timestamp(key: str, timestamp: str) -> str:
    """Base64 HMAC-SHA256 of ``timestamp`` keyed with the device secret."""

    digest = hmac.new(key.encode("utf-8"), timestamp.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(key: Optional[str], timestamp: str, signature: str) -> bool:
    """Check a device signature in constant time.

    An unknown device (``key is None``) is rejected before any comparison.
    """

    if key is None:
        return False
    expected = sign_timestamp(key, timestamp)
    if not isinstance(signature, str):
        return False
    return hmac.compare_digest(
        expected.encode("utf-8"),
        signature.encode("utf-8", errors="surrogatepass"),
    )


def is_valid_identifier(uid: Optional[str], *, min_length: int = 24, max_length: int = 127) -> bool:
    if not uid or not (min_length <= len(uid) <= max_length):
        return False
    return bool(_UID_PATTERN.fullmatch(uid))


def is_valid_key(key: Optional[str], *, min_length: int = 24, max_length: int = 127) -> bool:
    if not key or not (min_length <= len(key) <= max_length):
        return False
    return all(ch in _KEY_CHARACTERS for ch in key)
