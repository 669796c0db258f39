"""Provider-agnostic extraction of token and expiry from IAM responses.

Both the token exchange endpoint and the instance metadata service answer with
a JSON object, but the field names differ between them (and between API
versions). Each value is looked up through an ordered list of candidate names.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

from speechgate.common.errors import TemporaryError

from .types import FAR_FUTURE, TokenSnapshot

TOKEN_FIELDS: tuple[str, ...] = ("iamToken", "iam_token", "access_token")
EXPIRY_FIELDS: tuple[str, ...] = ("expiresAt", "expires_at", "expiresIn", "expires_in")

_DIGITS = re.compile(r"[0-9]+")
# datetime.fromisoformat keeps at most microseconds; IAM sends nanoseconds
_EXCESS_FRACTION = re.compile(r"(\.[0-9]{6})[0-9]+")


def first_string(payload: Mapping[str, Any] | None, keys: Sequence[str]) -> str:
    """Return the first non-blank value among ``keys``, rendered as text.

    Raises:
        TemporaryError: If the payload is missing or carries none of the keys.
    """
    if not isinstance(payload, Mapping):
        raise TemporaryError()
    for key in keys:
        value = payload.get(key)
        if value is None:
            continue
        text = str(value)
        if text.strip():
            return text
    raise TemporaryError()


def _seconds_from(now: datetime, seconds: int | float) -> datetime:
    try:
        return now + timedelta(seconds=int(seconds))
    except (OverflowError, ValueError):
        return FAR_FUTURE


def parse_timestamp(text: str) -> datetime:
    """Parse an RFC 3339 timestamp; naive values are taken as UTC."""
    normalized = _EXCESS_FRACTION.sub(r"\1", text.strip())
    if normalized.endswith(("Z", "z")):
        normalized = normalized[:-1] + "+00:00"
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_expires_at(
    payload: Mapping[str, Any] | None,
    keys: Sequence[str],
    now: datetime,
) -> datetime:
    """Resolve the expiry moment from the first usable field among ``keys``.

    Numbers are seconds from ``now``. Strings made only of digits are also
    seconds from ``now``; any other string must be an RFC 3339 timestamp.
    Unparseable strings are skipped in favour of the next candidate.

    This is a heuristic: an absolute Unix timestamp sent as a number would be
    read as a (very long) relative TTL. No known endpoint does that, so the
    ambiguity is accepted rather than guessed around.

    Raises:
        TemporaryError: If no candidate yields an expiry.
    """
    if not isinstance(payload, Mapping):
        raise TemporaryError()
    for key in keys:
        value = payload.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return _seconds_from(now, value)
        if isinstance(value, str) and value.strip():
            text = value.strip()
            if _DIGITS.fullmatch(text):
                return _seconds_from(now, int(text))
            try:
                return parse_timestamp(text)
            except ValueError:
                continue
    raise TemporaryError()


def snapshot_from_response(payload: Any, now: datetime) -> TokenSnapshot:
    """Build a :class:`TokenSnapshot` from a decoded IAM JSON response."""
    token = first_string(payload, TOKEN_FIELDS)
    expires_at = parse_expires_at(payload, EXPIRY_FIELDS, now)
    return TokenSnapshot(value=token, expires_at=expires_at)


__all__ = [
    "TOKEN_FIELDS",
    "EXPIRY_FIELDS",
    "first_string",
    "parse_timestamp",
    "parse_expires_at",
    "snapshot_from_response",
]
