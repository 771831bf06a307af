"""Identifier syntax: AT URIs, record keys that are TIDs, and time sanity."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

__all__ = [
    "ATURI",
    "InvalidSyntaxError",
    "in_range",
    "parse_aturi",
    "parse_tid",
    "uri_from_parts",
]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_TID_ALPHABET = "234567abcdefghijklmnopqrstuvwxyz"
_TID_RE = re.compile(r"^[234567abcdefghij][234567abcdefghijklmnopqrstuvwxyz]{12}$")

_ATURI_RE = re.compile(
    r"^at://(?P<authority>[a-zA-Z0-9._:%-]+)"
    r"(/(?P<collection>[a-zA-Z0-9.-]+)"
    r"(/(?P<rkey>[a-zA-Z0-9._~:@!$&%')(*+,;=-]+))?)?"
    r"(#(?P<fragment>/[a-zA-Z0-9._~:@!$&%')(*+,;=\-\[\]/\\]*))?$"
)
_DID_RE = re.compile(r"^did:[a-z]+:[a-zA-Z0-9._:%-]*[a-zA-Z0-9._-]$")
_HANDLE_RE = re.compile(
    r"^([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+"
    r"[a-zA-Z]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"
)

_MAX_ATURI_LEN = 8 * 1024
_MAX_DID_LEN = 2 * 1024
_MAX_HANDLE_LEN = 253

_PAST_LIMIT = timedelta(days=365 * 5)
_FUTURE_LIMIT = timedelta(days=200)


class InvalidSyntaxError(ValueError):
    """Raised when an identifier does not have the expected syntax."""


@dataclass(frozen=True)
class ATURI:
    """The parts of an ``at://`` URI."""

    authority: str
    collection: str = ""
    rkey: str = ""
    fragment: str = ""


def uri_from_parts(did: str, collection: str, rkey: str) -> str:
    """Build the AT URI of a record."""
    return f"at://{did}/{collection}/{rkey}"


def parse_tid(rkey: str) -> datetime:
    """Return the timestamp encoded in a TID record key."""
    if not _TID_RE.match(rkey):
        raise InvalidSyntaxError(f"invalid TID: {rkey!r}")
    value = 0
    for char in rkey:
        value = value * 32 + _TID_ALPHABET.index(char)
    return _EPOCH + timedelta(microseconds=value >> 10)


def _check_authority(authority: str) -> None:
    if authority.startswith("did:"):
        if len(authority) <= _MAX_DID_LEN and _DID_RE.match(authority):
            return
    elif len(authority) <= _MAX_HANDLE_LEN and _HANDLE_RE.match(authority):
        return
    raise InvalidSyntaxError(f"AT URI authority is neither a DID nor a handle: {authority!r}")


def parse_aturi(uri: str) -> ATURI:
    """Parse an ``at://`` URI, checking that its authority is a DID or handle."""
    if len(uri) > _MAX_ATURI_LEN:
        raise InvalidSyntaxError("AT URI is too long")
    match = _ATURI_RE.match(uri)
    if match is None:
        raise InvalidSyntaxError(f"invalid AT URI: {uri!r}")
    authority = match.group("authority")
    _check_authority(authority)
    return ATURI(
        authority=authority,
        collection=match.group("collection") or "",
        rkey=match.group("rkey") or "",
        fragment=match.group("fragment") or "",
    )


def in_range(t: datetime, now: datetime | None = None) -> bool:
    """Whether ``t`` is at most five years before or 200 days after ``now``."""
    if now is None:
        now = datetime.now(timezone.utc)
    if t < now:
        return now - t <= _PAST_LIMIT
    return t - now <= _FUTURE_LIMIT