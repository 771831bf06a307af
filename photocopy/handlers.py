"""Turns firehose record creates and deletes into table rows."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

import cbor2
from dateutil import parser as dateparser

from photocopy.models import Delete, Follow, Interaction, Post, Record
from photocopy.syntax import InvalidSyntaxError, in_range, parse_aturi, parse_tid, uri_from_parts

__all__ = [
    "Inserters",
    "RecordError",
    "RecordHandler",
    "parse_time_from_record",
]

POST = "app.bsky.feed.post"
FOLLOW = "app.bsky.graph.follow"
LIKE = "app.bsky.feed.like"
REPOST = "app.bsky.feed.repost"
PROFILE = "app.bsky.actor.profile"
FEED_GENERATOR = "app.bsky.feed.generator"

_EMBED_RECORD = "app.bsky.embed.record"
_EMBED_RECORD_WITH_MEDIA = "app.bsky.embed.recordWithMedia"


class RecordError(ValueError):
    """Raised when a record cannot be decoded or lacks what its row needs."""


class _Sink(Protocol):
    def insert(self, event: Any) -> None: ...


@dataclass
class Inserters:
    """One inserter per destination table."""

    records: _Sink
    posts: _Sink
    follows: _Sink
    interactions: _Sink
    deletes: _Sink


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_any(value: Any) -> datetime:
    if not isinstance(value, str):
        raise RecordError(f"invalid timestamp: {value!r}")
    try:
        moment = dateparser.parse(value)
    except (ValueError, OverflowError) as exc:
        raise RecordError(f"invalid timestamp: {value!r}") from exc
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _rkey_time(rkey: str) -> datetime | None:
    if rkey == "self":
        return None
    try:
        return parse_tid(rkey)
    except InvalidSyntaxError:
        return None


def parse_time_from_record(
    kind: str, record: dict[str, Any], rkey: str, now: datetime | None = None
) -> datetime:
    """Choose a trustworthy creation time for a record of collection ``kind``."""
    if now is None:
        now = _utc_now()
    rkey_time = _rkey_time(rkey)

    if kind == POST:
        created = _parse_any(record.get("createdAt"))
        if in_range(created, now):
            return created
        if rkey_time is None or not in_range(rkey_time, now):
            return now
        return rkey_time
    if kind in (LIKE, REPOST):
        created = _parse_any(record.get("createdAt"))
        if in_range(created, now):
            return created
        if rkey_time is None:
            raise RecordError("failed to get a useful timestamp from record")
        return rkey_time
    if kind == PROFILE:
        # A profile's createdAt is often missing and never trustworthy.
        return now
    if rkey_time is not None and in_range(rkey_time, now):
        return rkey_time
    return now


def _decode(record_bytes: bytes) -> dict[str, Any]:
    try:
        record = cbor2.loads(record_bytes)
    except (cbor2.CBORDecodeError, ValueError, EOFError) as exc:
        raise RecordError(f"invalid record CBOR: {exc}") from exc
    if not isinstance(record, dict):
        raise RecordError("record must be a map")
    return record


def _ref_uri(ref: dict[str, Any]) -> tuple[str, str]:
    """Return the URI of a strong reference and the authority it names."""
    uri = ref.get("uri")
    if not isinstance(uri, str):
        raise RecordError("error parsing at-uri: missing uri")
    try:
        parsed = parse_aturi(uri)
    except InvalidSyntaxError as exc:
        raise RecordError(f"error parsing at-uri: {exc}") from exc
    return uri, parsed.authority


def _quoted_ref(embed: Any) -> dict[str, Any] | None:
    if not isinstance(embed, dict):
        return None
    embed_type = embed.get("$type")
    inner = embed.get("record")
    if embed_type == _EMBED_RECORD:
        return inner if isinstance(inner, dict) else None
    if embed_type == _EMBED_RECORD_WITH_MEDIA and isinstance(inner, dict):
        ref = inner.get("record")
        return ref if isinstance(ref, dict) else None
    return None


class RecordHandler:
    """Writes rows for created and deleted records to the given inserters."""

    def __init__(
        self,
        inserters: Inserters,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.inserters = inserters
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock

    def handle_create(
        self,
        record_bytes: bytes,
        indexed_at: str,
        rev: str,
        did: str,
        collection: str,
        rkey: str,
        cid: str,
        seq: str,
    ) -> None:
        """Store the raw record, then a typed row for posts, follows, likes and reposts."""
        indexed = _parse_any(indexed_at)

        try:
            self._create_record(did, rkey, collection, cid, record_bytes, seq)
        except Exception:
            self.logger.exception("error creating record")

        uri = uri_from_parts(did, collection, rkey)
        if collection == POST:
            self._create_post(record_bytes, uri, did, rkey, indexed)
        elif collection == FOLLOW:
            self._create_follow(record_bytes, uri, did, rkey, indexed)
        elif collection in (LIKE, REPOST):
            self._create_interaction(record_bytes, uri, did, collection, rkey, indexed)

    def handle_delete(self, did: str, collection: str, rkey: str) -> None:
        """Record that ``did`` deleted the record ``rkey``."""
        self.inserters.deletes.insert(Delete(did=did, rkey=rkey, created_at=self._clock()))

    def _create_record(
        self, did: str, rkey: str, collection: str, cid: str, raw: bytes, seq: str
    ) -> None:
        try:
            created_at = parse_tid(rkey)
        except InvalidSyntaxError:
            created_at = self._clock()
        self.inserters.records.insert(
            Record(
                did=did,
                rkey=rkey,
                collection=collection,
                cid=cid,
                seq=seq,
                raw=raw,
                created_at=created_at,
            )
        )

    def _create_post(
        self, record_bytes: bytes, uri: str, did: str, rkey: str, indexed_at: datetime
    ) -> None:
        record = _decode(record_bytes)
        created_at = parse_time_from_record(POST, record, rkey, self._clock())

        links: dict[str, str] = {}
        reply = record.get("reply")
        if isinstance(reply, dict):
            parent = reply.get("parent")
            if isinstance(parent, dict):
                links["parent_uri"], links["parent_did"] = _ref_uri(parent)
            root = reply.get("root")
            if isinstance(root, dict):
                links["root_uri"], links["root_did"] = _ref_uri(root)

        quoted = _quoted_ref(record.get("embed"))
        if quoted is not None:
            links["quote_uri"], links["quote_did"] = _ref_uri(quoted)

        self.inserters.posts.insert(
            Post(
                uri=uri,
                did=did,
                rkey=rkey,
                created_at=created_at,
                indexed_at=indexed_at,
                **links,
            )
        )

    def _create_follow(
        self, record_bytes: bytes, uri: str, did: str, rkey: str, indexed_at: datetime
    ) -> None:
        record = _decode(record_bytes)
        created_at = parse_time_from_record(FOLLOW, record, rkey, self._clock())
        subject = record.get("subject", "")
        if not isinstance(subject, str):
            raise RecordError("follow subject must be a string")
        self.inserters.follows.insert(
            Follow(
                uri=uri,
                did=did,
                rkey=rkey,
                created_at=created_at,
                indexed_at=indexed_at,
                subject=subject,
            )
        )

    def _create_interaction(
        self,
        record_bytes: bytes,
        uri: str,
        did: str,
        collection: str,
        rkey: str,
        indexed_at: datetime,
    ) -> None:
        parts = collection.split(".")
        if len(parts) < 4:
            raise RecordError(f"invalid collection type {collection}")
        kind = parts[3]

        record = _decode(record_bytes)
        created_at = parse_time_from_record(collection, record, rkey, self._clock())
        subject = record.get("subject")
        if not isinstance(subject, dict):
            raise RecordError(f"invalid subject in {kind}")
        subject_uri, subject_did = _ref_uri(subject)

        self.inserters.interactions.insert(
            Interaction(
                uri=uri,
                did=did,
                rkey=rkey,
                kind=kind,
                created_at=created_at,
                indexed_at=indexed_at,
                subject_uri=subject_uri,
                subject_did=subject_did,
            )
        )