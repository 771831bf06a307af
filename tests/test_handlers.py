from datetime import datetime, timedelta, timezone

import cbor2
import pytest

from photocopy.handlers import (
    Inserters,
    RecordError,
    RecordHandler,
    parse_time_from_record,
)
from photocopy.models import Delete, Follow, Interaction, Post, Record
from photocopy.syntax import parse_tid, uri_from_parts

RKEY = "3jzfcijpj2z2a"
RKEY_TIME = parse_tid(RKEY)
NOW = RKEY_TIME + timedelta(days=30)
RECENT = NOW - timedelta(hours=1)
ANCIENT = "2001-01-01T00:00:00Z"
DID = "did:plc:author123"
OTHER_DID = "did:plc:other456"
TARGET_URI = f"at://{OTHER_DID}/app.bsky.feed.post/3k2yihcrp6f2c"
INDEXED_AT = RECENT.isoformat()


class Collector:
    def __init__(self):
        self.rows = []

    def insert(self, event):
        self.rows.append(event)


@pytest.fixture
def sinks():
    return Inserters(
        records=Collector(),
        posts=Collector(),
        follows=Collector(),
        interactions=Collector(),
        deletes=Collector(),
    )


@pytest.fixture
def handler(sinks):
    return RecordHandler(sinks, clock=lambda: NOW)


def create(handler, collection, record, rkey=RKEY, indexed_at=INDEXED_AT):
    handler.handle_create(
        cbor2.dumps(record), indexed_at, "rev1", DID, collection, rkey, "bafycid", "42"
    )


def test_post_uses_created_at_when_in_range():
    record = {"createdAt": RECENT.isoformat()}
    assert parse_time_from_record("app.bsky.feed.post", record, RKEY, NOW) == RECENT


def test_post_falls_back_to_rkey_time():
    record = {"createdAt": ANCIENT}
    assert parse_time_from_record("app.bsky.feed.post", record, RKEY, NOW) == RKEY_TIME


def test_post_with_self_rkey_falls_back_to_now():
    record = {"createdAt": ANCIENT}
    assert parse_time_from_record("app.bsky.feed.post", record, "self", NOW) == NOW


def test_like_without_useful_time_raises():
    record = {"createdAt": ANCIENT}
    with pytest.raises(RecordError):
        parse_time_from_record("app.bsky.feed.like", record, "notatid", NOW)


def test_repost_with_bad_created_at_raises():
    with pytest.raises(RecordError):
        parse_time_from_record("app.bsky.feed.repost", {"createdAt": "garbage"}, RKEY, NOW)


def test_profile_always_uses_now():
    record = {"createdAt": RECENT.isoformat()}
    assert parse_time_from_record("app.bsky.actor.profile", record, "self", NOW) == NOW


def test_other_collection_prefers_rkey_time():
    assert parse_time_from_record("app.bsky.feed.generator", {}, RKEY, NOW) == RKEY_TIME
    assert parse_time_from_record("app.bsky.feed.generator", {}, "mine", NOW) == NOW


def test_post_with_reply_and_quote(handler, sinks):
    root_uri = "at://did:plc:root789/app.bsky.feed.post/3k2yihcrp6f2c"
    record = {
        "$type": "app.bsky.feed.post",
        "text": "hi",
        "createdAt": RECENT.isoformat(),
        "reply": {
            "parent": {"uri": TARGET_URI, "cid": "bafyparent"},
            "root": {"uri": root_uri, "cid": "bafyroot"},
        },
        "embed": {
            "$type": "app.bsky.embed.record",
            "record": {"uri": "at://alice.example.com/app.bsky.feed.post/abc", "cid": "x"},
        },
    }
    create(handler, "app.bsky.feed.post", record)

    assert sinks.posts.rows == [
        Post(
            uri=uri_from_parts(DID, "app.bsky.feed.post", RKEY),
            did=DID,
            rkey=RKEY,
            created_at=RECENT,
            indexed_at=RECENT,
            root_uri=root_uri,
            root_did="did:plc:root789",
            parent_uri=TARGET_URI,
            parent_did=OTHER_DID,
            quote_uri="at://alice.example.com/app.bsky.feed.post/abc",
            quote_did="alice.example.com",
        )
    ]
    assert sinks.records.rows == [
        Record(
            did=DID,
            rkey=RKEY,
            collection="app.bsky.feed.post",
            cid="bafycid",
            seq="42",
            raw=cbor2.dumps(record),
            created_at=RKEY_TIME,
        )
    ]


def test_post_quote_with_media(handler, sinks):
    record = {
        "createdAt": RECENT.isoformat(),
        "embed": {
            "$type": "app.bsky.embed.recordWithMedia",
            "record": {"record": {"uri": TARGET_URI, "cid": "x"}},
            "media": {"$type": "app.bsky.embed.images", "images": []},
        },
    }
    create(handler, "app.bsky.feed.post", record)
    (post,) = sinks.posts.rows
    assert (post.quote_uri, post.quote_did) == (TARGET_URI, OTHER_DID)
    assert post.parent_uri == ""


def test_post_with_bad_reply_uri_raises(handler, sinks):
    record = {
        "createdAt": RECENT.isoformat(),
        "reply": {"parent": {"uri": "https://nope", "cid": "x"}},
    }
    with pytest.raises(RecordError):
        create(handler, "app.bsky.feed.post", record)
    assert sinks.posts.rows == []
    assert len(sinks.records.rows) == 1


def test_follow(handler, sinks):
    create(handler, "app.bsky.graph.follow", {"subject": OTHER_DID, "createdAt": ANCIENT})
    assert sinks.follows.rows == [
        Follow(
            uri=uri_from_parts(DID, "app.bsky.graph.follow", RKEY),
            did=DID,
            rkey=RKEY,
            created_at=RKEY_TIME,
            indexed_at=RECENT,
            subject=OTHER_DID,
        )
    ]


def test_like_becomes_interaction(handler, sinks):
    record = {"subject": {"uri": TARGET_URI, "cid": "x"}, "createdAt": RECENT.isoformat()}
    create(handler, "app.bsky.feed.like", record)
    assert sinks.interactions.rows == [
        Interaction(
            uri=uri_from_parts(DID, "app.bsky.feed.like", RKEY),
            did=DID,
            rkey=RKEY,
            kind="like",
            created_at=RECENT,
            indexed_at=RECENT,
            subject_uri=TARGET_URI,
            subject_did=OTHER_DID,
        )
    ]


def test_repost_without_subject_raises_but_keeps_record(handler, sinks):
    with pytest.raises(RecordError, match="repost"):
        create(handler, "app.bsky.feed.repost", {"createdAt": RECENT.isoformat()})
    assert sinks.interactions.rows == []
    assert [r.collection for r in sinks.records.rows] == ["app.bsky.feed.repost"]


def test_unknown_collection_only_stores_record(handler, sinks):
    create(handler, "app.bsky.actor.profile", {"displayName": "x"}, rkey="self")
    assert [r.created_at for r in sinks.records.rows] == [NOW]
    assert sinks.posts.rows == sinks.follows.rows == sinks.interactions.rows == []


def test_bad_indexed_at_raises_before_inserting(handler, sinks):
    with pytest.raises(RecordError):
        create(handler, "app.bsky.feed.post", {"createdAt": ANCIENT}, indexed_at="nonsense")
    assert sinks.records.rows == []


def test_invalid_cbor_raises(handler, sinks):
    with pytest.raises(RecordError):
        handler.handle_create(
            b"\xff\x00", INDEXED_AT, "rev", DID, "app.bsky.graph.follow", RKEY, "c", "1"
        )
    assert sinks.follows.rows == []


def test_handle_delete(handler, sinks):
    handler.handle_delete(DID, "app.bsky.feed.post", RKEY)
    assert sinks.deletes.rows == [Delete(did=DID, rkey=RKEY, created_at=NOW)]