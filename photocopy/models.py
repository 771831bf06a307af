"""Rows written to the ClickHouse tables, one dataclass per table.

Field names match the table's column names and appear in column order.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class Record:
    """A raw repository record as stored in the ``record`` table."""

    did: str
    rkey: str
    collection: str
    cid: str
    seq: str
    raw: bytes
    created_at: datetime


@dataclass(frozen=True)
class Post:
    """A post, with the reply and quote targets it points at."""

    uri: str
    did: str
    rkey: str
    created_at: datetime
    indexed_at: datetime
    root_uri: str = ""
    root_did: str = ""
    parent_uri: str = ""
    parent_did: str = ""
    quote_uri: str = ""
    quote_did: str = ""


@dataclass(frozen=True)
class Follow:
    """A follow of one account by another."""

    uri: str
    did: str
    rkey: str
    created_at: datetime
    indexed_at: datetime
    subject: str


@dataclass(frozen=True)
class Interaction:
    """A like or a repost of some subject record."""

    uri: str
    did: str
    rkey: str
    kind: str
    created_at: datetime
    indexed_at: datetime
    subject_uri: str
    subject_did: str


@dataclass(frozen=True)
class Delete:
    """A record deletion seen on the firehose."""

    did: str
    rkey: str
    created_at: datetime