# photocopy

A library that turns AT Protocol data into rows for batched analytical
tables:

- **Records.** `photocopy.handlers.RecordHandler` takes a created record, as
  CBOR bytes, and writes a raw `Record` row. For posts, follows, likes and
  reposts it also writes a typed `Post`, `Follow` or `Interaction` row. It
  writes a `Delete` row for each deletion. The row types live in
  `photocopy.models`.
- **PLC directory operations.** `photocopy.plc` decodes lines of the PLC
  export into `PLCEntry` objects and flattens them into `ClickhousePLCEntry`
  rows. `photocopy.plc_scraper.PLCScraper` polls the export feed and keeps
  its position in a cursor file.
- **Repository backfill planning.** `photocopy.bodega` groups DIDs by the
  service that hosts them, downloads full repositories with one rate limiter
  per service, and formats a progress line.

## Installation

Install the package with your usual Python package manager. It depends on
`cbor2`, `python-dateutil` and `requests`. The `test` extra adds `pytest`
and `responses`.

## Syntax helpers (`photocopy.syntax`)

```python
from photocopy.syntax import uri_from_parts, parse_aturi, parse_tid, in_range

uri = uri_from_parts("did:plc:abc123", "app.bsky.feed.post", "3jzfcijpj2z2a")
# "at://did:plc:abc123/app.bsky.feed.post/3jzfcijpj2z2a"

aturi = parse_aturi(uri)        # ATURI(authority=..., collection=..., rkey=..., fragment=...)
created = parse_tid("3jzfcijpj2z2a")   # UTC datetime encoded in the TID
```

`parse_aturi` and `parse_tid` raise `InvalidSyntaxError` (a `ValueError`)
on malformed input. `parse_aturi` also requires the authority to be a DID or
a handle. `in_range(t, now=None)` is true when `t` falls between five years
before `now` and 200 days after it.

## Batched inserts (`photocopy.inserter`)

```python
from photocopy.inserter import Inserter

with Inserter(conn, "INSERT INTO record (...)", batch_size=1000, prefix="records") as inserter:
    inserter.insert(row)
```

`conn` can be any object with a `prepare_batch(query)` method. That method
returns a batch with `append(row)` and `send()`. Dataclass rows are passed
to `append` as a dict of field name to value. All other rows are passed
unchanged. When the queue reaches `batch_size`, the whole queue is sent as
one batch. `close()`, which also runs when the `with` block exits, flushes
whatever is still queued.

Send failures are logged, not raised. `inserts_by_status` counts the rows
sent under `"ok"` and `"failed"`, and `pending_sends` is the number of
batches in flight. Pass `rate_limit=n` to send at most `n` batches per
second. The limit is enforced by a `RateLimiter`, which you can also use
directly: `RateLimiter(rate).take()` blocks until the next slot is free.

## Handling records (`photocopy.handlers`)

```python
from photocopy.handlers import Inserters, RecordHandler

handler = RecordHandler(Inserters(records=..., posts=..., follows=...,
                                  interactions=..., deletes=...))
handler.handle_create(record_bytes, indexed_at, rev, did, collection, rkey, cid, seq)
handler.handle_delete(did, collection, rkey)
```

Each member of `Inserters` needs only an `insert(row)` method.

`handle_create` first writes the raw `Record`. If the raw write fails, the
error is logged. Creation times come from `parse_time_from_record(kind,
record, rkey, now=None)`. It uses the record's `createdAt` when that is in
range. Otherwise it falls back to the time in the TID record key, and for
some kinds to the current time. A record that cannot be decoded, or that
lacks what its row needs, raises `RecordError`.

## PLC export (`photocopy.plc`, `photocopy.plc_scraper`)

```python
from photocopy.plc import parse_entry
from photocopy.plc_scraper import PLCScraper, export_url

entry = parse_entry(line)                 # raises PLCParseError on bad input
row = entry.prepare_for_clickhouse()      # ValueError if no operation is present
url = export_url("")                      # first page of the export feed
```

`PLCScraper(inserter, cursor_file)` does the polling:

- `scrape_once()` fetches one page and inserts its rows. It returns how many
  rows it inserted.
- `run(stop_event)` scrapes until the `threading.Event` is set. It polls
  every `poll_interval` seconds, or every `catch_up_interval` seconds while
  the cursor is more than an hour behind.
- `get_cursor()` and `save_cursor()` read and write the cursor file. They
  raise `PLCScraperError` on I/O errors.

## Backfill helpers (`photocopy.bodega`)

- `build_download_buckets(entries, did_created_at, need_older_than)` returns
  a `DownloadPlan` with `service_dids`, `total` and `skipped`.
  `entries` are `PLCServiceEntry` objects.
- `RepoDownloader` keeps one `requests` session and one `RateLimiter` per
  service. Its `download_repo(service, did)` returns the repository bytes or
  raises `RepoDownloadError`.
- `format_progress(processed, total, skipped, errored, elapsed)` returns the
  progress line: the processed count and percentage, skipped and failed
  jobs, the job rate and an ETA.

## What this package does not do

- It has no command-line program and no long-running service.
- It does not connect to a relay's firehose or decode commit events. You
  pass record bytes to `RecordHandler` yourself.
- It does not open a ClickHouse connection. You supply the connection
  object that `Inserter` writes to.
- It does not export metrics.
- It does not read the downloaded repository CAR files. `RepoDownloader`
  returns their raw bytes.