"""Planning and downloading full repositories for a backfill of the record table."""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Mapping
from urllib.parse import urlsplit

import requests

from photocopy.inserter import RateLimiter

__all__ = [
    "NEED_OLDER_THAN",
    "DownloadPlan",
    "PLCServiceEntry",
    "RepoDownloadError",
    "RepoDownloader",
    "build_download_buckets",
    "format_progress",
]

# Repos whose oldest stored record predates this moment are already backfilled.
NEED_OLDER_THAN = datetime(2025, 6, 28, 4, 18, 22)

_DOWNLOAD_TIMEOUT = 5 * 60.0
_REQUESTS_PER_SECOND = 10


class RepoDownloadError(Exception):
    """Raised when a repository cannot be fetched from its service."""


@dataclass(frozen=True)
class PLCServiceEntry:
    """A DID together with the service endpoints its latest PLC operation lists."""

    did: str
    plc_op_services: list[str] = field(default_factory=list)


@dataclass
class DownloadPlan:
    """DIDs grouped by the service to download them from."""

    service_dids: dict[str, list[str]] = field(default_factory=dict)
    total: int = 0
    skipped: int = 0


def _parses_as_url(value: str) -> bool:
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in value):
        return False
    if value.startswith(":"):
        return False
    try:
        urlsplit(value)
    except ValueError:
        return False
    return True


def build_download_buckets(
    entries: Iterable[PLCServiceEntry],
    did_created_at: Mapping[str, datetime],
    need_older_than: datetime = NEED_OLDER_THAN,
) -> DownloadPlan:
    """Group DIDs by service, skipping repos whose records already reach back far enough."""
    plan = DownloadPlan()
    for entry in entries:
        if not entry.plc_op_services:
            continue
        last_record = did_created_at.get(entry.did)
        if last_record is not None and last_record < need_older_than:
            plan.skipped += 1
            continue
        for service in entry.plc_op_services:
            if not _parses_as_url(service):
                continue
            plan.service_dids.setdefault(service, []).append(entry.did)
            plan.total += 1
    return plan


def _go_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    return f"{value:.1f}"


def _format_duration(seconds: int) -> str:
    if seconds == 0:
        return "0s"
    sign = "-" if seconds < 0 else ""
    seconds = abs(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{sign}{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{sign}{minutes}m{secs}s"
    return f"{sign}{secs}s"


def format_progress(
    processed: int, total: int, skipped: int, errored: int, elapsed: timedelta
) -> str:
    """The progress line printed while repositories are downloaded."""
    elapsed_seconds = elapsed.total_seconds()
    rate = processed / elapsed_seconds if elapsed_seconds else math.nan
    remaining = total - processed

    if rate > 0:
        eta_seconds = remaining / rate
        rounded = int(math.copysign(math.floor(abs(eta_seconds) + 0.5), eta_seconds))
        eta = f", ETA: {_format_duration(rounded)}"
    else:
        eta = ", ETA: calculating..."

    percent = processed / total * 100 if total else math.nan
    return (
        f"\rProgress: {processed}/{total} processed ({_go_float(percent)}%), "
        f"{skipped} skipped, {errored} errors, {_go_float(rate)} jobs/sec{eta}"
    )


class RepoDownloader:
    """Fetches repository CAR files, keeping one session and rate limiter per service."""

    def __init__(
        self,
        session_factory: Callable[[], requests.Session] = requests.Session,
        rate: int = _REQUESTS_PER_SECOND,
        timeout: float = _DOWNLOAD_TIMEOUT,
    ) -> None:
        self._session_factory = session_factory
        self._rate = rate
        self.timeout = timeout
        self._sessions: dict[str, requests.Session] = {}
        self._rate_limits: dict[str, RateLimiter] = {}
        self._lock = threading.Lock()

    def get_session(self, service: str) -> requests.Session:
        """The HTTP session used for ``service``, created on first use."""
        with self._lock:
            session = self._sessions.get(service)
            if session is None:
                session = self._session_factory()
                self._sessions[service] = session
            return session

    def get_rate_limiter(self, service: str) -> RateLimiter:
        """The rate limiter for ``service``, created on first use."""
        with self._lock:
            limiter = self._rate_limits.get(service)
            if limiter is None:
                limiter = RateLimiter(self._rate)
                self._rate_limits[service] = limiter
            return limiter

    def download_repo(self, service: str, did: str) -> bytes:
        """Download the full repository of ``did`` from ``service``."""
        url = f"{service}/xrpc/com.atproto.sync.getRepo?did={did}"
        session = self.get_session(service)
        try:
            resp = session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise RepoDownloadError(f"failed to download repo: {exc}") from exc
        if resp.status_code != 200:
            raise RepoDownloadError(f"unexpected status code: {resp.status_code}")
        try:
            return resp.content
        except requests.RequestException as exc:
            raise RepoDownloadError(f"could not read bytes from response: {exc}") from exc