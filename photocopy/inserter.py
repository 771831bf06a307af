"""Batched inserts into ClickHouse with optional rate limiting."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections import Counter
from typing import Any, Callable, Protocol

__all__ = ["Inserter", "RateLimiter"]


class Batch(Protocol):
    def append(self, row: Any) -> None: ...

    def send(self) -> None: ...


class Connection(Protocol):
    def prepare_batch(self, query: str) -> Batch: ...


class RateLimiter:
    """Spaces calls to :meth:`take` evenly at ``rate`` per second.

    Unused time accumulates as slack of up to ``slack`` intervals, letting a
    short burst through after a pause.
    """

    def __init__(
        self,
        rate: int,
        slack: int = 10,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        self._per = 1.0 / rate
        self._max_slack = slack * self._per
        self._clock = clock
        self._sleep = sleep
        self._last: float | None = None
        self._sleep_for = 0.0
        self._lock = threading.Lock()

    def take(self) -> float:
        """Block until the next slot is free and return its clock time."""
        with self._lock:
            now = self._clock()
            if self._last is None:
                self._last = now
                return now
            self._sleep_for += self._per - (now - self._last)
            if self._sleep_for < -self._max_slack:
                self._sleep_for = -self._max_slack
            if self._sleep_for > 0:
                self._sleep(self._sleep_for)
                self._last = now + self._sleep_for
                self._sleep_for = 0.0
            else:
                self._last = now
            return self._last


def _row(event: Any) -> Any:
    if dataclasses.is_dataclass(event) and not isinstance(event, type):
        return {f.name: getattr(event, f.name) for f in dataclasses.fields(event)}
    return event


class Inserter:
    """Queues events and writes them with ``query`` once ``batch_size`` are queued.

    Failures are logged rather than raised; ``inserts_by_status`` counts the
    events sent under ``"ok"`` and ``"failed"``.
    """

    def __init__(
        self,
        conn: Connection,
        query: str,
        batch_size: int,
        prefix: str = "",
        logger: logging.Logger | None = None,
        rate_limit: int = 0,
    ) -> None:
        self.conn = conn
        self.query = query
        self.batch_size = batch_size
        self.prefix = prefix
        self.logger = logger or logging.getLogger(__name__)
        self.rate_limiter = RateLimiter(rate_limit) if rate_limit else None
        self.inserts_by_status: Counter[str] = Counter()
        self.pending_sends = 0
        self._queued: list[Any] = []
        self._lock = threading.Lock()

    def __enter__(self) -> Inserter:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def insert(self, event: Any) -> None:
        """Queue an event, sending the whole queue once it reaches the batch size."""
        with self._lock:
            self._queued.append(event)
            to_insert: list[Any] = []
            if len(self._queued) >= self.batch_size:
                to_insert, self._queued = self._queued, []
        if to_insert:
            self._send(to_insert)

    def close(self) -> None:
        """Send whatever is still queued."""
        with self._lock:
            to_insert, self._queued = self._queued, []
        if to_insert:
            self._send(to_insert)

    def _send(self, to_insert: list[Any]) -> None:
        with self._lock:
            self.pending_sends += 1
        status = "ok"
        try:
            try:
                batch = self.conn.prepare_batch(self.query)
            except Exception:
                self.logger.exception("error creating batch (prefix %s)", self.prefix)
                status = "failed"
                return
            for event in to_insert:
                try:
                    batch.append(_row(event))
                except Exception:
                    self.logger.exception("error appending to batch (prefix %s)", self.prefix)
            if self.rate_limiter is not None:
                self.rate_limiter.take()
            try:
                batch.send()
            except Exception:
                status = "failed"
                self.logger.exception("error sending batch (prefix %s)", self.prefix)
        finally:
            with self._lock:
                self.pending_sends -= 1
                self.inserts_by_status[status] += len(to_insert)