"""Polls the PLC directory export and feeds its entries to an inserter."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import requests

from photocopy.plc import ZERO_TIME, PLCParseError, format_timestamp, parse_entry, parse_timestamp

__all__ = ["EXPORT_URL", "PLCScraper", "PLCScraperError", "export_url"]

EXPORT_URL = "https://plc.directory/export?limit=1000"

_CATCH_UP_AFTER = timedelta(hours=1)


class PLCScraperError(Exception):
    """Raised when the scraper's cursor file cannot be read or written."""


def export_url(cursor: str) -> str:
    """The export URL for the page after ``cursor``."""
    if cursor:
        return f"{EXPORT_URL}&after={cursor}"
    return EXPORT_URL


class PLCScraper:
    """Follows the PLC export, remembering its position in ``cursor_file``.

    Polls every ``poll_interval`` seconds, or every ``catch_up_interval``
    seconds while the cursor is more than an hour behind.
    """

    def __init__(
        self,
        inserter: Any,
        cursor_file: str | Path,
        logger: logging.Logger | None = None,
        session: requests.Session | None = None,
        poll_interval: float = 3.0,
        catch_up_interval: float = 0.8,
        timeout: float = 15.0,
    ) -> None:
        self.inserter = inserter
        self.cursor_file = Path(cursor_file)
        self.logger = logger or logging.getLogger(__name__)
        self.session = session or requests.Session()
        self.poll_interval = poll_interval
        self.catch_up_interval = catch_up_interval
        self.timeout = timeout
        self.cursor = ""
        self._stop_event: threading.Event | None = None

    def get_cursor(self) -> str:
        """Read the saved cursor; an absent file means no cursor."""
        try:
            return self.cursor_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except OSError as exc:
            raise PLCScraperError(f"failed to read cursor: {exc}") from exc

    def save_cursor(self, cursor: str) -> None:
        """Write ``cursor`` to the cursor file."""
        try:
            self.cursor_file.write_text(cursor, encoding="utf-8")
        except OSError as exc:
            raise PLCScraperError(f"failed to save cursor: {exc}") from exc

    def _next_interval(self, current: float) -> float:
        if not self.cursor:
            return current
        try:
            position = parse_timestamp(self.cursor)
        except PLCParseError:
            position = ZERO_TIME
        if datetime.now(timezone.utc) - position > _CATCH_UP_AFTER:
            return self.catch_up_interval
        return self.poll_interval

    def _stopped(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    def scrape_once(self) -> int:
        """Fetch one export page and insert its entries; return how many were inserted."""
        self.logger.info("performing scrape (cursor %r)", self.cursor)
        try:
            resp = self.session.get(export_url(self.cursor), timeout=self.timeout)
        except requests.RequestException:
            self.logger.exception("error getting response")
            return 0
        if resp.status_code != 200:
            self.logger.error("export returned non-200 status %d", resp.status_code)
            return 0

        raw_entries = resp.text.split("\n")
        last = len(raw_entries) - 1
        inserted = 0
        for position, raw in enumerate(raw_entries):
            if not raw:
                continue
            try:
                entry = parse_entry(raw)
            except PLCParseError:
                self.logger.exception("error unmarshaling entry")
                continue

            if self._stopped():
                break

            if position == last:
                self.cursor = format_timestamp(entry.created_at)
                try:
                    self.save_cursor(self.cursor)
                except PLCScraperError:
                    self.logger.exception("error saving cursor")

            try:
                row = entry.prepare_for_clickhouse()
            except ValueError:
                self.logger.exception("error getting clickhouse entry from plc entry")
                continue

            self.inserter.insert(row)
            inserted += 1
        return inserted

    def run(self, stop_event: threading.Event) -> None:
        """Scrape repeatedly until ``stop_event`` is set."""
        try:
            self.cursor = self.get_cursor()
        except PLCScraperError:
            self.logger.exception("error getting cursor")
            self.cursor = ""
        self._stop_event = stop_event
        interval = self.poll_interval
        while not stop_event.wait(interval):
            interval = self._next_interval(interval)
            self.scrape_once()
            if stop_event.is_set():
                break