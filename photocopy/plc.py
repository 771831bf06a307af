"""PLC directory export entries and their flattened ClickHouse rows."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

__all__ = [
    "ZERO_TIME",
    "ClickhousePLCEntry",
    "LegacyPLCOperation",
    "PLCEntry",
    "PLCOperation",
    "PLCOperationType",
    "PLCParseError",
    "PLCService",
    "PLCTombstone",
    "format_timestamp",
    "parse_entry",
    "parse_operation",
    "parse_timestamp",
]

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_RFC3339_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$"
)


class PLCParseError(ValueError):
    """Raised when a PLC export line cannot be decoded."""


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp; fractions finer than microseconds are dropped."""
    match = _RFC3339_RE.match(value)
    if match is None:
        raise PLCParseError(f"invalid timestamp: {value!r}")
    year, month, day, hour, minute, second = (int(g) for g in match.groups()[:6])
    micros = int((match.group(7) or "")[:6].ljust(6, "0"))
    zone = match.group(8)
    if zone == "Z":
        tz = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        offset = sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6]))
        tz = timezone.utc if not offset else timezone(offset)
    try:
        return datetime(year, month, day, hour, minute, second, micros, tzinfo=tz)
    except ValueError as exc:
        raise PLCParseError(f"invalid timestamp: {value!r}") from exc


def format_timestamp(moment: datetime) -> str:
    """Format a datetime as RFC 3339 with the shortest exact fraction."""
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
        f"T{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    if moment.microsecond:
        text += "." + f"{moment.microsecond:06d}".rstrip("0")
    offset = moment.utcoffset()
    if not offset:
        return text + "Z"
    sign = "-" if offset < timedelta(0) else "+"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


@dataclass(frozen=True)
class PLCService:
    type: str = ""
    endpoint: str = ""


@dataclass(frozen=True)
class PLCOperation:
    sig: str = ""
    prev: str | None = None
    type: str = ""
    services: dict[str, PLCService] = field(default_factory=dict)
    also_known_as: list[str] = field(default_factory=list)
    rotation_keys: list[str] = field(default_factory=list)
    verification_methods: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PLCTombstone:
    sig: str = ""
    prev: str = ""
    type: str = ""


@dataclass(frozen=True)
class LegacyPLCOperation:
    sig: str = ""
    prev: str = ""
    type: str = ""
    handle: str = ""
    service: str = ""
    signing_key: str = ""
    recovery_key: str = ""


@dataclass(frozen=True)
class PLCOperationType:
    """An operation of one of the three kinds, tagged by ``operation_type``."""

    operation_type: str = ""
    plc_operation: PLCOperation | None = None
    plc_tombstone: PLCTombstone | None = None
    legacy_plc_operation: LegacyPLCOperation | None = None


@dataclass
class ClickhousePLCEntry:
    """One row of the ``plc`` table."""

    did: str = ""
    cid: str = ""
    nullified: bool = False
    created_at: datetime = ZERO_TIME
    plc_op_sig: str = ""
    plc_op_prev: str = ""
    plc_op_type: str = ""
    plc_op_services: list[str] = field(default_factory=list)
    plc_op_also_known_as: list[str] = field(default_factory=list)
    plc_op_rotation_keys: list[str] = field(default_factory=list)
    plc_tomb_sig: str = ""
    plc_tomb_prev: str = ""
    plc_tomb_type: str = ""
    legacy_op_sig: str = ""
    legacy_op_prev: str = ""
    legacy_op_type: str = ""
    legacy_op_handle: str = ""
    legacy_op_service: str = ""
    legacy_op_signing_key: str = ""
    legacy_op_recovery_key: str = ""


@dataclass(frozen=True)
class PLCEntry:
    """One line of the PLC directory export."""

    did: str = ""
    operation: PLCOperationType = field(default_factory=PLCOperationType)
    cid: str = ""
    nullified: bool = False
    created_at: datetime = ZERO_TIME

    def prepare_for_clickhouse(self) -> ClickhousePLCEntry:
        """Flatten the entry into a table row."""
        row = ClickhousePLCEntry(
            did=self.did,
            cid=self.cid,
            nullified=self.nullified,
            created_at=self.created_at,
        )
        op = self.operation
        if op.plc_operation is not None:
            pop = op.plc_operation
            row.plc_op_sig = pop.sig
            row.plc_op_prev = pop.prev or ""
            row.plc_op_type = pop.type
            row.plc_op_services = [s.endpoint for s in pop.services.values()]
            row.plc_op_also_known_as = list(pop.also_known_as)
            row.plc_op_rotation_keys = list(pop.rotation_keys)
        elif op.plc_tombstone is not None:
            tomb = op.plc_tombstone
            row.plc_tomb_sig = tomb.sig
            row.plc_tomb_prev = tomb.prev
            row.plc_tomb_type = tomb.type
        elif op.legacy_plc_operation is not None:
            lop = op.legacy_plc_operation
            row.legacy_op_sig = lop.sig
            row.legacy_op_prev = lop.prev
            row.legacy_op_type = lop.type
            row.legacy_op_service = lop.service
            row.legacy_op_handle = lop.handle
            row.legacy_op_signing_key = lop.signing_key
            row.legacy_op_recovery_key = lop.recovery_key
        else:
            raise ValueError("no valid plc operation type")
        return row


def _lookup(data: dict[str, Any], key: str) -> Any:
    if key in data:
        return data[key]
    folded = key.casefold()
    for name, value in data.items():
        if name.casefold() == folded:
            return value
    return None


def _object(value: Any, what: str) -> dict[str, Any] | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise PLCParseError(f"{what} must be an object")
    return value


def _str(data: dict[str, Any], key: str) -> str:
    value = _lookup(data, key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise PLCParseError(f"{key} must be a string")
    return value


def _str_list(data: dict[str, Any], key: str) -> list[str]:
    value = _lookup(data, key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise PLCParseError(f"{key} must be a list of strings")
    return list(value)


def _str_map(data: dict[str, Any], key: str) -> dict[str, str]:
    value = _object(_lookup(data, key), key) or {}
    if not all(isinstance(v, str) for v in value.values()):
        raise PLCParseError(f"{key} must map to strings")
    return dict(value)


def _service(data: Any) -> PLCService:
    obj = _object(data, "service") or {}
    return PLCService(type=_str(obj, "type"), endpoint=_str(obj, "endpoint"))


def _plc_operation(data: dict[str, Any]) -> PLCOperation:
    prev = _lookup(data, "prev")
    if prev is not None and not isinstance(prev, str):
        raise PLCParseError("prev must be a string")
    services = _object(_lookup(data, "services"), "services") or {}
    return PLCOperation(
        sig=_str(data, "sig"),
        prev=prev,
        type=_str(data, "type"),
        services={name: _service(s) for name, s in services.items()},
        also_known_as=_str_list(data, "alsoKnownAs"),
        rotation_keys=_str_list(data, "rotationKeys"),
        verification_methods=_str_map(data, "verificationMethods"),
    )


def _tombstone(data: dict[str, Any]) -> PLCTombstone:
    return PLCTombstone(sig=_str(data, "sig"), prev=_str(data, "prev"), type=_str(data, "type"))


def _legacy(data: dict[str, Any]) -> LegacyPLCOperation:
    return LegacyPLCOperation(
        sig=_str(data, "sig"),
        prev=_str(data, "prev"),
        type=_str(data, "type"),
        handle=_str(data, "handle"),
        service=_str(data, "service"),
        signing_key=_str(data, "signingKey"),
        recovery_key=_str(data, "recoveryKey"),
    )


def _embedded(data: dict[str, Any], key: str, build: Any) -> Any:
    obj = _object(_lookup(data, key), key)
    return None if obj is None else build(obj)


def parse_operation(data: Any) -> PLCOperationType:
    """Decode a decoded-JSON operation into its typed form."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise PLCParseError("operation must be an object")
    embedded_op = _embedded(data, "PLCOperation", _plc_operation)
    embedded_tomb = _embedded(data, "PLCTombstone", _tombstone)
    embedded_legacy = _embedded(data, "LegacyPLCOperation", _legacy)
    kind = _str(data, "type")

    if kind == "plc_operation":
        return PLCOperationType("plc_operation", plc_operation=_plc_operation(data))
    if kind == "plc_tombstone":
        return PLCOperationType("plc_tombstone", plc_tombstone=_tombstone(data))
    if kind == "create":
        return PLCOperationType("legacy_plc_operation", legacy_plc_operation=_legacy(data))
    if embedded_op is None and embedded_tomb is None and embedded_legacy is None:
        raise PLCParseError(f"invalid operation type {kind}")
    return PLCOperationType(
        plc_operation=embedded_op,
        plc_tombstone=embedded_tomb,
        legacy_plc_operation=embedded_legacy,
    )


def parse_entry(line: str | bytes) -> PLCEntry:
    """Decode one JSON line of the PLC export."""
    try:
        data = json.loads(line)
    except ValueError as exc:
        raise PLCParseError(f"invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise PLCParseError("entry must be an object")

    operation = parse_operation(data["operation"]) if "operation" in data else PLCOperationType()

    nullified = data.get("nullified")
    if nullified is None:
        nullified = False
    elif not isinstance(nullified, bool):
        raise PLCParseError("nullified must be a boolean")

    created = data.get("createdAt")
    if created is None:
        created_at = ZERO_TIME
    elif isinstance(created, str):
        created_at = parse_timestamp(created)
    else:
        raise PLCParseError("createdAt must be a string")

    return PLCEntry(
        did=_str(data, "did"),
        operation=operation,
        cid=_str(data, "cid"),
        nullified=nullified,
        created_at=created_at,
    )