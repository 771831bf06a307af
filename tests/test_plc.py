import json
from datetime import timezone

import pytest

from photocopy.plc import (
    ZERO_TIME,
    PLCEntry,
    PLCOperationType,
    PLCParseError,
    PLCService,
    format_timestamp,
    parse_entry,
    parse_operation,
    parse_timestamp,
)

PLC_OP = {
    "sig": "sig-one",
    "prev": None,
    "type": "plc_operation",
    "services": {
        "atproto_pds": {
            "type": "AtprotoPersonalDataServer",
            "endpoint": "https://pds.example.com",
        }
    },
    "alsoKnownAs": ["at://alice.example.com"],
    "rotationKeys": ["did:key:zRotationExample"],
    "verificationMethods": {"atproto": "did:key:zVerifyExample"},
}


def _line(operation, **extra):
    entry = {
        "did": "did:plc:exampleone",
        "operation": operation,
        "cid": "bafyexamplecid",
        "nullified": False,
        "createdAt": "2024-01-02T03:04:05.678Z",
    }
    entry.update(extra)
    return json.dumps(entry)


def test_parse_plc_operation_entry():
    entry = parse_entry(_line(PLC_OP))
    assert entry.did == "did:plc:exampleone"
    assert entry.cid == "bafyexamplecid"
    assert entry.operation.operation_type == "plc_operation"
    op = entry.operation.plc_operation
    assert op.prev is None
    assert op.services["atproto_pds"] == PLCService(
        "AtprotoPersonalDataServer", "https://pds.example.com"
    )
    assert op.also_known_as == ["at://alice.example.com"]
    assert op.verification_methods == {"atproto": "did:key:zVerifyExample"}
    assert entry.operation.plc_tombstone is None


def test_created_at_parsed_in_utc():
    entry = parse_entry(_line(PLC_OP))
    assert entry.created_at.tzinfo == timezone.utc
    assert format_timestamp(entry.created_at) == "2024-01-02T03:04:05.678Z"


def test_plc_operation_to_row():
    row = parse_entry(_line(PLC_OP)).prepare_for_clickhouse()
    assert row.did == "did:plc:exampleone"
    assert row.plc_op_sig == "sig-one"
    assert row.plc_op_prev == ""
    assert row.plc_op_type == "plc_operation"
    assert row.plc_op_services == ["https://pds.example.com"]
    assert row.plc_op_also_known_as == ["at://alice.example.com"]
    assert row.plc_op_rotation_keys == ["did:key:zRotationExample"]
    assert row.plc_tomb_sig == "" and row.legacy_op_sig == ""


def test_plc_operation_prev_kept():
    op = dict(PLC_OP, prev="bafyprevcid")
    row = parse_entry(_line(op)).prepare_for_clickhouse()
    assert row.plc_op_prev == "bafyprevcid"


def test_tombstone_entry():
    tomb = {"sig": "sig-two", "prev": "bafyprevcid", "type": "plc_tombstone"}
    entry = parse_entry(_line(tomb, nullified=True))
    assert entry.operation.operation_type == "plc_tombstone"
    row = entry.prepare_for_clickhouse()
    assert row.nullified is True
    assert (row.plc_tomb_sig, row.plc_tomb_prev, row.plc_tomb_type) == (
        "sig-two",
        "bafyprevcid",
        "plc_tombstone",
    )
    assert row.plc_op_services == []


def test_legacy_create_entry():
    legacy = {
        "sig": "sig-three",
        "prev": "",
        "type": "create",
        "handle": "bob.example.com",
        "service": "https://pds.example.com",
        "signingKey": "did:key:zSigningExample",
        "recoveryKey": "did:key:zRecoveryExample",
    }
    entry = parse_entry(_line(legacy))
    assert entry.operation.operation_type == "legacy_plc_operation"
    row = entry.prepare_for_clickhouse()
    assert row.legacy_op_type == "create"
    assert row.legacy_op_handle == "bob.example.com"
    assert row.legacy_op_service == "https://pds.example.com"
    assert row.legacy_op_signing_key == "did:key:zSigningExample"
    assert row.legacy_op_recovery_key == "did:key:zRecoveryExample"


def test_unknown_operation_type_rejected():
    with pytest.raises(PLCParseError, match="invalid operation type mystery"):
        parse_operation({"type": "mystery"})


def test_null_operation_rejected():
    with pytest.raises(PLCParseError):
        parse_entry(_line(None))


def test_embedded_operation_used_for_untyped_data():
    op = parse_operation({"PLCTombstone": {"sig": "s", "prev": "p", "type": "t"}})
    assert op.operation_type == ""
    assert op.plc_tombstone.sig == "s"
    assert op.plc_operation is None


def test_missing_operation_cannot_be_prepared():
    entry = parse_entry(json.dumps({"did": "did:plc:exampleone"}))
    assert entry.operation == PLCOperationType()
    assert entry.created_at == ZERO_TIME
    with pytest.raises(ValueError, match="no valid plc operation type"):
        entry.prepare_for_clickhouse()


def test_default_entry_cannot_be_prepared():
    with pytest.raises(ValueError):
        PLCEntry().prepare_for_clickhouse()


@pytest.mark.parametrize("line", ["not json", "[1, 2]", json.dumps({"nullified": "yes"})])
def test_malformed_lines_rejected(line):
    with pytest.raises(PLCParseError):
        parse_entry(line)


def test_wrong_field_type_rejected():
    with pytest.raises(PLCParseError):
        parse_operation(dict(PLC_OP, alsoKnownAs="at://alice.example.com"))


@pytest.mark.parametrize(
    "text",
    [
        "2024-01-02T03:04:05.678Z",
        "2023-05-06T07:08:09Z",
        "2022-12-31T23:59:59.123456Z",
        "2021-06-01T12:00:00.5+02:00",
    ],
)
def test_timestamp_round_trip(text):
    assert format_timestamp(parse_timestamp(text)) == text


def test_timestamp_zero_offset_becomes_z():
    assert format_timestamp(parse_timestamp("2021-06-01T12:00:00+00:00")) == "2021-06-01T12:00:00Z"


def test_timestamp_truncates_nanoseconds():
    parsed = parse_timestamp("2024-01-02T03:04:05.123456789Z")
    assert parsed.microsecond == 123456


@pytest.mark.parametrize("text", ["yesterday", "2024-13-01T00:00:00Z", "2024-01-01 00:00:00Z", ""])
def test_bad_timestamps_rejected(text):
    with pytest.raises(PLCParseError):
        parse_timestamp(text)