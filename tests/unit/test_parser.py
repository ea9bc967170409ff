"""Tests for ledger event parsing."""

import base64
import json
from datetime import datetime, timezone

import pytest

from ledgersync.ingestion.parser import (
    MALFORMED_PAYLOAD,
    MISSING_EVENT_TOPIC,
    MISSING_TRANSACTION_HASH,
    UNKNOWN_EVENT_TYPE,
    MilestoneCreatedPayload,
    MilestoneValidatedPayload,
    ParsedEvent,
    PayloadError,
    RawEvent,
    VaultCreatedPayload,
    VaultStatusPayload,
    decode_value,
    parse_event,
)

VAULT_VALUE = {
    "vault_id": "vault-1",
    "creator": "GCREATOR",
    "amount": "1000.50",
    "start_timestamp": "2026-01-01T00:00:00Z",
    "end_timestamp": "2026-06-01T00:00:00Z",
    "success_destination": "GSUCCESS",
    "failure_destination": "GFAILURE",
}

MILESTONE_VALUE = {
    "milestone_id": "ms-1",
    "vault_id": "vault-1",
    "title": "Ship v1",
    "target_amount": "250",
    "deadline": "2026-03-01T00:00:00+00:00",
}


def raw(topic="vault_created", value=None, **overrides) -> RawEvent:
    fields = {
        "ledger": 42,
        "tx_hash": "abc123",
        "topic": topic if isinstance(topic, list) else [topic],
        "value": VAULT_VALUE if value is None else value,
        "event_index": 0,
    }
    fields.update(overrides)
    return RawEvent(**fields)


class TestValidationOrder:
    def test_missing_tx_hash(self):
        result = parse_event(raw(tx_hash=""))
        assert result.success is False
        assert result.reason == MISSING_TRANSACTION_HASH

    def test_missing_tx_hash_wins_over_missing_topic(self):
        result = parse_event(raw(tx_hash=None, topic=[]))
        assert result.reason == MISSING_TRANSACTION_HASH

    def test_empty_topic_list(self):
        result = parse_event(raw(topic=[]))
        assert result.reason == MISSING_EVENT_TOPIC

    def test_empty_first_topic(self):
        result = parse_event(raw(topic=["  "]))
        assert result.reason == MISSING_EVENT_TOPIC

    def test_unknown_event_type(self):
        result = parse_event(raw(topic="unknown_event"))
        assert result.success is False
        assert result.reason == UNKNOWN_EVENT_TYPE
        assert "unknown_event" in result.message

    def test_unknown_type_wins_over_bad_payload(self):
        result = parse_event(raw(topic="bogus", value="not json"))
        assert result.reason == UNKNOWN_EVENT_TYPE

    def test_missing_required_field(self):
        value = dict(VAULT_VALUE)
        del value["creator"]
        result = parse_event(raw(value=value))
        assert result.reason == MALFORMED_PAYLOAD
        assert "creator" in result.message

    def test_missing_ledger_position(self):
        result = parse_event(raw(ledger=None))
        assert result.reason == MALFORMED_PAYLOAD


class TestVaultEvents:
    def test_vault_created(self):
        result = parse_event(raw())
        assert result.success is True
        event = result.event
        assert event.event_id == "abc123:0"
        assert event.ledger_position == 42
        assert event.event_type == "vault_created"
        assert isinstance(event.payload, VaultCreatedPayload)
        assert event.payload.amount == "1000.50"
        assert event.payload.start_timestamp == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_invalid_amount(self):
        result = parse_event(raw(value={**VAULT_VALUE, "amount": "lots"}))
        assert result.reason == MALFORMED_PAYLOAD

    def test_end_before_start(self):
        value = {**VAULT_VALUE, "end_timestamp": "2025-01-01T00:00:00Z"}
        result = parse_event(raw(value=value))
        assert result.reason == MALFORMED_PAYLOAD

    def test_epoch_timestamps(self):
        value = {**VAULT_VALUE, "start_timestamp": 1767225600, "end_timestamp": 1780272000}
        result = parse_event(raw(value=value))
        assert result.success is True
        assert result.event.payload.start_timestamp.tzinfo is not None

    @pytest.mark.parametrize("topic,status", [
        ("vault_completed", "completed"),
        ("vault_failed", "failed"),
        ("vault_cancelled", "cancelled"),
    ])
    def test_status_events(self, topic, status):
        result = parse_event(raw(topic=topic, value={"vault_id": "vault-1"}))
        assert result.success is True
        assert result.event.payload == VaultStatusPayload(vault_id="vault-1", status=status)


class TestMilestoneEvents:
    def test_milestone_created_defaults(self):
        result = parse_event(raw(topic="milestone_created", value=MILESTONE_VALUE))
        assert result.success is True
        payload = result.event.payload
        assert isinstance(payload, MilestoneCreatedPayload)
        assert payload.approval_policy == "all"
        assert payload.verifiers == []
        assert payload.description == ""

    def test_milestone_created_with_verifiers(self):
        value = {**MILESTONE_VALUE, "approval_policy": "majority",
                 "verifiers": ["v1", "v2", "v1"]}
        result = parse_event(raw(topic="milestone_created", value=value))
        assert result.event.payload.approval_policy == "majority"
        assert result.event.payload.verifiers == ["v1", "v2"]

    def test_invalid_policy(self):
        value = {**MILESTONE_VALUE, "approval_policy": "quorum"}
        result = parse_event(raw(topic="milestone_created", value=value))
        assert result.reason == MALFORMED_PAYLOAD

    def test_milestone_validated(self):
        value = {
            "validation_id": "val-1",
            "milestone_id": "ms-1",
            "validator_address": "GVALIDATOR",
            "validation_result": "approved",
            "validated_at": "2026-02-01T12:00:00Z",
            "evidence_hash": "deadbeef",
        }
        result = parse_event(raw(topic="milestone_validated", value=value))
        assert result.success is True
        assert isinstance(result.event.payload, MilestoneValidatedPayload)
        assert result.event.payload.evidence_hash == "deadbeef"

    def test_invalid_validation_result(self):
        value = {
            "validation_id": "val-1",
            "milestone_id": "ms-1",
            "validator_address": "GVALIDATOR",
            "validation_result": "maybe",
            "validated_at": "2026-02-01T12:00:00Z",
        }
        result = parse_event(raw(topic="milestone_validated", value=value))
        assert result.reason == MALFORMED_PAYLOAD


class TestEventIndex:
    def test_index_from_paging_id(self):
        result = parse_event(raw(event_index=None, id="0000180388626432-0000000003"))
        assert result.event.event_index == 3
        assert result.event.event_id == "abc123:3"

    def test_no_index_available(self):
        result = parse_event(raw(event_index=None, id="no-suffix-here"))
        assert result.reason == MALFORMED_PAYLOAD

    def test_non_string_id_from_mapping(self):
        result = parse_event({
            "txHash": "abc123",
            "topic": ["vault_completed"],
            "ledger": 5,
            "id": 7,
            "value": {"vault_id": "v1"},
        })
        assert result.success is False
        assert result.reason == MALFORMED_PAYLOAD

    def test_non_string_id_on_raw_event(self):
        result = parse_event(raw(event_index=None, id=12345))
        assert result.reason == MALFORMED_PAYLOAD

    def test_ids_are_coerced_to_text(self):
        event = RawEvent.from_dict({"ledger": 1, "tx_hash": "t", "topic": ["x"], "id": 7,
                                    "contractId": 99})
        assert event.id == "7"
        assert event.contract_id == "99"

    def test_same_tx_different_index(self):
        a = parse_event(raw(event_index=0)).event
        b = parse_event(raw(event_index=1)).event
        assert a.event_id != b.event_id
        assert a.transaction_hash == b.transaction_hash


class TestValueDecoding:
    def test_json_string(self):
        assert decode_value(json.dumps({"a": 1})) == {"a": 1}

    def test_xdr_base64(self):
        encoded = base64.b64encode(json.dumps({"a": 1}).encode()).decode()
        assert decode_value({"xdr": encoded}) == {"a": 1}

    def test_bad_base64(self):
        with pytest.raises(PayloadError):
            decode_value({"xdr": "!!!not base64!!!"})

    def test_non_object(self):
        with pytest.raises(PayloadError):
            decode_value("[1, 2, 3]")

    def test_mapping_input_to_parse_event(self):
        result = parse_event({
            "ledger": 7,
            "txHash": "tx-camel",
            "topic": ["vault_cancelled"],
            "value": json.dumps({"vault_id": "v"}),
            "eventIndex": 2,
        })
        assert result.success is True
        assert result.event.event_id == "tx-camel:2"


class TestParsedEventSerialization:
    def test_dead_letter_payload_is_json_safe(self):
        event = parse_event(raw()).event
        data = event.to_dict()
        json.dumps(data)
        assert data["payload"]["start_timestamp"].startswith("2026-01-01")

    def test_rebuild_from_dict(self):
        event = parse_event(raw(topic="milestone_created", value=MILESTONE_VALUE)).event
        rebuilt = ParsedEvent.from_dict(event.to_dict())
        assert rebuilt == event
