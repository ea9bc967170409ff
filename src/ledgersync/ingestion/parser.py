"""
Ledger event parsing.

Turns a raw ledger event into a typed ParsedEvent without touching the
database. Malformed input never raises: every failure comes back as a
ParseResult carrying one of the reason codes below.
"""

import base64
import binascii
import json
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Union

MISSING_TRANSACTION_HASH = "MISSING_TRANSACTION_HASH"
MISSING_EVENT_TOPIC = "MISSING_EVENT_TOPIC"
UNKNOWN_EVENT_TYPE = "UNKNOWN_EVENT_TYPE"
MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"

VAULT_STATUS_EVENTS = frozenset({"vault_completed", "vault_failed", "vault_cancelled"})

EVENT_TYPES: frozenset[str] = frozenset({
    "vault_created",
    *VAULT_STATUS_EVENTS,
    "milestone_created",
    "milestone_validated",
})

VALIDATION_RESULTS = ("approved", "rejected", "pending_review")
APPROVAL_POLICIES = ("all", "majority")

_EVENT_INDEX_SUFFIX = re.compile(r"-(\d+)$")


def _as_text(value: Any) -> str:
    return "" if value is None else str(value)


@dataclass
class RawEvent:
    """One event as delivered by the ledger fetcher."""
    ledger: Any
    tx_hash: Any
    topic: Any
    value: Any = None
    event_index: Any = None
    id: str = ""
    contract_id: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RawEvent":
        return cls(
            ledger=data.get("ledger"),
            tx_hash=data.get("tx_hash", data.get("txHash")),
            topic=data.get("topic"),
            value=data.get("value"),
            event_index=data.get("event_index", data.get("eventIndex")),
            id=_as_text(data.get("id")),
            contract_id=_as_text(data.get("contract_id", data.get("contractId"))),
        )


# ── Payload variants ──


@dataclass
class VaultCreatedPayload:
    vault_id: str
    creator: str
    amount: str
    start_timestamp: datetime
    end_timestamp: datetime
    success_destination: str
    failure_destination: str


@dataclass
class VaultStatusPayload:
    vault_id: str
    status: str


@dataclass
class MilestoneCreatedPayload:
    milestone_id: str
    vault_id: str
    title: str
    target_amount: str
    deadline: datetime
    description: str = ""
    approval_policy: str = "all"
    verifiers: list[str] = field(default_factory=list)


@dataclass
class MilestoneValidatedPayload:
    validation_id: str
    milestone_id: str
    validator_address: str
    validation_result: str
    validated_at: datetime
    evidence_hash: Optional[str] = None


EventPayload = Union[
    VaultCreatedPayload, VaultStatusPayload, MilestoneCreatedPayload, MilestoneValidatedPayload,
]


@dataclass
class ParsedEvent:
    event_id: str
    transaction_hash: str
    event_index: int
    ledger_position: int
    event_type: str
    payload: EventPayload

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form, used as the dead-letter payload."""
        data = asdict(self)
        data["payload"] = {
            k: v.isoformat() if isinstance(v, datetime) else v
            for k, v in data["payload"].items()
        }
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ParsedEvent":
        """Rebuild an event stored by to_dict(). Raises PayloadError if it no longer validates."""
        event_type = data["event_type"]
        return cls(
            event_id=data["event_id"],
            transaction_hash=data["transaction_hash"],
            event_index=int(data["event_index"]),
            ledger_position=int(data["ledger_position"]),
            event_type=event_type,
            payload=build_payload(event_type, data.get("payload") or {}),
        )


class ParseResult:
    """Result of parsing one raw event."""

    __slots__ = ("success", "event", "reason", "message")

    def __init__(
        self,
        success: bool,
        event: Optional[ParsedEvent] = None,
        reason: str = "",
        message: str = "",
    ):
        self.success = success
        self.event = event
        self.reason = reason
        self.message = message

    @classmethod
    def failure(cls, reason: str, message: str) -> "ParseResult":
        return cls(False, reason=reason, message=message)

    def __repr__(self) -> str:
        if self.success:
            return f"ParseResult(success=True, event_id={self.event.event_id!r})"
        return f"ParseResult(success=False, reason={self.reason!r}, message={self.message!r})"


class PayloadError(ValueError):
    """A recognized event carries an unusable payload."""


# ── Field coercion helpers ──


def _require_str(data: Mapping[str, Any], name: str) -> str:
    value = data.get(name)
    if not isinstance(value, str) or not value.strip():
        raise PayloadError(f"Missing or invalid {name} field")
    return value


def _require_decimal(data: Mapping[str, Any], name: str) -> str:
    value = data.get(name)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        raise PayloadError(f"Missing or invalid {name} field")
    try:
        number = Decimal(value)
    except InvalidOperation:
        raise PayloadError(f"{name} must be a valid decimal number") from None
    if not number.is_finite():
        raise PayloadError(f"{name} must be a valid decimal number")
    return value


def _require_datetime(data: Mapping[str, Any], name: str) -> datetime:
    value = data.get(name)
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            parsed = datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise PayloadError(f"{name} must be a valid date") from None
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise PayloadError(f"{name} must be a valid date") from None
    else:
        raise PayloadError(f"Missing or invalid {name} field")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def build_payload(event_type: str, data: Mapping[str, Any]) -> EventPayload:
    """Validate variant-specific fields and build the typed payload."""
    if event_type == "vault_created":
        start = _require_datetime(data, "start_timestamp")
        end = _require_datetime(data, "end_timestamp")
        if end <= start:
            raise PayloadError("end_timestamp must be after start_timestamp")
        return VaultCreatedPayload(
            vault_id=_require_str(data, "vault_id"),
            creator=_require_str(data, "creator"),
            amount=_require_decimal(data, "amount"),
            start_timestamp=start,
            end_timestamp=end,
            success_destination=_require_str(data, "success_destination"),
            failure_destination=_require_str(data, "failure_destination"),
        )

    if event_type in VAULT_STATUS_EVENTS:
        return VaultStatusPayload(
            vault_id=_require_str(data, "vault_id"),
            status=event_type.removeprefix("vault_"),
        )

    if event_type == "milestone_created":
        policy = data.get("approval_policy") or "all"
        if policy not in APPROVAL_POLICIES:
            raise PayloadError(
                f"Invalid approval_policy value: {policy}. "
                f"Must be one of: {', '.join(APPROVAL_POLICIES)}"
            )
        verifiers = data.get("verifiers") or []
        if not isinstance(verifiers, list) or not all(
            isinstance(v, str) and v.strip() for v in verifiers
        ):
            raise PayloadError("verifiers must be a list of verifier ids")
        description = data.get("description") or ""
        if not isinstance(description, str):
            raise PayloadError("Missing or invalid description field")
        return MilestoneCreatedPayload(
            milestone_id=_require_str(data, "milestone_id"),
            vault_id=_require_str(data, "vault_id"),
            title=_require_str(data, "title"),
            target_amount=_require_decimal(data, "target_amount"),
            deadline=_require_datetime(data, "deadline"),
            description=description,
            approval_policy=policy,
            verifiers=list(dict.fromkeys(verifiers)),
        )

    if event_type == "milestone_validated":
        result = _require_str(data, "validation_result")
        if result not in VALIDATION_RESULTS:
            raise PayloadError(
                f"Invalid validation_result value: {result}. "
                f"Must be one of: {', '.join(VALIDATION_RESULTS)}"
            )
        evidence_hash = data.get("evidence_hash")
        return MilestoneValidatedPayload(
            validation_id=_require_str(data, "validation_id"),
            milestone_id=_require_str(data, "milestone_id"),
            validator_address=_require_str(data, "validator_address"),
            validation_result=result,
            validated_at=_require_datetime(data, "validated_at"),
            evidence_hash=evidence_hash if isinstance(evidence_hash, str) else None,
        )

    raise PayloadError(f"No payload rules for event type: {event_type}")


def decode_value(value: Any) -> dict[str, Any]:
    """Decode the opaque value blob into a mapping.

    Accepts a mapping, JSON text or bytes, or ``{"xdr": <base64 JSON>}``.
    """
    if isinstance(value, Mapping) and set(value) == {"xdr"}:
        try:
            value = base64.b64decode(value["xdr"], validate=True)
        except (binascii.Error, TypeError, ValueError):
            raise PayloadError("value.xdr is not valid base64") from None
    if isinstance(value, (bytes, bytearray)):
        try:
            value = value.decode("utf-8")
        except UnicodeDecodeError:
            raise PayloadError("value is not valid UTF-8") from None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            raise PayloadError("value is not valid JSON") from None
    if not isinstance(value, Mapping):
        raise PayloadError("value must decode to an object")
    return dict(value)


def _resolve_event_index(raw: RawEvent) -> int:
    if isinstance(raw.event_index, int) and not isinstance(raw.event_index, bool):
        index = raw.event_index
    elif isinstance(raw.event_index, str) and raw.event_index.isdigit():
        index = int(raw.event_index)
    else:
        match = _EVENT_INDEX_SUFFIX.search(raw.id) if isinstance(raw.id, str) else None
        if not match:
            raise PayloadError("Could not determine event index")
        index = int(match.group(1))
    if index < 0:
        raise PayloadError("Event index must be non-negative")
    return index


def parse_event(raw: RawEvent | Mapping[str, Any]) -> ParseResult:
    """
    Parse a raw ledger event.

    Checks, in order:
    - transaction hash present
    - topic present
    - topic is a known event type
    - event index, ledger position, and variant payload are usable

    Returns:
        ParseResult holding the ParsedEvent, or the failure reason
    """
    if isinstance(raw, Mapping):
        raw = RawEvent.from_dict(raw)

    if not isinstance(raw.tx_hash, str) or not raw.tx_hash.strip():
        return ParseResult.failure(MISSING_TRANSACTION_HASH, "Missing transaction hash")

    topic = raw.topic
    if isinstance(topic, str):
        topic = [topic]
    if not isinstance(topic, (list, tuple)) or not topic or not isinstance(topic[0], str) \
            or not topic[0].strip():
        return ParseResult.failure(MISSING_EVENT_TOPIC, "Missing event topic")

    event_type = topic[0].strip()
    if event_type not in EVENT_TYPES:
        return ParseResult.failure(UNKNOWN_EVENT_TYPE, f"Unknown event type: {event_type}")

    try:
        event_index = _resolve_event_index(raw)
        if isinstance(raw.ledger, bool) or not isinstance(raw.ledger, int) or raw.ledger < 0:
            raise PayloadError("Missing or invalid ledger position")
        payload = build_payload(event_type, decode_value(raw.value))
    except PayloadError as exc:
        return ParseResult.failure(
            MALFORMED_PAYLOAD,
            f"Failed to parse payload for event type {event_type}: {exc}",
        )

    tx_hash = raw.tx_hash.strip()
    return ParseResult(
        True,
        event=ParsedEvent(
            event_id=f"{tx_hash}:{event_index}",
            transaction_hash=tx_hash,
            event_index=event_index,
            ledger_position=raw.ledger,
            event_type=event_type,
            payload=payload,
        ),
    )
