"""ledgersync: exactly-once ledger event ingestion and milestone verification."""

from ledgersync.ingestion.parser import ParsedEvent, ParseResult, RawEvent, parse_event
from ledgersync.milestones.aggregator import aggregate, resolve_status
from ledgersync.verification.service import compute_fingerprint

__all__ = [
    "ParsedEvent",
    "ParseResult",
    "RawEvent",
    "parse_event",
    "aggregate",
    "resolve_status",
    "compute_fingerprint",
]
__version__ = "0.1.0"
