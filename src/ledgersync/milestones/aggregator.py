"""Deterministic aggregation of verifier decisions into a milestone status."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

POLICIES = ("all", "majority")
TERMINAL_STATUSES = frozenset({"approved", "rejected", "expired"})


@dataclass
class Aggregate:
    """Aggregated view of one milestone's decisions."""
    status: str
    total: int
    approved: int
    rejected: int
    pending: int
    reason: str

    @property
    def is_final(self) -> bool:
        return self.status in TERMINAL_STATUSES


def _count(decisions: Iterable[str]) -> tuple[int, int, int, int]:
    decisions = list(decisions)
    approved = sum(1 for d in decisions if d == "approved")
    rejected = sum(1 for d in decisions if d == "rejected")
    return len(decisions), approved, rejected, len(decisions) - approved - rejected


def aggregate(decisions: Iterable[str], policy: str) -> Aggregate:
    """
    Combine the decisions of the active verifiers under ``policy``.

    all      → any rejection rejects; every verifier approving approves.
    majority → strictly more than half approving (or rejecting) decides.
               An exact even split stays pending.
    With no active verifiers the milestone stays pending.
    """
    if policy not in POLICIES:
        raise ValueError(f"Unknown approval policy: {policy}")

    total, approved, rejected, pending = _count(decisions)

    def result(status: str, reason: str) -> Aggregate:
        return Aggregate(status, total, approved, rejected, pending, reason)

    if total == 0:
        return result("pending", "No active verifiers assigned")

    if policy == "all":
        if rejected > 0:
            return result("rejected", f"{rejected} verifier(s) rejected the milestone")
        if approved == total:
            return result("approved", f"All {total} verifier(s) approved the milestone")
        return result(
            "pending",
            f"{approved}/{total} verifiers have approved, {pending} pending",
        )

    # Strictly more than N/2, compared in integers.
    if approved * 2 > total:
        return result("approved", f"{approved}/{total} verifiers approved (majority reached)")
    if rejected * 2 > total:
        return result("rejected", f"{rejected}/{total} verifiers rejected (majority reached)")
    if pending == 0:
        return result(
            "pending",
            f"{approved} approved, {rejected} rejected: tied, awaiting deadline",
        )
    return result(
        "pending",
        f"{approved} approved, {rejected} rejected, {pending} pending (majority not reached)",
    )


def is_expired(deadline: datetime, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc)
    if deadline.tzinfo is None:
        deadline = deadline.replace(tzinfo=timezone.utc)
    return deadline < now


def resolve_status(
    current_status: str,
    decisions: Iterable[str],
    policy: str,
    deadline: datetime,
    now: Optional[datetime] = None,
) -> Aggregate:
    """
    Next status for a milestone.

    Terminal statuses never change. A pending milestone past its deadline
    expires regardless of the decisions recorded so far.
    """
    agg = aggregate(decisions, policy)
    if current_status in TERMINAL_STATUSES:
        agg.status = current_status
        agg.reason = f"Milestone already {current_status}"
        return agg
    if is_expired(deadline, now):
        agg.status = "expired"
        agg.reason = "Deadline passed before a final decision"
    return agg
