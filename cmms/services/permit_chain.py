"""
Approval chain state machine for permits.

A permit's approval chain is an ordered list of ``ApprovalStep`` records.
Exactly one step awaits a decision at a time (status ``pending``, or
``escalated`` once its deadline has passed); every earlier step is
approved and every later step is blocked.

Everything in this module is pure: functions mutate the in-memory list
they are given and report what happened through ``ChainOutcome``. The
permit service owns persistence and side effects.

    chain = initialize_chain([{"role": "safety_officer", "escalate_after_hours": 4},
                              {"role": "plant_manager"}])
    outcome = advance(chain, Decision.APPROVE, actor_id=7)
    store_chain(permit, chain)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from cmms.core.exceptions import AuthorizationError, ValidationError
from cmms.utils.helpers import as_utc, parse_datetime, to_iso, utc_now


class StepStatus(str, Enum):
    BLOCKED = "blocked"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"


class PermitStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    ACTIVE = "active"
    CLOSED = "closed"


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


AWAITING_STATUSES = (StepStatus.PENDING, StepStatus.ESCALATED)


@dataclass
class ApprovalStep:
    """One decision point in a permit's approval chain."""

    sequence: int
    role: str | None = None
    user: int | None = None
    status: StepStatus = StepStatus.BLOCKED
    escalate_after_hours: float | None = None
    escalate_at: datetime | None = None
    approved_at: datetime | None = None
    acted_by: int | None = None
    notes: str | None = None

    @property
    def awaiting_decision(self) -> bool:
        return self.status in AWAITING_STATUSES

    @property
    def label(self) -> str:
        """'role <name>', or 'user <id>' when the step has no role."""
        if self.role:
            return f"role {self.role}"
        return f"user {self.user}"

    def schedule_deadline(self, now: datetime) -> None:
        if self.escalate_after_hours:
            self.escalate_at = as_utc(now) + timedelta(hours=self.escalate_after_hours)
        else:
            self.escalate_at = None

    def to_dict(self) -> dict:
        return {
            "sequence": self.sequence,
            "role": self.role,
            "user": self.user,
            "status": self.status.value,
            "escalate_after_hours": self.escalate_after_hours,
            "escalate_at": to_iso(self.escalate_at),
            "approved_at": to_iso(self.approved_at),
            "acted_by": self.acted_by,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ApprovalStep":
        return cls(
            sequence=int(data["sequence"]),
            role=data.get("role"),
            user=data.get("user"),
            status=StepStatus(data.get("status", StepStatus.BLOCKED.value)),
            escalate_after_hours=data.get("escalate_after_hours"),
            escalate_at=parse_datetime(data.get("escalate_at")),
            approved_at=parse_datetime(data.get("approved_at")),
            acted_by=data.get("acted_by"),
            notes=data.get("notes"),
        )


@dataclass
class ChainOutcome:
    """Result of a chain transition.

    ``permit_status`` is None when the permit's status must not change.
    """

    changed: bool
    permit_status: PermitStatus | None = None
    decided: ApprovalStep | None = None
    activated: ApprovalStep | None = None


# ── Construction / (de)serialisation ────────────────────────────────────────


def _parse_step(raw, sequence: int) -> ApprovalStep:
    if not isinstance(raw, dict):
        raise ValidationError(
            f"approval_chain[{sequence}] must be an object",
            details={"approval_chain": sequence},
        )

    role = raw.get("role")
    if role is not None:
        if not isinstance(role, str):
            raise ValidationError(f"approval_chain[{sequence}].role must be a string")
        role = role.strip() or None

    user = raw.get("user")
    if user is not None:
        if isinstance(user, bool):
            raise ValidationError(f"approval_chain[{sequence}].user must be a user id")
        try:
            user = int(user)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"approval_chain[{sequence}].user must be a user id") from exc

    if role is None and user is None:
        raise ValidationError(
            f"approval_chain[{sequence}] needs a role or a user",
            details={"approval_chain": sequence},
        )

    hours = raw.get("escalate_after_hours")
    if hours is not None:
        if isinstance(hours, bool) or not isinstance(hours, (int, float)) or hours <= 0:
            raise ValidationError(
                f"approval_chain[{sequence}].escalate_after_hours must be a positive number"
            )

    return ApprovalStep(sequence=sequence, role=role, user=user, escalate_after_hours=hours)


def initialize_chain(raw_steps, now: datetime | None = None) -> list[ApprovalStep]:
    """Build a fresh chain: step 0 pending with its deadline, the rest blocked.

    An empty list is a legal, ungated chain.
    """
    if raw_steps is None:
        raw_steps = []
    if not isinstance(raw_steps, list):
        raise ValidationError("approval_chain must be a list")

    now = now or utc_now()
    chain = [_parse_step(raw, index) for index, raw in enumerate(raw_steps)]
    if chain:
        chain[0].status = StepStatus.PENDING
        chain[0].schedule_deadline(now)
    return chain


def load_chain(data) -> list[ApprovalStep]:
    steps = [ApprovalStep.from_dict(item) for item in (data or [])]
    return sorted(steps, key=lambda s: s.sequence)


def dump_chain(chain: list[ApprovalStep]) -> list[dict]:
    return [step.to_dict() for step in chain]


def next_deadline(chain: list[ApprovalStep]) -> datetime | None:
    step = pending_step(chain)
    return step.escalate_at if step else None


def store_chain(permit, chain: list[ApprovalStep]) -> None:
    """Write the chain back onto the permit, refreshing the sweep index."""
    permit.approval_chain = dump_chain(chain)
    permit.next_escalation_at = next_deadline(chain)


# ── Queries ─────────────────────────────────────────────────────────────────


def active_step(chain: list[ApprovalStep]) -> ApprovalStep | None:
    """The single step awaiting a decision (pending or escalated), if any."""
    for step in chain:
        if step.awaiting_decision:
            return step
    return None


def pending_step(chain: list[ApprovalStep]) -> ApprovalStep | None:
    for step in chain:
        if step.status == StepStatus.PENDING:
            return step
    return None


def has_decisions(chain: list[ApprovalStep]) -> bool:
    return any(s.status in (StepStatus.APPROVED, StepStatus.REJECTED) for s in chain)


def is_overdue(step: ApprovalStep | None, now: datetime) -> bool:
    return bool(
        step
        and step.status == StepStatus.PENDING
        and step.escalate_at is not None
        and as_utc(step.escalate_at) <= as_utc(now)
    )


def can_decide(step: ApprovalStep, user_id, roles) -> bool:
    """A named user wins over a role; a step naming neither cannot be decided."""
    if step.user is not None:
        try:
            return user_id is not None and int(user_id) == step.user
        except (TypeError, ValueError):
            return False
    if step.role:
        return step.role in (roles or [])
    return False


def check_authority(step: ApprovalStep, user_id, roles) -> None:
    """Raise AuthorizationError unless the requester may decide ``step``."""
    if can_decide(step, user_id, roles):
        return
    if step.user is not None:
        raise AuthorizationError("You are not assigned to approve this step")
    raise AuthorizationError("Insufficient role to approve this permit")


# ── Transitions ─────────────────────────────────────────────────────────────


def advance(
    chain: list[ApprovalStep],
    decision: Decision,
    *,
    actor_id=None,
    notes: str | None = None,
    now: datetime | None = None,
) -> ChainOutcome:
    """Apply an approve/reject decision to the active step.

    Without an active step this is a no-op (``changed=False``).
    """
    step = active_step(chain)
    if step is None:
        return ChainOutcome(changed=False)

    now = now or utc_now()
    step.acted_by = actor_id
    step.notes = notes
    step.escalate_at = None

    if decision == Decision.REJECT:
        step.status = StepStatus.REJECTED
        return ChainOutcome(changed=True, permit_status=PermitStatus.REJECTED, decided=step)

    step.status = StepStatus.APPROVED
    step.approved_at = as_utc(now)

    upcoming = next(
        (s for s in chain if s.sequence > step.sequence and s.status == StepStatus.BLOCKED),
        None,
    )
    if upcoming is None:
        return ChainOutcome(changed=True, permit_status=PermitStatus.APPROVED, decided=step)

    upcoming.status = StepStatus.PENDING
    upcoming.schedule_deadline(now)
    return ChainOutcome(
        changed=True,
        permit_status=PermitStatus.PENDING,
        decided=step,
        activated=upcoming,
    )


def escalate(chain: list[ApprovalStep]) -> ChainOutcome:
    """Force the pending step to escalated and clear its deadline."""
    step = pending_step(chain)
    if step is None:
        raise ValidationError("Permit has no pending approvals")
    step.status = StepStatus.ESCALATED
    step.escalate_at = None
    return ChainOutcome(changed=True, permit_status=PermitStatus.ESCALATED, decided=step)
