"""
Readiness gate — may a work order move forward given its linked permits?

Read-only policy. ``ensure_readiness`` resolves the work order's permits
within the tenant and checks them against the requested stage:

    START     every permit approved or active
    COMPLETE  every permit approved, active or closed, and no permit
              has an unfinished isolation step

Required permit types must each be covered by at least one linked
permit, at any stage. The caller owns every write (permit status flips
included); the gate only reports.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from cmms.services.permit_chain import PermitStatus
from cmms.services.stores import permit_store

logger = logging.getLogger(__name__)


class ReadinessStage(str, Enum):
    START = "start"
    COMPLETE = "complete"


class ReadinessFailure(str, Enum):
    MISSING = "missing"
    NOT_READY = "not_ready"


START_READY_STATUSES = {PermitStatus.APPROVED.value, PermitStatus.ACTIVE.value}
COMPLETE_READY_STATUSES = {
    PermitStatus.APPROVED.value,
    PermitStatus.ACTIVE.value,
    PermitStatus.CLOSED.value,
}


@dataclass
class ReadinessResult:
    """Outcome of a readiness check; ``permits`` holds the resolved permits when ok."""

    ok: bool
    permits: list = field(default_factory=list)
    message: str | None = None
    failure: ReadinessFailure | None = None
    permit_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "message": self.message,
            "failure": self.failure.value if self.failure else None,
            "permit_id": self.permit_id,
            "permits": [p.id for p in self.permits],
        }


def _fail(failure, message, permit=None) -> ReadinessResult:
    return ReadinessResult(
        ok=False,
        message=message,
        failure=failure,
        permit_id=permit.id if permit is not None else None,
    )


def _unique_ids(permit_ids) -> list[int]:
    seen = []
    for pid in permit_ids or []:
        if pid not in seen:
            seen.append(pid)
    return seen


def ensure_readiness(
    tenant_id: int,
    permit_ids,
    required_types,
    stage: ReadinessStage,
    *,
    store=None,
) -> ReadinessResult:
    if not isinstance(stage, ReadinessStage):
        raise TypeError(f"stage must be a ReadinessStage, got {stage!r}")
    store = store or permit_store

    wanted = _unique_ids(permit_ids)
    permits = store.find(tenant_id, ids=wanted) if wanted else []
    if len(permits) != len(wanted):
        return _fail(ReadinessFailure.MISSING, "One or more linked permits could not be found")

    # Keep the work order's own ordering so messages are deterministic.
    by_id = {p.id: p for p in permits}
    permits = [by_id[pid] for pid in wanted]

    present_types = {p.type for p in permits}
    for required in required_types or []:
        if required not in present_types:
            return _fail(
                ReadinessFailure.NOT_READY,
                f"Permits missing: a {required} permit is required",
            )

    if stage == ReadinessStage.START:
        for permit in permits:
            if permit.status not in START_READY_STATUSES:
                return _fail(
                    ReadinessFailure.NOT_READY,
                    f"Permits must be approved before work can start: "
                    f"{permit.permit_number} is {permit.status}",
                    permit,
                )
    else:
        for permit in permits:
            open_steps = [s for s in (permit.isolation_steps or []) if not s.get("completed")]
            if open_steps:
                return _fail(
                    ReadinessFailure.NOT_READY,
                    f"Permits have incomplete isolation steps: {permit.permit_number} "
                    f"has {len(open_steps)} open",
                    permit,
                )
            if permit.status not in COMPLETE_READY_STATUSES:
                return _fail(
                    ReadinessFailure.NOT_READY,
                    f"Permits must be approved before work can complete: "
                    f"{permit.permit_number} is {permit.status}",
                    permit,
                )

    logger.debug("Readiness %s ok for %d permits", stage.value, len(permits),
                 extra={"tenant_id": tenant_id})
    return ReadinessResult(ok=True, permits=permits)
