"""
Validated referral status transitions.

``transition`` is a pure function: it checks the move against the
adjacency table, stamps lifecycle timestamps and returns a new referral.
Persisting the result (with a version check) is the store's job.
"""

import dataclasses
import logging
from datetime import datetime
from typing import Optional

from clinicflow.models.base import utcnow
from clinicflow.models.referral import LIFECYCLE_FIELDS, Referral, TransitionRecord
from clinicflow.workflow.states import (
    TERMINAL_STATUSES,
    WorkflowStatus,
    get_allowed_next_statuses,
    requires_reason,
)

logger = logging.getLogger(__name__)

# Lifecycle timestamp stamped when a status is first entered
STATUS_TIMESTAMPS: dict[WorkflowStatus, str] = {
    WorkflowStatus.REFERRAL_UNDER_REVIEW: "reviewed_at",
    WorkflowStatus.ASSIGNMENT_ACCEPTED: "assigned_at",
    **{status: "completed_at" for status in TERMINAL_STATUSES},
}


class TransitionError(Exception):
    """Base error for rejected transitions. Never retried automatically."""


class InvalidTransition(TransitionError):
    """Target status is not reachable from the current status."""

    def __init__(self, current: WorkflowStatus, target: "WorkflowStatus | str"):
        self.current = current
        self.target = target
        allowed = sorted(s.value for s in get_allowed_next_statuses(current))
        self.target_value = target.value if isinstance(target, WorkflowStatus) else str(target)
        super().__init__(
            f"Cannot transition from {current.value} to {self.target_value}; "
            f"allowed: {', '.join(allowed) or 'none (terminal)'}"
        )


class ReasonRequired(TransitionError):
    """Declining requires a non-blank reason."""

    def __init__(self, target: WorkflowStatus):
        self.target = target
        super().__init__(f"A reason is required to transition to {target.value}")


class ConcurrentModification(TransitionError):
    """The referral changed since the caller read it."""

    def __init__(self, referral_id, expected_version: int, actual_version: int):
        self.referral_id = referral_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Referral {referral_id} is at version {actual_version}, "
            f"expected {expected_version}"
        )


def _latest_lifecycle_timestamp(referral: Referral) -> Optional[datetime]:
    stamps = [getattr(referral, name) for name in LIFECYCLE_FIELDS]
    stamps = [s for s in stamps if s is not None]
    return max(stamps) if stamps else None


def transition(
    referral: Referral,
    target: "WorkflowStatus | str",
    reason: Optional[str] = None,
    *,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
    expected_version: Optional[int] = None,
) -> Referral:
    """
    Move a referral to ``target``.

    Args:
        referral: Current referral snapshot
        target: Requested status
        reason: Required (non-blank) for declines, recorded otherwise
        actor: User performing the change
        now: Clock override
        expected_version: If given, must equal ``referral.version``

    Returns:
        New referral with the status applied and ``version`` incremented

    Raises:
        InvalidTransition: target not allowed from the current status
        ReasonRequired: decline without a reason
        ConcurrentModification: version mismatch
    """
    current = referral.workflow_status
    if not isinstance(target, WorkflowStatus):
        try:
            target = WorkflowStatus(target)
        except ValueError:
            raise InvalidTransition(current, target) from None

    if expected_version is not None and expected_version != referral.version:
        raise ConcurrentModification(referral.id, expected_version, referral.version)

    if target not in get_allowed_next_statuses(current):
        raise InvalidTransition(current, target)

    reason = reason.strip() if reason else None
    if requires_reason(target) and not reason:
        raise ReasonRequired(target)

    now = now or utcnow()
    changes: dict = {
        "workflow_status": target,
        "version": referral.version + 1,
        "last_modified_at": now,
        "last_modified_by": actor,
    }

    stamp_field = STATUS_TIMESTAMPS.get(target)
    if stamp_field and getattr(referral, stamp_field) is None:
        # Lifecycle timestamps never go backwards, even with a skewed clock
        latest = _latest_lifecycle_timestamp(referral)
        changes[stamp_field] = max(now, latest) if latest else now

    if requires_reason(target):
        changes["decline_reason"] = reason
    if target == WorkflowStatus.ASSIGNMENT_DECLINED:
        changes["matching_attempts"] = referral.matching_attempts + 1

    record = TransitionRecord(
        from_status=current,
        to_status=target,
        timestamp=changes.get(stamp_field, now) if stamp_field else now,
        actor=actor,
        reason=reason,
    )
    changes["history"] = referral.history + (record,)

    logger.info(
        f"Referral {referral.id} transition {current.value} -> {target.value} "
        f"(version {referral.version} -> {referral.version + 1})"
    )
    return dataclasses.replace(referral, **changes)


def mark_exported(referral: Referral, now: Optional[datetime] = None) -> Referral:
    """Stamp ``exported_at`` once; later calls leave the referral unchanged."""
    if referral.exported_at is not None:
        return referral
    now = now or utcnow()
    latest = _latest_lifecycle_timestamp(referral)
    stamp = max(now, latest) if latest else now
    return dataclasses.replace(
        referral,
        exported_at=stamp,
        version=referral.version + 1,
        last_modified_at=stamp,
    )
