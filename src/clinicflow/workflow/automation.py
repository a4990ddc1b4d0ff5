"""
Workflow automation rules.

Pure evaluation of:
- automatic transitions (intake completed, first session held, idle timeout)
- SLA violations per workflow phase
- reminders for referrals waiting on documents

Applying the results is done by ``ReferralWorkflowService`` so every
automatic change goes through the same validated, version-checked path
as a manual one.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, Optional
from uuid import UUID

from clinicflow.models.base import utcnow
from clinicflow.models.referral import Referral
from clinicflow.workflow.states import ClientState, WorkflowStatus, get_allowed_next_statuses

logger = logging.getLogger(__name__)

# SLA targets in days
SLA_TARGETS = {
    "referral_review": 3,
    "pre_staging": 7,
    "staging_assignment": 5,
    "acceptance": 10,
}
CRITICAL_MULTIPLIER = 1.5

IDLE_TIMEOUT_DAYS = 30
IDLE_DECLINE_REASON = f"Automatically declined due to {IDLE_TIMEOUT_DAYS} days of inactivity"
DOCUMENT_REMINDER_DAYS = 3

AUTOMATION_ACTOR = "system-automation"


def days_since(timestamp: Optional[datetime], now: datetime) -> Optional[int]:
    """Whole days elapsed since ``timestamp``."""
    if timestamp is None:
        return None
    return (now - timestamp).days


def entered_at(referral: Referral, status: WorkflowStatus) -> Optional[datetime]:
    """When the referral most recently entered ``status``."""
    for record in reversed(referral.history):
        if record.to_status == status:
            return record.timestamp
    return None


@dataclass(frozen=True)
class AutoTransitionRule:
    """A condition that moves a referral without human input."""

    name: str
    condition: Callable[[Referral, datetime], bool]
    target: Callable[[Referral], Optional[WorkflowStatus]]
    reason: Optional[str] = None


@dataclass(frozen=True)
class AutoTransition:
    """A rule that matched, with its resolved target."""

    rule: str
    target: WorkflowStatus
    reason: Optional[str] = None


def _first_session_held(referral: Referral, now: datetime) -> bool:
    return (
        referral.workflow_status == WorkflowStatus.WAITING_FIRST_SESSION
        and referral.first_session_at is not None
        and referral.first_session_at <= now
    )


def _intake_completed(referral: Referral, now: datetime) -> bool:
    return (
        referral.workflow_status == WorkflowStatus.INTAKE_SCHEDULED
        and referral.intake_completed_at is not None
        and referral.intake_completed_at <= now
    )


def _idle(referral: Referral, now: datetime) -> bool:
    if referral.client_state == ClientState.INACTIVE:
        return False
    idle_days = days_since(referral.last_activity_at, now)
    return idle_days is not None and idle_days >= IDLE_TIMEOUT_DAYS


def _idle_decline_target(referral: Referral) -> Optional[WorkflowStatus]:
    # Only decline through an edge the workflow graph actually has
    allowed = get_allowed_next_statuses(referral.workflow_status)
    for candidate in (WorkflowStatus.DECLINED, WorkflowStatus.REFERRAL_DECLINED):
        if candidate in allowed:
            return candidate
    return None


AUTO_TRANSITION_RULES: list[AutoTransitionRule] = [
    AutoTransitionRule(
        name="first_session_completed",
        condition=_first_session_held,
        target=lambda referral: WorkflowStatus.IN_TREATMENT,
    ),
    AutoTransitionRule(
        name="idle_timeout",
        condition=_idle,
        target=_idle_decline_target,
        reason=IDLE_DECLINE_REASON,
    ),
    AutoTransitionRule(
        name="intake_completed",
        condition=_intake_completed,
        target=lambda referral: WorkflowStatus.WAITING_FIRST_SESSION,
    ),
]


def evaluate_auto_transition(
    referral: Referral,
    now: Optional[datetime] = None,
    rules: Iterable[AutoTransitionRule] = AUTO_TRANSITION_RULES,
) -> Optional[AutoTransition]:
    """
    Find the first automatic transition that applies.

    At most one rule fires per evaluation. A matching rule without a legal
    target (an idle referral in a status that cannot be declined) is
    skipped.
    """
    now = now or utcnow()
    for rule in rules:
        if not rule.condition(referral, now):
            continue
        target = rule.target(referral)
        if target is None:
            logger.debug(f"Rule {rule.name} matched referral {referral.id} but has no legal target")
            continue
        return AutoTransition(rule=rule.name, target=target, reason=rule.reason)
    return None


class SLASeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class SLAViolation:
    """A referral that has spent longer than target in a phase."""

    referral_id: UUID
    client_name: str
    phase: str
    target_days: int
    actual_days: int
    severity: SLASeverity

    def to_dict(self) -> dict[str, Any]:
        return {
            "referral_id": str(self.referral_id),
            "client_name": self.client_name,
            "phase": self.phase,
            "target_days": self.target_days,
            "actual_days": self.actual_days,
            "severity": self.severity.value,
        }


def _violation(referral: Referral, phase: str, target_key: str, started: Optional[datetime], now: datetime):
    days = days_since(started, now)
    target = SLA_TARGETS[target_key]
    if days is None or days <= target:
        return None
    severity = SLASeverity.CRITICAL if days > target * CRITICAL_MULTIPLIER else SLASeverity.WARNING
    return SLAViolation(
        referral_id=referral.id,
        client_name=referral.client_name,
        phase=phase,
        target_days=target,
        actual_days=days,
        severity=severity,
    )


def check_sla_violations(referral: Referral, now: Optional[datetime] = None) -> list[SLAViolation]:
    """Check a single referral against the phase SLA targets."""
    now = now or utcnow()
    status = referral.workflow_status
    if referral.client_state == ClientState.INACTIVE:
        return []

    candidates = []
    if status in (WorkflowStatus.REFERRAL_SUBMITTED, WorkflowStatus.DOCUMENTS_REQUESTED):
        candidates.append(
            _violation(referral, "Initial Review", "referral_review", referral.created_at, now)
        )
    if status in (WorkflowStatus.PRE_STAGING, WorkflowStatus.PRE_STAGING_COMPLETE):
        candidates.append(
            _violation(
                referral, "Pre-Staging", "pre_staging",
                entered_at(referral, WorkflowStatus.PRE_STAGING), now,
            )
        )
    if referral.client_state == ClientState.PENDING and referral.assigned_at is None:
        candidates.append(
            _violation(
                referral, "Staging & Assignment", "staging_assignment",
                entered_at(referral, WorkflowStatus.STAGING), now,
            )
        )
    if referral.assigned_at is not None and status in (
        WorkflowStatus.ASSIGNMENT_ACCEPTED,
        WorkflowStatus.INTAKE_SCHEDULED,
        WorkflowStatus.WAITING_FIRST_SESSION,
    ):
        candidates.append(
            _violation(referral, "Acceptance", "acceptance", referral.assigned_at, now)
        )

    return [v for v in candidates if v is not None]


@dataclass(frozen=True)
class DocumentReminder:
    referral_id: UUID
    client_name: str
    client_email: Optional[str]
    days_since_request: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "referral_id": str(self.referral_id),
            "client_name": self.client_name,
            "client_email": self.client_email,
            "days_since_request": self.days_since_request,
        }


def document_reminders(
    referrals: Iterable[Referral],
    now: Optional[datetime] = None,
) -> list[DocumentReminder]:
    """Referrals that have waited on requested documents for too long."""
    now = now or utcnow()
    reminders = []
    for referral in referrals:
        if referral.workflow_status != WorkflowStatus.DOCUMENTS_REQUESTED:
            continue
        requested = entered_at(referral, WorkflowStatus.DOCUMENTS_REQUESTED) or referral.last_activity_at
        days = days_since(requested, now)
        if days is not None and days >= DOCUMENT_REMINDER_DAYS:
            reminders.append(
                DocumentReminder(
                    referral_id=referral.id,
                    client_name=referral.client_name,
                    client_email=referral.client_email,
                    days_since_request=days,
                )
            )
    return reminders
