"""
Referral workflow statuses and their allowed transitions.

The adjacency table here is the single source of truth for which moves a
referral may make. Client state is derived from the workflow status and is
never stored separately.
"""

from enum import Enum
from typing import Optional


class WorkflowStatus(str, Enum):
    """Position of a referral in the intake-to-treatment workflow."""

    REFERRAL_SUBMITTED = "referral_submitted"
    REFERRAL_UNDER_REVIEW = "referral_under_review"
    DOCUMENTS_REQUESTED = "documents_requested"
    REFERRAL_ACCEPTED = "referral_accepted"
    REFERRAL_DECLINED = "referral_declined"
    PRE_STAGING = "pre_staging"
    PRE_STAGING_COMPLETE = "pre_staging_complete"
    STAGING = "staging"
    ASSIGNMENT_PROPOSED = "assignment_proposed"
    ASSIGNMENT_ACCEPTED = "assignment_accepted"
    ASSIGNMENT_DECLINED = "assignment_declined"
    INTAKE_SCHEDULED = "intake_scheduled"
    WAITING_FIRST_SESSION = "waiting_first_session"
    IN_TREATMENT = "in_treatment"
    TREATMENT_ON_HOLD = "treatment_on_hold"
    TREATMENT_COMPLETE = "treatment_complete"
    DECLINED = "declined"


class ClientState(str, Enum):
    """Coarse client lifecycle state shown outside the clinical team."""

    PROSPECTIVE = "prospective"
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"


class WorkflowPhase(str, Enum):
    """Phase grouping used by timelines and dashboards."""

    REFERRAL = "referral"
    PRE_STAGING = "pre_staging"
    STAGING = "staging"
    INTAKE = "intake"
    TREATMENT = "treatment"
    COMPLETION = "completion"


S = WorkflowStatus

ALLOWED_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    S.REFERRAL_SUBMITTED: frozenset({S.REFERRAL_UNDER_REVIEW}),
    S.REFERRAL_UNDER_REVIEW: frozenset(
        {S.REFERRAL_ACCEPTED, S.REFERRAL_DECLINED, S.DOCUMENTS_REQUESTED}
    ),
    S.DOCUMENTS_REQUESTED: frozenset({S.REFERRAL_UNDER_REVIEW}),
    S.REFERRAL_ACCEPTED: frozenset({S.PRE_STAGING}),
    S.REFERRAL_DECLINED: frozenset(),
    S.PRE_STAGING: frozenset({S.PRE_STAGING_COMPLETE}),
    S.PRE_STAGING_COMPLETE: frozenset({S.STAGING}),
    S.STAGING: frozenset({S.ASSIGNMENT_PROPOSED}),
    S.ASSIGNMENT_PROPOSED: frozenset({S.ASSIGNMENT_ACCEPTED, S.ASSIGNMENT_DECLINED}),
    S.ASSIGNMENT_DECLINED: frozenset({S.STAGING}),
    S.ASSIGNMENT_ACCEPTED: frozenset({S.INTAKE_SCHEDULED}),
    S.INTAKE_SCHEDULED: frozenset({S.WAITING_FIRST_SESSION}),
    S.WAITING_FIRST_SESSION: frozenset({S.IN_TREATMENT}),
    S.IN_TREATMENT: frozenset({S.TREATMENT_ON_HOLD, S.TREATMENT_COMPLETE, S.DECLINED}),
    S.TREATMENT_ON_HOLD: frozenset({S.IN_TREATMENT, S.DECLINED}),
    S.TREATMENT_COMPLETE: frozenset(),
    S.DECLINED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)

# Targets that must carry a non-blank reason
REASON_REQUIRED_STATUSES = frozenset({S.REFERRAL_DECLINED, S.DECLINED})

STATUS_LABELS: dict[WorkflowStatus, str] = {
    S.REFERRAL_SUBMITTED: "Referral Submitted",
    S.REFERRAL_UNDER_REVIEW: "Under Review",
    S.DOCUMENTS_REQUESTED: "Documents Requested",
    S.REFERRAL_ACCEPTED: "Referral Accepted",
    S.REFERRAL_DECLINED: "Referral Declined",
    S.PRE_STAGING: "Pre-Staging",
    S.PRE_STAGING_COMPLETE: "Pre-Staging Complete",
    S.STAGING: "Staging",
    S.ASSIGNMENT_PROPOSED: "Assignment Proposed",
    S.ASSIGNMENT_ACCEPTED: "Assignment Accepted",
    S.ASSIGNMENT_DECLINED: "Assignment Declined",
    S.INTAKE_SCHEDULED: "Intake Scheduled",
    S.WAITING_FIRST_SESSION: "Waiting First Session",
    S.IN_TREATMENT: "In Treatment",
    S.TREATMENT_ON_HOLD: "Treatment On Hold",
    S.TREATMENT_COMPLETE: "Treatment Complete",
    S.DECLINED: "Declined",
}

STATUS_PHASES: dict[WorkflowStatus, WorkflowPhase] = {
    S.REFERRAL_SUBMITTED: WorkflowPhase.REFERRAL,
    S.REFERRAL_UNDER_REVIEW: WorkflowPhase.REFERRAL,
    S.DOCUMENTS_REQUESTED: WorkflowPhase.REFERRAL,
    S.REFERRAL_ACCEPTED: WorkflowPhase.REFERRAL,
    S.REFERRAL_DECLINED: WorkflowPhase.REFERRAL,
    S.PRE_STAGING: WorkflowPhase.PRE_STAGING,
    S.PRE_STAGING_COMPLETE: WorkflowPhase.PRE_STAGING,
    S.STAGING: WorkflowPhase.STAGING,
    S.ASSIGNMENT_PROPOSED: WorkflowPhase.STAGING,
    S.ASSIGNMENT_ACCEPTED: WorkflowPhase.STAGING,
    S.ASSIGNMENT_DECLINED: WorkflowPhase.STAGING,
    S.INTAKE_SCHEDULED: WorkflowPhase.INTAKE,
    S.WAITING_FIRST_SESSION: WorkflowPhase.INTAKE,
    S.IN_TREATMENT: WorkflowPhase.TREATMENT,
    S.TREATMENT_ON_HOLD: WorkflowPhase.TREATMENT,
    S.TREATMENT_COMPLETE: WorkflowPhase.TREATMENT,
    S.DECLINED: WorkflowPhase.COMPLETION,
}

CLIENT_STATES: dict[WorkflowStatus, ClientState] = {
    S.REFERRAL_SUBMITTED: ClientState.PROSPECTIVE,
    S.REFERRAL_UNDER_REVIEW: ClientState.PROSPECTIVE,
    S.DOCUMENTS_REQUESTED: ClientState.PROSPECTIVE,
    S.REFERRAL_ACCEPTED: ClientState.PROSPECTIVE,
    S.PRE_STAGING: ClientState.PENDING,
    S.PRE_STAGING_COMPLETE: ClientState.PENDING,
    S.STAGING: ClientState.PENDING,
    S.ASSIGNMENT_PROPOSED: ClientState.PENDING,
    S.ASSIGNMENT_ACCEPTED: ClientState.PENDING,
    S.ASSIGNMENT_DECLINED: ClientState.PENDING,
    S.INTAKE_SCHEDULED: ClientState.ACTIVE,
    S.WAITING_FIRST_SESSION: ClientState.ACTIVE,
    S.IN_TREATMENT: ClientState.ACTIVE,
    S.TREATMENT_ON_HOLD: ClientState.ACTIVE,
    S.REFERRAL_DECLINED: ClientState.INACTIVE,
    S.TREATMENT_COMPLETE: ClientState.INACTIVE,
    S.DECLINED: ClientState.INACTIVE,
}

# Entering one of these statuses builds and ships the intake package
EXPORT_TRIGGER_STATUSES = frozenset({S.PRE_STAGING})

del S


def _coerce(status: "WorkflowStatus | str") -> WorkflowStatus:
    return status if isinstance(status, WorkflowStatus) else WorkflowStatus(status)


def get_allowed_next_statuses(status: "WorkflowStatus | str") -> frozenset[WorkflowStatus]:
    """
    Get the statuses reachable in one step from ``status``.

    Terminal statuses return an empty set. Unknown values raise ValueError.
    """
    return ALLOWED_TRANSITIONS[_coerce(status)]


def is_transition_allowed(current: "WorkflowStatus | str", target: "WorkflowStatus | str") -> bool:
    """Check whether ``current -> target`` is an edge of the workflow graph."""
    return _coerce(target) in ALLOWED_TRANSITIONS[_coerce(current)]


def is_terminal(status: "WorkflowStatus | str") -> bool:
    return _coerce(status) in TERMINAL_STATUSES


def requires_reason(status: "WorkflowStatus | str") -> bool:
    return _coerce(status) in REASON_REQUIRED_STATUSES


def is_export_trigger(status: "WorkflowStatus | str") -> bool:
    """Whether entering ``status`` should start the intake package export."""
    return _coerce(status) in EXPORT_TRIGGER_STATUSES


def client_state_for(status: "WorkflowStatus | str") -> ClientState:
    return CLIENT_STATES[_coerce(status)]


def phase_for(status: "WorkflowStatus | str") -> WorkflowPhase:
    return STATUS_PHASES[_coerce(status)]


def status_label(status: "WorkflowStatus | str") -> str:
    status = _coerce(status)
    return STATUS_LABELS.get(status, status.value)


def parse_status(value: Optional[str]) -> Optional[WorkflowStatus]:
    """Parse a status string, returning None for unknown values."""
    if value is None:
        return None
    try:
        return WorkflowStatus(value.strip().lower())
    except ValueError:
        return None
