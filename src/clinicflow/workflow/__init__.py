"""
Referral workflow state machine.

Only the status tables are re-exported here; import
``clinicflow.workflow.transitions``, ``clinicflow.workflow.timeline`` and
``clinicflow.workflow.automation`` directly, since they depend on the
referral model which itself depends on these tables.
"""

from clinicflow.workflow.states import (
    ALLOWED_TRANSITIONS,
    EXPORT_TRIGGER_STATUSES,
    TERMINAL_STATUSES,
    ClientState,
    WorkflowPhase,
    WorkflowStatus,
    client_state_for,
    get_allowed_next_statuses,
    is_export_trigger,
    is_terminal,
    is_transition_allowed,
    phase_for,
    status_label,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "EXPORT_TRIGGER_STATUSES",
    "TERMINAL_STATUSES",
    "ClientState",
    "WorkflowPhase",
    "WorkflowStatus",
    "client_state_for",
    "get_allowed_next_statuses",
    "is_export_trigger",
    "is_terminal",
    "is_transition_allowed",
    "phase_for",
    "status_label",
]
