"""
Unit tests for workflow statuses and the transition table.
"""

import pytest

from clinicflow.workflow.states import (
    ALLOWED_TRANSITIONS,
    CLIENT_STATES,
    STATUS_LABELS,
    STATUS_PHASES,
    TERMINAL_STATUSES,
    ClientState,
    WorkflowStatus,
    client_state_for,
    get_allowed_next_statuses,
    is_export_trigger,
    is_terminal,
    is_transition_allowed,
    parse_status,
    requires_reason,
)


class TestTransitionTable:
    """Tests for the adjacency table."""

    def test_every_status_has_an_entry(self):
        for status in WorkflowStatus:
            assert status in ALLOWED_TRANSITIONS
            assert status in CLIENT_STATES
            assert status in STATUS_PHASES
            assert status in STATUS_LABELS

    def test_targets_are_known_statuses(self):
        for targets in ALLOWED_TRANSITIONS.values():
            assert all(isinstance(target, WorkflowStatus) for target in targets)

    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {
            WorkflowStatus.REFERRAL_DECLINED,
            WorkflowStatus.TREATMENT_COMPLETE,
            WorkflowStatus.DECLINED,
        }
        for status in TERMINAL_STATUSES:
            assert get_allowed_next_statuses(status) == frozenset()
            assert is_terminal(status)

    @pytest.mark.parametrize(
        "current,target",
        [
            ("referral_submitted", "referral_under_review"),
            ("referral_under_review", "documents_requested"),
            ("documents_requested", "referral_under_review"),
            ("referral_accepted", "pre_staging"),
            ("assignment_proposed", "assignment_declined"),
            ("assignment_declined", "staging"),
            ("in_treatment", "treatment_on_hold"),
            ("treatment_on_hold", "in_treatment"),
            ("treatment_on_hold", "declined"),
        ],
    )
    def test_allowed_edges(self, current, target):
        assert is_transition_allowed(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            ("referral_submitted", "referral_accepted"),
            ("referral_submitted", "referral_submitted"),
            ("pre_staging", "staging"),
            ("staging", "declined"),
            ("treatment_complete", "in_treatment"),
            ("referral_declined", "referral_under_review"),
        ],
    )
    def test_rejected_edges(self, current, target):
        assert not is_transition_allowed(current, target)

    def test_unknown_status_raises(self):
        with pytest.raises(ValueError):
            get_allowed_next_statuses("teleported")


class TestClientState:
    """Tests for the derived client state."""

    @pytest.mark.parametrize(
        "status,state",
        [
            (WorkflowStatus.REFERRAL_SUBMITTED, ClientState.PROSPECTIVE),
            (WorkflowStatus.REFERRAL_ACCEPTED, ClientState.PROSPECTIVE),
            (WorkflowStatus.PRE_STAGING, ClientState.PENDING),
            (WorkflowStatus.ASSIGNMENT_DECLINED, ClientState.PENDING),
            (WorkflowStatus.INTAKE_SCHEDULED, ClientState.ACTIVE),
            (WorkflowStatus.TREATMENT_ON_HOLD, ClientState.ACTIVE),
            (WorkflowStatus.REFERRAL_DECLINED, ClientState.INACTIVE),
            (WorkflowStatus.DECLINED, ClientState.INACTIVE),
        ],
    )
    def test_client_state(self, status, state):
        assert client_state_for(status) == state

    def test_terminal_statuses_are_inactive(self):
        for status in TERMINAL_STATUSES:
            assert client_state_for(status) == ClientState.INACTIVE


class TestHelpers:
    def test_reason_required_for_declines_only(self):
        assert requires_reason(WorkflowStatus.REFERRAL_DECLINED)
        assert requires_reason("declined")
        assert not requires_reason(WorkflowStatus.ASSIGNMENT_DECLINED)

    def test_export_trigger(self):
        assert is_export_trigger(WorkflowStatus.PRE_STAGING)
        assert not is_export_trigger(WorkflowStatus.STAGING)

    def test_parse_status(self):
        assert parse_status(" Pre_Staging ") == WorkflowStatus.PRE_STAGING
        assert parse_status("nope") is None
        assert parse_status(None) is None
