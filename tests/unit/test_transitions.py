"""
Unit tests for validated referral transitions.
"""

from datetime import datetime, timedelta, timezone

import pytest

from clinicflow.models.referral import Referral
from clinicflow.workflow.states import WorkflowStatus
from clinicflow.workflow.transitions import (
    ConcurrentModification,
    InvalidTransition,
    ReasonRequired,
    mark_exported,
    transition,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def referral(**kwargs) -> Referral:
    kwargs.setdefault("created_at", T0)
    return Referral(client_name="Test Client", **kwargs)


class TestTransition:
    """Tests for transition()."""

    def test_returns_new_referral(self):
        original = referral()

        updated = transition(original, "referral_under_review", actor="c-1", now=T0 + timedelta(hours=1))

        assert original.workflow_status == WorkflowStatus.REFERRAL_SUBMITTED
        assert original.version == 0
        assert updated.workflow_status == WorkflowStatus.REFERRAL_UNDER_REVIEW
        assert updated.version == 1
        assert updated.reviewed_at == T0 + timedelta(hours=1)
        assert updated.last_modified_by == "c-1"

    def test_records_history(self):
        updated = transition(referral(), WorkflowStatus.REFERRAL_UNDER_REVIEW, actor="c-1", now=T0)

        record = updated.history[-1]
        assert record.from_status == WorkflowStatus.REFERRAL_SUBMITTED
        assert record.to_status == WorkflowStatus.REFERRAL_UNDER_REVIEW
        assert record.actor == "c-1"

    def test_invalid_target(self):
        with pytest.raises(InvalidTransition) as exc_info:
            transition(referral(), WorkflowStatus.IN_TREATMENT)

        assert exc_info.value.current == WorkflowStatus.REFERRAL_SUBMITTED
        assert "referral_under_review" in str(exc_info.value)

    @pytest.mark.parametrize("target", ["not_a_status", "", "REFERRAL_ACCEPTED"])
    def test_unknown_target_string(self, target):
        """Strings that name no status are rejected like any unreachable target."""
        with pytest.raises(InvalidTransition) as exc_info:
            transition(referral(), target)

        assert exc_info.value.current == WorkflowStatus.REFERRAL_SUBMITTED
        assert exc_info.value.target_value == target
        assert "referral_under_review" in str(exc_info.value)

    def test_terminal_status_has_no_exit(self):
        closed = referral(workflow_status=WorkflowStatus.TREATMENT_COMPLETE)
        with pytest.raises(InvalidTransition) as exc_info:
            transition(closed, WorkflowStatus.IN_TREATMENT)
        assert "terminal" in str(exc_info.value)

    @pytest.mark.parametrize("reason", [None, "", "   "])
    def test_decline_requires_reason(self, reason):
        under_review = referral(workflow_status=WorkflowStatus.REFERRAL_UNDER_REVIEW)
        with pytest.raises(ReasonRequired):
            transition(under_review, WorkflowStatus.REFERRAL_DECLINED, reason)

    def test_decline_stores_reason_and_completes(self):
        under_review = referral(workflow_status=WorkflowStatus.REFERRAL_UNDER_REVIEW)

        declined = transition(under_review, WorkflowStatus.REFERRAL_DECLINED, " Out of network ", now=T0)

        assert declined.decline_reason == "Out of network"
        assert declined.completed_at == T0

    def test_version_mismatch(self):
        current = referral(version=3)
        with pytest.raises(ConcurrentModification) as exc_info:
            transition(current, WorkflowStatus.REFERRAL_UNDER_REVIEW, expected_version=2)
        assert exc_info.value.actual_version == 3

    def test_matching_attempts_counted(self):
        proposed = referral(workflow_status=WorkflowStatus.ASSIGNMENT_PROPOSED)

        declined = transition(proposed, WorkflowStatus.ASSIGNMENT_DECLINED)
        restaged = transition(declined, WorkflowStatus.STAGING)
        again = transition(transition(restaged, WorkflowStatus.ASSIGNMENT_PROPOSED), WorkflowStatus.ASSIGNMENT_DECLINED)

        assert declined.matching_attempts == 1
        assert again.matching_attempts == 2

    def test_timestamps_set_once(self):
        first = transition(referral(), WorkflowStatus.REFERRAL_UNDER_REVIEW, now=T0 + timedelta(hours=1))
        docs = transition(first, WorkflowStatus.DOCUMENTS_REQUESTED, now=T0 + timedelta(hours=2))
        back = transition(docs, WorkflowStatus.REFERRAL_UNDER_REVIEW, now=T0 + timedelta(hours=3))

        assert back.reviewed_at == T0 + timedelta(hours=1)

    def test_timestamps_never_go_backwards(self):
        """A skewed clock cannot stamp a milestone before an earlier one."""
        reviewed = referral(
            workflow_status=WorkflowStatus.ASSIGNMENT_PROPOSED,
            reviewed_at=T0 + timedelta(days=2),
        )

        accepted = transition(reviewed, WorkflowStatus.ASSIGNMENT_ACCEPTED, now=T0 + timedelta(days=1))

        assert accepted.assigned_at == T0 + timedelta(days=2)
        assert accepted.assigned_at >= accepted.reviewed_at


class TestMarkExported:
    """Tests for mark_exported()."""

    def test_stamps_once(self):
        staged = referral(workflow_status=WorkflowStatus.PRE_STAGING, version=3)

        exported = mark_exported(staged, T0 + timedelta(hours=1))
        again = mark_exported(exported, T0 + timedelta(hours=2))

        assert exported.exported_at == T0 + timedelta(hours=1)
        assert exported.version == 4
        assert again is exported
