"""
Unit tests for workflow automation rules.
"""

from datetime import datetime, timedelta, timezone

from clinicflow.models.referral import Referral, TransitionRecord
from clinicflow.workflow.automation import (
    IDLE_DECLINE_REASON,
    SLASeverity,
    check_sla_violations,
    document_reminders,
    evaluate_auto_transition,
)
from clinicflow.workflow.states import WorkflowStatus

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def days_ago(days: float) -> datetime:
    return NOW - timedelta(days=days)


def referral(**kwargs) -> Referral:
    kwargs.setdefault("created_at", days_ago(1))
    return Referral(client_name="Test Client", **kwargs)


def entered(status: WorkflowStatus, when: datetime, previous=WorkflowStatus.REFERRAL_SUBMITTED) -> TransitionRecord:
    return TransitionRecord(from_status=previous, to_status=status, timestamp=when)


class TestAutoTransitions:
    """Tests for evaluate_auto_transition()."""

    def test_first_session_moves_to_treatment(self):
        waiting = referral(
            workflow_status=WorkflowStatus.WAITING_FIRST_SESSION,
            first_session_at=days_ago(0.5),
        )

        match = evaluate_auto_transition(waiting, NOW)

        assert match.rule == "first_session_completed"
        assert match.target == WorkflowStatus.IN_TREATMENT

    def test_future_first_session_does_nothing(self):
        waiting = referral(
            workflow_status=WorkflowStatus.WAITING_FIRST_SESSION,
            first_session_at=NOW + timedelta(days=1),
        )
        assert evaluate_auto_transition(waiting, NOW) is None

    def test_intake_completed(self):
        scheduled = referral(
            workflow_status=WorkflowStatus.INTAKE_SCHEDULED,
            intake_completed_at=days_ago(0.1),
        )

        match = evaluate_auto_transition(scheduled, NOW)

        assert match.target == WorkflowStatus.WAITING_FIRST_SESSION

    def test_idle_in_treatment_is_declined(self):
        idle = referral(
            workflow_status=WorkflowStatus.TREATMENT_ON_HOLD,
            created_at=days_ago(90),
            last_modified_at=days_ago(31),
        )

        match = evaluate_auto_transition(idle, NOW)

        assert match.rule == "idle_timeout"
        assert match.target == WorkflowStatus.DECLINED
        assert match.reason == IDLE_DECLINE_REASON

    def test_idle_under_review_uses_referral_decline(self):
        idle = referral(workflow_status=WorkflowStatus.REFERRAL_UNDER_REVIEW, created_at=days_ago(30))
        assert evaluate_auto_transition(idle, NOW).target == WorkflowStatus.REFERRAL_DECLINED

    def test_idle_without_decline_edge_is_skipped(self):
        idle = referral(workflow_status=WorkflowStatus.PRE_STAGING, created_at=days_ago(60))
        assert evaluate_auto_transition(idle, NOW) is None

    def test_recent_activity_is_not_idle(self):
        active = referral(
            workflow_status=WorkflowStatus.IN_TREATMENT,
            created_at=days_ago(90),
            last_modified_at=days_ago(29),
        )
        assert evaluate_auto_transition(active, NOW) is None

    def test_inactive_referrals_are_ignored(self):
        closed = referral(workflow_status=WorkflowStatus.TREATMENT_COMPLETE, created_at=days_ago(400))
        assert evaluate_auto_transition(closed, NOW) is None


class TestSLA:
    """Tests for check_sla_violations()."""

    def test_initial_review_warning(self):
        submitted = referral(created_at=days_ago(4))

        violations = check_sla_violations(submitted, NOW)

        assert len(violations) == 1
        assert violations[0].phase == "Initial Review"
        assert violations[0].severity == SLASeverity.WARNING
        assert violations[0].actual_days == 4

    def test_initial_review_critical(self):
        violations = check_sla_violations(referral(created_at=days_ago(5)), NOW)
        assert violations[0].severity == SLASeverity.CRITICAL

    def test_within_target(self):
        assert check_sla_violations(referral(created_at=days_ago(3)), NOW) == []

    def test_pre_staging_measured_from_entry(self):
        staged = referral(
            workflow_status=WorkflowStatus.PRE_STAGING,
            created_at=days_ago(30),
            history=(entered(WorkflowStatus.PRE_STAGING, days_ago(8), WorkflowStatus.REFERRAL_ACCEPTED),),
        )

        violations = check_sla_violations(staged, NOW)

        assert [v.phase for v in violations] == ["Pre-Staging"]
        assert violations[0].target_days == 7

    def test_staging_assignment(self):
        staging = referral(
            workflow_status=WorkflowStatus.STAGING,
            created_at=days_ago(30),
            history=(entered(WorkflowStatus.STAGING, days_ago(6), WorkflowStatus.PRE_STAGING_COMPLETE),),
        )

        violations = check_sla_violations(staging, NOW)

        assert [v.phase for v in violations] == ["Staging & Assignment"]

    def test_acceptance(self):
        assigned = referral(
            workflow_status=WorkflowStatus.INTAKE_SCHEDULED,
            created_at=days_ago(40),
            assigned_at=days_ago(16),
        )

        violations = check_sla_violations(assigned, NOW)

        assert violations[0].phase == "Acceptance"
        assert violations[0].severity == SLASeverity.CRITICAL

    def test_closed_referrals_have_no_sla(self):
        closed = referral(workflow_status=WorkflowStatus.REFERRAL_DECLINED, created_at=days_ago(50))
        assert check_sla_violations(closed, NOW) == []


class TestDocumentReminders:
    """Tests for document_reminders()."""

    def test_reminds_after_threshold(self):
        waiting = referral(
            workflow_status=WorkflowStatus.DOCUMENTS_REQUESTED,
            created_at=days_ago(10),
            history=(entered(WorkflowStatus.DOCUMENTS_REQUESTED, days_ago(3), WorkflowStatus.REFERRAL_UNDER_REVIEW),),
        )
        fresh = referral(
            workflow_status=WorkflowStatus.DOCUMENTS_REQUESTED,
            created_at=days_ago(10),
            history=(entered(WorkflowStatus.DOCUMENTS_REQUESTED, days_ago(1), WorkflowStatus.REFERRAL_UNDER_REVIEW),),
        )
        other = referral(created_at=days_ago(10))

        reminders = document_reminders([waiting, fresh, other], NOW)

        assert [r.referral_id for r in reminders] == [waiting.id]
        assert reminders[0].days_since_request == 3
