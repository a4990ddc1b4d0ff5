"""
Referral domain model.

A referral is immutable: every change goes through
``clinicflow.workflow.transitions`` and produces a new instance with a
bumped ``version``. The version is the optimistic concurrency token used
by the stores.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from clinicflow.models.base import isoformat, utcnow
from clinicflow.workflow.states import ClientState, WorkflowStatus, client_state_for


class Urgency(str, Enum):
    """Clinical urgency declared on the referral form."""

    ROUTINE = "routine"
    URGENT = "urgent"
    EMERGENCY = "emergency"


# Lifecycle milestones in their natural order
LIFECYCLE_FIELDS = ("created_at", "reviewed_at", "assigned_at", "exported_at", "completed_at")


@dataclass(frozen=True)
class TransitionRecord:
    """One committed status change."""

    from_status: WorkflowStatus
    to_status: WorkflowStatus
    timestamp: datetime
    actor: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_status": self.from_status.value,
            "to_status": self.to_status.value,
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class Referral:
    """A prospective client's referral and its workflow position."""

    client_name: str
    id: UUID = field(default_factory=uuid4)

    # Pre-clinical intake data
    client_email: Optional[str] = None
    client_phone: Optional[str] = None
    client_age: Optional[int] = None
    presenting_concerns: Optional[str] = None
    urgency: Urgency = Urgency.ROUTINE
    insurance_provider: Optional[str] = None
    insurance_member_id: Optional[str] = None
    referral_source: Optional[str] = None
    referral_notes: Optional[str] = None

    # Workflow
    workflow_status: WorkflowStatus = WorkflowStatus.REFERRAL_SUBMITTED
    decline_reason: Optional[str] = None
    matching_attempts: int = 0
    assigned_therapist: Optional[str] = None
    version: int = 0

    # Lifecycle timestamps
    created_at: datetime = field(default_factory=utcnow)
    reviewed_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    exported_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Scheduling inputs for workflow automation
    intake_completed_at: Optional[datetime] = None
    first_session_at: Optional[datetime] = None

    # Audit
    created_by: Optional[str] = None
    last_modified_by: Optional[str] = None
    last_modified_at: Optional[datetime] = None
    history: tuple[TransitionRecord, ...] = ()

    @property
    def client_state(self) -> ClientState:
        """Derived from ``workflow_status``; never stored."""
        return client_state_for(self.workflow_status)

    @property
    def last_activity_at(self) -> datetime:
        """Most recent time anything happened to this referral."""
        return self.last_modified_at or self.created_at

    def to_export_dict(self) -> dict[str, Any]:
        """Pre-clinical fields shipped in the intake package."""
        return {
            "id": str(self.id),
            "clientName": self.client_name,
            "clientEmail": self.client_email,
            "clientPhone": self.client_phone,
            "clientAge": self.client_age,
            "presentingConcerns": self.presenting_concerns,
            "urgency": self.urgency.value,
            "insuranceProvider": self.insurance_provider,
            "insuranceMemberId": self.insurance_member_id,
            "referralSource": self.referral_source,
            "referralNotes": self.referral_notes,
            "workflowStatus": self.workflow_status.value,
            "clientState": self.client_state.value,
            "assignedTherapist": self.assigned_therapist,
            "createdAt": isoformat(self.created_at),
            "reviewedAt": isoformat(self.reviewed_at),
            "assignedAt": isoformat(self.assigned_at),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "client_name": self.client_name,
            "urgency": self.urgency.value,
            "workflow_status": self.workflow_status.value,
            "client_state": self.client_state.value,
            "decline_reason": self.decline_reason,
            "matching_attempts": self.matching_attempts,
            "assigned_therapist": self.assigned_therapist,
            "version": self.version,
            "created_at": isoformat(self.created_at),
            "reviewed_at": isoformat(self.reviewed_at),
            "assigned_at": isoformat(self.assigned_at),
            "exported_at": isoformat(self.exported_at),
            "completed_at": isoformat(self.completed_at),
            "last_modified_at": isoformat(self.last_modified_at),
            "last_modified_by": self.last_modified_by,
            "history": [record.to_dict() for record in self.history],
        }
