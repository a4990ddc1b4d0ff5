"""
Referral workflow API routes.

Provides endpoints for:
- creating and reading referrals
- listing allowed next statuses and applying transitions
- reading the audit timeline
- exporting intake packages (single and batch)
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, EmailStr, Field

from clinicflow.api.deps import Actor, WorkflowService
from clinicflow.export.orchestrator import ExportOptions
from clinicflow.models.referral import Referral, Urgency
from clinicflow.workflow.states import WorkflowStatus, parse_status, status_label

router = APIRouter()


class ReferralCreateRequest(BaseModel):
    """Pre-clinical intake data for a new referral."""

    client_name: str = Field(..., min_length=1, max_length=255)
    client_email: Optional[EmailStr] = None
    client_phone: Optional[str] = Field(default=None, max_length=50)
    client_age: Optional[int] = Field(default=None, ge=0, le=130)
    presenting_concerns: Optional[str] = None
    urgency: Urgency = Urgency.ROUTINE
    insurance_provider: Optional[str] = None
    insurance_member_id: Optional[str] = None
    referral_source: Optional[str] = None
    referral_notes: Optional[str] = None


class ReferralResponse(BaseModel):
    id: UUID
    client_name: str
    workflow_status: str
    workflow_label: str
    client_state: str
    version: int
    decline_reason: Optional[str] = None
    matching_attempts: int
    created_at: datetime
    reviewed_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    exported_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_referral(cls, referral: Referral) -> "ReferralResponse":
        return cls(
            id=referral.id,
            client_name=referral.client_name,
            workflow_status=referral.workflow_status.value,
            workflow_label=status_label(referral.workflow_status),
            client_state=referral.client_state.value,
            version=referral.version,
            decline_reason=referral.decline_reason,
            matching_attempts=referral.matching_attempts,
            created_at=referral.created_at,
            reviewed_at=referral.reviewed_at,
            assigned_at=referral.assigned_at,
            exported_at=referral.exported_at,
            completed_at=referral.completed_at,
        )


class NextStatusesResponse(BaseModel):
    referral_id: UUID
    current_status: str
    allowed: list[dict[str, str]]


class TransitionRequest(BaseModel):
    target_status: str = Field(..., description="Requested workflow status")
    reason: Optional[str] = Field(default=None, description="Required when declining")
    expected_version: Optional[int] = Field(
        default=None, description="Version the caller last read; rejects stale writes"
    )


class TransitionResponse(BaseModel):
    referral: ReferralResponse
    export_triggered: bool
    package_id: Optional[str] = None
    export_error: Optional[dict[str, Any]] = None


class ExportRequest(BaseModel):
    package_name: Optional[str] = None
    notification_recipient: Optional[EmailStr] = None
    download_ttl_seconds: Optional[int] = Field(default=None, gt=0, le=7 * 86400)
    restart: bool = Field(default=False, description="Ignore artifacts of a failed export")


class BatchExportRequest(BaseModel):
    referral_ids: list[UUID] = Field(..., min_length=1, max_length=100)
    notification_recipient: Optional[EmailStr] = None


def _parse_target(value: str) -> WorkflowStatus:
    target = parse_status(value)
    if target is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown workflow status: {value}",
        )
    return target


@router.post("", response_model=ReferralResponse, status_code=status.HTTP_201_CREATED)
async def create_referral(request: ReferralCreateRequest, service: WorkflowService, actor: Actor):
    """Record a new referral in ``referral_submitted``."""
    referral = Referral(**request.model_dump(), created_by=actor)
    created = await service.create_referral(referral)
    return ReferralResponse.from_referral(created)


@router.get("/{referral_id}", response_model=ReferralResponse)
async def get_referral(referral_id: UUID, service: WorkflowService):
    referral = await service.store.load_referral(referral_id)
    return ReferralResponse.from_referral(referral)


@router.get("/{referral_id}/next-statuses", response_model=NextStatusesResponse)
async def get_next_statuses(referral_id: UUID, service: WorkflowService):
    """Statuses the referral may move to from where it is now."""
    referral = await service.store.load_referral(referral_id)
    allowed = await service.get_allowed_next_statuses(referral_id)
    return NextStatusesResponse(
        referral_id=referral_id,
        current_status=referral.workflow_status.value,
        allowed=[
            {"status": s.value, "label": status_label(s)}
            for s in sorted(allowed, key=lambda s: s.value)
        ],
    )


@router.post("/{referral_id}/transition", response_model=TransitionResponse)
async def transition_referral(
    referral_id: UUID,
    request: TransitionRequest,
    service: WorkflowService,
    actor: Actor,
):
    """
    Move a referral to a new workflow status.

    Entering the export-trigger status builds and uploads the intake
    package. An export failure does not undo the transition and is
    reported in ``export_error``.
    """
    outcome = await service.transition_referral(
        referral_id,
        _parse_target(request.target_status),
        request.reason,
        actor=actor,
        expected_version=request.expected_version,
    )
    return TransitionResponse(
        referral=ReferralResponse.from_referral(outcome.referral),
        export_triggered=outcome.export_triggered,
        package_id=outcome.package.id if outcome.package else None,
        export_error=outcome.export_error.to_dict() if outcome.export_error else None,
    )


@router.get("/{referral_id}/timeline")
async def get_timeline(referral_id: UUID, service: WorkflowService):
    """Chronological audit trail for a referral."""
    events = await service.get_timeline(referral_id)
    return {
        "referral_id": str(referral_id),
        "event_count": len(events),
        "events": [event.to_dict() for event in events],
    }


@router.post("/{referral_id}/export")
async def export_referral(
    referral_id: UUID,
    service: WorkflowService,
    actor: Actor,
    request: Optional[ExportRequest] = None,
):
    """
    Export (or resume exporting) a referral's intake package.

    The signed download URL is not returned here; use the package
    download endpoint.
    """
    request = request or ExportRequest()
    options = ExportOptions(
        exported_by=actor,
        package_name=request.package_name,
        notification_recipient=request.notification_recipient,
        download_ttl_seconds=request.download_ttl_seconds,
    )
    package = await service.export_referral(referral_id, options, resume=not request.restart)
    return package.to_dict()


@router.post("/batch-export")
async def batch_export(request: BatchExportRequest, service: WorkflowService, actor: Actor):
    """Export several referrals sequentially. Not atomic."""
    report = await service.batch_export(
        request.referral_ids,
        ExportOptions(exported_by=actor, notification_recipient=request.notification_recipient),
    )
    return report.to_dict()
