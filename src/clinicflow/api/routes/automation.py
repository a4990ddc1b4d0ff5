"""
Workflow automation API routes.

Manual triggers for the jobs the scheduler runs periodically.
"""

from fastapi import APIRouter, Request

from clinicflow.api.deps import WorkflowService

router = APIRouter()


@router.post("/auto-transitions")
async def run_auto_transitions(service: WorkflowService):
    """Apply automatic transitions to all open referrals."""
    report = await service.run_auto_transitions()
    return report.to_dict()


@router.get("/sla")
async def check_sla(service: WorkflowService):
    violations = await service.check_sla()
    return {
        "count": len(violations),
        "critical": sum(1 for v in violations if v.severity.value == "critical"),
        "violations": [v.to_dict() for v in violations],
    }


@router.post("/document-reminders")
async def send_document_reminders(service: WorkflowService):
    reminders = await service.send_document_reminders()
    return {"count": len(reminders), "reminders": [r.to_dict() for r in reminders]}


@router.post("/retention-sweep")
async def run_retention_sweep(request: Request):
    """Delete packages past their retention expiry."""
    report = await request.app.state.retention_sweeper.sweep()
    return report.to_dict()
