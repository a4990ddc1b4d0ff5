"""
Application services.
"""

from clinicflow.services.workflow_service import (
    AutomationReport,
    PackageExpired,
    PackageUnavailable,
    ReferralWorkflowService,
    TransitionOutcome,
)

__all__ = [
    "AutomationReport",
    "PackageExpired",
    "PackageUnavailable",
    "ReferralWorkflowService",
    "TransitionOutcome",
]
