"""
API route modules.
"""

from clinicflow.api.routes.automation import router as automation_router
from clinicflow.api.routes.intake_packages import router as intake_packages_router
from clinicflow.api.routes.referrals import router as referrals_router
from clinicflow.api.routes.telemetry import router as telemetry_router

__all__ = [
    "automation_router",
    "intake_packages_router",
    "referrals_router",
    "telemetry_router",
]
