"""
Clinicflow domain models.
"""

from clinicflow.models.base import ensure_utc, utcnow
from clinicflow.models.intake_package import (
    ENCRYPTION_ALGORITHM,
    IntakePackage,
    PackageStateError,
    PackageStatus,
    PackageType,
)
from clinicflow.models.referral import (
    LIFECYCLE_FIELDS,
    Referral,
    TransitionRecord,
    Urgency,
)

__all__ = [
    "ENCRYPTION_ALGORITHM",
    "IntakePackage",
    "LIFECYCLE_FIELDS",
    "PackageStateError",
    "PackageStatus",
    "PackageType",
    "Referral",
    "TransitionRecord",
    "Urgency",
    "ensure_utc",
    "utcnow",
]
