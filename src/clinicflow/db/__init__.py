"""
Database layer for clinicflow.
"""

from clinicflow.db.orm import Base, IntakePackageRow, ReferralRow, TimelineEventRow, TransitionRow
from clinicflow.db.repositories import SqlReferralStore
from clinicflow.db.store import (
    InMemoryReferralStore,
    PackageNotFound,
    ReferralNotFound,
    ReferralStore,
)

__all__ = [
    "Base",
    "InMemoryReferralStore",
    "IntakePackageRow",
    "PackageNotFound",
    "ReferralNotFound",
    "ReferralRow",
    "ReferralStore",
    "SqlReferralStore",
    "TimelineEventRow",
    "TransitionRow",
]
