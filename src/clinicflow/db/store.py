"""
Referral persistence interface and in-memory implementation.

``save_referral`` is a compare-and-swap on ``version``: it only succeeds
if the stored referral is still at ``expected_version``.
"""

import asyncio
import dataclasses
import logging
from typing import Optional, Protocol
from uuid import UUID

from clinicflow.models.intake_package import IntakePackage, PackageStatus
from clinicflow.models.referral import Referral
from clinicflow.workflow.states import ClientState
from clinicflow.workflow.timeline import TimelineEvent
from clinicflow.workflow.transitions import ConcurrentModification

logger = logging.getLogger(__name__)


class ReferralNotFound(LookupError):
    def __init__(self, referral_id):
        self.referral_id = referral_id
        super().__init__(f"Referral {referral_id} not found")


class PackageNotFound(LookupError):
    def __init__(self, package_id):
        self.package_id = package_id
        super().__init__(f"Intake package {package_id} not found")


class ReferralStore(Protocol):
    """Persistence operations used by the workflow service."""

    async def create_referral(self, referral: Referral) -> Referral: ...

    async def load_referral(self, referral_id: UUID) -> Referral: ...

    async def save_referral(self, referral: Referral, expected_version: int) -> Referral: ...

    async def list_referrals(self, include_inactive: bool = True) -> list[Referral]: ...

    async def append_timeline_event(self, referral_id: UUID, event: TimelineEvent) -> None: ...

    async def list_timeline_events(self, referral_id: UUID) -> list[TimelineEvent]: ...

    async def save_package_metadata(self, package: IntakePackage) -> None: ...

    async def load_package(self, package_id: str) -> IntakePackage: ...

    async def list_packages(
        self,
        referral_id: Optional[UUID] = None,
        status: Optional[PackageStatus] = None,
    ) -> list[IntakePackage]: ...


class InMemoryReferralStore:
    """Process-local store for tests and single-node development."""

    def __init__(self):
        self._referrals: dict[UUID, Referral] = {}
        self._events: dict[UUID, list[TimelineEvent]] = {}
        self._packages: dict[str, IntakePackage] = {}
        self._lock = asyncio.Lock()

    async def create_referral(self, referral: Referral) -> Referral:
        async with self._lock:
            if referral.id in self._referrals:
                raise ValueError(f"Referral {referral.id} already exists")
            self._referrals[referral.id] = referral
        return referral

    async def load_referral(self, referral_id: UUID) -> Referral:
        try:
            return self._referrals[referral_id]
        except KeyError:
            raise ReferralNotFound(referral_id) from None

    async def save_referral(self, referral: Referral, expected_version: int) -> Referral:
        async with self._lock:
            current = self._referrals.get(referral.id)
            if current is None:
                raise ReferralNotFound(referral.id)
            if current.version != expected_version:
                raise ConcurrentModification(referral.id, expected_version, current.version)
            self._referrals[referral.id] = referral
        return referral

    async def list_referrals(self, include_inactive: bool = True) -> list[Referral]:
        referrals = sorted(self._referrals.values(), key=lambda r: r.created_at)
        if include_inactive:
            return referrals
        return [r for r in referrals if r.client_state != ClientState.INACTIVE]

    async def append_timeline_event(self, referral_id: UUID, event: TimelineEvent) -> None:
        async with self._lock:
            self._events.setdefault(referral_id, []).append(event)

    async def list_timeline_events(self, referral_id: UUID) -> list[TimelineEvent]:
        return list(self._events.get(referral_id, []))

    async def save_package_metadata(self, package: IntakePackage) -> None:
        async with self._lock:
            self._packages[package.id] = dataclasses.replace(package)

    async def load_package(self, package_id: str) -> IntakePackage:
        try:
            return dataclasses.replace(self._packages[package_id])
        except KeyError:
            raise PackageNotFound(package_id) from None

    async def list_packages(
        self,
        referral_id: Optional[UUID] = None,
        status: Optional[PackageStatus] = None,
    ) -> list[IntakePackage]:
        packages = [
            dataclasses.replace(p)
            for p in self._packages.values()
            if (referral_id is None or p.referral_id == referral_id)
            and (status is None or p.status == status)
        ]
        return sorted(packages, key=lambda p: p.created_at, reverse=True)
