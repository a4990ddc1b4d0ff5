"""
SQLAlchemy-backed referral store.

Each operation runs in its own session from the injected session factory.
``save_referral`` issues ``UPDATE ... WHERE version = :expected`` so two
concurrent writers cannot both commit against the same version.
"""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from clinicflow.db.orm import IntakePackageRow, ReferralRow, TimelineEventRow, TransitionRow
from clinicflow.db.store import PackageNotFound, ReferralNotFound
from clinicflow.models.base import ensure_utc
from clinicflow.models.intake_package import IntakePackage, PackageStatus, PackageType
from clinicflow.models.referral import Referral, TransitionRecord, Urgency
from clinicflow.workflow.states import CLIENT_STATES, ClientState, WorkflowPhase, WorkflowStatus
from clinicflow.workflow.timeline import TimelineEvent
from clinicflow.workflow.transitions import ConcurrentModification

logger = logging.getLogger(__name__)

# Referral columns copied one-to-one between the model and the row
_REFERRAL_COLUMNS = (
    "client_name",
    "client_email",
    "client_phone",
    "client_age",
    "presenting_concerns",
    "insurance_provider",
    "insurance_member_id",
    "referral_source",
    "referral_notes",
    "decline_reason",
    "matching_attempts",
    "assigned_therapist",
    "version",
    "created_by",
    "last_modified_by",
)
_REFERRAL_TIMESTAMPS = (
    "created_at",
    "reviewed_at",
    "assigned_at",
    "exported_at",
    "completed_at",
    "intake_completed_at",
    "first_session_at",
    "last_modified_at",
)
_PACKAGE_COLUMNS = (
    "id",
    "referral_id",
    "package_name",
    "encryption_algorithm",
    "encryption_key_id",
    "iv",
    "auth_tag",
    "checksum_sha256",
    "storage_key",
    "storage_url",
    "download_url",
    "size_original",
    "size_compressed",
    "size_encrypted",
    "created_by",
    "notification_sent",
    "notification_recipient",
    "error_step",
    "error_message",
)
_PACKAGE_TIMESTAMPS = (
    "download_url_expires_at",
    "created_at",
    "uploaded_at",
    "downloaded_at",
    "expires_at",
)


def _referral_values(referral: Referral) -> dict:
    values = {name: getattr(referral, name) for name in _REFERRAL_COLUMNS + _REFERRAL_TIMESTAMPS}
    values["urgency"] = referral.urgency.value
    values["workflow_status"] = referral.workflow_status.value
    return values


def _to_referral(row: ReferralRow) -> Referral:
    kwargs = {name: getattr(row, name) for name in _REFERRAL_COLUMNS}
    kwargs.update({name: ensure_utc(getattr(row, name)) for name in _REFERRAL_TIMESTAMPS})
    history = tuple(
        TransitionRecord(
            from_status=WorkflowStatus(t.from_status),
            to_status=WorkflowStatus(t.to_status),
            timestamp=ensure_utc(t.timestamp),
            actor=t.actor,
            reason=t.reason,
        )
        for t in row.transitions
    )
    return Referral(
        id=row.id,
        urgency=Urgency(row.urgency),
        workflow_status=WorkflowStatus(row.workflow_status),
        history=history,
        **kwargs,
    )


def _transition_rows(referral: Referral, start: int) -> list[TransitionRow]:
    return [
        TransitionRow(
            referral_id=referral.id,
            sequence=index,
            from_status=record.from_status.value,
            to_status=record.to_status.value,
            timestamp=record.timestamp,
            actor=record.actor,
            reason=record.reason,
        )
        for index, record in enumerate(referral.history[start:], start=start)
    ]


def _to_package(row: IntakePackageRow) -> IntakePackage:
    kwargs = {name: getattr(row, name) for name in _PACKAGE_COLUMNS}
    kwargs.update({name: ensure_utc(getattr(row, name)) for name in _PACKAGE_TIMESTAMPS})
    return IntakePackage(
        package_type=PackageType(row.package_type),
        status=PackageStatus(row.status),
        **kwargs,
    )


class SqlReferralStore:
    """Referral store backed by an async SQLAlchemy engine."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _get_row(self, session: AsyncSession, referral_id: UUID) -> ReferralRow:
        result = await session.execute(
            select(ReferralRow)
            .where(ReferralRow.id == referral_id)
            .options(selectinload(ReferralRow.transitions))
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise ReferralNotFound(referral_id)
        return row

    async def create_referral(self, referral: Referral) -> Referral:
        async with self.session_factory() as session:
            session.add(ReferralRow(id=referral.id, **_referral_values(referral)))
            session.add_all(_transition_rows(referral, 0))
            await session.commit()
        logger.info(f"Created referral {referral.id}")
        return referral

    async def load_referral(self, referral_id: UUID) -> Referral:
        async with self.session_factory() as session:
            return _to_referral(await self._get_row(session, referral_id))

    async def save_referral(self, referral: Referral, expected_version: int) -> Referral:
        async with self.session_factory() as session:
            result = await session.execute(
                update(ReferralRow)
                .where(ReferralRow.id == referral.id, ReferralRow.version == expected_version)
                .values(**_referral_values(referral))
            )
            if result.rowcount == 0:
                await session.rollback()
                current = await session.scalar(
                    select(ReferralRow.version).where(ReferralRow.id == referral.id)
                )
                if current is None:
                    raise ReferralNotFound(referral.id)
                raise ConcurrentModification(referral.id, expected_version, current)

            stored = await session.scalar(
                select(func.count()).select_from(TransitionRow).where(
                    TransitionRow.referral_id == referral.id
                )
            )
            session.add_all(_transition_rows(referral, stored or 0))
            await session.commit()
        return referral

    async def list_referrals(self, include_inactive: bool = True) -> list[Referral]:
        query = select(ReferralRow).options(selectinload(ReferralRow.transitions))
        if not include_inactive:
            inactive = [s.value for s, state in CLIENT_STATES.items() if state == ClientState.INACTIVE]
            query = query.where(ReferralRow.workflow_status.not_in(inactive))
        async with self.session_factory() as session:
            result = await session.execute(query.order_by(ReferralRow.created_at))
            return [_to_referral(row) for row in result.scalars().all()]

    async def append_timeline_event(self, referral_id: UUID, event: TimelineEvent) -> None:
        async with self.session_factory() as session:
            session.add(
                TimelineEventRow(
                    referral_id=referral_id,
                    timestamp=event.timestamp,
                    phase=event.phase.value,
                    label=event.label,
                    detail=event.detail,
                    source=event.source,
                    event_metadata=dict(event.metadata),
                )
            )
            await session.commit()

    async def list_timeline_events(self, referral_id: UUID) -> list[TimelineEvent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TimelineEventRow)
                .where(TimelineEventRow.referral_id == referral_id)
                .order_by(TimelineEventRow.id)
            )
            return [
                TimelineEvent(
                    timestamp=ensure_utc(row.timestamp),
                    phase=WorkflowPhase(row.phase),
                    label=row.label,
                    detail=row.detail,
                    source=row.source,
                    metadata=dict(row.event_metadata or {}),
                )
                for row in result.scalars().all()
            ]

    async def save_package_metadata(self, package: IntakePackage) -> None:
        values = {name: getattr(package, name) for name in _PACKAGE_COLUMNS + _PACKAGE_TIMESTAMPS}
        values["package_type"] = package.package_type.value
        values["status"] = package.status.value
        async with self.session_factory() as session:
            await session.merge(IntakePackageRow(**values))
            await session.commit()

    async def load_package(self, package_id: str) -> IntakePackage:
        async with self.session_factory() as session:
            row = await session.get(IntakePackageRow, package_id)
            if row is None:
                raise PackageNotFound(package_id)
            return _to_package(row)

    async def list_packages(
        self,
        referral_id: Optional[UUID] = None,
        status: Optional[PackageStatus] = None,
    ) -> list[IntakePackage]:
        query = select(IntakePackageRow)
        if referral_id is not None:
            query = query.where(IntakePackageRow.referral_id == referral_id)
        if status is not None:
            query = query.where(IntakePackageRow.status == status.value)
        async with self.session_factory() as session:
            result = await session.execute(query.order_by(IntakePackageRow.created_at.desc()))
            return [_to_package(row) for row in result.scalars().all()]
