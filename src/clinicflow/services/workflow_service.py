"""
Referral workflow service.

Coordinates the pure state machine with persistence, the export pipeline
and notifications:

1. validate and commit a transition (compare-and-swap on version)
2. if the new status is an export trigger, build and ship the package
3. record the package and its outcome on the referral timeline
4. notify interested parties without waiting on them
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional
from uuid import UUID

from clinicflow.db.store import ReferralNotFound, ReferralStore
from clinicflow.export.errors import ExportError
from clinicflow.export.orchestrator import (
    BatchExportFailure,
    BatchExportReport,
    ExportArtifacts,
    ExportOptions,
    ExportOrchestrator,
    ExportResult,
)
from clinicflow.models.base import utcnow
from clinicflow.models.intake_package import IntakePackage, PackageStatus
from clinicflow.models.referral import Referral
from clinicflow.notifications.dispatcher import (
    NotificationDispatcher,
    NotificationEvent,
    NotificationType,
)
from clinicflow.notifications.messages import package_ready_message, state_change_message
from clinicflow.storage.client import ObjectStorageClient
from clinicflow.workflow import automation
from clinicflow.workflow.states import WorkflowStatus, get_allowed_next_statuses, is_export_trigger
from clinicflow.workflow.timeline import TimelineEvent, build_timeline, export_event
from clinicflow.workflow.transitions import (
    ConcurrentModification,
    TransitionError,
    mark_exported,
    transition,
)

logger = logging.getLogger(__name__)

MARK_EXPORTED_ATTEMPTS = 3


class PackageExpired(Exception):
    """Package retention has lapsed; it can no longer be downloaded."""

    def __init__(self, package_id: str):
        self.package_id = package_id
        super().__init__(f"Intake package {package_id} has expired")


class PackageUnavailable(Exception):
    """Package was never uploaded (pending or failed)."""

    def __init__(self, package_id: str, status: PackageStatus):
        self.package_id = package_id
        self.status = status
        super().__init__(f"Intake package {package_id} is {status.value} and cannot be downloaded")


@dataclass
class TransitionOutcome:
    """Result of a committed transition and any export it triggered."""

    referral: Referral
    package: Optional[IntakePackage] = None
    export_error: Optional[ExportError] = None

    @property
    def export_triggered(self) -> bool:
        return self.package is not None or self.export_error is not None


@dataclass
class AutomationReport:
    checked: int = 0
    transitioned: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"checked": self.checked, "transitioned": self.transitioned, "errors": self.errors}


class ReferralWorkflowService:
    """Application service for referral workflow operations."""

    def __init__(
        self,
        store: ReferralStore,
        orchestrator: ExportOrchestrator,
        storage_client: ObjectStorageClient,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.storage = storage_client
        self.dispatcher = dispatcher or NotificationDispatcher()
        self._failed_exports: dict[UUID, ExportArtifacts] = {}

    # ------------------------------------------------------------------
    # Workflow

    async def create_referral(self, referral: Referral) -> Referral:
        created = await self.store.create_referral(referral)
        self.dispatcher.notify(
            NotificationEvent(
                type=NotificationType.TRANSITION,
                referral_id=created.id,
                payload={"to_status": created.workflow_status.value},
            )
        )
        return created

    async def get_allowed_next_statuses(self, referral_id: UUID) -> frozenset[WorkflowStatus]:
        referral = await self.store.load_referral(referral_id)
        return get_allowed_next_statuses(referral.workflow_status)

    async def transition_referral(
        self,
        referral_id: UUID,
        target: "WorkflowStatus | str",
        reason: Optional[str] = None,
        *,
        actor: Optional[str] = None,
        expected_version: Optional[int] = None,
        export_options: Optional[ExportOptions] = None,
    ) -> TransitionOutcome:
        """
        Validate and commit a transition, exporting when the new status
        is an export trigger.

        Export failures do not undo the transition; they are recorded on
        the timeline and returned in the outcome.

        Raises:
            TransitionError: invalid target, missing reason or stale version
            ReferralNotFound: unknown referral
        """
        current = await self.store.load_referral(referral_id)
        updated = transition(
            current,
            target,
            reason,
            actor=actor,
            expected_version=expected_version,
        )
        saved = await self.store.save_referral(updated, expected_version=current.version)

        last = saved.history[-1]
        self.dispatcher.notify(
            NotificationEvent(
                type=NotificationType.TRANSITION,
                referral_id=saved.id,
                payload={
                    "from_status": last.from_status.value,
                    "to_status": last.to_status.value,
                    "actor": actor,
                    "reason": last.reason,
                },
            )
        )
        if current.client_state != saved.client_state:
            message = state_change_message(saved, current.client_state, saved.client_state)
            self.dispatcher.notify(
                NotificationEvent(
                    type=NotificationType.CLIENT_STATE_CHANGED,
                    referral_id=saved.id,
                    payload={
                        "from_state": current.client_state.value,
                        "to_state": saved.client_state.value,
                        "message": message.to_dict(),
                    },
                )
            )

        outcome = TransitionOutcome(referral=saved)
        if is_export_trigger(saved.workflow_status):
            options = export_options or ExportOptions(exported_by=actor)
            try:
                outcome.package = await self.export_referral(saved.id, options)
            except ExportError as e:
                outcome.export_error = e
            outcome.referral = await self.store.load_referral(saved.id)
        return outcome

    async def get_timeline(self, referral_id: UUID) -> list[TimelineEvent]:
        referral = await self.store.load_referral(referral_id)
        stored = await self.store.list_timeline_events(referral_id)
        return build_timeline(referral, stored)

    # ------------------------------------------------------------------
    # Export

    async def _stamp_exported(self, referral_id: UUID, now: datetime) -> Referral:
        attempt = 1
        while True:
            current = await self.store.load_referral(referral_id)
            updated = mark_exported(current, now)
            if updated is current:
                return current
            try:
                return await self.store.save_referral(updated, expected_version=current.version)
            except ConcurrentModification:
                if attempt >= MARK_EXPORTED_ATTEMPTS:
                    raise
                attempt += 1
                logger.info(f"Referral {referral_id} changed while stamping export, retrying")

    async def _record_export_failure(self, referral: Referral, error: ExportError) -> None:
        artifacts = error.artifacts
        if artifacts is not None:
            self._failed_exports[referral.id] = artifacts
            # Metadata of anything already produced, for resume and retention
            blob = artifacts.blob
            retention = timedelta(days=self.orchestrator.settings.package_retention_days)
            package = IntakePackage(
                id=artifacts.package_id,
                referral_id=referral.id,
                package_name=artifacts.package_name,
                created_at=artifacts.created_at,
                created_by=artifacts.exported_by,
                encryption_key_id=blob.key_id if blob else None,
                iv=blob.iv_hex if blob else None,
                auth_tag=blob.auth_tag_hex if blob else None,
                checksum_sha256=artifacts.checksum,
                storage_key=artifacts.storage_key,
                storage_url=artifacts.storage_url,
                size_original=artifacts.size_original,
                size_compressed=artifacts.size_compressed,
                size_encrypted=len(blob.ciphertext) if blob else 0,
                expires_at=artifacts.created_at + retention,
            )
            package.mark_failed(error.step.value, str(error))
            await self.store.save_package_metadata(package)

        await self.store.append_timeline_event(
            referral.id,
            export_event(
                utcnow(),
                succeeded=False,
                package_id=artifacts.package_id if artifacts else None,
                step=error.step.value,
                detail=f"{type(error).__name__} at {error.step.value}",
            ),
        )
        self.dispatcher.notify(
            NotificationEvent(
                type=NotificationType.EXPORT_FAILED,
                referral_id=referral.id,
                payload={"step": error.step.value, "error": type(error).__name__},
            )
        )

    async def _record_export_success(self, result: ExportResult, options: ExportOptions) -> IntakePackage:
        package = result.to_package(notification_recipient=options.notification_recipient)
        if options.notification_recipient:
            package.notification_sent = True
        await self.store.save_package_metadata(package)
        await self.store.append_timeline_event(
            result.referral_id,
            export_event(
                result.created_at,
                succeeded=True,
                package_id=result.package_id,
                detail=f"{package.package_name} ({result.size_encrypted} bytes)",
            ),
        )
        await self._stamp_exported(result.referral_id, result.created_at)

        payload: dict[str, Any] = {
            "package_id": result.package_id,
            "package_name": result.package_name,
            "expires_at": result.expires_at.isoformat(),
        }
        if options.notification_recipient:
            message = package_ready_message(
                options.notification_recipient,
                result.package_name,
                result.download_url,
                result.download_url_expires_at,
            )
            payload["message"] = message.to_dict()
        self.dispatcher.notify(
            NotificationEvent(
                type=NotificationType.PACKAGE_READY,
                referral_id=result.referral_id,
                payload=payload,
            )
        )
        return package

    async def export_referral(
        self,
        referral_id: UUID,
        options: Optional[ExportOptions] = None,
        resume: bool = True,
    ) -> IntakePackage:
        """
        Export a referral and persist the package metadata.

        If a previous export of this referral failed, it is resumed from
        its artifacts unless ``resume`` is False.

        Raises:
            ExportError: the failed step and artifacts; also recorded on
                the timeline
        """
        _, package = await self._export(referral_id, options or ExportOptions(), resume)
        return package

    async def _export(
        self, referral_id: UUID, options: ExportOptions, resume: bool = True
    ) -> tuple[ExportResult, IntakePackage]:
        referral = await self.store.load_referral(referral_id)
        artifacts = self._failed_exports.pop(referral_id, None)
        if not resume:
            artifacts = None
        elif artifacts is None:
            artifacts = await self._recover_failed_export(referral_id)

        try:
            result = await self.orchestrator.export_referral_package(referral, options, resume=artifacts)
        except ExportError as e:
            await self._record_export_failure(referral, e)
            raise
        return result, await self._record_export_success(result, options)

    async def _recover_failed_export(self, referral_id: UUID) -> Optional[ExportArtifacts]:
        # Only the most recent failed package is a resume candidate
        failed = await self.store.list_packages(referral_id=referral_id, status=PackageStatus.FAILED)
        if not failed:
            return None
        return await self.orchestrator.recover_artifacts(failed[0])

    def pending_export(self, referral_id: UUID) -> Optional[ExportArtifacts]:
        """Artifacts of a failed export awaiting retry."""
        return self._failed_exports.get(referral_id)

    async def batch_export(
        self,
        referral_ids: Iterable[UUID],
        options: Optional[ExportOptions] = None,
    ) -> BatchExportReport:
        """
        Export referrals one at a time; earlier successes are kept on failure.

        Every referral gets an entry in the report. Unknown ids and referrals
        that changed while being stamped are reported with no step.
        """
        report = BatchExportReport()
        for referral_id in referral_ids:
            report.total += 1
            try:
                result, _ = await self._export(referral_id, options or ExportOptions())
            except ExportError as e:
                report.errors.append(BatchExportFailure(referral_id=referral_id, step=e.step, error=str(e)))
                continue
            except (ReferralNotFound, ConcurrentModification) as e:
                logger.warning(f"Batch export skipped referral {referral_id}: {e}")
                report.errors.append(BatchExportFailure(referral_id=referral_id, step=None, error=str(e)))
                continue
            report.results.append(result)
        logger.info(f"Batch export: {report.success_count}/{report.total} succeeded")
        return report

    # ------------------------------------------------------------------
    # Packages

    async def list_packages(
        self,
        referral_id: Optional[UUID] = None,
        status: Optional[PackageStatus] = None,
    ) -> list[IntakePackage]:
        return await self.store.list_packages(referral_id=referral_id, status=status)

    async def get_package(self, package_id: str) -> IntakePackage:
        return await self.store.load_package(package_id)

    async def download_package(self, package_id: str, now: Optional[datetime] = None) -> tuple[IntakePackage, str]:
        """
        Issue a fresh signed download URL and mark the package downloaded.

        Raises:
            PackageExpired: retention has lapsed
            PackageNotFound: unknown package
        """
        now = now or utcnow()
        package = await self.store.load_package(package_id)
        if package.is_expired(now):
            raise PackageExpired(package_id)
        if package.status not in (PackageStatus.UPLOADED, PackageStatus.DOWNLOADED):
            raise PackageUnavailable(package_id, package.status)

        ttl = self.orchestrator.settings.download_url_ttl_seconds
        url = await self.storage.presign_download(package.storage_key, ttl)
        package.mark_downloaded(now)
        await self.store.save_package_metadata(package)
        return package, url

    async def delete_package(self, package_id: str) -> IntakePackage:
        """Delete the stored object and mark the package expired."""
        package = await self.store.load_package(package_id)
        if package.storage_key:
            await self.storage.delete_object(package.storage_key)
        if package.status != PackageStatus.EXPIRED:
            if package.status in (PackageStatus.UPLOADED, PackageStatus.DOWNLOADED):
                package.mark_expired()
            await self.store.save_package_metadata(package)
        self.dispatcher.notify(
            NotificationEvent(
                type=NotificationType.PACKAGE_EXPIRED,
                referral_id=package.referral_id,
                payload={"package_id": package.id, "deleted": True},
            )
        )
        return package

    # ------------------------------------------------------------------
    # Automation

    async def run_auto_transitions(self, now: Optional[datetime] = None) -> AutomationReport:
        """Apply at most one automatic transition to each open referral."""
        now = now or utcnow()
        report = AutomationReport()
        for referral in await self.store.list_referrals(include_inactive=False):
            report.checked += 1
            match = automation.evaluate_auto_transition(referral, now)
            if match is None:
                continue
            try:
                await self.transition_referral(
                    referral.id,
                    match.target,
                    match.reason,
                    actor=automation.AUTOMATION_ACTOR,
                    expected_version=referral.version,
                )
            except TransitionError as e:
                logger.warning(f"Auto-transition {match.rule} failed for referral {referral.id}: {e}")
                report.errors.append({"referral_id": str(referral.id), "rule": match.rule, "error": str(e)})
                continue
            report.transitioned += 1
        logger.info(f"Auto-transition job: {report.transitioned}/{report.checked} transitioned")
        return report

    async def check_sla(self, now: Optional[datetime] = None) -> list[automation.SLAViolation]:
        now = now or utcnow()
        violations = []
        for referral in await self.store.list_referrals(include_inactive=False):
            for violation in automation.check_sla_violations(referral, now):
                violations.append(violation)
                self.dispatcher.notify(
                    NotificationEvent(
                        type=NotificationType.SLA_VIOLATION,
                        referral_id=referral.id,
                        payload=violation.to_dict(),
                    )
                )
        critical = sum(1 for v in violations if v.severity == automation.SLASeverity.CRITICAL)
        logger.info(f"SLA check: {len(violations)} violations ({critical} critical)")
        return violations

    async def send_document_reminders(self, now: Optional[datetime] = None) -> list[automation.DocumentReminder]:
        referrals = await self.store.list_referrals(include_inactive=False)
        reminders = automation.document_reminders(referrals, now)
        for reminder in reminders:
            self.dispatcher.notify(
                NotificationEvent(
                    type=NotificationType.DOCUMENT_REMINDER,
                    referral_id=reminder.referral_id,
                    payload={"days_since_request": reminder.days_since_request},
                )
            )
        return reminders
