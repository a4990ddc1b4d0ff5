"""
Referral audit timeline.

Builds a chronological view of a referral from three sources:
- lifecycle timestamps (created, reviewed, assigned, exported, completed)
- committed transitions in the referral history
- stored events such as export outcomes

Events are always re-sorted on output, so callers never depend on the
order events were stored in.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Iterator, Optional

from clinicflow.models.referral import Referral
from clinicflow.workflow.states import (
    TERMINAL_STATUSES,
    WorkflowPhase,
    WorkflowStatus,
    phase_for,
    status_label,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimelineEvent:
    """A single timestamped entry in a referral's audit trail."""

    timestamp: datetime
    phase: WorkflowPhase
    label: str
    detail: Optional[str] = None
    source: str = "workflow"
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "phase": self.phase.value,
            "label": self.label,
            "detail": self.detail,
            "source": self.source,
            "metadata": dict(self.metadata),
        }


# Lifecycle field -> (phase, label, statuses whose transition record already covers it)
LIFECYCLE_MILESTONES: dict[str, tuple[WorkflowPhase, str, frozenset[WorkflowStatus]]] = {
    "created_at": (WorkflowPhase.REFERRAL, "Referral Submitted", frozenset()),
    "reviewed_at": (
        WorkflowPhase.REFERRAL,
        "Review Started",
        frozenset({WorkflowStatus.REFERRAL_UNDER_REVIEW}),
    ),
    "assigned_at": (
        WorkflowPhase.STAGING,
        "Therapist Assigned",
        frozenset({WorkflowStatus.ASSIGNMENT_ACCEPTED}),
    ),
    "exported_at": (WorkflowPhase.PRE_STAGING, "Intake Package Exported", frozenset()),
    "completed_at": (WorkflowPhase.COMPLETION, "Referral Closed", TERMINAL_STATUSES),
}


class ReferralTimeline:
    """
    Lazy, restartable view over a referral's timeline.

    Each iteration re-derives and re-sorts the events, so the same
    instance can be iterated any number of times.
    """

    def __init__(self, referral: Referral, extra_events: Iterable[TimelineEvent] = ()):
        self.referral = referral
        self._extra_events = tuple(extra_events)

    def _raw_events(self) -> Iterator[TimelineEvent]:
        referral = self.referral
        transitioned_to = {record.to_status for record in referral.history}

        for name, (phase, label, covered_by) in LIFECYCLE_MILESTONES.items():
            value = getattr(referral, name)
            if value is None or covered_by & transitioned_to:
                continue
            yield TimelineEvent(timestamp=value, phase=phase, label=label, source="lifecycle")

        for record in referral.history:
            yield TimelineEvent(
                timestamp=record.timestamp,
                phase=phase_for(record.to_status),
                label=status_label(record.to_status),
                detail=record.reason,
                source="transition",
                metadata={
                    "from_status": record.from_status.value,
                    "to_status": record.to_status.value,
                    "actor": record.actor,
                },
            )

        yield from self._extra_events

    def __iter__(self) -> Iterator[TimelineEvent]:
        indexed = list(enumerate(self._raw_events()))
        # Stable tie-break on insertion order for equal timestamps
        indexed.sort(key=lambda pair: (pair[1].timestamp, pair[0]))
        for _, event in indexed:
            yield event

    def __len__(self) -> int:
        return sum(1 for _ in self._raw_events())

    def to_list(self) -> list[dict[str, Any]]:
        return [event.to_dict() for event in self]


def build_timeline(
    referral: Referral,
    extra_events: Iterable[TimelineEvent] = (),
) -> list[TimelineEvent]:
    """
    Build the ordered audit timeline for a referral.

    Missing lifecycle timestamps are skipped. The result is sorted by
    timestamp ascending regardless of how ``extra_events`` were stored.
    """
    return list(ReferralTimeline(referral, extra_events))


def export_event(
    timestamp: datetime,
    succeeded: bool,
    package_id: Optional[str] = None,
    step: Optional[str] = None,
    detail: Optional[str] = None,
) -> TimelineEvent:
    """Timeline entry recording an intake package export outcome."""
    if succeeded:
        return TimelineEvent(
            timestamp=timestamp,
            phase=WorkflowPhase.PRE_STAGING,
            label="Intake Package Ready",
            detail=detail,
            source="export",
            metadata={"package_id": package_id},
        )
    return TimelineEvent(
        timestamp=timestamp,
        phase=WorkflowPhase.PRE_STAGING,
        label="Intake Package Export Failed",
        detail=detail,
        source="export",
        metadata={"package_id": package_id, "step": step},
    )
