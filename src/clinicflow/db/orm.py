"""
SQLAlchemy database models for clinicflow.

Tables:
- referrals: referral intake data, workflow position and version token
- referral_transitions: committed status changes, in order
- timeline_events: stored audit events (export outcomes and similar)
- intake_packages: encrypted package metadata (never key material)

Column types are dialect-neutral so the same models run on PostgreSQL
and SQLite.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class ReferralRow(Base):
    """A referral and its current workflow position."""

    __tablename__ = "referrals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Intake data
    client_name: Mapped[str] = mapped_column(String(255), nullable=False)
    client_email: Mapped[Optional[str]] = mapped_column(String(255))
    client_phone: Mapped[Optional[str]] = mapped_column(String(50))
    client_age: Mapped[Optional[int]] = mapped_column(Integer)
    presenting_concerns: Mapped[Optional[str]] = mapped_column(Text)
    urgency: Mapped[str] = mapped_column(String(20), default="routine")
    insurance_provider: Mapped[Optional[str]] = mapped_column(String(255))
    insurance_member_id: Mapped[Optional[str]] = mapped_column(String(100))
    referral_source: Mapped[Optional[str]] = mapped_column(String(255))
    referral_notes: Mapped[Optional[str]] = mapped_column(Text)

    # Workflow
    workflow_status: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    decline_reason: Mapped[Optional[str]] = mapped_column(Text)
    matching_attempts: Mapped[int] = mapped_column(Integer, default=0)
    assigned_therapist: Mapped[Optional[str]] = mapped_column(String(255))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Lifecycle
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    exported_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    intake_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    first_session_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Audit
    created_by: Mapped[Optional[str]] = mapped_column(String(255))
    last_modified_by: Mapped[Optional[str]] = mapped_column(String(255))
    last_modified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    transitions: Mapped[list["TransitionRow"]] = relationship(
        back_populates="referral",
        order_by="TransitionRow.sequence",
        cascade="all, delete-orphan",
    )


class TransitionRow(Base):
    """One committed status change."""

    __tablename__ = "referral_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referral_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("referrals.id"), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    from_status: Mapped[str] = mapped_column(String(40), nullable=False)
    to_status: Mapped[str] = mapped_column(String(40), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    actor: Mapped[Optional[str]] = mapped_column(String(255))
    reason: Mapped[Optional[str]] = mapped_column(Text)

    referral: Mapped[ReferralRow] = relationship(back_populates="transitions")

    __table_args__ = (
        Index("ix_referral_transitions_referral_seq", "referral_id", "sequence", unique=True),
    )


class TimelineEventRow(Base):
    """Stored audit event for a referral timeline."""

    __tablename__ = "timeline_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referral_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("referrals.id"), nullable=False, index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    phase: Mapped[str] = mapped_column(String(40), nullable=False)
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    detail: Mapped[Optional[str]] = mapped_column(Text)
    source: Mapped[str] = mapped_column(String(40), default="workflow")
    event_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)


class IntakePackageRow(Base):
    """Encrypted intake package metadata."""

    __tablename__ = "intake_packages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    referral_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("referrals.id"), nullable=False, index=True)
    package_name: Mapped[str] = mapped_column(String(255), nullable=False)
    package_type: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    # Encryption metadata
    encryption_algorithm: Mapped[str] = mapped_column(String(20), nullable=False)
    encryption_key_id: Mapped[Optional[str]] = mapped_column(String(100))
    iv: Mapped[Optional[str]] = mapped_column(String(64))
    auth_tag: Mapped[Optional[str]] = mapped_column(String(64))
    checksum_sha256: Mapped[Optional[str]] = mapped_column(String(64))

    # Storage
    storage_key: Mapped[Optional[str]] = mapped_column(String(512))
    storage_url: Mapped[Optional[str]] = mapped_column(Text)
    download_url: Mapped[Optional[str]] = mapped_column(Text)
    download_url_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    size_original: Mapped[int] = mapped_column(Integer, default=0)
    size_compressed: Mapped[int] = mapped_column(Integer, default=0)
    size_encrypted: Mapped[int] = mapped_column(Integer, default=0)

    # Lifecycle
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    uploaded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    downloaded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(255))
    notification_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    notification_recipient: Mapped[Optional[str]] = mapped_column(String(255))
    error_step: Mapped[Optional[str]] = mapped_column(String(20))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
