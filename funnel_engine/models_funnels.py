"""SQLAlchemy models for funnel definitions, activity records and progressions."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    Integer,
    String,
    Text,
    JSON,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .db import Base


class FunnelStatus(str):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class ProgressionStatus(str):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"
    EXITED = "exited"


TERMINAL_STATUSES = (ProgressionStatus.COMPLETED, ProgressionStatus.EXPIRED, ProgressionStatus.EXITED)


class Funnel(Base):
    __tablename__ = "funnels"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False, index=True)
    description = Column(Text, nullable=True)
    status = Column(
        Enum(
            FunnelStatus.DRAFT,
            FunnelStatus.PUBLISHED,
            FunnelStatus.ARCHIVED,
            name="funnel_status",
        ),
        nullable=False,
        default=FunnelStatus.DRAFT,
    )
    created_by = Column(String(255), nullable=False, default="system")
    updated_by = Column(String(255), nullable=False, default="system")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    archived_at = Column(DateTime, nullable=True)

    versions = relationship(
        "FunnelVersion",
        back_populates="funnel",
        cascade="all, delete-orphan",
        order_by="FunnelVersion.version",
    )


class FunnelVersion(Base):
    __tablename__ = "funnel_versions"
    __table_args__ = (UniqueConstraint("funnel_id", "version", name="uq_funnel_version"),)

    id = Column(String(36), primary_key=True)
    funnel_id = Column(String(36), ForeignKey("funnels.id"), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    state = Column(
        Enum(
            FunnelStatus.DRAFT,
            FunnelStatus.PUBLISHED,
            FunnelStatus.ARCHIVED,
            name="funnel_version_state",
        ),
        nullable=False,
        default=FunnelStatus.DRAFT,
    )
    window_days = Column(Integer, nullable=False, default=7)
    steps_json = Column(JSON, nullable=False)
    change_note = Column(Text, nullable=True)
    created_by = Column(String(255), nullable=False, default="system")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    published_at = Column(DateTime, nullable=True)

    funnel = relationship("Funnel", back_populates="versions")


class ActivityRecord(Base):
    """Immutable user activity. ``id`` doubles as the arrival sequence."""

    __tablename__ = "activity_records"
    __table_args__ = (Index("ix_activity_identity_ts", "identity", "ts"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    identity = Column(String(255), nullable=False)
    anonymous_id = Column(String(255), nullable=True)
    lead_id = Column(String(255), nullable=True)
    ts = Column(DateTime, nullable=False, index=True)
    kind = Column(String(32), nullable=False)  # page_view / event
    event_name = Column(String(255), nullable=True, index=True)
    url = Column(Text, nullable=True)
    path = Column(Text, nullable=True)
    referrer = Column(Text, nullable=True)
    title = Column(Text, nullable=True)
    properties_json = Column(JSON, nullable=True)
    source = Column(String(255), nullable=True)
    medium = Column(String(255), nullable=True)
    campaign = Column(String(255), nullable=True)
    device = Column(String(64), nullable=True)
    ingested_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class FunnelProgression(Base):
    __tablename__ = "funnel_progressions"
    __table_args__ = (
        Index("ix_progression_version_identity", "funnel_version_id", "identity"),
        Index("ix_progression_funnel_entered", "funnel_id", "entered_at"),
    )

    id = Column(String(36), primary_key=True)
    funnel_id = Column(String(36), ForeignKey("funnels.id"), nullable=False)
    funnel_version_id = Column(String(36), ForeignKey("funnel_versions.id"), nullable=False)
    identity = Column(String(255), nullable=False)
    sequence = Column(Integer, nullable=False, default=1)  # 1 = first entry, 2 = re-entry, ...
    status = Column(
        Enum(
            ProgressionStatus.ACTIVE,
            ProgressionStatus.COMPLETED,
            ProgressionStatus.EXPIRED,
            ProgressionStatus.EXITED,
            name="progression_status",
        ),
        nullable=False,
        default=ProgressionStatus.ACTIVE,
        index=True,
    )
    current_step_index = Column(Integer, nullable=False, default=0)
    entered_at = Column(DateTime, nullable=False)
    last_activity_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    exited_at = Column(DateTime, nullable=True)
    exit_step_index = Column(Integer, nullable=True)
    expires_at = Column(DateTime, nullable=False)
    step_times_json = Column(JSON, nullable=False)  # [{"step_index": i, "at": iso}]
    rejected_branches_json = Column(JSON, nullable=True)
    context_json = Column(JSON, nullable=True)  # marketing/device context captured at entry
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class ComparisonResult(Base):
    """Stored A/B comparison outcome; rows are written once and never updated."""

    __tablename__ = "funnel_comparison_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cache_key = Column(String(64), nullable=False, unique=True, index=True)
    funnel_ids_json = Column(JSON, nullable=False)
    date_from = Column(DateTime, nullable=False)
    date_to = Column(DateTime, nullable=False)
    params_json = Column(JSON, nullable=False)
    result_json = Column(JSON, nullable=False)
    computed_at = Column(DateTime, nullable=False, default=datetime.utcnow)
