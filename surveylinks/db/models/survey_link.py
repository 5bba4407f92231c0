from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import String, Text, Enum, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from surveylinks.db.base import Base, new_id, utcnow


class LinkType(str, enum.Enum):
    TEST = "TEST"
    LIVE = "LIVE"


class LinkStatus(str, enum.Enum):
    UNUSED = "UNUSED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    DISQUALIFIED = "DISQUALIFIED"
    FLAGGED = "FLAGGED"


class SurveyLink(Base):
    __tablename__ = "survey_links"
    __table_args__ = (UniqueConstraint("project_id", "uid", name="uq_survey_link_project_uid"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    project_id: Mapped[str] = mapped_column(ForeignKey("projects.id", ondelete="CASCADE"), index=True)
    uid: Mapped[str] = mapped_column(String(128), index=True)
    # Legacy duplicate of uid; only differs when a client supplied its own resp id.
    resp_id: Mapped[str] = mapped_column(String(128))
    vendor_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)

    link_type: Mapped[LinkType] = mapped_column(Enum(LinkType), default=LinkType.LIVE, index=True)
    status: Mapped[LinkStatus] = mapped_column(Enum(LinkStatus), default=LinkStatus.UNUSED, index=True)

    # Opaque JSON; parse with surveylinks.links.metadata.parse_metadata
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    project = relationship("Project", back_populates="survey_links")
