from __future__ import annotations

import enum
import json
from datetime import datetime

from sqlalchemy import String, Text, Integer, Enum, DateTime
from sqlalchemy.orm import Mapped, mapped_column, relationship

from surveylinks.db.base import Base, new_id, utcnow


class ProjectStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    LIVE = "LIVE"
    COMPLETE = "COMPLETE"


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    survey_url: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[ProjectStatus] = mapped_column(Enum(ProjectStatus), default=ProjectStatus.DRAFT)
    target_completions: Mapped[int] = mapped_column(Integer, default=100)

    # geo restrictions, consent items, presurvey questions
    settings_json: Mapped[str] = mapped_column(Text, default="{}")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Deleting a project removes everything that hangs off it.
    survey_links = relationship("SurveyLink", back_populates="project", cascade="all, delete-orphan", passive_deletes=True)
    questions = relationship("Question", back_populates="project", cascade="all, delete-orphan", passive_deletes=True)
    flags = relationship("Flag", back_populates="project", cascade="all, delete-orphan", passive_deletes=True)
    vendor_links = relationship("ProjectVendor", back_populates="project", cascade="all, delete-orphan", passive_deletes=True)

    @property
    def settings(self) -> dict:
        try:
            s = json.loads(self.settings_json or "{}")
        except (TypeError, ValueError):
            return {}
        return s if isinstance(s, dict) else {}
