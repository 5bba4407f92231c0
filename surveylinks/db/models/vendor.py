from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from surveylinks.db.base import Base, new_id, utcnow


class Vendor(Base):
    __tablename__ = "vendors"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255))
    contact_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # {"code": "ABC"}; the code prefixes generated uids
    settings_json: Mapped[str] = mapped_column(Text, default="{}")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    project_links = relationship("ProjectVendor", back_populates="vendor", cascade="all, delete-orphan", passive_deletes=True)

    @property
    def settings(self) -> dict:
        try:
            s = json.loads(self.settings_json or "{}")
        except (TypeError, ValueError):
            return {}
        return s if isinstance(s, dict) else {}

    @property
    def code(self) -> str:
        return str(self.settings.get("code") or "")


class ProjectVendor(Base):
    __tablename__ = "project_vendors"
    __table_args__ = (UniqueConstraint("project_id", "vendor_id", name="uq_project_vendor"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    project_id: Mapped[str] = mapped_column(ForeignKey("projects.id", ondelete="CASCADE"), index=True)
    vendor_id: Mapped[str] = mapped_column(ForeignKey("vendors.id", ondelete="CASCADE"), index=True)
    quota: Mapped[int] = mapped_column(Integer, default=0)
    current_count: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    project = relationship("Project", back_populates="vendor_links")
    vendor = relationship("Vendor", back_populates="project_links")
