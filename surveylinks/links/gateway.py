"""Persistence gateway: the only code that talks to the database.

Each call opens its own short-lived session, so any number of calls may be in
flight concurrently. Failures leave this module only as classified
``SurveyLinkError`` subclasses (see ``surveylinks.core.errors``).
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Iterable

from sqlalchemy import delete, func, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from surveylinks.core.errors import (
    ConflictError,
    NotFoundError,
    StoreUnavailableError,
    SurveyLinkError,
    classify,
)
from surveylinks.db.models.flag import Flag, FlagSeverity
from surveylinks.db.models.project import Project, ProjectStatus
from surveylinks.db.models.question import Question, QuestionType
from surveylinks.db.models.survey_link import LinkStatus, LinkType, SurveyLink
from surveylinks.db.models.vendor import ProjectVendor, Vendor
from surveylinks.links.builder import LinkRecord
from surveylinks.links.metadata import LinkMetadata, dump_metadata

logger = logging.getLogger("surveylinks.gateway")

_UNSET: Any = object()


class PersistenceGateway:
    def __init__(self, sessions: async_sessionmaker[AsyncSession]):
        self._sessions = sessions

    @asynccontextmanager
    async def _session(self, op: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions() as db:
                yield db
        except SurveyLinkError:
            raise
        except Exception as exc:
            err = classify(exc)
            if err.kind == "unknown":
                logger.exception("Unexpected store error in %s", op)
            else:
                logger.debug("Store error in %s: %s", op, err.message)
            raise err from exc

    async def ping(self) -> None:
        try:
            async with self._sessions() as db:
                await db.execute(text("SELECT 1"))
        except Exception as exc:
            raise StoreUnavailableError(f"database unreachable: {exc}") from exc

    # ---- projects ----

    async def create_project(
        self,
        *,
        name: str,
        survey_url: str = "",
        description: str = "",
        settings: dict | None = None,
        status: ProjectStatus = ProjectStatus.DRAFT,
        target_completions: int = 100,
        id: str | None = None,
    ) -> Project:
        async with self._session("create_project") as db:
            project = Project(
                name=name,
                survey_url=survey_url,
                description=description,
                settings_json=json.dumps(settings or {}, ensure_ascii=False),
                status=status,
                target_completions=target_completions,
            )
            if id:
                project.id = id
            db.add(project)
            await db.commit()
            await db.refresh(project)
            return project

    async def get_project(self, project_id: str) -> Project | None:
        async with self._session("get_project") as db:
            return await db.get(Project, project_id)

    async def require_project(self, project_id: str) -> Project:
        project = await self.get_project(project_id)
        if project is None:
            raise NotFoundError("Project not found", project_id=project_id)
        return project

    async def list_projects(self) -> list[Project]:
        async with self._session("list_projects") as db:
            res = await db.execute(select(Project).order_by(Project.created_at.desc()))
            return list(res.scalars().all())

    async def update_project(self, project_id: str, **fields) -> Project:
        async with self._session("update_project") as db:
            project = await db.get(Project, project_id)
            if project is None:
                raise NotFoundError("Project not found", project_id=project_id)
            if "settings" in fields:
                project.settings_json = json.dumps(fields.pop("settings") or {}, ensure_ascii=False)
            for key in ("name", "description", "survey_url", "status", "target_completions"):
                if key in fields and fields[key] is not None:
                    setattr(project, key, fields[key])
            await db.commit()
            await db.refresh(project)
            return project

    async def delete_project(self, project_id: str) -> bool:
        """Delete a project and everything that depends on it, in one transaction."""
        async with self._session("delete_project") as db:
            project = await db.get(Project, project_id)
            if project is None:
                return False
            await db.execute(delete(Flag).where(Flag.project_id == project_id))
            await db.execute(delete(Question).where(Question.project_id == project_id))
            await db.execute(delete(SurveyLink).where(SurveyLink.project_id == project_id))
            await db.execute(delete(ProjectVendor).where(ProjectVendor.project_id == project_id))
            await db.execute(delete(Project).where(Project.id == project_id))
            await db.commit()
            return True

    # ---- vendors ----

    async def create_vendor(
        self,
        *,
        name: str,
        code: str = "",
        contact_name: str | None = None,
        contact_email: str | None = None,
        id: str | None = None,
    ) -> Vendor:
        async with self._session("create_vendor") as db:
            vendor = Vendor(
                name=name,
                contact_name=contact_name,
                contact_email=contact_email,
                settings_json=json.dumps({"code": code} if code else {}, ensure_ascii=False),
            )
            if id:
                vendor.id = id
            db.add(vendor)
            await db.commit()
            await db.refresh(vendor)
            return vendor

    async def get_vendor(self, vendor_id: str) -> Vendor | None:
        async with self._session("get_vendor") as db:
            return await db.get(Vendor, vendor_id)

    async def list_vendors(self, ids: Iterable[str] | None = None) -> list[Vendor]:
        async with self._session("list_vendors") as db:
            q = select(Vendor)
            if ids is not None:
                ids = list(ids)
                if not ids:
                    return []
                q = q.where(Vendor.id.in_(ids))
            res = await db.execute(q.order_by(Vendor.name.asc()))
            return list(res.scalars().all())

    async def delete_vendor(self, vendor_id: str) -> None:
        async with self._session("delete_vendor") as db:
            vendor = await db.get(Vendor, vendor_id)
            if vendor is None:
                raise NotFoundError("Vendor not found", vendor_id=vendor_id)
            used = await db.scalar(
                select(func.count()).select_from(SurveyLink).where(SurveyLink.vendor_id == vendor_id)
            )
            if used:
                raise ConflictError("Cannot delete vendor with associated survey links", vendor_id=vendor_id)
            await db.execute(delete(ProjectVendor).where(ProjectVendor.vendor_id == vendor_id))
            await db.execute(delete(Vendor).where(Vendor.id == vendor_id))
            await db.commit()

    async def create_project_vendor(self, project_id: str, vendor_id: str, quota: int = 0) -> ProjectVendor:
        async with self._session("create_project_vendor") as db:
            pv = ProjectVendor(project_id=project_id, vendor_id=vendor_id, quota=quota)
            db.add(pv)
            await db.commit()
            await db.refresh(pv)
            return pv

    async def list_project_vendors(self, project_id: str) -> list[ProjectVendor]:
        async with self._session("list_project_vendors") as db:
            res = await db.execute(select(ProjectVendor).where(ProjectVendor.project_id == project_id))
            return list(res.scalars().all())

    async def get_project_vendor(self, project_id: str, vendor_id: str) -> ProjectVendor | None:
        async with self._session("get_project_vendor") as db:
            res = await db.execute(
                select(ProjectVendor).where(
                    ProjectVendor.project_id == project_id, ProjectVendor.vendor_id == vendor_id
                )
            )
            return res.scalars().first()

    # ---- questions ----

    async def create_question(
        self,
        project_id: str,
        *,
        text: str,
        type: QuestionType = QuestionType.MULTIPLE_CHOICE,
        options: list | None = None,
        sequence: int = 0,
        is_required: bool = True,
    ) -> Question:
        async with self._session("create_question") as db:
            q = Question(
                project_id=project_id,
                text=text,
                type=type,
                options_json=json.dumps(options or [], ensure_ascii=False),
                sequence=sequence,
                is_required=is_required,
            )
            db.add(q)
            await db.commit()
            await db.refresh(q)
            return q

    async def list_questions_by_project(self, project_id: str) -> list[Question]:
        async with self._session("list_questions_by_project") as db:
            res = await db.execute(
                select(Question).where(Question.project_id == project_id).order_by(Question.sequence.asc())
            )
            return list(res.scalars().all())

    async def delete_question(self, project_id: str, question_id: str) -> None:
        async with self._session("delete_question") as db:
            q = await db.get(Question, question_id)
            if q is None or q.project_id != project_id:
                raise NotFoundError("Question not found", question_id=question_id)
            await db.delete(q)
            await db.commit()

    # ---- survey links ----

    async def create_survey_link(self, record: LinkRecord) -> SurveyLink:
        """Insert one link. A uid already used in the project raises ConflictError."""
        async with self._session("create_survey_link") as db:
            link = SurveyLink(
                project_id=record.project_id,
                uid=record.uid,
                resp_id=record.resp_id,
                vendor_id=record.vendor_id,
                link_type=record.link_type,
                status=record.status,
                metadata_json=dump_metadata(record.metadata),
            )
            db.add(link)
            await db.commit()
            return link

    async def get_survey_link(self, link_id: str) -> SurveyLink | None:
        async with self._session("get_survey_link") as db:
            return await db.get(SurveyLink, link_id)

    async def get_survey_link_by_uid(self, uid: str, project_id: str | None = None) -> SurveyLink | None:
        async with self._session("get_survey_link_by_uid") as db:
            q = select(SurveyLink).where(SurveyLink.uid == uid)
            if project_id is not None:
                q = q.where(SurveyLink.project_id == project_id)
            res = await db.execute(q.order_by(SurveyLink.created_at.asc()).limit(1))
            return res.scalars().first()

    async def list_survey_links_by_project(
        self,
        project_id: str,
        *,
        link_type: LinkType | None = None,
        vendor_id: str | None = None,
        status: LinkStatus | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
    ) -> list[SurveyLink]:
        async with self._session("list_survey_links_by_project") as db:
            q = select(SurveyLink).where(SurveyLink.project_id == project_id)
            if link_type is not None:
                q = q.where(SurveyLink.link_type == link_type)
            if vendor_id is not None:
                q = q.where(SurveyLink.vendor_id == vendor_id)
            if status is not None:
                q = q.where(SurveyLink.status == status)
            if created_from is not None:
                q = q.where(SurveyLink.created_at >= created_from)
            if created_to is not None:
                q = q.where(SurveyLink.created_at < created_to)
            res = await db.execute(q.order_by(SurveyLink.created_at.asc(), SurveyLink.id.asc()))
            return list(res.scalars().all())

    async def count_survey_links(self, project_id: str) -> int:
        async with self._session("count_survey_links") as db:
            n = await db.scalar(
                select(func.count()).select_from(SurveyLink).where(SurveyLink.project_id == project_id)
            )
            return int(n or 0)

    async def update_survey_link(
        self,
        link_id: str,
        *,
        status: LinkStatus | None = None,
        metadata: LinkMetadata | dict | None = None,
        vendor_id: str | None = _UNSET,
        completed_at: datetime | None = None,
    ) -> SurveyLink:
        async with self._session("update_survey_link") as db:
            link = await db.get(SurveyLink, link_id)
            if link is None:
                raise NotFoundError("Survey link not found", link_id=link_id)
            if status is not None:
                link.status = status
            if metadata is not None:
                link.metadata_json = dump_metadata(metadata)
            if vendor_id is not _UNSET:
                link.vendor_id = vendor_id
            if completed_at is not None:
                link.completed_at = completed_at
            await db.commit()
            await db.refresh(link)
            return link

    async def delete_survey_link(self, link_id: str) -> None:
        async with self._session("delete_survey_link") as db:
            link = await db.get(SurveyLink, link_id)
            if link is None:
                raise NotFoundError("Survey link not found", link_id=link_id)
            await db.execute(delete(Flag).where(Flag.survey_link_id == link_id))
            await db.delete(link)
            await db.commit()

    # ---- flags ----

    async def create_flag(
        self,
        link: SurveyLink,
        *,
        reason: str,
        severity: FlagSeverity = FlagSeverity.MEDIUM,
        message: str = "",
        metadata: dict | None = None,
    ) -> Flag:
        async with self._session("create_flag") as db:
            flag = Flag(
                survey_link_id=link.id,
                project_id=link.project_id,
                reason=reason,
                severity=severity,
                message=message,
                metadata_json=json.dumps(metadata or {}, ensure_ascii=False, default=str),
            )
            db.add(flag)
            await db.commit()
            await db.refresh(flag)
            return flag

    async def list_flags_by_project(self, project_id: str) -> list[Flag]:
        async with self._session("list_flags_by_project") as db:
            res = await db.execute(
                select(Flag).where(Flag.project_id == project_id).order_by(Flag.created_at.desc())
            )
            return list(res.scalars().all())
