from __future__ import annotations

import csv
import io
import json
import re
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from surveylinks.core.errors import NotFoundError, ValidationError
from surveylinks.db.models.project import Project, ProjectStatus
from surveylinks.db.models.question import Question, QuestionType
from surveylinks.links.gateway import PersistenceGateway
from surveylinks.links.service import LinkService
from surveylinks.modules.deps import get_gateway, get_link_service

router = APIRouter(prefix="/projects", tags=["projects"])


class QuestionIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    text: str = ""
    options: list[Any] = Field(default_factory=list)
    type: QuestionType = QuestionType.MULTIPLE_CHOICE
    sequence: Optional[int] = None
    is_required: bool = Field(default=True, alias="isRequired")


class ProjectIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = ""
    description: str = ""
    survey_url: str = Field(default="", alias="surveyUrl")
    target_completions: int = Field(default=100, alias="targetCompletions", ge=0)
    settings: dict[str, Any] = Field(default_factory=dict)
    questions: list[QuestionIn] = Field(default_factory=list)


class ProjectSettingsIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    settings: Optional[dict[str, Any]] = None
    name: Optional[str] = None
    description: Optional[str] = None
    survey_url: Optional[str] = Field(default=None, alias="surveyUrl")
    status: Optional[ProjectStatus] = None
    target_completions: Optional[int] = Field(default=None, alias="targetCompletions", ge=0)


def project_out(p: Project) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "surveyUrl": p.survey_url,
        "status": p.status.value,
        "targetCompletions": p.target_completions,
        "settings": p.settings,
        "createdAt": p.created_at.isoformat() if p.created_at else None,
        "updatedAt": p.updated_at.isoformat() if p.updated_at else None,
    }


def question_out(q: Question) -> dict:
    try:
        options = json.loads(q.options_json or "[]")
    except (TypeError, ValueError):
        options = []
    return {
        "id": q.id,
        "projectId": q.project_id,
        "text": q.text,
        "type": q.type.value,
        "options": options if isinstance(options, list) else [],
        "sequence": q.sequence,
        "isRequired": q.is_required,
    }


@router.post("")
async def create(body: ProjectIn, gw: PersistenceGateway = Depends(get_gateway)):
    name = (body.name or "").strip()
    if not name:
        raise ValidationError("Project name is required")
    project = await gw.create_project(
        name=name,
        description=body.description or "",
        survey_url=body.survey_url or "",
        settings=body.settings,
        target_completions=body.target_completions,
    )
    for i, q in enumerate(body.questions):
        if not q.text.strip():
            continue
        await gw.create_question(
            project.id,
            text=q.text.strip(),
            type=q.type,
            options=q.options,
            sequence=q.sequence if q.sequence is not None else i,
            is_required=q.is_required,
        )
    return JSONResponse(
        {"success": True, "message": "Project created successfully", "project": project_out(project)},
        status_code=201,
    )


@router.get("")
async def list_projects(gw: PersistenceGateway = Depends(get_gateway)):
    return {"success": True, "projects": [project_out(p) for p in await gw.list_projects()]}


@router.get("/{project_id}")
async def get_project(project_id: str, gw: PersistenceGateway = Depends(get_gateway)):
    project = await gw.require_project(project_id)
    out = project_out(project)
    out["linkCount"] = await gw.count_survey_links(project_id)
    return {"success": True, "project": out}


@router.patch("/{project_id}/settings")
async def update_settings(project_id: str, body: ProjectSettingsIn, gw: PersistenceGateway = Depends(get_gateway)):
    fields = body.model_dump(exclude_none=True)
    if not fields:
        raise ValidationError("Nothing to update")
    if "settings" in fields:
        # shallow merge so callers can patch one key at a time
        current = (await gw.require_project(project_id)).settings
        current.update(fields["settings"])
        fields["settings"] = current
    project = await gw.update_project(project_id, **fields)
    return {"success": True, "project": project_out(project)}


@router.get("/{project_id}/geo-restrictions")
async def geo_restrictions(project_id: str, gw: PersistenceGateway = Depends(get_gateway)):
    settings = (await gw.require_project(project_id)).settings
    allowed = settings.get("geoRestrictions") or settings.get("allowedCountries") or []
    if isinstance(allowed, str):
        allowed = [allowed]
    return {
        "success": True,
        "restrictions": allowed or None,
        "hasRestrictions": bool(allowed),
        "allowedCountries": allowed,
    }


EXPORT_COLUMNS = (
    ("ID", "id"),
    ("UID", "uid"),
    ("Wrapper URL", "wrapperUrl"),
    ("Original URL", "originalUrl"),
    ("Link Type", "linkType"),
    ("Status", "status"),
    ("Vendor ID", "vendorId"),
    ("Vendor Name", "vendorName"),
    ("Vendor Code", "vendorCode"),
    ("Flags", "flags"),
    ("Created At", "createdAt"),
    ("Completed At", "completedAt"),
)


def _csv_lines(rows: Iterable[dict]) -> Iterator[str]:
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow([title for title, _ in EXPORT_COLUMNS])
    yield buf.getvalue()
    for row in rows:
        buf.seek(0)
        buf.truncate(0)
        writer.writerow([row.get(key, "") for _, key in EXPORT_COLUMNS])
        yield buf.getvalue()


@router.get("/{project_id}/export")
async def export_links(
    project_id: str,
    vendor: Optional[str] = None,
    dateRange: Optional[str] = None,
    format: str = "csv",
    svc: LinkService = Depends(get_link_service),
):
    fmt = (format or "csv").lower()
    if fmt not in ("csv", "json"):
        raise ValidationError("format must be csv or json")
    project, rows = await svc.export_links(project_id, vendor_id=vendor, date_range=dateRange)
    if fmt == "json":
        return {"success": True, "project": {"id": project.id, "name": project.name}, "count": len(rows), "data": rows}

    stem = re.sub(r"[^A-Za-z0-9_-]+", "_", project.name).strip("_") or "project"
    filename = f"{stem}_export_{datetime.now(timezone.utc).date().isoformat()}.csv"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return StreamingResponse(_csv_lines(rows), media_type="text/csv", headers=headers)


@router.delete("/{project_id}")
async def delete(
    project_id: str,
    gw: PersistenceGateway = Depends(get_gateway),
    svc: LinkService = Depends(get_link_service),
):
    if not await gw.delete_project(project_id):
        raise NotFoundError("Project not found", project_id=project_id)
    await svc.invalidate_stats(project_id)
    return {"success": True, "message": "Project and all associated data deleted successfully"}


@router.get("/{project_id}/questions")
async def list_questions(project_id: str, gw: PersistenceGateway = Depends(get_gateway)):
    await gw.require_project(project_id)
    return {"success": True, "questions": [question_out(q) for q in await gw.list_questions_by_project(project_id)]}


@router.post("/{project_id}/questions")
async def create_question(project_id: str, body: QuestionIn, gw: PersistenceGateway = Depends(get_gateway)):
    if not body.text.strip():
        raise ValidationError("Question text is required")
    if body.type == QuestionType.MULTIPLE_CHOICE and len(body.options) < 2:
        raise ValidationError("Question text and at least two options are required")
    await gw.require_project(project_id)
    sequence = body.sequence
    if sequence is None:
        sequence = len(await gw.list_questions_by_project(project_id))
    q = await gw.create_question(
        project_id,
        text=body.text.strip(),
        type=body.type,
        options=body.options,
        sequence=sequence,
        is_required=body.is_required,
    )
    return JSONResponse({"success": True, "question": question_out(q)}, status_code=201)


@router.delete("/{project_id}/questions/{question_id}")
async def delete_question(project_id: str, question_id: str, gw: PersistenceGateway = Depends(get_gateway)):
    await gw.delete_question(project_id, question_id)
    return {"success": True, "message": "Question deleted successfully"}
