from __future__ import annotations

from fastapi import APIRouter, Depends

from surveylinks.links.service import LinkService
from surveylinks.modules.deps import get_link_service
from surveylinks.modules.links.schemas import UpdateFlagStatusIn

router = APIRouter(prefix="/qc", tags=["qc"])


@router.post("/update-flag-status")
async def update_flag_status(body: UpdateFlagStatusIn, svc: LinkService = Depends(get_link_service)):
    # flagId is the survey link id; the review lives in the link metadata
    return await svc.update_flag_status(
        link_id=body.flag_id,
        status=body.status,
        reviewed_by=body.reviewed_by,
        reasoning=body.reasoning,
        reviewed_at=body.reviewed_at,
    )


@router.get("/flags")
async def flags(projectId: str, svc: LinkService = Depends(get_link_service)):
    return await svc.list_flagged(projectId)
