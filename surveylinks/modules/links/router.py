from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from surveylinks.links.service import LinkService
from surveylinks.modules.deps import client_country, client_ip, get_link_service
from surveylinks.modules.links.schemas import (
    CompleteLinkIn,
    FlagLinkIn,
    GenerateLinksIn,
    SaveBatchIn,
    UpdateStatusIn,
    ValidateLinkIn,
)

router = APIRouter(prefix="/links", tags=["links"])


@router.post("/generate")
async def generate(body: GenerateLinksIn, request: Request, svc: LinkService = Depends(get_link_service)):
    result = await svc.generate_links(
        project_id=body.project_id,
        original_url=body.original_url,
        test_count=body.test_count,
        live_count=body.live_count,
        count=body.count,
        link_type=body.link_type,
        vendor_id=body.vendor_id,
        vendor_ids=body.vendor_ids,
        generate_per_vendor=body.generate_per_vendor,
        vendor_weights=body.vendor_weights,
        geo_restriction=body.geo_restriction,
        use_consent_url=body.use_consent_url,
        timeout=body.timeout_seconds,
        client_ip=client_ip(request),
    )
    return JSONResponse(result, status_code=200 if result["success"] else 500)


@router.post("/save-batch")
async def save_batch(body: SaveBatchIn, svc: LinkService = Depends(get_link_service)):
    result = await svc.save_batch(body.project_id, body.links, timeout=body.timeout_seconds)
    # partial failures under the threshold still answer 200 with "failed" filled in
    return JSONResponse(result, status_code=200 if result["success"] else 500)


@router.get("")
async def list_links(
    projectId: str,
    linkType: str | None = None,
    vendorId: str | None = None,
    status: str | None = None,
    svc: LinkService = Depends(get_link_service),
):
    links = await svc.list_links(projectId, link_type=linkType, vendor_id=vendorId, status=status)
    return {"success": True, "count": len(links), "links": links}


@router.get("/stats")
async def stats(projectId: str = "", svc: LinkService = Depends(get_link_service)):
    return await svc.link_stats(projectId)


@router.post("/flag")
async def flag(body: FlagLinkIn, svc: LinkService = Depends(get_link_service)):
    return await svc.flag_link(project_id=body.project_id, uid=body.uid, reason=body.reason, metadata=body.metadata)


@router.post("/update-status")
async def update_status(body: UpdateStatusIn, svc: LinkService = Depends(get_link_service)):
    return await svc.update_status(
        project_id=body.project_id,
        uid=body.uid,
        status=body.status,
        vendor_id=body.vendor_id,
        question_id=body.question_id,
        answer=body.answer,
        metadata=body.metadata,
    )


@router.post("/complete")
async def complete(body: CompleteLinkIn, svc: LinkService = Depends(get_link_service)):
    return await svc.complete_link(
        project_id=body.project_id, uid=body.uid, vendor_id=body.vendor_id, metadata=body.metadata
    )


@router.post("/validate")
async def validate(body: ValidateLinkIn, request: Request, svc: LinkService = Depends(get_link_service)):
    return await svc.validate_link(project_id=body.project_id, uid=body.uid, country=client_country(request))
