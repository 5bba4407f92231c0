from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from surveylinks.core.errors import SurveyLinkError, ValidationError
from surveylinks.links.gateway import PersistenceGateway
from surveylinks.modules.deps import get_gateway

logger = logging.getLogger("surveylinks.vendors")

router = APIRouter(prefix="/vendors", tags=["vendors"])


class VendorIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    project_id: str = Field(default="", alias="projectId")
    name: str = ""
    code: str = ""
    contact_name: Optional[str] = Field(default=None, alias="contactName")
    contact_email: Optional[str] = Field(default=None, alias="contactEmail")
    quota: int = Field(default=0, ge=0)


@router.post("")
async def create(body: VendorIn, gw: PersistenceGateway = Depends(get_gateway)):
    name, code = body.name.strip(), body.code.strip()
    if not body.project_id or not name or not code:
        raise ValidationError("Project ID, name, and code are required")
    await gw.require_project(body.project_id)

    vendor = await gw.create_vendor(
        name=name, code=code, contact_name=body.contact_name, contact_email=body.contact_email
    )
    try:
        await gw.create_project_vendor(body.project_id, vendor.id, quota=body.quota)
    except SurveyLinkError:
        logger.warning("Attaching vendor %s to project %s failed; removing vendor", vendor.id, body.project_id)
        await gw.delete_vendor(vendor.id)
        raise
    return JSONResponse(
        {"success": True, "vendor": {"id": vendor.id, "name": vendor.name, "code": vendor.code}},
        status_code=201,
    )


@router.get("")
async def list_vendors(projectId: str = "", gw: PersistenceGateway = Depends(get_gateway)):
    if not projectId:
        raise ValidationError("Project ID is required")
    attached = await gw.list_project_vendors(projectId)
    quotas = {pv.vendor_id: pv for pv in attached}
    vendors = await gw.list_vendors(list(quotas))
    return {
        "success": True,
        "vendors": [
            {
                "id": v.id,
                "name": v.name or "",
                "code": v.code,
                "quota": quotas[v.id].quota,
                "currentCount": quotas[v.id].current_count,
            }
            for v in vendors
        ],
    }


@router.delete("/{vendor_id}")
async def delete(vendor_id: str, gw: PersistenceGateway = Depends(get_gateway)):
    await gw.delete_vendor(vendor_id)
    return {"success": True, "message": "Vendor deleted successfully"}
