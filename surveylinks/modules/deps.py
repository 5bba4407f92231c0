from __future__ import annotations

from fastapi import Request

from surveylinks.links.gateway import PersistenceGateway
from surveylinks.links.service import LinkService


def get_gateway(request: Request) -> PersistenceGateway:
    return request.app.state.gateway


def get_link_service(request: Request) -> LinkService:
    return request.app.state.links


def client_ip(request: Request) -> str:
    fwd = request.headers.get("x-forwarded-for") or ""
    if fwd:
        return fwd.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def client_country(request: Request) -> str | None:
    """Country code set by the edge proxy, if any (no IP lookups here)."""
    cf = (request.headers.get("cf-ipcountry") or "").strip()
    if cf and cf.upper() != "XX":
        return cf.upper()
    x = (request.headers.get("x-country-code") or "").strip()
    return x.upper() or None
