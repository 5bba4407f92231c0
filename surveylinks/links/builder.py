"""Pure construction of link records: URLs and provenance metadata, no I/O."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping

from surveylinks.core.config import LinkUrlConfig
from surveylinks.db.models.survey_link import LinkStatus, LinkType
from surveylinks.links.metadata import LinkMetadata

PANELIST_PLACEHOLDER = "{{PANELIST IDENTIFIER}}"


@dataclass(frozen=True, slots=True)
class BuildContext:
    """Everything shared by the links of one batch."""

    project_id: str
    original_url: str
    urls: LinkUrlConfig
    batch_id: str
    generated_at: str
    generation_method: str = "server-batch"
    consent_gated: bool = False
    geo_restriction: tuple[str, ...] = ()
    vendor_names: Mapping[str, str] = field(default_factory=dict)
    vendor_codes: Mapping[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class LinkRecord:
    """A link ready to be persisted (the gateway assigns ``id``)."""

    project_id: str
    uid: str
    resp_id: str
    vendor_id: str | None
    link_type: LinkType
    wrapper_url: str
    metadata: LinkMetadata
    status: LinkStatus = LinkStatus.UNUSED


def new_batch_id() -> str:
    return f"batch_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_context(
    project_id: str,
    original_url: str,
    urls: LinkUrlConfig,
    *,
    generation_method: str = "server-batch",
    **kwargs,
) -> BuildContext:
    return BuildContext(
        project_id=project_id,
        original_url=original_url,
        urls=urls,
        batch_id=new_batch_id(),
        generated_at=now_iso(),
        generation_method=generation_method,
        **kwargs,
    )


def wrapper_url(urls: LinkUrlConfig, project_id: str, uid: str, consent_gated: bool = False) -> str:
    if consent_gated:
        return f"https://{urls.main_domain}/survey/{project_id}/{uid}"
    return f"{urls.short_url_base.rstrip('/')}/{project_id}/{uid}"


def respondent_url(original_url: str, uid: str) -> str:
    return original_url.replace(PANELIST_PLACEHOLDER, uid)


def build_link_record(
    ctx: BuildContext,
    *,
    vendor_id: str | None,
    link_type: LinkType,
    uid: str,
    resp_id: str | None = None,
) -> LinkRecord:
    url = wrapper_url(ctx.urls, ctx.project_id, uid, ctx.consent_gated)
    meta = LinkMetadata(
        original_url=respondent_url(ctx.original_url, uid),
        wrapper_url=url,
        link_type=link_type.value,
        batch_id=ctx.batch_id,
        generated_at=ctx.generated_at,
        generation_method=ctx.generation_method,
        vendor_name=ctx.vendor_names.get(vendor_id) if vendor_id else None,
        geo_restriction=list(ctx.geo_restriction) or None,
    )
    return LinkRecord(
        project_id=ctx.project_id,
        uid=uid,
        resp_id=resp_id or uid,
        vendor_id=vendor_id,
        link_type=link_type,
        wrapper_url=url,
        metadata=meta,
    )
