"""Link operations behind the HTTP layer.

Routers translate requests into calls here; everything that touches links goes
through the gateway, and every batch goes through a fresh ``BatchOrchestrator``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

from surveylinks.core.config import BatchPolicy, LinkUrlConfig, Settings
from surveylinks.core.errors import NotFoundError, SurveyLinkError, ValidationError
from surveylinks.core.lifecycle import ReviewStatus, action_for_target, get_transition, review_outcome
from surveylinks.core.redis import get_redis
from surveylinks.db.models.flag import FlagSeverity
from surveylinks.db.models.project import Project
from surveylinks.db.models.survey_link import LinkStatus, LinkType, SurveyLink
from surveylinks.links.builder import LinkRecord, new_context, now_iso, wrapper_url
from surveylinks.links.identifiers import UidGenerator
from surveylinks.links.metadata import ManualReview, caller_metadata, parse_metadata
from surveylinks.links.orchestrator import BatchOrchestrator, BatchResult
from surveylinks.links.planner import plan_distribution, plan_totals

logger = logging.getLogger("surveylinks.links")
events = logging.getLogger("surveylinks.events")

# Older clients send these names for the same states.
STATUS_ALIASES = {
    "STARTED": LinkStatus.IN_PROGRESS,
    "CLICKED": LinkStatus.IN_PROGRESS,
    "PENDING": LinkStatus.UNUSED,
}


def _event(name: str, **fields) -> None:
    events.info("%s %s", name, json.dumps(fields, ensure_ascii=False, default=str))


def parse_status(value: str) -> LinkStatus:
    v = (value or "").strip().upper()
    if v in STATUS_ALIASES:
        return STATUS_ALIASES[v]
    try:
        return LinkStatus(v)
    except ValueError:
        valid = ", ".join([s.value for s in LinkStatus] + list(STATUS_ALIASES))
        raise ValidationError(f"Invalid status. Valid values are: {valid}")


EXPORT_RANGES = ("today", "yesterday", "week", "month")


def date_range_bounds(name: str | None, now: datetime | None = None) -> tuple[datetime | None, datetime | None]:
    """``[start, end)`` in UTC for an export range name; both None when no range is given."""
    if not name:
        return None, None
    now = now or datetime.now(timezone.utc)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if name == "today":
        return midnight, None
    if name == "yesterday":
        return midnight - timedelta(days=1), midnight
    if name == "week":
        return now - timedelta(days=7), None
    if name == "month":
        return now - timedelta(days=30), None
    raise ValidationError(f"dateRange must be one of: {', '.join(EXPORT_RANGES)}")


def serialize_link(link: SurveyLink, vendor_names: dict[str, str] | None = None) -> dict:
    meta = parse_metadata(link.metadata_json)
    link_type = link.link_type.value if isinstance(link.link_type, LinkType) else str(link.link_type)
    status = link.status.value if isinstance(link.status, LinkStatus) else str(link.status)
    vendor = None
    if link.vendor_id:
        vendor = {"id": link.vendor_id, "name": (vendor_names or {}).get(link.vendor_id) or meta.vendor_name}
    return {
        "id": link.id,
        "uid": link.uid,
        "respId": link.resp_id,
        "projectId": link.project_id,
        "originalUrl": meta.original_url,
        "wrapperUrl": meta.wrapper_url,
        "fullUrl": meta.wrapper_url,
        "linkType": link_type,
        "status": status,
        "vendorId": link.vendor_id,
        "vendor": vendor,
        "createdAt": link.created_at.isoformat() if link.created_at else None,
        "completedAt": link.completed_at.isoformat() if link.completed_at else None,
        "metadata": meta.to_dict(),
    }


class LinkService:
    def __init__(
        self,
        gateway,
        settings: Settings,
        policy: BatchPolicy | None = None,
        urls: LinkUrlConfig | None = None,
    ):
        self.gateway = gateway
        self.settings = settings
        self.policy = policy or settings.batch_policy()
        self.urls = urls or settings.url_config()

    def orchestrator(self) -> BatchOrchestrator:
        return BatchOrchestrator(self.gateway, self.policy, UidGenerator(self.urls.uid_length))

    # ---- generation ----

    def _resolve_counts(
        self,
        test_count: int | None,
        live_count: int | None,
        count: int | None,
        link_type: LinkType,
    ) -> tuple[int, int]:
        if test_count is not None or live_count is not None:
            t, l = int(test_count or 0), int(live_count or 0)
        elif count is not None:
            t, l = (int(count), 0) if link_type == LinkType.TEST else (0, int(count))
        else:
            raise ValidationError("Count or testCount/liveCount must be provided")
        if t < 0 or l < 0:
            raise ValidationError("Counts must be non-negative")
        return t, l

    def _check_limits(self, test_count: int, live_count: int, vendors: int, per_vendor: bool) -> None:
        s = self.settings
        unit = test_count + live_count
        if per_vendor and vendors:
            if unit < 1 or unit > s.MAX_LINKS_PER_VENDOR:
                raise ValidationError(f"Per-vendor count must be between 1 and {s.MAX_LINKS_PER_VENDOR:,}")
            if unit * vendors > s.MAX_LINKS_TOTAL:
                raise ValidationError(f"Total links across all vendors cannot exceed {s.MAX_LINKS_TOTAL:,}")
        elif unit < 1 or unit > s.MAX_LINKS_PER_REQUEST:
            raise ValidationError(f"Total count must be between 1 and {s.MAX_LINKS_PER_REQUEST:,}")

    async def _project_vendors(self, project_id: str, vendor_ids: Sequence[str]) -> tuple[dict, dict]:
        """Names and codes for ``vendor_ids``; every vendor must be attached to the project."""
        names: dict[str, str] = {}
        codes: dict[str, str] = {}
        if not vendor_ids:
            return names, codes
        found = {v.id: v for v in await self.gateway.list_vendors(vendor_ids)}
        attached = {pv.vendor_id for pv in await self.gateway.list_project_vendors(project_id)}
        for vid in vendor_ids:
            vendor = found.get(vid)
            if vendor is None:
                raise NotFoundError(f"Vendor not found: {vid}", vendor_id=vid)
            if vid not in attached:
                raise ValidationError(f"Vendor {vid} does not belong to this project", vendor_id=vid)
            names[vid] = vendor.name
            codes[vid] = vendor.code
        return names, codes

    async def generate_links(
        self,
        *,
        project_id: str,
        original_url: str,
        test_count: int | None = None,
        live_count: int | None = None,
        count: int | None = None,
        link_type: LinkType = LinkType.LIVE,
        vendor_id: str | None = None,
        vendor_ids: Sequence[str] | None = None,
        generate_per_vendor: bool | None = None,
        vendor_weights: Sequence[float] | None = None,
        geo_restriction: Sequence[str] | None = None,
        use_consent_url: bool = False,
        timeout: float | None = None,
        client_ip: str = "",
    ) -> dict:
        targets: list[str] = []
        for v in list(vendor_ids or []) + ([vendor_id] if vendor_id else []):
            v = (v or "").strip()
            if v and v not in targets:
                targets.append(v)
        per_vendor = bool(targets) and generate_per_vendor is not False

        _event(
            "LINK_GENERATION_ATTEMPT",
            projectId=project_id, vendorIds=targets, ip=client_ip, generatePerVendor=per_vendor,
        )
        try:
            if not project_id or not original_url:
                raise ValidationError("Missing required parameters")
            t, l = self._resolve_counts(test_count, live_count, count, link_type)
            self._check_limits(t, l, len(targets), per_vendor)

            await self.gateway.require_project(project_id)
            names, codes = await self._project_vendors(project_id, targets)
            plan = plan_distribution(t, l, targets, per_vendor=per_vendor, weights=vendor_weights)

            ctx = new_context(
                project_id,
                original_url,
                self.urls,
                generation_method="server-batch",
                consent_gated=use_consent_url,
                geo_restriction=tuple(geo_restriction or ()),
                vendor_names=names,
                vendor_codes=codes,
            )
            kwargs = {} if timeout is None else {"timeout": timeout}
            result = await self.orchestrator().generate_batch(plan, ctx, **kwargs)
        except SurveyLinkError as exc:
            _event("LINK_GENERATION_ERROR", projectId=project_id, kind=exc.kind, error=exc.message)
            raise

        await self.invalidate_stats(project_id)
        _event(
            "LINK_GENERATION_SUCCESS" if result.ok else "LINK_GENERATION_ERROR",
            projectId=project_id,
            batchId=result.batch_id,
            requested=result.requested,
            created=result.succeeded,
            failed=result.failed,
            expected=plan_totals(plan),
            actual=result.by_type(),
            byVendor=result.by_vendor(),
        )

        # plan order: vendor by vendor, TEST before LIVE
        links = result.created_links
        body = self._batch_body(result)
        body.update(
            batchId=result.batch_id,
            count=result.succeeded,
            links=[serialize_link(ln, names) for ln in links],
            expected=plan_totals(plan),
            actual=result.by_type(),
        )
        return body

    @staticmethod
    def _batch_body(result: BatchResult) -> dict:
        return {
            "success": result.ok,
            "requested": result.requested,
            "failed": result.failed,
            "failures": [f.to_dict() for f in result.failures],
            "timedOut": result.timed_out,
            "message": result.message,
        }

    async def save_batch(self, project_id: str, links: Sequence[dict], timeout: float | None = None) -> dict:
        """Persist client-built links as-is (the uid is the client's respId)."""
        if not project_id:
            raise ValidationError("Missing projectId")
        if not links:
            raise ValidationError("Missing links array")
        if len(links) > self.settings.MAX_LINKS_PER_REQUEST:
            raise ValidationError(f"Cannot save more than {self.settings.MAX_LINKS_PER_REQUEST:,} links at once")
        await self.gateway.require_project(project_id)

        vendor_ids = sorted({(ln.get("vendorId") or "").strip() for ln in links} - {""})
        names, codes = await self._project_vendors(project_id, vendor_ids)
        ctx = new_context(
            project_id, "", self.urls, generation_method="client-side-batch", vendor_names=names, vendor_codes=codes
        )

        records: list[LinkRecord] = []
        for i, ln in enumerate(links):
            uid = (ln.get("respId") or ln.get("uid") or "").strip()
            if not uid:
                raise ValidationError(f"Link {i} has no respId", index=i)
            if ln.get("projectId") and ln["projectId"] != project_id:
                raise ValidationError(f"Link {uid} belongs to another project", uid=uid)
            try:
                lt = LinkType((ln.get("linkType") or "LIVE").upper())
            except ValueError:
                raise ValidationError(f"Invalid linkType for link {uid}", uid=uid)
            vid = (ln.get("vendorId") or "").strip() or None
            url = ln.get("wrapperUrl") or wrapper_url(self.urls, project_id, uid)
            meta = parse_metadata(
                {
                    "originalUrl": ln.get("originalUrl") or "",
                    "wrapperUrl": url,
                    "linkType": lt.value,
                    "batchId": ctx.batch_id,
                    "generatedAt": ctx.generated_at,
                    "generationMethod": ctx.generation_method,
                    "vendorName": names.get(vid) if vid else None,
                    "clientId": ln.get("id"),
                }
            )
            records.append(
                LinkRecord(
                    project_id=project_id, uid=uid, resp_id=uid, vendor_id=vid, link_type=lt, wrapper_url=url, metadata=meta
                )
            )

        kwargs = {} if timeout is None else {"timeout": timeout}
        result = await self.orchestrator().save_batch(records, ctx, **kwargs)
        await self.invalidate_stats(project_id)

        body = self._batch_body(result)
        body.update(
            batchId=result.batch_id,
            saved=result.succeeded,
            total=result.requested,
            savedLinks=[{"id": ln.id, "uid": ln.uid, "respId": ln.resp_id} for ln in result.created_links],
        )
        return body

    async def list_links(
        self,
        project_id: str,
        *,
        link_type: str | None = None,
        vendor_id: str | None = None,
        status: str | None = None,
    ) -> list[dict]:
        await self.gateway.require_project(project_id)
        lt = None
        if link_type:
            try:
                lt = LinkType(link_type.upper())
            except ValueError:
                raise ValidationError("linkType must be TEST or LIVE")
        links = await self.gateway.list_survey_links_by_project(
            project_id, link_type=lt, vendor_id=vendor_id or None, status=parse_status(status) if status else None
        )
        return [serialize_link(ln) for ln in links]

    async def export_links(
        self,
        project_id: str,
        *,
        vendor_id: str | None = None,
        date_range: str | None = None,
        now: datetime | None = None,
    ) -> tuple[Project, list[dict]]:
        """Flat rows for handing links to vendors, oldest first."""
        project = await self.gateway.require_project(project_id)
        start, end = date_range_bounds(date_range, now)
        links = await self.gateway.list_survey_links_by_project(
            project_id, vendor_id=vendor_id or None, created_from=start, created_to=end
        )
        vendors = {v.id: v for v in await self.gateway.list_vendors(sorted({ln.vendor_id for ln in links if ln.vendor_id}))}
        reasons: dict[str, list[str]] = {}
        for f in reversed(await self.gateway.list_flags_by_project(project_id)):
            reasons.setdefault(f.survey_link_id, []).append(f.reason)

        rows = []
        for ln in links:
            meta = parse_metadata(ln.metadata_json)
            vendor = vendors.get(ln.vendor_id) if ln.vendor_id else None
            flags = reasons.get(ln.id) or ([meta.flag_reason] if meta.flagged and meta.flag_reason else [])
            rows.append(
                {
                    "id": ln.id,
                    "uid": ln.uid,
                    "respId": ln.resp_id,
                    "wrapperUrl": meta.wrapper_url or "",
                    "originalUrl": meta.original_url or "",
                    "linkType": ln.link_type.value,
                    "status": ln.status.value,
                    "vendorId": ln.vendor_id or "",
                    "vendorName": vendor.name if vendor else (meta.vendor_name or ""),
                    "vendorCode": vendor.code if vendor else "",
                    "flags": "; ".join(flags),
                    "createdAt": ln.created_at.isoformat() if ln.created_at else "",
                    "completedAt": ln.completed_at.isoformat() if ln.completed_at else "",
                }
            )
        logger.info("Exported %d links for project %s (vendor=%s, range=%s)", len(rows), project_id, vendor_id, date_range)
        return project, rows

    # ---- lifecycle ----

    async def _link_in_project(self, project_id: str, uid: str) -> SurveyLink:
        if not project_id or not uid:
            raise ValidationError("Missing projectId or uid")
        link = await self.gateway.get_survey_link_by_uid(uid, project_id)
        if link is None:
            raise NotFoundError("Survey link not found", uid=uid)
        return link

    async def _check_vendor_change(self, link: SurveyLink, vendor_id: str | None) -> str | None:
        if not vendor_id or vendor_id == link.vendor_id:
            return None
        if await self.gateway.get_project_vendor(link.project_id, vendor_id) is None:
            raise ValidationError("Vendor not found or does not belong to this project", vendor_id=vendor_id)
        return vendor_id

    async def update_status(
        self,
        *,
        project_id: str,
        uid: str,
        status: str,
        vendor_id: str | None = None,
        question_id: str | None = None,
        answer: Any = None,
        metadata: dict | None = None,
    ) -> dict:
        target = parse_status(status)
        link = await self._link_in_project(project_id, uid)
        if target != link.status:
            try:
                action_for_target(link.status, target)
            except KeyError:
                raise ValidationError(f"Cannot move link from {link.status.value} to {target.value}")
        new_vendor = await self._check_vendor_change(link, vendor_id)

        meta = None
        if metadata is not None:
            current = parse_metadata(link.metadata_json)
            entry = {
                "timestamp": now_iso(),
                "status": target.value,
                "questionId": question_id or "00000000-0000-0000-0000-000000000000",
                "answer": answer,
                "metadata": {"statusUpdateTimestamp": now_iso(), "previousStatus": link.status.value, **metadata},
            }
            meta = current.merged({"responses": list(current.responses or []) + [entry]})

        kwargs: dict = {"status": target, "metadata": meta}
        if new_vendor:
            kwargs["vendor_id"] = new_vendor
        if target == LinkStatus.COMPLETED:
            kwargs["completed_at"] = datetime.now(timezone.utc)
        updated = await self.gateway.update_survey_link(link.id, **kwargs)
        await self.invalidate_stats(project_id)
        return {
            "success": True,
            "message": f"Survey link status updated to {target.value}",
            "updatedLink": {"uid": updated.uid, "status": updated.status.value, "vendorId": updated.vendor_id},
        }

    async def complete_link(
        self,
        *,
        project_id: str,
        uid: str,
        vendor_id: str | None = None,
        metadata: dict | None = None,
    ) -> dict:
        link = await self._link_in_project(project_id, uid)
        try:
            get_transition(link.status, "complete")
        except KeyError:
            raise ValidationError(f"Cannot complete survey from {link.status.value} status")
        new_vendor = await self._check_vendor_change(link, vendor_id)

        extra = caller_metadata(metadata, "completionTimestamp", "responses")
        extra["completionTimestamp"] = now_iso()
        meta = parse_metadata(link.metadata_json).merged(extra)

        kwargs: dict = {"status": LinkStatus.COMPLETED, "metadata": meta, "completed_at": datetime.now(timezone.utc)}
        if new_vendor:
            kwargs["vendor_id"] = new_vendor
        await self.gateway.update_survey_link(link.id, **kwargs)
        await self.invalidate_stats(project_id)
        return {"success": True, "message": "Survey marked as completed successfully"}

    async def validate_link(self, *, project_id: str, uid: str, country: str | None = None) -> dict:
        """Entry check when a respondent opens a wrapper link; moves UNUSED to IN_PROGRESS."""
        link = await self._link_in_project(project_id, uid)
        if link.status == LinkStatus.COMPLETED:
            return {"success": False, "error": "Survey already completed", "status": "completed",
                    "redirect": f"/thank-you-completed?projectId={project_id}"}
        if link.status == LinkStatus.DISQUALIFIED:
            return {"success": False, "error": "User disqualified", "status": "disqualified",
                    "redirect": f"/sorry-disqualified?projectId={project_id}"}

        meta = parse_metadata(link.metadata_json)
        allowed = [c.upper() for c in (meta.geo_restriction or [])]
        if allowed and country and country.upper() not in allowed:
            return {
                "success": False,
                "error": "Geographic restriction",
                "status": "geo-restricted",
                "userCountry": country,
                "allowedCountries": allowed,
                "redirect": f"/geo-restricted?country={country}&allowed={','.join(allowed)}",
            }

        project = await self.gateway.require_project(project_id)
        if link.status == LinkStatus.UNUSED:
            link = await self.gateway.update_survey_link(link.id, status=get_transition(link.status, "start").to_status)
            await self.invalidate_stats(project_id)
        return {
            "success": True,
            "project": {"id": project.id, "name": project.name, "surveyUrl": project.survey_url or meta.original_url or ""},
            "surveyLink": {"id": link.id, "uid": link.uid, "status": link.status.value, "originalUrl": meta.original_url},
        }

    # ---- QC ----

    async def flag_link(
        self,
        *,
        project_id: str,
        uid: str,
        reason: str,
        metadata: dict | None = None,
        severity: FlagSeverity = FlagSeverity.MEDIUM,
    ) -> dict:
        if not reason:
            raise ValidationError("Missing required fields")
        link = await self._link_in_project(project_id, uid)
        flagged_at = now_iso()
        updates = caller_metadata(metadata, "flagged", "flagReason", "flaggedAt")
        updates.update(flagged=True, flagReason=reason, flaggedAt=flagged_at)
        meta = parse_metadata(link.metadata_json).merged(updates)

        target = get_transition(link.status, "flag").to_status
        updated = await self.gateway.update_survey_link(link.id, status=target, metadata=meta)
        flag = await self.gateway.create_flag(
            updated, reason=reason, severity=severity, message=reason, metadata=metadata or {}
        )
        await self.invalidate_stats(project_id)
        logger.info("Flagged link %s in project %s: %s", uid, project_id, reason)
        return {
            "success": True,
            "message": "Survey link flagged successfully",
            "flagId": flag.id,
            "link": serialize_link(updated),
        }

    async def update_flag_status(
        self,
        *,
        link_id: str,
        status: str,
        reviewed_by: str,
        reasoning: str | None = None,
        reviewed_at: str | None = None,
    ) -> dict:
        if not link_id or not status or not reviewed_by:
            raise ValidationError("Missing required fields: flagId, status, reviewedBy")
        try:
            review = ReviewStatus((status or "").upper())
        except ValueError:
            raise ValidationError(f"Invalid status. Must be one of: {', '.join(s.value for s in ReviewStatus)}")

        link = await self.gateway.get_survey_link(link_id)
        if link is None:
            raise NotFoundError("Survey link not found", link_id=link_id)

        current = parse_metadata(link.metadata_json)
        previous = current.manual_review.status if current.manual_review else ReviewStatus.PENDING.value
        record = ManualReview(
            status=review.value,
            reasoning=reasoning or "",
            reviewed_by=reviewed_by,
            reviewed_at=reviewed_at or now_iso(),
            previous_status=previous,
        )
        meta = current.merged({"manualReview": record.model_dump(by_alias=True, exclude_none=True)})
        new_status = review_outcome(review, link.status)

        kwargs: dict = {"metadata": meta}
        if new_status is not None:
            kwargs["status"] = new_status
            if new_status == LinkStatus.COMPLETED:
                kwargs["completed_at"] = datetime.now(timezone.utc)
        updated = await self.gateway.update_survey_link(link.id, **kwargs)
        await self.invalidate_stats(link.project_id)

        _event(
            "QC_MANUAL_REVIEW",
            surveyLinkId=link.id, projectId=link.project_id, newStatus=review.value,
            previousStatus=previous, reviewedBy=reviewed_by, linkStatus=updated.status.value,
        )
        return {
            "success": True,
            "message": f"Flag status updated to {review.value}",
            "data": {
                "id": updated.id,
                "status": updated.status.value,
                "manualReview": record.model_dump(by_alias=True, exclude_none=True),
            },
        }

    async def list_flagged(self, project_id: str) -> dict:
        await self.gateway.require_project(project_id)
        flagged = [
            serialize_link(ln)
            for ln in await self.gateway.list_survey_links_by_project(project_id)
            if ln.status == LinkStatus.FLAGGED or parse_metadata(ln.metadata_json).flagged
        ]
        history = [
            {
                "id": f.id,
                "surveyLinkId": f.survey_link_id,
                "reason": f.reason,
                "severity": f.severity.value,
                "createdAt": f.created_at.isoformat() if f.created_at else None,
            }
            for f in await self.gateway.list_flags_by_project(project_id)
        ]
        return {"success": True, "links": flagged, "flags": history}

    # ---- stats ----

    @staticmethod
    def _stats_key(project_id: str) -> str:
        return f"surveylinks:stats:{project_id}"

    async def link_stats(self, project_id: str) -> dict:
        if not project_id:
            raise ValidationError("Project ID is required")
        r = await get_redis(self.settings.REDIS_URL)
        if r is not None:
            try:
                cached = await r.get(self._stats_key(project_id))
                if cached:
                    return json.loads(cached)
            except Exception as exc:
                logger.warning("Stats cache read failed: %s", exc)

        links = await self.gateway.list_survey_links_by_project(project_id)
        stats: dict = {"total": len(links), "active": 0, "completed": 0, "testLinks": 0, "liveLinks": 0, "byVendor": {}}
        for ln in links:
            if ln.status in (LinkStatus.UNUSED, LinkStatus.IN_PROGRESS):
                stats["active"] += 1
            elif ln.status == LinkStatus.COMPLETED:
                stats["completed"] += 1
            if ln.link_type == LinkType.TEST:
                stats["testLinks"] += 1
            else:
                stats["liveLinks"] += 1
            key = ln.vendor_id or "unknown"
            stats["byVendor"][key] = stats["byVendor"].get(key, 0) + 1

        if r is not None:
            try:
                await r.set(self._stats_key(project_id), json.dumps(stats), ex=self.settings.STATS_CACHE_TTL_SECONDS)
            except Exception as exc:
                logger.warning("Stats cache write failed: %s", exc)
        return stats

    async def invalidate_stats(self, project_id: str) -> None:
        r = await get_redis(self.settings.REDIS_URL)
        if r is None:
            return
        try:
            await r.delete(self._stats_key(project_id))
        except Exception as exc:
            logger.warning("Stats cache invalidation failed: %s", exc)
