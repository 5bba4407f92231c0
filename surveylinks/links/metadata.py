"""Typed view over the link ``metadata_json`` blob.

At rest the metadata is an opaque JSON string shared with older writers, so the
model keeps camelCase keys and preserves every key it does not know about
(``extra="allow"``). Parsing never raises: malformed input becomes an empty model.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger("surveylinks.metadata")


class _Blob(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class ManualReview(_Blob):
    status: str = "PENDING"
    reasoning: Optional[str] = None
    reviewed_by: Optional[str] = Field(default=None, alias="reviewedBy")
    reviewed_at: Optional[str] = Field(default=None, alias="reviewedAt")
    previous_status: Optional[str] = Field(default=None, alias="previousStatus")


class LinkMetadata(_Blob):
    # generation provenance
    original_url: Optional[str] = Field(default=None, alias="originalUrl")
    wrapper_url: Optional[str] = Field(default=None, alias="wrapperUrl")
    link_type: Optional[str] = Field(default=None, alias="linkType")
    batch_id: Optional[str] = Field(default=None, alias="batchId")
    generated_at: Optional[str] = Field(default=None, alias="generatedAt")
    generation_method: Optional[str] = Field(default=None, alias="generationMethod")
    vendor_name: Optional[str] = Field(default=None, alias="vendorName")
    geo_restriction: Optional[list[str]] = Field(default=None, alias="geoRestriction")

    # flagging / QC
    flagged: Optional[bool] = None
    flag_reason: Optional[str] = Field(default=None, alias="flagReason")
    flagged_at: Optional[str] = Field(default=None, alias="flaggedAt")
    manual_review: Optional[ManualReview] = Field(default=None, alias="manualReview")
    qc_analysis: Optional[dict[str, Any]] = Field(default=None, alias="qcAnalysis")
    bot_detection: Optional[dict[str, Any]] = Field(default=None, alias="botDetection")

    completion_timestamp: Optional[str] = Field(default=None, alias="completionTimestamp")
    responses: Optional[list[dict[str, Any]]] = None

    def merged(self, updates: dict[str, Any]) -> "LinkMetadata":
        """Return a copy with ``updates`` (wire keys) layered over the current keys."""
        data = self.to_dict()
        data.update(updates or {})
        return parse_metadata(data)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# Keys written by generation and QC review; caller-supplied metadata may not replace them.
PROTECTED_KEYS = frozenset(
    {
        "originalUrl",
        "wrapperUrl",
        "linkType",
        "batchId",
        "generatedAt",
        "generationMethod",
        "vendorName",
        "geoRestriction",
        "manualReview",
    }
)


def caller_metadata(extra: dict[str, Any] | None, *owned: str) -> dict[str, Any]:
    """Drop keys from ``extra`` that belong to generation, QC, or the calling operation (``owned``)."""
    blocked = PROTECTED_KEYS.union(owned)
    kept = {k: v for k, v in (extra or {}).items() if k not in blocked}
    dropped = sorted(set(extra or {}) - set(kept))
    if dropped:
        logger.info("Ignoring caller metadata keys %s", dropped)
    return kept


def parse_metadata(raw: Any) -> LinkMetadata:
    """Parse whatever is stored in ``metadata_json``; degrade to empty on any error."""
    if isinstance(raw, LinkMetadata):
        return raw
    data: Any = raw
    if raw is None or raw == "":
        return LinkMetadata()
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("Unparseable link metadata ignored")
            return LinkMetadata()
    if not isinstance(data, dict):
        return LinkMetadata()
    try:
        return LinkMetadata.model_validate(data)
    except PydanticValidationError as exc:
        # A known key with the wrong type: drop just those keys.
        bad = {str(err["loc"][0]) for err in exc.errors() if err.get("loc")}
        logger.debug("Dropping malformed link metadata keys: %s", sorted(bad))
        try:
            return LinkMetadata.model_validate({k: v for k, v in data.items() if str(k) not in bad})
        except PydanticValidationError:
            return LinkMetadata()


def dump_metadata(meta: LinkMetadata | dict | None) -> str:
    if meta is None:
        return "{}"
    if isinstance(meta, dict):
        meta = parse_metadata(meta)
    return json.dumps(meta.to_dict(), ensure_ascii=False, default=str)
