from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from surveylinks.db.models.survey_link import LinkType


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class GenerateLinksIn(_Body):
    project_id: str = Field(default="", alias="projectId")
    original_url: str = Field(default="", alias="originalUrl")
    test_count: Optional[int] = Field(default=None, alias="testCount")
    live_count: Optional[int] = Field(default=None, alias="liveCount")
    count: Optional[int] = None
    link_type: LinkType = Field(default=LinkType.LIVE, alias="linkType")
    vendor_id: Optional[str] = Field(default=None, alias="vendorId")
    vendor_ids: Optional[list[str]] = Field(default=None, alias="vendorIds")
    # None: counts are per vendor whenever vendors are given
    generate_per_vendor: Optional[bool] = Field(default=None, alias="generatePerVendor")
    vendor_weights: Optional[list[float]] = Field(default=None, alias="vendorWeights")
    geo_restriction: Optional[list[str]] = Field(default=None, alias="geoRestriction")
    use_consent_url: bool = Field(default=False, alias="useConsentUrl")
    timeout_seconds: Optional[float] = Field(default=None, alias="timeoutSeconds", gt=0)


class SaveBatchIn(_Body):
    project_id: str = Field(default="", alias="projectId")
    links: list[dict[str, Any]] = Field(default_factory=list)
    timeout_seconds: Optional[float] = Field(default=None, alias="timeoutSeconds", gt=0)


class FlagLinkIn(_Body):
    project_id: str = Field(default="", alias="projectId")
    uid: str = ""
    reason: str = ""
    metadata: Optional[dict[str, Any]] = None


class UpdateStatusIn(_Body):
    project_id: str = Field(default="", alias="projectId")
    uid: str = ""
    status: str = ""
    vendor_id: Optional[str] = Field(default=None, alias="vendorId")
    question_id: Optional[str] = Field(default=None, alias="questionId")
    answer: Any = None
    metadata: Optional[dict[str, Any]] = None


class CompleteLinkIn(_Body):
    project_id: str = Field(default="", alias="projectId")
    uid: str = ""
    vendor_id: Optional[str] = Field(default=None, alias="vendorId")
    metadata: Optional[dict[str, Any]] = None


class ValidateLinkIn(_Body):
    project_id: str = Field(default="", alias="projectId")
    uid: str = ""


class UpdateFlagStatusIn(_Body):
    flag_id: str = Field(default="", alias="flagId")
    status: str = ""
    reasoning: Optional[str] = None
    reviewed_by: str = Field(default="", alias="reviewedBy")
    reviewed_at: Optional[str] = Field(default=None, alias="reviewedAt")
