from __future__ import annotations

import json

import pytest

from surveylinks.core.lifecycle import (
    ReviewStatus,
    action_for_target,
    allowed_actions,
    get_transition,
    review_outcome,
)
from surveylinks.db.models.survey_link import LinkStatus
from surveylinks.links.metadata import LinkMetadata, caller_metadata, dump_metadata, parse_metadata


@pytest.mark.parametrize("raw", [None, "", "not json", "[1, 2]", "42", b"\xff\xfe"])
def test_malformed_metadata_degrades_to_empty(raw):
    assert parse_metadata(raw).to_dict() == {}


def test_unknown_keys_survive_a_round_trip():
    raw = json.dumps({"linkType": "LIVE", "customField": {"a": 1}, "botDetection": {"score": 3}})
    meta = parse_metadata(raw)
    assert meta.link_type == "LIVE"
    assert json.loads(dump_metadata(meta)) == {"linkType": "LIVE", "customField": {"a": 1}, "botDetection": {"score": 3}}


def test_badly_typed_known_key_is_dropped_not_fatal():
    meta = parse_metadata({"geoRestriction": 17, "batchId": "b1"})
    assert meta.batch_id == "b1"
    assert meta.geo_restriction is None


def test_merged_layers_updates_over_existing_keys():
    meta = LinkMetadata(batch_id="b1", original_url="https://x", flag_reason="old")
    out = meta.merged({"flagReason": "new", "flagged": True, "extra": "x"}).to_dict()
    assert out == {"batchId": "b1", "originalUrl": "https://x", "flagReason": "new", "flagged": True, "extra": "x"}
    # original unchanged
    assert meta.flag_reason == "old"


def test_manual_review_is_typed():
    meta = parse_metadata({"manualReview": {"status": "APPROVED", "reviewedBy": "qa@x"}})
    assert meta.manual_review.status == "APPROVED"
    assert meta.manual_review.reviewed_by == "qa@x"


def test_forward_transitions():
    assert get_transition(LinkStatus.UNUSED, "start").to_status == LinkStatus.IN_PROGRESS
    assert get_transition(LinkStatus.IN_PROGRESS, "complete").to_status == LinkStatus.COMPLETED
    assert get_transition(LinkStatus.COMPLETED, "flag").to_status == LinkStatus.FLAGGED
    with pytest.raises(KeyError):
        get_transition(LinkStatus.UNUSED, "complete")
    with pytest.raises(KeyError):
        get_transition(LinkStatus.COMPLETED, "start")


def test_no_way_back_without_review():
    with pytest.raises(KeyError):
        action_for_target(LinkStatus.DISQUALIFIED, LinkStatus.COMPLETED)
    with pytest.raises(KeyError):
        action_for_target(LinkStatus.COMPLETED, LinkStatus.IN_PROGRESS)
    assert action_for_target(LinkStatus.IN_PROGRESS, LinkStatus.DISQUALIFIED) == "disqualify"


def test_allowed_actions():
    assert allowed_actions(LinkStatus.UNUSED) == ("start", "disqualify", "flag")
    assert allowed_actions(LinkStatus.COMPLETED) == ("flag",)


def test_review_outcomes():
    assert review_outcome(ReviewStatus.APPROVED, LinkStatus.DISQUALIFIED) == LinkStatus.COMPLETED
    assert review_outcome(ReviewStatus.APPROVED, LinkStatus.FLAGGED) is None
    assert review_outcome(ReviewStatus.REJECTED, LinkStatus.COMPLETED) == LinkStatus.DISQUALIFIED
    assert review_outcome(ReviewStatus.UNDER_REVIEW, LinkStatus.FLAGGED) is None


def test_caller_metadata_cannot_replace_generation_or_owned_keys():
    extra = {"originalUrl": "x", "batchId": "b", "manualReview": {}, "flaggedAt": "t", "score": 3}
    assert caller_metadata(extra, "flaggedAt") == {"score": 3}
    assert caller_metadata(None) == {}
