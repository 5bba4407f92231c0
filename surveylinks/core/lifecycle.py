"""Survey link lifecycle rules.

All status transition rules live here as data:

- respondent-driven actions only move a link forward
  (UNUSED -> IN_PROGRESS -> COMPLETED / DISQUALIFIED; FLAGGED from anywhere)
- QC review is the only way back: APPROVED turns DISQUALIFIED into COMPLETED,
  REJECTED turns anything into DISQUALIFIED
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from surveylinks.db.models.survey_link import LinkStatus


Action = str  # "start" | "disqualify" | "complete" | "flag"


class ReviewStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    UNDER_REVIEW = "UNDER_REVIEW"


@dataclass(frozen=True, slots=True)
class Transition:
    """One edge in the link state machine."""

    action: Action
    from_statuses: tuple[LinkStatus, ...]
    to_status: LinkStatus


_ANY = tuple(LinkStatus)

TRANSITIONS: tuple[Transition, ...] = (
    # presurvey passed / respondent clicked through
    Transition("start", (LinkStatus.UNUSED, LinkStatus.IN_PROGRESS), LinkStatus.IN_PROGRESS),
    # presurvey failed or vendor-side termination
    Transition("disqualify", (LinkStatus.UNUSED, LinkStatus.IN_PROGRESS), LinkStatus.DISQUALIFIED),
    # completion callback
    Transition("complete", (LinkStatus.IN_PROGRESS,), LinkStatus.COMPLETED),
    # QC flagging; re-flagging a flagged link only refreshes the metadata
    Transition("flag", _ANY, LinkStatus.FLAGGED),
)


def get_transition(status: LinkStatus, action: Action) -> Transition:
    for t in TRANSITIONS:
        if t.action == action and status in t.from_statuses:
            return t
    raise KeyError("unknown transition")


def allowed_actions(status: LinkStatus) -> tuple[Action, ...]:
    actions: list[Action] = []
    for t in TRANSITIONS:
        if status in t.from_statuses and t.action not in actions:
            actions.append(t.action)
    return tuple(actions)


def action_for_target(status: LinkStatus, target: LinkStatus) -> Action:
    """Which action moves ``status`` to ``target`` (KeyError when none does)."""
    for t in TRANSITIONS:
        if t.to_status == target and status in t.from_statuses:
            return t.action
    raise KeyError("unknown transition")


def review_outcome(review: ReviewStatus, current: LinkStatus) -> LinkStatus | None:
    """Link status forced by a QC decision, or None when the status stays as is."""
    if review == ReviewStatus.APPROVED and current == LinkStatus.DISQUALIFIED:
        return LinkStatus.COMPLETED
    if review == ReviewStatus.REJECTED:
        return LinkStatus.DISQUALIFIED
    return None
