"""Vendor distribution planning.

A plan is computed once, before any I/O, and is fully determined by its inputs.
Quantities in a plan always add up to the requested totals.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from surveylinks.core.errors import ValidationError
from surveylinks.db.models.survey_link import LinkType


@dataclass(frozen=True, slots=True)
class PlanItem:
    vendor_id: str | None
    link_type: LinkType
    quantity: int


def split_evenly(total: int, buckets: int) -> list[int]:
    """``total`` over ``buckets``; the first ``total % buckets`` buckets get one extra."""
    if buckets <= 0:
        raise ValidationError("cannot split across zero vendors")
    base, rem = divmod(int(total), buckets)
    return [base + (1 if i < rem else 0) for i in range(buckets)]


def split_weighted(total: int, weights: Sequence[float]) -> list[int]:
    """Largest-remainder apportionment. Ties go to the earlier vendor."""
    if not weights:
        raise ValidationError("cannot split across zero vendors")
    if any(w < 0 for w in weights):
        raise ValidationError("vendor weights must be non-negative")
    wsum = float(sum(weights))
    if wsum <= 0:
        return split_evenly(total, len(weights))

    exact = [total * w / wsum for w in weights]
    shares = [int(x) for x in exact]
    short = total - sum(shares)
    order = sorted(range(len(weights)), key=lambda i: (-(exact[i] - shares[i]), i))
    for i in order[:short]:
        shares[i] += 1
    return shares


def plan_distribution(
    test_count: int,
    live_count: int,
    vendor_ids: Sequence[str] | None = None,
    *,
    per_vendor: bool = False,
    weights: Sequence[float] | None = None,
) -> list[PlanItem]:
    """Build the ordered work plan.

    - no vendors: one item per link type, ``vendor_id=None``
    - ``per_vendor``: every vendor receives ``test_count`` TEST and ``live_count`` LIVE
    - otherwise the totals are pooled and split across vendors (even, or by ``weights``)

    Items are ordered vendor by vendor, TEST before LIVE; zero quantities are dropped.
    """
    if test_count < 0 or live_count < 0:
        raise ValidationError("counts must be non-negative")

    vendors = _dedupe(vendor_ids or [])
    counts = ((LinkType.TEST, int(test_count)), (LinkType.LIVE, int(live_count)))

    if not vendors:
        return [PlanItem(None, t, q) for t, q in counts if q > 0]

    if per_vendor:
        return [PlanItem(v, t, q) for v in vendors for t, q in counts if q > 0]

    if weights is not None and len(weights) != len(vendors):
        raise ValidationError("vendorWeights must have one weight per vendor")

    split = {}
    for t, q in counts:
        split[t] = split_weighted(q, weights) if weights is not None else split_evenly(q, len(vendors))

    plan: list[PlanItem] = []
    for i, v in enumerate(vendors):
        for t, _ in counts:
            if split[t][i] > 0:
                plan.append(PlanItem(v, t, split[t][i]))
    return plan


def plan_totals(plan: Sequence[PlanItem]) -> dict[str, int]:
    out = {LinkType.TEST.value: 0, LinkType.LIVE.value: 0}
    for item in plan:
        out[item.link_type.value] += item.quantity
    return out


def _dedupe(ids: Sequence[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for v in ids:
        v = (v or "").strip()
        if v and v not in seen:
            seen.add(v)
            out.append(v)
    return out
