from __future__ import annotations

import secrets
import string

from surveylinks.db.models.survey_link import LinkType

# URL-safe without escaping; no '-'/'_' so the '_' separator in prefixes stays unambiguous
UID_ALPHABET = string.ascii_letters + string.digits


class UidGenerator:
    """Random respondent identifiers.

    Stateless: every call draws fresh randomness from ``secrets``. With the default
    10 characters over 62 symbols a project would need ~10^8 links before the
    birthday bound reaches one collision in a million; collisions that do happen are
    caught by the (project_id, uid) unique constraint and the caller regenerates.
    """

    def __init__(self, length: int = 10, alphabet: str = UID_ALPHABET):
        if length < 6:
            raise ValueError("uid length must be at least 6")
        self.length = length
        self.alphabet = alphabet

    def generate(self, prefix: str = "") -> str:
        body = "".join(secrets.choice(self.alphabet) for _ in range(self.length))
        return f"{prefix}{body}"


def uid_prefix(link_type: LinkType | str, vendor_id: str | None = None, vendor_code: str = "") -> str:
    """``<code>_<TYPE>_`` for coded vendors, ``V<last4>_<TYPE>_`` otherwise, ``<TYPE>_`` without vendor."""
    t = link_type.value if isinstance(link_type, LinkType) else str(link_type).upper()
    code = _safe(vendor_code)
    if code:
        return f"{code}_{t}_"
    if vendor_id:
        return f"V{_safe(vendor_id)[-4:]}_{t}_"
    return f"{t}_"


def _safe(value: str | None) -> str:
    return "".join(ch for ch in (value or "").strip() if ch in UID_ALPHABET or ch in "-_")
