from __future__ import annotations

import asyncio
from typing import Callable, Optional

from surveylinks.core.errors import ConflictError, StoreUnavailableError, TransientStoreError
from surveylinks.db.base import new_id, utcnow
from surveylinks.db.models.survey_link import SurveyLink
from surveylinks.links.builder import LinkRecord
from surveylinks.links.identifiers import UidGenerator
from surveylinks.links.metadata import dump_metadata


class CountingUids(UidGenerator):
    """Predictable uids: queued bodies first, then a zero-padded counter."""

    def __init__(self, queued: Optional[list[str]] = None):
        super().__init__(10)
        self.queued = list(queued or [])
        self.n = 0

    def generate(self, prefix: str = "") -> str:
        if self.queued:
            return prefix + self.queued.pop(0)
        self.n += 1
        return f"{prefix}{self.n:010d}"


class FakeGateway:
    """In-memory link store with injectable failures.

    ``fail(record, call_no)`` may return an exception to raise before the write;
    ``lost_ack(record, call_no)`` makes a write commit and then report a transient error.
    """

    def __init__(
        self,
        fail: Optional[Callable[[LinkRecord, int], Optional[Exception]]] = None,
        lost_ack: Optional[Callable[[LinkRecord, int], bool]] = None,
        delay: float = 0.0,
        down: bool = False,
    ):
        self.rows: dict[tuple[str, str], SurveyLink] = {}
        self.fail = fail
        self.lost_ack = lost_ack
        self.delay = delay
        self.down = down
        self.calls = 0
        self.in_flight = 0
        self.peak = 0

    async def ping(self) -> None:
        if self.down:
            raise StoreUnavailableError("store down")

    async def create_survey_link(self, record: LinkRecord) -> SurveyLink:
        self.calls += 1
        n = self.calls
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            exc = self.fail(record, n) if self.fail else None
            if exc is not None:
                raise exc
            key = (record.project_id, record.uid)
            if key in self.rows:
                raise ConflictError("UNIQUE constraint failed: survey_links.project_id, survey_links.uid")
            link = SurveyLink(
                id=new_id(),
                project_id=record.project_id,
                uid=record.uid,
                resp_id=record.resp_id,
                vendor_id=record.vendor_id,
                link_type=record.link_type,
                status=record.status,
                metadata_json=dump_metadata(record.metadata),
                created_at=utcnow(),
            )
            self.rows[key] = link
            if self.lost_ack and self.lost_ack(record, n):
                raise TransientStoreError("connection reset after commit")
            return link
        finally:
            self.in_flight -= 1

    async def get_survey_link_by_uid(self, uid: str, project_id: Optional[str] = None) -> Optional[SurveyLink]:
        for (pid, u), link in self.rows.items():
            if u == uid and (project_id is None or pid == project_id):
                return link
        return None
