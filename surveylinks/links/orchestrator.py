"""Batch link creation.

A batch is a distribution plan expanded into one task per link. Tasks are drained
from a queue by a fixed number of workers, so at most ``policy.concurrency``
inserts are in flight against the store at any time. The pool belongs to a single
``generate_batch``/``save_batch`` call and is discarded when the batch settles.

Per task::

    PENDING -> IN_FLIGHT -> SUCCEEDED
                         -> RETRYING -> IN_FLIGHT ...   (transient store errors)
                         -> FAILED                      (terminal or retries exhausted)

Per batch: PLANNING -> EXECUTING -> SETTLED. The result is produced only after
every worker has finished (or the batch timeout fired), and it always accounts
for every requested link: ``succeeded + failed == requested``.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from surveylinks.core.config import BatchPolicy
from surveylinks.core.errors import RETRYABLE, ConflictError, SurveyLinkError, classify
from surveylinks.db.models.survey_link import LinkType, SurveyLink
from surveylinks.links.builder import BuildContext, LinkRecord, build_link_record
from surveylinks.links.identifiers import UidGenerator, uid_prefix
from surveylinks.links.metadata import parse_metadata
from surveylinks.links.planner import PlanItem

logger = logging.getLogger("surveylinks.batch")

_DEFAULT: Any = object()


class TaskState(str, enum.Enum):
    PENDING = "PENDING"
    IN_FLIGHT = "IN_FLIGHT"
    RETRYING = "RETRYING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class BatchState(str, enum.Enum):
    PLANNING = "PLANNING"
    EXECUTING = "EXECUTING"
    SETTLED = "SETTLED"


@dataclass(slots=True)
class LinkTask:
    index: int
    vendor_id: str | None
    link_type: LinkType
    uid: str | None = None
    # caller supplied the uid (save-batch / resubmission): never regenerate it
    fixed_uid: bool = False
    record: LinkRecord | None = None
    state: TaskState = TaskState.PENDING
    attempts: int = 0
    regenerations: int = 0
    # the current uid may already be stored by an earlier attempt of this task
    ambiguous: bool = False
    adopted: bool = False
    error: SurveyLinkError | None = None
    link: SurveyLink | None = None


@dataclass(slots=True)
class TaskFailure:
    index: int
    uid: str | None
    vendor_id: str | None
    link_type: LinkType
    kind: str
    message: str
    attempts: int

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "uid": self.uid,
            "vendorId": self.vendor_id,
            "linkType": self.link_type.value,
            "kind": self.kind,
            "message": self.message,
            "attempts": self.attempts,
        }


@dataclass(slots=True)
class BatchResult:
    batch_id: str
    requested: int
    created_links: list[SurveyLink] = field(default_factory=list)
    failures: list[TaskFailure] = field(default_factory=list)
    failure_threshold: float = 0.10
    timed_out: bool = False
    state: BatchState = BatchState.SETTLED

    @property
    def succeeded(self) -> int:
        return len(self.created_links)

    @property
    def failed(self) -> int:
        return self.requested - self.succeeded

    @property
    def failure_ratio(self) -> float:
        return (self.failed / self.requested) if self.requested else 0.0

    @property
    def ok(self) -> bool:
        """False when more than ``failure_threshold`` of the batch is missing."""
        return self.failure_ratio <= self.failure_threshold

    @property
    def message(self) -> str:
        msg = f"Saved {self.succeeded} out of {self.requested} links"
        if self.failed:
            msg += f"; {self.failed} failed"
            if not self.ok:
                msg += " (too many failures)"
        if self.timed_out:
            msg += "; batch timed out before all links settled"
        return msg

    def by_type(self) -> dict[str, int]:
        out = {t.value: 0 for t in LinkType}
        for link in self.created_links:
            out[_type_value(link.link_type)] += 1
        return out

    def by_vendor(self) -> dict[str, int]:
        out: dict[str, int] = {}
        for link in self.created_links:
            key = link.vendor_id or ""
            out[key] = out.get(key, 0) + 1
        return out


@dataclass(slots=True)
class _Run:
    ctx: BuildContext
    vendor_codes: dict[str, str]
    # link ids already credited to a task of this run
    claimed: set[str] = field(default_factory=set)


class BatchOrchestrator:
    def __init__(
        self,
        gateway,
        policy: BatchPolicy | None = None,
        uids: UidGenerator | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.policy = policy or BatchPolicy()
        self.uids = uids or UidGenerator()
        self._sleep = sleep
        self.state = BatchState.PLANNING

    @staticmethod
    def expand(plan: Sequence[PlanItem]) -> list[LinkTask]:
        tasks: list[LinkTask] = []
        for item in plan:
            for _ in range(item.quantity):
                tasks.append(LinkTask(index=len(tasks), vendor_id=item.vendor_id, link_type=item.link_type))
        return tasks

    async def generate_batch(
        self,
        plan: Sequence[PlanItem],
        ctx: BuildContext,
        timeout: float | None = _DEFAULT,
    ) -> BatchResult:
        """Create every link of ``plan``; never raises for per-link failures."""
        self.state = BatchState.PLANNING
        tasks = self.expand(plan)
        return await self._run(tasks, ctx, timeout)

    async def save_batch(
        self,
        records: Sequence[LinkRecord],
        ctx: BuildContext,
        timeout: float | None = _DEFAULT,
    ) -> BatchResult:
        """Persist pre-built records; their uids are kept as given."""
        self.state = BatchState.PLANNING
        tasks = [
            LinkTask(
                index=i,
                vendor_id=r.vendor_id,
                link_type=r.link_type,
                uid=r.uid,
                fixed_uid=True,
                record=r,
                # a resubmitted record may already be stored
                ambiguous=True,
            )
            for i, r in enumerate(records)
        ]
        return await self._run(tasks, ctx, timeout)

    async def _run(self, tasks: list[LinkTask], ctx: BuildContext, timeout: float | None) -> BatchResult:
        if timeout is _DEFAULT:
            timeout = self.policy.timeout_seconds
        result = BatchResult(
            batch_id=ctx.batch_id,
            requested=len(tasks),
            failure_threshold=self.policy.failure_threshold,
        )
        if not tasks:
            self.state = result.state = BatchState.SETTLED
            return result

        # Fail the whole call up front if the store is not there at all.
        await self.gateway.ping()

        run = _Run(ctx=ctx, vendor_codes=dict(ctx.vendor_codes))
        queue: asyncio.Queue[LinkTask] = asyncio.Queue()
        for t in tasks:
            queue.put_nowait(t)

        self.state = result.state = BatchState.EXECUTING
        n_workers = min(self.policy.concurrency, len(tasks))
        logger.info(
            "Batch %s: %d links for project %s, %d workers",
            ctx.batch_id, len(tasks), ctx.project_id, n_workers,
        )
        workers = [asyncio.create_task(self._worker(queue, run)) for _ in range(n_workers)]
        done, pending = await asyncio.wait(workers, timeout=timeout)
        if pending:
            result.timed_out = True
            logger.warning("Batch %s timed out after %ss; abandoning in-flight links", ctx.batch_id, timeout)
            for w in pending:
                w.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        for w in done:
            if not w.cancelled() and w.exception() is not None:
                logger.error("Batch %s worker crashed", ctx.batch_id, exc_info=w.exception())

        for t in tasks:
            if t.state == TaskState.SUCCEEDED and t.link is not None:
                result.created_links.append(t.link)
                continue
            if t.state != TaskState.FAILED:
                # never reached a terminal state: timed out (or the worker died)
                note = "not started before batch timeout" if t.state == TaskState.PENDING else (
                    "abandoned in flight at batch timeout; outcome unknown, reconcile by uid"
                )
                t.state = TaskState.FAILED
                t.error = t.error or SurveyLinkError(note)
                result.failures.append(_failure(t, kind="timeout", message=note))
                continue
            result.failures.append(_failure(t))

        self.state = result.state = BatchState.SETTLED
        log = logger.info if result.ok else logger.error
        log(
            "Batch %s settled: %d/%d created, %d failed%s",
            ctx.batch_id, result.succeeded, result.requested, result.failed,
            " (timed out)" if result.timed_out else "",
        )
        return result

    async def _worker(self, queue: asyncio.Queue[LinkTask], run: _Run) -> None:
        while True:
            try:
                task = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await self._execute(task, run)
            finally:
                queue.task_done()

    async def _execute(self, task: LinkTask, run: _Run) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=wait_exponential(
                multiplier=self.policy.backoff_initial_seconds,
                max=self.policy.backoff_max_seconds,
            )
            + wait_random(0, self.policy.backoff_initial_seconds),
            retry=retry_if_exception_type(RETRYABLE),
            before_sleep=lambda state: self._on_retry(task, state),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    task.state = TaskState.IN_FLIGHT
                    task.attempts += 1
                    link = await self._attempt(task, run)
        except SurveyLinkError as err:
            task.state = TaskState.FAILED
            task.error = err
            logger.error(
                "Link %s (vendor=%s type=%s) failed after %d attempt(s): %s",
                task.uid, task.vendor_id, task.link_type.value, task.attempts, err.message,
            )
            return
        except Exception as exc:
            task.state = TaskState.FAILED
            task.error = classify(exc)
            logger.exception(
                "Link %s (vendor=%s type=%s) failed unexpectedly", task.uid, task.vendor_id, task.link_type.value
            )
            return

        run.claimed.add(link.id)
        task.link = link
        task.state = TaskState.SUCCEEDED

    def _on_retry(self, task: LinkTask, state) -> None:
        task.state = TaskState.RETRYING
        # the failed insert may have committed before the error surfaced
        task.ambiguous = True
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "Retrying link %s (attempt %d/%d) in %.2fs: %s",
            task.uid, state.attempt_number, self.policy.max_attempts,
            getattr(state.next_action, "sleep", 0.0), exc,
        )

    async def _attempt(self, task: LinkTask, run: _Run) -> SurveyLink:
        ctx = run.ctx
        while True:
            if task.uid is None:
                task.uid = self._new_uid(task, run)
            record = task.record or build_link_record(
                ctx, vendor_id=task.vendor_id, link_type=task.link_type, uid=task.uid
            )
            try:
                return await self.gateway.create_survey_link(record)
            except ConflictError:
                existing = None
                if task.ambiguous:
                    existing = await self.gateway.get_survey_link_by_uid(task.uid, ctx.project_id)
                if existing is not None and self._is_same_link(existing, task, record, run):
                    task.adopted = True
                    logger.info("Link %s already stored by an earlier attempt; adopting it", task.uid)
                    return existing
                if task.fixed_uid:
                    raise ConflictError(f"uid {task.uid} already exists in project {ctx.project_id}")
                if task.regenerations >= self.policy.max_uid_regenerations:
                    raise ConflictError(f"uid collision persisted after {task.regenerations} regenerations")
                task.regenerations += 1
                task.ambiguous = False
                logger.info("uid collision on %s; regenerating", task.uid)
                task.uid = None

    def _new_uid(self, task: LinkTask, run: _Run) -> str:
        code = run.vendor_codes.get(task.vendor_id or "", "")
        return self.uids.generate(uid_prefix(task.link_type, task.vendor_id, code))

    @staticmethod
    def _is_same_link(existing: SurveyLink, task: LinkTask, record: LinkRecord, run: _Run) -> bool:
        if existing.id in run.claimed:
            return False
        if existing.project_id != record.project_id or existing.vendor_id != task.vendor_id:
            return False
        if _type_value(existing.link_type) != task.link_type.value:
            return False
        meta = parse_metadata(existing.metadata_json)
        if task.fixed_uid:
            return meta.original_url == record.metadata.original_url
        return meta.batch_id == run.ctx.batch_id


def _type_value(link_type) -> str:
    return link_type.value if isinstance(link_type, LinkType) else str(link_type)


def _failure(task: LinkTask, kind: str | None = None, message: str | None = None) -> TaskFailure:
    err = task.error
    return TaskFailure(
        index=task.index,
        uid=task.uid,
        vendor_id=task.vendor_id,
        link_type=task.link_type,
        kind=kind or (err.kind if err else "unknown"),
        message=message or (err.message if err else ""),
        attempts=task.attempts,
    )
