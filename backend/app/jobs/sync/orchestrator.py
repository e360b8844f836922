import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

from app.jobs.sync.pipeline import RecordPipeline, SyncContext
from app.jobs.sync.storage import PendingFilters
from app.jobs.sync.types import RecordOutcome, RecordState, TrackingRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunSummary:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped_no_credential: int = 0
    skipped_no_remote_id: int = 0
    noise_suppressed: int = 0
    ids_corrected: int = 0
    not_started: int = 0   # left in the queue by cancellation or deadline

    def as_dict(self) -> dict:
        return asdict(self)


class _Counters:
    def __init__(self):
        self._lock = threading.Lock()
        self._counts = {name: 0 for name in RunSummary.__dataclass_fields__}

    def incr(self, name: str, n: int = 1) -> None:
        with self._lock:
            self._counts[name] += n

    def get(self, name: str) -> int:
        with self._lock:
            return self._counts[name]

    def summary(self) -> RunSummary:
        with self._lock:
            return RunSummary(**self._counts)


class SyncOrchestrator:
    """
    One scheduled pass over the records that need a refresh.

    Records run independently on a bounded thread pool. The rate limiter inside
    the context is shared by every worker, so the carrier sees one request
    stream per process regardless of pool size. Cancellation and the deadline
    are checked before each record starts, never mid-record.
    """

    def __init__(self, ctx: SyncContext, *, progress_every: int = 50):
        self.ctx = ctx
        self.pipeline = RecordPipeline(ctx)
        self.progress_every = progress_every

    def select(
        self,
        limit: int,
        *,
        account_id: Optional[str] = None,
        stale_minutes: Optional[int] = None,
        offset: int = 0,
    ) -> list[TrackingRecord]:
        now = self.ctx.clock()
        tables = self.ctx.tables
        filters = PendingFilters(
            terminal_statuses=tables.terminal_statuses,
            terminal_since=now - timedelta(hours=tables.terminal_grace_hours),
            stale_before=(now - timedelta(minutes=stale_minutes)) if stale_minutes else None,
            account_id=account_id,
            offset=offset,
        )
        records = self.ctx.storage.select_pending(limit, filters)

        # a record must never be processed twice in one pass
        unique: dict = {}
        for r in records:
            unique.setdefault(r.id, r)
        return list(unique.values())

    def run(
        self,
        *,
        limit: int,
        workers: int = 1,
        account_id: Optional[str] = None,
        stale_minutes: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
        deadline: Optional[datetime] = None,
    ) -> RunSummary:
        records = self.select(limit, account_id=account_id, stale_minutes=stale_minutes)
        counters = _Counters()
        total = len(records)

        logger.info(
            "sync start selected=%d workers=%d delay=%.2fs account=%s stale_minutes=%s deadline=%s",
            total,
            workers,
            self.ctx.limiter.min_interval,
            account_id or "*",
            stale_minutes,
            deadline.isoformat() if deadline else None,
        )

        if not records:
            return counters.summary()

        with ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="sync") as pool:
            futures = {pool.submit(self._work, r, counters, cancel, deadline): r for r in records}
            done = 0
            for fut in as_completed(futures):
                done += 1
                record = futures[fut]
                try:
                    fut.result()
                except Exception as e:
                    counters.incr("failed")
                    logger.exception("record %s worker crashed: %r", record.id, e)

                if self.progress_every and (done == 1 or done % self.progress_every == 0 or done == total):
                    s = counters.summary()
                    logger.info(
                        "sync progress %d/%d (ok=%d failed=%d skipped=%d)",
                        done,
                        total,
                        s.succeeded,
                        s.failed,
                        s.skipped_no_credential + s.skipped_no_remote_id,
                    )

        summary = counters.summary()
        logger.info("sync done %s", summary.as_dict())
        return summary

    def _should_stop(self, cancel: Optional[threading.Event], deadline: Optional[datetime]) -> bool:
        if cancel is not None and cancel.is_set():
            return True
        return deadline is not None and self.ctx.clock() >= deadline

    def _work(
        self,
        record: TrackingRecord,
        counters: _Counters,
        cancel: Optional[threading.Event],
        deadline: Optional[datetime],
    ) -> Optional[RecordOutcome]:
        if self._should_stop(cancel, deadline):
            counters.incr("not_started")
            return None

        counters.incr("attempted")
        outcome = self.pipeline.run(record)
        self._count(outcome, counters)
        return outcome

    @staticmethod
    def _count(outcome: RecordOutcome, counters: _Counters) -> None:
        if outcome.state == RecordState.PERSISTED:
            counters.incr("succeeded")
        elif outcome.state == RecordState.SKIPPED:
            if outcome.reason == "no_credential":
                counters.incr("skipped_no_credential")
            else:
                counters.incr("skipped_no_remote_id")
        else:
            counters.incr("failed")

        if outcome.noise_suppressed:
            counters.incr("noise_suppressed")
        if outcome.id_corrected:
            counters.incr("ids_corrected")
