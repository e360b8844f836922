import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from app.jobs.sync.config import ReconcileTables
from app.jobs.sync.errors import (
    MalformedPayload,
    NoCredential,
    NoRemoteIdentifier,
    PersistenceError,
    RemoteUnavailable,
)
from app.jobs.sync.merge import merge_history
from app.jobs.sync.noise import mark_suppressed, should_suppress
from app.jobs.sync.normalize import normalize_checkpoints, normalize_history, normalize_snapshot
from app.jobs.sync.rate_limit import RateLimiter
from app.jobs.sync.resolve import resolve_canonical
from app.jobs.sync.sources.base import CarrierClient, Credential, TokenProvider
from app.jobs.sync.storage import Storage
from app.jobs.sync.synthesize import drop_repeated_fallback, synthesize_from_snapshot
from app.jobs.sync.types import Event, RecordOutcome, RecordState, Resolution, Snapshot, TrackingRecord
from app.jobs.sync.updater import persist_reconciliation
from app.jobs.sync.utils.time import utcnow

logger = logging.getLogger(__name__)

# Builds a client for one credential; the client paces itself on the shared limiter.
ClientFactory = Callable[[Credential, RateLimiter], CarrierClient]


@dataclass
class SyncContext:
    storage: Storage
    tokens: TokenProvider
    client_factory: ClientFactory
    tables: ReconcileTables
    limiter: RateLimiter
    clock: Callable[[], datetime] = utcnow


class _Trace:
    def __init__(self, record: TrackingRecord):
        self.record = record
        self.state = RecordState.SELECTED
        self.id_corrected = False
        self.noise_suppressed = False
        self.events_added = 0

    def advance(self, state: RecordState) -> None:
        logger.debug("record %s %s -> %s", self.record.id, self.state.value, state.value)
        self.state = state

    def outcome(self, state: RecordState, reason: Optional[str] = None) -> RecordOutcome:
        return RecordOutcome(
            record_id=self.record.id,
            state=state,
            reason=reason,
            events_added=self.events_added,
            noise_suppressed=self.noise_suppressed,
            id_corrected=self.id_corrected,
        )


class RecordPipeline:
    """
    Reconciles one tracking record end to end:

      Selected -> Fetching -> Normalizing -> Merging -> Resolving -> Persisted
                  +-> Skipped (no credential / nothing to query)
                  +-> Failed  (remote, persistence, or unexpected error)

    run() never raises; every outcome is returned so one record cannot abort a batch.
    """

    def __init__(self, ctx: SyncContext):
        self.ctx = ctx

    def run(self, record: TrackingRecord) -> RecordOutcome:
        trace = _Trace(record)
        ref = f"{record.id} ext={record.external_id}"
        try:
            self._reconcile(record, trace)
            return trace.outcome(RecordState.PERSISTED)

        except NoCredential as e:
            logger.info("record %s skipped: no credential (%s)", ref, e)
            return trace.outcome(RecordState.SKIPPED, "no_credential")

        except NoRemoteIdentifier as e:
            logger.info("record %s skipped: %s", ref, e)
            return trace.outcome(RecordState.SKIPPED, "no_remote_id")

        except RemoteUnavailable as e:
            logger.warning("record %s failed during %s: remote unavailable status=%s %s",
                           ref, trace.state.value, e.status_code, e)
            return trace.outcome(RecordState.FAILED, "remote_unavailable")

        except PersistenceError as e:
            logger.error("record %s failed: persistence error %s", ref, e)
            return trace.outcome(RecordState.FAILED, "persistence_error")

        except Exception as e:
            logger.exception("record %s failed during %s: %r", ref, trace.state.value, e)
            return trace.outcome(RecordState.FAILED, "unexpected_error")

    # -- stages --------------------------------------------------------------------------

    def _reconcile(self, record: TrackingRecord, trace: _Trace) -> None:
        ctx = self.ctx
        tables = ctx.tables
        ref = str(record.id)

        trace.advance(RecordState.FETCHING)
        if not record.external_id and not record.order_id:
            raise NoRemoteIdentifier("record has neither external_id nor order_id")

        credential = ctx.tokens.get_credential(record.account_id)
        client = ctx.client_factory(credential, ctx.limiter)

        external_id, snapshot = self._fetch_snapshot(record, client, trace)
        raw_history = client.get_history(external_id)

        trace.advance(RecordState.NORMALIZING)
        incoming = normalize_history(raw_history, tables, record_ref=ref)
        if not incoming:
            incoming = synthesize_from_snapshot(snapshot, clock=ctx.clock)
            if incoming:
                logger.info("record %s history empty; synthesized %d events from snapshot", ref, len(incoming))

        trace.advance(RecordState.MERGING)
        existing = ctx.storage.load_history(record.id)
        merged = merge_history(existing, drop_repeated_fallback(existing, incoming))

        if self._needs_checkpoints(record, merged, snapshot):
            merged = merge_history(merged, self._fetch_checkpoints(client, external_id, ref))

        trace.events_added = len(merged) - len(existing)

        trace.advance(RecordState.RESOLVING)
        now = ctx.clock()
        resolution = resolve_canonical(
            merged,
            snapshot,
            record.canonical,
            record.confirmed_flags,
            now=now,
            tables=tables,
        )

        if should_suppress(resolution.state, record.canonical, now=now, tables=tables):
            merged, marked = mark_suppressed(merged, now=now, tables=tables)
            logger.info(
                "record %s generic reset held back inside noise window; keeping %s/%s (events flagged=%d)",
                ref,
                record.canonical.status,
                record.canonical.detail,
                marked,
            )
            resolution = Resolution(state=record.canonical, flags=dict(record.confirmed_flags))
            trace.noise_suppressed = True

        persist_reconciliation(
            ctx.storage,
            record.id,
            merged,
            resolution.state,
            resolution.flags,
            synced_at=now,
        )
        trace.advance(RecordState.PERSISTED)

    def _parse_snapshot(self, payload: Any, ref: str) -> Optional[Snapshot]:
        try:
            return normalize_snapshot(payload)
        except MalformedPayload as e:
            logger.warning("record %s snapshot malformed, continuing without it: %s", ref, e)
            return None

    def _correct_id(self, record: TrackingRecord, old: Optional[str], new: str, why: str, trace: _Trace) -> None:
        changed = self.ctx.storage.correct_external_id(record.id, new)
        logger.warning("record %s external_id corrected %s -> %s (%s, changed=%s)", record.id, old, new, why, changed)
        record.external_id = new
        trace.id_corrected = True

    def _fetch_snapshot(
        self, record: TrackingRecord, client: CarrierClient, trace: _Trace
    ) -> tuple[str, Optional[Snapshot]]:
        ref = str(record.id)
        external_id = record.external_id
        resolved_from_order = False

        if not external_id:
            resolved = client.resolve_shipment_id_from_order(record.order_id)
            if not resolved:
                raise NoRemoteIdentifier(f"order {record.order_id} has no shipment")
            self._correct_id(record, None, resolved, "resolved from order", trace)
            external_id = resolved
            resolved_from_order = True

        snapshot = self._parse_snapshot(client.get_snapshot(external_id), ref)

        if snapshot is None and record.order_id and not resolved_from_order:
            resolved = client.resolve_shipment_id_from_order(record.order_id)
            if resolved and resolved != external_id:
                self._correct_id(record, external_id, resolved, "snapshot not found; resolved from order", trace)
                external_id = resolved
                snapshot = self._parse_snapshot(client.get_snapshot(external_id), ref)

        elif snapshot is not None and snapshot.shipment_id and snapshot.shipment_id != external_id:
            self._correct_id(record, external_id, snapshot.shipment_id, "snapshot id differs", trace)
            external_id = snapshot.shipment_id
            snapshot = self._parse_snapshot(client.get_snapshot(external_id), ref) or snapshot

        return external_id, snapshot

    def _needs_checkpoints(self, record: TrackingRecord, merged: list[Event], snapshot: Optional[Snapshot]) -> bool:
        tables = self.ctx.tables
        if record.canonical is not None and tables.is_terminal(record.canonical.status):
            return False
        if snapshot is not None and tables.is_terminal(snapshot.status):
            return False
        if any(tables.is_terminal(e.status) for e in merged):
            return False
        if any(e.detail in tables.transit_milestone_details for e in merged):
            return False
        # Only once the parcel is in carrier hands.
        shipped = any(e.status == "shipped" for e in merged) or (snapshot is not None and snapshot.status == "shipped")
        return shipped

    def _fetch_checkpoints(self, client: CarrierClient, external_id: str, ref: str) -> list[Event]:
        try:
            raw = client.get_checkpoints(external_id)
        except RemoteUnavailable as e:
            logger.warning("record %s checkpoints unavailable, continuing: %s", ref, e)
            return []
        if raw is None:
            return []
        return normalize_checkpoints(raw, self.ctx.tables, record_ref=ref)
