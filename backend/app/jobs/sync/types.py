from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional

from app.jobs.sync.utils.event_key import make_event_key

ORIGIN_HISTORY = "history"
ORIGIN_TRACKING = "tracking"
ORIGIN_SNAPSHOT = "snapshot-synthesized"
ORIGIN_SNAPSHOT_FALLBACK = "snapshot-terminal-fallback"

# Seconds of timestamp resolution each source reports; keys truncate to it.
ORIGIN_RESOLUTION_SECONDS = {
    ORIGIN_HISTORY: 1,
    ORIGIN_TRACKING: 60,
    ORIGIN_SNAPSHOT: 1,
    ORIGIN_SNAPSHOT_FALLBACK: 1,
}


@dataclass(frozen=True)
class Event:
    occurred_at: datetime            # tz-aware UTC
    status: str
    detail: str
    origin: str
    remote_id: Optional[str] = None  # stable vendor event id, when the feed has one

    # Display-only; never part of merge or priority logic.
    note: Optional[str] = None
    geo: Optional[dict[str, Any]] = None
    meta: dict[str, Any] = field(default_factory=dict)

    suppressed: bool = False         # kept for audit, ignored by the resolver

    @property
    def dedupe_key(self) -> str:
        return make_event_key(
            origin=self.origin,
            occurred_at=self.occurred_at,
            status=self.status,
            detail=self.detail,
            remote_id=self.remote_id,
            resolution_seconds=ORIGIN_RESOLUTION_SECONDS.get(self.origin, 1),
        )

    def as_suppressed(self) -> "Event":
        return replace(self, suppressed=True)


@dataclass(frozen=True)
class Snapshot:
    shipment_id: Optional[str]
    status: str
    detail: str
    milestones: dict[str, datetime]  # milestone name -> timestamp, e.g. "shipped_at"
    last_updated: Optional[datetime] = None
    created_at: Optional[datetime] = None
    order_id: Optional[str] = None


@dataclass(frozen=True)
class CanonicalState:
    status: str
    detail: str
    at: datetime


@dataclass
class TrackingRecord:
    id: uuid.UUID
    account_id: Optional[str]
    external_id: Optional[str]
    order_id: Optional[str] = None
    canonical: Optional[CanonicalState] = None
    confirmed_flags: dict[str, bool] = field(default_factory=dict)
    last_synced_at: Optional[datetime] = None
    history: list[Event] = field(default_factory=list)


@dataclass(frozen=True)
class Resolution:
    state: Optional[CanonicalState]
    flags: dict[str, bool]
    winner: Optional[Event] = None   # None when the previous state was kept


class RecordState(str, enum.Enum):
    SELECTED = "selected"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    MERGING = "merging"
    RESOLVING = "resolving"
    PERSISTED = "persisted"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class RecordOutcome:
    record_id: uuid.UUID
    state: RecordState
    reason: Optional[str] = None
    events_added: int = 0
    noise_suppressed: bool = False
    id_corrected: bool = False
