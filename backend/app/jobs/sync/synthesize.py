import logging
from datetime import datetime
from typing import Callable, Optional, Sequence

from app.jobs.sync.types import ORIGIN_SNAPSHOT, ORIGIN_SNAPSHOT_FALLBACK, Event, Snapshot
from app.jobs.sync.utils.time import utcnow

logger = logging.getLogger(__name__)

# Main line first, then the side branches. (milestone, status, detail)
MILESTONES: tuple[tuple[str, str, str], ...] = (
    ("created_at", "pending", ""),
    ("ready_to_ship_at", "ready_to_ship", ""),
    ("printed_at", "ready_to_ship", "printed"),
    ("handling_at", "handling", ""),
    ("shipped_at", "shipped", ""),
    ("out_for_delivery_at", "shipped", "out_for_delivery"),
    ("delivered_at", "delivered", ""),
    ("not_delivered_at", "not_delivered", ""),
    ("cancelled_at", "cancelled", ""),
)


def milestone_for_status(snapshot: Snapshot) -> Optional[datetime]:
    """Latest milestone timestamp whose status matches the snapshot's current status."""
    best = None
    for name, status, _ in MILESTONES:
        ts = snapshot.milestones.get(name)
        if ts is not None and status == snapshot.status and (best is None or ts >= best):
            best = ts
    return best


def synthesize_from_snapshot(
    snapshot: Optional[Snapshot],
    *,
    clock: Callable[[], datetime] = utcnow,
) -> list[Event]:
    """
    Best-effort history for a shipment whose history feed returned nothing usable.
    """
    if snapshot is None:
        return []

    drafts: list[tuple[datetime, str, str]] = []
    for name, status, detail in MILESTONES:
        ts = snapshot.milestones.get(name)
        if ts is not None:
            drafts.append((ts, status, detail))

    if drafts:
        detail_known = any(d == snapshot.detail for _, _, d in drafts)
        if snapshot.detail and not detail_known:
            matching = [i for i, (_, s, _) in enumerate(drafts) if s == snapshot.status]
            if matching:
                idx = max(matching, key=lambda i: drafts[i][0])
                ts, status, _ = drafts[idx]
                drafts[idx] = (ts, status, snapshot.detail)

        return [
            Event(occurred_at=ts, status=status, detail=detail, origin=ORIGIN_SNAPSHOT)
            for ts, status, detail in drafts
        ]

    if not snapshot.status:
        return []

    at = snapshot.milestones.get("delivered_at") or snapshot.last_updated or snapshot.created_at
    if at is None:
        at = clock()
        logger.info("snapshot %s has no dates at all; fallback event dated now", snapshot.shipment_id)

    return [
        Event(
            occurred_at=at,
            status=snapshot.status,
            detail=snapshot.detail,
            origin=ORIGIN_SNAPSHOT_FALLBACK,
        )
    ]


def drop_repeated_fallback(existing: Sequence[Event], incoming: Sequence[Event]) -> list[Event]:
    """
    Fallback events are dated from whatever the snapshot has (or now), so the date
    drifts between runs. Once history holds a fallback for a status/detail, later
    ones for the same pair are dropped.
    """
    known = {(e.status, e.detail) for e in existing if e.origin == ORIGIN_SNAPSHOT_FALLBACK}
    return [
        e for e in incoming
        if not (e.origin == ORIGIN_SNAPSHOT_FALLBACK and (e.status, e.detail) in known)
    ]
