import logging
from datetime import datetime
from typing import Optional, Sequence

from app.jobs.sync.config import ReconcileTables
from app.jobs.sync.synthesize import milestone_for_status
from app.jobs.sync.types import CanonicalState, Event, Resolution, Snapshot
from app.scoring.v1.event_priority import pick_winner

logger = logging.getLogger(__name__)

ORIGIN_SNAPSHOT_CURRENT = "snapshot"


def snapshot_candidate(snapshot: Optional[Snapshot]) -> Optional[Event]:
    """
    The snapshot's current status as a resolution candidate. Not part of history.
    Undated snapshots do not compete.
    """
    if snapshot is None or not snapshot.status:
        return None
    at = milestone_for_status(snapshot) or snapshot.last_updated
    if at is None:
        return None
    return Event(occurred_at=at, status=snapshot.status, detail=snapshot.detail, origin=ORIGIN_SNAPSHOT_CURRENT)


def _echoes_suppressed(candidate: Event, history: Sequence[Event]) -> bool:
    """The snapshot is still reporting an event that history holds back."""
    return any(
        e.suppressed
        and e.status == candidate.status
        and e.detail == candidate.detail
        and e.occurred_at >= candidate.occurred_at
        for e in history
    )


def _reassert_sticky(
    history: Sequence[Event],
    previous: Optional[CanonicalState],
    flags: dict[str, bool],
    winner: Event,
    tables: ReconcileTables,
) -> Optional[CanonicalState]:
    for detail in sorted(tables.sticky_details):
        if not flags.get(detail):
            continue
        confirmed = [e for e in history if e.detail == detail and not e.suppressed]
        if confirmed:
            ev = confirmed[-1]
            return CanonicalState(status=ev.status, detail=ev.detail, at=ev.occurred_at)
        if previous is not None and previous.detail == detail:
            return previous
        return CanonicalState(status="not_delivered", detail=detail, at=winner.occurred_at)
    return None


def resolve_canonical(
    history: Sequence[Event],
    snapshot: Optional[Snapshot],
    previous: Optional[CanonicalState],
    flags: Optional[dict[str, bool]],
    *,
    now: datetime,
    tables: ReconcileTables,
) -> Resolution:
    flags = dict(flags or {})

    candidates = [e for e in history if not e.suppressed]
    snap = snapshot_candidate(snapshot)
    if snap is not None and not _echoes_suppressed(snap, history):
        candidates.append(snap)

    scored = pick_winner(candidates, now=now, tables=tables)
    if scored is None:
        return Resolution(state=previous, flags=flags)

    winner = scored.event
    state = CanonicalState(status=winner.status, detail=winner.detail, at=winner.occurred_at)

    if previous is not None and tables.is_terminal(previous.status) and not tables.is_terminal(state.status):
        logger.info(
            "refusing regression %s -> %s/%s (origin=%s)",
            previous.status,
            state.status,
            state.detail,
            winner.origin,
        )
        return Resolution(state=previous, flags=flags)

    if state.detail == tables.generic_reset_detail and not tables.is_terminal(state.status):
        sticky = _reassert_sticky(history, previous, flags, winner, tables)
        if sticky is not None:
            logger.info("generic reset over confirmed %s; keeping the incident", sticky.detail)
            state = sticky

    if tables.is_terminal(state.status):
        flags = {}
    elif state.detail in tables.sticky_details:
        flags[state.detail] = True

    return Resolution(state=state, flags=flags, winner=winner)
