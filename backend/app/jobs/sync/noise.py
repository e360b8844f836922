"""
Bulk-reset noise guard.

The carrier runs a nightly job that stamps many open shipments with a generic
"rescheduled" substatus, overwriting the specific incident a driver recorded a
few hours earlier. We cannot see the job itself, so it is detected by proxy:
the generic code arriving inside a fixed local-time window while the shipment
holds a fresh, specific incident.

This is a time-of-day heuristic. A genuine late-evening reschedule inside the
window will be held back as well; it is still recorded in history.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Sequence

from app.jobs.sync.config import ReconcileTables
from app.jobs.sync.types import CanonicalState, Event
from app.jobs.sync.utils.time import in_daily_window

logger = logging.getLogger(__name__)


def in_reset_window(now: datetime, tables: ReconcileTables) -> bool:
    return in_daily_window(now, tables.noise_window_start, tables.noise_window_end, tables.noise_timezone)


def should_suppress(
    candidate: Optional[CanonicalState],
    current: Optional[CanonicalState],
    *,
    now: datetime,
    tables: ReconcileTables,
) -> bool:
    if candidate is None or current is None:
        return False
    if candidate.detail != tables.generic_reset_detail:
        return False
    if not in_reset_window(now, tables):
        return False
    if current.detail not in tables.noise_incident_details:
        return False
    return now - current.at <= timedelta(hours=tables.noise_lookback_hours)


def mark_suppressed(history: Sequence[Event], *, now: datetime, tables: ReconcileTables) -> tuple[list[Event], int]:
    """
    Flag recent generic-reset events so they stay in history but never win resolution.
    Settled history (older than noise_max_exclusion_age_hours) is left alone.
    """
    # Permanent: a flagged reset is never promoted later, even outside the window.
    # Only a newer event can replace the protected incident.
    cutoff = now - timedelta(hours=tables.noise_max_exclusion_age_hours)
    out: list[Event] = []
    marked = 0
    for ev in history:
        if (
            not ev.suppressed
            and ev.detail == tables.generic_reset_detail
            and not tables.is_terminal(ev.status)
            and ev.occurred_at >= cutoff
        ):
            out.append(ev.as_suppressed())
            marked += 1
        else:
            out.append(ev)
    return out, marked
