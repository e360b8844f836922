from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from app.jobs.sync.config import ReconcileTables
from app.jobs.sync.types import Event


@dataclass(frozen=True)
class ScoredEvent:
    event: Event
    score: int
    tier: str   # "terminal" / "specific" / "generic"


def is_recent(event: Event, *, now: datetime, hours: float) -> bool:
    """
    Future-dated events (clock skew on the vendor side) count as age 0.
    """
    age = now - event.occurred_at
    if age < timedelta(0):
        return True
    return age <= timedelta(hours=hours)


def score_event(event: Event, *, now: datetime, tables: ReconcileTables) -> ScoredEvent:
    """
    Tiered priority:
      terminal statuses  -> terminal_score (always wins, no recency term)
      specific details   -> specific_score (+ recency_bonus within recency_bonus_hours)
      anything else      -> default_score
    """
    if tables.is_terminal(event.status):
        return ScoredEvent(event=event, score=tables.terminal_score, tier="terminal")

    if event.detail in tables.specific_details:
        score = tables.specific_score
        if is_recent(event, now=now, hours=tables.recency_bonus_hours):
            score += tables.recency_bonus
        return ScoredEvent(event=event, score=score, tier="specific")

    return ScoredEvent(event=event, score=tables.default_score, tier="generic")


def pick_winner(events: Iterable[Event], *, now: datetime, tables: ReconcileTables) -> Optional[ScoredEvent]:
    """
    Highest score wins; equal scores fall back to the most recent occurred_at,
    then to the later position in the input (stable for identical timestamps).
    """
    best: Optional[ScoredEvent] = None
    best_rank: Optional[tuple] = None

    for idx, ev in enumerate(events):
        scored = score_event(ev, now=now, tables=tables)
        rank = (scored.score, ev.occurred_at, idx)
        if best_rank is None or rank > best_rank:
            best, best_rank = scored, rank

    return best
