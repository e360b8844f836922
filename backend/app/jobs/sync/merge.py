from typing import Iterable

from app.jobs.sync.types import Event


def merge_history(existing: Iterable[Event], incoming: Iterable[Event]) -> list[Event]:
    """
    Append incoming events whose dedupe key is not already known, then stable-sort
    by occurred_at. Existing events win over incoming ones with the same key, so
    flags recorded on stored history survive re-fetches.
    """
    out = list(existing)
    seen = {e.dedupe_key for e in out}
    for ev in incoming:
        key = ev.dedupe_key
        if key in seen:
            continue
        seen.add(key)
        out.append(ev)
    out.sort(key=lambda e: e.occurred_at)
    return out
