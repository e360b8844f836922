import hashlib
from datetime import datetime
from typing import Optional


def truncate_ts(ts: datetime, resolution_seconds: int) -> int:
    epoch = int(ts.timestamp())
    if resolution_seconds <= 1:
        return epoch
    return epoch - (epoch % resolution_seconds)


def make_event_key(
    *,
    origin: str,
    occurred_at: datetime,
    status: str,
    detail: str,
    remote_id: Optional[str],
    resolution_seconds: int = 1,
) -> str:
    if remote_id:
        raw = f"{origin}|id:{remote_id}"
    else:
        raw = f"{origin}|{truncate_ts(occurred_at, resolution_seconds)}|{status}|{detail}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()
