import logging
import uuid
from datetime import datetime
from typing import Optional, Sequence

from app.jobs.sync.storage import Storage
from app.jobs.sync.types import CanonicalState, Event

logger = logging.getLogger(__name__)


def persist_reconciliation(
    storage: Storage,
    record_id: uuid.UUID,
    history: Sequence[Event],
    canonical: Optional[CanonicalState],
    flags: dict[str, bool],
    *,
    synced_at: datetime,
) -> None:
    """Single atomic write of history + canonical state + last_synced_at."""
    storage.save_reconciliation(record_id, list(history), canonical, dict(flags), synced_at)
    logger.debug(
        "record %s persisted events=%d canonical=%s/%s",
        record_id,
        len(history),
        canonical.status if canonical else None,
        canonical.detail if canonical else None,
    )
