from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

DisplayState = Literal[
    "delivered",
    "cancelled",
    "receiver_absent",
    "not_delivered",
    "in_transit",
    "rescheduled",
    "pending",
]


class TrackingEvent(BaseModel):
    occurred_at: datetime
    status: str
    detail: str = ""
    origin: str
    note: Optional[str] = None
    geo: Optional[dict[str, Any]] = None


class TrackingView(BaseModel):
    external_id: Optional[str]
    order_id: Optional[str] = None

    status: Optional[str] = Field(None, description="Canonical status, null until the first sync")
    detail: Optional[str] = None
    status_at: Optional[datetime] = None
    display_state: DisplayState

    last_synced_at: Optional[datetime] = None
    history: list[TrackingEvent]
