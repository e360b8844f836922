from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.core.deps import get_db
from app.api.v1.schemas.tracking import TrackingEvent, TrackingView
from app.jobs.sync.config import ReconcileTables
from app.jobs.sync.storage import event_from_row, record_from_row
from app.models.shipment_events import ShipmentEvent
from app.models.shipments import Shipment

router = APIRouter(prefix="/v1", tags=["tracking"])

_TABLES = ReconcileTables()


def display_state(status: Optional[str], detail: Optional[str]) -> str:
    """Collapse canonical status/detail into the handful of labels the public page shows."""
    status = status or ""
    detail = detail or ""
    if status == "delivered":
        return "delivered"
    if status == "cancelled":
        return "cancelled"
    if detail == "receiver_absent":
        return "receiver_absent"
    if detail == _TABLES.generic_reset_detail or detail == "buyer_rescheduled":
        return "rescheduled"
    if status == "not_delivered":
        return "not_delivered"
    if status == "shipped":
        return "in_transit"
    return "pending"


@router.get("/tracking/{external_id}", response_model=TrackingView)
def get_tracking(external_id: str, db: Session = Depends(get_db)):
    # Links sent before an id correction may still carry the order id.
    row = db.execute(
        select(Shipment)
        .where(or_(Shipment.external_id == external_id, Shipment.order_id == external_id))
        .order_by((Shipment.external_id == external_id).desc())
        .limit(1)
    ).scalars().first()
    if row is None:
        raise HTTPException(status_code=404, detail="shipment not found")

    record = record_from_row(row)
    events = db.execute(
        select(ShipmentEvent)
        .where(ShipmentEvent.shipment_id == row.id, ShipmentEvent.suppressed.is_(False))
        .order_by(ShipmentEvent.position.asc(), ShipmentEvent.occurred_at.asc())
    ).scalars().all()

    canonical = record.canonical
    return TrackingView(
        external_id=record.external_id,
        order_id=record.order_id,
        status=canonical.status if canonical else None,
        detail=canonical.detail if canonical else None,
        status_at=canonical.at if canonical else None,
        display_state=display_state(
            canonical.status if canonical else None,
            canonical.detail if canonical else None,
        ),
        last_synced_at=record.last_synced_at,
        history=[
            TrackingEvent(
                occurred_at=ev.occurred_at,
                status=ev.status,
                detail=ev.detail,
                origin=ev.origin,
                note=ev.note,
                geo=ev.geo,
            )
            for ev in map(event_from_row, events)
        ],
    )
