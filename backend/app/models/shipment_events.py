import uuid
from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from app.core.db import Base

class ShipmentEvent(Base):
    __tablename__ = "shipment_events"
    __table_args__ = (UniqueConstraint("shipment_id", "dedupe_key", name="uq_shipment_events_dedupe"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shipment_id = Column(Uuid(as_uuid=True), ForeignKey("shipments.id"), nullable=False, index=True)

    position = Column(Integer, nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(Text, nullable=False)
    detail = Column(Text, nullable=False, default="")
    origin = Column(Text, nullable=False)
    remote_id = Column(Text, nullable=True)
    dedupe_key = Column(Text, nullable=False)

    note = Column(Text, nullable=True)
    geo = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=True)
    meta = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)
    suppressed = Column(Boolean, nullable=False, default=False)

    recorded_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
