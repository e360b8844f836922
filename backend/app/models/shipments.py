import uuid
from sqlalchemy import JSON, Column, DateTime, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from app.core.db import Base

class Shipment(Base):
    __tablename__ = "shipments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    account_id = Column(Text, nullable=True, index=True)   # seller account holding the carrier credential
    external_id = Column(Text, nullable=True, index=True)  # carrier-side shipment id
    order_id = Column(Text, nullable=True, index=True)

    canonical_status = Column(Text, nullable=True, index=True)
    canonical_detail = Column(Text, nullable=True)
    canonical_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_flags = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)

    last_synced_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
