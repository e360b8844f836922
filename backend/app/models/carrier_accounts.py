from sqlalchemy import Column, DateTime, Text
from sqlalchemy.sql import func
from app.core.db import Base

class CarrierAccount(Base):
    __tablename__ = "carrier_accounts"

    account_id = Column(Text, primary_key=True)
    access_token = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
