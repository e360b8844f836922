import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Column, DateTime, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Session
from sqlalchemy.sql import func
from app.core.db import Base

class JobRun(Base):
    """One row per CLI invocation: running -> success / cancelled / fail, summary in meta."""

    __tablename__ = "job_runs"

    run_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_name = Column(Text, nullable=False, index=True)
    started_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(Text, nullable=False, default="running")
    meta = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)

    @classmethod
    def start(cls, db: Session, job_name: str, **meta: Any) -> uuid.UUID:
        run_id = uuid.uuid4()
        db.add(cls(run_id=run_id, job_name=job_name, status="running", meta=meta))
        db.commit()
        return run_id

    @classmethod
    def finish(cls, db: Session, run_id: uuid.UUID, status: str, **meta: Any) -> None:
        # meta is reassigned, not mutated, so the JSON column is flagged dirty
        job = db.get(cls, run_id)
        job.status = status
        job.ended_at = datetime.now(timezone.utc)
        job.meta = {**(job.meta or {}), **meta}
        db.commit()
