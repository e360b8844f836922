import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.jobs.sync.errors import PersistenceError
from app.jobs.sync.types import CanonicalState, Event, TrackingRecord
from app.jobs.sync.utils.time import as_utc
from app.models.shipment_events import ShipmentEvent
from app.models.shipments import Shipment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingFilters:
    terminal_statuses: frozenset[str]
    terminal_since: Optional[datetime] = None   # terminal states newer than this are re-checked
    stale_before: Optional[datetime] = None     # only records not synced since
    account_id: Optional[str] = None
    offset: int = 0


class Storage(ABC):
    @abstractmethod
    def select_pending(self, limit: int, filters: PendingFilters) -> list[TrackingRecord]:
        raise NotImplementedError

    @abstractmethod
    def load_history(self, record_id: uuid.UUID) -> list[Event]:
        raise NotImplementedError

    @abstractmethod
    def save_reconciliation(
        self,
        record_id: uuid.UUID,
        history: list[Event],
        canonical: Optional[CanonicalState],
        flags: dict[str, bool],
        synced_at: datetime,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def correct_external_id(self, record_id: uuid.UUID, external_id: str) -> bool:
        """Returns True if the stored id changed."""
        raise NotImplementedError


def _insert_for(db: Session):
    if db.get_bind().dialect.name == "sqlite":
        return sqlite.insert
    return postgresql.insert


def record_from_row(row: Shipment) -> TrackingRecord:
    canonical = None
    if row.canonical_status and row.canonical_at is not None:
        canonical = CanonicalState(
            status=row.canonical_status,
            detail=row.canonical_detail or "",
            at=as_utc(row.canonical_at),
        )
    return TrackingRecord(
        id=row.id,
        account_id=row.account_id,
        external_id=row.external_id,
        order_id=row.order_id,
        canonical=canonical,
        confirmed_flags=dict(row.confirmed_flags or {}),
        last_synced_at=as_utc(row.last_synced_at),
    )


def event_from_row(row: ShipmentEvent) -> Event:
    return Event(
        occurred_at=as_utc(row.occurred_at),
        status=row.status,
        detail=row.detail or "",
        origin=row.origin,
        remote_id=row.remote_id,
        note=row.note,
        geo=row.geo,
        meta=dict(row.meta or {}),
        suppressed=bool(row.suppressed),
    )


class SqlStorage(Storage):
    """
    SQLAlchemy-backed storage. Every call opens its own session, so one instance
    can be shared across worker threads.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def select_pending(self, limit: int, filters: PendingFilters) -> list[TrackingRecord]:
        terminal = tuple(sorted(filters.terminal_statuses))

        needs_sync = [
            Shipment.canonical_status.is_(None),
            Shipment.canonical_status.notin_(terminal),
        ]
        if filters.terminal_since is not None:
            terminal_event_recorded = (
                select(ShipmentEvent.id)
                .where(
                    ShipmentEvent.shipment_id == Shipment.id,
                    ShipmentEvent.status == Shipment.canonical_status,
                )
                .exists()
            )
            needs_sync.append(
                and_(
                    Shipment.canonical_status.in_(terminal),
                    Shipment.canonical_at >= filters.terminal_since,
                    ~terminal_event_recorded,
                )
            )

        q = (
            select(Shipment)
            .where(or_(Shipment.external_id.isnot(None), Shipment.order_id.isnot(None)))
            .where(or_(*needs_sync))
        )
        if filters.account_id:
            q = q.where(Shipment.account_id == filters.account_id)
        if filters.stale_before is not None:
            q = q.where(or_(Shipment.last_synced_at.is_(None), Shipment.last_synced_at < filters.stale_before))

        q = (
            q.order_by(Shipment.last_synced_at.asc().nulls_first(), Shipment.created_at.asc())
            .offset(filters.offset)
            .limit(limit)
        )

        with self.session_factory() as db:
            rows = db.execute(q).scalars().all()
            return [record_from_row(r) for r in rows]

    def list_records(self, limit: int, account_id: Optional[str] = None) -> list[TrackingRecord]:
        q = select(Shipment)
        if account_id:
            q = q.where(Shipment.account_id == account_id)
        q = q.order_by(Shipment.created_at.asc()).limit(limit)
        with self.session_factory() as db:
            return [record_from_row(r) for r in db.execute(q).scalars().all()]

    def load_history(self, record_id: uuid.UUID) -> list[Event]:
        q = (
            select(ShipmentEvent)
            .where(ShipmentEvent.shipment_id == record_id)
            .order_by(ShipmentEvent.position.asc(), ShipmentEvent.occurred_at.asc())
        )
        with self.session_factory() as db:
            return [event_from_row(r) for r in db.execute(q).scalars().all()]

    def save_reconciliation(
        self,
        record_id: uuid.UUID,
        history: list[Event],
        canonical: Optional[CanonicalState],
        flags: dict[str, bool],
        synced_at: datetime,
    ) -> None:
        """
        Upsert every history event by (shipment_id, dedupe_key) and write the
        canonical columns in the same transaction. Existing rows only get their
        position and suppressed flag refreshed.
        """
        with self.session_factory() as db:
            try:
                insert = _insert_for(db)
                for position, ev in enumerate(history):
                    stmt = insert(ShipmentEvent).values(
                        id=uuid.uuid4(),
                        shipment_id=record_id,
                        position=position,
                        occurred_at=ev.occurred_at,
                        status=ev.status,
                        detail=ev.detail,
                        origin=ev.origin,
                        remote_id=ev.remote_id,
                        dedupe_key=ev.dedupe_key,
                        note=ev.note,
                        geo=ev.geo,
                        meta=ev.meta or {},
                        suppressed=ev.suppressed,
                    )
                    stmt = stmt.on_conflict_do_update(
                        index_elements=["shipment_id", "dedupe_key"],
                        set_={
                            "position": stmt.excluded.position,
                            "suppressed": stmt.excluded.suppressed,
                        },
                    )
                    db.execute(stmt)

                res = db.execute(
                    update(Shipment)
                    .where(Shipment.id == record_id)
                    .values(
                        canonical_status=canonical.status if canonical else None,
                        canonical_detail=canonical.detail if canonical else None,
                        canonical_at=canonical.at if canonical else None,
                        confirmed_flags=flags,
                        last_synced_at=synced_at,
                    )
                )
                if res.rowcount == 0:
                    raise PersistenceError(f"shipment {record_id} not found")

                db.commit()

            except PersistenceError:
                db.rollback()
                raise
            except SQLAlchemyError as e:
                db.rollback()
                raise PersistenceError(f"save failed for shipment {record_id}: {e!r}") from e

    def correct_external_id(self, record_id: uuid.UUID, external_id: str) -> bool:
        with self.session_factory() as db:
            try:
                res = db.execute(
                    update(Shipment)
                    .where(
                        Shipment.id == record_id,
                        or_(Shipment.external_id.is_(None), Shipment.external_id != external_id),
                    )
                    .values(external_id=external_id)
                )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise PersistenceError(f"external_id correction failed for shipment {record_id}: {e!r}") from e
            return res.rowcount > 0
