"""
Carrier payloads -> canonical Events / Snapshot.

Three shapes come back from the carrier:
  - history feed:  [{date, status, substatus}, ...] (sometimes wrapped in {"results": [...]})
  - checkpoints:   loosely typed tracking lines, matched against a phrase table
  - snapshot:      the shipment object itself, with current status and milestone dates

Anything without a resolvable timestamp is dropped here; nothing is ever dated "now".
"""

import logging
import re
from typing import Any, Iterable, Optional

from app.jobs.sync.config import ReconcileTables
from app.jobs.sync.errors import MalformedPayload
from app.jobs.sync.types import ORIGIN_HISTORY, ORIGIN_TRACKING, Event, Snapshot
from app.jobs.sync.utils.time import parse_ts

logger = logging.getLogger(__name__)

_LEADING_TS = re.compile(r"^\s*(\d{4}-\d{2}-\d{2}[T ][0-9:.]+(?:Z|[+-]\d{2}:?\d{2})?)\s*[-|:]?\s*(.*)$")

# vendor status_history key -> milestone name
_SNAPSHOT_MILESTONE_KEYS = {
    "date_created": "created_at",
    "date_ready_to_ship": "ready_to_ship_at",
    "date_first_printed": "printed_at",
    "date_printed": "printed_at",
    "date_handling": "handling_at",
    "date_shipped": "shipped_at",
    "date_out_for_delivery": "out_for_delivery_at",
    "date_first_delivered": "delivered_at",
    "date_delivered": "delivered_at",
    "date_not_delivered": "not_delivered_at",
    "date_cancelled": "cancelled_at",
    "date_returned": "returned_at",
}


def _first(d: dict, *keys: str) -> Any:
    for k in keys:
        v = d.get(k)
        if v not in (None, ""):
            return v
    return None


def _text(value: Any) -> str:
    return str(value or "").strip().lower()


def as_items(payload: Any) -> list:
    if payload is None:
        return []
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        results = payload.get("results")
        if isinstance(results, list):
            return results
        return [payload]
    raise MalformedPayload(f"expected list or object, got {type(payload).__name__}")


def normalize_history(payload: Any, tables: ReconcileTables, *, record_ref: str = "") -> list[Event]:
    try:
        items = as_items(payload)
    except MalformedPayload as e:
        logger.warning("record %s history feed malformed: %s", record_ref, e)
        return []

    events: list[Event] = []
    dropped_undated = 0
    malformed = 0

    for item in items:
        if not isinstance(item, dict):
            malformed += 1
            continue

        at = parse_ts(_first(item, "date", "created", "updated"))
        if at is None:
            dropped_undated += 1
            continue

        status = _text(_first(item, "status", "new", "state"))
        if not status:
            malformed += 1
            continue

        detail = _text(_first(item, "substatus", "sub_status"))
        if not detail and status in tables.substatus_like_statuses:
            detail = status

        remote_id = _first(item, "id", "event_id")
        events.append(
            Event(
                occurred_at=at,
                status=status,
                detail=detail,
                origin=ORIGIN_HISTORY,
                remote_id=str(remote_id) if remote_id is not None else None,
                note=_first(item, "description", "comment"),
                meta={k: item[k] for k in ("service_id", "tracking_method") if k in item},
            )
        )

    if dropped_undated or malformed:
        logger.debug(
            "record %s history: kept=%d dropped_undated=%d malformed=%d",
            record_ref,
            len(events),
            dropped_undated,
            malformed,
        )
    return events


def match_checkpoint(text: str, tables: ReconcileTables) -> Optional[tuple[str, str]]:
    for rule in tables.checkpoint_rules:
        if rule.pattern.search(text):
            return rule.status, rule.detail
    return None


def _split_checkpoint(item: Any) -> tuple[Any, str, Optional[dict]]:
    if isinstance(item, str):
        m = _LEADING_TS.match(item)
        if not m:
            return None, item, None
        return m.group(1), m.group(2), None
    if isinstance(item, dict):
        when = _first(item, "date", "checkpoint_time", "time", "datetime")
        text = _first(item, "description", "message", "status", "text") or ""
        geo = None
        lat, lon = item.get("latitude"), item.get("longitude")
        if lat is not None and lon is not None:
            geo = {"latitude": lat, "longitude": lon}
        return when, str(text), geo
    return None, "", None


def normalize_checkpoints(payload: Any, tables: ReconcileTables, *, record_ref: str = "") -> list[Event]:
    if isinstance(payload, dict):
        payload = _first(payload, "checkpoints", "events", "results") or []
    if not isinstance(payload, Iterable) or isinstance(payload, (str, bytes)):
        logger.warning("record %s checkpoints malformed: %s", record_ref, type(payload).__name__)
        return []

    events: list[Event] = []
    unmatched = 0
    for item in payload:
        when, text, geo = _split_checkpoint(item)
        at = parse_ts(when)
        if at is None:
            unmatched += 1
            continue
        hit = match_checkpoint(text, tables)
        if hit is None:
            unmatched += 1
            continue
        status, detail = hit
        events.append(
            Event(
                occurred_at=at,
                status=status,
                detail=detail,
                origin=ORIGIN_TRACKING,
                note=text.strip() or None,
                geo=geo,
            )
        )

    if unmatched:
        logger.debug("record %s checkpoints: kept=%d dropped=%d", record_ref, len(events), unmatched)
    return events


def normalize_snapshot(payload: Any) -> Optional[Snapshot]:
    if payload is None:
        return None
    if not isinstance(payload, dict):
        raise MalformedPayload(f"snapshot is {type(payload).__name__}, expected object")

    milestones = {}
    status_history = payload.get("status_history") or {}
    if isinstance(status_history, dict):
        for key, name in _SNAPSHOT_MILESTONE_KEYS.items():
            ts = parse_ts(status_history.get(key))
            if ts is not None and name not in milestones:
                milestones[name] = ts

    raw_milestones = payload.get("milestones") or {}
    if isinstance(raw_milestones, dict):
        for name, value in raw_milestones.items():
            ts = parse_ts(value)
            if ts is not None:
                milestones[name] = ts

    for name in ("shipped_at", "delivered_at", "cancelled_at", "not_delivered_at", "out_for_delivery_at"):
        ts = parse_ts(payload.get(name))
        if ts is not None:
            milestones[name] = ts

    order_id = payload.get("order_id")
    if order_id is None and isinstance(payload.get("orders"), list) and payload["orders"]:
        first = payload["orders"][0]
        order_id = first.get("id") if isinstance(first, dict) else None

    shipment_id = payload.get("id")
    return Snapshot(
        shipment_id=str(shipment_id) if shipment_id is not None else None,
        status=_text(payload.get("status")),
        detail=_text(_first(payload, "substatus", "sub_status")),
        milestones=milestones,
        last_updated=parse_ts(payload.get("last_updated")),
        created_at=parse_ts(payload.get("date_created")),
        order_id=str(order_id) if order_id is not None else None,
    )
