import json
import logging
import os
import re
from dataclasses import dataclass, fields, replace
from datetime import time
from typing import Any, Optional

from app.jobs.sync.utils.time import parse_hhmm

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckpointRule:
    pattern: re.Pattern
    status: str
    detail: str


# Ordered: first match wins, so negative phrasings sit above the positive ones they contain.
DEFAULT_CHECKPOINT_RULES: tuple[tuple[str, str, str], ...] = (
    (r"not\s+delivered.*(absent|nobody|no one)|receiver\s+absent|comprador\s+ausente|nadie\s+en\s+(el\s+)?domicilio",
     "not_delivered", "receiver_absent"),
    (r"bad\s+address|wrong\s+address|direcci[oó]n\s+(incorrecta|err[oó]nea)", "not_delivered", "bad_address"),
    (r"inaccessible|unreachable|inaccesible", "not_delivered", "inaccessible_location"),
    (r"agency\s+closed|agencia\s+cerrada", "not_delivered", "agency_closed"),
    (r"rescheduled\s+by\s+(the\s+)?buyer|reprogramado\s+por\s+(el\s+)?comprador", "not_delivered", "buyer_rescheduled"),
    (r"not\s+delivered|no\s+entregado", "not_delivered", ""),
    (r"out\s+for\s+delivery|sali[oó]\s+a\s+reparto|en\s+camino\s+al\s+domicilio", "shipped", "out_for_delivery"),
    (r"arriving\s+(soon|today)|llega\s+hoy", "shipped", "arriving_soon"),
    (r"in\s+transit|en\s+tr[aá]nsito", "shipped", "in_transit"),
    (r"delivered|entregado", "delivered", ""),
    (r"cancel+ed|cancelado", "cancelled", ""),
)


@dataclass(frozen=True)
class ReconcileTables:
    """
    Vendor heuristics that drive normalization, scoring and noise suppression.

    None of these are vendor contracts; they were derived from observed feed
    behaviour and are expected to be re-tuned. Override per key with env vars or
    wholesale with a JSON file named by RECONCILE_TABLES_FILE.
    """

    terminal_statuses: frozenset[str] = frozenset({"delivered", "cancelled"})

    # Details that carry real signal about the last delivery attempt.
    specific_details: frozenset[str] = frozenset({
        "receiver_absent",
        "bad_address",
        "inaccessible_location",
        "agency_closed",
        "buyer_rescheduled",
        "out_for_delivery",
        "arriving_soon",
    })

    # Statuses the history feed sometimes sends where a substatus belongs.
    substatus_like_statuses: frozenset[str] = frozenset({
        "printed",
        "out_for_delivery",
        "not_visited",
        "ready_to_print",
    })

    # Priority scores
    terminal_score: int = 300
    specific_score: int = 200
    default_score: int = 100
    recency_bonus: int = 50
    recency_bonus_hours: float = 48.0

    # Bulk reset noise
    generic_reset_detail: str = "rescheduled_by_meli"
    noise_window_start: time = time(23, 0)
    noise_window_end: time = time(2, 0)
    noise_timezone: str = "America/Argentina/Buenos_Aires"
    noise_incident_details: frozenset[str] = frozenset({
        "receiver_absent",
        "bad_address",
        "inaccessible_location",
        "agency_closed",
        "buyer_rescheduled",
    })
    noise_lookback_hours: float = 4.0
    noise_max_exclusion_age_hours: float = 24.0

    # Incidents that stay asserted over a later generic reset until a terminal status.
    sticky_details: frozenset[str] = frozenset({"receiver_absent"})

    # Details that count as "in motion" milestones; their absence triggers a checkpoint fetch.
    transit_milestone_details: frozenset[str] = frozenset({"out_for_delivery", "in_transit"})

    # Terminal canonical states younger than this are re-selected until history has the event.
    terminal_grace_hours: float = 24.0

    checkpoint_rules: tuple[CheckpointRule, ...] = tuple(
        CheckpointRule(re.compile(p, re.IGNORECASE), s, d) for p, s, d in DEFAULT_CHECKPOINT_RULES
    )

    def is_terminal(self, status: Optional[str]) -> bool:
        return bool(status) and status in self.terminal_statuses


@dataclass(frozen=True)
class SyncConfig:
    limit: int
    workers: int
    request_delay: float
    stale_minutes: int
    progress_every: int


def load_sync_config() -> SyncConfig:
    return SyncConfig(
        limit=int(os.getenv("SYNC_LIMIT", "200")),
        workers=int(os.getenv("SYNC_WORKERS", "4")),
        request_delay=float(os.getenv("SYNC_REQUEST_DELAY_SECONDS", "0.15")),
        stale_minutes=int(os.getenv("SYNC_STALE_MINUTES", "30")),
        progress_every=int(os.getenv("SYNC_PROGRESS_EVERY", "50")),
    )


def _coerce(name: str, current: Any, raw: Any) -> Any:
    if name == "checkpoint_rules":
        return tuple(
            CheckpointRule(re.compile(r["pattern"], re.IGNORECASE), r["status"], r.get("detail", ""))
            for r in raw
        )
    if isinstance(current, frozenset):
        if isinstance(raw, str):
            raw = [x for x in raw.split(",")]
        return frozenset(str(x).strip().lower() for x in raw if str(x).strip())
    if isinstance(current, time):
        return parse_hhmm(str(raw))
    if isinstance(current, bool):
        return str(raw).strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return str(raw)


def load_tables(path: Optional[str] = None, environ: Optional[dict] = None) -> ReconcileTables:
    """
    Defaults, then the JSON file (if any), then RECONCILE_<FIELD> env vars.
    """
    env = os.environ if environ is None else environ
    tables = ReconcileTables()
    overrides: dict[str, Any] = {}

    path = path or env.get("RECONCILE_TABLES_FILE")
    if path:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        known = {f.name for f in fields(ReconcileTables)}
        for key, raw in data.items():
            if key not in known:
                logger.warning("Ignoring unknown reconcile table %r in %s", key, path)
                continue
            overrides[key] = _coerce(key, getattr(tables, key), raw)
        logger.info("Loaded reconcile tables from %s keys=%s", path, sorted(overrides))

    for f in fields(ReconcileTables):
        if f.name == "checkpoint_rules":
            continue
        raw = env.get(f"RECONCILE_{f.name.upper()}")
        if raw is not None:
            overrides[f.name] = _coerce(f.name, getattr(tables, f.name), raw)

    return replace(tables, **overrides) if overrides else tables
