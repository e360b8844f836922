"""
Recompute canonical state from stored history only (no carrier calls).

Useful after re-tuning the reconcile tables. The same resolver rules apply, so
terminal states are never walked back.
"""

import argparse
import logging

from app.core.db import SessionLocal
from app.models.job_runs import JobRun
from app.jobs.sync.config import ReconcileTables, load_tables
from app.jobs.sync.errors import PersistenceError
from app.jobs.sync.resolve import resolve_canonical
from app.jobs.sync.sources.meli.http import configure_logging_if_needed
from app.jobs.sync.storage import SqlStorage
from app.jobs.sync.updater import persist_reconciliation
from app.jobs.sync.utils.time import utcnow

logger = logging.getLogger(__name__)


def rebuild_canonical(
    storage: SqlStorage,
    tables: ReconcileTables,
    *,
    limit: int,
    account_id: str | None = None,
    dry_run: bool = False,
) -> dict:
    seen = changed = failed = 0
    now = utcnow()

    for record in storage.list_records(limit, account_id=account_id):
        seen += 1
        history = storage.load_history(record.id)
        resolution = resolve_canonical(
            history,
            None,
            record.canonical,
            record.confirmed_flags,
            now=now,
            tables=tables,
        )
        if resolution.state == record.canonical and resolution.flags == record.confirmed_flags:
            continue

        changed += 1
        logger.info(
            "record %s canonical %s -> %s",
            record.id,
            record.canonical,
            resolution.state,
        )
        if dry_run:
            continue

        try:
            persist_reconciliation(
                storage,
                record.id,
                history,
                resolution.state,
                resolution.flags,
                synced_at=record.last_synced_at or now,
            )
        except PersistenceError as e:
            failed += 1
            logger.error("record %s rebuild failed: %s", record.id, e)

    return {"seen": seen, "changed": changed, "failed": failed, "dry_run": dry_run}


def main():
    configure_logging_if_needed()

    p = argparse.ArgumentParser(description="Recompute canonical shipment state from stored history")
    p.add_argument("--limit", type=int, default=1000)
    p.add_argument("--account", help="Optional seller account filter")
    p.add_argument("--tables", help="JSON file overriding reconcile tables")
    p.add_argument("--dry-run", action="store_true")
    args = p.parse_args()

    db = SessionLocal()
    run_id = JobRun.start(db, "rebuild_canonical", args=vars(args))

    try:
        result = rebuild_canonical(
            SqlStorage(SessionLocal),
            load_tables(args.tables),
            limit=args.limit,
            account_id=args.account,
            dry_run=args.dry_run,
        )
        JobRun.finish(db, run_id, "success", **result)
        print(result)
    except Exception as e:
        db.rollback()
        JobRun.finish(db, run_id, "fail", error=repr(e))
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
