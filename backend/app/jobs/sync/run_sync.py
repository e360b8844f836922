import argparse
import signal
import threading
from datetime import timedelta
from sqlalchemy.orm import Session

from app.core.db import SessionLocal
from app.models.job_runs import JobRun
from app.jobs.sync.config import load_sync_config, load_tables
from app.jobs.sync.orchestrator import SyncOrchestrator
from app.jobs.sync.pipeline import SyncContext
from app.jobs.sync.rate_limit import RateLimiter
from app.jobs.sync.sources.meli.client import MeliCarrierClient
from app.jobs.sync.sources.meli.config import load_config as load_meli_config
from app.jobs.sync.sources.meli.http import configure_logging_if_needed, make_client
from app.jobs.sync.sources.meli.tokens import DbTokenProvider
from app.jobs.sync.storage import SqlStorage
from app.jobs.sync.utils.time import utcnow


def install_cancel_handlers(cancel: threading.Event) -> dict:
    def _handler(signum, frame):
        cancel.set()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _handler)
    return previous


def main():
    configure_logging_if_needed()
    defaults = load_sync_config()

    p = argparse.ArgumentParser(description="Reconcile pending shipments against the carrier")
    p.add_argument("--limit", type=int, default=defaults.limit, help="Max records this pass")
    p.add_argument("--workers", type=int, default=defaults.workers)
    p.add_argument("--delay", type=float, default=defaults.request_delay,
                   help="Seconds between carrier requests, across all workers")
    p.add_argument("--stale-minutes", type=int, default=defaults.stale_minutes,
                   help="Only records not synced in this many minutes (0 = no filter)")
    p.add_argument("--account", help="Optional seller account filter")
    p.add_argument("--deadline-seconds", type=int, default=0, help="Stop starting new records after N seconds")
    p.add_argument("--tables", help="JSON file overriding reconcile tables")

    args = p.parse_args()

    db: Session = SessionLocal()
    run_id = JobRun.start(db, "sync_shipments", args=vars(args))

    cancel = threading.Event()
    previous_handlers = install_cancel_handlers(cancel)

    meli_cfg = load_meli_config()
    http = make_client(meli_cfg)

    try:
        tokens = DbTokenProvider(SessionLocal)
        ctx = SyncContext(
            storage=SqlStorage(SessionLocal),
            tokens=tokens,
            client_factory=lambda cred, limiter: MeliCarrierClient(meli_cfg, http, tokens, cred, limiter=limiter),
            tables=load_tables(args.tables),
            limiter=RateLimiter(args.delay),
        )
        orchestrator = SyncOrchestrator(ctx, progress_every=defaults.progress_every)

        deadline = utcnow() + timedelta(seconds=args.deadline_seconds) if args.deadline_seconds > 0 else None
        summary = orchestrator.run(
            limit=args.limit,
            workers=args.workers,
            account_id=args.account,
            stale_minutes=args.stale_minutes or None,
            cancel=cancel,
            deadline=deadline,
        )
        result = summary.as_dict()

        JobRun.finish(db, run_id, "cancelled" if cancel.is_set() else "success", **result)

        print(result)

    except Exception as e:
        db.rollback()
        JobRun.finish(db, run_id, "fail", error=repr(e))
        raise

    finally:
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)
        http.close()
        db.close()

if __name__ == "__main__":
    main()
