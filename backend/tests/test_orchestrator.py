import threading

from app.jobs.sync.errors import RemoteUnavailable
from app.jobs.sync.orchestrator import RunSummary, SyncOrchestrator

from conftest import NOW, hours, iso


def seed(storage, carrier):
    ok = [storage.add(external_id=f"S{i}") for i in range(3)]
    for r in ok:
        carrier.histories[r.external_id] = [{"date": iso(NOW - hours(2)), "status": "delivered"}]
    storage.add(external_id="S-nocred", account_id="unlinked")
    storage.add(external_id=None, order_id=None)
    broken = storage.add(external_id="S-down")
    carrier.errors["S-down"] = RemoteUnavailable("HTTP 503", status_code=503)
    return ok, broken


def test_summary_counts_every_outcome(ctx, storage, carrier):
    ok, broken = seed(storage, carrier)

    summary = SyncOrchestrator(ctx, progress_every=2).run(limit=50, workers=3)

    assert summary == RunSummary(
        attempted=6,
        succeeded=3,
        failed=1,
        skipped_no_credential=1,
        skipped_no_remote_id=1,
    )
    assert all(r.canonical.status == "delivered" for r in ok)
    assert broken.last_synced_at is None


def test_one_failure_does_not_stop_the_batch_single_worker(ctx, storage, carrier):
    seed(storage, carrier)

    summary = SyncOrchestrator(ctx).run(limit=50, workers=1)

    assert summary.succeeded == 3
    assert summary.failed == 1


def test_selection_uses_grace_window_and_staleness(ctx, storage, tables):
    SyncOrchestrator(ctx).select(10, account_id="A1", stale_minutes=30)

    f = storage.last_filters
    assert f.terminal_statuses == tables.terminal_statuses
    assert f.terminal_since == NOW - hours(tables.terminal_grace_hours)
    assert f.stale_before == NOW - hours(0.5)
    assert f.account_id == "A1"


def test_duplicate_selection_is_processed_once(ctx, storage, carrier):
    record = storage.add(external_id="S1")
    carrier.histories["S1"] = [{"date": iso(NOW), "status": "delivered"}]
    storage.select_pending = lambda limit, filters: [record, record]

    summary = SyncOrchestrator(ctx).run(limit=10)

    assert summary.attempted == 1
    assert storage.saves == 1


def test_cancelled_run_starts_nothing(ctx, storage, carrier):
    seed(storage, carrier)
    cancel = threading.Event()
    cancel.set()

    summary = SyncOrchestrator(ctx).run(limit=50, workers=2, cancel=cancel)

    assert summary.attempted == 0
    assert summary.not_started == 6
    assert carrier.calls == []


def test_deadline_in_the_past_starts_nothing(ctx, storage, carrier):
    seed(storage, carrier)

    summary = SyncOrchestrator(ctx).run(limit=50, deadline=NOW - hours(1))

    assert summary.not_started == 6
    assert storage.saves == 0


def test_cancel_mid_run_leaves_the_rest(ctx, storage, carrier):
    cancel = threading.Event()
    for i in range(4):
        storage.add(external_id=f"S{i}")
        carrier.histories[f"S{i}"] = [{"date": iso(NOW), "status": "delivered"}]

    original = carrier.get_history

    def history_then_cancel(external_id):
        cancel.set()
        return original(external_id)

    carrier.get_history = history_then_cancel

    summary = SyncOrchestrator(ctx).run(limit=10, workers=1, cancel=cancel)

    # the record in flight finishes; nothing new starts
    assert summary.succeeded == 1
    assert summary.not_started == 3


def test_empty_selection(ctx):
    assert SyncOrchestrator(ctx).run(limit=10) == RunSummary()
