from datetime import timedelta

from app.jobs.sync.merge import merge_history

from conftest import NOW, ev, hours


def test_merge_is_idempotent():
    existing = [ev(NOW - hours(3), "shipped"), ev(NOW - hours(1), "not_delivered", "receiver_absent")]
    incoming = [ev(NOW - hours(3), "shipped"), ev(NOW, "delivered")]

    once = merge_history(existing, incoming)
    twice = merge_history(once, incoming)

    assert once == twice
    assert len(once) == 3


def test_merge_sorts_and_keeps_existing_first_on_equal_time():
    a = ev(NOW, "shipped", "in_hub")
    b = ev(NOW, "shipped", "out_for_delivery")

    merged = merge_history([a, ev(NOW + hours(1), "delivered")], [ev(NOW - hours(1), "handling"), b])

    assert [e.status for e in merged] == ["handling", "shipped", "shipped", "delivered"]
    assert merged[1] is a


def test_existing_wins_on_same_key():
    stored = ev(NOW, "not_delivered", "rescheduled_by_meli", suppressed=True)
    refetched = ev(NOW, "not_delivered", "rescheduled_by_meli")

    merged = merge_history([stored], [refetched])

    assert len(merged) == 1
    assert merged[0].suppressed


def test_remote_id_dedupes_even_when_fields_drift():
    first = ev(NOW, "shipped", remote_id="e-1")
    drifted = ev(NOW + timedelta(seconds=30), "shipped", "in_hub", remote_id="e-1")

    assert len(merge_history([first], [drifted])) == 1


def test_tracking_keys_truncate_to_the_minute():
    a = ev(NOW + timedelta(seconds=5), "shipped", "in_transit", origin="tracking")
    b = ev(NOW + timedelta(seconds=40), "shipped", "in_transit", origin="tracking")
    c = ev(NOW + timedelta(seconds=5), "shipped", "in_transit", origin="history")
    d = ev(NOW + timedelta(seconds=40), "shipped", "in_transit", origin="history")

    assert a.dedupe_key == b.dedupe_key
    assert c.dedupe_key != d.dedupe_key
    assert a.dedupe_key != c.dedupe_key


def test_descriptive_fields_do_not_change_key():
    a = ev(NOW, "shipped", note="one", geo={"latitude": 1}, meta={"x": 1})
    b = ev(NOW, "shipped", note="two")
    assert a.dedupe_key == b.dedupe_key
    assert a.as_suppressed().dedupe_key == a.dedupe_key
