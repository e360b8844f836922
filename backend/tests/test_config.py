import json
from datetime import time

import pytest

from app.jobs.sync.config import ReconcileTables, load_sync_config, load_tables


def test_defaults_without_overrides():
    assert load_tables(environ={}) == ReconcileTables()


def test_env_overrides_per_key():
    tables = load_tables(
        environ={
            "RECONCILE_NOISE_WINDOW_START": "22:30",
            "RECONCILE_STICKY_DETAILS": "receiver_absent, bad_address",
            "RECONCILE_SPECIFIC_SCORE": "180",
            "RECONCILE_NOISE_LOOKBACK_HOURS": "6",
        }
    )

    assert tables.noise_window_start == time(22, 30)
    assert tables.sticky_details == frozenset({"receiver_absent", "bad_address"})
    assert tables.specific_score == 180
    assert tables.noise_lookback_hours == 6.0


def test_json_file_then_env(tmp_path):
    path = tmp_path / "tables.json"
    path.write_text(
        json.dumps(
            {
                "generic_reset_detail": "bulk_reset",
                "terminal_statuses": ["delivered", "cancelled", "returned"],
                "checkpoint_rules": [{"pattern": r"entregue", "status": "delivered"}],
                "not_a_table": 1,
            }
        )
    )

    tables = load_tables(environ={"RECONCILE_TABLES_FILE": str(path), "RECONCILE_GENERIC_RESET_DETAIL": "env_reset"})

    assert tables.generic_reset_detail == "env_reset"
    assert tables.is_terminal("returned")
    assert len(tables.checkpoint_rules) == 1
    assert tables.checkpoint_rules[0].pattern.search("ENTREGUE")
    assert tables.checkpoint_rules[0].detail == ""


def test_bad_window_value_is_rejected():
    with pytest.raises(ValueError):
        load_tables(environ={"RECONCILE_NOISE_WINDOW_END": "2am"})


def test_sync_config_from_env(monkeypatch):
    monkeypatch.setenv("SYNC_WORKERS", "8")
    monkeypatch.setenv("SYNC_REQUEST_DELAY_SECONDS", "0.5")
    cfg = load_sync_config()
    assert cfg.workers == 8
    assert cfg.request_delay == 0.5
