import json
from datetime import date

import pytest

from adscale.cli import main, merge_account_settings
from adscale.infrastructure.error_handling import ValidationError
from adscale.infrastructure.storage import Store
from adscale.models import AccountSettings

from conftest import make_fact


@pytest.fixture
def run_cli(tmp_path, capsys, monkeypatch):
    monkeypatch.delenv("ADSCALE_DB_PATH", raising=False)
    base = ["--settings", str(tmp_path / "settings.yaml"), "--db", str(tmp_path / "cli.sqlite"), "--no-notify"]

    def run(*argv):
        code = main(base + list(argv))
        return code, capsys.readouterr().out
    return run


def test_add_account_and_settings_roundtrip(run_cli):
    code, out = run_cli("add-account", "1001", "--token", "tok", "--ad-account", "111",
                        "--currency", "USD", "--timezone", "UTC")
    assert code == 0
    assert "1 ad account(s)" in out

    code, out = run_cli("settings", "111", "--set", '{"thresholds": {"cpc": 1.5, "roas": 2}, "scale_percent": 20}')
    assert code == 0
    view = json.loads(out)
    assert view["ad_account_id"] == "act_111"
    assert view["thresholds"] == {"cpc": "above 1.5", "roas": "below 2"}
    assert view["scale_percent"] == 20

    code, out = run_cli("settings", "act_111", "--set", '{"thresholds": {"cpc": null}}')
    assert json.loads(out)["thresholds"] == {"roas": "below 2"}


def test_settings_rejects_bad_payloads(run_cli):
    code, out = run_cli("settings", "act_111", "--set", '{"thresholds": {"cpa": 1}}')
    assert code == 1
    assert json.loads(out)["code"] == "validation_error"

    code, out = run_cli("settings", "act_111", "--set", "not json")
    assert code == 1


def test_suggestions_empty(run_cli):
    code, out = run_cli("suggestions", "--status", "pending")
    assert code == 0
    assert json.loads(out) == []


def test_approve_unknown_suggestion(run_cli):
    code, out = run_cli("approve", "nope")
    assert code == 1
    assert json.loads(out)["code"] == "not_found"


def test_invalid_settings_file_exits_2(tmp_path, capsys):
    bad = tmp_path / "bad.yaml"
    bad.write_text("scheduler:\n  interval_minutes: 0\n")
    assert main(["--settings", str(bad), "--db", str(tmp_path / "x.sqlite"), "run"]) == 2


def test_merge_keeps_unchanged_fields():
    current = AccountSettings(ad_account_id="act_1", thresholds={"cpc": 1.0}, scale_percent=10.0, note="keep")
    merged = merge_account_settings(current, {"thresholds": {"ctr": 0.5}})
    assert merged.thresholds == {"cpc": 1.0, "ctr": 0.5}
    assert merged.scale_percent == 10.0
    assert merged.note == "keep"
    with pytest.raises(ValidationError):
        merge_account_settings(current, {"scale_percent": -5})


def test_sync_runs_shows_runs_and_latest_insight(run_cli, tmp_path):
    store = Store(str(tmp_path / "cli.sqlite"))
    try:
        run_id = store.start_sync_run("act_111", "insights", since=date(2024, 6, 1), until=date(2024, 6, 14))
        store.finish_sync_run(run_id, status="succeeded", records_fetched=2, records_stored=2)
        store.upsert_insights([
            make_fact("s1", date(2024, 6, 13), cpc=1.0),
            make_fact("s1", date(2024, 6, 14), cpc=2.5, clicks=0.0),
        ])
    finally:
        store.close()

    code, out = run_cli("sync-runs", "111", "--adset", "s1")
    assert code == 0
    view = json.loads(out)
    assert view["ad_account_id"] == "act_111"
    assert view["insight_rows"] == 2
    assert [(r["kind"], r["status"], r["records_stored"]) for r in view["runs"]] == [("insights", "succeeded", 2)]
    assert view["latest_insight"] == {"adset_id": "s1", "campaign_id": "c1", "day": "2024-06-14",
                                      "clicks": 0.0, "cpc": 2.5}

    code, out = run_cli("sync-runs", "act_111", "--adset", "missing")
    assert json.loads(out)["latest_insight"] is None
