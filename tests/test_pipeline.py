import threading
import time
from datetime import date, timedelta
from decimal import Decimal

import pytest

from adscale.config import load_settings
from adscale.infrastructure.error_handling import ExternalServiceError, NotFoundError, TokenExpired
from adscale.integrations.meta_client import ReportExport, ReportStatus
from adscale.integrations.slack import SlackClient
from adscale.models import AccountStatus, AdAccount, DateRange, ReportState, SuggestionStatus
from adscale.pipeline import Pipeline
from adscale.stages.scaling import SuggestionEngine

from conftest import ACCOUNT_ID, AD_ACCOUNT_ID, NOW


def _row(ad_account_id, adset_id="s1", cpc="2.0"):
    return {
        "Account ID": ad_account_id[len("act_"):],
        "Campaign ID": "c1",
        "Ad Set ID": adset_id,
        "Reporting starts": "2024-06-14",
        "CPC (all) (USD)": cpc,
        "Impressions": "1000",
    }


class FakeReportClient:
    def __init__(self, rows=None, fail_for=(), expire_for=(), state=ReportState.COMPLETED):
        self.rows = rows or {}
        self.fail_for = set(fail_for)
        self.expire_for = set(expire_for)
        self.state = state
        self.created = []
        self.gate = None

    def create_report(self, access_token, ad_account_id, date_range, cancel=None):
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if ad_account_id in self.expire_for:
            raise TokenExpired("Session has expired")
        if ad_account_id in self.fail_for:
            raise ExternalServiceError("Graph API unavailable", status_code=500)
        self.created.append((access_token, ad_account_id, date_range))
        return f"run-{ad_account_id}"

    def poll_until_done(self, access_token, report_run_id, cancel=None, deadline=None):
        return ReportStatus(report_run_id=report_run_id, state=self.state,
                            async_status="Job Completed" if self.state is ReportState.COMPLETED else "Job Failed",
                            percent_complete=100, attempts=1)

    def fetch_export(self, access_token, report_run_id, cancel=None, deadline=None):
        aid = report_run_id[len("run-"):]
        return ReportExport(report_run_id=report_run_id, rows=self.rows.get(aid, []))


class FakeMetadataClient:
    def __init__(self, adsets=None):
        self.adsets = adsets or {}
        self.calls = []

    def fetch_ad_account(self, access_token, ad_account_id):
        return {"name": "Fetched", "currency": "USD", "timezone_name": "UTC", "account_status": 1}

    def fetch_campaigns(self, access_token, ad_account_id, updated_since=None, cancel=None):
        return [{"id": "c1", "name": "Summer", "status": "ACTIVE"}]

    def fetch_adsets(self, access_token, ad_account_id, updated_since=None, cancel=None):
        self.calls.append((ad_account_id, updated_since))
        return self.adsets.get(ad_account_id, [])


def _adset(adset_id="s1"):
    return {
        "id": adset_id,
        "name": f"Ad set {adset_id}",
        "campaign": {"id": "c1", "name": "Summer"},
        "status": "ACTIVE",
        "daily_budget": "10000",
        "start_time": "2024-06-01T00:00:00+0000",
    }


@pytest.fixture
def make_pipeline(store, notifier, clock, factories, ad_account):
    store.save_account_settings(factories.settings())

    def build(report=None, metadata=None, **kw):
        return Pipeline(
            store=store,
            report_client=report or FakeReportClient({AD_ACCOUNT_ID: [_row(AD_ACCOUNT_ID)]}),
            metadata_client=metadata or FakeMetadataClient({AD_ACCOUNT_ID: [_adset()]}),
            engine=SuggestionEngine(store, notifier=notifier, clock=clock),
            clock=clock,
            **kw,
        )
    return build


def test_run_ad_account_end_to_end(make_pipeline, store, ad_account, notifier):
    pipeline = make_pipeline()
    res = pipeline.run_ad_account(ad_account, "token-abc")

    assert res.success
    assert res.insights.facts_stored == 1
    assert res.metadata.adsets_synced == 1
    assert res.suggestions_created == 1
    s = store.list_suggestions(AD_ACCOUNT_ID, SuggestionStatus.PENDING)[0]
    assert s.budget == Decimal("100.00")
    assert s.budget_after_scale == Decimal("120.00")
    assert len(notifier.sent) == 1

    refreshed = store.get_ad_account(AD_ACCOUNT_ID)
    assert refreshed.last_sync_insight == NOW
    assert refreshed.last_sync_adset == NOW
    kinds = sorted(r["kind"] for r in store.list_sync_runs(AD_ACCOUNT_ID))
    assert kinds == ["insights", "metadata"]


def test_first_sync_uses_lookback_window(make_pipeline, ad_account):
    report = FakeReportClient()
    make_pipeline(report=report, lookback_days=30).run_ad_account(ad_account, "token-abc")
    rng = report.created[0][2]
    # 08:00 in New York on the 15th
    assert rng == DateRange(since=date(2024, 5, 16), until=date(2024, 6, 15))


def test_second_metadata_sync_is_incremental(make_pipeline, ad_account):
    metadata = FakeMetadataClient({AD_ACCOUNT_ID: [_adset()]})
    pipeline = make_pipeline(metadata=metadata)
    pipeline.run_ad_account(ad_account, "token-abc")
    pipeline.run_ad_account(ad_account, "token-abc")
    assert metadata.calls[0][1] is None
    assert metadata.calls[1][1] == NOW


def test_failed_report_marks_run_failed(make_pipeline, ad_account, store):
    res = make_pipeline(report=FakeReportClient(state=ReportState.FAILED)).run_ad_account(ad_account, "token-abc")
    assert not res.success
    assert res.insights.error_code == "report_failed"
    assert store.get_ad_account(AD_ACCOUNT_ID).last_sync_insight is None


def test_run_all_isolates_ad_account_failures(make_pipeline, store):
    store.upsert_ad_account(AdAccount(account_id=ACCOUNT_ID, ad_account_id="act_222", currency="USD", timezone="UTC"))
    report = FakeReportClient({AD_ACCOUNT_ID: [_row(AD_ACCOUNT_ID)]}, fail_for={"act_222"})
    run = make_pipeline(report=report).run_all()

    by_id = {r.ad_account_id: r for r in run.results}
    assert by_id[AD_ACCOUNT_ID].success
    assert by_id[AD_ACCOUNT_ID].suggestions_created == 1
    assert not by_id["act_222"].success
    assert by_id["act_222"].insights.error_code == "external_service_error"
    assert run.processed == 2
    assert run.failed == 1
    assert "act_222" in run.summary()


def test_run_all_reports_token_problems_per_account(make_pipeline, store, clock):
    store.upsert_account("2002", "old-token", expires_at=NOW - timedelta(days=1))
    store.upsert_ad_account(AdAccount(account_id="2002", ad_account_id="act_222", currency="USD", timezone="UTC"))
    store.upsert_account("3003", "tok", status=AccountStatus.NEEDS_RECONNECT)
    store.upsert_ad_account(AdAccount(account_id="3003", ad_account_id="act_333", currency="USD", timezone="UTC"))
    report = FakeReportClient({AD_ACCOUNT_ID: [_row(AD_ACCOUNT_ID)]})

    run = make_pipeline(report=report).run_all()

    codes = {r.ad_account_id: r.error_code for r in run.results}
    assert codes == {AD_ACCOUNT_ID: None, "act_222": "token_expired", "act_333": "needs_reconnect"}
    assert sorted(r.ad_account_id for r in run.token_failures()) == ["act_222", "act_333"]
    assert [c[1] for c in report.created] == [AD_ACCOUNT_ID]


def test_expired_token_from_api_flags_account(make_pipeline, store, ad_account):
    report = FakeReportClient(expire_for={AD_ACCOUNT_ID})
    res = make_pipeline(report=report).run_ad_account(ad_account, "token-abc")
    assert res.error_code == "token_expired"
    assert store.get_account(ACCOUNT_ID).status is AccountStatus.NEEDS_RECONNECT


def test_concurrent_run_for_same_ad_account_is_skipped(make_pipeline, ad_account):
    report = FakeReportClient({AD_ACCOUNT_ID: [_row(AD_ACCOUNT_ID)]})
    report.gate = threading.Event()
    pipeline = make_pipeline(report=report)
    results = []
    first = threading.Thread(target=lambda: results.append(pipeline.run_ad_account(ad_account, "token-abc")))
    first.start()
    try:
        # wait until the first run holds the lock
        for _ in range(500):
            if pipeline._lock_for(AD_ACCOUNT_ID).locked():
                break
            time.sleep(0.01)
        second = pipeline.run_ad_account(ad_account, "token-abc")
    finally:
        report.gate.set()
        first.join(timeout=10)
    assert second.skipped and second.success
    assert results[0].success and not results[0].skipped


def test_cancelled_run_stops_before_metadata(make_pipeline, ad_account):
    metadata = FakeMetadataClient()
    cancel = threading.Event()
    cancel.set()
    res = make_pipeline(metadata=metadata).run_ad_account(ad_account, "token-abc", cancel=cancel)
    assert res.error_code == "cancelled"
    assert metadata.calls == []


def test_on_demand_stages(make_pipeline, store):
    pipeline = make_pipeline()
    assert pipeline.sync_insights("111").facts_stored == 1
    assert pipeline.sync_metadata(AD_ACCOUNT_ID, full=True).adsets_synced == 1
    assert pipeline.analyze("111").suggestions_created == 1
    with pytest.raises(NotFoundError):
        pipeline.sync_insights("act_999")


def test_from_settings_notifier_uses_configured_webhook(tmp_path, store, clock):
    path = tmp_path / "settings.yaml"
    path.write_text("slack:\n  webhook_url: https://hooks.slack.test/T/B/file\n")
    pipeline = Pipeline.from_settings(load_settings(str(path), environ={}), store=store, clock=clock)
    try:
        assert isinstance(pipeline.notifier, SlackClient)
        assert pipeline.notifier.webhooks == {"default": "https://hooks.slack.test/T/B/file"}
        assert pipeline.engine.notifier is pipeline.notifier
    finally:
        pipeline.close()
