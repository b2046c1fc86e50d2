from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from adscale.infrastructure.error_handling import InvalidStateError, NotFoundError
from adscale.models import AccountStatus, Suggestion, SuggestionStatus, SuggestionTarget, TriggeredMetric

from conftest import AD_ACCOUNT_ID, ACCOUNT_ID, NOW


def _suggestion(store, adset_id="s1", **kw):
    return Suggestion(
        id=store.new_suggestion_id(),
        account_id=ACCOUNT_ID,
        ad_account_id=AD_ACCOUNT_ID,
        adset_id=adset_id,
        status=SuggestionStatus.PENDING,
        budget=Decimal("100.00"),
        budget_after_scale=Decimal("120.00"),
        scale_percent=20.0,
        metrics=(TriggeredMetric("cpc", 1.4, 1.0, "above"),),
        metrics_exceeded_count=1,
        currency="USD",
        created_at=NOW,
        **kw,
    )


# ------------- Insights -------------
def test_upsert_is_idempotent(store, factories):
    fact = factories.fact(spend=10.0, clicks=3.0)
    store.upsert_insight(fact)
    store.upsert_insight(fact)
    assert store.count_insights(AD_ACCOUNT_ID) == 1


def test_upsert_replaces_whole_row(store, factories):
    store.upsert_insights([factories.fact(spend=10.0, clicks=3.0)])
    store.upsert_insights([factories.fact(spend=12.5)])
    latest = store.latest_insight(AD_ACCOUNT_ID, "s1")
    assert latest.spend == 12.5
    # not carried over from the first write
    assert latest.clicks is None


def test_zero_and_absent_survive_round_trip(store, factories):
    store.upsert_insight(factories.fact(clicks=0.0, cpc=None))
    latest = store.latest_insight(AD_ACCOUNT_ID, "s1")
    assert latest.clicks == 0.0
    assert latest.cpc is None


def test_latest_insights_by_adset_picks_max_day(store, factories):
    store.upsert_insights([
        factories.fact("s1", date(2024, 6, 12), spend=1.0),
        factories.fact("s1", date(2024, 6, 14), spend=3.0),
        factories.fact("s1", date(2024, 6, 13), spend=2.0),
        factories.fact("s2", date(2024, 6, 10), spend=9.0),
        factories.fact("s3", date(2024, 6, 14), spend=5.0, ad_account_id="act_222"),
    ])
    latest = store.latest_insights_by_adset(AD_ACCOUNT_ID)
    assert set(latest) == {"s1", "s2"}
    assert latest["s1"].day == date(2024, 6, 14)
    assert latest["s1"].spend == 3.0
    assert latest["s2"].spend == 9.0


def test_latest_insights_by_campaign_keeps_every_adset_of_the_latest_day(store, factories):
    store.upsert_insights([
        factories.fact("s1", date(2024, 6, 13), spend=1.0),
        factories.fact("s1", date(2024, 6, 14), spend=3.0),
        factories.fact("s2", date(2024, 6, 14), spend=4.0),
        factories.fact("s3", date(2024, 6, 12), campaign_id="c2", spend=7.0),
    ])
    latest = store.latest_insights_by_campaign(AD_ACCOUNT_ID)
    assert sorted(latest) == ["c1", "c2"]
    assert [(f.adset_id, f.spend) for f in latest["c1"]] == [("s1", 3.0), ("s2", 4.0)]
    assert [f.day for f in latest["c2"]] == [date(2024, 6, 12)]


# ------------- Metadata -------------
def test_adset_sync_never_overwrites_last_scaled_at(store, factories):
    store.upsert_adsets([factories.adset("s1", daily_budget="50.00")])
    scaled_at = NOW - timedelta(days=2)
    store.mark_adset_scaled(AD_ACCOUNT_ID, "s1", scaled_at)

    store.upsert_adsets([factories.adset("s1", daily_budget="60.00")])
    adset = store.get_adset(AD_ACCOUNT_ID, "s1")
    assert adset.daily_budget == Decimal("60.00")
    assert adset.last_scaled_at == scaled_at


def test_mark_unknown_adset_scaled(store):
    with pytest.raises(NotFoundError):
        store.mark_adset_scaled(AD_ACCOUNT_ID, "nope", NOW)


def test_campaign_sync_never_overwrites_last_scaled_at(store, factories):
    store.upsert_campaigns([factories.campaign("c1", daily_budget="500.00")])
    scaled_at = NOW - timedelta(days=2)
    store.mark_campaign_scaled(AD_ACCOUNT_ID, "c1", scaled_at)

    store.upsert_campaigns([factories.campaign("c1", daily_budget="650.00", status="PAUSED")])
    campaign = store.get_campaign(AD_ACCOUNT_ID, "c1")
    assert campaign.daily_budget == Decimal("650.00")
    assert not campaign.is_active
    assert campaign.last_scaled_at == scaled_at
    assert [c.campaign_id for c in store.list_campaigns(AD_ACCOUNT_ID)] == ["c1"]
    with pytest.raises(NotFoundError):
        store.mark_campaign_scaled(AD_ACCOUNT_ID, "nope", NOW)


# ------------- Settings -------------
def test_settings_round_trip_keeps_zero_threshold(store, factories):
    store.save_account_settings(factories.settings(thresholds={"cpc": 0.0, "ctr": 1.2}, min_metrics_exceeded=2))
    s = store.get_account_settings(AD_ACCOUNT_ID)
    assert s.thresholds == {"cpc": 0.0, "ctr": 1.2}
    assert s.configured_thresholds()["cpc"] == 0.0
    assert s.min_metrics_exceeded == 2
    assert store.get_account_settings("act_unknown") is None


# ------------- Suggestions -------------
def test_at_most_one_pending_per_adset(store):
    first = store.create_suggestion(_suggestion(store))
    with pytest.raises(InvalidStateError):
        store.create_suggestion(_suggestion(store))
    # another ad set is unaffected
    store.create_suggestion(_suggestion(store, adset_id="s2"))
    assert store.pending_adset_ids(AD_ACCOUNT_ID) == {"s1", "s2"}

    store.transition_suggestion(first.id, SuggestionStatus.REJECTED, NOW)
    store.create_suggestion(_suggestion(store))
    assert len(store.list_suggestions(AD_ACCOUNT_ID, SuggestionStatus.PENDING)) == 2


def test_at_most_one_pending_per_campaign(store):
    campaign = dict(adset_id=None, campaign_id="c1", target=SuggestionTarget.CAMPAIGN)
    store.create_suggestion(_suggestion(store, **campaign))
    with pytest.raises(InvalidStateError):
        store.create_suggestion(_suggestion(store, **campaign))
    # an ad-set suggestion inside the same campaign is independent
    store.create_suggestion(_suggestion(store, adset_id="s1", campaign_id="c1"))
    assert store.pending_campaign_ids(AD_ACCOUNT_ID) == {"c1"}
    assert store.pending_adset_ids(AD_ACCOUNT_ID) == {"s1"}


def test_suggestion_round_trip(store):
    created = store.create_suggestion(_suggestion(store, note="weekend push"))
    loaded = store.get_suggestion(created.id)
    assert loaded.budget_after_scale == Decimal("120.00")
    assert loaded.metrics[0].metric_name == "cpc"
    assert loaded.note == "weekend push"
    assert loaded.status is SuggestionStatus.PENDING


def test_transition_errors(store):
    with pytest.raises(NotFoundError):
        store.transition_suggestion("missing", SuggestionStatus.APPLIED, NOW)
    s = store.create_suggestion(_suggestion(store))
    store.transition_suggestion(s.id, SuggestionStatus.APPLIED, NOW)
    with pytest.raises(InvalidStateError):
        store.transition_suggestion(s.id, SuggestionStatus.REJECTED, NOW)
    with pytest.raises(InvalidStateError):
        store.transition_suggestion(s.id, SuggestionStatus.PENDING, NOW)


# ------------- Accounts -------------
def test_account_registry(store, ad_account):
    acc = store.get_account(ACCOUNT_ID)
    assert acc.status is AccountStatus.CONNECTED
    assert [a.ad_account_id for a in acc.active_ad_accounts()] == [AD_ACCOUNT_ID]
    assert acc.can_export(NOW)

    store.set_account_status(ACCOUNT_ID, AccountStatus.NEEDS_RECONNECT)
    assert not store.get_account(ACCOUNT_ID).can_export(NOW)


def test_expired_account_cannot_export(store, ad_account):
    store.upsert_account(ACCOUNT_ID, "tok", expires_at=NOW - timedelta(seconds=1))
    assert not store.get_account(ACCOUNT_ID).can_export(NOW)


def test_sync_stamps(store, ad_account):
    at = datetime(2024, 6, 14, 8, 30, tzinfo=timezone.utc)
    store.mark_ad_account_synced(AD_ACCOUNT_ID, insight_at=at)
    store.mark_ad_account_synced(AD_ACCOUNT_ID, adset_at=at + timedelta(hours=1))
    aa = store.get_ad_account(AD_ACCOUNT_ID)
    assert aa.last_sync_insight == at
    assert aa.last_sync_adset == at + timedelta(hours=1)


def test_sync_run_log(store):
    run_id = store.start_sync_run(AD_ACCOUNT_ID, "insights", since=date(2024, 6, 1), until=date(2024, 6, 14))
    store.finish_sync_run(run_id, status="succeeded", report_run_id="r1", records_fetched=10, records_stored=8,
                          error_count=2, error="2 bad rows")
    runs = store.list_sync_runs(AD_ACCOUNT_ID)
    assert runs[0]["status"] == "succeeded"
    assert runs[0]["records_stored"] == 8
    assert runs[0]["since"] == "2024-06-01"
