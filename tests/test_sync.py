from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from adscale.infrastructure.error_handling import ValidationError
from adscale.models import AdAccount, DateRange
from adscale.stages.insights_sync import InsightSyncer
from adscale.stages.metadata_sync import map_adset, map_campaign

from conftest import NOW

USD = AdAccount(account_id="1001", ad_account_id="act_111", currency="USD", timezone="America/New_York")
JPY = AdAccount(account_id="1001", ad_account_id="act_222", currency="JPY", timezone="Asia/Tokyo")


def test_map_adset_converts_minor_units_and_campaign():
    adset = map_adset({
        "id": "s1",
        "name": "Prospecting",
        "campaign": {"id": "c1", "name": "Summer"},
        "status": "ACTIVE",
        "daily_budget": "12345",
        "lifetime_budget": "0",
        "start_time": "2024-06-01T09:00:00-0700",
    }, USD, NOW)
    assert adset.daily_budget == Decimal("123.45")
    assert adset.lifetime_budget is None
    assert adset.campaign_id == "c1" and adset.campaign_name == "Summer"
    assert adset.start_time == datetime(2024, 6, 1, 16, 0, tzinfo=timezone.utc)
    assert adset.currency == "USD"
    assert adset.synced_at == NOW


def test_map_adset_zero_decimal_currency():
    assert map_adset({"id": "s1", "daily_budget": "5000"}, JPY, NOW).daily_budget == Decimal("5000")


def test_map_adset_flat_campaign_id():
    adset = map_adset({"id": "s1", "campaign_id": "c9"}, USD, NOW)
    assert adset.campaign_id == "c9"
    assert adset.campaign_name is None


@pytest.mark.parametrize("raw", [{}, {"id": "  "}, {"id": "s1", "start_time": "yesterday"}])
def test_map_adset_rejects_bad_rows(raw):
    with pytest.raises(ValidationError):
        map_adset(raw, USD, NOW)


def test_map_campaign():
    camp = map_campaign({"id": "c1", "name": "Summer", "objective": "OUTCOME_SALES", "daily_budget": "2500"}, USD, NOW)
    assert camp.daily_budget == Decimal("25.00")
    assert camp.objective == "OUTCOME_SALES"


def test_sync_range_uses_ad_account_timezone(store, clock):
    syncer = InsightSyncer(store, client=None, clock=clock, lookback_days=90)
    # 12:00 UTC is already the 15th in New York and 21:00 on the 15th in Tokyo
    assert syncer.sync_range(USD) == DateRange(since=date(2024, 3, 17), until=date(2024, 6, 15))
    clock.advance(hours=13)
    assert syncer.sync_range(JPY).until == date(2024, 6, 16)
    assert syncer.sync_range(USD).until == date(2024, 6, 15)


def test_sync_range_resumes_from_last_sync_day(store, clock):
    syncer = InsightSyncer(store, client=None, clock=clock)
    synced = AdAccount(account_id="1001", ad_account_id="act_111", timezone="America/New_York",
                       last_sync_insight=datetime(2024, 6, 12, 3, 0, tzinfo=timezone.utc))
    # 03:00 UTC on the 12th is still the 11th in New York
    assert syncer.sync_range(synced) == DateRange(since=date(2024, 6, 11), until=date(2024, 6, 15))
