import json
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from adscale.infrastructure.error_handling import circuit_breaker_manager
from adscale.infrastructure.storage import Store
from adscale.integrations.slack import RecordingNotifier
from adscale.models import AccountSettings, AdAccount, AdSetMetadata, CampaignMetadata, InsightFact
from adscale.utils import FixedClock

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)
ACCOUNT_ID = "1001"
AD_ACCOUNT_ID = "act_111"


class FakeResponse:
    """Just enough of requests.Response for the Graph and export calls."""

    def __init__(self, status_code=200, body=None, content=b"", headers=None, chunks=None):
        self.status_code = status_code
        self._body = body
        self.headers = headers or {}
        self._chunks = chunks if chunks is not None else ([content] if content else [])
        self.text = json.dumps(body) if body is not None else content.decode("utf-8", errors="replace")

    def json(self):
        if self._body is None:
            raise ValueError("no JSON body")
        return self._body

    def iter_content(self, chunk_size=1):
        for c in self._chunks:
            yield c

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def close(self):
        pass


class FakeSession:
    """Queue of canned responses. An Exception in the queue is raised instead of returned."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []
        self.closed = False

    def _next(self):
        if not self.responses:
            raise AssertionError("FakeSession ran out of responses")
        r = self.responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        return self._next()

    def get(self, url, **kwargs):
        self.calls.append(("GET", url, kwargs))
        return self._next()

    def post(self, url, **kwargs):
        self.calls.append(("POST", url, kwargs))
        return self._next()

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def _reset_breakers():
    circuit_breaker_manager.reset_all()
    yield
    circuit_breaker_manager.reset_all()


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def store(tmp_path):
    s = Store(str(tmp_path / "adscale.sqlite"))
    yield s
    s.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def ad_account(store):
    """A connected account with one USD ad account."""
    store.upsert_account(ACCOUNT_ID, "token-abc", name="Acme")
    aa = AdAccount(account_id=ACCOUNT_ID, ad_account_id=AD_ACCOUNT_ID, name="Acme US",
                   currency="USD", timezone="America/New_York")
    store.upsert_ad_account(aa)
    return aa


def make_fact(adset_id="s1", day=date(2024, 6, 14), ad_account_id=AD_ACCOUNT_ID, campaign_id="c1", **metrics):
    return InsightFact(
        ad_account_id=ad_account_id,
        account_id=ad_account_id[len("act_"):],
        campaign_id=campaign_id,
        adset_id=adset_id,
        day=day,
        **metrics,
    )


def make_adset(adset_id="s1", daily_budget="100.00", status="ACTIVE", currency="USD",
               start_time=datetime(2024, 6, 1, tzinfo=timezone.utc), ad_account_id=AD_ACCOUNT_ID, **kw):
    return AdSetMetadata(
        account_id=ACCOUNT_ID,
        ad_account_id=ad_account_id,
        adset_id=adset_id,
        adset_name=kw.pop("adset_name", f"Ad set {adset_id}"),
        campaign_id=kw.pop("campaign_id", "c1"),
        campaign_name=kw.pop("campaign_name", "Summer"),
        status=status,
        currency=currency,
        daily_budget=Decimal(daily_budget) if daily_budget is not None else None,
        start_time=start_time,
        **kw,
    )


def make_campaign(campaign_id="c1", daily_budget="500.00", status="ACTIVE",
                  start_time=datetime(2024, 6, 1, tzinfo=timezone.utc), ad_account_id=AD_ACCOUNT_ID, **kw):
    return CampaignMetadata(
        account_id=ACCOUNT_ID,
        ad_account_id=ad_account_id,
        campaign_id=campaign_id,
        name=kw.pop("name", "Summer"),
        status=status,
        daily_budget=Decimal(daily_budget) if daily_budget is not None else None,
        start_time=start_time,
        **kw,
    )


def make_settings(ad_account_id=AD_ACCOUNT_ID, **kw):
    kw.setdefault("thresholds", {"cpc": 1.0})
    kw.setdefault("scale_percent", 20.0)
    return AccountSettings(ad_account_id=ad_account_id, **kw)


@pytest.fixture
def factories():
    """Builders for facts, ad sets, campaigns and settings."""
    class _F:
        fact = staticmethod(make_fact)
        adset = staticmethod(make_adset)
        campaign = staticmethod(make_campaign)
        settings = staticmethod(make_settings)
    return _F
