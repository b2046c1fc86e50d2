"""Domain records shared by the sync pipeline and the suggestion engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

METRIC_NAMES: Tuple[str, ...] = (
    "impressions",
    "clicks",
    "spend",
    "cpm",
    "cpc",
    "ctr",
    "reach",
    "frequency",
    "link_ctr",
    "cost_per_link_click",
    "cost_per_result",
    "roas",
)


class SuggestionStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not SuggestionStatus.PENDING


class SuggestionTarget(str, Enum):
    ADSET = "adset"
    CAMPAIGN = "campaign"


class ReportState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class AccountStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    NEEDS_RECONNECT = "needs_reconnect"


@dataclass(frozen=True)
class DateRange:
    since: date
    until: date

    def as_params(self) -> Dict[str, str]:
        return {"since": self.since.isoformat(), "until": self.until.isoformat()}


@dataclass(frozen=True)
class InsightFact:
    ad_account_id: str
    account_id: str
    campaign_id: str
    adset_id: str
    day: date
    impressions: Optional[float] = None
    clicks: Optional[float] = None
    spend: Optional[float] = None
    cpm: Optional[float] = None
    cpc: Optional[float] = None
    ctr: Optional[float] = None
    reach: Optional[float] = None
    frequency: Optional[float] = None
    link_ctr: Optional[float] = None
    cost_per_link_click: Optional[float] = None
    cost_per_result: Optional[float] = None
    roas: Optional[float] = None

    @property
    def key(self) -> Tuple[str, str, date]:
        return (self.ad_account_id, self.adset_id, self.day)

    def metric(self, name: str) -> Optional[float]:
        return getattr(self, name)

    def metrics(self) -> Dict[str, Optional[float]]:
        return {name: getattr(self, name) for name in METRIC_NAMES}


@dataclass(frozen=True)
class AdSetMetadata:
    account_id: str
    ad_account_id: str
    adset_id: str
    adset_name: Optional[str] = None
    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None
    status: Optional[str] = None
    currency: Optional[str] = None
    daily_budget: Optional[Decimal] = None
    lifetime_budget: Optional[Decimal] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    last_scaled_at: Optional[datetime] = None
    updated_time: Optional[datetime] = None
    synced_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return (self.status or "").upper() == "ACTIVE"


@dataclass(frozen=True)
class CampaignMetadata:
    account_id: str
    ad_account_id: str
    campaign_id: str
    name: Optional[str] = None
    status: Optional[str] = None
    objective: Optional[str] = None
    daily_budget: Optional[Decimal] = None
    lifetime_budget: Optional[Decimal] = None
    start_time: Optional[datetime] = None
    stop_time: Optional[datetime] = None
    last_scaled_at: Optional[datetime] = None
    updated_time: Optional[datetime] = None
    synced_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return (self.status or "").upper() == "ACTIVE"


@dataclass(frozen=True)
class AccountSettings:
    """Per ad-account thresholds and scaling policy.

    A threshold of ``None`` means the metric is not evaluated; 0 is a real
    threshold.
    """

    ad_account_id: str
    thresholds: Dict[str, Optional[float]] = field(default_factory=dict)
    scale_percent: Optional[float] = None
    init_scale_day: Optional[int] = None
    recur_scale_day: Optional[int] = None
    min_metrics_exceeded: int = 1
    note: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def defaults(cls, ad_account_id: str) -> "AccountSettings":
        return cls(ad_account_id=ad_account_id)

    def configured_thresholds(self) -> Dict[str, float]:
        return {k: float(v) for k, v in self.thresholds.items() if v is not None}


@dataclass(frozen=True)
class TriggeredMetric:
    metric_name: str
    value: float
    threshold: float
    direction: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric_name": self.metric_name,
            "value": self.value,
            "threshold": self.threshold,
            "direction": self.direction,
        }


@dataclass(frozen=True)
class Suggestion:
    """A proposed daily budget increase for one ad set, or for one campaign
    whose budget is set at campaign level (``adset_id`` is then ``None``)."""

    id: str
    account_id: str
    ad_account_id: str
    adset_id: Optional[str]
    status: SuggestionStatus
    budget: Decimal
    budget_after_scale: Decimal
    scale_percent: float
    metrics: Tuple[TriggeredMetric, ...] = ()
    metrics_exceeded_count: int = 0
    ad_account_name: Optional[str] = None
    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None
    adset_name: Optional[str] = None
    link: Optional[str] = None
    currency: Optional[str] = None
    note: Optional[str] = None
    target: SuggestionTarget = SuggestionTarget.ADSET
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def target_id(self) -> str:
        if self.target is SuggestionTarget.CAMPAIGN:
            return self.campaign_id or ""
        return self.adset_id or ""


@dataclass(frozen=True)
class AdAccount:
    account_id: str
    ad_account_id: str
    name: Optional[str] = None
    currency: Optional[str] = None
    timezone: Optional[str] = None
    status: int = 1
    is_active: bool = True
    last_sync_insight: Optional[datetime] = None
    last_sync_adset: Optional[datetime] = None

    @property
    def is_enabled(self) -> bool:
        return self.is_active and self.status == 1


@dataclass(frozen=True)
class Account:
    account_id: str
    access_token: Optional[str]
    status: AccountStatus = AccountStatus.CONNECTED
    expires_at: Optional[datetime] = None
    name: Optional[str] = None
    ad_accounts: Tuple[AdAccount, ...] = ()

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def can_export(self, now: datetime) -> bool:
        return (
            self.status is AccountStatus.CONNECTED
            and not self.is_expired(now)
            and len(self.ad_accounts) > 0
        )

    def active_ad_accounts(self) -> List[AdAccount]:
        return [a for a in self.ad_accounts if a.is_enabled]
