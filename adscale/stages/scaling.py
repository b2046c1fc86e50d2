"""
Scale suggestions from the latest insight per ad set or campaign.

For every eligible ad set of an ad account (ACTIVE, daily budget set, past its
scale-day gate, no open suggestion, at least one insight day) the latest fact
is compared with the account's thresholds. When enough metrics trip and a
scale percent is configured, a pending suggestion is stored with the budget
the ad set would get and a snapshot for display.

Campaigns that carry the daily budget themselves go through the same gate and
rules, judged on the roll-up of their ad sets' facts for the campaign's latest
day. Suggestions created in one run are announced in a single notification
that never blocks the run.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, Sequence

from prometheus_client import Counter

from ..analytics.metrics import aggregate_campaign
from ..config import ADS_MANAGER_ADSET_URL, ADS_MANAGER_CAMPAIGN_URL, MAX_ERRORS_REPORTED
from ..infrastructure.error_handling import InvalidStateError, summarize_errors
from ..infrastructure.storage import Store
from ..integrations.slack import NotifyResult
from ..models import (
    AccountSettings,
    AdAccount,
    AdSetMetadata,
    CampaignMetadata,
    InsightFact,
    Suggestion,
    SuggestionStatus,
    SuggestionTarget,
)
from ..rules.rules import RuleEvaluation, ThresholdRuleEngine, explain, timing_gate
from ..utils import Clock, RealClock, numeric_ad_account_id, round_money

logger = logging.getLogger(__name__)

SUGGESTIONS_CREATED = Counter("adscale_suggestions_created_total", "Scale suggestions created")
ANALYSIS_ERRORS = Counter("adscale_analysis_errors_total", "Per ad-set analysis failures")


class SuggestionNotifier(Protocol):
    def notify_suggestions_async(self, suggestions: Sequence[Suggestion]) -> "Future[NotifyResult]":
        ...


@dataclass
class AnalysisResult:
    ad_account_id: str
    success: bool = True
    adsets_processed: int = 0
    campaigns_processed: int = 0
    suggestions_created: int = 0
    errors: List[str] = field(default_factory=list)
    suggestions: List[Suggestion] = field(default_factory=list)


@dataclass
class BatchAnalysisResult:
    results: List[AnalysisResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ad_accounts_processed(self) -> int:
        return len(self.results)

    @property
    def suggestions_created(self) -> int:
        return sum(r.suggestions_created for r in self.results)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def summary(self) -> str:
        line = (f"{self.ad_accounts_processed} ad account(s), {self.suggestions_created} suggestion(s), "
                f"{self.failed} failed")
        if self.errors:
            line += f" | {summarize_errors(self.errors, MAX_ERRORS_REPORTED)}"
        return line


def adset_link(ad_account_id: str, adset_id: str) -> str:
    return f"{ADS_MANAGER_ADSET_URL}?act={numeric_ad_account_id(ad_account_id)}&selected_adset_ids={adset_id}"


def campaign_link(ad_account_id: str, campaign_id: str) -> str:
    return (f"{ADS_MANAGER_CAMPAIGN_URL}?act={numeric_ad_account_id(ad_account_id)}"
            f"&selected_campaign_ids={campaign_id}")


def scaled_budget(budget: Decimal, scale_percent: float, currency: Optional[str]) -> Decimal:
    """``budget * (1 + pct/100)`` rounded half-up to the currency's minor unit."""
    factor = Decimal(1) + Decimal(str(scale_percent)) / Decimal(100)
    return round_money(Decimal(budget) * factor, currency)


def _log_notify_outcome(ad_account_id: str, count: int):
    def _done(fut: "Future[NotifyResult]") -> None:
        try:
            res = fut.result()
        except Exception as e:
            logger.error(f"{ad_account_id}: notification of {count} suggestion(s) failed: {e}")
            return
        if not res.success:
            logger.warning(f"{ad_account_id}: notification of {count} suggestion(s) not delivered: {res.error}")
    return _done


class SuggestionEngine:
    def __init__(self, store: Store, notifier: Optional[SuggestionNotifier] = None,
                 clock: Optional[Clock] = None):
        self.store = store
        if notifier is None:
            from ..integrations import slack
            notifier = slack.client()
        self.notifier = notifier
        self.clock = clock or RealClock()
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, ad_account_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(ad_account_id, threading.Lock())

    # ------------- Single ad account -------------
    def analyze(self, ad_account_id: str) -> AnalysisResult:
        with self._lock_for(ad_account_id):
            result = self._analyze(ad_account_id)
        if result.suggestions:
            self._notify(ad_account_id, result.suggestions)
        return result

    def _analyze(self, ad_account_id: str) -> AnalysisResult:
        result = AnalysisResult(ad_account_id=ad_account_id)
        settings = self.store.get_account_settings(ad_account_id) or AccountSettings.defaults(ad_account_id)
        try:
            rules = ThresholdRuleEngine(settings)
        except ValueError as e:
            result.success = False
            result.errors.append(str(e))
            return result
        if not rules.thresholds:
            logger.info(f"{ad_account_id}: no thresholds configured, nothing to analyze")
            return result
        if settings.scale_percent is None:
            logger.info(f"{ad_account_id}: scale_percent not set, suggestions will not be created")

        ad_account = self.store.get_ad_account(ad_account_id)
        self._analyze_adsets(ad_account_id, rules, settings, ad_account, result)
        self._analyze_campaigns(ad_account_id, rules, settings, ad_account, result)

        logger.info(f"{ad_account_id}: analyzed {result.adsets_processed} ad set(s) and "
                    f"{result.campaigns_processed} campaign(s), created {result.suggestions_created} "
                    f"suggestion(s), {len(result.errors)} error(s)")
        return result

    def _store_suggestion(self, suggestion: Suggestion, evaluation: RuleEvaluation,
                          result: AnalysisResult) -> None:
        label = f"{suggestion.ad_account_id}/{suggestion.target_id}"
        try:
            created = self.store.create_suggestion(suggestion)
        except InvalidStateError:
            # another run created one in the meantime
            logger.info(f"{label}: already has a pending suggestion")
            return
        SUGGESTIONS_CREATED.inc()
        result.suggestions.append(created)
        result.suggestions_created += 1
        logger.info(f"{label}: suggest {created.budget} -> {created.budget_after_scale} ({explain(evaluation)})")

    def _analyze_adsets(self, ad_account_id: str, rules: ThresholdRuleEngine, settings: AccountSettings,
                        ad_account: Optional[AdAccount], result: AnalysisResult) -> None:
        now = self.clock.now_utc()
        adsets = [a for a in self.store.list_adsets(ad_account_id) if a.is_active and a.daily_budget is not None]
        pending = self.store.pending_adset_ids(ad_account_id)
        latest = self.store.latest_insights_by_adset(ad_account_id)
        campaign_names = self.store.campaign_names(ad_account_id)

        for adset in adsets:
            ok, why = timing_gate(adset, settings, now)
            if not ok:
                logger.debug(f"{ad_account_id}/{adset.adset_id}: {why}")
                continue
            if adset.adset_id in pending:
                continue
            fact = latest.get(adset.adset_id)
            if fact is None:
                continue
            try:
                evaluation = rules.evaluate(fact)
                result.adsets_processed += 1
                if not rules.should_suggest(evaluation) or settings.scale_percent is None:
                    continue
                suggestion = self.build_suggestion(adset, fact, evaluation, settings, ad_account,
                                                   campaign_names.get(adset.campaign_id or ""))
                self._store_suggestion(suggestion, evaluation, result)
            except Exception as e:
                ANALYSIS_ERRORS.inc()
                logger.exception(f"{ad_account_id}/{adset.adset_id}: analysis failed")
                result.errors.append(f"Ad set {adset.adset_id}: {e}")

    def _analyze_campaigns(self, ad_account_id: str, rules: ThresholdRuleEngine, settings: AccountSettings,
                           ad_account: Optional[AdAccount], result: AnalysisResult) -> None:
        """Campaigns with a campaign-level daily budget, judged on their ad sets' combined latest day."""
        now = self.clock.now_utc()
        campaigns = [c for c in self.store.list_campaigns(ad_account_id) if c.is_active and c.daily_budget is not None]
        if not campaigns:
            return
        pending = self.store.pending_campaign_ids(ad_account_id)
        latest = self.store.latest_insights_by_campaign(ad_account_id)

        for campaign in campaigns:
            ok, why = timing_gate(campaign, settings, now)
            if not ok:
                logger.debug(f"{ad_account_id}/{campaign.campaign_id}: {why}")
                continue
            if campaign.campaign_id in pending:
                continue
            facts = latest.get(campaign.campaign_id)
            if not facts:
                continue
            try:
                fact = aggregate_campaign(facts)
                evaluation = rules.evaluate(fact)
                result.campaigns_processed += 1
                if not rules.should_suggest(evaluation) or settings.scale_percent is None:
                    continue
                suggestion = self.build_campaign_suggestion(campaign, evaluation, settings, ad_account)
                self._store_suggestion(suggestion, evaluation, result)
            except Exception as e:
                ANALYSIS_ERRORS.inc()
                logger.exception(f"{ad_account_id}/{campaign.campaign_id}: campaign analysis failed")
                result.errors.append(f"Campaign {campaign.campaign_id}: {e}")

    def build_suggestion(self, adset: AdSetMetadata, fact: InsightFact, evaluation: RuleEvaluation,
                         settings: AccountSettings, ad_account: Optional[AdAccount] = None,
                         campaign_name: Optional[str] = None) -> Suggestion:
        if adset.daily_budget is None or settings.scale_percent is None:
            raise ValueError(f"Ad set {adset.adset_id} cannot be scaled without a daily budget and scale percent")
        currency = adset.currency or (ad_account.currency if ad_account else None)
        now = self.clock.now_utc()
        return Suggestion(
            id=self.store.new_suggestion_id(),
            account_id=adset.account_id,
            ad_account_id=adset.ad_account_id,
            adset_id=adset.adset_id,
            status=SuggestionStatus.PENDING,
            budget=round_money(adset.daily_budget, currency),
            budget_after_scale=scaled_budget(adset.daily_budget, settings.scale_percent, currency),
            scale_percent=float(settings.scale_percent),
            metrics=tuple(evaluation.triggered),
            metrics_exceeded_count=evaluation.exceeded_count,
            ad_account_name=ad_account.name if ad_account else None,
            campaign_id=adset.campaign_id or fact.campaign_id,
            campaign_name=adset.campaign_name or campaign_name,
            adset_name=adset.adset_name,
            link=adset_link(adset.ad_account_id, adset.adset_id),
            currency=currency,
            note=settings.note,
            created_at=now,
            updated_at=now,
        )

    def build_campaign_suggestion(self, campaign: CampaignMetadata, evaluation: RuleEvaluation,
                                  settings: AccountSettings, ad_account: Optional[AdAccount] = None) -> Suggestion:
        if campaign.daily_budget is None or settings.scale_percent is None:
            raise ValueError(f"Campaign {campaign.campaign_id} cannot be scaled without a daily budget "
                             f"and scale percent")
        currency = ad_account.currency if ad_account else None
        now = self.clock.now_utc()
        return Suggestion(
            id=self.store.new_suggestion_id(),
            account_id=campaign.account_id,
            ad_account_id=campaign.ad_account_id,
            adset_id=None,
            status=SuggestionStatus.PENDING,
            budget=round_money(campaign.daily_budget, currency),
            budget_after_scale=scaled_budget(campaign.daily_budget, settings.scale_percent, currency),
            scale_percent=float(settings.scale_percent),
            metrics=tuple(evaluation.triggered),
            metrics_exceeded_count=evaluation.exceeded_count,
            ad_account_name=ad_account.name if ad_account else None,
            campaign_id=campaign.campaign_id,
            campaign_name=campaign.name,
            link=campaign_link(campaign.ad_account_id, campaign.campaign_id),
            currency=currency,
            note=settings.note,
            target=SuggestionTarget.CAMPAIGN,
            created_at=now,
            updated_at=now,
        )

    def _notify(self, ad_account_id: str, suggestions: List[Suggestion]) -> None:
        try:
            fut = self.notifier.notify_suggestions_async(suggestions)
        except Exception as e:
            logger.error(f"{ad_account_id}: could not schedule notification: {e}")
            return
        fut.add_done_callback(_log_notify_outcome(ad_account_id, len(suggestions)))

    # ------------- All ad accounts -------------
    def analyze_all(self) -> BatchAnalysisResult:
        batch = BatchAnalysisResult()
        now = self.clock.now_utc()
        for account in self.store.list_accounts():
            if not account.can_export(now):
                logger.debug(f"Account {account.account_id} cannot export ({account.status.value}), skipping")
                continue
            for ad_account in account.active_ad_accounts():
                aid = ad_account.ad_account_id
                try:
                    res = self.analyze(aid)
                except Exception as e:
                    logger.exception(f"{aid}: analysis aborted")
                    res = AnalysisResult(ad_account_id=aid, success=False, errors=[str(e)])
                batch.results.append(res)
                batch.errors.extend(f"{aid}: {msg}" for msg in res.errors)
        logger.info(f"Analysis complete: {batch.summary()}")
        return batch
