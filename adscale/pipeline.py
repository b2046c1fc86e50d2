"""
Composition root: one place that wires the store, the Meta clients, the token
provider and the suggestion engine together and runs them per ad account.

The scheduler and the CLI both go through ``Pipeline``; on-demand and periodic
runs therefore share the same per-ad-account lock.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from .config import MAX_ERRORS_REPORTED, SYNC_LOOKBACK_DAYS, SYNC_TIMEOUT_SECONDS
from .infrastructure.error_handling import (
    NotFoundError,
    OperationCancelled,
    TokenError,
    TokenExpired,
    summarize_errors,
)
from .infrastructure.storage import Store
from .integrations.meta_client import AsyncReportClient, ClientConfig, MetaMetadataClient
from .integrations.slack import SlackClient
from .integrations.tokens import StoreTokenProvider, TokenProvider
from .models import AdAccount, DateRange
from .stages.insights_sync import InsightSyncer, SyncResult
from .stages.metadata_sync import MetadataSyncer, MetadataSyncResult
from .stages.scaling import AnalysisResult, SuggestionEngine, SuggestionNotifier
from .utils import Clock, default_clock, normalize_ad_account_id

logger = logging.getLogger(__name__)


@dataclass
class AdAccountRunResult:
    account_id: str
    ad_account_id: str
    skipped: bool = False
    insights: Optional[SyncResult] = None
    metadata: Optional[MetadataSyncResult] = None
    analysis: Optional[AnalysisResult] = None
    error_code: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        if self.skipped:
            return True
        stages = [s for s in (self.insights, self.metadata, self.analysis) if s is not None]
        return self.error_code is None and bool(stages) and all(s.success for s in stages)

    @property
    def suggestions_created(self) -> int:
        return self.analysis.suggestions_created if self.analysis else 0

    def all_errors(self) -> List[str]:
        out = list(self.errors)
        for stage in (self.insights, self.metadata, self.analysis):
            if stage is not None:
                out.extend(stage.errors)
        return out


@dataclass
class RunResult:
    results: List[AdAccountRunResult] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return sum(1 for r in self.results if not r.skipped)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def suggestions_created(self) -> int:
        return sum(r.suggestions_created for r in self.results)

    def token_failures(self) -> List[AdAccountRunResult]:
        return [r for r in self.results if r.error_code in ("token_expired", "needs_reconnect", "token_error")]

    def summary(self) -> str:
        line = (f"{self.processed} ad account(s) processed, {self.failed} failed, "
                f"{self.suggestions_created} suggestion(s) created")
        errors = [f"{r.ad_account_id}: {e}" for r in self.results for e in r.all_errors()]
        if errors:
            line += f" | {summarize_errors(errors, MAX_ERRORS_REPORTED)}"
        return line


class Pipeline:
    def __init__(self, store: Store, report_client: AsyncReportClient, metadata_client: MetaMetadataClient,
                 engine: SuggestionEngine, tokens: Optional[TokenProvider] = None, clock: Optional[Clock] = None,
                 timeout_seconds: float = SYNC_TIMEOUT_SECONDS, lookback_days: int = SYNC_LOOKBACK_DAYS,
                 max_workers: int = 4, session: Optional[requests.Session] = None):
        self.store = store
        self.clock = clock or default_clock()
        self.tokens = tokens or StoreTokenProvider(store, self.clock)
        self.insights = InsightSyncer(store, report_client, self.clock, lookback_days=lookback_days)
        self.metadata = MetadataSyncer(store, metadata_client, self.clock)
        self.engine = engine
        self.timeout_seconds = timeout_seconds
        self.max_workers = max(1, int(max_workers))
        self._session = session
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Dict[str, Any], store: Optional[Store] = None,
                      notifier: Optional[SuggestionNotifier] = None,
                      clock: Optional[Clock] = None) -> "Pipeline":
        store = store or Store(settings["database"]["path"])
        clock = clock or default_clock()
        if notifier is None:
            slack_cfg = settings.get("slack") or {}
            webhook = slack_cfg.get("webhook_url")
            notifier = SlackClient(
                webhooks={"default": webhook} if webhook else None,
                timeout=float(slack_cfg.get("timeout") or 10.0),
            )
        cfg = ClientConfig.from_settings(settings)
        session = requests.Session()
        sync_cfg = settings.get("sync") or {}
        sched_cfg = settings.get("scheduler") or {}
        return cls(
            store=store,
            report_client=AsyncReportClient(cfg, session=session),
            metadata_client=MetaMetadataClient(cfg),
            engine=SuggestionEngine(store, notifier=notifier, clock=clock),
            clock=clock,
            timeout_seconds=float(sync_cfg.get("timeout_seconds") or SYNC_TIMEOUT_SECONDS),
            lookback_days=int(sync_cfg.get("lookback_days") or SYNC_LOOKBACK_DAYS),
            max_workers=int(sched_cfg.get("max_workers") or 4),
            session=session,
        )

    @property
    def notifier(self) -> Any:
        """The notifier built from ``slack.*`` settings, shared with the scheduler's alerts."""
        return self.engine.notifier

    def close(self) -> None:
        if self._session is not None:
            self._session.close()

    # ------------- Helpers -------------
    def _lock_for(self, ad_account_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(ad_account_id, threading.Lock())

    def _ad_account(self, ad_account_id: str) -> AdAccount:
        aid = normalize_ad_account_id(ad_account_id)
        ad_account = self.store.get_ad_account(aid)
        if ad_account is None:
            raise NotFoundError(f"Ad account {aid} not found", ad_account_id=aid)
        return ad_account

    def _on_token_expired(self, account_id: str, e: TokenError) -> None:
        logger.warning(f"Account {account_id}: {e.message}")
        try:
            self.tokens.mark_needs_reconnect(account_id)
        except NotFoundError:
            logger.warning(f"Account {account_id} vanished before it could be flagged")

    # ------------- On-demand stages -------------
    def sync_insights(self, ad_account_id: str, cancel: Optional[threading.Event] = None,
                      date_range: Optional[DateRange] = None) -> SyncResult:
        ad_account = self._ad_account(ad_account_id)
        token = self.tokens.get_valid_access_token(ad_account.account_id)
        deadline = time.monotonic() + self.timeout_seconds
        try:
            return self.insights.sync(token, ad_account, cancel=cancel, deadline=deadline, date_range=date_range)
        except TokenExpired as e:
            self._on_token_expired(ad_account.account_id, e)
            raise

    def sync_metadata(self, ad_account_id: str, cancel: Optional[threading.Event] = None,
                      full: bool = False) -> MetadataSyncResult:
        ad_account = self._ad_account(ad_account_id)
        token = self.tokens.get_valid_access_token(ad_account.account_id)
        try:
            return self.metadata.sync(token, ad_account, cancel=cancel, full=full)
        except TokenExpired as e:
            self._on_token_expired(ad_account.account_id, e)
            raise

    def analyze(self, ad_account_id: str) -> AnalysisResult:
        return self.engine.analyze(normalize_ad_account_id(ad_account_id))

    # ------------- Full runs -------------
    def run_ad_account(self, ad_account: AdAccount, access_token: str,
                       cancel: Optional[threading.Event] = None) -> AdAccountRunResult:
        """Insights, then metadata, then analysis for one ad account.

        A second concurrent run for the same ad account returns immediately
        with ``skipped=True``.
        """
        aid = ad_account.ad_account_id
        out = AdAccountRunResult(account_id=ad_account.account_id, ad_account_id=aid)
        lock = self._lock_for(aid)
        if not lock.acquire(blocking=False):
            logger.info(f"{aid}: run already in progress, skipping")
            out.skipped = True
            return out
        deadline = time.monotonic() + self.timeout_seconds
        try:
            out.insights = self.insights.sync(access_token, ad_account, cancel=cancel, deadline=deadline)
            if cancel is not None and cancel.is_set():
                raise OperationCancelled(f"{aid}: run cancelled")
            # re-read so the metadata stage sees the refreshed sync stamps
            ad_account = self.store.get_ad_account(aid) or ad_account
            out.metadata = self.metadata.sync(access_token, ad_account, cancel=cancel)
            if cancel is not None and cancel.is_set():
                raise OperationCancelled(f"{aid}: run cancelled")
            out.analysis = self.engine.analyze(aid)
        except TokenError as e:
            out.error_code = e.code
            out.errors.append(e.message)
            if isinstance(e, TokenExpired):
                self._on_token_expired(ad_account.account_id, e)
        except OperationCancelled as e:
            out.error_code = e.code
            out.errors.append(e.message)
        except Exception as e:
            logger.exception(f"{aid}: run failed")
            out.error_code = getattr(e, "code", "error")
            out.errors.append(str(e))
        finally:
            lock.release()
        return out

    def run_all(self, cancel: Optional[threading.Event] = None) -> RunResult:
        """Run every active ad account of every account in parallel.

        Token problems are resolved per account before any work is submitted
        and show up as results with a ``token_expired`` or ``needs_reconnect``
        error code.
        """
        run = RunResult()
        jobs = []
        for account in self.store.list_accounts():
            ad_accounts = account.active_ad_accounts()
            if not ad_accounts:
                continue
            try:
                token = self.tokens.get_valid_access_token(account.account_id)
            except TokenError as e:
                logger.warning(f"Account {account.account_id}: {e.message}")
                for ad in ad_accounts:
                    run.results.append(AdAccountRunResult(
                        account_id=account.account_id, ad_account_id=ad.ad_account_id,
                        error_code=e.code, errors=[e.message],
                    ))
                continue
            jobs.extend((ad, token) for ad in ad_accounts)

        if jobs:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(jobs)),
                                    thread_name_prefix="adscale-run") as pool:
                futures = [pool.submit(self.run_ad_account, ad, token, cancel) for ad, token in jobs]
                run.results.extend(f.result() for f in futures)
        logger.info(f"Run complete: {run.summary()}")
        return run
