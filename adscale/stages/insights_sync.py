from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from ..analytics.metrics import map_batch
from ..config import MAX_ERRORS_REPORTED, SYNC_LOOKBACK_DAYS
from ..infrastructure.error_handling import ExternalServiceError, OperationCancelled, TokenError
from ..infrastructure.storage import Store
from ..integrations.meta_client import AsyncReportClient
from ..models import AdAccount, DateRange
from ..utils import Clock, RealClock, day_in_tz, today_in_tz

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    ad_account_id: str
    success: bool
    date_range: Optional[DateRange] = None
    report_run_id: Optional[str] = None
    records_fetched: int = 0
    facts_stored: int = 0
    records_failed: int = 0
    errors: List[str] = field(default_factory=list)
    error_code: Optional[str] = None


class InsightSyncer:
    """create report -> poll -> download CSV -> map rows -> upsert facts, for one ad account."""

    def __init__(self, store: Store, client: AsyncReportClient, clock: Optional[Clock] = None,
                 lookback_days: int = SYNC_LOOKBACK_DAYS):
        self.store = store
        self.client = client
        self.clock = clock or RealClock()
        self.lookback_days = lookback_days

    def sync_range(self, ad_account: AdAccount) -> DateRange:
        """From the day of the last successful sync (re-pulled, it may have been partial) or the lookback window."""
        today = today_in_tz(self.clock, ad_account.timezone)
        if ad_account.last_sync_insight is not None:
            since = min(day_in_tz(ad_account.last_sync_insight, ad_account.timezone), today)
        else:
            since = today - timedelta(days=self.lookback_days)
        return DateRange(since=since, until=today)

    def sync(self, access_token: str, ad_account: AdAccount, cancel: Optional[threading.Event] = None,
             deadline: Optional[float] = None, date_range: Optional[DateRange] = None) -> SyncResult:
        aid = ad_account.ad_account_id
        rng = date_range or self.sync_range(ad_account)
        result = SyncResult(ad_account_id=aid, success=False, date_range=rng)
        run_id = self.store.start_sync_run(aid, "insights", since=rng.since, until=rng.until)
        try:
            report_run_id = self.client.create_report(access_token, aid, rng, cancel=cancel)
            result.report_run_id = report_run_id
            status = self.client.poll_until_done(access_token, report_run_id, cancel=cancel, deadline=deadline)
            if not status.completed:
                result.errors.append(f"Report {report_run_id} failed: {status.error or status.async_status}")
                result.error_code = "report_failed"
                return result
            export = self.client.fetch_export(access_token, report_run_id, cancel=cancel, deadline=deadline)
            result.records_fetched = export.record_count
            batch = map_batch(export.rows, aid)
            result.records_failed = len(batch.errors)
            if batch.aggregate_error is not None:
                result.errors.append(batch.aggregate_error.message)
            result.facts_stored = self.store.upsert_insights(batch.facts)
            self.store.mark_ad_account_synced(aid, insight_at=self.clock.now_utc())
            result.success = True
            logger.info(
                f"{aid}: synced {result.facts_stored} fact(s) from {result.records_fetched} record(s), "
                f"{result.records_failed} rejected"
            )
            return result
        except TokenError as e:
            result.errors.append(e.message)
            result.error_code = e.code
            raise
        except (ExternalServiceError, OperationCancelled) as e:
            logger.error(f"{aid}: insight sync failed: {e.message}")
            result.errors.append(e.message)
            result.error_code = e.code
            return result
        finally:
            self.store.finish_sync_run(
                run_id,
                status="succeeded" if result.success else "failed",
                report_run_id=result.report_run_id,
                records_fetched=result.records_fetched,
                records_stored=result.facts_stored,
                error_count=len(result.errors) + result.records_failed,
                error="; ".join(result.errors[:MAX_ERRORS_REPORTED]) or None,
            )

