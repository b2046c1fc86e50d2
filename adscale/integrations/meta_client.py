from __future__ import annotations

import io
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

import pandas as pd
import requests
from facebook_business.adobjects.adaccount import AdAccount as FBAdAccount
from facebook_business.api import FacebookAdsApi, FacebookSession
from facebook_business.exceptions import FacebookRequestError
from prometheus_client import Counter

from ..config import (
    ADSET_PAGE_SIZE,
    EXPORT_TIMEOUT_SECONDS,
    INSIGHT_FIELDS,
    META_API_VERSION,
    META_EXPORT_URL,
    META_GRAPH_BASE,
    POLL_INTERVAL_SECONDS,
    POLL_MAX_ATTEMPTS,
    REQUEST_TIMEOUT_SECONDS,
)
from ..infrastructure.error_handling import (
    CircuitBreakerConfig,
    ExternalServiceError,
    OperationCancelled,
    RetryConfig,
    RetryHandler,
    TokenExpired,
    TransientServiceError,
    circuit_breaker_manager,
)
from ..models import DateRange, ReportState
from ..utils import normalize_ad_account_id

logger = logging.getLogger(__name__)

API_CALLS = Counter("adscale_meta_api_calls_total", "Meta API calls", ["endpoint", "outcome"])

# Graph error codes: 190 invalid/expired token; 1, 2 unknown/service; 4, 17, 341, 613 rate limits.
TOKEN_ERROR_CODES = frozenset({190})
TRANSIENT_ERROR_CODES = frozenset({1, 2, 4, 17, 341, 613})

JOB_COMPLETED = "Job Completed"
JOB_FAILED_STATES = frozenset({"Job Failed", "Job Skipped"})

ADSET_FIELDS: Sequence[str] = (
    "id",
    "name",
    "campaign{id,name}",
    "status",
    "effective_status",
    "daily_budget",
    "lifetime_budget",
    "start_time",
    "end_time",
    "updated_time",
)

CAMPAIGN_FIELDS: Sequence[str] = (
    "id",
    "name",
    "status",
    "objective",
    "daily_budget",
    "lifetime_budget",
    "start_time",
    "stop_time",
    "updated_time",
)

AD_ACCOUNT_FIELDS: Sequence[str] = ("id", "account_id", "name", "currency", "timezone_name", "account_status")


@dataclass
class ClientConfig:
    api_version: str = META_API_VERSION
    timeout: float = REQUEST_TIMEOUT_SECONDS
    export_timeout: float = EXPORT_TIMEOUT_SECONDS
    poll_interval: float = POLL_INTERVAL_SECONDS
    poll_max_attempts: int = POLL_MAX_ATTEMPTS
    level: str = "adset"
    graph_base: str = META_GRAPH_BASE
    export_url: str = META_EXPORT_URL
    retry: RetryConfig = field(default_factory=lambda: RetryConfig(max_retries=3, initial_delay=2.0))

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> "ClientConfig":
        meta = settings.get("meta") or {}
        return cls(
            api_version=str(meta.get("api_version") or META_API_VERSION),
            timeout=float(meta.get("timeout") or REQUEST_TIMEOUT_SECONDS),
            export_timeout=float(meta.get("export_timeout") or EXPORT_TIMEOUT_SECONDS),
            poll_interval=float(meta.get("poll_interval", POLL_INTERVAL_SECONDS)),
            poll_max_attempts=int(meta.get("poll_max_attempts") or POLL_MAX_ATTEMPTS),
            level=str(meta.get("level") or "adset"),
        )


@dataclass(frozen=True)
class ReportStatus:
    report_run_id: str
    state: ReportState
    async_status: str
    percent_complete: int = 0
    attempts: int = 0
    synthetic: bool = False
    error: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.state is ReportState.COMPLETED


@dataclass(frozen=True)
class ReportExport:
    report_run_id: str
    rows: List[Dict[str, str]]

    @property
    def record_count(self) -> int:
        return len(self.rows)


# ------------- Error classification -------------
def _graph_error_from_response(resp: requests.Response, endpoint: str) -> ExternalServiceError:
    err: Dict[str, Any] = {}
    try:
        body = resp.json()
        if isinstance(body, dict):
            err = body.get("error") or {}
    except ValueError:
        pass
    code = err.get("code")
    message = err.get("message") or (resp.text or "")[:300] or f"HTTP {resp.status_code}"
    msg = f"{endpoint}: {message}"
    if code in TOKEN_ERROR_CODES:
        raise TokenExpired(msg)
    if resp.status_code >= 500 or resp.status_code == 429 or code in TRANSIENT_ERROR_CODES:
        return TransientServiceError(msg, status_code=resp.status_code, api_error_code=code)
    return ExternalServiceError(msg, status_code=resp.status_code, api_error_code=code)


def _sdk_error(e: FacebookRequestError, endpoint: str) -> ExternalServiceError:
    code = e.api_error_code()
    status = e.http_status()
    msg = f"{endpoint}: {e.api_error_message() or e}"
    if code in TOKEN_ERROR_CODES:
        raise TokenExpired(msg) from e
    if code in TRANSIENT_ERROR_CODES or (isinstance(status, int) and status >= 500):
        return TransientServiceError(msg, status_code=status, api_error_code=code)
    return ExternalServiceError(msg, status_code=status, api_error_code=code)


def _check_cancel(cancel: Optional[threading.Event], deadline: Optional[float], what: str) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled(f"{what} cancelled")
    if deadline is not None and time.monotonic() >= deadline:
        raise OperationCancelled(f"{what} exceeded its deadline")


class AsyncReportClient:
    """Creates, polls and downloads Meta async insight reports.

    The client keeps no per-report state; the report run id returned by
    ``create_report`` is all a caller needs to carry between calls.
    """

    def __init__(self, cfg: Optional[ClientConfig] = None, session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.cfg = cfg or ClientConfig()
        self.session = session or requests.Session()
        self._sleep = sleep
        self._retry = RetryHandler(self.cfg.retry, sleep=sleep)

    # ------------- HTTP helpers -------------
    def _graph_url(self, endpoint: str) -> str:
        return f"{self.cfg.graph_base}/{self.cfg.api_version}/{endpoint.lstrip('/')}"

    def _graph(self, method: str, endpoint: str, label: str, *, params: Optional[Dict[str, Any]] = None,
               data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            resp = self.session.request(method, self._graph_url(endpoint), params=params, data=data,
                                        timeout=self.cfg.timeout)
        except requests.RequestException as e:
            API_CALLS.labels(label, "network_error").inc()
            raise TransientServiceError(f"{label}: {e}") from e
        if resp.status_code != 200:
            API_CALLS.labels(label, "http_error").inc()
            raise _graph_error_from_response(resp, label)
        try:
            body = resp.json()
        except ValueError as e:
            API_CALLS.labels(label, "bad_json").inc()
            raise ExternalServiceError(f"{label}: response is not JSON") from e
        if isinstance(body, dict) and body.get("error"):
            API_CALLS.labels(label, "api_error").inc()
            raise _graph_error_from_response(resp, label)
        API_CALLS.labels(label, "ok").inc()
        return body

    # ------------- Report lifecycle -------------
    def create_report(self, access_token: str, ad_account_id: str, date_range: DateRange,
                      fields: Sequence[str] = INSIGHT_FIELDS, level: Optional[str] = None,
                      cancel: Optional[threading.Event] = None) -> str:
        act = normalize_ad_account_id(ad_account_id)
        payload = {
            "access_token": access_token,
            "fields": ",".join(fields),
            "level": level or self.cfg.level,
            "time_range": json.dumps(date_range.as_params()),
            "time_increment": 1,
            "filtering": json.dumps([
                {"field": "adset.effective_status", "operator": "IN", "value": ["ACTIVE"]},
            ]),
        }
        breaker = circuit_breaker_manager.get_breaker("meta.insights.create", CircuitBreakerConfig())
        body = self._retry.execute(
            breaker.call, self._graph, "POST", f"{act}/insights", "insights.create", data=payload,
            cancel=cancel,
        )
        report_run_id = body.get("report_run_id") if isinstance(body, dict) else None
        if not report_run_id:
            raise ExternalServiceError(f"insights.create: no report_run_id in response for {act}")
        logger.info(f"{act}: created async report {report_run_id} for {date_range.since}..{date_range.until}")
        return str(report_run_id)

    def poll_until_done(self, access_token: str, report_run_id: str,
                        cancel: Optional[threading.Event] = None,
                        deadline: Optional[float] = None) -> ReportStatus:
        """Poll until the job completes or fails.

        Network errors and 5xx responses consume an attempt and polling
        continues. Running out of attempts returns a synthetic failed status.
        Raises OperationCancelled when ``cancel`` is set or ``deadline``
        (a ``time.monotonic()`` value) passes, and TokenExpired for token errors.
        """
        max_attempts = max(1, self.cfg.poll_max_attempts)
        last_status = "Unknown"
        last_error: Optional[str] = None
        for attempt in range(1, max_attempts + 1):
            _check_cancel(cancel, deadline, f"Polling report {report_run_id}")
            try:
                body = self._graph("GET", report_run_id, "insights.poll", params={
                    "access_token": access_token,
                    "fields": "id,async_status,async_percent_completion",
                })
            except TransientServiceError as e:
                last_error = e.message
                logger.warning(f"Report {report_run_id} poll attempt {attempt}/{max_attempts} failed: {e.message}")
            except TokenExpired:
                raise
            except ExternalServiceError as e:
                return ReportStatus(report_run_id, ReportState.FAILED, last_status, attempts=attempt, error=e.message)
            else:
                last_status = str(body.get("async_status") or "Unknown")
                pct = int(body.get("async_percent_completion") or 0)
                logger.debug(f"Report {report_run_id}: {last_status} ({pct}%)")
                if last_status == JOB_COMPLETED:
                    return ReportStatus(report_run_id, ReportState.COMPLETED, last_status, pct, attempt)
                if last_status in JOB_FAILED_STATES:
                    return ReportStatus(report_run_id, ReportState.FAILED, last_status, pct, attempt,
                                        error=f"Report ended with status {last_status!r}")
            if attempt < max_attempts:
                self._wait(self.cfg.poll_interval, cancel, deadline, report_run_id)

        logger.error(f"Report {report_run_id} did not finish after {max_attempts} attempts")
        return ReportStatus(
            report_run_id, ReportState.FAILED, "Job Failed", attempts=max_attempts, synthetic=True,
            error=last_error or f"Polling exhausted after {max_attempts} attempts (last status {last_status!r})",
        )

    def _wait(self, seconds: float, cancel: Optional[threading.Event], deadline: Optional[float],
              report_run_id: str) -> None:
        if deadline is not None:
            seconds = min(seconds, max(0.0, deadline - time.monotonic()))
        if cancel is not None:
            if cancel.wait(seconds):
                raise OperationCancelled(f"Polling report {report_run_id} cancelled")
        elif seconds > 0:
            self._sleep(seconds)

    def fetch_export(self, access_token: str, report_run_id: str,
                     cancel: Optional[threading.Event] = None,
                     deadline: Optional[float] = None) -> ReportExport:
        """Download the CSV export of a completed report. Not retried."""
        _check_cancel(cancel, deadline, f"Export of report {report_run_id}")
        params = {
            "report_run_id": report_run_id,
            "format": "csv",
            "locale": "en_US",
            "access_token": access_token,
        }
        chunks: List[bytes] = []
        try:
            with self.session.get(self.cfg.export_url, params=params, timeout=self.cfg.export_timeout,
                                  stream=True) as resp:
                if resp.status_code != 200:
                    API_CALLS.labels("insights.export", "http_error").inc()
                    raise _graph_error_from_response(resp, "insights.export")
                ctype = (resp.headers.get("Content-Type") or "").lower()
                if "text/html" in ctype:
                    API_CALLS.labels("insights.export", "bad_content").inc()
                    raise ExternalServiceError(f"insights.export: expected CSV, got {ctype}")
                for chunk in resp.iter_content(chunk_size=64 * 1024):
                    _check_cancel(cancel, deadline, f"Export of report {report_run_id}")
                    if chunk:
                        chunks.append(chunk)
        except requests.RequestException as e:
            API_CALLS.labels("insights.export", "network_error").inc()
            raise ExternalServiceError(f"insights.export: {e}") from e
        API_CALLS.labels("insights.export", "ok").inc()
        rows = parse_csv_export(b"".join(chunks))
        logger.info(f"Report {report_run_id}: downloaded {len(rows)} record(s)")
        return ReportExport(report_run_id, rows)


def parse_csv_export(raw: bytes) -> List[Dict[str, str]]:
    text = raw.decode("utf-8-sig", errors="replace")
    if not text.strip():
        return []
    try:
        df = pd.read_csv(io.StringIO(text), dtype=str, keep_default_na=False)
    except pd.errors.EmptyDataError:
        return []
    except pd.errors.ParserError as e:
        raise ExternalServiceError(f"insights.export: malformed CSV: {e}") from e
    return df.to_dict(orient="records")


class MetaMetadataClient:
    """Reads ad account, ad-set and campaign configuration through the Marketing API SDK."""

    def __init__(self, cfg: Optional[ClientConfig] = None,
                 api_factory: Optional[Callable[[str], FacebookAdsApi]] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.cfg = cfg or ClientConfig()
        self._api_factory = api_factory or self._default_api
        self._retry = RetryHandler(self.cfg.retry, sleep=sleep)

    def _default_api(self, access_token: str) -> FacebookAdsApi:
        session = FacebookSession(access_token=access_token, timeout=self.cfg.timeout)
        return FacebookAdsApi(session, api_version=self.cfg.api_version)

    def _account(self, access_token: str, ad_account_id: str) -> FBAdAccount:
        return FBAdAccount(normalize_ad_account_id(ad_account_id), api=self._api_factory(access_token))

    def _call(self, label: str, fn: Callable[[], Any], cancel: Optional[threading.Event] = None) -> Any:
        breaker = circuit_breaker_manager.get_breaker(f"meta.{label}", CircuitBreakerConfig())

        def attempt() -> Any:
            try:
                out = fn()
            except FacebookRequestError as e:
                API_CALLS.labels(label, "api_error").inc()
                raise _sdk_error(e, label)
            except requests.RequestException as e:
                API_CALLS.labels(label, "network_error").inc()
                raise TransientServiceError(f"{label}: {e}") from e
            API_CALLS.labels(label, "ok").inc()
            return out

        return self._retry.execute(breaker.call, attempt, cancel=cancel)

    def fetch_ad_account(self, access_token: str, ad_account_id: str) -> Dict[str, Any]:
        account = self._account(access_token, ad_account_id)
        return self._call("adaccount.get", lambda: account.api_get(fields=list(AD_ACCOUNT_FIELDS)).export_all_data())

    def fetch_adsets(self, access_token: str, ad_account_id: str, updated_since: Optional[datetime] = None,
                     cancel: Optional[threading.Event] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"limit": ADSET_PAGE_SIZE}
        if updated_since is not None:
            params["filtering"] = [{
                "field": "updated_time",
                "operator": "GREATER_THAN",
                "value": int(updated_since.timestamp()),
            }]
        account = self._account(access_token, ad_account_id)
        return self._call(
            "adsets.list",
            lambda: [a.export_all_data() for a in account.get_ad_sets(fields=list(ADSET_FIELDS), params=params)],
            cancel=cancel,
        )

    def fetch_campaigns(self, access_token: str, ad_account_id: str, updated_since: Optional[datetime] = None,
                        cancel: Optional[threading.Event] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"limit": ADSET_PAGE_SIZE}
        if updated_since is not None:
            params["filtering"] = [{
                "field": "updated_time",
                "operator": "GREATER_THAN",
                "value": int(updated_since.timestamp()),
            }]
        account = self._account(access_token, ad_account_id)
        return self._call(
            "campaigns.list",
            lambda: [c.export_all_data() for c in account.get_campaigns(fields=list(CAMPAIGN_FIELDS), params=params)],
            cancel=cancel,
        )
