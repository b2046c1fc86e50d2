from __future__ import annotations

import logging
import os
import re
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple

import requests
from prometheus_client import Counter, Histogram

from ..models import Suggestion, SuggestionTarget
from ..utils import format_money, getenv_f, getenv_i

logger = logging.getLogger(__name__)

SLACK_TIMEOUT = getenv_f("SLACK_TIMEOUT", 10.0)
SLACK_RETRY_MAX = getenv_i("SLACK_RETRY_MAX", 3)
SLACK_BACKOFF_BASE = getenv_f("SLACK_BACKOFF_BASE", 0.4)
SLACK_BACKOFF_CAP = getenv_f("SLACK_BACKOFF_CAP", 8.0)
SLACK_CB_FAILS = getenv_i("SLACK_CIRCUIT_THRESHOLD", 5)
SLACK_CB_RESET_SEC = getenv_i("SLACK_CIRCUIT_RESET_SEC", 120)
MAX_BLOCKS = 45
MAX_BLOCK_TEXT = 2900

M_SENT = Counter("adscale_slack_sent_total", "Messages sent", ["topic"])
M_FAIL = Counter("adscale_slack_fail_total", "Messages failed", ["topic"])
H_LAT = Histogram("adscale_slack_send_latency_seconds", "Send latency", ["topic"])


def _env_webhooks() -> Dict[str, str]:
    main_webhook = os.getenv("SLACK_WEBHOOK_URL", "") or ""
    return {
        "default": main_webhook,
        "alerts": os.getenv("SLACK_WEBHOOK_ALERTS", "") or main_webhook,
        "scale": os.getenv("SLACK_WEBHOOK_SCALE", "") or main_webhook,
    }


def _truncate(s: str, limit: int) -> str:
    return s if len(s) <= limit else (s[: max(0, limit - 1)] + "…")


def _sanitize_line(text: str) -> str:
    text = re.sub(r"[\x00-\x1f\x7f]", " ", text or "")
    return re.sub(r"\s+", " ", text).strip()


def _mk_section(text: str) -> Dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": _truncate(text, MAX_BLOCK_TEXT)}}


def _mk_context(text: str) -> Dict[str, Any]:
    return {"type": "context", "elements": [{"type": "mrkdwn", "text": _truncate(text, MAX_BLOCK_TEXT)}]}


@dataclass(frozen=True)
class NotifyResult:
    success: bool
    error: Optional[str] = None
    skipped: bool = False


@dataclass
class SlackMessage:
    text: str = ""
    blocks: Optional[List[Dict[str, Any]]] = None
    topic: Literal["default", "alerts", "scale"] = "default"
    severity: Literal["info", "warn", "error"] = "info"

    def payload(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"text": _truncate(self.text, 38000)}
        if self.blocks:
            body["blocks"] = self.blocks[:MAX_BLOCKS]
        return body


def template_suggestions(suggestions: Sequence[Suggestion]) -> SlackMessage:
    """One message listing new scale suggestions, grouped by ad account."""
    by_account: Dict[str, List[Suggestion]] = {}
    for s in suggestions:
        by_account.setdefault(s.ad_account_id, []).append(s)
    blocks: List[Dict[str, Any]] = [
        _mk_section(f"📈 *{len(suggestions)} new scale suggestion(s)*"),
    ]
    for ad_account_id, items in by_account.items():
        name = items[0].ad_account_name or ad_account_id
        lines = [f"*{_sanitize_line(name)}*"]
        for s in items:
            if s.target is SuggestionTarget.CAMPAIGN:
                label = "Campaign " + _sanitize_line(s.campaign_name or s.target_id)
            else:
                label = _sanitize_line(s.adset_name or s.target_id)
            if s.link:
                label = f"<{s.link}|{label}>"
            triggers = ", ".join(f"{m.metric_name} {m.value:g}" for m in s.metrics)
            lines.append(
                f"• {label}: {format_money(s.budget, s.currency)} → "
                f"{format_money(s.budget_after_scale, s.currency)} (+{s.scale_percent:g}%) · {triggers}"
            )
        blocks.append(_mk_section("\n".join(lines)))
    notes = {s.note for s in suggestions if s.note}
    if notes:
        blocks.append(_mk_context(" · ".join(sorted(notes))))
    return SlackMessage(
        text=f"{len(suggestions)} new scale suggestion(s)",
        blocks=blocks,
        topic="scale",
    )


class SlackClient:
    """Webhook sender. Every public method swallows transport errors into a NotifyResult."""

    def __init__(self, webhooks: Optional[Dict[str, str]] = None, session: Optional[requests.Session] = None,
                 timeout: float = SLACK_TIMEOUT, retry_max: int = SLACK_RETRY_MAX,
                 sleep=time.sleep) -> None:
        self.webhooks = webhooks if webhooks is not None else _env_webhooks()
        self.session = session or requests.Session()
        self.timeout = timeout
        self.retry_max = retry_max
        self._sleep = sleep
        self.fail_count = 0
        self.cb_open_until: Optional[float] = None
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def configured(self) -> bool:
        return any(self.webhooks.values())

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self.session.close()

    def route_webhook(self, msg: SlackMessage) -> str:
        return self.webhooks.get(msg.topic) or self.webhooks.get("default") or ""

    def send(self, msg: SlackMessage) -> NotifyResult:
        webhook = self.route_webhook(msg)
        if not webhook:
            logger.debug(f"Slack not configured, dropping {msg.topic} message: {msg.text[:80]}")
            return NotifyResult(success=True, skipped=True)
        if self._circuit_open():
            M_FAIL.labels(msg.topic).inc()
            return NotifyResult(success=False, error="circuit open")
        try:
            ok = self._post_with_retries(webhook, msg.payload(), msg.topic)
        except Exception as e:  # a notification must never break the caller
            logger.exception(f"Slack send failed: {e}")
            ok = False
        if ok:
            M_SENT.labels(msg.topic).inc()
            self._on_success()
            return NotifyResult(success=True)
        M_FAIL.labels(msg.topic).inc()
        self._on_failure()
        return NotifyResult(success=False, error="delivery failed")

    def notify_suggestions(self, suggestions: Sequence[Suggestion]) -> NotifyResult:
        if not suggestions:
            return NotifyResult(success=True, skipped=True)
        return self.send(template_suggestions(suggestions))

    def notify_suggestions_async(self, suggestions: Sequence[Suggestion]) -> "Future[NotifyResult]":
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="slack")
            return self._executor.submit(self.notify_suggestions, list(suggestions))

    def notify_text(self, text: str, severity: Literal["info", "warn", "error"] = "info",
                    topic: Literal["default", "alerts", "scale"] = "default") -> NotifyResult:
        return self.send(SlackMessage(text=text, severity=severity, topic=topic))

    def _post_with_retries(self, webhook: str, payload: Dict[str, Any], topic: str) -> bool:
        attempts = self.retry_max + 1
        for n in range(attempts):
            t0 = time.perf_counter()
            try:
                resp = self.session.post(webhook, json=payload, timeout=self.timeout)
            except requests.RequestException as e:
                logger.warning(f"Slack post failed ({e}), attempt {n + 1}/{attempts}")
                self._sleep(min(SLACK_BACKOFF_CAP, SLACK_BACKOFF_BASE * (2 ** n)))
                continue
            H_LAT.labels(topic).observe(time.perf_counter() - t0)
            sc = resp.status_code
            if 200 <= sc < 300:
                return True
            if sc == 429:
                try:
                    wait = float(resp.headers.get("Retry-After"))
                except (TypeError, ValueError):
                    wait = max(5.0, SLACK_BACKOFF_BASE * (2 ** n))
                wait = min(wait, SLACK_BACKOFF_CAP)
                logger.warning(f"Slack 429 rate limit, backing off {wait:.1f}s (topic={topic})")
                self._sleep(wait)
                continue
            if 500 <= sc < 600:
                self._sleep(min(SLACK_BACKOFF_CAP, SLACK_BACKOFF_BASE * (2 ** n)))
                continue
            logger.error(f"Slack HTTP {sc}: {resp.text[:200]}")
            return False
        return False

    def _circuit_open(self) -> bool:
        return self.cb_open_until is not None and time.time() < self.cb_open_until

    def _on_failure(self) -> None:
        with self._lock:
            self.fail_count += 1
            if self.fail_count >= SLACK_CB_FAILS:
                self.cb_open_until = time.time() + SLACK_CB_RESET_SEC

    def _on_success(self) -> None:
        with self._lock:
            self.fail_count = 0
            self.cb_open_until = None


_client: Optional[SlackClient] = None
_client_lock = threading.Lock()


def client() -> SlackClient:
    global _client
    with _client_lock:
        if _client is None:
            _client = SlackClient()
        return _client


@dataclass
class RecordingNotifier:
    """In-memory notifier for dry runs; keeps what would have been sent."""

    sent: List[List[Suggestion]] = field(default_factory=list)
    texts: List[Tuple[str, str]] = field(default_factory=list)

    def notify_suggestions_async(self, suggestions: Sequence[Suggestion]) -> "Future[NotifyResult]":
        self.sent.append(list(suggestions))
        fut: "Future[NotifyResult]" = Future()
        fut.set_result(NotifyResult(success=True))
        return fut

    def notify_text(self, text: str, severity: Literal["info", "warn", "error"] = "info",
                    topic: Literal["default", "alerts", "scale"] = "default") -> NotifyResult:
        self.texts.append((severity, text))
        return NotifyResult(success=True)
