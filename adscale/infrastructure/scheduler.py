from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional, Protocol

import schedule

from ..integrations import slack
from ..integrations.slack import NotifyResult

logger = logging.getLogger(__name__)


class TextNotifier(Protocol):
    def notify_text(self, text: str, severity: str = "info", topic: str = "default") -> NotifyResult:
        ...


class BackgroundScheduler:
    """Runs the pipeline every ``interval_minutes`` on a daemon thread.

    ``stop`` sets the cancellation event handed to the pipeline, so an
    in-flight report poll or export download ends at its next checkpoint.
    Start and stop notices and failure alerts go to ``notifier``, which
    defaults to the Slack client configured from the environment.
    """

    def __init__(self, pipeline, interval_minutes: int = 60, poll_seconds: float = 30.0,
                 notifier: Optional[TextNotifier] = None):
        self.pipeline = pipeline
        self.notifier = notifier or slack.client()
        self.tick_interval_minutes = int(interval_minutes) if int(interval_minutes) > 0 else 60
        self.poll_seconds = poll_seconds
        self.running = False
        self.thread: Optional[threading.Thread] = None
        self._cancel = threading.Event()
        self._tick_lock = threading.Lock()
        self._jobs = schedule.Scheduler()
        self.last_result: Any = None

    def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._cancel.clear()
        self._schedule_jobs()
        self.thread = threading.Thread(target=self._run_scheduler, name="adscale-scheduler", daemon=True)
        self.thread.start()
        cadence_label = (
            f"every {self.tick_interval_minutes} minutes"
            if self.tick_interval_minutes < 60 or self.tick_interval_minutes % 60 != 0
            else f"every {self.tick_interval_minutes // 60} hour(s)"
        )
        self._notify(f"🤖 Background scheduler started - syncing {cadence_label}")

    def stop(self, timeout: float = 5.0) -> None:
        if not self.running:
            return
        self.running = False
        self._cancel.set()
        if self.thread:
            self.thread.join(timeout=timeout)
        self._jobs.clear()
        self._notify("🛑 Background scheduler stopped")

    def _notify(self, text: str) -> None:
        logger.info(text)
        self.notifier.notify_text(text)

    def _alert(self, error_msg: str) -> None:
        logger.error(error_msg)
        self.notifier.notify_text(f"🛑 {error_msg}", severity="error", topic="alerts")

    def _schedule_jobs(self) -> None:
        self._jobs.clear()
        if self.tick_interval_minutes % 60 == 0:
            hours = self.tick_interval_minutes // 60
            if hours == 1:
                self._jobs.every().hour.at(":00").do(self.run_tick)
            else:
                self._jobs.every(hours).hours.do(self.run_tick)
        else:
            self._jobs.every(self.tick_interval_minutes).minutes.do(self.run_tick)

    def _run_scheduler(self) -> None:
        while self.running:
            try:
                self._jobs.run_pending()
            except Exception as e:
                self._alert(f"Scheduler error: {e}")
            self._cancel.wait(self.poll_seconds)

    def run_tick(self) -> None:
        """One full pass over all ad accounts. Never raises."""
        if not self._tick_lock.acquire(blocking=False):
            logger.info("Previous tick still running, skipping")
            return
        try:
            result = self._run_stage_safely(self.pipeline.run_all, "Sync and analysis", self._cancel)
            self.last_result = result
            if result is None:
                return
            for r in result.token_failures():
                self._alert(f"{r.ad_account_id}: {r.error_code} - reconnect the Meta account")
            if result.failed:
                self._alert(f"Tick finished with failures: {result.summary()}")
            else:
                logger.info(f"Tick complete: {result.summary()}")
        finally:
            self._tick_lock.release()

    def _run_stage_safely(self, stage_func: Callable[..., Any], stage_name: str, *args, **kwargs) -> Any:
        try:
            return stage_func(*args, **kwargs)
        except Exception as e:
            logger.exception(f"{stage_name} failed")
            self._alert(f"{stage_name} stage failed: {e}")
            return None


_scheduler: Optional[BackgroundScheduler] = None


def start_background_scheduler(pipeline, interval_minutes: int = 60,
                               notifier: Optional[TextNotifier] = None) -> BackgroundScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = BackgroundScheduler(pipeline, interval_minutes, notifier=notifier)
    _scheduler.start()
    return _scheduler


def stop_background_scheduler() -> None:
    global _scheduler
    if _scheduler is not None:
        _scheduler.stop()
        _scheduler = None


def get_scheduler() -> Optional[BackgroundScheduler]:
    return _scheduler
