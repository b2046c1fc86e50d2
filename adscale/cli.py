"""
adscale command line.

    adscale add-account 1234 --token EAAB... --ad-account act_987 --currency USD --timezone America/New_York
    adscale settings act_987 --set '{"thresholds": {"cpc": 1.5}, "scale_percent": 20}'
    adscale run
    adscale suggestions --status pending
    adscale sync-runs act_987 --adset 238...
    adscale approve <suggestion-id>
    adscale schedule --interval 60
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
from datetime import date
from typing import Any, Dict, Optional, Sequence

from dotenv import load_dotenv

from .config import DEFAULT_SETTINGS_PATH, load_settings, validate_account_settings
from .infrastructure.error_handling import AdScaleError, ConfigurationError, ValidationError
from .infrastructure.scheduler import (
    get_scheduler,
    start_background_scheduler,
    stop_background_scheduler,
)
from .infrastructure.storage import Store
from .integrations.slack import RecordingNotifier
from .models import AccountSettings, AccountStatus, AdAccount, DateRange, Suggestion, SuggestionStatus
from .pipeline import Pipeline
from .rules.rules import thresholds_summary
from .stages.approval import SuggestionLifecycle
from .utils import format_money, iso, normalize_ad_account_id, parse_optional_datetime

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    noise_levels = {
        "urllib3": logging.WARNING,
        "schedule": logging.WARNING,
        "facebook_business": logging.WARNING,
    }
    for name, level in noise_levels.items():
        logging.getLogger(name).setLevel(level)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _suggestion_row(s: Suggestion) -> Dict[str, Any]:
    return {
        "id": s.id,
        "status": s.status.value,
        "ad_account_id": s.ad_account_id,
        "target": s.target.value,
        "adset_id": s.adset_id,
        "adset_name": s.adset_name,
        "campaign_id": s.campaign_id,
        "campaign_name": s.campaign_name,
        "budget": format_money(s.budget, s.currency),
        "budget_after_scale": format_money(s.budget_after_scale, s.currency),
        "scale_percent": s.scale_percent,
        "metrics": [m.to_dict() for m in s.metrics],
        "link": s.link,
        "created_at": iso(s.created_at),
        "updated_at": iso(s.updated_at),
    }


def _settings_view(s: AccountSettings) -> Dict[str, Any]:
    return {
        "ad_account_id": s.ad_account_id,
        "thresholds": thresholds_summary(s),
        "scale_percent": s.scale_percent,
        "init_scale_day": s.init_scale_day,
        "recur_scale_day": s.recur_scale_day,
        "min_metrics_exceeded": s.min_metrics_exceeded,
        "note": s.note,
        "updated_at": iso(s.updated_at),
    }


def merge_account_settings(current: AccountSettings, payload: Dict[str, Any]) -> AccountSettings:
    """Apply a validated partial payload. Thresholds merge per metric; ``null`` clears one."""
    validate_account_settings(payload)
    thresholds = dict(current.thresholds)
    for metric, value in (payload.get("thresholds") or {}).items():
        if value is None:
            thresholds.pop(metric, None)
        else:
            thresholds[metric] = float(value)
    return AccountSettings(
        ad_account_id=current.ad_account_id,
        thresholds=thresholds,
        scale_percent=payload.get("scale_percent", current.scale_percent),
        init_scale_day=payload.get("init_scale_day", current.init_scale_day),
        recur_scale_day=payload.get("recur_scale_day", current.recur_scale_day),
        min_metrics_exceeded=payload.get("min_metrics_exceeded", current.min_metrics_exceeded),
        note=payload.get("note", current.note),
    )


# ------------- Commands -------------
def cmd_add_account(args, settings: Dict[str, Any], store: Store) -> int:
    token = args.token or os.getenv("META_ACCESS_TOKEN")
    if not token:
        raise ConfigurationError("An access token is required (--token or META_ACCESS_TOKEN)")
    store.upsert_account(
        args.account_id, token,
        status=AccountStatus.CONNECTED,
        expires_at=parse_optional_datetime(args.expires_at),
        name=args.name,
    )
    for raw in args.ad_account or []:
        store.upsert_ad_account(AdAccount(
            account_id=args.account_id,
            ad_account_id=normalize_ad_account_id(raw),
            currency=args.currency,
            timezone=args.timezone,
        ))
    print(f"Account {args.account_id} saved with {len(args.ad_account or [])} ad account(s)")
    return 0


def cmd_sync_insights(args, pipeline: Pipeline) -> int:
    rng = None
    if args.since or args.until:
        if not (args.since and args.until):
            raise ConfigurationError("--since and --until must be given together")
        rng = DateRange(since=date.fromisoformat(args.since), until=date.fromisoformat(args.until))
    res = pipeline.sync_insights(args.ad_account, date_range=rng)
    _print_json({
        "ad_account_id": res.ad_account_id,
        "success": res.success,
        "report_run_id": res.report_run_id,
        "records_fetched": res.records_fetched,
        "facts_stored": res.facts_stored,
        "records_failed": res.records_failed,
        "errors": res.errors,
    })
    return 0 if res.success else 1


def cmd_sync_metadata(args, pipeline: Pipeline) -> int:
    res = pipeline.sync_metadata(args.ad_account, full=args.full)
    _print_json({
        "ad_account_id": res.ad_account_id,
        "success": res.success,
        "adsets_synced": res.adsets_synced,
        "campaigns_synced": res.campaigns_synced,
        "errors": res.errors,
    })
    return 0 if res.success else 1


def cmd_analyze(args, pipeline: Pipeline) -> int:
    if args.ad_account:
        res = pipeline.analyze(args.ad_account)
        _print_json({
            "ad_account_id": res.ad_account_id,
            "success": res.success,
            "adsets_processed": res.adsets_processed,
            "campaigns_processed": res.campaigns_processed,
            "suggestions_created": res.suggestions_created,
            "errors": res.errors,
            "suggestions": [_suggestion_row(s) for s in res.suggestions],
        })
        return 0 if res.success else 1
    batch = pipeline.engine.analyze_all()
    print(batch.summary())
    return 0 if batch.failed == 0 else 1


def cmd_run(args, pipeline: Pipeline) -> int:
    run = pipeline.run_all()
    print(run.summary())
    for r in run.token_failures():
        print(f"  {r.ad_account_id}: {r.error_code}", file=sys.stderr)
    return 0 if run.failed == 0 else 1


def cmd_approve(args, pipeline: Pipeline) -> int:
    s = SuggestionLifecycle(pipeline.store, pipeline.clock).approve(args.suggestion_id)
    _print_json(_suggestion_row(s))
    return 0


def cmd_reject(args, pipeline: Pipeline) -> int:
    s = SuggestionLifecycle(pipeline.store, pipeline.clock).reject(args.suggestion_id)
    _print_json(_suggestion_row(s))
    return 0


def cmd_suggestions(args, settings: Dict[str, Any], store: Store) -> int:
    if args.id:
        _print_json(_suggestion_row(store.get_suggestion(args.id)))
        return 0
    status = SuggestionStatus(args.status) if args.status else None
    aid = normalize_ad_account_id(args.ad_account) if args.ad_account else None
    rows = [_suggestion_row(s) for s in store.list_suggestions(aid, status, limit=args.limit)]
    _print_json(rows)
    return 0


def cmd_sync_runs(args, settings: Dict[str, Any], store: Store) -> int:
    aid = normalize_ad_account_id(args.ad_account)
    view: Dict[str, Any] = {
        "ad_account_id": aid,
        "insight_rows": store.count_insights(aid),
        "runs": store.list_sync_runs(aid, limit=args.limit),
    }
    if args.adset:
        fact = store.latest_insight(aid, args.adset)
        view["latest_insight"] = None if fact is None else {
            "adset_id": fact.adset_id,
            "campaign_id": fact.campaign_id,
            "day": fact.day.isoformat(),
            **{k: v for k, v in fact.metrics().items() if v is not None},
        }
    _print_json(view)
    return 0


def cmd_settings(args, settings: Dict[str, Any], store: Store) -> int:
    aid = normalize_ad_account_id(args.ad_account)
    current = store.get_account_settings(aid) or AccountSettings.defaults(aid)
    payload: Optional[Dict[str, Any]] = None
    try:
        if args.file:
            with open(args.file, "r", encoding="utf-8") as f:
                payload = json.load(f)
        elif args.set:
            payload = json.loads(args.set)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Settings payload is not valid JSON: {e}") from e
    if payload is not None:
        current = merge_account_settings(current, payload)
        store.save_account_settings(current)
        current = store.get_account_settings(aid) or current
        logger.info(f"{aid}: settings updated")
    _print_json(_settings_view(current))
    return 0


def cmd_schedule(args, pipeline: Pipeline, settings: Dict[str, Any]) -> int:
    interval = args.interval or int(settings["scheduler"]["interval_minutes"])
    stop = threading.Event()
    start_background_scheduler(pipeline, interval, notifier=pipeline.notifier)
    print(f"Scheduler running every {interval} minute(s). Press Ctrl+C to stop")
    try:
        if args.run_now:
            sched = get_scheduler()
            if sched is not None:
                sched.run_tick()
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        print("\n🛑 Scheduler stopped by user")
    finally:
        stop_background_scheduler()
    return 0


# ------------- Parser -------------
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="adscale", description="Meta insights sync and budget scale suggestions")
    parser.add_argument("--settings", default=DEFAULT_SETTINGS_PATH)
    parser.add_argument("--db", default=None, help="override database.path")
    parser.add_argument("--verbose", "-v", action="store_true")
    parser.add_argument("--no-notify", action="store_true", help="collect notifications instead of posting to Slack")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("add-account", help="register an account token and its ad accounts")
    p.add_argument("account_id")
    p.add_argument("--token", default=None)
    p.add_argument("--expires-at", default=None)
    p.add_argument("--name", default=None)
    p.add_argument("--ad-account", action="append", help="repeatable")
    p.add_argument("--currency", default=None)
    p.add_argument("--timezone", default=None)

    p = sub.add_parser("sync-insights", help="pull daily insights for one ad account")
    p.add_argument("ad_account")
    p.add_argument("--since", default=None, help="YYYY-MM-DD")
    p.add_argument("--until", default=None, help="YYYY-MM-DD")

    p = sub.add_parser("sync-metadata", help="pull ad-set and campaign configuration")
    p.add_argument("ad_account")
    p.add_argument("--full", action="store_true", help="ignore the last sync timestamp")

    p = sub.add_parser("analyze", help="create scale suggestions")
    p.add_argument("ad_account", nargs="?", default=None)

    sub.add_parser("run", help="sync and analyze every active ad account")

    p = sub.add_parser("approve", help="mark a suggestion applied")
    p.add_argument("suggestion_id")
    p = sub.add_parser("reject", help="mark a suggestion rejected")
    p.add_argument("suggestion_id")

    p = sub.add_parser("suggestions", help="list suggestions")
    p.add_argument("--ad-account", default=None)
    p.add_argument("--status", choices=[s.value for s in SuggestionStatus], default=None)
    p.add_argument("--id", default=None)
    p.add_argument("--limit", type=int, default=50)

    p = sub.add_parser("sync-runs", help="recent sync runs and stored insight rows for an ad account")
    p.add_argument("ad_account")
    p.add_argument("--limit", type=int, default=20)
    p.add_argument("--adset", default=None, help="also show this ad set's latest stored insight")

    p = sub.add_parser("settings", help="show or update an ad account's thresholds")
    p.add_argument("ad_account")
    group = p.add_mutually_exclusive_group()
    group.add_argument("--set", default=None, help="JSON object with the fields to change")
    group.add_argument("--file", default=None, help="JSON file with the fields to change")

    p = sub.add_parser("schedule", help="run the periodic sync in the foreground")
    p.add_argument("--interval", type=int, default=None, help="minutes between runs")
    p.add_argument("--run-now", action="store_true")
    return parser


_STORE_COMMANDS = {
    "add-account": cmd_add_account,
    "suggestions": cmd_suggestions,
    "settings": cmd_settings,
    "sync-runs": cmd_sync_runs,
}

_PIPELINE_COMMANDS = {
    "sync-insights": cmd_sync_insights,
    "sync-metadata": cmd_sync_metadata,
    "analyze": cmd_analyze,
    "run": cmd_run,
    "approve": cmd_approve,
    "reject": cmd_reject,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    load_dotenv()
    configure_logging(args.verbose)

    try:
        settings = load_settings(args.settings)
    except ConfigurationError as e:
        print(f"Fatal configuration error: {e.message}", file=sys.stderr)
        return 2
    if args.db:
        settings["database"]["path"] = args.db

    store = Store(settings["database"]["path"])
    recorder: Optional[RecordingNotifier] = RecordingNotifier() if args.no_notify else None
    pipeline: Optional[Pipeline] = None
    try:
        if args.command in _STORE_COMMANDS:
            return _STORE_COMMANDS[args.command](args, settings, store)
        pipeline = Pipeline.from_settings(settings, store=store, notifier=recorder)
        if args.command == "schedule":
            return cmd_schedule(args, pipeline, settings)
        return _PIPELINE_COMMANDS[args.command](args, pipeline)
    except AdScaleError as e:
        logger.error(f"{args.command} failed: {e.message}")
        _print_json(e.to_dict())
        return 1
    finally:
        if recorder is not None and recorder.sent:
            count = sum(len(batch) for batch in recorder.sent)
            print(f"{count} suggestion(s) not posted (--no-notify)")
        if pipeline is not None:
            pipeline.close()
        store.close()


if __name__ == "__main__":
    sys.exit(main())
