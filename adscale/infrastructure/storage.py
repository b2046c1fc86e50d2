from __future__ import annotations

import json
import logging
import os
import random
import time
import uuid
from collections import defaultdict
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from functools import wraps
from typing import Any, Callable, Dict, Iterable, List, Optional

from prometheus_client import Counter, Histogram
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from ..models import (
    METRIC_NAMES,
    Account,
    AccountSettings,
    AccountStatus,
    AdAccount,
    AdSetMetadata,
    CampaignMetadata,
    InsightFact,
    Suggestion,
    SuggestionStatus,
    SuggestionTarget,
    TriggeredMetric,
)
from ..utils import iso, parse_optional_datetime
from .error_handling import InvalidStateError, NotFoundError

logger = logging.getLogger(__name__)

UTC = timezone.utc

DB_OPS = Counter("adscale_store_db_ops_total", "DB operations", ["op"])
DB_ERRORS = Counter("adscale_store_db_errors_total", "DB errors", ["op"])
DB_LAT = Histogram("adscale_store_db_latency_seconds", "DB latencies", ["op"])


def _now_utc() -> datetime:
    return datetime.now(UTC)


def _jitter(base: float) -> float:
    return base * (0.8 + 0.4 * random.random())


def _to_json(obj: Any) -> Optional[str]:
    if obj is None:
        return None
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def _from_json(s: Optional[str]) -> Optional[Any]:
    if not s:
        return None
    try:
        return json.loads(s)
    except ValueError:
        logger.warning(f"Ignoring malformed JSON column: {s[:80]!r}")
        return None


def _dec(v: Any) -> Optional[Decimal]:
    return None if v is None else Decimal(str(v))


def _dec_str(v: Optional[Decimal]) -> Optional[str]:
    return None if v is None else str(v)


def _retry_sql(retries: int = 5, base_sleep: float = 0.03, max_sleep: float = 0.5) -> Callable:
    """Retry SQLite lock contention with jittered backoff and a small per-method breaker."""
    def deco(fn: Callable) -> Callable:
        @wraps(fn)
        def wrapper(self, *args, **kwargs):
            state = self._cb[fn.__name__]
            now = time.time()
            if state["open_until"] and now < state["open_until"]:
                raise OperationalError("circuit_open", None, None)
            last_exc: Optional[Exception] = None
            for i in range(retries):
                t0 = time.perf_counter()
                try:
                    DB_OPS.labels(fn.__name__).inc()
                    out = fn(self, *args, **kwargs)
                    DB_LAT.labels(fn.__name__).observe(time.perf_counter() - t0)
                    state["n"] = 0
                    return out
                except OperationalError as e:
                    last_exc = e
                    DB_ERRORS.labels(fn.__name__).inc()
                    time.sleep(min(max_sleep, _jitter(base_sleep * (2 ** i))))
                except Exception:
                    DB_ERRORS.labels(fn.__name__).inc()
                    raise
            state["n"] += 1
            if state["n"] >= 3:
                state["open_until"] = time.time() + 2.0
            assert last_exc is not None
            raise last_exc
        return wrapper
    return deco


_FACT_COLUMNS = ("ad_account_id", "account_id", "campaign_id", "adset_id", "day") + METRIC_NAMES

_ADSET_SYNC_COLUMNS = (
    "account_id", "adset_name", "campaign_id", "campaign_name", "status", "currency",
    "daily_budget", "lifetime_budget", "start_time", "end_time", "updated_time", "synced_at",
)

_CAMPAIGN_SYNC_COLUMNS = (
    "account_id", "name", "status", "objective", "daily_budget", "lifetime_budget",
    "start_time", "stop_time", "updated_time", "synced_at",
)


class Store:
    """SQLite-backed repositories for insights, metadata, settings, suggestions and accounts."""

    SCHEMA_VERSION = 1

    def __init__(self, path: str):
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self.path = path
        self.eng: Engine = create_engine(
            f"sqlite:///{path}",
            connect_args={"check_same_thread": False, "timeout": 30},
            pool_pre_ping=True,
        )
        self._cb: defaultdict = defaultdict(lambda: {"n": 0, "open_until": 0.0})
        self._init_db()

    def close(self) -> None:
        self.eng.dispose()

    def _init_db(self) -> None:
        with self.eng.begin() as c:
            c.exec_driver_sql("PRAGMA journal_mode=WAL;")
            c.exec_driver_sql("PRAGMA synchronous=NORMAL;")
            c.exec_driver_sql("PRAGMA foreign_keys=ON;")
            c.exec_driver_sql("PRAGMA busy_timeout=30000;")
            c.exec_driver_sql("CREATE TABLE IF NOT EXISTS schema_version(version INTEGER NOT NULL);")
            cur = c.execute(text("SELECT version FROM schema_version")).fetchone()
            if not cur:
                c.execute(text("INSERT INTO schema_version(version) VALUES (:v)"), {"v": self.SCHEMA_VERSION})
            c.exec_driver_sql("""
              CREATE TABLE IF NOT EXISTS accounts(
                account_id TEXT PRIMARY KEY,
                name TEXT,
                access_token TEXT,
                status TEXT NOT NULL CHECK(status IN ('connected','disconnected','needs_reconnect')),
                expires_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
              );
            """)
            c.exec_driver_sql("""
              CREATE TABLE IF NOT EXISTS ad_accounts(
                ad_account_id TEXT PRIMARY KEY,
                account_id TEXT NOT NULL REFERENCES accounts(account_id) ON DELETE CASCADE,
                name TEXT,
                currency TEXT,
                timezone TEXT,
                status INTEGER NOT NULL DEFAULT 1,
                is_active INTEGER NOT NULL DEFAULT 1,
                last_sync_insight TEXT,
                last_sync_adset TEXT
              );
            """)
            c.exec_driver_sql("CREATE INDEX IF NOT EXISTS idx_ad_accounts_account ON ad_accounts(account_id);")
            metric_cols = ",\n".join(f"{m} REAL" for m in METRIC_NAMES)
            c.exec_driver_sql(f"""
              CREATE TABLE IF NOT EXISTS insights(
                ad_account_id TEXT NOT NULL,
                account_id TEXT NOT NULL,
                campaign_id TEXT NOT NULL,
                adset_id TEXT NOT NULL,
                day TEXT NOT NULL,
                {metric_cols},
                updated_at TEXT NOT NULL,
                PRIMARY KEY(ad_account_id, adset_id, day)
              );
            """)
            c.exec_driver_sql("""
              CREATE TABLE IF NOT EXISTS adsets(
                ad_account_id TEXT NOT NULL,
                adset_id TEXT NOT NULL,
                account_id TEXT NOT NULL,
                adset_name TEXT,
                campaign_id TEXT,
                campaign_name TEXT,
                status TEXT,
                currency TEXT,
                daily_budget TEXT,
                lifetime_budget TEXT,
                start_time TEXT,
                end_time TEXT,
                last_scaled_at TEXT,
                updated_time TEXT,
                synced_at TEXT,
                PRIMARY KEY(ad_account_id, adset_id)
              );
            """)
            c.exec_driver_sql("""
              CREATE TABLE IF NOT EXISTS campaigns(
                ad_account_id TEXT NOT NULL,
                campaign_id TEXT NOT NULL,
                account_id TEXT NOT NULL,
                name TEXT,
                status TEXT,
                objective TEXT,
                daily_budget TEXT,
                lifetime_budget TEXT,
                start_time TEXT,
                stop_time TEXT,
                last_scaled_at TEXT,
                updated_time TEXT,
                synced_at TEXT,
                PRIMARY KEY(ad_account_id, campaign_id)
              );
            """)
            c.exec_driver_sql("""
              CREATE TABLE IF NOT EXISTS account_settings(
                ad_account_id TEXT PRIMARY KEY,
                thresholds TEXT,
                scale_percent REAL,
                init_scale_day INTEGER,
                recur_scale_day INTEGER,
                min_metrics_exceeded INTEGER NOT NULL DEFAULT 1,
                note TEXT,
                updated_at TEXT NOT NULL
              );
            """)
            c.exec_driver_sql("""
              CREATE TABLE IF NOT EXISTS suggestions(
                id TEXT PRIMARY KEY,
                account_id TEXT NOT NULL,
                ad_account_id TEXT NOT NULL,
                ad_account_name TEXT,
                campaign_id TEXT,
                campaign_name TEXT,
                target TEXT NOT NULL DEFAULT 'adset' CHECK(target IN ('adset','campaign')),
                adset_id TEXT,
                adset_name TEXT,
                link TEXT,
                currency TEXT,
                budget TEXT NOT NULL,
                budget_after_scale TEXT NOT NULL,
                scale_percent REAL NOT NULL,
                metrics TEXT,
                metrics_exceeded_count INTEGER NOT NULL DEFAULT 0,
                note TEXT,
                status TEXT NOT NULL CHECK(status IN ('pending','applied','rejected')),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
              );
            """)
            c.exec_driver_sql(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_suggestions_one_pending "
                "ON suggestions(ad_account_id, adset_id) WHERE status = 'pending' AND target = 'adset';"
            )
            c.exec_driver_sql(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_suggestions_one_pending_campaign "
                "ON suggestions(ad_account_id, campaign_id) WHERE status = 'pending' AND target = 'campaign';"
            )
            c.exec_driver_sql(
                "CREATE INDEX IF NOT EXISTS idx_suggestions_account_status "
                "ON suggestions(ad_account_id, status, created_at DESC);"
            )
            c.exec_driver_sql("""
              CREATE TABLE IF NOT EXISTS sync_runs(
                id TEXT PRIMARY KEY,
                ad_account_id TEXT NOT NULL,
                kind TEXT NOT NULL CHECK(kind IN ('insights','metadata')),
                report_run_id TEXT,
                since TEXT,
                until TEXT,
                status TEXT NOT NULL,
                records_fetched INTEGER NOT NULL DEFAULT 0,
                records_stored INTEGER NOT NULL DEFAULT 0,
                error_count INTEGER NOT NULL DEFAULT 0,
                error TEXT,
                started_at TEXT NOT NULL,
                finished_at TEXT
              );
            """)
            c.exec_driver_sql("CREATE INDEX IF NOT EXISTS idx_sync_runs_account ON sync_runs(ad_account_id, started_at DESC);")

    @contextmanager
    def _begin(self):
        with self.eng.begin() as conn:
            yield conn

    # ------------- Accounts -------------
    @_retry_sql()
    def upsert_account(self, account_id: str, access_token: Optional[str], *,
                       status: AccountStatus = AccountStatus.CONNECTED,
                       expires_at: Optional[datetime] = None, name: Optional[str] = None) -> None:
        now = iso(_now_utc())
        with self._begin() as c:
            c.execute(text("""
              INSERT INTO accounts(account_id, name, access_token, status, expires_at, created_at, updated_at)
              VALUES (:id, :name, :tok, :st, :exp, :now, :now)
              ON CONFLICT(account_id) DO UPDATE SET
                name = COALESCE(excluded.name, accounts.name),
                access_token = excluded.access_token,
                status = excluded.status,
                expires_at = excluded.expires_at,
                updated_at = excluded.updated_at
            """), {"id": account_id, "name": name, "tok": access_token, "st": status.value,
                   "exp": iso(expires_at), "now": now})

    @_retry_sql()
    def set_account_status(self, account_id: str, status: AccountStatus) -> None:
        with self._begin() as c:
            res = c.execute(text("UPDATE accounts SET status=:st, updated_at=:now WHERE account_id=:id"),
                            {"st": status.value, "now": iso(_now_utc()), "id": account_id})
            if res.rowcount == 0:
                raise NotFoundError(f"Account {account_id} not found", account_id=account_id)

    @_retry_sql()
    def upsert_ad_account(self, ad_account: AdAccount) -> None:
        with self._begin() as c:
            c.execute(text("""
              INSERT INTO ad_accounts(ad_account_id, account_id, name, currency, timezone, status, is_active)
              VALUES (:aid, :acc, :name, :cur, :tz, :st, :act)
              ON CONFLICT(ad_account_id) DO UPDATE SET
                account_id = excluded.account_id,
                name = excluded.name,
                currency = excluded.currency,
                timezone = excluded.timezone,
                status = excluded.status,
                is_active = excluded.is_active
            """), {"aid": ad_account.ad_account_id, "acc": ad_account.account_id, "name": ad_account.name,
                   "cur": ad_account.currency, "tz": ad_account.timezone, "st": ad_account.status,
                   "act": 1 if ad_account.is_active else 0})

    @_retry_sql()
    def mark_ad_account_synced(self, ad_account_id: str, *, insight_at: Optional[datetime] = None,
                               adset_at: Optional[datetime] = None) -> None:
        with self._begin() as c:
            c.execute(text("""
              UPDATE ad_accounts SET
                last_sync_insight = COALESCE(:ins, last_sync_insight),
                last_sync_adset = COALESCE(:ads, last_sync_adset)
              WHERE ad_account_id = :aid
            """), {"ins": iso(insight_at), "ads": iso(adset_at), "aid": ad_account_id})

    @staticmethod
    def _row_to_ad_account(r: Dict[str, Any]) -> AdAccount:
        return AdAccount(
            account_id=r["account_id"],
            ad_account_id=r["ad_account_id"],
            name=r["name"],
            currency=r["currency"],
            timezone=r["timezone"],
            status=int(r["status"]),
            is_active=bool(r["is_active"]),
            last_sync_insight=parse_optional_datetime(r["last_sync_insight"]),
            last_sync_adset=parse_optional_datetime(r["last_sync_adset"]),
        )

    @_retry_sql()
    def get_ad_account(self, ad_account_id: str) -> Optional[AdAccount]:
        with self._begin() as c:
            r = c.execute(text("SELECT * FROM ad_accounts WHERE ad_account_id=:aid"),
                          {"aid": ad_account_id}).mappings().fetchone()
        return self._row_to_ad_account(dict(r)) if r else None

    @_retry_sql()
    def get_account(self, account_id: str) -> Optional[Account]:
        with self._begin() as c:
            r = c.execute(text("SELECT * FROM accounts WHERE account_id=:id"), {"id": account_id}).mappings().fetchone()
            if not r:
                return None
            ads = c.execute(text("SELECT * FROM ad_accounts WHERE account_id=:id ORDER BY ad_account_id"),
                            {"id": account_id}).mappings().all()
        return Account(
            account_id=r["account_id"],
            access_token=r["access_token"],
            status=AccountStatus(r["status"]),
            expires_at=parse_optional_datetime(r["expires_at"]),
            name=r["name"],
            ad_accounts=tuple(self._row_to_ad_account(dict(a)) for a in ads),
        )

    def list_accounts(self) -> List[Account]:
        with self._begin() as c:
            ids = [row[0] for row in c.execute(text("SELECT account_id FROM accounts ORDER BY account_id"))]
        out = []
        for account_id in ids:
            acc = self.get_account(account_id)
            if acc is not None:
                out.append(acc)
        return out

    # ------------- Insights -------------
    @staticmethod
    def _fact_params(fact: InsightFact, now: str) -> Dict[str, Any]:
        params: Dict[str, Any] = {col: getattr(fact, col) for col in _FACT_COLUMNS}
        params["day"] = fact.day.isoformat()
        params["updated_at"] = now
        return params

    def _upsert_facts(self, conn, facts: Iterable[InsightFact]) -> int:
        cols = _FACT_COLUMNS + ("updated_at",)
        updates = ", ".join(f"{col} = excluded.{col}" for col in cols
                            if col not in ("ad_account_id", "adset_id", "day"))
        sql = text(
            f"INSERT INTO insights({', '.join(cols)}) VALUES ({', '.join(':' + col for col in cols)}) "
            f"ON CONFLICT(ad_account_id, adset_id, day) DO UPDATE SET {updates}"
        )
        now = iso(_now_utc())
        rows = [self._fact_params(f, now) for f in facts]
        if rows:
            conn.execute(sql, rows)
        return len(rows)

    @_retry_sql()
    def upsert_insight(self, fact: InsightFact) -> None:
        with self._begin() as c:
            self._upsert_facts(c, [fact])

    @_retry_sql()
    def upsert_insights(self, facts: Iterable[InsightFact]) -> int:
        """Upsert a batch in one transaction. Re-upserting a key replaces every metric column."""
        with self._begin() as c:
            return self._upsert_facts(c, list(facts))

    @staticmethod
    def _row_to_fact(r: Dict[str, Any]) -> InsightFact:
        kwargs = {col: r[col] for col in _FACT_COLUMNS}
        kwargs["day"] = date.fromisoformat(r["day"])
        return InsightFact(**kwargs)

    @_retry_sql()
    def latest_insights_by_adset(self, ad_account_id: str) -> Dict[str, InsightFact]:
        with self._begin() as c:
            rows = c.execute(text("""
              SELECT i.* FROM insights i
              JOIN (
                SELECT adset_id, MAX(day) AS max_day FROM insights
                WHERE ad_account_id = :aid GROUP BY adset_id
              ) m ON m.adset_id = i.adset_id AND m.max_day = i.day
              WHERE i.ad_account_id = :aid
            """), {"aid": ad_account_id}).mappings().all()
        return {r["adset_id"]: self._row_to_fact(dict(r)) for r in rows}

    @_retry_sql()
    def latest_insights_by_campaign(self, ad_account_id: str) -> Dict[str, List[InsightFact]]:
        """Every ad-set fact of each campaign's most recent day with data."""
        with self._begin() as c:
            rows = c.execute(text("""
              SELECT i.* FROM insights i
              JOIN (
                SELECT campaign_id, MAX(day) AS max_day FROM insights
                WHERE ad_account_id = :aid GROUP BY campaign_id
              ) m ON m.campaign_id = i.campaign_id AND m.max_day = i.day
              WHERE i.ad_account_id = :aid
              ORDER BY i.campaign_id, i.adset_id
            """), {"aid": ad_account_id}).mappings().all()
        out: Dict[str, List[InsightFact]] = {}
        for r in rows:
            out.setdefault(r["campaign_id"], []).append(self._row_to_fact(dict(r)))
        return out

    @_retry_sql()
    def latest_insight(self, ad_account_id: str, adset_id: str) -> Optional[InsightFact]:
        with self._begin() as c:
            r = c.execute(text("""
              SELECT * FROM insights WHERE ad_account_id=:aid AND adset_id=:sid
              ORDER BY day DESC LIMIT 1
            """), {"aid": ad_account_id, "sid": adset_id}).mappings().fetchone()
        return self._row_to_fact(dict(r)) if r else None

    @_retry_sql()
    def count_insights(self, ad_account_id: str) -> int:
        with self._begin() as c:
            return int(c.execute(text("SELECT COUNT(*) FROM insights WHERE ad_account_id=:aid"),
                                 {"aid": ad_account_id}).scalar() or 0)

    # ------------- Ad-set & campaign metadata -------------
    @staticmethod
    def _adset_params(m: AdSetMetadata) -> Dict[str, Any]:
        return {
            "ad_account_id": m.ad_account_id,
            "adset_id": m.adset_id,
            "account_id": m.account_id,
            "adset_name": m.adset_name,
            "campaign_id": m.campaign_id,
            "campaign_name": m.campaign_name,
            "status": m.status,
            "currency": m.currency,
            "daily_budget": _dec_str(m.daily_budget),
            "lifetime_budget": _dec_str(m.lifetime_budget),
            "start_time": iso(m.start_time),
            "end_time": iso(m.end_time),
            "updated_time": iso(m.updated_time),
            "synced_at": iso(m.synced_at or _now_utc()),
        }

    @_retry_sql()
    def upsert_adsets(self, adsets: Iterable[AdSetMetadata]) -> int:
        """Merge synced ad-set fields. ``last_scaled_at`` is owned by approvals and never overwritten here."""
        cols = ("ad_account_id", "adset_id") + _ADSET_SYNC_COLUMNS
        updates = ", ".join(f"{col} = excluded.{col}" for col in _ADSET_SYNC_COLUMNS)
        sql = text(
            f"INSERT INTO adsets({', '.join(cols)}) VALUES ({', '.join(':' + col for col in cols)}) "
            f"ON CONFLICT(ad_account_id, adset_id) DO UPDATE SET {updates}"
        )
        rows = [self._adset_params(m) for m in adsets]
        if not rows:
            return 0
        with self._begin() as c:
            c.execute(sql, rows)
        return len(rows)

    @staticmethod
    def _row_to_adset(r: Dict[str, Any]) -> AdSetMetadata:
        return AdSetMetadata(
            account_id=r["account_id"],
            ad_account_id=r["ad_account_id"],
            adset_id=r["adset_id"],
            adset_name=r["adset_name"],
            campaign_id=r["campaign_id"],
            campaign_name=r["campaign_name"],
            status=r["status"],
            currency=r["currency"],
            daily_budget=_dec(r["daily_budget"]),
            lifetime_budget=_dec(r["lifetime_budget"]),
            start_time=parse_optional_datetime(r["start_time"]),
            end_time=parse_optional_datetime(r["end_time"]),
            last_scaled_at=parse_optional_datetime(r["last_scaled_at"]),
            updated_time=parse_optional_datetime(r["updated_time"]),
            synced_at=parse_optional_datetime(r["synced_at"]),
        )

    @_retry_sql()
    def list_adsets(self, ad_account_id: str) -> List[AdSetMetadata]:
        with self._begin() as c:
            rows = c.execute(text("SELECT * FROM adsets WHERE ad_account_id=:aid ORDER BY adset_id"),
                             {"aid": ad_account_id}).mappings().all()
        return [self._row_to_adset(dict(r)) for r in rows]

    @_retry_sql()
    def get_adset(self, ad_account_id: str, adset_id: str) -> Optional[AdSetMetadata]:
        with self._begin() as c:
            r = c.execute(text("SELECT * FROM adsets WHERE ad_account_id=:aid AND adset_id=:sid"),
                          {"aid": ad_account_id, "sid": adset_id}).mappings().fetchone()
        return self._row_to_adset(dict(r)) if r else None

    @_retry_sql()
    def mark_adset_scaled(self, ad_account_id: str, adset_id: str, at: datetime) -> None:
        with self._begin() as c:
            res = c.execute(text("UPDATE adsets SET last_scaled_at=:at WHERE ad_account_id=:aid AND adset_id=:sid"),
                            {"at": iso(at), "aid": ad_account_id, "sid": adset_id})
            if res.rowcount == 0:
                raise NotFoundError(f"Ad set {adset_id} not found", ad_account_id=ad_account_id, adset_id=adset_id)

    @_retry_sql()
    def upsert_campaigns(self, campaigns: Iterable[CampaignMetadata]) -> int:
        """Merge synced campaign fields; ``last_scaled_at`` is left alone like on ad sets."""
        cols = ("ad_account_id", "campaign_id") + _CAMPAIGN_SYNC_COLUMNS
        updates = ", ".join(f"{col} = excluded.{col}" for col in _CAMPAIGN_SYNC_COLUMNS)
        sql = text(
            f"INSERT INTO campaigns({', '.join(cols)}) VALUES ({', '.join(':' + col for col in cols)}) "
            f"ON CONFLICT(ad_account_id, campaign_id) DO UPDATE SET {updates}"
        )
        rows = [{
            "ad_account_id": m.ad_account_id,
            "campaign_id": m.campaign_id,
            "account_id": m.account_id,
            "name": m.name,
            "status": m.status,
            "objective": m.objective,
            "daily_budget": _dec_str(m.daily_budget),
            "lifetime_budget": _dec_str(m.lifetime_budget),
            "start_time": iso(m.start_time),
            "stop_time": iso(m.stop_time),
            "updated_time": iso(m.updated_time),
            "synced_at": iso(m.synced_at or _now_utc()),
        } for m in campaigns]
        if not rows:
            return 0
        with self._begin() as c:
            c.execute(sql, rows)
        return len(rows)

    @_retry_sql()
    def campaign_names(self, ad_account_id: str) -> Dict[str, str]:
        with self._begin() as c:
            rows = c.execute(text("SELECT campaign_id, name FROM campaigns WHERE ad_account_id=:aid AND name IS NOT NULL"),
                             {"aid": ad_account_id}).all()
        return {r[0]: r[1] for r in rows}

    @staticmethod
    def _row_to_campaign(r: Dict[str, Any]) -> CampaignMetadata:
        return CampaignMetadata(
            account_id=r["account_id"],
            ad_account_id=r["ad_account_id"],
            campaign_id=r["campaign_id"],
            name=r["name"],
            status=r["status"],
            objective=r["objective"],
            daily_budget=_dec(r["daily_budget"]),
            lifetime_budget=_dec(r["lifetime_budget"]),
            start_time=parse_optional_datetime(r["start_time"]),
            stop_time=parse_optional_datetime(r["stop_time"]),
            last_scaled_at=parse_optional_datetime(r["last_scaled_at"]),
            updated_time=parse_optional_datetime(r["updated_time"]),
            synced_at=parse_optional_datetime(r["synced_at"]),
        )

    @_retry_sql()
    def list_campaigns(self, ad_account_id: str) -> List[CampaignMetadata]:
        with self._begin() as c:
            rows = c.execute(text("SELECT * FROM campaigns WHERE ad_account_id=:aid ORDER BY campaign_id"),
                             {"aid": ad_account_id}).mappings().all()
        return [self._row_to_campaign(dict(r)) for r in rows]

    @_retry_sql()
    def get_campaign(self, ad_account_id: str, campaign_id: str) -> Optional[CampaignMetadata]:
        with self._begin() as c:
            r = c.execute(text("SELECT * FROM campaigns WHERE ad_account_id=:aid AND campaign_id=:cid"),
                          {"aid": ad_account_id, "cid": campaign_id}).mappings().fetchone()
        return self._row_to_campaign(dict(r)) if r else None

    @_retry_sql()
    def mark_campaign_scaled(self, ad_account_id: str, campaign_id: str, at: datetime) -> None:
        with self._begin() as c:
            res = c.execute(text("UPDATE campaigns SET last_scaled_at=:at WHERE ad_account_id=:aid AND campaign_id=:cid"),
                            {"at": iso(at), "aid": ad_account_id, "cid": campaign_id})
            if res.rowcount == 0:
                raise NotFoundError(f"Campaign {campaign_id} not found", ad_account_id=ad_account_id,
                                    campaign_id=campaign_id)

    # ------------- Account settings -------------
    @_retry_sql()
    def get_account_settings(self, ad_account_id: str) -> Optional[AccountSettings]:
        with self._begin() as c:
            r = c.execute(text("SELECT * FROM account_settings WHERE ad_account_id=:aid"),
                          {"aid": ad_account_id}).mappings().fetchone()
        if not r:
            return None
        return AccountSettings(
            ad_account_id=r["ad_account_id"],
            thresholds=_from_json(r["thresholds"]) or {},
            scale_percent=r["scale_percent"],
            init_scale_day=r["init_scale_day"],
            recur_scale_day=r["recur_scale_day"],
            min_metrics_exceeded=int(r["min_metrics_exceeded"] or 1),
            note=r["note"],
            updated_at=parse_optional_datetime(r["updated_at"]),
        )

    @_retry_sql()
    def save_account_settings(self, settings: AccountSettings) -> None:
        with self._begin() as c:
            c.execute(text("""
              INSERT INTO account_settings(ad_account_id, thresholds, scale_percent, init_scale_day,
                                           recur_scale_day, min_metrics_exceeded, note, updated_at)
              VALUES (:aid, :thr, :sp, :isd, :rsd, :mme, :note, :now)
              ON CONFLICT(ad_account_id) DO UPDATE SET
                thresholds = excluded.thresholds,
                scale_percent = excluded.scale_percent,
                init_scale_day = excluded.init_scale_day,
                recur_scale_day = excluded.recur_scale_day,
                min_metrics_exceeded = excluded.min_metrics_exceeded,
                note = excluded.note,
                updated_at = excluded.updated_at
            """), {
                "aid": settings.ad_account_id,
                "thr": _to_json(settings.thresholds),
                "sp": settings.scale_percent,
                "isd": settings.init_scale_day,
                "rsd": settings.recur_scale_day,
                "mme": settings.min_metrics_exceeded,
                "note": settings.note,
                "now": iso(settings.updated_at or _now_utc()),
            })

    # ------------- Suggestions -------------
    @staticmethod
    def _row_to_suggestion(r: Dict[str, Any]) -> Suggestion:
        metrics = tuple(TriggeredMetric(**m) for m in (_from_json(r["metrics"]) or []))
        return Suggestion(
            id=r["id"],
            account_id=r["account_id"],
            ad_account_id=r["ad_account_id"],
            adset_id=r["adset_id"],
            status=SuggestionStatus(r["status"]),
            budget=Decimal(r["budget"]),
            budget_after_scale=Decimal(r["budget_after_scale"]),
            scale_percent=float(r["scale_percent"]),
            metrics=metrics,
            metrics_exceeded_count=int(r["metrics_exceeded_count"]),
            ad_account_name=r["ad_account_name"],
            campaign_id=r["campaign_id"],
            campaign_name=r["campaign_name"],
            adset_name=r["adset_name"],
            link=r["link"],
            currency=r["currency"],
            note=r["note"],
            target=SuggestionTarget(r["target"]),
            created_at=parse_optional_datetime(r["created_at"]),
            updated_at=parse_optional_datetime(r["updated_at"]),
        )

    @staticmethod
    def new_suggestion_id() -> str:
        return str(uuid.uuid4())

    @_retry_sql()
    def create_suggestion(self, s: Suggestion) -> Suggestion:
        """Insert a pending suggestion.

        Raises InvalidStateError when the ad set (or, for a campaign
        suggestion, the campaign) already has a pending suggestion. The
        partial unique indexes ``idx_suggestions_one_pending`` and
        ``idx_suggestions_one_pending_campaign`` enforce this.
        """
        now = s.created_at or _now_utc()
        try:
            with self._begin() as c:
                c.execute(text("""
                  INSERT INTO suggestions(id, account_id, ad_account_id, ad_account_name, campaign_id, campaign_name,
                    target, adset_id, adset_name, link, currency, budget, budget_after_scale, scale_percent,
                    metrics, metrics_exceeded_count, note, status, created_at, updated_at)
                  VALUES (:id, :acc, :aid, :aname, :cid, :cname, :target, :sid, :sname, :link, :cur, :budget,
                    :after, :sp, :metrics, :cnt, :note, :st, :created, :updated)
                """), {
                    "id": s.id, "acc": s.account_id, "aid": s.ad_account_id, "aname": s.ad_account_name,
                    "cid": s.campaign_id, "cname": s.campaign_name, "target": s.target.value,
                    "sid": s.adset_id, "sname": s.adset_name,
                    "link": s.link, "cur": s.currency, "budget": str(s.budget),
                    "after": str(s.budget_after_scale), "sp": s.scale_percent,
                    "metrics": _to_json([m.to_dict() for m in s.metrics]), "cnt": s.metrics_exceeded_count,
                    "note": s.note, "st": s.status.value, "created": iso(now),
                    "updated": iso(s.updated_at or now),
                })
        except IntegrityError as e:
            label = "Campaign" if s.target is SuggestionTarget.CAMPAIGN else "Ad set"
            raise InvalidStateError(
                f"{label} {s.target_id} already has a pending suggestion",
                ad_account_id=s.ad_account_id, target=s.target.value, target_id=s.target_id,
            ) from e
        return self.get_suggestion(s.id)

    @_retry_sql()
    def get_suggestion(self, suggestion_id: str) -> Suggestion:
        with self._begin() as c:
            r = c.execute(text("SELECT * FROM suggestions WHERE id=:id"), {"id": suggestion_id}).mappings().fetchone()
        if not r:
            raise NotFoundError(f"Suggestion {suggestion_id} not found", suggestion_id=suggestion_id)
        return self._row_to_suggestion(dict(r))

    @_retry_sql()
    def list_suggestions(self, ad_account_id: Optional[str] = None,
                         status: Optional[SuggestionStatus] = None, limit: int = 100) -> List[Suggestion]:
        clauses, params = [], {"lim": int(limit)}
        if ad_account_id:
            clauses.append("ad_account_id = :aid")
            params["aid"] = ad_account_id
        if status is not None:
            clauses.append("status = :st")
            params["st"] = status.value
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._begin() as c:
            rows = c.execute(text(f"SELECT * FROM suggestions {where} ORDER BY created_at DESC LIMIT :lim"),
                             params).mappings().all()
        return [self._row_to_suggestion(dict(r)) for r in rows]

    @_retry_sql()
    def pending_adset_ids(self, ad_account_id: str) -> set:
        with self._begin() as c:
            rows = c.execute(text("""
              SELECT adset_id FROM suggestions
              WHERE ad_account_id=:aid AND status='pending' AND target='adset'
            """), {"aid": ad_account_id}).all()
        return {r[0] for r in rows}

    @_retry_sql()
    def pending_campaign_ids(self, ad_account_id: str) -> set:
        with self._begin() as c:
            rows = c.execute(text("""
              SELECT campaign_id FROM suggestions
              WHERE ad_account_id=:aid AND status='pending' AND target='campaign'
            """), {"aid": ad_account_id}).all()
        return {r[0] for r in rows}

    @_retry_sql()
    def transition_suggestion(self, suggestion_id: str, to_status: SuggestionStatus, at: datetime,
                              mark_scaled: bool = False) -> Suggestion:
        """Move a pending suggestion to a terminal status.

        The UPDATE is conditional on ``status = 'pending'``, so of two
        concurrent callers only one sees a changed row. With ``mark_scaled``
        the ``last_scaled_at`` of the suggestion's ad set or campaign is
        stamped in the same transaction.
        """
        if not to_status.is_terminal:
            raise InvalidStateError(f"Cannot transition to {to_status.value}", suggestion_id=suggestion_id)
        with self._begin() as c:
            res = c.execute(text("""
              UPDATE suggestions SET status=:st, updated_at=:at
              WHERE id=:id AND status='pending'
            """), {"st": to_status.value, "at": iso(at), "id": suggestion_id})
            if res.rowcount == 0:
                cur = c.execute(text("SELECT status FROM suggestions WHERE id=:id"), {"id": suggestion_id}).fetchone()
                if cur is None:
                    raise NotFoundError(f"Suggestion {suggestion_id} not found", suggestion_id=suggestion_id)
                raise InvalidStateError(
                    f"Suggestion {suggestion_id} is {cur[0]}, expected pending",
                    suggestion_id=suggestion_id, status=cur[0],
                )
            if mark_scaled:
                c.execute(text("""
                  UPDATE adsets SET last_scaled_at=:at
                  WHERE (ad_account_id, adset_id) = (
                    SELECT ad_account_id, adset_id FROM suggestions WHERE id=:id AND target='adset')
                """), {"at": iso(at), "id": suggestion_id})
                c.execute(text("""
                  UPDATE campaigns SET last_scaled_at=:at
                  WHERE (ad_account_id, campaign_id) = (
                    SELECT ad_account_id, campaign_id FROM suggestions WHERE id=:id AND target='campaign')
                """), {"at": iso(at), "id": suggestion_id})
            r = c.execute(text("SELECT * FROM suggestions WHERE id=:id"), {"id": suggestion_id}).mappings().fetchone()
        return self._row_to_suggestion(dict(r))

    # ------------- Sync runs -------------
    @_retry_sql()
    def start_sync_run(self, ad_account_id: str, kind: str, *, since: Optional[date] = None,
                       until: Optional[date] = None) -> str:
        run_id = str(uuid.uuid4())
        with self._begin() as c:
            c.execute(text("""
              INSERT INTO sync_runs(id, ad_account_id, kind, since, until, status, started_at)
              VALUES (:id, :aid, :kind, :since, :until, 'running', :now)
            """), {"id": run_id, "aid": ad_account_id, "kind": kind,
                   "since": since.isoformat() if since else None,
                   "until": until.isoformat() if until else None, "now": iso(_now_utc())})
        return run_id

    @_retry_sql()
    def finish_sync_run(self, run_id: str, *, status: str, report_run_id: Optional[str] = None,
                        records_fetched: int = 0, records_stored: int = 0, error_count: int = 0,
                        error: Optional[str] = None) -> None:
        with self._begin() as c:
            c.execute(text("""
              UPDATE sync_runs SET status=:st, report_run_id=COALESCE(:rid, report_run_id),
                records_fetched=:rf, records_stored=:rs, error_count=:ec, error=:err, finished_at=:now
              WHERE id=:id
            """), {"st": status, "rid": report_run_id, "rf": records_fetched, "rs": records_stored,
                   "ec": error_count, "err": (error or None) and error[:1000], "now": iso(_now_utc()),
                   "id": run_id})

    @_retry_sql()
    def list_sync_runs(self, ad_account_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        with self._begin() as c:
            rows = c.execute(text("SELECT * FROM sync_runs WHERE ad_account_id=:aid ORDER BY started_at DESC LIMIT :lim"),
                             {"aid": ad_account_id, "lim": int(limit)}).mappings().all()
        return [dict(r) for r in rows]
