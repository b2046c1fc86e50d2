from __future__ import annotations

import copy
import logging
import os
from typing import Any, Dict, Final, Optional

import jsonschema
import yaml

from .infrastructure.error_handling import ConfigurationError, ValidationError
from .models import METRIC_NAMES

logger: Final = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH: Final[str] = "config/settings.yaml"

META_API_VERSION: Final[str] = "v23.0"
META_GRAPH_BASE: Final[str] = "https://graph.facebook.com"
META_EXPORT_URL: Final[str] = "https://www.facebook.com/ads/ads_insights/export_report"
ADS_MANAGER_ADSET_URL: Final[str] = "https://business.facebook.com/adsmanager/manage/adsets"
ADS_MANAGER_CAMPAIGN_URL: Final[str] = "https://business.facebook.com/adsmanager/manage/campaigns"

POLL_INTERVAL_SECONDS: Final[float] = 20.0
POLL_MAX_ATTEMPTS: Final[int] = 60
REQUEST_TIMEOUT_SECONDS: Final[float] = 30.0
EXPORT_TIMEOUT_SECONDS: Final[float] = 300.0

SYNC_LOOKBACK_DAYS: Final[int] = 90
SYNC_TIMEOUT_SECONDS: Final[int] = 1800
ADSET_PAGE_SIZE: Final[int] = 500
MAX_ERRORS_REPORTED: Final[int] = 5

SCALE_PERCENT_MAX: Final[float] = 1000.0

INSIGHT_FIELDS: Final[tuple] = (
    "account_id",
    "campaign_id",
    "adset_id",
    "adset_name",
    "date_start",
    "date_stop",
    "impressions",
    "clicks",
    "spend",
    "cpm",
    "cpc",
    "ctr",
    "reach",
    "frequency",
    "inline_link_click_ctr",
    "cost_per_inline_link_click",
    "cost_per_action_type",
    "purchase_roas",
)

DEFAULT_SETTINGS: Final[Dict[str, Any]] = {
    "meta": {
        "api_version": META_API_VERSION,
        "timeout": REQUEST_TIMEOUT_SECONDS,
        "export_timeout": EXPORT_TIMEOUT_SECONDS,
        "poll_interval": POLL_INTERVAL_SECONDS,
        "poll_max_attempts": POLL_MAX_ATTEMPTS,
        "level": "adset",
    },
    "database": {"path": "data/adscale.sqlite"},
    "sync": {"lookback_days": SYNC_LOOKBACK_DAYS, "timeout_seconds": SYNC_TIMEOUT_SECONDS},
    "scheduler": {"interval_minutes": 60, "max_workers": 4},
    "slack": {"timeout": 10.0},
}

SETTINGS_SCHEMA: Final[Dict[str, Any]] = {
    "type": "object",
    "properties": {
        "meta": {
            "type": "object",
            "properties": {
                "api_version": {"type": "string", "pattern": r"^v\d+\.\d+$"},
                "timeout": {"type": "number", "exclusiveMinimum": 0},
                "export_timeout": {"type": "number", "exclusiveMinimum": 0},
                "poll_interval": {"type": "number", "minimum": 0},
                "poll_max_attempts": {"type": "integer", "minimum": 1},
                "level": {"enum": ["account", "campaign", "adset", "ad"]},
            },
        },
        "database": {
            "type": "object",
            "properties": {"path": {"type": "string", "minLength": 1}},
            "required": ["path"],
        },
        "sync": {
            "type": "object",
            "properties": {
                "lookback_days": {"type": "integer", "minimum": 1},
                "timeout_seconds": {"type": "integer", "minimum": 1},
            },
        },
        "scheduler": {
            "type": "object",
            "properties": {
                "interval_minutes": {"type": "integer", "minimum": 1},
                "max_workers": {"type": "integer", "minimum": 1},
            },
        },
        "slack": {
            "type": "object",
            "properties": {
                "webhook_url": {"type": ["string", "null"]},
                "timeout": {"type": "number", "exclusiveMinimum": 0},
            },
        },
    },
}

ACCOUNT_SETTINGS_SCHEMA: Final[Dict[str, Any]] = {
    "type": "object",
    "properties": {
        "thresholds": {
            "type": "object",
            "propertyNames": {"enum": list(METRIC_NAMES)},
            "additionalProperties": {"type": ["number", "null"], "minimum": 0},
        },
        "scale_percent": {"type": ["number", "null"], "exclusiveMinimum": 0, "maximum": SCALE_PERCENT_MAX},
        "init_scale_day": {"type": ["integer", "null"], "minimum": 0},
        "recur_scale_day": {"type": ["integer", "null"], "minimum": 0},
        "min_metrics_exceeded": {"type": "integer", "minimum": 1},
        "note": {"type": ["string", "null"], "maxLength": 2000},
    },
    "additionalProperties": False,
}

# env var -> (section, key, cast)
_ENV_OVERRIDES: Final[Dict[str, tuple]] = {
    "META_API_VERSION": ("meta", "api_version", str),
    "META_TIMEOUT": ("meta", "timeout", float),
    "META_EXPORT_TIMEOUT": ("meta", "export_timeout", float),
    "META_POLL_INTERVAL": ("meta", "poll_interval", float),
    "META_POLL_MAX_ATTEMPTS": ("meta", "poll_max_attempts", int),
    "ADSCALE_DB_PATH": ("database", "path", str),
    "SYNC_LOOKBACK_DAYS": ("sync", "lookback_days", int),
    "SYNC_TIMEOUT_SECONDS": ("sync", "timeout_seconds", int),
    "SCHEDULER_INTERVAL_MINUTES": ("scheduler", "interval_minutes", int),
    "SCHEDULER_MAX_WORKERS": ("scheduler", "max_workers", int),
    "SLACK_WEBHOOK_URL": ("slack", "webhook_url", str),
    "SLACK_TIMEOUT": ("slack", "timeout", float),
}


def load_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.info(f"Settings file {path} not found, using defaults")
        return {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def apply_env_overrides(settings: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    out = copy.deepcopy(settings)
    for var, (section, key, cast) in _ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        try:
            out.setdefault(section, {})[key] = cast(raw)
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {var}: {raw!r}") from e
    return out


def validate_settings(settings: Dict[str, Any]) -> None:
    try:
        jsonschema.validate(instance=settings, schema=SETTINGS_SCHEMA)
    except jsonschema.ValidationError as e:
        path = ".".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigurationError(f"Invalid settings at {path}: {e.message}") from e


def load_settings(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Defaults <- YAML file <- environment, validated against ``SETTINGS_SCHEMA``."""
    file_cfg = load_yaml(path or DEFAULT_SETTINGS_PATH)
    settings = apply_env_overrides(deep_merge(DEFAULT_SETTINGS, file_cfg), environ)
    validate_settings(settings)
    return settings


def validate_account_settings(payload: Dict[str, Any]) -> None:
    try:
        jsonschema.validate(instance=payload, schema=ACCOUNT_SETTINGS_SCHEMA)
    except jsonschema.ValidationError as e:
        field = ".".join(str(p) for p in e.absolute_path) or None
        raise ValidationError(f"Invalid account settings: {e.message}", field=field, value=e.instance) from e
