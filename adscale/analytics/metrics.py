from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..config import MAX_ERRORS_REPORTED
from ..infrastructure.error_handling import ValidationError, summarize_errors
from ..models import InsightFact
from ..utils import normalize_ad_account_id, numeric_ad_account_id, parse_day, parse_numeric

logger = logging.getLogger(__name__)

# Action types whose cost counts as "cost per result", in priority order.
RESULT_ACTION_TYPES: Tuple[str, ...] = (
    "purchase",
    "offsite_conversion.fb_pixel_purchase",
    "offsite_conversion.purchase",
    "onsite_conversion.purchase",
    "omni_purchase",
    "offsite_conversion.custom",
)

ROAS_ACTION_TYPES: Tuple[str, ...] = (
    "omni_purchase",
    "purchase",
    "offsite_conversion.fb_pixel_purchase",
)

# fact attribute -> accepted column names after header normalization
FIELD_ALIASES: Mapping[str, Tuple[str, ...]] = {
    "account_id": ("account_id",),
    "campaign_id": ("campaign_id",),
    "adset_id": ("adset_id", "ad_set_id"),
    "day": ("date_start", "reporting_starts", "date", "day", "date_stop", "reporting_ends"),
    "impressions": ("impressions",),
    "clicks": ("clicks", "clicks_all"),
    "spend": ("spend", "amount_spent"),
    "cpm": ("cpm", "cpm_cost_per_1_000_impressions"),
    "cpc": ("cpc", "cpc_all", "cpc_cost_per_click_all"),
    "ctr": ("ctr", "ctr_all"),
    "reach": ("reach",),
    "frequency": ("frequency",),
    "link_ctr": ("inline_link_click_ctr", "link_ctr", "ctr_link_click_through_rate"),
    "cost_per_link_click": ("cost_per_inline_link_click", "cost_per_link_click", "cpc_cost_per_link_click"),
    "cost_per_result": ("cost_per_result", "cost_per_results"),
    "roas": ("purchase_roas", "purchase_roas_return_on_ad_spend", "roas"),
}

_SCALAR_METRICS = ("impressions", "clicks", "spend", "cpm", "cpc", "ctr", "reach", "frequency",
                   "link_ctr", "cost_per_link_click")

_CURRENCY_SUFFIX = re.compile(r"\s*\([A-Z]{3}\)\s*$")
_NON_WORD = re.compile(r"[^a-z0-9]+")


def normalize_header(header: str) -> str:
    """``"Amount spent (USD)"`` -> ``"amount_spent"``; ``"Ad set ID"`` -> ``"ad_set_id"``."""
    h = _CURRENCY_SUFFIX.sub("", str(header).strip())
    return _NON_WORD.sub("_", h.lower()).strip("_")


def normalize_row(raw: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in raw.items():
        key = normalize_header(k)
        if key and key not in out:
            out[key] = v
    return out


def _first(row: Mapping[str, Any], name: str) -> Any:
    for alias in FIELD_ALIASES[name]:
        v = row.get(alias)
        if v is not None and str(v).strip() != "":
            return v
    return None


def _as_action_list(v: Any) -> Optional[List[Dict[str, Any]]]:
    if isinstance(v, list):
        return v
    if isinstance(v, str) and v.strip().startswith("["):
        try:
            parsed = json.loads(v)
        except ValueError:
            return None
        return parsed if isinstance(parsed, list) else None
    return None


def _scan_actions(actions: Sequence[Any], candidates: Sequence[str]) -> Optional[float]:
    by_type = {}
    for a in actions:
        if isinstance(a, dict) and a.get("action_type") not in by_type:
            by_type[a.get("action_type")] = a.get("value")
    for at in candidates:
        if at in by_type:
            val = parse_numeric(by_type[at])
            if val is not None:
                return val
    return None


def extract_cost_per_result(row: Mapping[str, Any]) -> Optional[float]:
    actions = _as_action_list(row.get("cost_per_action_type"))
    if actions is not None:
        return _scan_actions(actions, RESULT_ACTION_TYPES)
    return parse_numeric(_first(row, "cost_per_result"))


def extract_roas(row: Mapping[str, Any]) -> Optional[float]:
    raw = _first(row, "roas")
    actions = _as_action_list(raw)
    if actions is not None:
        return _scan_actions(actions, ROAS_ACTION_TYPES)
    return parse_numeric(raw)


def map_record(raw_row: Mapping[str, Any], ad_account_id: str) -> InsightFact:
    """Map one export row to an InsightFact.

    Raises ValidationError when an identifier or the date is missing, or
    when the row belongs to a different ad account.
    """
    row = normalize_row(raw_row)
    ids = {name: _first(row, name) for name in ("account_id", "campaign_id", "adset_id", "day")}
    missing = [name for name, v in ids.items() if v is None]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            field=missing[0],
        )
    act = normalize_ad_account_id(ad_account_id)
    row_account = str(ids["account_id"]).strip()
    if numeric_ad_account_id(row_account) != numeric_ad_account_id(act):
        raise ValidationError(
            f"Row account {row_account} does not belong to {act}",
            field="account_id", value=row_account,
        )
    try:
        day = parse_day(ids["day"])
    except ValueError as e:
        raise ValidationError(f"Invalid date {ids['day']!r}", field="day", value=ids["day"]) from e

    metrics = {name: parse_numeric(_first(row, name)) for name in _SCALAR_METRICS}
    return InsightFact(
        ad_account_id=act,
        account_id=numeric_ad_account_id(row_account),
        campaign_id=str(ids["campaign_id"]).strip(),
        adset_id=str(ids["adset_id"]).strip(),
        day=day,
        cost_per_result=extract_cost_per_result(row),
        roas=extract_roas(row),
        **metrics,
    )


@dataclass(frozen=True)
class RowError:
    index: int
    message: str

    def __str__(self) -> str:
        return f"Record {self.index}: {self.message}"


@dataclass
class MappedBatch:
    facts: List[InsightFact] = field(default_factory=list)
    errors: List[RowError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def aggregate_error(self) -> Optional[ValidationError]:
        if not self.errors:
            return None
        total = len(self.facts) + len(self.errors)
        msg = (f"{len(self.errors)} of {total} record(s) failed validation: "
               f"{summarize_errors(self.errors, MAX_ERRORS_REPORTED)}")
        return ValidationError(msg)


def map_batch(raw_rows: Iterable[Mapping[str, Any]], ad_account_id: str) -> MappedBatch:
    """Map every row, collecting per-row errors instead of failing the batch."""
    batch = MappedBatch()
    for i, raw in enumerate(raw_rows):
        try:
            batch.facts.append(map_record(raw, ad_account_id))
        except ValidationError as e:
            batch.errors.append(RowError(i, e.message))
    if batch.errors:
        logger.warning(f"{ad_account_id}: {len(batch.errors)} record(s) rejected, {len(batch.facts)} mapped")
    return batch


# ------------- Campaign roll-up -------------
_SUMMED = ("impressions", "clicks", "spend", "reach")

# ratio -> (numerator, denominator, scale) over the summed totals
_DERIVED: Mapping[str, Tuple[str, str, float]] = {
    "cpm": ("spend", "impressions", 1000.0),
    "cpc": ("spend", "clicks", 1.0),
    "ctr": ("clicks", "impressions", 100.0),
    "frequency": ("impressions", "reach", 1.0),
}

# ratio -> weight for the weighted mean of the reported values
_WEIGHTED: Mapping[str, str] = {
    "link_ctr": "impressions",
    "roas": "spend",
}

# cost per unit -> spend; units are recovered as spend / cost
_PER_UNIT_COSTS = ("cost_per_link_click", "cost_per_result")


def _sum(facts: Sequence[InsightFact], name: str) -> Optional[float]:
    values = [f.metric(name) for f in facts if f.metric(name) is not None]
    return float(sum(values)) if values else None


def _mean(values: Sequence[float], weights: Optional[Sequence[Optional[float]]] = None) -> float:
    if weights is not None and all(w is not None for w in weights):
        total = sum(weights)
        if total > 0:
            return sum(v * w for v, w in zip(values, weights)) / total
    return sum(values) / len(values)


def _derive(facts: Sequence[InsightFact], name: str, totals: Mapping[str, Optional[float]]) -> Optional[float]:
    num, den, scale = _DERIVED[name]
    complete = all(f.metric(num) is not None and f.metric(den) is not None for f in facts)
    if complete and totals[den]:
        return float(totals[num]) / float(totals[den]) * scale
    reported = [f for f in facts if f.metric(name) is not None]
    if not reported:
        return None
    return _mean([f.metric(name) for f in reported], [f.metric(den) for f in reported])


def _per_unit_cost(facts: Sequence[InsightFact], name: str) -> Optional[float]:
    reported = [f for f in facts if f.metric(name) is not None]
    if not reported:
        return None
    values = [f.metric(name) for f in reported]
    spends = [f.spend for f in reported]
    if all(v > 0 for v in values) and all(s is not None for s in spends):
        units = sum(s / v for s, v in zip(spends, values))
        if units > 0:
            return sum(spends) / units
    return _mean(values)


def aggregate_campaign(facts: Sequence[InsightFact]) -> InsightFact:
    """Roll the ad-set facts of one campaign and day up into a single fact.

    Volumes are summed. Rates are recomputed from the summed volumes when
    every ad set reports both sides, otherwise the reported rates are
    averaged with volume weights. A metric no ad set reports stays absent.
    The returned fact carries an empty ``adset_id``.
    """
    if not facts:
        raise ValueError("Cannot aggregate an empty set of facts")
    first = facts[0]
    if any(f.campaign_id != first.campaign_id or f.day != first.day for f in facts):
        raise ValueError("Facts must share one campaign and day")

    metrics: Dict[str, Optional[float]] = {name: _sum(facts, name) for name in _SUMMED}
    for name in _DERIVED:
        metrics[name] = _derive(facts, name, metrics)
    for name, weight in _WEIGHTED.items():
        reported = [f for f in facts if f.metric(name) is not None]
        metrics[name] = _mean([f.metric(name) for f in reported],
                              [f.metric(weight) for f in reported]) if reported else None
    for name in _PER_UNIT_COSTS:
        metrics[name] = _per_unit_cost(facts, name)

    return InsightFact(
        ad_account_id=first.ad_account_id,
        account_id=first.account_id,
        campaign_id=first.campaign_id,
        adset_id="",
        day=first.day,
        **metrics,
    )
