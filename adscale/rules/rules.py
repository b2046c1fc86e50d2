from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple, Union

from ..models import (
    METRIC_NAMES,
    AccountSettings,
    AdSetMetadata,
    CampaignMetadata,
    InsightFact,
    TriggeredMetric,
)

logger = logging.getLogger(__name__)


class Direction(str, Enum):
    ABOVE = "above"
    BELOW = "below"


# Cost and volume metrics trigger when the observed value is above the
# threshold; efficiency metrics trigger when it is below.
METRIC_DIRECTIONS: Mapping[str, Direction] = {
    "impressions": Direction.ABOVE,
    "clicks": Direction.ABOVE,
    "spend": Direction.ABOVE,
    "cpm": Direction.ABOVE,
    "cpc": Direction.ABOVE,
    "ctr": Direction.BELOW,
    "reach": Direction.ABOVE,
    "frequency": Direction.ABOVE,
    "link_ctr": Direction.BELOW,
    "cost_per_link_click": Direction.ABOVE,
    "cost_per_result": Direction.ABOVE,
    "roas": Direction.BELOW,
}


def _eval(metric: str, value: float, threshold: float) -> Tuple[bool, str]:
    direction = METRIC_DIRECTIONS[metric]
    if direction is Direction.ABOVE:
        ok = value > threshold
        return ok, f"{metric} {value:g} > {threshold:g}" if ok else ""
    ok = value < threshold
    return ok, f"{metric} {value:g} < {threshold:g}" if ok else ""


@dataclass
class RuleEvaluation:
    triggered: List[TriggeredMetric] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)
    absent: List[str] = field(default_factory=list)
    evaluated: int = 0

    @property
    def exceeded_count(self) -> int:
        return len(self.triggered)


class ThresholdRuleEngine:
    """Compares one InsightFact against an account's configured thresholds."""

    def __init__(self, settings: AccountSettings):
        unknown = set(settings.thresholds) - set(METRIC_DIRECTIONS)
        if unknown:
            raise ValueError(f"Unknown threshold metric(s): {', '.join(sorted(unknown))}")
        self.settings = settings
        self.thresholds = settings.configured_thresholds()

    def evaluate(self, fact: InsightFact) -> RuleEvaluation:
        result = RuleEvaluation()
        for metric in METRIC_NAMES:
            threshold = self.thresholds.get(metric)
            if threshold is None:
                continue
            value = fact.metric(metric)
            if value is None:
                result.absent.append(metric)
                continue
            result.evaluated += 1
            ok, reason = _eval(metric, value, threshold)
            if ok:
                result.triggered.append(TriggeredMetric(
                    metric_name=metric,
                    value=value,
                    threshold=threshold,
                    direction=METRIC_DIRECTIONS[metric].value,
                ))
                result.reasons.append(reason)
        return result

    def should_suggest(self, evaluation: RuleEvaluation) -> bool:
        return evaluation.exceeded_count >= max(1, self.settings.min_metrics_exceeded)


def timing_gate(target: Union[AdSetMetadata, CampaignMetadata], settings: AccountSettings,
                now: datetime) -> Tuple[bool, str]:
    """Whether enough days have passed since the ad set or campaign started or was last scaled.

    Boundaries are inclusive: exactly ``init_scale_day`` days after start is eligible.
    """
    if target.last_scaled_at is None:
        if settings.init_scale_day is None or target.start_time is None:
            return True, ""
        ready_at = target.start_time + timedelta(days=settings.init_scale_day)
        if now >= ready_at:
            return True, ""
        return False, f"started {target.start_time.date()}, first scale allowed from {ready_at.date()}"
    if settings.recur_scale_day is None:
        return True, ""
    ready_at = target.last_scaled_at + timedelta(days=settings.recur_scale_day)
    if now >= ready_at:
        return True, ""
    return False, f"scaled {target.last_scaled_at.date()}, next scale allowed from {ready_at.date()}"


def explain(evaluation: RuleEvaluation) -> Optional[str]:
    return "; ".join(evaluation.reasons) or None


def thresholds_summary(settings: AccountSettings) -> Dict[str, str]:
    return {
        m: f"{METRIC_DIRECTIONS[m].value} {v:g}"
        for m, v in settings.configured_thresholds().items()
    }
