"""
Risk Classifier — velocity forecast → risk level, alert type, severity.

Rules, in evaluation order:
  1. acceleration > daily × 0.5                 → HIGH      VELOCITY_SPIKE
  2. daily > 15 and trend == INCREASING         → MEDIUM    FAST_SELLING_WARNING
  3. days until stockout ≤ 7                    → CRITICAL  IMMINENT_STOCKOUT
  4. trend == ACCELERATING                      → HIGH      VELOCITY_TREND_CHANGE

Resolution of multiple matches:
  - "max_severity" (default): the most severe match wins; ties go to the
    later rule.
  - "last_match": the last matching rule wins regardless of severity.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from ml.velocity import VelocityForecast

SPIKE_RATIO = 0.5
FAST_SELLING_UNITS = 15
IMMINENT_STOCKOUT_DAYS = 7

RESOLUTION_MAX_SEVERITY = "max_severity"
RESOLUTION_LAST_MATCH = "last_match"

SEVERITY_RANK = {"INFO": 0, "LOW": 1, "MEDIUM": 2, "HIGH": 3, "CRITICAL": 4}


@dataclass(frozen=True)
class RiskOutcome:
    risk_level: str
    alert_type: str
    severity: str


@dataclass(frozen=True)
class RiskAssessment:
    risk_level: str
    should_alert: bool
    alert_type: str | None = None
    severity: str | None = None


@dataclass(frozen=True)
class RiskRule:
    name: str
    condition: Callable[[VelocityForecast], bool]
    outcome: RiskOutcome


RISK_RULES: tuple[RiskRule, ...] = (
    RiskRule(
        name="velocity_spike",
        condition=lambda f: f.acceleration > f.daily_velocity * SPIKE_RATIO,
        outcome=RiskOutcome("HIGH", "VELOCITY_SPIKE", "HIGH"),
    ),
    RiskRule(
        name="fast_selling",
        condition=lambda f: f.daily_velocity > FAST_SELLING_UNITS and f.trend == "INCREASING",
        outcome=RiskOutcome("MEDIUM", "FAST_SELLING_WARNING", "MEDIUM"),
    ),
    RiskRule(
        name="imminent_stockout",
        condition=lambda f: f.days_until_stockout is not None and f.days_until_stockout <= IMMINENT_STOCKOUT_DAYS,
        outcome=RiskOutcome("CRITICAL", "IMMINENT_STOCKOUT", "CRITICAL"),
    ),
    RiskRule(
        name="accelerating_trend",
        condition=lambda f: f.trend == "ACCELERATING",
        outcome=RiskOutcome("HIGH", "VELOCITY_TREND_CHANGE", "HIGH"),
    ),
)


def matching_outcomes(forecast: VelocityForecast) -> list[RiskOutcome]:
    return [rule.outcome for rule in RISK_RULES if rule.condition(forecast)]


def classify_risk(forecast: VelocityForecast, resolution: str = RESOLUTION_MAX_SEVERITY) -> RiskAssessment:
    """Evaluate every rule against the forecast and pick one outcome."""
    if resolution not in (RESOLUTION_MAX_SEVERITY, RESOLUTION_LAST_MATCH):
        raise ValueError(f"Unknown risk resolution: {resolution}")

    matches = matching_outcomes(forecast)
    if not matches:
        return RiskAssessment(risk_level="LOW", should_alert=False)

    if resolution == RESOLUTION_LAST_MATCH:
        chosen = matches[-1]
    else:
        chosen = matches[0]
        for outcome in matches[1:]:
            if SEVERITY_RANK[outcome.severity] >= SEVERITY_RANK[chosen.severity]:
                chosen = outcome

    return RiskAssessment(
        risk_level=chosen.risk_level,
        should_alert=True,
        alert_type=chosen.alert_type,
        severity=chosen.severity,
    )
