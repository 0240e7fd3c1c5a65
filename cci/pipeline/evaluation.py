# cci/pipeline/evaluation.py
"""
Deterministic adjudication steps for a revenue-loss claim.

Every function here is pure: it takes plain values (revenue samples,
incident facts, rule dicts from ``policy_rules.load_rules``) and returns a
small result object. Reading and writing records is the lifecycle
controller's job.
"""
import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional, Sequence

from . import policy_rules


@dataclass(frozen=True)
class RevenueSample:
    date: datetime.date
    amount: float


@dataclass
class DropMetrics:
    baseline_daily: float = 0.0
    drop_percent: float = 0.0
    qualifying_lost_days: int = 0
    observed_lost_days: int = 0


@dataclass
class CoverageVerdict:
    decision: str  # "approve" | "reject"
    covered_reason: str
    failed: List[str] = field(default_factory=list)

    @property
    def approved(self) -> bool:
        return self.decision == "approve"

    def describe(self) -> str:
        if self.approved:
            return f"Covered: {self.covered_reason}."
        details = {
            "uncovered_reason": f"{self.covered_reason} is not a covered reason",
            "insufficient_drop": "revenue drop below the qualifying threshold",
            "insufficient_days": "fewer qualifying lost days than required",
            "strike_threshold": "account strike count at or above the permanent-ban threshold",
        }
        return "Not covered: " + "; ".join(details.get(f, f) for f in self.failed) + "."


@dataclass
class PayoutQuote:
    daily: float
    raw: float
    capped: float
    cap_applied: bool


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _as_date(value) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    return value


def detect_drop(
    history: Sequence[RevenueSample],
    incident_at,
    fallback_baseline: Optional[float] = None,
    rules: Optional[Dict[str, Any]] = None,
) -> DropMetrics:
    """
    Compare revenue after the incident against the pre-incident baseline.

    The baseline is the mean of up to ``baseline_window`` samples strictly
    before the incident date (the account's long-window daily average when
    there are none). A lost day is a post-incident sample under
    ``lost_day_ratio`` of baseline. When at least one day qualifies, the
    count is raised to ``lost_days_floor``: the policy's minimum claim
    duration, not an observation. ``observed_lost_days`` keeps the real count.
    """
    cfg = (rules or policy_rules.load_rules())["drop"]
    incident_date = _as_date(incident_at)
    ordered = sorted(history, key=lambda s: s.date)

    before = [s.amount for s in ordered if s.date < incident_date][-cfg["baseline_window"]:]
    after = [s.amount for s in ordered if s.date >= incident_date][:cfg["post_window"]]

    if before:
        baseline = _mean(before)
    else:
        baseline = float(fallback_baseline or 0.0)

    if baseline <= 0:
        return DropMetrics(baseline_daily=0.0)

    recent_avg = _mean(after)
    drop = max(0.0, (baseline - recent_avg) / baseline * 100)
    observed = sum(1 for amount in after if amount < baseline * cfg["lost_day_ratio"])
    qualifying = max(cfg["lost_days_floor"], observed) if observed > 0 else 0

    return DropMetrics(
        baseline_daily=baseline,
        drop_percent=drop,
        qualifying_lost_days=qualifying,
        observed_lost_days=observed,
    )


def map_covered_reason(incident_type: str, detected_reason: Optional[str] = None,
                       rules: Optional[Dict[str, Any]] = None) -> str:
    cfg = (rules or policy_rules.load_rules())["coverage"]
    if detected_reason:
        return detected_reason.strip().upper()
    return cfg["reason_map"].get(incident_type, policy_rules.UNCOVERED_REASON)


def classify_coverage(
    covered_reason: str,
    metrics: DropMetrics,
    strikes: int,
    rules: Optional[Dict[str, Any]] = None,
) -> CoverageVerdict:
    cfg = (rules or policy_rules.load_rules())["coverage"]
    failed = []
    if covered_reason not in cfg["covered"]:
        failed.append("uncovered_reason")
    if metrics.drop_percent < cfg["min_drop_percent"]:
        failed.append("insufficient_drop")
    if metrics.qualifying_lost_days < cfg["min_lost_days"]:
        failed.append("insufficient_days")
    if (strikes or 0) >= cfg["max_strikes"]:
        failed.append("strike_threshold")
    return CoverageVerdict(
        decision="reject" if failed else "approve",
        covered_reason=covered_reason,
        failed=failed,
    )


def is_duplicate(
    incident_at: datetime.datetime,
    prior_incidents: Sequence[datetime.datetime],
    rules: Optional[Dict[str, Any]] = None,
) -> bool:
    """True if any already-approved/paid incident lies within the proximity window."""
    cfg = (rules or policy_rules.load_rules())["duplicate"]
    proximity = datetime.timedelta(hours=cfg["proximity_hours"])
    return any(abs(other - incident_at) < proximity for other in prior_incidents)


def duplicate_search_window(incident_at: datetime.datetime, rules: Optional[Dict[str, Any]] = None):
    cfg = (rules or policy_rules.load_rules())["duplicate"]
    start = incident_at - datetime.timedelta(days=cfg["lookback_days"])
    end = incident_at + datetime.timedelta(hours=cfg["proximity_hours"])
    return start, end


def calculate_payout(
    baseline_daily: float,
    lost_days: int,
    monthly_cap: float,
    cap_remaining: Optional[float] = None,
    rules: Optional[Dict[str, Any]] = None,
) -> PayoutQuote:
    """Creators bear ``1 - ratio`` of the verified daily loss as the deductible."""
    cfg = (rules or policy_rules.load_rules())["payout"]
    daily = max(0.0, baseline_daily or 0.0) * cfg["ratio"]
    raw = daily * max(0, lost_days or 0)
    limit = monthly_cap if monthly_cap is not None else cfg["default_cap"]
    if cap_remaining is not None:
        limit = min(limit, max(0.0, cap_remaining))
    capped = min(raw, limit)
    return PayoutQuote(daily=daily, raw=raw, capped=capped, cap_applied=capped < raw)
