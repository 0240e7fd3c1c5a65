# cci/pipeline/fraud.py
import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional, Sequence

from . import policy_rules
from .evaluation import RevenueSample


@dataclass
class FraudSignals:
    """Behavioral facts the scorer needs, gathered from the claim and the creator account."""
    incident_at: datetime.datetime
    incident_type: str
    covered_reason: str
    appeal_status: str = "Not started"
    baseline_daily: float = 0.0
    history: Sequence[RevenueSample] = ()
    upload_times: Sequence[datetime.datetime] = ()
    channel_published_at: Optional[datetime.datetime] = None
    registered_name: Optional[str] = None
    payout_name: Optional[str] = None


@dataclass
class FraudAssessment:
    score: int
    reasons: List[str] = field(default_factory=list)
    inconclusive: bool = False


def _normalize_name(name: Optional[str]) -> str:
    return " ".join((name or "").split()).casefold()


def _revenue_spike(signals: FraudSignals, cfg: Dict[str, Any]) -> bool:
    incident_date = signals.incident_at.date()
    window_start = incident_date - datetime.timedelta(days=cfg["spike_window_days"])
    pre = [s.amount for s in signals.history if window_start <= s.date < incident_date]
    if not pre:
        return False
    return sum(pre) / len(pre) > signals.baseline_daily * cfg["spike_multiplier"]


def _mass_upload(signals: FraudSignals, cfg: Dict[str, Any]) -> bool:
    lookback_start = signals.incident_at - datetime.timedelta(days=cfg["mass_upload_lookback_days"])
    recent = sorted(t for t in signals.upload_times if lookback_start <= t < signals.incident_at)
    limit = cfg["mass_upload_count"]
    day = datetime.timedelta(hours=24)
    # sliding window: more than `limit` uploads whose span is under 24h
    for i in range(len(recent) - limit):
        if recent[i + limit] - recent[i] < day:
            return True
    return False


def _new_channel(signals: FraudSignals, cfg: Dict[str, Any], now: datetime.datetime) -> bool:
    if signals.channel_published_at is None:
        return True
    age_months = (now - signals.channel_published_at).days / 30
    return age_months < cfg["new_channel_months"]


def _name_mismatch(signals: FraudSignals) -> bool:
    if not signals.payout_name:
        return False
    return _normalize_name(signals.registered_name) != _normalize_name(signals.payout_name)


def score_claim(signals: FraudSignals, now: datetime.datetime, rules: Optional[Dict[str, Any]] = None) -> FraudAssessment:
    """
    Confidence that a claim is legitimate, 0-100. Starts at 100 and loses
    the weight of every triggered signal. Reasons are ``name:penalty``.
    """
    cfg = (rules or policy_rules.load_rules())["fraud"]
    weights = cfg["weights"]

    triggered = {
        "revenueSpike": _revenue_spike(signals, cfg),
        "massUpload": _mass_upload(signals, cfg),
        "copyrightMismatch": (
            signals.covered_reason == policy_rules.COPYRIGHT_REASON
            and signals.incident_type != "Video demonetization"
        ),
        "appealRejected": signals.appeal_status == "Rejected",
        "newChannel": _new_channel(signals, cfg, now),
        "nameMismatch": _name_mismatch(signals),
    }

    reasons = [f"{name}:{weights[name]}" for name, hit in triggered.items() if hit]
    penalty = sum(weights[name] for name, hit in triggered.items() if hit)
    return FraudAssessment(score=max(0, 100 - penalty), reasons=reasons)


def apply_enrichment(base: FraudAssessment, enrichment, rules: Optional[Dict[str, Any]] = None) -> FraudAssessment:
    """
    Fold an AI enrichment reply into the deterministic assessment.
    ``enrichment`` is an ``llm_client.FraudEnrichment`` or None when the
    adapter was unavailable (the assessment is then marked inconclusive).
    """
    if enrichment is None:
        return FraudAssessment(score=base.score, reasons=list(base.reasons), inconclusive=True)
    cfg = (rules or policy_rules.load_rules())["fraud"]
    bound = cfg["enrichment_max_adjustment"]
    adjustment = max(-bound, min(bound, enrichment.adjustment))
    reasons = list(base.reasons) + [f"ai:{r}" for r in enrichment.reasons]
    if adjustment:
        reasons.append(f"aiAdjustment:{adjustment:+d}")
    return FraudAssessment(score=max(0, min(100, base.score + adjustment)), reasons=reasons)


def branch(score: int, rules: Optional[Dict[str, Any]] = None) -> str:
    """Map a fraud score to the lifecycle branch: approve, manual, reject."""
    cfg = (rules or policy_rules.load_rules())["fraud"]
    if score > cfg["auto_approve_above"]:
        return "approve"
    if score >= cfg["manual_review_from"]:
        return "manual"
    return "reject"
