# cci/pipeline/analytics.py
"""Admin-side aggregates over claims: status metrics, analytics summary, high-risk creators."""
import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .. import models
from .llm_client import insights_with_llm


def _created_between(q, start: Optional[datetime.datetime], end: Optional[datetime.datetime]):
    if start is not None:
        q = q.filter(models.Claim.created_at >= models.to_utc_naive(start))
    if end is not None:
        q = q.filter(models.Claim.created_at <= models.to_utc_naive(end))
    return q


def compute_metrics(db: Session) -> List[models.ClaimMetrics]:
    """Rebuild the claim_metrics table: one row per current status."""
    db.query(models.ClaimMetrics).delete()
    db.commit()

    rows = (
        db.query(
            models.Claim.status,
            func.count(models.Claim.id),
            func.coalesce(func.sum(models.Claim.payout_amount), 0.0),
            func.avg(models.Claim.fraud_score),
        )
        .group_by(models.Claim.status)
        .all()
    )
    metrics = []
    for status, count, paid, avg_score in rows:
        m = models.ClaimMetrics(
            category=status,
            count=count,
            paid=float(paid or 0.0),
            avg_fraud_score=float(avg_score) if avg_score is not None else None,
        )
        db.add(m)
        metrics.append(m)
    db.commit()
    return metrics


def claim_analytics(db: Session, start: Optional[datetime.datetime] = None,
                    end: Optional[datetime.datetime] = None) -> Dict[str, Any]:
    claims = _created_between(db.query(models.Claim), start, end).all()
    total = len(claims)

    breakdown: Dict[str, int] = {}
    for c in claims:
        breakdown[c.status] = breakdown.get(c.status, 0) + 1

    paid = [c.payout_amount for c in claims if (c.payout_amount or 0) > 0]
    scored = [c.fraud_score for c in claims if c.fraud_score is not None]
    # rates count claims whose history ever reached the status, so appealed claims still show
    approved = sum(1 for c in claims if any(h.status == models.APPROVED for h in c.history))
    rejected = sum(1 for c in claims if any(h.status == models.REJECTED for h in c.history))

    summary = {
        "total_claims": total,
        "status_breakdown": breakdown,
        "average_payout": round(sum(paid) / len(paid), 2) if paid else 0.0,
        "average_fraud_score": round(sum(scored) / len(scored), 2) if scored else 0.0,
        "approval_rate": round(approved / total * 100, 2) if total else 0.0,
        "rejection_rate": round(rejected / total * 100, 2) if total else 0.0,
        "manual_review": breakdown.get(models.MANUAL_REVIEW, 0),
    }
    summary["insights"] = [i.model_dump() for i in insights_with_llm(summary).insights]
    return summary


def high_risk_creators(db: Session, min_claims: int = 3, fraud_threshold: int = 50,
                       start: Optional[datetime.datetime] = None,
                       end: Optional[datetime.datetime] = None) -> List[Dict[str, Any]]:
    """Creators with at least `min_claims` claims scoring below `fraud_threshold`."""
    q = db.query(models.Claim).filter(models.Claim.fraud_score < fraud_threshold)
    grouped: Dict[str, List[models.Claim]] = {}
    for c in _created_between(q, start, end).all():
        grouped.setdefault(c.user_id, []).append(c)

    results = []
    for user_id, claims in grouped.items():
        if len(claims) < min_claims:
            continue
        account = db.get(models.CreatorAccount, user_id)
        results.append({
            "user_id": user_id,
            "email": account.email if account else None,
            "fraud_standing": account.fraud_standing if account else None,
            "claim_count": len(claims),
            "rejected_count": sum(1 for c in claims if c.status == models.REJECTED),
            "total_payout": sum(c.payout_amount or 0.0 for c in claims),
            "avg_fraud_score": sum(c.fraud_score for c in claims) / len(claims),
        })
    results.sort(key=lambda r: r["avg_fraud_score"])
    return results


def claims_nearing_deadline(db: Session, now: datetime.datetime, within_hours: int = 24) -> List[models.Claim]:
    """Undecided claims whose resolution deadline falls in the next `within_hours`."""
    return (
        db.query(models.Claim)
        .filter(
            models.Claim.status.in_([models.UNDER_REVIEW, models.AI_REVIEWED, models.MANUAL_REVIEW]),
            models.Claim.resolution_deadline >= now,
            models.Claim.resolution_deadline <= now + datetime.timedelta(hours=within_hours),
        )
        .order_by(models.Claim.resolution_deadline)
        .all()
    )
