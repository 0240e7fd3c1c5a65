# cci/repository.py
"""SQL-backed persistence boundary for claims, policies, accounts and revenue history."""
import datetime
import logging
from typing import List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .exceptions import PreconditionFailed
from .pipeline.evaluation import RevenueSample

logger = logging.getLogger(__name__)


def billing_period(at: datetime.datetime) -> str:
    return at.strftime("%Y-%m")


class ClaimRepository:
    def __init__(self, db: Session):
        self.db = db

    def find_by_id(self, claim_id: str) -> Optional[models.Claim]:
        return self.db.get(models.Claim, claim_id)

    def find_by_user_and_date_range(
        self,
        user_id: str,
        start: datetime.datetime,
        end: datetime.datetime,
        reached: Sequence[str] = (),
        exclude_id: Optional[str] = None,
    ) -> List[models.Claim]:
        """Claims of `user_id` with incident in [start, end], optionally only those whose history reached a status in `reached`."""
        q = self.db.query(models.Claim).filter(
            models.Claim.user_id == user_id,
            models.Claim.incident_at >= start,
            models.Claim.incident_at <= end,
        )
        if reached:
            q = q.filter(models.Claim.history.any(models.ClaimStatusEvent.status.in_(list(reached))))
        if exclude_id:
            q = q.filter(models.Claim.id != exclude_id)
        return q.order_by(models.Claim.incident_at).all()

    def list(self, user_id: Optional[str] = None, status: Optional[str] = None,
             offset: int = 0, limit: int = 20) -> List[models.Claim]:
        q = self.db.query(models.Claim)
        if user_id:
            q = q.filter(models.Claim.user_id == user_id)
        if status:
            q = q.filter(models.Claim.status == status)
        return q.order_by(models.Claim.created_at.desc()).offset(offset).limit(limit).all()

    def save(self, claim: models.Claim) -> models.Claim:
        """Commit the claim together with everything else pending in the session, or nothing."""
        self.db.add(claim)
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return claim

    def delete(self, claim: models.Claim):
        self.db.delete(claim)
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise


class PolicyRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, policy_id: str) -> Optional[models.Premium]:
        return self.db.get(models.Premium, policy_id)

    def get_for_user(self, user_id: str) -> Optional[models.Premium]:
        return (
            self.db.query(models.Premium)
            .filter(models.Premium.user_id == user_id)
            .order_by(models.Premium.application_date.desc())
            .first()
        )

    def get_active_policy(self, user_id: str, at: datetime.datetime) -> Optional[models.Premium]:
        policy = self.get_for_user(user_id)
        if policy is None:
            return None
        if policy.valid_from and policy.valid_from > at:
            return None
        if policy.valid_until and policy.valid_until < at:
            return None
        return policy

    def paid_in_period(self, policy_id: str, period: str) -> float:
        total = (
            self.db.query(func.coalesce(func.sum(models.PolicyPayout.amount), 0.0))
            .filter(models.PolicyPayout.policy_id == policy_id, models.PolicyPayout.period == period)
            .scalar()
        )
        return float(total or 0.0)

    def lock(self, policy_id: str) -> Optional[models.Premium]:
        """Re-read the policy row with a write lock where the engine supports it."""
        return (
            self.db.query(models.Premium)
            .filter(models.Premium.id == policy_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )

    def record_payout(self, policy: models.Premium, claim_id: str, amount: float, period: str) -> models.PolicyPayout:
        """
        Conditional ledger write: refuses an amount larger than what the
        period's cap still allows. Not committed here; the claim save that
        follows commits both.
        """
        remaining = policy.monthly_cap - self.paid_in_period(policy.id, period)
        if amount > remaining + 1e-9:
            raise PreconditionFailed(
                f"Payout {amount:.2f} exceeds remaining cap {remaining:.2f} for policy {policy.id} in {period}"
            )
        entry = models.PolicyPayout(policy_id=policy.id, claim_id=claim_id, amount=amount, period=period)
        self.db.add(entry)
        return entry


class AccountRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: str) -> Optional[models.CreatorAccount]:
        return self.db.get(models.CreatorAccount, user_id)

    def save(self, account: models.CreatorAccount) -> models.CreatorAccount:
        self.db.add(account)
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return account


class RevenueHistorySource:
    """Read-only view over ingested revenue history."""

    def __init__(self, db: Session):
        self.db = db

    async def get_history(
        self,
        user_id: str,
        before: Optional[datetime.date] = None,
        after: Optional[datetime.date] = None,
    ) -> List[RevenueSample]:
        try:
            q = self.db.query(models.RevenueEntry).filter(models.RevenueEntry.user_id == user_id)
            if before is not None:
                q = q.filter(models.RevenueEntry.entry_date < before)
            if after is not None:
                q = q.filter(models.RevenueEntry.entry_date >= after)
            rows = q.order_by(models.RevenueEntry.entry_date).all()
        except SQLAlchemyError as e:
            # unreadable history degrades to "no data"
            logger.warning("[Revenue] History read failed for user %s: %s", user_id, e)
            self.db.rollback()
            return []
        return [RevenueSample(date=r.entry_date, amount=float(r.amount or 0.0)) for r in rows]
