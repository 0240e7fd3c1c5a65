# cci/pipeline/worker.py
import asyncio
import logging
from typing import Optional

from sqlalchemy.orm import Session

from .. import models
from ..db import SessionLocal
from ..exceptions import ClaimsError
from ..repository import AccountRepository, PolicyRepository
from ..services import build_lifecycle
from .analytics import compute_metrics
from .locks import UserLocks
from .premium import PremiumService

logger = logging.getLogger(__name__)


def run_claim_verification(job_id: str, user_id: Optional[str] = None):
    """
    Re-verify claims whose verification never committed a decision: submit_claim
    saves the Submitted claim before verifying, so a crash mid-verification
    leaves it Submitted.
    """
    logger.info("[Worker] Running verification job %s (user=%s)", job_id, user_id or "all")
    db: Session = SessionLocal()
    try:
        q = db.query(models.Claim).filter(models.Claim.status.in_([models.SUBMITTED, models.UNDER_REVIEW]))
        if user_id:
            q = q.filter(models.Claim.user_id == user_id)
        pending = q.all()
        logger.info("[Worker] Found %d claims awaiting verification.", len(pending))

        lifecycle = build_lifecycle(db, locks=UserLocks())
        outcomes = {}
        for claim in pending:
            try:
                result = asyncio.run(lifecycle.verify_claim(claim, actor="system"))
            except ClaimsError as e:
                logger.warning("[Worker] Claim %s skipped: %s", claim.id, e)
                db.rollback()
                continue
            outcomes[result.status] = outcomes.get(result.status, 0) + 1

        compute_metrics(db)
        logger.info("[Worker] Verification job %s complete: %s", job_id, outcomes)
        return outcomes
    except Exception:
        logger.exception("[Worker] Verification job %s failed", job_id)
        raise
    finally:
        db.close()


def run_premium_cycle(job_id: str):
    """Monthly cycle: recalculate premiums whose calculation date has passed, then flag overdue ones."""
    logger.info("[Worker] Running premium cycle %s", job_id)
    db: Session = SessionLocal()
    try:
        service = PremiumService(AccountRepository(db), PolicyRepository(db))
        now = service.clock()
        due = (
            db.query(models.Premium)
            .filter(models.Premium.next_calculation_date.isnot(None), models.Premium.next_calculation_date <= now)
            .all()
        )
        recalculated = 0
        for policy in due:
            try:
                service.recalculate(policy.user_id)
            except ClaimsError as e:
                logger.warning("[Worker] Premium %s not recalculated: %s", policy.id, e)
                continue
            recalculated += 1
        overdue = service.mark_overdue()
        logger.info("[Worker] Premium cycle %s: %d recalculated, %d overdue", job_id, recalculated, overdue)
        return {"recalculated": recalculated, "overdue": overdue}
    except Exception:
        logger.exception("[Worker] Premium cycle %s failed", job_id)
        raise
    finally:
        db.close()


def run_metrics(job_id: str):
    db: Session = SessionLocal()
    try:
        rows = compute_metrics(db)
        logger.info("[Worker] Metrics job %s stored %d rows", job_id, len(rows))
        return len(rows)
    finally:
        db.close()
