# cci/routes/admin.py
import datetime
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from redis.exceptions import RedisError
from rq.exceptions import NoSuchJobError
from rq.job import Job
from sqlalchemy.orm import Session

from .. import models, schemas
from ..db import get_db
from ..exceptions import NotFound
from ..pipeline import analytics, worker
from ..pipeline.lifecycle import ClaimLifecycle
from ..pipeline.queue import queue, redis_conn
from ..repository import ClaimRepository
from ..services import get_lifecycle

logger = logging.getLogger(__name__)

router = APIRouter()


def _claim(db: Session, claim_id: str) -> models.Claim:
    claim = ClaimRepository(db).find_by_id(claim_id)
    if claim is None:
        raise NotFound("Claim not found")
    return claim


@router.get("/health")
def health():
    return {"status": "ok", "timestamp": models.utcnow().isoformat()}


@router.get("/job/{job_id}")
def job_status(job_id: str):
    try:
        job = Job.fetch(job_id, connection=redis_conn)
    except NoSuchJobError:
        raise HTTPException(status_code=404, detail="Job not found")
    return {"id": job.id, "status": job.get_status(), "result": job.result}


JOBS = {
    "claim-verification": worker.run_claim_verification,
    "premium-cycle": worker.run_premium_cycle,
    "metrics": worker.run_metrics,
}


@router.post("/jobs/{name}", status_code=202)
def enqueue_job(name: str, user_id: Optional[str] = None):
    """Queue a background job; `user_id` narrows the claim-verification sweep to one creator."""
    func = JOBS.get(name)
    if func is None:
        raise NotFound(f"Unknown job {name}")
    job_id = str(uuid.uuid4())
    args = (job_id, user_id) if name == "claim-verification" and user_id else (job_id,)
    try:
        job = queue.enqueue(func, *args)
    except RedisError as e:
        raise HTTPException(status_code=500, detail=f"Failed to enqueue job: {e}")
    logger.info("[Admin] Enqueued %s job %s", name, job.id)
    return {"job_id": job.id, "job": name}


@router.get("/claims")
def list_claims(
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    claims = ClaimRepository(db).list(user_id=user_id, status=status, offset=(page - 1) * limit, limit=limit)
    return {"page": page, "claims": [schemas.AdminClaimOut.from_claim(c) for c in claims]}


@router.get("/claims/pending-deadline")
def pending_deadline(within_hours: int = Query(24, ge=1, le=168), db: Session = Depends(get_db)):
    claims = analytics.claims_nearing_deadline(db, models.utcnow(), within_hours)
    return {"claims": [schemas.AdminClaimOut.from_claim(c) for c in claims]}


@router.get("/claims/high-risk-creators")
def high_risk_creators(
    min_claims: int = Query(3, ge=1),
    fraud_threshold: int = Query(50, ge=0, le=100),
    start: Optional[datetime.datetime] = None,
    end: Optional[datetime.datetime] = None,
    db: Session = Depends(get_db),
):
    creators = analytics.high_risk_creators(db, min_claims, fraud_threshold, start, end)
    logger.info("[Admin] Flagged %d high-risk creators", len(creators))
    return {"high_risk_creators": creators}


@router.get("/claims/analytics")
def claim_analytics(
    start: Optional[datetime.datetime] = None,
    end: Optional[datetime.datetime] = None,
    db: Session = Depends(get_db),
):
    return analytics.claim_analytics(db, start, end)


@router.get("/claims/{claim_id}")
def get_claim(claim_id: str, db: Session = Depends(get_db)):
    return schemas.AdminClaimOut.from_claim(_claim(db, claim_id))


@router.post("/claims/{claim_id}/review")
async def review_claim(
    claim_id: str,
    body: schemas.ReviewRequest,
    db: Session = Depends(get_db),
    lifecycle: ClaimLifecycle = Depends(get_lifecycle),
):
    claim = _claim(db, claim_id)
    result = await lifecycle.review(claim, body.is_valid, body.reviewer_id, body.notes)
    return {
        "claim": schemas.AdminClaimOut.from_claim(claim),
        "verification": schemas.VerificationOut.from_result(result),
    }


@router.post("/claims/bulk-review")
async def bulk_review(body: schemas.BulkReviewRequest, lifecycle: ClaimLifecycle = Depends(get_lifecycle)):
    results = await lifecycle.bulk_review([r.model_dump() for r in body.reviews], body.reviewer_id)
    return {"results": results}


@router.post("/claims/{claim_id}/ai-review")
async def ai_review(
    claim_id: str,
    body: schemas.AdminAction,
    db: Session = Depends(get_db),
    lifecycle: ClaimLifecycle = Depends(get_lifecycle),
):
    claim = _claim(db, claim_id)
    assessment = await lifecycle.ai_review(claim, body.admin_id)
    return {
        "fraud_score": assessment.score,
        "reasons": assessment.reasons,
        "inconclusive": assessment.inconclusive,
        "claim": schemas.AdminClaimOut.from_claim(claim),
    }


@router.post("/claims/{claim_id}/reinstate")
async def reinstate_claim(
    claim_id: str,
    body: schemas.AdminAction,
    db: Session = Depends(get_db),
    lifecycle: ClaimLifecycle = Depends(get_lifecycle),
):
    claim = _claim(db, claim_id)
    outcome = await lifecycle.reinstate(claim, body.admin_id)
    return {"repay_amount": outcome["repay_amount"], "deadline": outcome["deadline"], "status": claim.status}
