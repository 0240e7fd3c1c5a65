# cci/routes/claims.py
"""Creator-facing claim routes. Fraud scores never leave through this router."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import models, schemas
from ..db import get_db
from ..exceptions import Forbidden, NotFound
from ..pipeline.lifecycle import ClaimLifecycle
from ..repository import ClaimRepository
from ..services import get_lifecycle

logger = logging.getLogger(__name__)

router = APIRouter()


def _own_claim(db: Session, claim_id: str, user_id: str) -> models.Claim:
    claim = ClaimRepository(db).find_by_id(claim_id)
    if claim is None:
        raise NotFound("Claim not found")
    if claim.user_id != user_id:
        raise Forbidden("Unauthorized")
    return claim


def _files(items):
    return [f.model_dump() for f in items]


@router.post("/claims", status_code=201)
async def submit_claim(
    body: schemas.ClaimSubmit,
    lifecycle: ClaimLifecycle = Depends(get_lifecycle),
):
    claim, result = await lifecycle.submit_claim(
        user_id=body.user_id,
        incident_type=body.incident_type,
        incident_at=body.incident_at,
        appeal_status=body.appeal_status,
        evidence_summary=body.evidence_summary,
        evidence_files=_files(body.evidence_files),
        detected_reason=body.detected_reason,
    )
    return {
        "claim": schemas.ClaimOut.from_claim(claim),
        "verification": schemas.VerificationOut.from_result(result),
    }


@router.get("/claims")
def my_claims(
    user_id: str,
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    claims = ClaimRepository(db).list(user_id=user_id, status=status, offset=(page - 1) * limit, limit=limit)
    return {"page": page, "claims": [schemas.ClaimOut.from_claim(c) for c in claims]}


@router.get("/claims/{claim_id}")
def get_claim(claim_id: str, user_id: str, db: Session = Depends(get_db)):
    return schemas.ClaimOut.from_claim(_own_claim(db, claim_id, user_id))


@router.put("/claims/{claim_id}/evidence")
async def update_evidence(
    claim_id: str,
    body: schemas.EvidenceUpdate,
    db: Session = Depends(get_db),
    lifecycle: ClaimLifecycle = Depends(get_lifecycle),
):
    claim = _own_claim(db, claim_id, body.user_id)
    result = await lifecycle.update_evidence(claim, body.user_id, body.evidence_summary, _files(body.evidence_files))
    return {
        "claim": schemas.ClaimOut.from_claim(claim),
        "verification": schemas.VerificationOut.from_result(result),
    }


@router.post("/claims/{claim_id}/appeal")
async def appeal_claim(
    claim_id: str,
    body: schemas.AppealRequest,
    db: Session = Depends(get_db),
    lifecycle: ClaimLifecycle = Depends(get_lifecycle),
):
    claim = _own_claim(db, claim_id, body.user_id)
    result = await lifecycle.appeal(claim, body.user_id, body.appeal_status, body.notes, _files(body.evidence_files))
    return {
        "claim": schemas.ClaimOut.from_claim(claim),
        "verification": schemas.VerificationOut.from_result(result),
    }


@router.delete("/claims/{claim_id}")
def delete_claim(
    claim_id: str,
    user_id: str,
    db: Session = Depends(get_db),
    lifecycle: ClaimLifecycle = Depends(get_lifecycle),
):
    claim = _own_claim(db, claim_id, user_id)
    lifecycle.delete_claim(claim, user_id)
    logger.info("[Claims] Claim %s deleted by %s", claim_id, user_id)
    return {"message": "Claim deleted"}
