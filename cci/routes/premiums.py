# cci/routes/premiums.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import schemas
from ..db import get_db
from ..exceptions import NotFound
from ..pipeline.premium import PremiumService
from ..repository import PolicyRepository
from ..services import get_premium_service

router = APIRouter()


@router.get("/premiums/{user_id}")
def get_premium(user_id: str, db: Session = Depends(get_db)):
    policy = PolicyRepository(db).get_for_user(user_id)
    if policy is None:
        raise NotFound("Premium not found")
    return schemas.PremiumOut.model_validate(policy)


@router.post("/premiums/estimate")
def estimate(body: schemas.EstimateRequest, service: PremiumService = Depends(get_premium_service)):
    return service.estimate(body.user_id, body.estimator_role, body.estimator_id)


@router.post("/premiums/apply", status_code=201)
def apply(body: schemas.ApplyRequest, service: PremiumService = Depends(get_premium_service)):
    return schemas.PremiumOut.model_validate(service.create_from_application(body.user_id))


@router.post("/premiums/recalculate")
def recalculate(body: schemas.RecalculateRequest, service: PremiumService = Depends(get_premium_service)):
    return schemas.PremiumOut.model_validate(service.recalculate(body.user_id, body.admin_id))


@router.post("/premiums/adjust")
def adjust(body: schemas.AdjustRequest, service: PremiumService = Depends(get_premium_service)):
    policy = service.adjust(body.user_id, body.delta_percent, body.reason, body.admin_id)
    return schemas.PremiumOut.model_validate(policy)


@router.post("/premiums/pay")
def pay(body: schemas.PayRequest, service: PremiumService = Depends(get_premium_service)):
    return service.pay(body.user_id, body.payment_method, body.payment_details)


@router.post("/premiums/retry-payment")
def retry_payment(body: schemas.RetryPaymentRequest, service: PremiumService = Depends(get_premium_service)):
    return service.retry_payment(body.user_id, body.payment_method, body.payment_details)


@router.post("/premiums/overdue")
def mark_overdue(service: PremiumService = Depends(get_premium_service)):
    return {"marked_overdue": service.mark_overdue()}


@router.put("/premiums/cap")
def update_cap(body: schemas.CapUpdate, service: PremiumService = Depends(get_premium_service)):
    return schemas.PremiumOut.model_validate(service.update_monthly_cap(body.user_id, body.monthly_cap))
