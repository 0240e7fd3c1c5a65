# cci/routes/metrics.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import models, schemas
from ..db import get_db
from ..pipeline.analytics import compute_metrics

router = APIRouter()


@router.get("/metrics")
def get_metrics(db: Session = Depends(get_db)):
    return [schemas.MetricOut.model_validate(m) for m in db.query(models.ClaimMetrics).all()]


@router.post("/metrics/refresh")
def refresh_metrics(db: Session = Depends(get_db)):
    return [schemas.MetricOut.model_validate(m) for m in compute_metrics(db)]
