# cci/schemas.py
import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from . import models

IncidentType = Literal["Full suspension", "Limited ads", "Video demonetization"]
AppealStatus = Literal["Not started", "In progress", "Rejected"]

# statuses a claimant sees as one "waiting on a person" state
PENDING_HUMAN_REVIEW = "Pending human review"
_HELD = {models.MANUAL_REVIEW, models.AI_REVIEWED}


class EvidenceFile(BaseModel):
    url: str
    type: str = "screenshot"
    description: str = ""


class ClaimSubmit(BaseModel):
    user_id: str
    incident_type: IncidentType
    incident_at: datetime.datetime
    appeal_status: AppealStatus = "Not started"
    detected_reason: Optional[str] = None
    evidence_summary: str = Field("", max_length=2000)
    evidence_files: List[EvidenceFile] = Field(default_factory=list, max_length=5)


class EvidenceUpdate(BaseModel):
    user_id: str
    evidence_summary: Optional[str] = Field(None, max_length=2000)
    evidence_files: List[EvidenceFile] = Field(default_factory=list, max_length=5)


class AppealRequest(BaseModel):
    user_id: str
    appeal_status: Literal["In progress", "Rejected"]
    notes: str = Field("", max_length=1000)
    evidence_files: List[EvidenceFile] = Field(default_factory=list, max_length=5)


class ReviewRequest(BaseModel):
    reviewer_id: str
    is_valid: bool
    notes: str = Field(..., min_length=1, max_length=1000)


class BulkReviewItem(BaseModel):
    claim_id: str
    is_valid: bool
    notes: str = ""


class BulkReviewRequest(BaseModel):
    reviewer_id: str
    reviews: List[BulkReviewItem] = Field(..., min_length=1)


class AdminAction(BaseModel):
    admin_id: str


class StatusEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: str
    at: datetime.datetime
    message: Optional[str] = ""


class AdminStatusEventOut(StatusEventOut):
    seq: int
    actor: Optional[str] = None
    notes: Optional[str] = ""


class ClaimOut(BaseModel):
    """What a creator sees of their own claim. Fraud figures stay internal."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    policy_id: str
    platform: str
    incident_type: str
    incident_at: datetime.datetime
    appeal_status: Optional[str] = None
    evidence_summary: Optional[str] = ""
    status: str
    display_status: str = ""
    covered_reason: Optional[str] = None
    payout_amount: Optional[float] = 0.0
    payout_date: Optional[datetime.datetime] = None
    rejection_reason: Optional[str] = None
    rejection_message: Optional[str] = None
    reinstated: Optional[bool] = False
    repay_amount: Optional[float] = 0.0
    repay_deadline: Optional[datetime.datetime] = None
    resolution_deadline: Optional[datetime.datetime] = None
    created_at: Optional[datetime.datetime] = None
    history: List[StatusEventOut] = Field(default_factory=list)

    @classmethod
    def from_claim(cls, claim: models.Claim):
        out = cls.model_validate(claim)
        out.display_status = PENDING_HUMAN_REVIEW if claim.status in _HELD else claim.status
        return out


class AdminClaimOut(ClaimOut):
    user_id: str
    evidence_files: Optional[list] = None
    baseline_daily: Optional[float] = None
    drop_percent: Optional[float] = None
    lost_days: Optional[int] = 0
    observed_lost_days: Optional[int] = 0
    duplicate: Optional[bool] = False
    fraud_score: Optional[int] = None
    fraud_reasons: Optional[List[str]] = None
    enrichment_inconclusive: Optional[bool] = False
    manual_valid: Optional[bool] = None
    reviewer_id: Optional[str] = None
    review_notes: Optional[str] = None
    payout_raw: Optional[float] = None
    payout_quote: Optional[float] = None
    cap_applied: Optional[bool] = False
    payment_reference: Optional[str] = None
    history: List[AdminStatusEventOut] = Field(default_factory=list)

    @classmethod
    def from_claim(cls, claim: models.Claim):
        out = super().from_claim(claim)
        out.display_status = claim.status
        return out


class VerificationOut(BaseModel):
    status: str
    display_status: str
    reason: Optional[str] = None
    message: str = ""
    payout: float = 0.0

    @classmethod
    def from_result(cls, result):
        display = PENDING_HUMAN_REVIEW if result.status in _HELD else result.status
        return cls(status=result.status, display_status=display, reason=result.reason,
                   message=result.message, payout=result.payout)


class EstimateRequest(BaseModel):
    user_id: str
    estimator_role: Literal["Creator", "Admin"] = "Creator"
    estimator_id: Optional[str] = None


class ApplyRequest(BaseModel):
    user_id: str


class RecalculateRequest(BaseModel):
    user_id: str
    admin_id: Optional[str] = None


class AdjustRequest(BaseModel):
    user_id: str
    admin_id: str
    delta_percent: float = Field(..., ge=-100, le=100)
    reason: str = Field(..., min_length=1)


class PayRequest(BaseModel):
    user_id: str
    payment_method: Literal["M-Pesa"] = "M-Pesa"
    payment_details: str = Field(..., min_length=1)


class RetryPaymentRequest(BaseModel):
    user_id: str
    payment_method: Literal["M-Pesa"] = "M-Pesa"
    payment_details: str = ""


class CapUpdate(BaseModel):
    user_id: str
    monthly_cap: float = Field(..., gt=0)


class PremiumOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    currency: str
    base_percentage: float
    discount_percentage: float
    discount_reason: Optional[str] = ""
    preventive_discount: float
    final_percentage: float
    final_amount: float
    monthly_cap: float
    valid_from: Optional[datetime.datetime] = None
    valid_until: Optional[datetime.datetime] = None
    payment_status: str
    due_date: datetime.datetime
    payment_date: Optional[datetime.datetime] = None
    transaction_id: Optional[str] = ""
    renewal_count: int = 0
    next_calculation_date: Optional[datetime.datetime] = None
    adjustment_history: Optional[list] = None
    calculation_history: Optional[list] = None


class MetricOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    category: Optional[str] = None
    count: Optional[int] = 0
    paid: Optional[float] = 0.0
    avg_fraud_score: Optional[float] = None
    computed_at: Optional[datetime.datetime] = None
