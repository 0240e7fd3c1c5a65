import uuid
import datetime

from sqlalchemy import (
    Column, Integer, String, Float, Date, DateTime, Text, JSON, Boolean, ForeignKey, UniqueConstraint,
)
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.orm import relationship

from .db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime.datetime) -> datetime.datetime:
    """Convert an offset-aware timestamp to naive UTC; naive values are taken as UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)


# Claim statuses
SUBMITTED = "Submitted"
UNDER_REVIEW = "Under Review"
AI_REVIEWED = "AI Reviewed"
MANUAL_REVIEW = "Manual Review"
APPROVED = "Approved"
REJECTED = "Rejected"
PAID = "Paid"
REINSTATED = "Reinstated"

CLAIM_STATUSES = (SUBMITTED, UNDER_REVIEW, AI_REVIEWED, MANUAL_REVIEW, APPROVED, REJECTED, PAID, REINSTATED)

INCIDENT_TYPES = ("Full suspension", "Limited ads", "Video demonetization")
APPEAL_STATUSES = ("Not started", "In progress", "Rejected")

# Premium payment statuses
PAYMENT_PENDING = "Pending"
PAYMENT_PAID = "Paid"
PAYMENT_OVERDUE = "Overdue"
PAYMENT_FAILED = "Failed"


class CreatorAccount(Base):
    __tablename__ = "creator_accounts"
    id = Column(String, primary_key=True, index=True, default=_uuid)
    full_name = Column(String, nullable=False)
    email = Column(String)
    payout_name = Column(String, nullable=True)
    monthly_earnings = Column(Float, default=0.0)
    avg_daily_revenue_90d = Column(Float, default=0.0)
    channel_published_at = Column(DateTime, nullable=True)
    strikes = Column(Integer, default=0)
    upload_timestamps = Column(MutableList.as_mutable(JSON), default=list)
    risk_history = Column(MutableList.as_mutable(JSON), default=list)
    fraud_standing = Column(Integer, default=100)
    insurance_status = Column(String, default="NotApplied")
    policy_end_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class RevenueEntry(Base):
    __tablename__ = "revenue_entries"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("creator_accounts.id"), index=True, nullable=False)
    entry_date = Column(Date, nullable=False, index=True)
    amount = Column(Float, nullable=False)
    views = Column(Integer, nullable=True)


class Premium(Base):
    __tablename__ = "premiums"
    id = Column(String, primary_key=True, index=True, default=_uuid)
    user_id = Column(String, ForeignKey("creator_accounts.id"), index=True, nullable=False)
    application_date = Column(DateTime, default=utcnow)
    currency = Column(String, default="KSh")
    base_percentage = Column(Float, default=2.0)
    discount_percentage = Column(Float, default=0.0)
    discount_reason = Column(String, default="")
    preventive_discount = Column(Float, default=0.0)
    final_percentage = Column(Float, default=2.0)
    final_amount = Column(Float, nullable=False)
    monthly_cap = Column(Float, default=65000.0)
    valid_from = Column(DateTime, default=utcnow)
    valid_until = Column(DateTime, nullable=True)
    payment_status = Column(String, default=PAYMENT_PENDING)
    due_date = Column(DateTime, nullable=False)
    payment_date = Column(DateTime, nullable=True)
    payment_method = Column(String, default="M-Pesa")
    transaction_id = Column(String, default="")
    payment_attempts = Column(MutableList.as_mutable(JSON), default=list)
    renewal_count = Column(Integer, default=0)
    last_renewed_at = Column(DateTime, nullable=True)
    next_calculation_date = Column(DateTime, nullable=True)
    manual_adjustment = Column(JSON, nullable=True)
    adjustment_history = Column(MutableList.as_mutable(JSON), default=list)
    calculation_history = Column(MutableList.as_mutable(JSON), default=list)
    estimation_history = Column(MutableList.as_mutable(JSON), default=list)


class PolicyPayout(Base):
    __tablename__ = "policy_payouts"
    __table_args__ = (UniqueConstraint("claim_id", name="uq_policy_payouts_claim"),)
    id = Column(Integer, primary_key=True, autoincrement=True)
    policy_id = Column(String, ForeignKey("premiums.id"), index=True, nullable=False)
    claim_id = Column(String, ForeignKey("claims.id"), nullable=False)
    amount = Column(Float, nullable=False)
    period = Column(String, index=True, nullable=False)
    paid_at = Column(DateTime, default=utcnow)


class Claim(Base):
    __tablename__ = "claims"
    id = Column(String, primary_key=True, index=True, default=_uuid)
    user_id = Column(String, ForeignKey("creator_accounts.id"), index=True, nullable=False)
    policy_id = Column(String, ForeignKey("premiums.id"), nullable=False)

    # incident facts
    platform = Column(String, default="YouTube")
    incident_type = Column(String, nullable=False)
    incident_at = Column(DateTime, nullable=False, index=True)
    appeal_status = Column(String, default="Not started")
    detected_reason = Column(String, nullable=True)
    evidence_summary = Column(Text, default="")
    evidence_files = Column(MutableList.as_mutable(JSON), default=list)

    # current state, kept in step with the last history row
    status = Column(String, default=SUBMITTED, index=True)

    # evaluation
    baseline_daily = Column(Float, nullable=True)
    drop_percent = Column(Float, nullable=True)
    lost_days = Column(Integer, default=0)
    observed_lost_days = Column(Integer, default=0)
    covered_reason = Column(String, default="OTHER_NOT_COVERED")
    duplicate = Column(Boolean, default=False)
    fraud_score = Column(Integer, nullable=True)
    fraud_reasons = Column(MutableList.as_mutable(JSON), default=list)
    enrichment_inconclusive = Column(Boolean, default=False)
    manual_valid = Column(Boolean, nullable=True)
    reviewer_id = Column(String, nullable=True)
    review_notes = Column(Text, nullable=True)
    payout_raw = Column(Float, nullable=True)
    payout_quote = Column(Float, nullable=True)
    payout_amount = Column(Float, default=0.0)
    cap_applied = Column(Boolean, default=False)
    payout_date = Column(DateTime, nullable=True)
    payment_reference = Column(String, nullable=True)
    reinstated = Column(Boolean, default=False)
    repay_amount = Column(Float, default=0.0)
    repay_deadline = Column(DateTime, nullable=True)
    rejection_reason = Column(String, nullable=True)
    rejection_message = Column(Text, nullable=True)

    resolution_deadline = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    history = relationship(
        "ClaimStatusEvent",
        order_by="ClaimStatusEvent.seq",
        cascade="all, delete-orphan",
        back_populates="claim",
    )


class ClaimStatusEvent(Base):
    __tablename__ = "claim_status_events"
    id = Column(Integer, primary_key=True, autoincrement=True)
    claim_id = Column(String, ForeignKey("claims.id"), index=True, nullable=False)
    seq = Column(Integer, nullable=False)
    status = Column(String, nullable=False)
    at = Column(DateTime, default=utcnow)
    actor = Column(String, nullable=True)
    notes = Column(Text, default="")
    message = Column(Text, default="")

    claim = relationship("Claim", back_populates="history")


class ClaimMetrics(Base):
    __tablename__ = "claim_metrics"
    id = Column(Integer, primary_key=True, autoincrement=True)
    category = Column(String)
    count = Column(Integer)
    paid = Column(Float)
    avg_fraud_score = Column(Float, nullable=True)
    computed_at = Column(DateTime, default=utcnow)
