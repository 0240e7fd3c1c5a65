# cci/pipeline/premium.py
"""
Monthly premium pricing and the policy bookkeeping around it.

Percentages are percent of monthly earnings and always land in [2, 5];
amounts always land in [1000, 5000] in the policy currency. The discount
percentage is subtracted as ``discount / 100`` percentage points, the unit
the discount has always been stored in.
"""
import datetime
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from .. import models
from ..exceptions import Ineligible, NotFound, PreconditionFailed
from ..repository import AccountRepository, PolicyRepository, billing_period
from .payments import MockMpesaGateway, PaymentGateway

logger = logging.getLogger(__name__)

BASE_PERCENTAGE = 2.0
MIN_PERCENTAGE, MAX_PERCENTAGE = 2.0, 5.0
MIN_AMOUNT, MAX_AMOUNT = 1000.0, 5000.0
MIN_MONTHLY_EARNINGS = 65000.0
MIN_STANDING_FOR_APPROVAL = 70
DEFAULT_MONTHLY_CAP = 65000.0

LOW_FRAUD_DISCOUNT = 10.0
PREVENTIVE_SERVICE_DISCOUNT = 5.0
LOW_FRAUD_REASON = "Low fraud + preventive AI discount"

FIRST_DUE_DAYS = 7
BILLING_CYCLE_DAYS = 30
POLICY_TERM_DAYS = 365


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def premium_amount(percentage: float, monthly_earnings: float) -> float:
    return clamp(percentage / 100 * (monthly_earnings or 0.0), MIN_AMOUNT, MAX_AMOUNT)


def fraud_rate_proxy(fraud_standing: Optional[int]) -> float:
    # stand-in for an observed fraud rate until claim outcomes feed one
    return 0.5 if (fraud_standing or 0) > 90 else 1.5


@dataclass
class PremiumQuote:
    base_percentage: float
    discount_percentage: float
    preventive_discount: float
    final_percentage: float
    final_amount: float
    discount_reason: str = ""


def quote(monthly_earnings: float, fraud_standing: Optional[int], base: float = BASE_PERCENTAGE) -> PremiumQuote:
    """Price a policy for the given earnings and standing."""
    discount, preventive, reason = 0.0, 0.0, ""
    if fraud_rate_proxy(fraud_standing) < 1:
        discount, preventive, reason = LOW_FRAUD_DISCOUNT, PREVENTIVE_SERVICE_DISCOUNT, LOW_FRAUD_REASON
    final_pct = clamp(base - discount / 100, MIN_PERCENTAGE, MAX_PERCENTAGE)
    return PremiumQuote(
        base_percentage=base,
        discount_percentage=discount,
        preventive_discount=preventive,
        final_percentage=final_pct,
        final_amount=premium_amount(final_pct, monthly_earnings),
        discount_reason=reason,
    )


def adjusted(final_amount: float, final_percentage: float, delta_percent: float, monthly_earnings: float):
    """Apply a manual +/- percent change to the amount; returns (amount, percentage), both re-clamped."""
    amount = clamp(final_amount * (1 + delta_percent / 100), MIN_AMOUNT, MAX_AMOUNT)
    if monthly_earnings and monthly_earnings > 0:
        pct = amount / monthly_earnings * 100
    else:
        pct = final_percentage
    return amount, clamp(pct, MIN_PERCENTAGE, MAX_PERCENTAGE)


class PremiumService:
    def __init__(self, accounts: AccountRepository, policies: PolicyRepository,
                 gateway: Optional[PaymentGateway] = None, clock=models.utcnow):
        self.accounts = accounts
        self.policies = policies
        self.gateway = gateway or MockMpesaGateway()
        self.clock = clock

    @property
    def db(self):
        return self.policies.db

    def _account(self, user_id: str) -> models.CreatorAccount:
        account = self.accounts.get(user_id)
        if account is None:
            raise NotFound(f"User {user_id} not found")
        return account

    def _policy(self, user_id: str) -> models.Premium:
        policy = self.policies.get_for_user(user_id)
        if policy is None:
            raise NotFound("Premium not found")
        return policy

    def _commit(self):
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

    def estimate(self, user_id: str, estimator_role: str = "Creator", estimator_id: Optional[str] = None) -> Dict[str, Any]:
        account = self._account(user_id)
        earnings = account.monthly_earnings or 0.0
        if earnings < MIN_MONTHLY_EARNINGS:
            return {"eligible": False, "message": f"Min {MIN_MONTHLY_EARNINGS:,.0f}/mo required"}

        pct = BASE_PERCENTAGE
        amount = premium_amount(pct, earnings)
        entry = {
            "date": self.clock().isoformat(),
            "role": estimator_role,
            "estimated_by": estimator_id,
            "estimated_percentage": pct,
            "estimated_amount": amount,
        }
        policy = self.policies.get_for_user(user_id)
        if policy is not None:
            policy.estimation_history.append(entry)
            self._commit()
        logger.info("[Premium] Estimated for user %s by %s: %.2f%% (%.2f)", user_id, estimator_role, pct, amount)
        return {"eligible": True, "estimated_percentage": pct, "estimated_amount": amount}

    def create_from_application(self, user_id: str) -> models.Premium:
        account = self._account(user_id)
        if (account.monthly_earnings or 0.0) < MIN_MONTHLY_EARNINGS:
            raise Ineligible(f"Min {MIN_MONTHLY_EARNINGS:,.0f}/mo earnings required")
        if (account.fraud_standing or 0) < MIN_STANDING_FOR_APPROVAL:
            raise Ineligible("Fraud standing too low for approval")

        now = self.clock()
        q = quote(account.monthly_earnings, account.fraud_standing)
        policy = models.Premium(
            user_id=user_id,
            application_date=now,
            base_percentage=q.base_percentage,
            discount_percentage=q.discount_percentage,
            discount_reason=q.discount_reason,
            preventive_discount=q.preventive_discount,
            final_percentage=q.final_percentage,
            final_amount=q.final_amount,
            monthly_cap=DEFAULT_MONTHLY_CAP,
            valid_from=now,
            valid_until=now + datetime.timedelta(days=POLICY_TERM_DAYS),
            due_date=now + datetime.timedelta(days=FIRST_DUE_DAYS),
            next_calculation_date=now + datetime.timedelta(days=BILLING_CYCLE_DAYS),
            payment_attempts=[],
            adjustment_history=[],
            calculation_history=[],
            estimation_history=[],
        )
        account.insurance_status = "Approved"
        account.policy_end_date = policy.valid_until
        self.db.add(policy)
        self._commit()
        logger.info("[Premium] Policy created for user %s: %s %.2f/mo", user_id, policy.currency, policy.final_amount)
        return policy

    def recalculate(self, user_id: str, admin_id: Optional[str] = None) -> models.Premium:
        policy = self._policy(user_id)
        account = self._account(user_id)
        q = quote(account.monthly_earnings, account.fraud_standing, base=policy.base_percentage)
        now = self.clock()
        policy.discount_percentage = q.discount_percentage
        policy.discount_reason = q.discount_reason
        policy.preventive_discount = q.preventive_discount
        policy.final_percentage = q.final_percentage
        policy.final_amount = q.final_amount
        policy.calculation_history.append({
            "date": now.isoformat(),
            "base_percentage": policy.base_percentage,
            "discount_percentage": policy.discount_percentage,
            "final_percentage": policy.final_percentage,
            "final_amount": policy.final_amount,
            "calculated_by": admin_id or "System",
        })
        policy.due_date = now + datetime.timedelta(days=BILLING_CYCLE_DAYS)
        policy.next_calculation_date = now + datetime.timedelta(days=BILLING_CYCLE_DAYS)
        self._commit()
        return policy

    def adjust(self, user_id: str, delta_percent: float, reason: str, admin_id: str) -> models.Premium:
        policy = self._policy(user_id)
        account = self._account(user_id)
        amount, pct = adjusted(policy.final_amount, policy.final_percentage, delta_percent, account.monthly_earnings)
        now = self.clock().isoformat()
        policy.final_amount = amount
        policy.final_percentage = pct
        policy.manual_adjustment = {"percentage": delta_percent, "reason": reason, "adjusted_by": admin_id, "adjusted_at": now}
        policy.adjustment_history.append({
            "percentage": delta_percent,
            "reason": reason,
            "adjusted_by": admin_id,
            "adjusted_at": now,
            "new_final_amount": amount,
            "new_final_percentage": pct,
        })
        self._commit()
        logger.info("[Premium] Adjusted for user %s by %s: %+.1f%% -> %.2f", user_id, admin_id, delta_percent, amount)
        return policy

    def pay(self, user_id: str, method: str, details: str) -> Dict[str, Any]:
        policy = self._policy(user_id)
        if policy.payment_status == models.PAYMENT_PAID:
            raise PreconditionFailed("Premium already paid")
        account = self._account(user_id)
        if account.insurance_status != "Approved":
            raise PreconditionFailed("Insurance not approved")

        result = self.gateway.charge(user_id, policy.final_amount, method, details)
        now = self.clock()
        if result.success:
            policy.payment_status = models.PAYMENT_PAID
            policy.payment_date = now
            policy.payment_method = method
            policy.transaction_id = result.transaction_id or ""
            policy.payment_attempts.append({"date": now.isoformat(), "status": "Success"})
            policy.renewal_count = (policy.renewal_count or 0) + 1
            policy.last_renewed_at = now
        else:
            policy.payment_status = models.PAYMENT_FAILED
            policy.payment_attempts.append({
                "date": now.isoformat(), "status": "Failed", "error": result.error or "Payment gateway error",
            })
        self._commit()
        logger.info("[Premium] Payment %s for user %s: %.2f, transaction %s",
                    "succeeded" if result.success else "failed", user_id, policy.final_amount, result.transaction_id)
        return {"success": result.success, "transaction_id": result.transaction_id if result.success else None}

    def retry_payment(self, user_id: str, method: str = "M-Pesa", details: str = "") -> Dict[str, Any]:
        policy = self._policy(user_id)
        if policy.payment_status not in (models.PAYMENT_FAILED, models.PAYMENT_OVERDUE, models.PAYMENT_PENDING):
            raise PreconditionFailed("No outstanding premium to retry")
        return self.pay(user_id, method, details)

    def mark_overdue(self) -> int:
        now = self.clock()
        due = (
            self.db.query(models.Premium)
            .filter(models.Premium.payment_status.in_([models.PAYMENT_PENDING, models.PAYMENT_FAILED]),
                    models.Premium.due_date < now)
            .all()
        )
        for policy in due:
            policy.payment_status = models.PAYMENT_OVERDUE
        self._commit()
        if due:
            logger.info("[Premium] Marked %d premiums overdue", len(due))
        return len(due)

    def update_monthly_cap(self, user_id: str, new_cap: float) -> models.Premium:
        policy = self._policy(user_id)
        paid = self.policies.paid_in_period(policy.id, billing_period(self.clock()))
        if new_cap < paid:
            raise PreconditionFailed(f"Cap {new_cap:.2f} is below {paid:.2f} already paid out this period")
        policy.monthly_cap = new_cap
        self._commit()
        return policy
