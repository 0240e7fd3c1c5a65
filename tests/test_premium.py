import datetime

import pytest

from cci import models
from cci.exceptions import Ineligible, NotFound, PreconditionFailed
from cci.pipeline.payments import ChargeResult, PaymentGateway
from cci.pipeline.premium import PremiumService, adjusted, quote
from cci.repository import AccountRepository, PolicyRepository, billing_period

from conftest import NOW, make_account, make_policy


class DecliningGateway(PaymentGateway):
    def __init__(self):
        self.calls = 0

    def charge(self, user_id, amount, method, details):
        self.calls += 1
        if self.calls == 1:
            return ChargeResult(success=False, error="Insufficient funds")
        return ChargeResult(success=True, transaction_id="txn_retry")


@pytest.fixture
def service(db):
    return PremiumService(AccountRepository(db), PolicyRepository(db), clock=lambda: NOW)


# --- calculator ---

def test_low_fraud_discount_granted_above_90_standing():
    q = quote(100000, 95)
    assert q.discount_percentage == 10
    assert q.preventive_discount == 5
    assert q.discount_reason
    # 2 - 10/100 clamps back to the 2% floor
    assert q.final_percentage == 2
    assert q.final_amount == pytest.approx(2000)


def test_no_discount_at_or_below_90_standing():
    q = quote(100000, 90)
    assert q.discount_percentage == 0
    assert q.preventive_discount == 0


def test_discount_visible_above_floor():
    q = quote(100000, 95, base=3.0)
    assert q.final_percentage == pytest.approx(2.9)
    assert q.final_amount == pytest.approx(2900)


@pytest.mark.parametrize("earnings,expected", [(20000, 1000), (100000, 2000), (400000, 5000)])
def test_amount_clamped(earnings, expected):
    assert quote(earnings, 50).final_amount == pytest.approx(expected)


def test_percentage_clamped_to_five():
    assert quote(100000, 50, base=9.0).final_percentage == 5


def test_manual_adjustment_rederives_percentage():
    amount, pct = adjusted(2000, 2.0, 50, 100000)
    assert amount == pytest.approx(3000)
    assert pct == pytest.approx(3.0)


def test_manual_adjustment_clamps_both():
    amount, pct = adjusted(2000, 2.0, -80, 100000)
    assert amount == 1000
    assert pct == 2
    amount, pct = adjusted(4000, 4.0, 100, 100000)
    assert amount == 5000
    assert pct == 5


def test_manual_adjustment_without_earnings_keeps_percentage():
    _, pct = adjusted(2000, 3.5, 10, 0)
    assert pct == 3.5


# --- service ---

def test_estimate_requires_minimum_earnings(db, service):
    make_account(db, monthly_earnings=50000)
    assert service.estimate("creator-1") == {"eligible": False, "message": "Min 65,000/mo required"}


def test_estimate_recorded_on_existing_policy(db, service):
    make_account(db)
    make_policy(db)
    result = service.estimate("creator-1", "Admin", "admin-1")
    assert result == {"eligible": True, "estimated_percentage": 2.0, "estimated_amount": 2000.0}
    policy = db.query(models.Premium).first()
    assert policy.estimation_history[-1]["estimated_by"] == "admin-1"


def test_estimate_unknown_user(service):
    with pytest.raises(NotFound):
        service.estimate("ghost")


def test_create_from_application(db, service):
    make_account(db, insurance_status="Pending")
    policy = service.create_from_application("creator-1")
    assert policy.monthly_cap == 65000
    assert policy.due_date == NOW + datetime.timedelta(days=7)
    assert policy.valid_until == NOW + datetime.timedelta(days=365)
    assert policy.payment_status == models.PAYMENT_PENDING
    assert 2 <= policy.final_percentage <= 5
    assert 1000 <= policy.final_amount <= 5000
    account = db.get(models.CreatorAccount, "creator-1")
    assert account.insurance_status == "Approved"


def test_application_gates(db, service):
    make_account(db, user_id="low-earner", monthly_earnings=60000)
    make_account(db, user_id="low-standing", fraud_standing=60)
    with pytest.raises(Ineligible):
        service.create_from_application("low-earner")
    with pytest.raises(Ineligible):
        service.create_from_application("low-standing")
    assert db.query(models.Premium).count() == 0


def test_recalculate_appends_history_and_moves_due_date(db, service):
    make_account(db, fraud_standing=95)
    make_policy(db, base_percentage=3.0, final_percentage=3.0, final_amount=3000.0)
    policy = service.recalculate("creator-1", "admin-1")
    assert policy.discount_percentage == 10
    assert policy.final_percentage == pytest.approx(2.9)
    assert policy.calculation_history[-1]["calculated_by"] == "admin-1"
    assert policy.due_date == NOW + datetime.timedelta(days=30)


def test_adjust_records_history(db, service):
    make_account(db)
    make_policy(db)
    policy = service.adjust("creator-1", 50, "High-risk niche", "admin-1")
    assert policy.final_amount == pytest.approx(3000)
    assert policy.final_percentage == pytest.approx(3.0)
    assert policy.manual_adjustment["reason"] == "High-risk niche"
    entry = policy.adjustment_history[-1]
    assert entry["adjusted_by"] == "admin-1"
    assert entry["new_final_amount"] == pytest.approx(3000)


def test_pay_then_pay_again_refused(db, service):
    make_account(db)
    make_policy(db)
    result = service.pay("creator-1", "M-Pesa", "0712345678")
    assert result["success"]
    policy = db.query(models.Premium).first()
    assert policy.payment_status == models.PAYMENT_PAID
    assert policy.renewal_count == 1
    assert len(policy.payment_attempts) == 1

    with pytest.raises(PreconditionFailed):
        service.pay("creator-1", "M-Pesa", "0712345678")


def test_pay_requires_approved_insurance(db, service):
    make_account(db, insurance_status="Pending")
    make_policy(db)
    with pytest.raises(PreconditionFailed):
        service.pay("creator-1", "M-Pesa", "0712345678")


def test_failed_payment_then_retry(db):
    make_account(db)
    make_policy(db)
    service = PremiumService(AccountRepository(db), PolicyRepository(db), gateway=DecliningGateway(),
                             clock=lambda: NOW)
    first = service.pay("creator-1", "M-Pesa", "0712345678")
    assert not first["success"]
    policy = db.query(models.Premium).first()
    assert policy.payment_status == models.PAYMENT_FAILED
    assert policy.payment_attempts[-1]["error"] == "Insufficient funds"

    retry = service.retry_payment("creator-1", "M-Pesa", "0712345678")
    assert retry == {"success": True, "transaction_id": "txn_retry"}
    assert policy.payment_status == models.PAYMENT_PAID
    assert len(policy.payment_attempts) == 2

    with pytest.raises(PreconditionFailed):
        service.retry_payment("creator-1")


def test_mark_overdue(db, service):
    make_account(db)
    make_account(db, user_id="creator-2")
    make_policy(db, due_date=NOW - datetime.timedelta(days=1))
    make_policy(db, user_id="creator-2", due_date=NOW + datetime.timedelta(days=1))
    assert service.mark_overdue() == 1
    statuses = {p.user_id: p.payment_status for p in db.query(models.Premium).all()}
    assert statuses == {"creator-1": models.PAYMENT_OVERDUE, "creator-2": models.PAYMENT_PENDING}


def test_cap_cannot_drop_below_paid_out(db, service):
    make_account(db)
    policy = make_policy(db)
    claim = models.Claim(user_id="creator-1", policy_id=policy.id, incident_type="Limited ads",
                         incident_at=NOW, evidence_files=[], fraud_reasons=[])
    db.add(claim)
    db.flush()
    db.add(models.PolicyPayout(policy_id=policy.id, claim_id=claim.id, amount=5000.0, period=billing_period(NOW)))
    db.commit()

    with pytest.raises(PreconditionFailed):
        service.update_monthly_cap("creator-1", 4000)
    assert service.update_monthly_cap("creator-1", 5000).monthly_cap == 5000
