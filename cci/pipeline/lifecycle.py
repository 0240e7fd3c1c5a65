# cci/pipeline/lifecycle.py
"""
Claim lifecycle controller.

Drives a claim through drop detection, coverage, duplicate and fraud
checks, and the payout / manual review / rejection branch. Every status
change appends a ClaimStatusEvent and updates ``Claim.status`` in the same
unit of work; nothing in the history is edited or removed.
"""
import asyncio
import datetime
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .. import models
from ..exceptions import Forbidden, Ineligible, NotFound, PreconditionFailed, ClaimsError
from ..repository import AccountRepository, ClaimRepository, PolicyRepository, RevenueHistorySource, billing_period
from . import policy_rules
from .evaluation import (
    DropMetrics, calculate_payout, classify_coverage, detect_drop, duplicate_search_window, is_duplicate,
    map_covered_reason,
)
from .events import ClaimReinstated, ClaimRejectedForFraud, EventBus
from .fraud import FraudAssessment, FraudSignals, apply_enrichment, branch, score_claim
from .locks import UserLocks
from .notifications import LogNotifier, Notifier
from .payments import MockMpesaGateway, PaymentGateway

logger = logging.getLogger(__name__)

# Rejection reason codes, stable across releases
NO_QUALIFYING_LOSS = "no_qualifying_loss"
NOT_COVERED = "not_covered"
DUPLICATE_CLAIM = "duplicate_claim"
HIGH_FRAUD_RISK = "high_fraud_risk"
CAP_EXHAUSTED = "cap_exhausted"
MANUAL_REJECTED = "manual_rejected"

DUPLICATE_MESSAGE = "Not covered: Duplicate claim for same event."

ALLOWED_TRANSITIONS = {
    None: {models.SUBMITTED},
    models.SUBMITTED: {models.UNDER_REVIEW},
    models.UNDER_REVIEW: {models.UNDER_REVIEW, models.AI_REVIEWED, models.MANUAL_REVIEW, models.APPROVED, models.REJECTED},
    models.AI_REVIEWED: {models.UNDER_REVIEW, models.APPROVED, models.REJECTED},
    models.MANUAL_REVIEW: {models.UNDER_REVIEW, models.AI_REVIEWED, models.APPROVED, models.REJECTED},
    models.APPROVED: {models.PAID},
    models.REJECTED: {models.UNDER_REVIEW},
    models.PAID: {models.REINSTATED},
    models.REINSTATED: set(),
}

PRE_DECISION = {models.SUBMITTED, models.UNDER_REVIEW, models.AI_REVIEWED, models.MANUAL_REVIEW}
REVIEWABLE = {models.UNDER_REVIEW, models.AI_REVIEWED, models.MANUAL_REVIEW}


@dataclass
class VerificationResult:
    status: str
    reason: Optional[str] = None
    message: str = ""
    payout: float = 0.0
    fraud_score: Optional[int] = None

    @property
    def needs_manual(self) -> bool:
        return self.status == models.MANUAL_REVIEW


class ClaimLifecycle:
    def __init__(
        self,
        claims: ClaimRepository,
        policies: PolicyRepository,
        accounts: AccountRepository,
        revenue: RevenueHistorySource,
        notifier: Optional[Notifier] = None,
        gateway: Optional[PaymentGateway] = None,
        bus: Optional[EventBus] = None,
        locks: Optional[UserLocks] = None,
        enrich: Optional[Callable] = None,
        enrichment_timeout: float = 10.0,
        rules: Optional[Dict[str, Any]] = None,
        clock: Callable[[], datetime.datetime] = models.utcnow,
    ):
        self.claims = claims
        self.policies = policies
        self.accounts = accounts
        self.revenue = revenue
        self.notifier = notifier or LogNotifier()
        self.gateway = gateway or MockMpesaGateway()
        self.bus = bus or EventBus()
        self.locks = locks if locks is not None else UserLocks()
        self.enrich = enrich
        self.enrichment_timeout = enrichment_timeout
        self.rules = rules or policy_rules.load_rules()
        self.clock = clock

    # --- helpers -----------------------------------------------------------

    def _transition(self, claim: models.Claim, status: str, actor: Optional[str] = None,
                    notes: str = "", message: str = ""):
        current = claim.history[-1].status if claim.history else None
        if status not in ALLOWED_TRANSITIONS[current]:
            raise PreconditionFailed(f"Claim {claim.id} cannot move from {current} to {status}")
        claim.history.append(models.ClaimStatusEvent(
            seq=len(claim.history),
            status=status,
            at=self.clock(),
            actor=actor,
            notes=notes,
            message=message,
        ))
        claim.status = status

    async def _notify(self, user_id: str, kind: str, payload: Dict[str, Any]):
        try:
            await self.notifier.notify(user_id, kind, payload)
        except Exception:
            logger.exception("[Lifecycle] Notification %s for user %s failed", kind, user_id)

    def _get_account(self, user_id: str) -> models.CreatorAccount:
        account = self.accounts.get(user_id)
        if account is None:
            raise NotFound(f"Creator {user_id} not found")
        return account

    def _get_policy(self, claim: models.Claim) -> models.Premium:
        policy = self.policies.get(claim.policy_id)
        if policy is None:
            raise NotFound(f"Policy {claim.policy_id} not found")
        return policy

    def _reset_evaluation(self, claim: models.Claim):
        claim.duplicate = False
        claim.fraud_score = None
        claim.fraud_reasons = []
        claim.enrichment_inconclusive = False
        claim.payout_raw = None
        claim.payout_quote = None
        claim.cap_applied = False
        claim.rejection_reason = None
        claim.rejection_message = None

    async def _reject(self, claim: models.Claim, reason: str, message: str,
                      actor: Optional[str] = None, notes: Optional[str] = None) -> VerificationResult:
        claim.rejection_reason = reason
        claim.rejection_message = message
        self._transition(claim, models.REJECTED, actor, notes if notes is not None else message, message)
        self.claims.save(claim)
        logger.info("[Lifecycle] Claim %s rejected: %s", claim.id, reason)
        await self._notify(claim.user_id, "claim_rejected", {"claim_id": claim.id, "reason": reason, "message": message})
        return VerificationResult(status=models.REJECTED, reason=reason, message=message, fraud_score=claim.fraud_score)

    def _pay(self, claim: models.Claim, policy: models.Premium, amount: float, actor: Optional[str] = None):
        now = self.clock()
        self.policies.record_payout(policy, claim.id, amount, billing_period(now))
        claim.payment_reference = self.gateway.disburse(claim.user_id, amount)
        claim.payout_amount = amount
        claim.payout_date = now
        self._transition(claim, models.PAID, actor, message=f"{policy.currency} {round(amount)} sent to your M-Pesa.")
        logger.info("[Lifecycle] Payout processed: claim %s, amount %s %.2f", claim.id, policy.currency, amount)

    def _has_paid_duplicate(self, claim: models.Claim) -> bool:
        """Caller holds the user's lock."""
        start, end = duplicate_search_window(claim.incident_at, self.rules)
        prior = self.claims.find_by_user_and_date_range(
            claim.user_id, start, end, reached=(models.APPROVED, models.PAID), exclude_id=claim.id,
        )
        return is_duplicate(claim.incident_at, [c.incident_at for c in prior], self.rules)

    def _cap_remaining(self, policy: models.Premium) -> float:
        locked = self.policies.lock(policy.id) or policy
        return locked.monthly_cap - self.policies.paid_in_period(policy.id, billing_period(self.clock()))

    async def _assess_fraud(self, claim: models.Claim, account: models.CreatorAccount,
                            history, metrics: DropMetrics) -> FraudAssessment:
        signals = FraudSignals(
            incident_at=claim.incident_at,
            incident_type=claim.incident_type,
            covered_reason=claim.covered_reason,
            appeal_status=claim.appeal_status,
            baseline_daily=metrics.baseline_daily,
            history=history,
            upload_times=[_parse_ts(t) for t in (account.upload_timestamps or [])],
            channel_published_at=account.channel_published_at,
            registered_name=account.full_name,
            payout_name=account.payout_name,
        )
        assessment = score_claim(signals, self.clock(), self.rules)
        if self.enrich is None:
            return assessment

        facts = {
            "incident_type": claim.incident_type,
            "covered_reason": claim.covered_reason,
            "baseline_daily": round(metrics.baseline_daily, 2),
            "drop_percent": round(metrics.drop_percent, 1),
            "lost_days": metrics.qualifying_lost_days,
            "evidence_summary": claim.evidence_summary or "",
        }
        try:
            enrichment = await asyncio.wait_for(
                asyncio.to_thread(self.enrich, facts, assessment.score, list(assessment.reasons)),
                timeout=self.enrichment_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("[Lifecycle] Fraud enrichment timed out for claim %s", claim.id)
            enrichment = None
        except Exception as e:
            logger.warning("[Lifecycle] Fraud enrichment unavailable for claim %s: %s", claim.id, e)
            enrichment = None
        return apply_enrichment(assessment, enrichment, self.rules)

    # --- operations ---------------------------------------------------------

    async def submit_claim(
        self,
        user_id: str,
        incident_type: str,
        incident_at: datetime.datetime,
        appeal_status: str = "Not started",
        evidence_summary: str = "",
        evidence_files: Optional[List[Dict[str, Any]]] = None,
        detected_reason: Optional[str] = None,
        platform: str = "YouTube",
    ):
        """Create a claim against the creator's active policy and verify it inline."""
        self._get_account(user_id)
        now = self.clock()
        policy = self.policies.get_active_policy(user_id, now)
        if policy is None:
            raise Ineligible("No active insurance policy")

        claim = models.Claim(
            user_id=user_id,
            policy_id=policy.id,
            platform=platform,
            incident_type=incident_type,
            incident_at=models.to_utc_naive(incident_at),
            appeal_status=appeal_status,
            detected_reason=detected_reason,
            evidence_summary=evidence_summary or "",
            evidence_files=list(evidence_files or []),
            fraud_reasons=[],
            resolution_deadline=now + datetime.timedelta(days=self.rules["payout"]["resolution_sla_days"]),
        )
        self._transition(claim, models.SUBMITTED, user_id, message="Claim received.")
        self.claims.save(claim)
        logger.info("[Lifecycle] Claim %s submitted by %s", claim.id, user_id)

        result = await self.verify_claim(claim)
        await self._notify(user_id, "claim_submitted", {
            "claim_id": claim.id, "status": result.status, "message": claim.history[-1].message,
        })
        return claim, result

    async def verify_claim(self, claim: models.Claim, actor: Optional[str] = None) -> VerificationResult:
        """Run the adjudication steps in order and leave the claim in its resulting state."""
        account = self._get_account(claim.user_id)
        policy = self._get_policy(claim)
        cov = self.rules["coverage"]

        self._reset_evaluation(claim)
        self._transition(claim, models.UNDER_REVIEW, actor, notes="Verification started",
                         message="Big drop detected. Verifying in 24h.")

        # 1) qualifying loss
        history = await self.revenue.get_history(claim.user_id)
        metrics = detect_drop(history, claim.incident_at, account.avg_daily_revenue_90d, self.rules)
        claim.baseline_daily = metrics.baseline_daily
        claim.drop_percent = metrics.drop_percent
        claim.lost_days = metrics.qualifying_lost_days
        claim.observed_lost_days = metrics.observed_lost_days
        if metrics.drop_percent < cov["min_drop_percent"] or metrics.qualifying_lost_days < cov["min_lost_days"]:
            return await self._reject(
                claim, NO_QUALIFYING_LOSS,
                f"Not covered: No qualifying income loss (>={cov['min_drop_percent']:.0f}% for "
                f"{cov['min_lost_days']}+ days).",
            )

        # 2) coverage
        claim.covered_reason = map_covered_reason(claim.incident_type, claim.detected_reason, self.rules)
        verdict = classify_coverage(claim.covered_reason, metrics, account.strikes, self.rules)
        if not verdict.approved:
            return await self._reject(claim, NOT_COVERED, verdict.describe())

        async with self.locks.for_user(claim.user_id):
            # 3) duplicate
            claim.duplicate = self._has_paid_duplicate(claim)
            if claim.duplicate:
                return await self._reject(claim, DUPLICATE_CLAIM, DUPLICATE_MESSAGE)

            # 4) fraud score and payout, kept for audit on every path from here
            assessment = await self._assess_fraud(claim, account, history, metrics)
            claim.fraud_score = assessment.score
            claim.fraud_reasons = list(assessment.reasons)
            claim.enrichment_inconclusive = assessment.inconclusive
            quote = calculate_payout(metrics.baseline_daily, metrics.qualifying_lost_days,
                                     policy.monthly_cap, self._cap_remaining(policy), self.rules)
            claim.payout_raw = quote.raw
            claim.payout_quote = quote.capped
            claim.cap_applied = quote.cap_applied

            # 5) branch
            decision = branch(assessment.score, self.rules)
            if decision == "approve" and assessment.inconclusive:
                decision = "manual"

            if decision == "reject":
                result = await self._reject(claim, HIGH_FRAUD_RISK, "Not covered: High fraud risk detected.")
                self.bus.publish(ClaimRejectedForFraud(claim.user_id, claim.id, assessment.score))
                return result

            if decision == "manual":
                self._transition(claim, models.MANUAL_REVIEW, actor,
                                 notes=f"Fraud score {assessment.score} in manual band",
                                 message="Pending human review.")
                self.claims.save(claim)
                logger.info("[Lifecycle] Claim %s held for manual review (score %s)", claim.id, assessment.score)
                return VerificationResult(status=models.MANUAL_REVIEW, fraud_score=assessment.score)

            if quote.capped <= 0:
                return await self._reject(claim, CAP_EXHAUSTED, "Not covered: Monthly payout cap already reached.")

            self._transition(claim, models.APPROVED, actor,
                             message=f"Claim approved! {policy.currency} {round(quote.capped)} incoming.")
            self._pay(claim, policy, quote.capped, actor)
            self.claims.save(claim)

        await self._notify(claim.user_id, "claim_paid", {
            "claim_id": claim.id, "amount": claim.payout_amount, "message": claim.history[-1].message,
        })
        return VerificationResult(status=models.PAID, payout=claim.payout_amount, fraud_score=assessment.score)

    async def review(self, claim: models.Claim, is_valid: bool, reviewer_id: str, notes: str) -> VerificationResult:
        """Human decision on a claim held for review."""
        if claim.status not in REVIEWABLE:
            raise PreconditionFailed(f"Claim {claim.id} is not eligible for manual review ({claim.status})")
        claim.manual_valid = is_valid
        claim.reviewer_id = reviewer_id
        claim.review_notes = notes

        if not is_valid:
            return await self._reject(claim, MANUAL_REJECTED, "Rejected after review.", reviewer_id, notes)

        policy = self._get_policy(claim)
        async with self.locks.for_user(claim.user_id):
            # a sibling claim for the same event may have been paid while this one was held
            claim.duplicate = self._has_paid_duplicate(claim)
            if claim.duplicate:
                return await self._reject(claim, DUPLICATE_CLAIM, DUPLICATE_MESSAGE, reviewer_id, notes)

            quote = calculate_payout(claim.baseline_daily or 0.0, claim.lost_days or 0,
                                     policy.monthly_cap, self._cap_remaining(policy), self.rules)
            claim.payout_raw = quote.raw
            claim.payout_quote = quote.capped
            claim.cap_applied = quote.cap_applied
            if quote.capped <= 0:
                return await self._reject(claim, CAP_EXHAUSTED, "Not covered: Monthly payout cap already reached.",
                                          reviewer_id, notes)
            self._transition(claim, models.APPROVED, reviewer_id, notes,
                             f"Approved after review! {policy.currency} {round(quote.capped)} incoming.")
            self._pay(claim, policy, quote.capped, reviewer_id)
            self.claims.save(claim)

        logger.info("[Lifecycle] Claim %s approved by reviewer %s", claim.id, reviewer_id)
        await self._notify(claim.user_id, "claim_paid", {"claim_id": claim.id, "amount": claim.payout_amount,
                                                         "message": notes})
        return VerificationResult(status=models.PAID, payout=claim.payout_amount, fraud_score=claim.fraud_score)

    async def bulk_review(self, reviews: List[Dict[str, Any]], reviewer_id: str) -> List[Dict[str, Any]]:
        results = []
        for item in reviews:
            claim_id = item.get("claim_id")
            claim = self.claims.find_by_id(claim_id) if claim_id else None
            if claim is None:
                results.append({"claim_id": claim_id, "success": False, "error": "Claim not found"})
                continue
            try:
                outcome = await self.review(claim, item["is_valid"], reviewer_id, item.get("notes", ""))
            except ClaimsError as e:
                results.append({"claim_id": claim_id, "success": False, "error": str(e)})
                continue
            results.append({"claim_id": claim_id, "success": True, "status": outcome.status, "payout": outcome.payout})
        return results

    async def ai_review(self, claim: models.Claim, admin_id: str) -> FraudAssessment:
        """Re-score a held claim (with enrichment when configured) and record the AI review step."""
        if claim.status not in (models.UNDER_REVIEW, models.MANUAL_REVIEW):
            raise PreconditionFailed(f"Claim {claim.id} is not awaiting review ({claim.status})")
        account = self._get_account(claim.user_id)
        history = await self.revenue.get_history(claim.user_id)
        metrics = DropMetrics(
            baseline_daily=claim.baseline_daily or 0.0,
            drop_percent=claim.drop_percent or 0.0,
            qualifying_lost_days=claim.lost_days or 0,
            observed_lost_days=claim.observed_lost_days or 0,
        )
        assessment = await self._assess_fraud(claim, account, history, metrics)
        claim.fraud_score = assessment.score
        claim.fraud_reasons = list(assessment.reasons)
        claim.enrichment_inconclusive = assessment.inconclusive
        self._transition(claim, models.AI_REVIEWED, admin_id, notes=f"AI fraud score: {assessment.score}")
        self.claims.save(claim)
        return assessment

    async def update_evidence(self, claim: models.Claim, user_id: str, summary: Optional[str] = None,
                              files: Optional[List[Dict[str, Any]]] = None) -> VerificationResult:
        if claim.user_id != user_id:
            raise Forbidden("Unauthorized")
        if claim.status not in PRE_DECISION:
            raise PreconditionFailed("Cannot update evidence after final decision")
        if summary:
            claim.evidence_summary = summary
        if files:
            claim.evidence_files.extend(files)
        return await self.verify_claim(claim, actor=user_id)

    async def appeal(self, claim: models.Claim, user_id: str, appeal_status: str, notes: str = "",
                     files: Optional[List[Dict[str, Any]]] = None) -> VerificationResult:
        if claim.user_id != user_id:
            raise Forbidden("Unauthorized")
        if claim.status != models.REJECTED:
            raise PreconditionFailed("Only rejected claims can be appealed")
        claim.appeal_status = appeal_status
        claim.evidence_summary = f"{claim.evidence_summary or ''}\nAppeal Notes: {notes}".strip()
        if files:
            claim.evidence_files.extend(files)
        result = await self.verify_claim(claim, actor=user_id)
        await self._notify(user_id, "claim_appealed", {"claim_id": claim.id, "status": result.status,
                                                        "message": notes})
        return result

    async def reinstate(self, claim: models.Claim, actor: Optional[str] = None) -> Dict[str, Any]:
        """Partial clawback after the platform restores the creator's revenue."""
        if claim.reinstated or claim.status != models.PAID:
            raise PreconditionFailed("Not eligible for reinstatement or already handled")
        cfg = self.rules["payout"]
        claim.reinstated = True
        claim.repay_amount = (claim.payout_amount or 0.0) * cfg["repay_ratio"]
        claim.repay_deadline = self.clock() + datetime.timedelta(days=cfg["repay_window_days"])
        message = (
            f"Reinstated! Repay {round(claim.repay_amount)} within {cfg['repay_window_days']} days "
            f"(by {claim.repay_deadline.date().isoformat()}) to avoid blacklist."
        )
        self._transition(claim, models.REINSTATED, actor, "Appeal successful", message)
        self.claims.save(claim)
        self.bus.publish(ClaimReinstated(claim.user_id, claim.id, claim.repay_amount))
        await self._notify(claim.user_id, "claim_reinstated", {"claim_id": claim.id, "message": message})
        return {"repay_amount": claim.repay_amount, "deadline": claim.repay_deadline}

    def delete_claim(self, claim: models.Claim, user_id: str):
        if claim.user_id != user_id:
            raise Forbidden("Unauthorized")
        if claim.status != models.SUBMITTED:
            raise PreconditionFailed("Cannot delete claim after processing started")
        self.claims.delete(claim)


def _parse_ts(value) -> datetime.datetime:
    if not isinstance(value, datetime.datetime):
        value = datetime.datetime.fromisoformat(str(value))
    return models.to_utc_naive(value)
