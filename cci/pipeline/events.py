# cci/pipeline/events.py
"""Claim-side domain events and the account-standing handler that consumes them."""
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Type

from .. import models
from ..repository import AccountRepository
from . import policy_rules

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimRejectedForFraud:
    user_id: str
    claim_id: str
    fraud_score: int


@dataclass(frozen=True)
class ClaimReinstated:
    user_id: str
    claim_id: str
    repay_amount: float


class EventBus:
    def __init__(self):
        self._handlers: Dict[Type, List[Callable]] = {}

    def subscribe(self, event_type: Type, handler: Callable):
        self._handlers.setdefault(event_type, []).append(handler)

    def publish(self, event):
        for handler in self._handlers.get(type(event), []):
            handler(event)


class StandingHandler:
    """Lowers a creator's fraud standing after fraud rejections and reinstatements."""

    def __init__(self, accounts: AccountRepository, rules=None):
        self.accounts = accounts
        self.cfg = (rules or policy_rules.load_rules())["standing"]

    def register(self, bus: EventBus):
        bus.subscribe(ClaimRejectedForFraud, self.on_rejected_for_fraud)
        bus.subscribe(ClaimReinstated, self.on_reinstated)

    def _lower(self, user_id: str, penalty: int, floor: int, why: str):
        account = self.accounts.get(user_id)
        if account is None:
            logger.warning("[Standing] No account %s to penalize (%s)", user_id, why)
            return
        before = account.fraud_standing if account.fraud_standing is not None else 100
        account.fraud_standing = max(floor, before - penalty)
        account.risk_history.append({
            "event": why,
            "at": models.utcnow().isoformat(),
            "standing_before": before,
            "standing_after": account.fraud_standing,
        })
        self.accounts.save(account)
        logger.info("[Standing] %s: user %s standing %s -> %s", why, user_id, before, account.fraud_standing)

    def on_rejected_for_fraud(self, event: ClaimRejectedForFraud):
        self._lower(event.user_id, self.cfg["fraud_rejection_penalty"], self.cfg["fraud_rejection_floor"],
                    f"claim {event.claim_id} rejected for fraud")

    def on_reinstated(self, event: ClaimReinstated):
        self._lower(event.user_id, self.cfg["reinstatement_penalty"], self.cfg["reinstatement_floor"],
                    f"claim {event.claim_id} reinstated")
