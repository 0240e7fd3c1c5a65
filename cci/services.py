# cci/services.py
"""Wires repositories and collaborators into the lifecycle controller and premium service for one Session."""
import os

from fastapi import Depends
from sqlalchemy.orm import Session

from .db import get_db
from .pipeline import llm_client
from .pipeline.events import EventBus, StandingHandler
from .pipeline.lifecycle import ClaimLifecycle
from .pipeline.locks import UserLocks
from .pipeline.policy_rules import load_rules
from .pipeline.premium import PremiumService
from .repository import AccountRepository, ClaimRepository, PolicyRepository, RevenueHistorySource

RULES_PROFILE = os.getenv("RULES_PROFILE", "default")
ENRICHMENT_TIMEOUT = float(os.getenv("ENRICHMENT_TIMEOUT_SECONDS", "10"))

# one registry per process so concurrent requests for the same creator share a lock
user_locks = UserLocks()


def build_lifecycle(db: Session, locks: UserLocks = user_locks) -> ClaimLifecycle:
    rules = load_rules(RULES_PROFILE)
    accounts = AccountRepository(db)
    bus = EventBus()
    StandingHandler(accounts, rules).register(bus)
    return ClaimLifecycle(
        claims=ClaimRepository(db),
        policies=PolicyRepository(db),
        accounts=accounts,
        revenue=RevenueHistorySource(db),
        bus=bus,
        locks=locks,
        enrich=llm_client.enrich_fraud_score if llm_client.is_configured() else None,
        enrichment_timeout=ENRICHMENT_TIMEOUT,
        rules=rules,
    )


def build_premium_service(db: Session) -> PremiumService:
    return PremiumService(AccountRepository(db), PolicyRepository(db))


def get_lifecycle(db: Session = Depends(get_db)) -> ClaimLifecycle:
    return build_lifecycle(db)


def get_premium_service(db: Session = Depends(get_db)) -> PremiumService:
    return build_premium_service(db)
