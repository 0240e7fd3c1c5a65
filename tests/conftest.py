import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cci import models
from cci.db import Base
from cci.pipeline import llm_client
from cci.pipeline.events import EventBus, StandingHandler
from cci.pipeline.lifecycle import ClaimLifecycle
from cci.pipeline.notifications import Notifier
from cci.pipeline.policy_rules import load_rules
from cci.repository import AccountRepository, ClaimRepository, PolicyRepository, RevenueHistorySource

NOW = datetime.datetime(2025, 3, 20, 12, 0)
INCIDENT = datetime.datetime(2025, 3, 10, 9, 0)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    async def notify(self, user_id, template_kind, payload):
        self.sent.append((user_id, template_kind, payload))


@pytest.fixture(autouse=True)
def no_hf_key(monkeypatch):
    monkeypatch.setattr(llm_client, "HF_API_KEY", None)


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


def make_account(db, user_id="creator-1", **kw):
    fields = dict(
        id=user_id,
        full_name="Amina Wanjiru",
        email=f"{user_id}@example.com",
        monthly_earnings=100000.0,
        avg_daily_revenue_90d=1000.0,
        channel_published_at=datetime.datetime(2023, 1, 1),
        strikes=0,
        upload_timestamps=[],
        risk_history=[],
        fraud_standing=100,
        insurance_status="Approved",
    )
    fields.update(kw)
    account = models.CreatorAccount(**fields)
    db.add(account)
    db.commit()
    return account


def make_policy(db, user_id="creator-1", now=NOW, **kw):
    fields = dict(
        user_id=user_id,
        application_date=now - datetime.timedelta(days=30),
        final_amount=2000.0,
        monthly_cap=65000.0,
        valid_from=now - datetime.timedelta(days=30),
        valid_until=now + datetime.timedelta(days=335),
        due_date=now + datetime.timedelta(days=7),
        payment_attempts=[],
        adjustment_history=[],
        calculation_history=[],
        estimation_history=[],
    )
    fields.update(kw)
    policy = models.Premium(**fields)
    db.add(policy)
    db.commit()
    return policy


def seed_revenue(db, user_id, first_day: datetime.date, amounts):
    for i, amount in enumerate(amounts):
        db.add(models.RevenueEntry(user_id=user_id, entry_date=first_day + datetime.timedelta(days=i), amount=amount))
    db.commit()


def seed_scenario_a(db, user_id="creator-1", incident=INCIDENT):
    """7 days at 1000 before the incident, 5 days at 100 from the incident date on."""
    start = incident.date() - datetime.timedelta(days=7)
    seed_revenue(db, user_id, start, [1000.0] * 7 + [100.0] * 5)


def seed_scenario_d(db, user_id="creator-1", incident=INCIDENT):
    """Baseline 1400 with a spike in the last two days, then 4 days at 210 (85% drop)."""
    start = incident.date() - datetime.timedelta(days=7)
    seed_revenue(db, user_id, start, [700.0] * 5 + [3150.0] * 2 + [210.0] * 4)


def mass_uploads(incident=INCIDENT):
    base = incident - datetime.timedelta(days=2)
    return [(base + datetime.timedelta(hours=h)).isoformat() for h in range(6)]


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def build_lifecycle(db, notifier):
    def _build(**kw):
        rules = kw.pop("rules", None) or load_rules()
        accounts = AccountRepository(db)
        bus = EventBus()
        StandingHandler(accounts, rules).register(bus)
        kw.setdefault("notifier", notifier)
        kw.setdefault("clock", lambda: NOW)
        return ClaimLifecycle(
            claims=ClaimRepository(db),
            policies=PolicyRepository(db),
            accounts=accounts,
            revenue=kw.pop("revenue", None) or RevenueHistorySource(db),
            bus=bus,
            rules=rules,
            **kw,
        )
    return _build
