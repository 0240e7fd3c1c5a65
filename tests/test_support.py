import asyncio
import datetime
import json

import pytest
import requests
from sqlalchemy.exc import OperationalError

from cci import models
from cci.db_utils import refresh_avg_daily_revenue, trim_revenue_window, upsert_revenue_entry
from cci.exceptions import PreconditionFailed
from cci.pipeline import llm_client, policy_rules
from cci.pipeline.events import ClaimRejectedForFraud, ClaimReinstated, EventBus, StandingHandler
from cci.pipeline.locks import UserLocks
from cci.repository import AccountRepository, PolicyRepository, RevenueHistorySource

from conftest import NOW, make_account, make_policy, seed_revenue


# --- rules ---

def test_rules_default_when_no_override(tmp_path, monkeypatch):
    monkeypatch.setattr(policy_rules, "RULES_DIR", str(tmp_path))
    rules = policy_rules.load_rules()
    assert rules["coverage"]["min_drop_percent"] == 70
    assert rules["fraud"]["weights"]["copyrightMismatch"] == 25


def test_rules_override_file(tmp_path, monkeypatch):
    (tmp_path / "strict_claims.json").write_text(json.dumps({
        "coverage": {"min_drop_percent": 80, "covered": ["AD_SUITS"]},
        "unknown": {"x": 1},
    }))
    monkeypatch.setattr(policy_rules, "RULES_DIR", str(tmp_path))
    rules = policy_rules.load_rules("strict")
    assert rules["coverage"]["min_drop_percent"] == 80
    assert rules["coverage"]["covered"] == {"AD_SUITS"}
    assert rules["coverage"]["min_lost_days"] == 3
    assert "unknown" not in rules


# --- standing events ---

def test_standing_floors(db):
    make_account(db, user_id="a", fraud_standing=10)
    make_account(db, user_id="b", fraud_standing=55)
    accounts = AccountRepository(db)
    bus = EventBus()
    StandingHandler(accounts).register(bus)

    bus.publish(ClaimRejectedForFraud("a", "c1", 30))
    bus.publish(ClaimReinstated("b", "c2", 1750.0))

    assert accounts.get("a").fraud_standing == 0
    assert accounts.get("b").fraud_standing == 50
    assert len(accounts.get("b").risk_history) == 1


def test_event_for_unknown_account_is_ignored(db):
    bus = EventBus()
    StandingHandler(AccountRepository(db)).register(bus)
    bus.publish(ClaimRejectedForFraud("ghost", "c1", 10))


# --- per-creator locks ---

def test_user_lock_dropped_after_release():
    locks = UserLocks()

    async def hold():
        async with locks.for_user("creator-1"):
            assert locks.tracked() == 1

    asyncio.run(hold())
    assert locks.tracked() == 0


def test_user_lock_kept_while_others_wait():
    locks = UserLocks()
    order = []

    async def worker(name):
        async with locks.for_user("creator-1"):
            order.append(f"{name}-in")
            assert locks.tracked() == 1
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    async def run():
        await asyncio.gather(worker("a"), worker("b"))
        return locks.tracked()

    assert asyncio.run(run()) == 0
    assert order == ["a-in", "a-out", "b-in", "b-out"]


# --- repositories ---

def test_revenue_history_window(db):
    make_account(db)
    seed_revenue(db, "creator-1", datetime.date(2025, 3, 1), [1.0, 2.0, 3.0, 4.0])
    source = RevenueHistorySource(db)
    history = asyncio.run(source.get_history("creator-1", before=datetime.date(2025, 3, 4),
                                             after=datetime.date(2025, 3, 2)))
    assert [s.amount for s in history] == [2.0, 3.0]


def test_revenue_history_read_failure_degrades_to_empty(db, monkeypatch):
    source = RevenueHistorySource(db)

    def boom(*_):
        raise OperationalError("SELECT", {}, Exception("db gone"))

    monkeypatch.setattr(db, "query", boom)
    assert asyncio.run(source.get_history("creator-1")) == []


def test_active_policy_window(db):
    make_account(db)
    make_policy(db, valid_from=NOW + datetime.timedelta(days=1))
    assert PolicyRepository(db).get_active_policy("creator-1", NOW) is None
    assert PolicyRepository(db).get_active_policy("creator-1", NOW + datetime.timedelta(days=2)) is not None


def test_record_payout_refuses_over_cap(db):
    make_account(db)
    policy = make_policy(db, monthly_cap=1000.0)
    claim = models.Claim(user_id="creator-1", policy_id=policy.id, incident_type="Limited ads",
                         incident_at=NOW, evidence_files=[], fraud_reasons=[])
    db.add(claim)
    db.commit()
    repo = PolicyRepository(db)
    with pytest.raises(PreconditionFailed):
        repo.record_payout(policy, claim.id, 1200.0, "2025-03")
    repo.record_payout(policy, claim.id, 1000.0, "2025-03")
    db.commit()
    assert repo.paid_in_period(policy.id, "2025-03") == 1000.0
    assert repo.paid_in_period(policy.id, "2025-04") == 0.0


# --- revenue ingestion helpers ---

def test_upsert_replaces_same_day(db):
    make_account(db)
    upsert_revenue_entry(db, "creator-1", datetime.date(2025, 3, 1), 100.0)
    upsert_revenue_entry(db, "creator-1", datetime.date(2025, 3, 1), 250.0, views=40)
    db.commit()
    rows = db.query(models.RevenueEntry).all()
    assert len(rows) == 1
    assert rows[0].amount == 250.0
    assert rows[0].views == 40


def test_trim_keeps_newest_and_refreshes_average(db):
    account = make_account(db)
    seed_revenue(db, "creator-1", datetime.date(2025, 1, 1), [10.0] * 5 + [100.0] * 3)
    removed = trim_revenue_window(db, "creator-1", keep=3)
    avg = refresh_avg_daily_revenue(db, account)
    db.commit()
    assert removed == 5
    assert avg == pytest.approx(100.0)
    assert account.monthly_earnings == pytest.approx(3000.0)


# --- AI client ---

class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body

    def json(self):
        return self._body


def test_enrichment_parses_fenced_json(monkeypatch):
    text = '```json\n{"adjustment": -10, "reasons": ["thin evidence"]}\n```'
    monkeypatch.setattr(llm_client.requests, "post",
                        lambda *a, **k: FakeResponse(200, [{"generated_text": text}]))
    result = llm_client.enrich_fraud_score({"incident_type": "Limited ads"}, 90, [])
    assert result.adjustment == -10
    assert result.reasons == ["thin evidence"]


def test_enrichment_rejects_invalid_reply(monkeypatch):
    monkeypatch.setattr(llm_client.requests, "post",
                        lambda *a, **k: FakeResponse(200, [{"generated_text": '{"adjustment": "lots"}'}]))
    with pytest.raises(llm_client.EnrichmentUnavailable):
        llm_client.enrich_fraud_score({}, 90, [])


def test_enrichment_transport_errors(monkeypatch):
    def down(*a, **k):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(llm_client.requests, "post", down)
    with pytest.raises(llm_client.EnrichmentUnavailable):
        llm_client.enrich_fraud_score({}, 90, [])

    monkeypatch.setattr(llm_client.requests, "post", lambda *a, **k: FakeResponse(503, {}))
    with pytest.raises(llm_client.EnrichmentUnavailable):
        llm_client.enrich_fraud_score({}, 90, [])


def test_insights_fallback_without_key():
    report = llm_client.insights_with_llm({"rejection_rate": 60.0, "manual_review": 2})
    titles = [i.title for i in report.insights]
    assert titles == ["High rejection rate", "Manual review backlog"]
