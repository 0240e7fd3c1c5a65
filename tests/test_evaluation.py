import datetime

import pytest

from cci.pipeline.evaluation import (
    DropMetrics, RevenueSample, calculate_payout, classify_coverage, detect_drop, duplicate_search_window,
    is_duplicate, map_covered_reason,
)
from cci.pipeline.policy_rules import load_rules

INCIDENT = datetime.datetime(2025, 3, 10, 9, 0)


def samples(first_day, amounts):
    return [RevenueSample(first_day + datetime.timedelta(days=i), a) for i, a in enumerate(amounts)]


def before_and_after(pre, post):
    return samples(INCIDENT.date() - datetime.timedelta(days=len(pre)), list(pre) + list(post))


# --- drop detector ---

def test_scenario_a_metrics():
    m = detect_drop(before_and_after([1000] * 7, [100] * 5), INCIDENT)
    assert m.baseline_daily == pytest.approx(1000)
    assert m.drop_percent == pytest.approx(90)
    assert m.qualifying_lost_days == 5
    assert m.observed_lost_days == 5


def test_baseline_uses_only_last_seven_days_before_incident():
    m = detect_drop(before_and_after([5000] * 3 + [1000] * 7, [1000] * 3), INCIDENT)
    assert m.baseline_daily == pytest.approx(1000)
    assert m.drop_percent == pytest.approx(0)


def test_post_window_is_ten_entries():
    m = detect_drop(before_and_after([1000] * 7, [100] * 10 + [5000] * 5), INCIDENT)
    assert m.drop_percent == pytest.approx(90)
    assert m.observed_lost_days == 10


def test_lost_day_floor_applies_when_any_day_qualifies():
    m = detect_drop(before_and_after([1000] * 7, [100, 900, 900, 900]), INCIDENT)
    assert m.observed_lost_days == 1
    assert m.qualifying_lost_days == 3


def test_no_lost_days_means_no_floor():
    m = detect_drop(before_and_after([1000] * 7, [400] * 5), INCIDENT)
    assert m.observed_lost_days == 0
    assert m.qualifying_lost_days == 0
    assert m.drop_percent == pytest.approx(60)


def test_floor_is_configurable():
    rules = load_rules()
    rules["drop"]["lost_days_floor"] = 0
    m = detect_drop(before_and_after([1000] * 7, [100, 900, 900]), INCIDENT, rules=rules)
    assert m.qualifying_lost_days == 1


def test_empty_history_is_zero_not_error():
    m = detect_drop([], INCIDENT)
    assert m == DropMetrics()


def test_fallback_baseline_when_nothing_before_incident():
    history = samples(INCIDENT.date(), [100] * 4)
    m = detect_drop(history, INCIDENT, fallback_baseline=1000)
    assert m.baseline_daily == pytest.approx(1000)
    assert m.drop_percent == pytest.approx(90)
    assert m.qualifying_lost_days == 4


def test_revenue_increase_clamps_drop_to_zero():
    m = detect_drop(before_and_after([100] * 7, [500] * 3), INCIDENT)
    assert m.drop_percent == 0


def test_samples_out_of_order_are_sorted():
    history = list(reversed(before_and_after([1000] * 7, [100] * 5)))
    assert detect_drop(history, INCIDENT).drop_percent == pytest.approx(90)


# --- coverage ---

@pytest.mark.parametrize("incident_type,expected", [
    ("Full suspension", "TEMP_SUSPEND"),
    ("Limited ads", "AD_SUITS"),
    ("Video demonetization", "POLICY_UPDATE"),
    ("Channel hacked", "OTHER_NOT_COVERED"),
])
def test_incident_type_mapping(incident_type, expected):
    assert map_covered_reason(incident_type) == expected


def test_detected_reason_overrides_table():
    assert map_covered_reason("Limited ads", "copyright") == "COPYRIGHT"
    assert map_covered_reason("Limited ads", "GLITCH") == "GLITCH"


def good_metrics():
    return DropMetrics(baseline_daily=1000, drop_percent=90, qualifying_lost_days=5, observed_lost_days=5)


def test_covered_and_eligible():
    verdict = classify_coverage("AD_SUITS", good_metrics(), strikes=0)
    assert verdict.approved
    assert verdict.failed == []


def test_uncovered_reason_is_named():
    verdict = classify_coverage("COPYRIGHT", good_metrics(), strikes=0)
    assert not verdict.approved
    assert verdict.failed == ["uncovered_reason"]
    assert "COPYRIGHT is not a covered reason" in verdict.describe()


def test_strike_threshold():
    verdict = classify_coverage("TEMP_SUSPEND", good_metrics(), strikes=3)
    assert verdict.failed == ["strike_threshold"]
    assert classify_coverage("TEMP_SUSPEND", good_metrics(), strikes=2).approved


def test_multiple_failures_reported_together():
    metrics = DropMetrics(baseline_daily=1000, drop_percent=40, qualifying_lost_days=0)
    verdict = classify_coverage("OTHER_NOT_COVERED", metrics, strikes=0)
    assert verdict.failed == ["uncovered_reason", "insufficient_drop", "insufficient_days"]
    assert verdict.describe().startswith("Not covered: ")


# --- duplicate guard ---

def test_incident_within_24h_is_duplicate():
    assert is_duplicate(INCIDENT, [INCIDENT - datetime.timedelta(hours=12)])
    assert is_duplicate(INCIDENT, [INCIDENT + datetime.timedelta(hours=23)])


def test_incident_24h_or_more_apart_is_not_duplicate():
    assert not is_duplicate(INCIDENT, [INCIDENT - datetime.timedelta(hours=24)])
    assert not is_duplicate(INCIDENT, [])


def test_duplicate_check_is_idempotent():
    prior = [INCIDENT - datetime.timedelta(hours=3)]
    assert is_duplicate(INCIDENT, prior) == is_duplicate(INCIDENT, prior)


def test_search_window_is_relative_to_incident():
    start, end = duplicate_search_window(INCIDENT)
    assert start == INCIDENT - datetime.timedelta(days=30)
    assert end == INCIDENT + datetime.timedelta(hours=24)


# --- payout ---

def test_scenario_a_payout():
    quote = calculate_payout(1000, 5, 65000)
    assert quote.daily == pytest.approx(700)
    assert quote.raw == pytest.approx(3500)
    assert quote.capped == pytest.approx(3500)
    assert not quote.cap_applied


def test_monthly_cap_limits_payout():
    quote = calculate_payout(20000, 10, 65000)
    assert quote.raw == pytest.approx(140000)
    assert quote.capped == 65000
    assert quote.cap_applied


def test_remaining_cap_limits_payout():
    quote = calculate_payout(1000, 5, 65000, cap_remaining=1000)
    assert quote.capped == 1000
    assert quote.cap_applied


def test_exhausted_cap_gives_zero():
    quote = calculate_payout(1000, 5, 65000, cap_remaining=-50)
    assert quote.capped == 0
    assert 0 <= quote.capped <= 65000
