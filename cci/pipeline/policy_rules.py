# cci/pipeline/policy_rules.py
import json
import logging
import os
from typing import Dict, Any

logger = logging.getLogger(__name__)

RULES_DIR = os.getenv("RULES_DIR", "cci/rules")

# --- Hard-coded defaults from the creator income protection terms.
# These are used if a JSON override for the profile is not present.

# Drop detection
BASELINE_WINDOW = 7
POST_INCIDENT_WINDOW = 10
LOST_DAY_REVENUE_RATIO = 0.30
LOST_DAYS_FLOOR = 3

# Eligibility
MIN_DROP_PERCENT = 70.0
MIN_LOST_DAYS = 3
MAX_STRIKES = 3

INCIDENT_REASON_MAP = {
    "Full suspension": "TEMP_SUSPEND",
    "Limited ads": "AD_SUITS",
    "Video demonetization": "POLICY_UPDATE",
}
COVERED_REASONS = {"AD_SUITS", "POLICY_UPDATE", "TEMP_SUSPEND", "GLITCH"}
UNCOVERED_REASON = "OTHER_NOT_COVERED"
COPYRIGHT_REASON = "COPYRIGHT"

# Duplicate guard (hours / days)
DUPLICATE_LOOKBACK_DAYS = 30
DUPLICATE_PROXIMITY_HOURS = 24

# Fraud scoring
FRAUD_WEIGHTS = {
    "revenueSpike": 20,
    "massUpload": 15,
    "copyrightMismatch": 25,
    "appealRejected": 10,
    "newChannel": 10,
    "nameMismatch": 5,
}
SPIKE_WINDOW_DAYS = 2
SPIKE_MULTIPLIER = 2.0
MASS_UPLOAD_COUNT = 5
MASS_UPLOAD_LOOKBACK_DAYS = 7
NEW_CHANNEL_MONTHS = 6
AUTO_APPROVE_ABOVE = 75
MANUAL_REVIEW_FROM = 50
ENRICHMENT_MAX_ADJUSTMENT = 25

# Payout
PAYOUT_RATIO = 0.70
DEFAULT_MONTHLY_CAP = 65000.0
REPAY_RATIO = 0.50
REPAY_WINDOW_DAYS = 30
RESOLUTION_SLA_DAYS = 7

# Standing penalties
FRAUD_REJECTION_PENALTY = 20
FRAUD_REJECTION_FLOOR = 0
REINSTATEMENT_PENALTY = 10
REINSTATEMENT_FLOOR = 50


def load_rules(profile: str = "default") -> Dict[str, Any]:
    """
    Load profile-specific adjudication rules if present, else fallback to defaults.
    Expects an optional file at {RULES_DIR}/{profile}_claims.json whose keys
    override the sections below.
    """
    rules = {
        "drop": {
            "baseline_window": BASELINE_WINDOW,
            "post_window": POST_INCIDENT_WINDOW,
            "lost_day_ratio": LOST_DAY_REVENUE_RATIO,
            "lost_days_floor": LOST_DAYS_FLOOR,
        },
        "coverage": {
            "min_drop_percent": MIN_DROP_PERCENT,
            "min_lost_days": MIN_LOST_DAYS,
            "max_strikes": MAX_STRIKES,
            "reason_map": dict(INCIDENT_REASON_MAP),
            "covered": set(COVERED_REASONS),
        },
        "duplicate": {
            "lookback_days": DUPLICATE_LOOKBACK_DAYS,
            "proximity_hours": DUPLICATE_PROXIMITY_HOURS,
        },
        "fraud": {
            "weights": dict(FRAUD_WEIGHTS),
            "spike_window_days": SPIKE_WINDOW_DAYS,
            "spike_multiplier": SPIKE_MULTIPLIER,
            "mass_upload_count": MASS_UPLOAD_COUNT,
            "mass_upload_lookback_days": MASS_UPLOAD_LOOKBACK_DAYS,
            "new_channel_months": NEW_CHANNEL_MONTHS,
            "auto_approve_above": AUTO_APPROVE_ABOVE,
            "manual_review_from": MANUAL_REVIEW_FROM,
            "enrichment_max_adjustment": ENRICHMENT_MAX_ADJUSTMENT,
        },
        "payout": {
            "ratio": PAYOUT_RATIO,
            "default_cap": DEFAULT_MONTHLY_CAP,
            "repay_ratio": REPAY_RATIO,
            "repay_window_days": REPAY_WINDOW_DAYS,
            "resolution_sla_days": RESOLUTION_SLA_DAYS,
        },
        "standing": {
            "fraud_rejection_penalty": FRAUD_REJECTION_PENALTY,
            "fraud_rejection_floor": FRAUD_REJECTION_FLOOR,
            "reinstatement_penalty": REINSTATEMENT_PENALTY,
            "reinstatement_floor": REINSTATEMENT_FLOOR,
        },
    }

    path = os.path.join(RULES_DIR, f"{profile}_claims.json")
    if not os.path.exists(path):
        return rules

    with open(path, "r", encoding="utf-8") as f:
        loaded = json.load(f)
    if not isinstance(loaded, dict):
        logger.warning("[Rules] %s is not a JSON object, using defaults", path)
        return rules

    for section, values in loaded.items():
        if section in rules and isinstance(values, dict):
            rules[section].update(values)
    # JSON has no sets
    rules["coverage"]["covered"] = set(rules["coverage"]["covered"])
    logger.info("[Rules] Loaded overrides for profile '%s' from %s", profile, path)
    return rules
