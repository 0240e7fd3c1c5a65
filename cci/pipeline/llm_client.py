# cci/pipeline/llm_client.py
import json
import logging
import os
import re
from typing import List, Optional, Dict, Any

import requests
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

HF_API_KEY = os.getenv("HF_INFERENCE_API_KEY")
HF_MODEL = os.getenv("HF_MODEL", "google/flan-t5-large")
HF_URL = f"https://api-inference.huggingface.co/models/{HF_MODEL}"
HEADERS = {"Authorization": f"Bearer {HF_API_KEY}"} if HF_API_KEY else {}
HF_TIMEOUT = float(os.getenv("HF_TIMEOUT_SECONDS", "8"))


class FraudEnrichment(BaseModel):
    adjustment: int = Field(0, ge=-100, le=100)
    reasons: List[str] = Field(default_factory=list)


class Insight(BaseModel):
    title: str
    description: str
    action: str
    severity: str = "medium"


class InsightReport(BaseModel):
    insights: List[Insight] = Field(default_factory=list)


class EnrichmentUnavailable(Exception):
    """The enrichment endpoint could not produce a valid reply."""


def is_configured() -> bool:
    return bool(HF_API_KEY)


def _build_fraud_prompt(claim, score, reasons):
    bullets = "\n".join([f"- {r}" for r in reasons]) or "- none"
    prompt = f"""
You are a fraud analyst for a creator income-protection insurer. Given this claim (identity masked):
incident_type={claim.get('incident_type')}, covered_reason={claim.get('covered_reason')}, baseline_daily={claim.get('baseline_daily')}, drop_percent={claim.get('drop_percent')}, lost_days={claim.get('lost_days')}, evidence={claim.get('evidence_summary')}
Deterministic legitimacy score: {score}/100
Triggered signals:
{bullets}

Task: suggest an integer score adjustment between -25 and 25 and short reasons.
Return JSON: {{ "adjustment": 0, "reasons": ["..."] }}
"""
    return prompt


def _extract_json(text: str) -> str:
    text = re.sub(r"```(?:json)?", "", text).strip()
    match = re.search(r"\{.*\}", text, re.S)
    if not match:
        raise EnrichmentUnavailable("no JSON object in model output")
    return match.group(0)


def _generate(prompt: str, max_new_tokens: int) -> str:
    payload = {"inputs": prompt, "parameters": {"max_new_tokens": max_new_tokens}}
    try:
        resp = requests.post(HF_URL, headers=HEADERS, json=payload, timeout=HF_TIMEOUT)
    except requests.RequestException as e:
        raise EnrichmentUnavailable(f"request failed: {e}") from e
    if resp.status_code != 200:
        raise EnrichmentUnavailable(f"HTTP {resp.status_code}")
    try:
        output = resp.json()
    except ValueError as e:
        raise EnrichmentUnavailable("response body is not JSON") from e
    # HF returns [{"generated_text": "..."}]
    if isinstance(output, list) and output and "generated_text" in output[0]:
        return output[0]["generated_text"]
    raise EnrichmentUnavailable("unexpected response shape")


def enrich_fraud_score(claim: Dict[str, Any], score: int, reasons: List[str]) -> FraudEnrichment:
    """
    Ask the model for a bounded score adjustment. Raises EnrichmentUnavailable
    on transport errors or a reply that does not match FraudEnrichment.
    """
    text = _generate(_build_fraud_prompt(claim, score, reasons), max_new_tokens=160)
    try:
        return FraudEnrichment.model_validate_json(_extract_json(text))
    except ValidationError as e:
        raise EnrichmentUnavailable(f"invalid enrichment reply: {e.error_count()} errors") from e


def _fallback_insights(summary: Dict[str, Any]) -> InsightReport:
    insights = []
    if summary.get("rejection_rate", 0) > 50:
        insights.append(Insight(
            title="High rejection rate",
            description=f"{summary['rejection_rate']:.1f}% of claims were rejected.",
            action="Review rejection reasons for coverage gaps or onboarding issues.",
            severity="high",
        ))
    if summary.get("manual_review", 0):
        insights.append(Insight(
            title="Manual review backlog",
            description=f"{summary['manual_review']} claims await a human decision.",
            action="Clear the manual review queue before resolution deadlines.",
        ))
    return InsightReport(insights=insights)


def insights_with_llm(summary: Dict[str, Any]) -> InsightReport:
    # If no HF key, deterministic fallback
    if not HF_API_KEY:
        return _fallback_insights(summary)
    prompt = f"""
Analyze creator insurance claim analytics. Focus on fraud (<1% target), auto-approval (80%), payout fairness.
{json.dumps(summary, default=str)}
Return JSON: {{ "insights": [{{"title": "...", "description": "...", "action": "...", "severity": "low|medium|high"}}] }}
"""
    try:
        text = _generate(prompt, max_new_tokens=400)
        return InsightReport.model_validate_json(_extract_json(text))
    except (EnrichmentUnavailable, ValidationError) as e:
        logger.warning("[LLM] Insight generation failed, using fallback: %s", e)
        return _fallback_insights(summary)
