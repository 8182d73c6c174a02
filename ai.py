"""Gemini adapters for deal-sheet extraction and deal risk analysis.

Both calls are single prompt/response round trips against the
``generateContent`` REST endpoint. The model is asked for raw JSON; replies
are stripped of markdown code fences before decoding.
"""
import base64
import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any

import httpx

from errors import DownstreamUnavailable, ExtractionFailed

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT = """
You are an expert OCR for car dealership documents.
Analyze this Buyer's Order / Deal Sheet.
Extract the following fields accurately.
Return ONLY valid JSON.
Structure:
{
    "vehicle": "Year Make Model Trim",
    "price": number (Selling Price/MSRP),
    "fees": { "doc_fee": number, "prep_fee": number, "gps": number, "other_add_ons": number },
    "vin": "string",
    "mileage": number,
    "otd_price": number (Out the Door Price / Total Cash Price),
    "apr": number (percent, if financed),
    "term_months": number (if financed),
    "monthly_payment": number (if financed)
}
If a field is missing, use null or 0.
"""

ANALYSIS_PROMPT = """
You are an expert car buyer advocate. Analyze this deal data: {context}.
Identify hidden fees/red flags.
Return ONLY valid JSON in this structure:
{{
  "score": number (0-100, higher means a better deal for the buyer),
  "red_flags": [ {{"title": string, "severity": "high"|"medium"|"low", "explanation": string, "estimated_savings": number, "negotiation_line": string}} ],
  "target_otd_range": {{ "min": number, "max": number }},
  "scripts": {{ "email": string, "in_person": string }},
  "summary": "Short 2 sentence summary calling out the biggest rip-off."
}}
No markdown, just raw JSON.
"""

SEVERITIES = ("high", "medium", "low")

_FENCE_RE = re.compile(r"^\s*```(?:json|JSON)?\s*\n?|\n?\s*```\s*$")


def strip_code_fence(text: str) -> str:
    return _FENCE_RE.sub("", text or "").strip()


def _finite_float(literal: str) -> float | None:
    value = float(literal)
    return value if math.isfinite(value) else None


def parse_model_json(text: str) -> Any:
    """Decode a model reply, tolerating a surrounding ```json fence. Raises ValueError.

    NaN, Infinity and overflowing literals decode as None so they never reach
    a JSON column or a response body.
    """
    return json.loads(strip_code_fence(text), parse_float=_finite_float, parse_constant=lambda name: None)


def to_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.replace("$", "").replace(",", "").replace("%", "").strip()
    elif not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except (ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def category_for_score(score: int) -> str:
    if score > 80:
        return "Excellent"
    if score > 60:
        return "Fair"
    if score > 40:
        return "Risky"
    return "Bad"


@dataclass(frozen=True)
class AnalysisResult:
    payload: dict

    degraded = False
    reason = None


@dataclass(frozen=True)
class DegradedAnalysis:
    payload: dict
    reason: str

    degraded = True


def fallback_report() -> dict:
    return {
        "score": 50,
        "red_flags": [
            {
                "name": "AI Analysis Failed",
                "severity": "medium",
                "description": "Could not generate report.",
                "suggested_action": "",
                "estimated_savings": 0,
            }
        ],
        "target_otd_range": None,
        "negotiation_script": {"email_text": "", "in_person_text": ""},
        "summary": "Manual review required.",
    }


def _normalize_flag(raw: dict) -> dict:
    severity = str(raw.get("severity") or "medium").lower()
    return {
        "name": str(raw.get("title") or raw.get("name") or "Unnamed issue"),
        "severity": severity if severity in SEVERITIES else "medium",
        "description": str(raw.get("explanation") or raw.get("description") or ""),
        "suggested_action": str(raw.get("negotiation_line") or raw.get("suggested_action") or ""),
        "estimated_savings": to_number(raw.get("estimated_savings")) or 0,
    }


def normalize_report(data: Any) -> dict:
    """Coerce a model reply into the stored report shape. Raises ValueError on an unusable shape."""
    if not isinstance(data, dict):
        raise ValueError("report is not a JSON object")

    score = to_number(data.get("score"))
    if score is None:
        raise ValueError("report has no numeric score")
    score = int(round(max(0.0, min(100.0, score))))

    flags = data.get("red_flags") or []
    if not isinstance(flags, list):
        raise ValueError("red_flags is not a list")
    red_flags = [_normalize_flag(f) for f in flags if isinstance(f, dict)]

    target = None
    raw_range = data.get("target_otd_range")
    if isinstance(raw_range, dict):
        low, high = to_number(raw_range.get("min")), to_number(raw_range.get("max"))
        if low is not None and high is not None:
            target = {"min": min(low, high), "max": max(low, high)}

    scripts = data.get("scripts") or data.get("negotiation_script") or {}
    if not isinstance(scripts, dict):
        scripts = {}

    return {
        "score": score,
        "red_flags": red_flags,
        "target_otd_range": target,
        "negotiation_script": {
            "email_text": str(scripts.get("email") or scripts.get("email_text") or ""),
            "in_person_text": str(scripts.get("in_person") or scripts.get("in_person_text") or ""),
        },
        "summary": str(data.get("summary") or ""),
    }


class GeminiClient:
    def __init__(self, api_key: str, model: str, base_url: str, timeout: float = 30, transport=None):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def generate(self, parts: list[dict]) -> str:
        """One generateContent round trip; returns the first candidate's text."""
        if not self.api_key:
            raise DownstreamUnavailable("Server misconfigured (Missing AI Key)")

        url = f"{self.base_url}/models/{self.model}:generateContent"
        payload = {"contents": [{"parts": parts}]}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.post(url, params={"key": self.api_key}, json=payload)
        except httpx.TimeoutException as e:
            logger.error("Gemini call timed out after %ss", self.timeout)
            raise DownstreamUnavailable("The AI service timed out. Please try again.", retryable=True) from e
        except httpx.HTTPError as e:
            logger.error("Gemini call failed: %s", e)
            raise DownstreamUnavailable("The AI service is unavailable. Please try again.", retryable=True) from e

        if r.status_code >= 400:
            logger.error("Gemini returned %s: %s", r.status_code, r.text[:500])
            raise DownstreamUnavailable("The AI service is unavailable. Please try again.", retryable=True)

        try:
            body = r.json()
            return body["candidates"][0]["content"]["parts"][0].get("text") or ""
        except (ValueError, KeyError, IndexError, TypeError, AttributeError):
            logger.error("Gemini reply had no candidate text: %s", r.text[:500])
            return ""

    async def extract_deal(self, content: bytes, mime_type: str) -> dict:
        parts = [
            {"text": EXTRACTION_PROMPT},
            {"inline_data": {"mime_type": mime_type, "data": base64.b64encode(content).decode("utf-8")}},
        ]
        text = await self.generate(parts)
        try:
            extracted = parse_model_json(text)
        except ValueError as e:
            logger.error("Extraction reply was not JSON: %s", text[:500])
            raise ExtractionFailed() from e
        if not isinstance(extracted, dict):
            logger.error("Extraction reply was not an object: %s", text[:500])
            raise ExtractionFailed()
        return extracted

    async def analyze_deal(self, extracted: dict, zip_code: str | None) -> AnalysisResult | DegradedAnalysis:
        context = json.dumps({"extracted": extracted, "zip": zip_code})
        text = await self.generate([{"text": ANALYSIS_PROMPT.format(context=context)}])
        try:
            return AnalysisResult(normalize_report(parse_model_json(text)))
        except ValueError as e:
            logger.error("Analysis reply unusable (%s): %s", e, text[:500])
            return DegradedAnalysis(fallback_report(), reason=str(e))
