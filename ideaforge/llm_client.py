from __future__ import annotations
import logging
import os
import threading
import time
from typing import Any, Dict, Optional

import requests

from ideaforge import llm_parsing
from ideaforge.llm_prompts import (
    ANALYSIS_SYSTEM_PROMPT,
    APP_PREVIEW_SYSTEM_PROMPT,
    build_analysis_user_message,
    build_preview_user_message,
)

log = logging.getLogger(__name__)

AI_GATEWAY_API_KEY = (os.getenv("AI_GATEWAY_API_KEY") or os.getenv("LOVABLE_API_KEY") or "").strip()
_ENV_AI_GATEWAY_API_KEY = AI_GATEWAY_API_KEY
AI_GATEWAY_URL = os.getenv("AI_GATEWAY_URL", "https://ai.gateway.lovable.dev/v1/chat/completions").strip()
AI_GATEWAY_MODEL = os.getenv("AI_GATEWAY_MODEL", "google/gemini-2.5-flash").strip()

try:
    LLM_TIMEOUT_SECS = int(os.getenv("LLM_TIMEOUT_SECS", "60"))
except ValueError:
    LLM_TIMEOUT_SECS = 60

_BACKOFF_LOCK = threading.Lock()
_BACKOFF_UNTIL = 0.0
_BACKOFF_DELAY = 0.0
try:
    _BACKOFF_INITIAL = float(os.getenv("LLM_BACKOFF_INITIAL", "2.0") or 2.0)
except ValueError:
    _BACKOFF_INITIAL = 2.0
try:
    _BACKOFF_MAX = float(os.getenv("LLM_BACKOFF_MAX", "10.0") or 10.0)
except ValueError:
    _BACKOFF_MAX = 10.0
_BACKOFF_FACTOR = 1.5

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please try again in a moment."
CREDITS_MESSAGE = "API credits exhausted. Please try again later."


class GatewayError(Exception):
    """A failed call to the AI gateway, carrying the HTTP status to surface."""

    def __init__(self, message: str, status_code: int = 500) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _testing_stub_enabled() -> bool:
    """True under pytest unless a test swapped in its own gateway key."""
    if not os.getenv("PYTEST_CURRENT_TEST"):
        return False
    if os.getenv("RUN_LIVE_LLM_TESTS", "0").lower() in {"1", "true", "yes", "on"}:
        return False
    return AI_GATEWAY_API_KEY == _ENV_AI_GATEWAY_API_KEY


def _sleep_if_backing_off() -> None:
    now = time.time()
    wait_for = 0.0
    with _BACKOFF_LOCK:
        if _BACKOFF_UNTIL > now:
            wait_for = _BACKOFF_UNTIL - now
    if wait_for > 0:
        log.info("gateway backoff active; waiting %.2fs before next request", wait_for)
        time.sleep(min(wait_for, _BACKOFF_MAX))


def _register_rate_limit(retry_after: Optional[str]) -> None:
    global _BACKOFF_DELAY, _BACKOFF_UNTIL
    delay = None
    if retry_after:
        try:
            delay = float(retry_after)
        except ValueError:
            delay = None
    with _BACKOFF_LOCK:
        base = _BACKOFF_DELAY or _BACKOFF_INITIAL
        if delay is None:
            delay = base * _BACKOFF_FACTOR
        delay = max(_BACKOFF_INITIAL, min(delay, _BACKOFF_MAX))
        _BACKOFF_DELAY = delay
        _BACKOFF_UNTIL = time.time() + delay
    log.warning("gateway rate limited; backing off for %.2fs", delay)


def _reset_backoff() -> None:
    global _BACKOFF_DELAY, _BACKOFF_UNTIL
    with _BACKOFF_LOCK:
        _BACKOFF_DELAY = 0.0
        _BACKOFF_UNTIL = 0.0


def status() -> Dict[str, Any]:
    if _testing_stub_enabled():
        return {"provider": None, "model": None, "has_token": False, "using": "stub", "testing": True}
    if AI_GATEWAY_API_KEY:
        return {"provider": "ai-gateway", "model": AI_GATEWAY_MODEL, "has_token": True, "using": "ai-gateway"}
    return {"provider": None, "model": None, "has_token": False, "using": "stub"}


def probe() -> Dict[str, Any]:
    if _testing_stub_enabled():
        return {"ok": False, "using": "stub", "testing": True}
    if AI_GATEWAY_API_KEY:
        return {"ok": True, "using": "ai-gateway"}
    return {"ok": False, "using": "stub", "error": "AI_GATEWAY_API_KEY is not configured"}


def _chat_completion(system_prompt: str, user_message: str, failure_message: str) -> str:
    """Send one chat completion and return the assistant text; raise GatewayError."""
    if not AI_GATEWAY_API_KEY:
        raise GatewayError("AI_GATEWAY_API_KEY is not configured", 500)

    headers = {
        "Authorization": f"Bearer {AI_GATEWAY_API_KEY}",
        "Content-Type": "application/json",
    }
    body = {
        "model": AI_GATEWAY_MODEL,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ],
    }

    _sleep_if_backing_off()
    try:
        resp = requests.post(AI_GATEWAY_URL, headers=headers, json=body, timeout=LLM_TIMEOUT_SECS)
    except requests.RequestException as e:
        log.warning("gateway request error: %r", e)
        raise GatewayError(failure_message, 500) from e

    if resp.status_code == 429:
        _register_rate_limit(resp.headers.get("Retry-After"))
        raise GatewayError(RATE_LIMIT_MESSAGE, 429)
    if resp.status_code == 402:
        raise GatewayError(CREDITS_MESSAGE, 402)
    if resp.status_code != 200:
        log.error("gateway HTTP %s: %s", resp.status_code, (resp.text or "")[:400])
        raise GatewayError(failure_message, 500)
    _reset_backoff()

    try:
        data = resp.json()
    except ValueError as e:
        log.warning("gateway: non-JSON HTTP body")
        raise GatewayError("No response from AI", 500) from e

    try:
        text = data.get("choices", [{}])[0].get("message", {}).get("content")
    except (AttributeError, IndexError):
        text = None
    if not text or not isinstance(text, str):
        raise GatewayError("No response from AI", 500)
    return text


def _stub_analysis(idea: str) -> Dict[str, Any]:
    return llm_parsing.normalize_analysis(
        {
            "summary": f"Stub analysis for: {idea[:120]}",
            "viabilityScore": 72,
            "marketPotential": "medium",
            "targetAudience": "Test users",
        }
    )


def _stub_app_preview(idea: str) -> Dict[str, Any]:
    preview = llm_parsing.normalize_app_preview({"appName": "StubApp", "tagline": idea[:60] or "Stub"})
    return preview


def analyze_idea(idea: str) -> Dict[str, Any]:
    """Score a startup idea. Malformed model output degrades to the fallback analysis."""
    idea = (idea or "").strip()
    if _testing_stub_enabled():
        return _stub_analysis(idea)
    log.info("analyze: idea=%r", idea[:100])
    content = _chat_completion(
        ANALYSIS_SYSTEM_PROMPT,
        build_analysis_user_message(idea),
        "Failed to analyze idea",
    )
    analysis = llm_parsing.parse_analysis(content)
    log.info("analyze: complete viability_score=%s fallback=%s", analysis.get("viabilityScore"), bool(analysis.get("fallback")))
    return analysis


def generate_app_preview(idea: str, analysis: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    idea = (idea or "").strip()
    if _testing_stub_enabled():
        return _stub_app_preview(idea)
    log.info("preview: idea=%r", idea[:50])
    content = _chat_completion(
        APP_PREVIEW_SYSTEM_PROMPT,
        build_preview_user_message(idea, analysis),
        "Failed to generate app preview",
    )
    preview = llm_parsing.parse_app_preview(content)
    log.info("preview: generated app_name=%s", preview.get("appName"))
    return preview
