from __future__ import annotations

import copy
import json
import logging
import re
from typing import Any, Dict, List, Optional

log = logging.getLogger(__name__)

MARKET_POTENTIALS = ("low", "medium", "high")

_FALLBACK_ANALYSIS: Dict[str, Any] = {
    "summary": "",
    "viabilityScore": 70,
    "marketPotential": "medium",
    "strengths": ["Unique concept", "Growing market", "Scalable solution"],
    "challenges": ["Market competition", "Initial funding", "User acquisition"],
    "recommendations": ["Validate with target users", "Build MVP", "Seek mentorship"],
    "targetAudience": "Early adopters and tech-savvy users",
    "competitiveAdvantage": "First-mover advantage in niche market",
    "revenueModel": "Freemium with premium features",
    "nextSteps": ["Research competitors", "Create landing page", "Interview potential users"],
}

_FALLBACK_APP_PREVIEW: Dict[str, Any] = {
    "appName": "StartupApp",
    "tagline": "Your idea, brought to life",
    "colorScheme": {
        "primary": "#6366f1",
        "secondary": "#8b5cf6",
        "accent": "#06b6d4",
    },
    "screens": [
        {"name": "Dashboard", "description": "Main overview of your data", "keyElements": ["Stats cards", "Activity feed", "Quick actions"]},
        {"name": "Profile", "description": "User settings and preferences", "keyElements": ["Avatar", "Settings", "Subscription"]},
        {"name": "Features", "description": "Core functionality", "keyElements": ["Main tools", "Actions", "Results"]},
        {"name": "Analytics", "description": "Insights and metrics", "keyElements": ["Charts", "Reports", "Trends"]},
    ],
    "keyFeatures": [
        {"icon": "🚀", "title": "Fast Launch", "description": "Get started in seconds"},
        {"icon": "🔒", "title": "Secure", "description": "Enterprise-grade security"},
        {"icon": "📊", "title": "Analytics", "description": "Track your progress"},
        {"icon": "💰", "title": "Monetize", "description": "Built-in payment system"},
    ],
    "userFlow": "Sign up → Explore features → Use core functionality → Subscribe for premium",
    "uniqueSellingPoint": "Simple, powerful, and designed for growth",
    "monetizationUI": "Freemium model with clear upgrade prompts",
}

_ANALYSIS_TEXT_FIELDS = ("summary", "targetAudience", "competitiveAdvantage", "revenueModel")
_ANALYSIS_LIST_FIELDS = ("strengths", "challenges", "recommendations", "nextSteps")
_PREVIEW_TEXT_FIELDS = ("appName", "tagline", "userFlow", "uniqueSellingPoint", "monetizationUI")

_FENCED_JSON_RE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_FENCED_ANY_RE = re.compile(r"```[a-zA-Z]*\s*([\s\S]*?)```")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def fallback_analysis(content: str = "") -> Dict[str, Any]:
    """Structured analysis served when the model reply cannot be parsed.

    The summary echoes the first 200 characters of whatever the model said so
    the user still sees something specific to their idea.
    """
    out = copy.deepcopy(_FALLBACK_ANALYSIS)
    out["summary"] = (content or "")[:200]
    out["fallback"] = True
    return out


def fallback_app_preview() -> Dict[str, Any]:
    out = copy.deepcopy(_FALLBACK_APP_PREVIEW)
    out["fallback"] = True
    return out


def _balanced_json_slice(s: str) -> Optional[str]:
    in_str = False
    esc = False
    depth = 0
    start_idx = -1
    for i, ch in enumerate(s):
        if not in_str and ch == "{":
            if depth == 0:
                start_idx = i
            depth += 1
        elif not in_str and ch == "}":
            if depth > 0:
                depth -= 1
                if depth == 0 and start_idx != -1:
                    return s[start_idx : i + 1]
        elif ch == '"':
            if not esc:
                in_str = not in_str
            esc = False
            continue
        esc = (ch == "\\") and not esc
    return None


def json_from_text(text: str) -> Dict[str, Any]:
    """Extract a JSON object from a chat completion; raise ValueError on failure.

    Strategy:
    - Fenced blocks: ```json ...``` first, then any ``` ... ```.
    - First balanced {...} object (brace-aware in presence of strings).
    - The whole stripped text.
    - Sanitize once: drop trailing commas, normalize smart quotes.
    """
    t = (text or "").strip()
    if not t:
        raise ValueError("Empty model response")

    candidate: Optional[str] = None
    m = _FENCED_JSON_RE.search(t)
    if m:
        candidate = m.group(1).strip()
    else:
        m2 = _FENCED_ANY_RE.search(t)
        if m2:
            candidate = m2.group(1).strip()
    if not candidate:
        candidate = _balanced_json_slice(t) or t

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        s = _TRAILING_COMMA_RE.sub(r"\1", candidate)
        s = s.replace("“", '"').replace("”", '"').replace("’", "'")
        try:
            data = json.loads(s)
        except json.JSONDecodeError as exc:
            raise ValueError(f"No JSON object found: {exc.msg}") from exc

    if not isinstance(data, dict):
        raise ValueError("Model response is not a JSON object")
    return data


def _str_list(value: Any) -> Optional[List[str]]:
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    if not isinstance(value, list):
        return None
    items = [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]
    return items


def _clamp_score(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip().split("/")[0].rstrip("%").strip()
    try:
        score = int(round(float(value)))
    except (TypeError, ValueError):
        return None
    return max(1, min(100, score))


def normalize_analysis(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce a model reply into the analysis shape, filling gaps from the fallback."""
    if not isinstance(obj, dict):
        raise ValueError("analysis must be an object")
    # Some models wrap the payload: {"analysis": {...}}
    if isinstance(obj.get("analysis"), dict) and "viabilityScore" not in obj:
        obj = obj["analysis"]

    out: Dict[str, Any] = {}
    for key in _ANALYSIS_TEXT_FIELDS:
        val = obj.get(key)
        out[key] = val.strip() if isinstance(val, str) and val.strip() else _FALLBACK_ANALYSIS[key]

    score = _clamp_score(obj.get("viabilityScore"))
    out["viabilityScore"] = score if score is not None else _FALLBACK_ANALYSIS["viabilityScore"]

    potential = str(obj.get("marketPotential") or "").strip().lower()
    out["marketPotential"] = potential if potential in MARKET_POTENTIALS else "medium"

    for key in _ANALYSIS_LIST_FIELDS:
        items = _str_list(obj.get(key))
        out[key] = items if items else list(_FALLBACK_ANALYSIS[key])
    return out


def _normalize_screen(screen: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(screen, dict):
        return None
    name = screen.get("name") or screen.get("screenName") or "Screen"
    elements = _str_list(screen.get("keyElements")) or []
    return {
        "name": str(name),
        "description": str(screen.get("description") or ""),
        "keyElements": elements,
    }


def _normalize_feature(feature: Any) -> Optional[Dict[str, str]]:
    if not isinstance(feature, dict):
        return None
    title = feature.get("title") or feature.get("name")
    if not title:
        return None
    return {
        "icon": str(feature.get("icon") or "✨"),
        "title": str(title),
        "description": str(feature.get("description") or ""),
    }


def normalize_app_preview(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce a model reply into the app-preview shape.

    Models sometimes say ``screenName`` instead of ``name``; both are accepted.
    """
    if not isinstance(obj, dict):
        raise ValueError("app preview must be an object")
    if isinstance(obj.get("appPreview"), dict) and "appName" not in obj:
        obj = obj["appPreview"]

    out: Dict[str, Any] = {}
    for key in _PREVIEW_TEXT_FIELDS:
        val = obj.get(key)
        out[key] = val.strip() if isinstance(val, str) and val.strip() else _FALLBACK_APP_PREVIEW[key]

    palette = obj.get("colorScheme") if isinstance(obj.get("colorScheme"), dict) else {}
    out["colorScheme"] = {
        k: (palette.get(k) if isinstance(palette.get(k), str) and palette.get(k).strip() else v)
        for k, v in _FALLBACK_APP_PREVIEW["colorScheme"].items()
    }

    screens = obj.get("screens")
    if isinstance(screens, list):
        out["screens"] = [s for s in (_normalize_screen(x) for x in screens) if s]
    else:
        out["screens"] = copy.deepcopy(_FALLBACK_APP_PREVIEW["screens"])

    features = obj.get("keyFeatures")
    if isinstance(features, list):
        out["keyFeatures"] = [f for f in (_normalize_feature(x) for x in features) if f]
    else:
        out["keyFeatures"] = copy.deepcopy(_FALLBACK_APP_PREVIEW["keyFeatures"])
    return out


def parse_analysis(content: str) -> Dict[str, Any]:
    try:
        return normalize_analysis(json_from_text(content))
    except ValueError as e:
        log.warning("analysis.parse: falling back err=%s content=%r", e, (content or "")[:200])
        return fallback_analysis(content)


def parse_app_preview(content: str) -> Dict[str, Any]:
    try:
        return normalize_app_preview(json_from_text(content))
    except ValueError as e:
        log.warning("preview.parse: falling back err=%s content=%r", e, (content or "")[:200])
        return fallback_app_preview()
