from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from ideaforge import billing

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"

EXAMPLE_IDEAS = [
    "A premium AI tattoo design service for $199 per custom design",
    "SaaS dashboard for social media analytics at $49/month",
    "E-book marketplace for indie authors with 70% royalty split",
    "Online consulting platform for business mentors at $500/hour",
]

FEATURES = [
    {"icon": "🧠", "title": "AI-Powered Analysis", "description": "Describe your idea in plain English. Our AI extracts product type, target audience, and optimal pricing strategy."},
    {"icon": "⚡", "title": "Instant Generation", "description": "Watch as your complete app materializes in seconds. Dynamic templates matched to your unique business model."},
    {"icon": "💳", "title": "Built-in Payments", "description": "Every app comes with Flowglad-powered checkout. One-time, subscription, or usage-based - we handle it all."},
    {"icon": "📈", "title": "Real-Time Analytics", "description": "Track views, conversions, and revenue from your dashboard. Know exactly how your apps perform."},
    {"icon": "🎨", "title": "Smart Theming", "description": "AI generates cohesive color schemes and styling that match your brand vision automatically."},
    {"icon": "🌐", "title": "Instant Deploy", "description": "Every generated app gets its own live URL. Share with customers immediately, no setup required."},
]

STEPS = [
    {"step": "01", "title": "Describe", "desc": "Share your startup idea"},
    {"step": "02", "title": "Generate", "desc": "AI builds your app"},
    {"step": "03", "title": "Monetize", "desc": "Start earning revenue"},
]

MAX_IDEA_CHARS = 500


def _shorten(text: Any, limit: int = 40) -> str:
    s = str(text or "")
    return s[:limit] + "..." if len(s) > limit else s


def _score_tone(score: Any) -> str:
    try:
        value = int(score)
    except (TypeError, ValueError):
        return "medium"
    if value >= 75:
        return "high"
    if value >= 50:
        return "medium"
    return "low"


_env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(["html", "xml"]),
    enable_async=False,
)
_env.filters["format_date"] = billing.format_date
_env.filters["format_currency"] = billing.format_currency
_env.filters["status_label"] = billing.status_label
_env.filters["shorten"] = _shorten
_env.filters["score_tone"] = _score_tone
_env.globals["period_end"] = billing.subscription_period_end
_env.globals["canceled_at"] = billing.subscription_canceled_at


def render(template: str, user: Optional[Dict[str, Any]] = None, **ctx: Any) -> str:
    tpl = _env.get_template(template)
    return tpl.render(user=user, **ctx)


def render_landing(user: Optional[Dict[str, Any]] = None, total: int = 0, idea: str = "", error: str = "") -> str:
    return render(
        "index.html",
        user=user,
        examples=EXAMPLE_IDEAS,
        features=FEATURES,
        steps=STEPS,
        total=total,
        idea=idea,
        error=error,
        max_chars=MAX_IDEA_CHARS,
    )


def render_results(
    idea: str,
    analysis: Dict[str, Any],
    preview: Optional[Dict[str, Any]] = None,
    user: Optional[Dict[str, Any]] = None,
    saved: bool = False,
    preview_error: str = "",
) -> str:
    """Results page: the analysis card followed by the app preview mockup when present."""
    return render(
        "analysis.html",
        user=user,
        idea=idea,
        analysis=analysis,
        preview=preview,
        saved=saved,
        preview_error=preview_error,
    )
