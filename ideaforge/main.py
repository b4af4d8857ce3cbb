import logging
import os
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

from fastapi import Body, Depends, FastAPI, Form, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from ideaforge import auth, billing, cache, counter, ratelimit, render, storage
from ideaforge.auth import extract_client_key, optional_user, require_user
from ideaforge.llm_client import (
    GatewayError,
    analyze_idea as llm_analyze_idea,
    generate_app_preview as llm_generate_app_preview,
    probe as llm_probe,
    status as llm_status,
)
from ideaforge.validators import Analysis, AppPreview, collect_errors

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

log = logging.getLogger(__name__)

app = FastAPI(title="IdeaForge")

allow_origins = [o.strip() for o in os.getenv("ALLOW_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)

static_dir = Path(__file__).resolve().parent / "static"
if static_dir.exists():
    app.mount("/static", StaticFiles(directory=str(static_dir), html=False), name="static")

SECURE_COOKIES = os.getenv("SECURE_COOKIES", "0").lower() in {"1", "true", "yes", "on"}


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = str(uuid.uuid4())
    start = time.time()
    request.state.request_id = rid
    response = None
    try:
        response = await call_next(request)
        return response
    finally:
        dur_ms = int((time.time() - start) * 1000)
        log.info(
            "rid=%s method=%s path=%s status=%s dur_ms=%d",
            rid,
            request.method,
            request.url.path,
            getattr(response, "status_code", "?"),
            dur_ms,
        )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    # Same {error} envelope the browser client expects from every endpoint
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=getattr(exc, "headers", None))


class AnalyzeRequest(BaseModel):
    idea: Optional[str] = Field(default=None, description="Free-text startup idea")


class AnalyzeResponse(BaseModel):
    analysis: Analysis
    id: Optional[str] = None


class PreviewRequest(BaseModel):
    idea: Optional[str] = Field(default=None, description="Startup idea the preview is built for")
    analysis: Optional[Dict[str, Any]] = Field(default=None, description="Analysis used as design context")


class PreviewResponse(BaseModel):
    appPreview: AppPreview


class ValidateRequest(BaseModel):
    kind: str = Field("analysis", description="analysis | appPreview")
    payload: Dict[str, Any]


_REDIS_URL = os.getenv("REDIS_URL", "").strip()
_rl_instance = None
if _REDIS_URL and not os.getenv("PYTEST_CURRENT_TEST"):
    from ideaforge.redis_ratelimit import RedisRateLimiter

    _rl_instance = RedisRateLimiter(_REDIS_URL)


def _safe_rate_check(bucket: str, key: str) -> Tuple[bool, int, int]:
    """
    Return (allowed, remaining, reset_ts).
    Prefers the shared Redis limiter; drops to the in-process one when Redis is down.
    """
    if _rl_instance is not None:
        try:
            return _rl_instance.check_and_increment(bucket, key)
        except Exception as exc:
            log.warning("rate_limit: redis unavailable, using in-process limiter: %r", exc)
    return ratelimit.check_and_increment(bucket, key)


def _rate_limit_headers(remaining: int, reset_ts: int, *, limited: bool = False) -> Dict[str, str]:
    headers = {
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Reset": str(reset_ts),
    }
    if limited:
        headers["Retry-After"] = str(max(0, reset_ts - int(time.time())))
    return headers


def _rate_limit_payload(reset_ts: int) -> Dict[str, Any]:
    wait_seconds = max(0, reset_ts - int(time.time()))
    return {
        "error": "rate limit exceeded",
        "reset": reset_ts,
        "retry_after_seconds": wait_seconds,
        "message": f"Rate limit exceeded. Try again in {wait_seconds} seconds.",
    }


def _client_key(request: Request, user: Optional[Dict[str, Any]]) -> str:
    return extract_client_key(user, request.client.host if request.client else "anon")


def _access_token(request: Request) -> Optional[str]:
    return getattr(request.state, "access_token", None) or auth.extract_token(request)


def _model_name() -> Optional[str]:
    return llm_status().get("model")


def _run_analysis(idea: str) -> Dict[str, Any]:
    analysis = cache.get("analysis", idea, _model_name())
    if analysis:
        log.info("analyze: served from cache")
    else:
        analysis = llm_analyze_idea(idea)
        cache.set("analysis", idea, _model_name(), analysis)
    try:
        counter.record_analysis(analysis)
    except OSError:
        log.warning("counter: failed to persist total", exc_info=True)
    return analysis


def _run_preview(idea: str, analysis: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    context = analysis or {}
    cache_text = "\n".join(
        [idea, str(context.get("targetAudience") or ""), str(context.get("revenueModel") or ""), str(context.get("competitiveAdvantage") or "")]
    )
    cached = cache.get("appPreview", cache_text, _model_name())
    if cached:
        log.info("preview: served from cache")
        return cached
    preview = llm_generate_app_preview(idea, analysis)
    cache.set("appPreview", cache_text, _model_name(), preview)
    return preview


def _persist(user: Optional[Dict[str, Any]], idea: str, analysis: Dict[str, Any], token: Optional[str]) -> Optional[Dict[str, Any]]:
    if not user:
        return None
    try:
        return storage.save_analysis(user, idea, analysis, token)
    except (storage.StorageError, OSError):
        # The analysis is still returned; only the history entry is lost
        log.exception("storage: failed to save analysis user=%s", user.get("id"))
        return None


def _gateway_error_response(e: GatewayError, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(status_code=e.status_code, content={"error": e.message}, headers=headers)


def _login_redirect(next_path: str) -> RedirectResponse:
    return RedirectResponse(f"/login?next={quote(next_path)}", status_code=303)


# ---------------------------------------------------------------------------
# JSON API
# ---------------------------------------------------------------------------


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/llm/status")
def llm_status_endpoint() -> Dict[str, Any]:
    return llm_status()


@app.get("/llm/probe")
def llm_probe_endpoint() -> Dict[str, Any]:
    return llm_probe()


@app.get("/metrics/total")
def metrics_total() -> Dict[str, int]:
    """Total number of ideas analyzed across all users."""
    return {"total": counter.get_total()}


@app.post("/api/analyze-idea")
def analyze_idea_endpoint(
    req: AnalyzeRequest,
    request: Request,
    user: Optional[Dict[str, Any]] = Depends(optional_user),
):
    idea = (req.idea or "").strip()
    if not idea:
        return JSONResponse(status_code=400, content={"error": "Please provide a startup idea"})

    allowed, remaining, reset_ts = _safe_rate_check("ai", _client_key(request, user))
    if not allowed:
        log.info("rate_limit: analyze denied client=%s", _client_key(request, user))
        return JSONResponse(
            status_code=429,
            content=_rate_limit_payload(reset_ts),
            headers=_rate_limit_headers(remaining, reset_ts, limited=True),
        )
    headers = _rate_limit_headers(remaining, reset_ts)

    try:
        analysis = _run_analysis(idea)
    except GatewayError as e:
        log.warning("analyze: gateway error status=%s message=%s", e.status_code, e.message)
        return _gateway_error_response(e, headers)

    row = _persist(user, idea, analysis, _access_token(request))
    body = AnalyzeResponse(analysis=analysis, id=str(row["id"]) if row and row.get("id") else None)
    return JSONResponse(body.model_dump(exclude_none=True), headers=headers)


@app.post("/api/generate-app-preview")
def generate_app_preview_endpoint(
    req: PreviewRequest,
    request: Request,
    user: Optional[Dict[str, Any]] = Depends(optional_user),
):
    idea = (req.idea or "").strip()
    if not idea:
        return JSONResponse(status_code=400, content={"error": "Please provide the startup idea"})

    allowed, remaining, reset_ts = _safe_rate_check("ai", _client_key(request, user))
    if not allowed:
        return JSONResponse(
            status_code=429,
            content=_rate_limit_payload(reset_ts),
            headers=_rate_limit_headers(remaining, reset_ts, limited=True),
        )
    headers = _rate_limit_headers(remaining, reset_ts)

    try:
        preview = _run_preview(idea, req.analysis)
    except GatewayError as e:
        log.warning("preview: gateway error status=%s message=%s", e.status_code, e.message)
        return _gateway_error_response(e, headers)
    return JSONResponse(PreviewResponse(appPreview=preview).model_dump(), headers=headers)


@app.post("/api/billing")
def billing_endpoint(
    payload: Dict[str, Any] = Body(default_factory=dict),
    user: Dict[str, Any] = Depends(require_user),
):
    params = dict(payload or {})
    action = params.pop("action", None)
    try:
        client = billing.BillingClient()
        result = client.dispatch(action, user, params)
    except billing.BillingRequestError as e:
        return JSONResponse(status_code=400, content={"error": e.message})
    except billing.BillingError as e:
        log.error("billing: action=%s failed: %s", action, e.message)
        return JSONResponse(status_code=500, content={"error": e.message})
    return JSONResponse(result)


@app.get("/api/analyses")
def list_analyses_endpoint(request: Request, user: Dict[str, Any] = Depends(require_user)):
    try:
        rows = storage.list_analyses(user, _access_token(request))
    except storage.StorageError as e:
        log.error("storage: list failed user=%s err=%s", user.get("id"), e)
        return JSONResponse(status_code=502, content={"error": str(e)})
    return {"analyses": rows}


@app.post("/validate")
def validate_endpoint(req: ValidateRequest):
    """
    Check an analysis or app preview against its JSON schema.
    200 {"detail":{"valid":true}} on success, 422 with the error list otherwise.
    """
    errors = collect_errors(req.kind, req.payload)
    detail: Dict[str, Any] = {"valid": not errors}
    if errors:
        detail["errors"] = errors
        return JSONResponse(status_code=422, content={"detail": detail})
    return {"detail": detail}


# ---------------------------------------------------------------------------
# HTML pages
# ---------------------------------------------------------------------------


@app.get("/", response_class=HTMLResponse)
def landing(user: Optional[Dict[str, Any]] = Depends(optional_user)) -> HTMLResponse:
    return HTMLResponse(render.render_landing(user=user, total=counter.get_total()))


@app.post("/analyze", response_class=HTMLResponse)
def analyze_page(
    request: Request,
    idea: str = Form(""),
    user: Optional[Dict[str, Any]] = Depends(optional_user),
) -> HTMLResponse:
    idea = (idea or "").strip()[: render.MAX_IDEA_CHARS]
    if not idea:
        html = render.render_landing(user=user, total=counter.get_total(), error="Please provide a startup idea")
        return HTMLResponse(html, status_code=400)

    allowed, remaining, reset_ts = _safe_rate_check("ai", _client_key(request, user))
    if not allowed:
        message = _rate_limit_payload(reset_ts)["message"]
        html = render.render_landing(user=user, total=counter.get_total(), idea=idea, error=message)
        return HTMLResponse(html, status_code=429, headers=_rate_limit_headers(remaining, reset_ts, limited=True))

    try:
        analysis = _run_analysis(idea)
    except GatewayError as e:
        html = render.render_landing(user=user, total=counter.get_total(), idea=idea, error=e.message)
        return HTMLResponse(html, status_code=e.status_code)

    preview: Optional[Dict[str, Any]] = None
    preview_error = ""
    try:
        preview = _run_preview(idea, analysis)
    except GatewayError as e:
        log.warning("preview: skipped on results page: %s", e.message)
        preview_error = e.message

    row = _persist(user, idea, analysis, _access_token(request))
    html = render.render_results(
        idea,
        analysis,
        preview=preview,
        user=user,
        saved=row is not None,
        preview_error=preview_error,
    )
    return HTMLResponse(html, headers=_rate_limit_headers(remaining, reset_ts))


@app.get("/pricing", response_class=HTMLResponse)
def pricing_page(
    success: Optional[str] = None,
    canceled: Optional[str] = None,
    user: Optional[Dict[str, Any]] = Depends(optional_user),
) -> HTMLResponse:
    banner = "success" if success else ("canceled" if canceled else "")
    error = ""
    billing_data = None
    try:
        billing_data = billing.load_billing(billing.get_client(), user)
    except billing.BillingError as e:
        log.error("billing: pricing page lookup failed: %s", e.message)
        error = "Could not load your current plan."
    sub = (billing_data or {}).get("currentSubscription") or {}
    current_slug = sub.get("priceSlug") or sub.get("priceId")
    html = render.render(
        "pricing.html",
        user=user,
        plans=billing.PLANS,
        current_slug=current_slug,
        banner=banner,
        error=error,
    )
    return HTMLResponse(html)


@app.post("/pricing/checkout")
def pricing_checkout(
    request: Request,
    price_slug: str = Form(...),
    user: Optional[Dict[str, Any]] = Depends(optional_user),
):
    if not user:
        return _login_redirect("/pricing")
    base = str(request.base_url).rstrip("/")
    try:
        session = billing.BillingClient().create_checkout_session(
            user,
            success_url=f"{base}/pricing?success=true",
            cancel_url=f"{base}/pricing?canceled=true",
            price_slug=price_slug,
        )
    except billing.BillingError as e:
        log.error("billing: checkout failed slug=%s: %s", price_slug, e.message)
        session = None
    url = (session or {}).get("url")
    if not url:
        html = render.render(
            "pricing.html",
            user=user,
            plans=billing.PLANS,
            current_slug=None,
            banner="",
            error="Failed to start checkout. Please try again.",
        )
        return HTMLResponse(html, status_code=502)
    return RedirectResponse(url, status_code=303)


@app.get("/billing", response_class=HTMLResponse)
def billing_page(user: Optional[Dict[str, Any]] = Depends(optional_user)):
    if not user:
        return _login_redirect("/billing")
    error = ""
    billing_data = None
    try:
        billing_data = billing.load_billing(billing.get_client(), user)
    except billing.BillingError as e:
        log.error("billing: page lookup failed: %s", e.message)
        error = "Failed to load billing information."
    sub = (billing_data or {}).get("currentSubscription") or {}
    plan = billing.plan_for_slug(sub.get("priceSlug") or sub.get("priceId"))
    unlimited = billing.has_feature_access(billing_data, billing.UNLIMITED_ANALYSES)
    html = render.render("billing.html", user=user, billing=billing_data, plan=plan, unlimited=unlimited, error=error)
    return HTMLResponse(html)


@app.post("/billing/cancel")
def billing_cancel(
    subscription_id: str = Form(...),
    user: Optional[Dict[str, Any]] = Depends(optional_user),
):
    if not user:
        return _login_redirect("/billing")
    try:
        billing.BillingClient().cancel_subscription(subscription_id)
    except billing.BillingError as e:
        log.error("billing: cancel failed subscription=%s: %s", subscription_id, e.message)
        html = render.render(
            "billing.html",
            user=user,
            billing=None,
            plan=None,
            error="Failed to cancel subscription. Please try again.",
        )
        return HTMLResponse(html, status_code=502)
    return RedirectResponse("/billing", status_code=303)


@app.get("/history", response_class=HTMLResponse)
def history_page(request: Request, user: Optional[Dict[str, Any]] = Depends(optional_user)):
    if not user:
        return _login_redirect("/history")
    error = ""
    try:
        rows = storage.list_analyses(user, _access_token(request))
    except storage.StorageError as e:
        log.error("storage: history failed user=%s err=%s", user.get("id"), e)
        rows, error = [], "Could not load your analyses."
    return HTMLResponse(render.render("history.html", user=user, analyses=rows, error=error))


@app.get("/login", response_class=HTMLResponse)
def login_page(next: str = "/") -> HTMLResponse:
    return HTMLResponse(render.render("login.html", next=next, email="", error=""))


@app.post("/login")
def login_submit(
    email: str = Form(...),
    password: str = Form(...),
    next: str = Form("/"),
):
    target = next if next.startswith("/") and not next.startswith("//") else "/"
    try:
        session = auth.sign_in(email, password)
    except auth.AuthError as e:
        html = render.render("login.html", next=target, email=email, error=str(e))
        return HTMLResponse(html, status_code=401)
    response = RedirectResponse(target, status_code=303)
    response.set_cookie(
        auth.ACCESS_TOKEN_COOKIE,
        session["access_token"],
        max_age=int(session.get("expires_in") or 3600),
        httponly=True,
        secure=SECURE_COOKIES,
        samesite="lax",
    )
    return response


@app.post("/logout")
def logout():
    response = RedirectResponse("/", status_code=303)
    response.delete_cookie(auth.ACCESS_TOKEN_COOKIE)
    return response
