from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from ideaforge import billing, main as main_mod, ratelimit
from ideaforge.auth import optional_user, require_user
from ideaforge.llm_client import GatewayError, RATE_LIMIT_MESSAGE
from ideaforge.main import app

client = TestClient(app)


@pytest.fixture
def signed_in(user):
    app.dependency_overrides[optional_user] = lambda: user
    app.dependency_overrides[require_user] = lambda: user
    yield user
    app.dependency_overrides.clear()


def test_health():
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_llm_status_shape():
    body = client.get("/llm/status").json()
    assert body["using"] == "stub"
    assert "has_token" in body
    assert client.get("/llm/probe").json()["ok"] is False


def test_unknown_route_uses_error_envelope():
    r = client.get("/nope")
    assert r.status_code == 404
    assert r.json() == {"error": "Not Found"}


def test_cors_preflight():
    r = client.options(
        "/api/analyze-idea",
        headers={"Origin": "https://example.com", "Access-Control-Request-Method": "POST"},
    )
    assert r.status_code == 200
    assert "access-control-allow-origin" in r.headers


@pytest.mark.parametrize("body", [{}, {"idea": ""}, {"idea": "   "}])
def test_analyze_requires_idea(body):
    r = client.post("/api/analyze-idea", json=body)
    assert r.status_code == 400
    assert r.json() == {"error": "Please provide a startup idea"}


def test_analyze_anonymous():
    r = client.post("/api/analyze-idea", json={"idea": "Meal kits for climbers"})
    assert r.status_code == 200
    body = r.json()
    assert "id" not in body
    assert body["analysis"]["viabilityScore"] == 72
    assert body["analysis"]["marketPotential"] == "medium"
    assert r.headers["X-RateLimit-Remaining"] == str(ratelimit.MAX_REQUESTS - 1)
    assert client.get("/metrics/total").json() == {"total": 1}


def test_analyze_signed_in_persists(signed_in):
    r = client.post("/api/analyze-idea", json={"idea": "Meal kits for climbers"})
    assert r.status_code == 200
    saved_id = r.json()["id"]

    rows = client.get("/api/analyses").json()["analyses"]
    assert [row["id"] for row in rows] == [saved_id]
    assert rows[0]["idea"] == "Meal kits for climbers"


def test_analyze_persistence_failure_still_answers(signed_in, monkeypatch):
    def broken(*args, **kwargs):
        raise main_mod.storage.StorageError("db down")

    monkeypatch.setattr(main_mod.storage, "save_analysis", broken)
    r = client.post("/api/analyze-idea", json={"idea": "Meal kits"})
    assert r.status_code == 200
    assert "id" not in r.json()


def test_analyze_second_call_served_from_cache(monkeypatch):
    calls = []
    real = main_mod.llm_analyze_idea

    def counting(idea):
        calls.append(idea)
        return real(idea)

    monkeypatch.setattr(main_mod, "llm_analyze_idea", counting)
    client.post("/api/analyze-idea", json={"idea": "Cached idea"})
    client.post("/api/analyze-idea", json={"idea": "  cached   IDEA "})
    assert len(calls) == 1
    assert client.get("/metrics/total").json() == {"total": 2}


def test_analyze_gateway_error_maps_status(monkeypatch):
    def limited(idea):
        raise GatewayError(RATE_LIMIT_MESSAGE, 429)

    monkeypatch.setattr(main_mod, "llm_analyze_idea", limited)
    r = client.post("/api/analyze-idea", json={"idea": "Anything"})
    assert r.status_code == 429
    assert r.json() == {"error": RATE_LIMIT_MESSAGE}


def test_ai_endpoints_rate_limited(monkeypatch):
    monkeypatch.setattr(ratelimit, "MAX_REQUESTS", 1)
    assert client.post("/api/analyze-idea", json={"idea": "One"}).status_code == 200
    r = client.post("/api/generate-app-preview", json={"idea": "Two"})
    assert r.status_code == 429
    body = r.json()
    assert body["error"] == "rate limit exceeded"
    assert body["retry_after_seconds"] >= 0
    assert "Retry-After" in r.headers


def test_preview_requires_idea():
    r = client.post("/api/generate-app-preview", json={"analysis": {"summary": "x"}})
    assert r.status_code == 400
    assert r.json() == {"error": "Please provide the startup idea"}


def test_preview_ok():
    r = client.post(
        "/api/generate-app-preview",
        json={"idea": "Meal kits for climbers", "analysis": {"targetAudience": "Climbers"}},
    )
    assert r.status_code == 200
    preview = r.json()["appPreview"]
    assert preview["appName"] == "StubApp"
    assert len(preview["screens"]) == 4
    assert set(preview["colorScheme"]) == {"primary", "secondary", "accent"}


def test_billing_requires_authorization():
    r = client.post("/api/billing", json={"action": "getBilling"})
    assert r.status_code == 401
    assert r.json() == {"error": "Authorization header required"}


def test_billing_without_secret_key(signed_in):
    r = client.post("/api/billing", json={"action": "getCatalog"})
    assert r.status_code == 500
    assert r.json() == {"error": "FLOWGLAD_SECRET_KEY is not configured"}


def test_billing_unknown_action(signed_in, monkeypatch):
    monkeypatch.setattr(billing, "FLOWGLAD_SECRET_KEY", "sk_test")
    r = client.post("/api/billing", json={"action": "launchRocket"})
    assert r.status_code == 400
    assert r.json() == {"error": "Unknown action: launchRocket"}


def test_billing_dispatches_catalog(signed_in, monkeypatch):
    monkeypatch.setattr(billing, "FLOWGLAD_SECRET_KEY", "sk_test")
    resp = MagicMock(status_code=200, ok=True)
    resp.json.return_value = {"pricingModel": {"id": "pm_1"}}
    with patch("requests.request", return_value=resp) as mock_request:
        r = client.post("/api/billing", json={"action": "getCatalog"})
    assert r.status_code == 200
    assert r.json() == {"pricingModel": {"id": "pm_1"}}
    assert mock_request.call_args.args[1].endswith("/pricing-models/default")


def test_billing_provider_error(signed_in, monkeypatch):
    monkeypatch.setattr(billing, "FLOWGLAD_SECRET_KEY", "sk_test")
    resp = MagicMock(status_code=503, ok=False, text="maintenance")
    with patch("requests.request", return_value=resp):
        r = client.post("/api/billing", json={"action": "getCatalog"})
    assert r.status_code == 500
    assert r.json() == {"error": "FlowGlad API error: 503"}


def test_validate_success():
    good = {
        "summary": "Solid",
        "viabilityScore": 77,
        "marketPotential": "high",
        "strengths": ["a"],
        "challenges": ["b"],
        "recommendations": ["c"],
        "targetAudience": "d",
        "competitiveAdvantage": "e",
        "revenueModel": "f",
        "nextSteps": ["g"],
    }
    r = client.post("/validate", json={"kind": "analysis", "payload": good})
    assert r.status_code == 200
    assert r.json() == {"detail": {"valid": True}}


def test_validate_failure_lists_paths():
    bad = {"summary": "Solid", "viabilityScore": 250, "marketPotential": "enormous"}
    r = client.post("/validate", json={"kind": "analysis", "payload": bad})
    assert r.status_code == 422
    detail = r.json()["detail"]
    assert detail["valid"] is False
    paths = [e["path"] for e in detail["errors"]]
    assert "viabilityScore" in paths
    assert "marketPotential" in paths
    assert "(root)" in paths


def test_validate_unknown_kind():
    r = client.post("/validate", json={"kind": "poem", "payload": {}})
    assert r.status_code == 422
    assert r.json()["detail"]["errors"][0]["path"] == "kind"


def test_billing_provider_400_is_a_server_error(signed_in, monkeypatch):
    monkeypatch.setattr(billing, "FLOWGLAD_SECRET_KEY", "sk_test")
    resp = MagicMock(status_code=400, ok=False, text="bad request upstream")
    with patch("requests.request", return_value=resp):
        r = client.post("/api/billing", json={"action": "getCatalog"})
    assert r.status_code == 500
    assert r.json() == {"error": "FlowGlad API error: 400"}


def test_billing_cancel_with_empty_reply(signed_in, monkeypatch):
    monkeypatch.setattr(billing, "FLOWGLAD_SECRET_KEY", "sk_test")
    resp = MagicMock(status_code=204, ok=True, content=b"")
    resp.json.side_effect = ValueError("Expecting value")
    with patch("requests.request", return_value=resp):
        r = client.post("/api/billing", json={"action": "cancelSubscription", "subscriptionId": "sub_1"})
    assert r.status_code == 200
    assert r.json() == {}


def test_billing_cancel_missing_subscription_id(signed_in, monkeypatch):
    monkeypatch.setattr(billing, "FLOWGLAD_SECRET_KEY", "sk_test")
    r = client.post("/api/billing", json={"action": "cancelSubscription"})
    assert r.status_code == 400
    assert r.json() == {"error": "subscriptionId is required"}


def test_billing_bad_quantity_is_a_client_error(signed_in, monkeypatch):
    monkeypatch.setattr(billing, "FLOWGLAD_SECRET_KEY", "sk_test")
    with patch("requests.request") as mock_request:
        r = client.post("/api/billing", json={"action": "createCheckoutSession", "priceSlug": "pro_monthly", "quantity": "two"})
    assert r.status_code == 400
    assert r.json() == {"error": "quantity must be a positive integer"}
    mock_request.assert_not_called()


def test_fallback_analysis_is_not_counted(monkeypatch):
    from ideaforge.llm_parsing import fallback_analysis

    monkeypatch.setattr(main_mod, "llm_analyze_idea", lambda idea: fallback_analysis("unparsed reply"))
    r = client.post("/api/analyze-idea", json={"idea": "Anything"})
    assert r.status_code == 200
    assert r.json()["analysis"]["fallback"] is True
    assert client.get("/metrics/total").json() == {"total": 0}
