from unittest.mock import MagicMock, patch

import pytest
import requests

from ideaforge import billing
from ideaforge.billing import BillingClient, BillingError, UnknownActionError


def _resp(payload=None, status=200):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.json.return_value = payload if payload is not None else {}
    resp.text = "" if resp.ok else "error body"
    return resp


def _route(routes):
    """Build a requests.request side effect keyed by (method, path-with-query)."""
    calls = []

    def fake(method, url, headers=None, json=None, timeout=None):
        path = url[len(billing.FLOWGLAD_API_URL):]
        calls.append((method, path, json))
        for (m, prefix), resp in routes.items():
            if m == method and path.startswith(prefix):
                return resp
        return _resp(status=404)

    fake.calls = calls
    return fake


def test_client_requires_secret_key():
    with pytest.raises(BillingError) as ctx:
        BillingClient(secret_key="")
    assert ctx.value.status_code == 500
    assert billing.get_client() is None


def test_existing_customer_is_reused(user):
    fake = _route({("GET", "/customers?externalId=user-123"): _resp({"data": [{"id": "cus_1"}]})})
    with patch("requests.request", side_effect=fake):
        customer = BillingClient(secret_key="sk_test").find_or_create_customer(user)
    assert customer == {"id": "cus_1"}
    assert [c[0] for c in fake.calls] == ["GET"]


def test_customer_created_when_lookup_empty(user):
    fake = _route(
        {
            ("GET", "/customers"): _resp({"data": []}),
            ("POST", "/customers"): _resp({"id": "cus_new"}),
        }
    )
    with patch("requests.request", side_effect=fake):
        customer = BillingClient(secret_key="sk_test").find_or_create_customer(user)
    assert customer == {"id": "cus_new"}
    method, path, body = fake.calls[-1]
    assert (method, path) == ("POST", "/customers")
    assert body == {"externalId": "user-123", "email": "founder@example.com", "name": "Ada Founder"}


def test_customer_name_falls_back_to_email_local_part():
    fake = _route({("GET", "/customers"): _resp(status=500), ("POST", "/customers"): _resp({"id": "cus_2"})})
    with patch("requests.request", side_effect=fake):
        BillingClient(secret_key="sk_test").find_or_create_customer({"id": "u2", "email": "grace@example.com"})
    assert fake.calls[-1][2]["name"] == "grace"


def test_get_billing_tolerates_missing_pieces(user):
    subs = [
        {"id": "sub_old", "status": "canceled"},
        {"id": "sub_live", "status": "active", "priceSlug": "pro_monthly"},
    ]
    fake = _route(
        {
            ("GET", "/customers"): _resp({"data": [{"id": "cus_1"}]}),
            ("GET", "/subscriptions"): _resp({"data": subs}),
            ("GET", "/invoices"): _resp(status=404),
            ("GET", "/pricing-models/default"): _resp(status=500),
        }
    )
    with patch("requests.request", side_effect=fake):
        data = BillingClient(secret_key="sk_test").get_billing(user)
    assert data["customer"] == {"id": "cus_1"}
    assert data["currentSubscription"]["id"] == "sub_live"
    assert data["invoices"] == []
    assert data["pricingModel"] is None


def test_checkout_session_body(user):
    fake = _route(
        {
            ("GET", "/customers"): _resp({"data": [{"id": "cus_1"}]}),
            ("POST", "/checkout-sessions"): _resp({"url": "https://pay.example/abc"}),
        }
    )
    with patch("requests.request", side_effect=fake):
        out = BillingClient(secret_key="sk_test").dispatch(
            "createCheckoutSession",
            user,
            {"priceSlug": "pro_monthly", "successUrl": "https://app/s", "cancelUrl": "https://app/c"},
        )
    assert out["url"] == "https://pay.example/abc"
    assert fake.calls[-1][2] == {
        "customerId": "cus_1",
        "priceSlug": "pro_monthly",
        "successUrl": "https://app/s",
        "cancelUrl": "https://app/c",
        "quantity": 1,
    }


def test_cancel_subscription_default_timing(user):
    fake = _route({("POST", "/subscriptions/sub_1/cancel"): _resp({"status": "canceled"})})
    with patch("requests.request", side_effect=fake):
        BillingClient(secret_key="sk_test").dispatch("cancelSubscription", user, {"subscriptionId": "sub_1"})
    assert fake.calls[-1][2] == {"timing": "at_end_of_current_billing_period"}


def test_cancel_requires_subscription_id(user):
    with pytest.raises(BillingError) as ctx:
        BillingClient(secret_key="sk_test").dispatch("cancelSubscription", user, {})
    assert ctx.value.status_code == 400


def test_unknown_action(user):
    with pytest.raises(UnknownActionError) as ctx:
        BillingClient(secret_key="sk_test").dispatch("refundEverything", user, {})
    assert ctx.value.message == "Unknown action: refundEverything"
    assert ctx.value.status_code == 400


def test_upstream_unreachable():
    with patch("requests.request", side_effect=requests.ConnectionError("down")):
        with pytest.raises(BillingError) as ctx:
            BillingClient(secret_key="sk_test").get_catalog()
    assert ctx.value.status_code == 502


def test_load_billing_hides_auth_failures(user):
    client = MagicMock()
    client.get_billing.side_effect = BillingError("FlowGlad API error: 401", 401)
    assert billing.load_billing(client, user) is None

    client.get_billing.side_effect = None
    client.get_billing.return_value = {"error": "FunctionsHttpError: Edge Function returned a non-2xx status code"}
    assert billing.load_billing(client, user) is None

    assert billing.load_billing(client, None) is None
    assert billing.load_billing(None, user) is None


def test_load_billing_propagates_other_failures(user):
    client = MagicMock()
    client.get_billing.side_effect = BillingError("FlowGlad API error: 500", 500)
    with pytest.raises(BillingError):
        billing.load_billing(client, user)


def test_feature_access_follows_subscription_status():
    assert billing.has_feature_access({"currentSubscription": {"status": "trialing"}}, "unlimited") is True
    assert billing.has_feature_access({"currentSubscription": {"status": "past_due"}}, "unlimited") is False
    assert billing.has_feature_access(None, "unlimited") is False


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2025-03-07T12:00:00Z", "March 7, 2025"),
        (1735689600000, "January 1, 2025"),
        (None, "N/A"),
        ("not a date", "N/A"),
    ],
)
def test_format_date(value, expected):
    assert billing.format_date(value) == expected


def test_format_currency_and_labels():
    assert billing.format_currency(1900) == "$19.00"
    assert billing.format_currency(None) == "$0.00"
    assert billing.status_label("past_due") == "Past Due"
    assert billing.status_label("paused") == "paused"
    assert billing.plan_for_slug("enterprise_monthly")["price"] == 49
    assert billing.plan_for_slug("nope") is None


def test_checkout_without_urls_omits_them(user):
    fake = _route(
        {
            ("GET", "/customers"): _resp({"data": [{"id": "cus_1"}]}),
            ("POST", "/checkout-sessions"): _resp({"url": "https://pay.example/abc"}),
        }
    )
    with patch("requests.request", side_effect=fake):
        BillingClient(secret_key="sk_test").dispatch("createCheckoutSession", user, {"priceSlug": "pro_monthly"})
    assert fake.calls[-1][2] == {"customerId": "cus_1", "priceSlug": "pro_monthly", "quantity": 1}


@pytest.mark.parametrize("quantity", ["two", -1, 0, 1.5, True, [3]])
def test_checkout_rejects_bad_quantity(user, quantity):
    with patch("requests.request") as mock_request:
        with pytest.raises(billing.BillingRequestError) as ctx:
            BillingClient(secret_key="sk_test").dispatch(
                "createCheckoutSession", user, {"priceSlug": "pro_monthly", "quantity": quantity}
            )
    assert ctx.value.status_code == 400
    assert ctx.value.message == "quantity must be a positive integer"
    mock_request.assert_not_called()


def test_checkout_accepts_numeric_string_quantity(user):
    fake = _route(
        {
            ("GET", "/customers"): _resp({"data": [{"id": "cus_1"}]}),
            ("POST", "/checkout-sessions"): _resp({"url": "https://pay.example/abc"}),
        }
    )
    with patch("requests.request", side_effect=fake):
        BillingClient(secret_key="sk_test").dispatch("createCheckoutSession", user, {"quantity": "3"})
    assert fake.calls[-1][2]["quantity"] == 3


def test_empty_success_body_is_an_empty_object():
    resp = _resp(status=204)
    resp.content = b""
    resp.json.side_effect = ValueError("Expecting value")
    with patch("requests.request", return_value=resp):
        assert BillingClient(secret_key="sk_test").cancel_subscription("sub_1") == {}


def test_non_json_success_body_is_a_billing_error():
    resp = _resp(status=200)
    resp.content = b"<html>gateway page</html>"
    resp.json.side_effect = ValueError("Expecting value")
    with patch("requests.request", return_value=resp):
        with pytest.raises(BillingError) as ctx:
            BillingClient(secret_key="sk_test").get_catalog()
    assert ctx.value.status_code == 502


def test_provider_400_is_not_a_request_error():
    with patch("requests.request", return_value=_resp(status=400)):
        with pytest.raises(BillingError) as ctx:
            BillingClient(secret_key="sk_test").get_catalog()
    assert not isinstance(ctx.value, billing.BillingRequestError)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2025-03-07T12:00:00.1234+00:00", "March 7, 2025"),
        ("2025-03-07 12:00:00.5+00", "March 7, 2025"),
        ("2025-03-07T23:59:59.123456789Z", "March 7, 2025"),
        ("2025-03-07", "March 7, 2025"),
    ],
)
def test_format_date_handles_postgres_timestamps(value, expected):
    assert billing.format_date(value) == expected
