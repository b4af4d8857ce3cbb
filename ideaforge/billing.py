from __future__ import annotations

import logging
import os
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote

import requests

log = logging.getLogger(__name__)

FLOWGLAD_API_URL = os.getenv("FLOWGLAD_API_URL", "https://app.flowglad.com/api").rstrip("/")
FLOWGLAD_SECRET_KEY = os.getenv("FLOWGLAD_SECRET_KEY", "").strip()
try:
    BILLING_TIMEOUT_SECS = int(os.getenv("BILLING_TIMEOUT_SECS", "20"))
except ValueError:
    BILLING_TIMEOUT_SECS = 20

DEFAULT_CANCEL_TIMING = "at_end_of_current_billing_period"
ACTIVE_STATUSES = {"active", "trialing"}

PLANS: List[Dict[str, Any]] = [
    {
        "name": "Free",
        "priceSlug": None,
        "price": 0,
        "interval": "month",
        "description": "Perfect for getting started",
        "features": [
            "3 idea analyses per month",
            "Basic viability scores",
            "Market potential insights",
            "Email support",
        ],
        "popular": False,
    },
    {
        "name": "Pro",
        "priceSlug": "pro_monthly",
        "price": 19,
        "interval": "month",
        "description": "For serious entrepreneurs",
        "features": [
            "Unlimited idea analyses",
            "Advanced viability metrics",
            "Competitor analysis",
            "Revenue model suggestions",
            "Priority email support",
            "Export reports as PDF",
        ],
        "popular": True,
    },
    {
        "name": "Enterprise",
        "priceSlug": "enterprise_monthly",
        "price": 49,
        "interval": "month",
        "description": "For teams and agencies",
        "features": [
            "Everything in Pro",
            "Team collaboration",
            "Custom AI prompts",
            "API access",
            "Dedicated account manager",
            "Custom integrations",
            "White-label reports",
        ],
        "popular": False,
    },
]

_AUTH_ERROR_MARKERS = ("401", "Unauthorized", "FunctionsHttpError", "non-2xx")
UNLIMITED_ANALYSES = "unlimited_analyses"

# Postgres emits 1-6 fractional digits and "+00" offsets; fromisoformat on 3.9/3.10 wants 6 and "+00:00"
_ISO_FRACTION_RE = re.compile(r"\.(\d+)")
_ISO_SHORT_TZ_RE = re.compile(r"(\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?)([+-]\d{2})$")


class BillingError(Exception):
    def __init__(self, message: str, status_code: int = 500) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class BillingRequestError(BillingError):
    """The caller sent a bad billing request; never raised for provider replies."""

    def __init__(self, message: str) -> None:
        super().__init__(message, 400)


class UnknownActionError(BillingRequestError):
    def __init__(self, action: Any) -> None:
        super().__init__(f"Unknown action: {action}")
        self.action = action


class BillingClient:
    """Thin proxy over the billing provider's REST API, scoped to one secret key."""

    def __init__(self, secret_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[int] = None) -> None:
        self.secret_key = (secret_key if secret_key is not None else FLOWGLAD_SECRET_KEY).strip()
        self.base_url = (base_url or FLOWGLAD_API_URL).rstrip("/")
        self.timeout = timeout or BILLING_TIMEOUT_SECS
        if not self.secret_key:
            raise BillingError("FLOWGLAD_SECRET_KEY is not configured", 500)

    def _request(self, endpoint: str, method: str = "GET", body: Optional[Dict[str, Any]] = None) -> Any:
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }
        try:
            resp = requests.request(
                method,
                f"{self.base_url}{endpoint}",
                headers=headers,
                json=body,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            log.error("billing request error endpoint=%s err=%r", endpoint, e)
            raise BillingError("FlowGlad API unreachable", 502) from e
        if not resp.ok:
            log.error("FlowGlad API error: %s - %s", resp.status_code, (resp.text or "")[:400])
            raise BillingError(f"FlowGlad API error: {resp.status_code}", resp.status_code)
        if resp.status_code == 204 or not (resp.content or b"").strip():
            return {}
        try:
            return resp.json()
        except ValueError as e:
            log.error("billing: non-JSON reply endpoint=%s status=%s", endpoint, resp.status_code)
            raise BillingError("FlowGlad API returned an invalid response", 502) from e

    def find_or_create_customer(self, user: Dict[str, Any]) -> Dict[str, Any]:
        user_id = str(user.get("id") or "")
        try:
            found = self._request(f"/customers?externalId={quote(user_id)}")
            data = found.get("data") if isinstance(found, dict) else None
            if data:
                return data[0]
        except BillingError:
            log.info("billing: customer lookup failed for user=%s, creating new one", user_id)

        email = user.get("email") or ""
        meta = user.get("user_metadata") or {}
        name = meta.get("full_name") or (email.split("@")[0] if email else "") or "User"
        log.info("billing: creating customer for user=%s", user_id)
        return self._request(
            "/customers",
            "POST",
            {"externalId": user_id, "email": email, "name": name},
        )

    def _list(self, endpoint: str, what: str) -> List[Dict[str, Any]]:
        try:
            resp = self._request(endpoint)
        except BillingError:
            log.info("billing: no %s found", what)
            return []
        data = resp.get("data") if isinstance(resp, dict) else None
        return data or []

    def get_catalog(self) -> Any:
        return self._request("/pricing-models/default")

    def get_billing(self, user: Dict[str, Any]) -> Dict[str, Any]:
        customer = self.find_or_create_customer(user)
        customer_id = quote(str(customer.get("id") or ""))
        subscriptions = self._list(f"/subscriptions?customerId={customer_id}", "subscriptions")
        invoices = self._list(f"/invoices?customerId={customer_id}", "invoices")
        try:
            pricing_model = self.get_catalog()
        except BillingError:
            log.info("billing: no pricing model found")
            pricing_model = None
        return {
            "customer": customer,
            "subscriptions": subscriptions,
            "currentSubscription": current_subscription(subscriptions),
            "invoices": invoices,
            "pricingModel": pricing_model,
        }

    def create_checkout_session(
        self,
        user: Dict[str, Any],
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        price_slug: Optional[str] = None,
        price_id: Optional[str] = None,
        quantity: int = 1,
    ) -> Dict[str, Any]:
        customer = self.find_or_create_customer(user)
        body: Dict[str, Any] = {"customerId": customer.get("id")}
        if price_slug:
            body["priceSlug"] = price_slug
        if price_id:
            body["priceId"] = price_id
        if success_url:
            body["successUrl"] = success_url
        if cancel_url:
            body["cancelUrl"] = cancel_url
        body["quantity"] = quantity
        return self._request("/checkout-sessions", "POST", body)

    def cancel_subscription(self, subscription_id: str, timing: str = DEFAULT_CANCEL_TIMING) -> Any:
        if not subscription_id:
            raise BillingRequestError("subscriptionId is required")
        return self._request(
            f"/subscriptions/{quote(str(subscription_id))}/cancel",
            "POST",
            {"timing": timing or DEFAULT_CANCEL_TIMING},
        )

    def dispatch(self, action: Any, user: Dict[str, Any], params: Dict[str, Any]) -> Any:
        """Run one named billing action, mirroring the front-end's action protocol."""
        log.info("billing action=%s user=%s", action, user.get("id"))
        if action == "getBilling":
            return self.get_billing(user)
        if action == "createCheckoutSession":
            return self.create_checkout_session(
                user,
                success_url=params.get("successUrl"),
                cancel_url=params.get("cancelUrl"),
                price_slug=params.get("priceSlug"),
                price_id=params.get("priceId"),
                quantity=_quantity(params.get("quantity")),
            )
        if action == "cancelSubscription":
            return self.cancel_subscription(
                params.get("subscriptionId"),
                params.get("timing") or DEFAULT_CANCEL_TIMING,
            )
        if action == "getCatalog":
            return self.get_catalog()
        raise UnknownActionError(action)


def _quantity(value: Any) -> int:
    if value is None or value == "":
        return 1
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise BillingRequestError("quantity must be a positive integer")
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        raise BillingRequestError("quantity must be a positive integer") from None
    if quantity < 1:
        raise BillingRequestError("quantity must be a positive integer")
    return quantity


def current_subscription(subscriptions: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    for sub in subscriptions or []:
        if isinstance(sub, dict) and sub.get("status") in ACTIVE_STATUSES:
            return sub
    return None


def subscription_period_end(sub: Optional[Dict[str, Any]]) -> Any:
    if not sub:
        return None
    return sub.get("currentPeriodEnd") or sub.get("current_period_end")


def subscription_period_start(sub: Optional[Dict[str, Any]]) -> Any:
    if not sub:
        return None
    return sub.get("currentPeriodStart") or sub.get("current_period_start")


def subscription_canceled_at(sub: Optional[Dict[str, Any]]) -> Any:
    if not sub:
        return None
    return sub.get("cancelScheduledAt") or sub.get("canceledAt") or sub.get("canceled_at")


def is_auth_error(err: Union[BaseException, str, None]) -> bool:
    if err is None:
        return False
    if isinstance(err, BillingError) and err.status_code == 401:
        return True
    text = err if isinstance(err, str) else f"{type(err).__name__}: {err}"
    return any(marker in text for marker in _AUTH_ERROR_MARKERS)


def load_billing(client: Optional[BillingClient], user: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Billing summary for page rendering.

    Anonymous visitors and auth failures yield None instead of an error state;
    any other failure propagates.
    """
    if not user or client is None:
        return None
    try:
        data = client.get_billing(user)
    except BillingError as e:
        if is_auth_error(e):
            log.info("billing: auth issue, skipping billing fetch")
            return None
        raise
    if isinstance(data, dict) and data.get("error") and is_auth_error(str(data["error"])):
        log.info("billing: auth issue from response, skipping billing fetch")
        return None
    return data


def has_feature_access(billing: Optional[Dict[str, Any]], feature_slug: str) -> bool:
    # Any active or trialing plan unlocks every feature
    sub = (billing or {}).get("currentSubscription")
    if not sub:
        return False
    return sub.get("status") in ACTIVE_STATUSES


def _to_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        s = _ISO_FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), s, count=1)
        s = _ISO_SHORT_TZ_RE.sub(r"\1\2:00", s)
        try:
            return datetime.fromisoformat(s)
        except ValueError:
            return None
    return None


def format_date(value: Any) -> str:
    dt = _to_datetime(value)
    if dt is None:
        return "N/A"
    return f"{dt.strftime('%B')} {dt.day}, {dt.year}"


def format_currency(amount_cents: Any) -> str:
    try:
        amount = float(amount_cents or 0) / 100.0
    except (TypeError, ValueError):
        amount = 0.0
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def status_label(status: Optional[str]) -> str:
    return {
        "active": "Active",
        "trialing": "Trial",
        "canceled": "Canceled",
        "past_due": "Past Due",
    }.get(status or "", status or "")


def plan_for_slug(price_slug: Optional[str]) -> Optional[Dict[str, Any]]:
    for plan in PLANS:
        if plan["priceSlug"] == price_slug:
            return plan
    return None


def get_client() -> Optional[BillingClient]:
    if not FLOWGLAD_SECRET_KEY:
        return None
    return BillingClient()
