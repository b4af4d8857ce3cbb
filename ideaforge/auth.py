from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import requests
from fastapi import HTTPException, Request

log = logging.getLogger(__name__)

SUPABASE_URL = os.getenv("SUPABASE_URL", "").strip().rstrip("/")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY", "").strip()
ACCESS_TOKEN_COOKIE = os.getenv("ACCESS_TOKEN_COOKIE", "sb-access-token")
try:
    AUTH_TIMEOUT_SECS = int(os.getenv("AUTH_TIMEOUT_SECS", "10"))
except ValueError:
    AUTH_TIMEOUT_SECS = 10


class AuthError(Exception):
    pass


def auth_configured() -> bool:
    return bool(SUPABASE_URL and SUPABASE_ANON_KEY)


def extract_token(request: Request) -> Optional[str]:
    """Bearer token from the Authorization header, else the session cookie."""
    header = request.headers.get("authorization") or ""
    if header.lower().startswith("bearer "):
        token = header[7:].strip()
        if token:
            return token
    cookie = request.cookies.get(ACCESS_TOKEN_COOKIE)
    return cookie.strip() if cookie and cookie.strip() else None


def get_user(token: Optional[str]) -> Optional[Dict[str, Any]]:
    if not token or not auth_configured():
        return None
    try:
        resp = requests.get(
            f"{SUPABASE_URL}/auth/v1/user",
            headers={"apikey": SUPABASE_ANON_KEY, "Authorization": f"Bearer {token}"},
            timeout=AUTH_TIMEOUT_SECS,
        )
    except requests.RequestException as e:
        log.warning("auth: user lookup failed err=%r", e)
        return None
    if resp.status_code != 200:
        log.info("auth: token rejected status=%s", resp.status_code)
        return None
    try:
        user = resp.json()
    except ValueError:
        return None
    if not isinstance(user, dict) or not user.get("id"):
        return None
    return user


def sign_in(email: str, password: str) -> Dict[str, Any]:
    """Password grant against the hosted auth service; returns the session payload."""
    if not auth_configured():
        raise AuthError("Authentication is not configured")
    try:
        resp = requests.post(
            f"{SUPABASE_URL}/auth/v1/token",
            params={"grant_type": "password"},
            headers={"apikey": SUPABASE_ANON_KEY, "Content-Type": "application/json"},
            json={"email": email, "password": password},
            timeout=AUTH_TIMEOUT_SECS,
        )
    except requests.RequestException as e:
        raise AuthError("Authentication service unreachable") from e
    try:
        payload = resp.json()
    except ValueError:
        payload = {}
    if resp.status_code != 200 or not payload.get("access_token"):
        message = payload.get("error_description") or payload.get("msg") or "Invalid email or password"
        raise AuthError(message)
    return payload


def optional_user(request: Request) -> Optional[Dict[str, Any]]:
    """FastAPI dependency: the signed-in user, or None. Never fails the request."""
    token = extract_token(request)
    user = get_user(token)
    request.state.access_token = token if user else None
    return user


def require_user(request: Request) -> Dict[str, Any]:
    token = extract_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Authorization header required")
    user = get_user(token)
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    request.state.access_token = token
    return user


def extract_client_key(user: Optional[Dict[str, Any]], fallback: str) -> str:
    if user and user.get("id"):
        return f"user:{user['id']}"
    return f"ip:{fallback or 'anon'}"
