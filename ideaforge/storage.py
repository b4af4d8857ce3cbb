from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from ideaforge import auth

log = logging.getLogger(__name__)

ANALYSES_TABLE = os.getenv("ANALYSES_TABLE", "analyses")
_LOCK = threading.Lock()


class StorageError(Exception):
    pass


def _analyses_file() -> Path:
    return Path(os.getenv("ANALYSES_FILE", "cache/analyses.json"))


def _use_hosted() -> bool:
    return auth.auth_configured()


def _rest_headers(token: Optional[str]) -> Dict[str, str]:
    # Row-level security runs as the caller, so the user's token is forwarded
    return {
        "apikey": auth.SUPABASE_ANON_KEY,
        "Authorization": f"Bearer {token or auth.SUPABASE_ANON_KEY}",
        "Content-Type": "application/json",
        "Prefer": "return=representation",
    }


def _read_rows() -> List[Dict[str, Any]]:
    path = _analyses_file()
    if not path.exists():
        return []
    try:
        data = json.loads(path.read_text(encoding="utf-8") or "[]")
    except (OSError, ValueError):
        log.warning("storage: unreadable analyses file %s; starting empty", path)
        return []
    return data if isinstance(data, list) else []


def _write_rows(rows: List[Dict[str, Any]]) -> None:
    path = _analyses_file()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(rows, ensure_ascii=False, separators=(",", ":")), encoding="utf-8")
    tmp.replace(path)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def save_analysis(user: Dict[str, Any], idea: str, analysis: Dict[str, Any], token: Optional[str] = None) -> Dict[str, Any]:
    row = {"user_id": user["id"], "idea": idea, "analysis": analysis}
    if _use_hosted():
        try:
            resp = requests.post(
                f"{auth.SUPABASE_URL}/rest/v1/{ANALYSES_TABLE}",
                headers=_rest_headers(token),
                json=row,
                timeout=auth.AUTH_TIMEOUT_SECS,
            )
        except requests.RequestException as e:
            raise StorageError("analyses insert failed") from e
        if resp.status_code not in (200, 201):
            raise StorageError(f"analyses insert failed: {resp.status_code}")
        data = resp.json()
        return data[0] if isinstance(data, list) and data else row

    row = {"id": str(uuid.uuid4()), **row, "created_at": _now_iso()}
    with _LOCK:
        rows = _read_rows()
        rows.append(row)
        _write_rows(rows)
    return row


def list_analyses(user: Dict[str, Any], token: Optional[str] = None) -> List[Dict[str, Any]]:
    """Saved analyses for one user, newest first."""
    if _use_hosted():
        try:
            resp = requests.get(
                f"{auth.SUPABASE_URL}/rest/v1/{ANALYSES_TABLE}",
                headers=_rest_headers(token),
                params={"select": "*", "user_id": f"eq.{user['id']}", "order": "created_at.desc"},
                timeout=auth.AUTH_TIMEOUT_SECS,
            )
        except requests.RequestException as e:
            raise StorageError("analyses query failed") from e
        if resp.status_code != 200:
            raise StorageError(f"analyses query failed: {resp.status_code}")
        data = resp.json()
        return data if isinstance(data, list) else []

    with _LOCK:
        rows = [r for r in _read_rows() if r.get("user_id") == user["id"]]
    rows.sort(key=lambda r: r.get("created_at") or "", reverse=True)
    return rows
