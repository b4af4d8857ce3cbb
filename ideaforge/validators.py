from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal

from jsonschema import Draft202012Validator
from pydantic import BaseModel, Field

SCHEMA_DIR = Path(__file__).resolve().parent / "schemas"
SCHEMA_FILES = {
    "analysis": "analysis_schema.json",
    "appPreview": "app_preview_schema.json",
}


class Analysis(BaseModel):
    summary: str
    viabilityScore: int = Field(ge=1, le=100)
    marketPotential: Literal["low", "medium", "high"]
    strengths: List[str]
    challenges: List[str]
    recommendations: List[str]
    targetAudience: str
    competitiveAdvantage: str
    revenueModel: str
    nextSteps: List[str]
    fallback: bool = False


class ColorScheme(BaseModel):
    primary: str
    secondary: str
    accent: str


class Screen(BaseModel):
    name: str
    description: str = ""
    keyElements: List[str] = Field(default_factory=list)


class KeyFeature(BaseModel):
    icon: str
    title: str
    description: str = ""


class AppPreview(BaseModel):
    appName: str
    tagline: str
    colorScheme: ColorScheme
    screens: List[Screen]
    keyFeatures: List[KeyFeature]
    userFlow: str
    uniqueSellingPoint: str
    monetizationUI: str
    fallback: bool = False


@lru_cache(maxsize=None)
def _validator(kind: str) -> Draft202012Validator:
    schema = json.loads((SCHEMA_DIR / SCHEMA_FILES[kind]).read_text(encoding="utf-8"))
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def collect_errors(kind: str, payload: Any) -> List[Dict[str, str]]:
    """
    Return a list of {"path": "...", "message": "..."} error dicts for `payload`
    checked against the JSON schema for `kind` ("analysis" or "appPreview").
    """
    if kind not in SCHEMA_FILES:
        return [{"path": "kind", "message": f"unknown kind '{kind}'; expected one of {sorted(SCHEMA_FILES)}"}]
    errors: List[Dict[str, str]] = []
    for err in sorted(_validator(kind).iter_errors(payload), key=lambda e: [str(p) for p in e.path]):
        loc = ".".join(str(p) for p in err.path) or "(root)"
        errors.append({"path": loc, "message": str(err.message)})
    return errors

