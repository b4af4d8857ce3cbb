import json

import pytest
from jsonschema.validators import Draft202012Validator

from ideaforge import llm_parsing
from ideaforge.validators import SCHEMA_DIR, SCHEMA_FILES, Analysis, AppPreview, collect_errors


def load_json(path):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


@pytest.mark.parametrize("kind", sorted(SCHEMA_FILES))
def test_schemas_are_valid_json_schema(kind):
    Draft202012Validator.check_schema(load_json(SCHEMA_DIR / SCHEMA_FILES[kind]))


def test_fallbacks_satisfy_their_schemas():
    assert collect_errors("analysis", llm_parsing.fallback_analysis("text")) == []
    assert collect_errors("appPreview", llm_parsing.fallback_app_preview()) == []
    # The models accept what the schemas accept
    Analysis(**llm_parsing.fallback_analysis("text"))
    AppPreview(**llm_parsing.fallback_app_preview())


def test_normalized_output_always_validates():
    messy = {"viabilityScore": "-5", "marketPotential": None, "strengths": [1, "", "ok"]}
    out = llm_parsing.normalize_analysis(messy)
    assert collect_errors("analysis", out) == []
    assert out["strengths"] == ["1", "ok"]


def test_app_preview_requires_name():
    preview = llm_parsing.fallback_app_preview()
    preview["appName"] = ""
    errors = collect_errors("appPreview", preview)
    assert [e["path"] for e in errors] == ["appName"]
